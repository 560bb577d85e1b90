"""
Cases

Case state machine, SLA engine and the lifecycle manager built on them.
"""
from .state_machine import CASE_STATE_TRANSITIONS, CaseStateMachine, StateTransition
from .sla import DEFAULT_SLA, SLA_CONFIGS, SLAConfig, SLAEngine
from .case_service import CaseService
from .lifecycle import (
    CaseLifecycleManager,
    active_flags,
    active_team_members,
    case_age_days,
    case_duration_days,
    generate_case_number,
    has_flag,
    is_assigned,
    is_case_open,
    is_case_resolved,
    team_lead,
    visible_notes,
)

__all__ = [
    "CASE_STATE_TRANSITIONS",
    "CaseStateMachine",
    "StateTransition",
    "DEFAULT_SLA",
    "SLA_CONFIGS",
    "SLAConfig",
    "SLAEngine",
    "CaseLifecycleManager",
    "CaseService",
    "active_flags",
    "active_team_members",
    "case_age_days",
    "case_duration_days",
    "generate_case_number",
    "has_flag",
    "is_assigned",
    "is_case_open",
    "is_case_resolved",
    "team_lead",
    "visible_notes",
]
