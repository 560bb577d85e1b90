"""
Case State Machine

Closed, explicit transition table over case statuses.
Any (from, to) pair absent from the table is rejected for every actor.

AUTHORITY MODEL:
- A human actor must hold one of the edge's allowed roles.
- The system actor may only take edges marked ``automated``
  (e.g. resolved -> closed, closed -> archived).
"""
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from ...errors import TransitionTableError
from ...models.actors import Actor
from ...models.cases import CaseStatus
from ...models.roles import RoleCategory, RoleId
from ..roles.catalog import RoleCatalog, default_catalog

logger = logging.getLogger(__name__)


INITIAL_STATUS = CaseStatus.NEW
TERMINAL_STATUSES: FrozenSet[CaseStatus] = frozenset({CaseStatus.ARCHIVED})


@dataclass(frozen=True)
class StateTransition:
    from_status: CaseStatus
    to_status: CaseStatus
    allowed_roles: FrozenSet[RoleId]
    requires_reason: bool = False
    automated: bool = False


_MOD = frozenset({RoleId.MODERATOR, RoleId.LEAD_MODERATOR})
_LEAD = frozenset({RoleId.LEAD_MODERATOR})
_VOLUNTEERS = frozenset(d.id for d in default_catalog.roles_by_category(RoleCategory.VOLUNTEER))
_FIELD = _VOLUNTEERS | {RoleId.MODERATOR}


def _t(from_status, to_status, roles, requires_reason=False, automated=False) -> StateTransition:
    return StateTransition(from_status, to_status, frozenset(roles), requires_reason, automated)


S = CaseStatus

# =============================================================================
# TRANSITION TABLE
# =============================================================================

CASE_STATE_TRANSITIONS: Tuple[StateTransition, ...] = (
    # From new
    _t(S.NEW, S.TRIAGED, _MOD),
    _t(S.NEW, S.ON_HOLD, _MOD, requires_reason=True),
    _t(S.NEW, S.CLOSED, _LEAD, requires_reason=True),

    # From triaged
    _t(S.TRIAGED, S.ASSIGNED, _MOD),
    _t(S.TRIAGED, S.ON_HOLD, _MOD, requires_reason=True),

    # From assigned
    _t(S.ASSIGNED, S.IN_PROGRESS, _FIELD),
    _t(S.ASSIGNED, S.TRIAGED, _MOD, requires_reason=True),

    # From in_progress
    _t(S.IN_PROGRESS, S.PENDING_VERIFICATION, _FIELD),
    _t(S.IN_PROGRESS, S.PENDING_PICKUP, _FIELD),
    _t(S.IN_PROGRESS, S.MATCHED, _MOD),
    _t(S.IN_PROGRESS, S.ON_HOLD, _MOD, requires_reason=True),

    # From matched
    _t(S.MATCHED, S.PENDING_VERIFICATION, _MOD),
    _t(S.MATCHED, S.PENDING_RELEASE, _MOD),
    _t(S.MATCHED, S.IN_PROGRESS, _MOD, requires_reason=True),

    # From pending_verification
    _t(S.PENDING_VERIFICATION, S.PENDING_RELEASE, _MOD),
    _t(S.PENDING_VERIFICATION, S.IN_PROGRESS, _MOD, requires_reason=True),

    # From pending_release
    _t(S.PENDING_RELEASE, S.RESOLVED, _MOD),
    _t(S.PENDING_RELEASE, S.PENDING_VERIFICATION, _LEAD, requires_reason=True),

    # From in_custody
    _t(S.IN_CUSTODY, S.PENDING_TRANSPORT, _FIELD),
    _t(S.IN_CUSTODY, S.MATCHED, _MOD),
    _t(S.IN_CUSTODY, S.RESOLVED, _MOD),

    # From resolved
    _t(S.RESOLVED, S.CLOSED, _MOD, automated=True),
    _t(S.RESOLVED, S.IN_PROGRESS, _LEAD, requires_reason=True),

    # From closed
    _t(S.CLOSED, S.ARCHIVED, (), automated=True),
    _t(S.CLOSED, S.IN_PROGRESS, {RoleId.LEAD_MODERATOR, RoleId.REGIONAL_COORDINATOR}, requires_reason=True),

    # From on_hold
    _t(S.ON_HOLD, S.TRIAGED, _MOD, requires_reason=True),
    _t(S.ON_HOLD, S.IN_PROGRESS, _MOD, requires_reason=True),
    _t(S.ON_HOLD, S.CLOSED, _LEAD, requires_reason=True),
)


class CaseStateMachine:
    """
    Validates transitions against the table.

    The table is checked at construction: no edge may leave a terminal
    status or enter the initial status, edges are unique, and every role
    is known to the catalog.
    """

    def __init__(
        self,
        transitions: Optional[Sequence[StateTransition]] = None,
        catalog: Optional[RoleCatalog] = None,
    ):
        self.catalog = catalog or default_catalog
        self._edges: Dict[Tuple[CaseStatus, CaseStatus], StateTransition] = {}
        for edge in (transitions if transitions is not None else CASE_STATE_TRANSITIONS):
            self._register(edge)

    def _register(self, edge: StateTransition) -> None:
        if not isinstance(edge.from_status, CaseStatus) or not isinstance(edge.to_status, CaseStatus):
            raise TransitionTableError(f"Transition references unknown status: {edge}")
        key = (edge.from_status, edge.to_status)
        if key in self._edges:
            raise TransitionTableError(f"Duplicate transition {edge.from_status.value} -> {edge.to_status.value}")
        if edge.from_status in TERMINAL_STATUSES:
            raise TransitionTableError(f"Terminal status {edge.from_status.value} cannot have outgoing transitions")
        if edge.to_status == INITIAL_STATUS:
            raise TransitionTableError(f"No transition may enter {INITIAL_STATUS.value}")
        if not edge.allowed_roles and not edge.automated:
            raise TransitionTableError(
                f"Transition {edge.from_status.value} -> {edge.to_status.value} has no actor"
            )
        for role_id in edge.allowed_roles:
            if role_id not in self.catalog:
                raise TransitionTableError(f"Transition references unknown role: {role_id}")
        self._edges[key] = edge

    @property
    def transitions(self) -> List[StateTransition]:
        return list(self._edges.values())

    def get_transition(self, from_status: CaseStatus, to_status: CaseStatus) -> Optional[StateTransition]:
        return self._edges.get((from_status, to_status))

    @staticmethod
    def actor_may_take(edge: StateTransition, actor: Actor) -> bool:
        if actor.is_system:
            return edge.automated
        return actor.role_id is not None and actor.role_id in edge.allowed_roles

    def can_transition(
        self,
        from_status: CaseStatus,
        to_status: CaseStatus,
        actor: Actor,
        reason: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Check if a transition is allowed.

        Returns (allowed, message)
        """
        edge = self.get_transition(from_status, to_status)
        if edge is None:
            return False, f"No transition from {from_status.value} to {to_status.value}"

        if not self.actor_may_take(edge, actor):
            if actor.is_system:
                return False, "System actor may only perform automated transitions"
            role = actor.role_id.value if actor.role_id else "none"
            return False, f"Role {role} cannot perform this transition"

        if edge.requires_reason and not (reason and reason.strip()):
            return False, "Reason required for this transition"

        return True, "Transition allowed"

    def get_possible_transitions(self, status: CaseStatus, actor: Actor) -> List[StateTransition]:
        return [
            edge for (from_status, _), edge in self._edges.items()
            if from_status == status and self.actor_may_take(edge, actor)
        ]


default_state_machine = CaseStateMachine()
