"""
Role Catalog

Static registry of role definitions: permissions, hierarchy level,
eligibility requirements, approval rights and reporting lines.

The table is validated when a RoleCatalog is constructed. Unknown role
references and reporting cycles are configuration errors and fail fast.
"""
import logging
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from ...errors import ReportingCycleError, UnknownPermissionError, UnknownRoleError
from ...models.roles import (
    IdentityAssuranceLevel as IAL,
    Permission,
    RoleCategory,
    RoleDefinition,
    RoleId,
    WaiverType as W,
)

logger = logging.getLogger(__name__)


def _perms(*tokens: str) -> FrozenSet[Permission]:
    try:
        return frozenset(Permission(t) for t in tokens)
    except ValueError as e:
        raise UnknownPermissionError(str(e)) from e


# =============================================================================
# PERMISSION GROUPS
# =============================================================================
#
# NOTE: no delete permission exists. Archive / redact / legal hold only.
#
# =============================================================================

_CASE_ALL = (
    "case.view", "case.view_sensitive", "case.create", "case.edit", "case.edit_own",
    "case.close", "case.reopen", "case.escalate", "case.deescalate", "case.assign",
    "case.reassign", "case.archive", "case.unarchive", "case.cold_storage",
    "case.redact_pii", "case.legal_hold", "case.legal_hold_release",
)
_MATCH_ALL = (
    "match.view", "match.suggest", "match.verify", "match.reject", "match.notify_owner",
    "match.handle_deceased",
)
_VERIFICATION_ALL = (
    "verification.view", "verification.initiate", "verification.add_evidence",
    "verification.verify_evidence", "verification.administer_test", "verification.approve",
    "verification.reject", "verification.set_hold", "verification.clear_hold",
    "verification.escalate_dispute", "verification.resolve_dispute",
)
_VOLUNTEER_ALL = (
    "volunteer.view", "volunteer.view_sensitive", "volunteer.approve", "volunteer.suspend",
    "volunteer.revoke", "volunteer.reinstate", "volunteer.dispatch", "volunteer.mentor",
    "volunteer.assign_buddy",
)
_MODERATOR_ALL = (
    "moderator.view", "moderator.approve", "moderator.suspend", "moderator.assign_cases",
    "moderator.manage_shifts",
)
_ALERT_ALL = (
    "alert.view", "alert.trigger_t1", "alert.trigger_t2", "alert.trigger_t3",
    "alert.trigger_t4", "alert.trigger_t5", "alert.cancel",
)
_FIELD_ALL = (
    "field.view_operations", "field.start_operation", "field.checkin", "field.view_location",
    "field.escalate_safety",
)
_BASE_VOLUNTEER = (
    "case.view", "volunteer.view",
    "training.view", "training.complete_own",
    "governance.view_sops",
    "grievance.submit", "grievance.view_own",
)

_FIELD_VOLUNTEER = _BASE_VOLUNTEER + (
    "asset.view", "asset.checkout", "asset.checkin",
    "field.view_operations", "field.start_operation", "field.checkin",
)

_VOLUNTEER_ROLES = frozenset({
    RoleId.SENIOR_TRANSPORTER, RoleId.TRANSPORTER, RoleId.EMERGENCY_FOSTER,
    RoleId.FOSTER, RoleId.TRAPPER, RoleId.COMMUNITY_VOLUNTEER,
})

_STAFF_WAIVERS = (W.LIABILITY_WAIVER, W.NDA_AGREEMENT, W.BACKGROUND_CHECK_CONSENT)
_TRANSPORT_WAIVERS = (
    W.LIABILITY_WAIVER, W.VEHICLE_INDEMNIFICATION, W.BACKGROUND_CHECK_CONSENT,
    W.LOCATION_SHARING_CONSENT,
)
_FOSTER_WAIVERS = (W.LIABILITY_WAIVER, W.BACKGROUND_CHECK_CONSENT, W.PHOTO_CONSENT)


# =============================================================================
# ROLE DEFINITIONS
# =============================================================================
#
# Declaration order runs from most to least senior and is used as the
# tie-break when two roles share a level.
#
# =============================================================================

_DEFINITIONS: Tuple[RoleDefinition, ...] = (
    # -------------------------------------------------------------------------
    # STAFF
    # -------------------------------------------------------------------------
    RoleDefinition(
        id=RoleId.FOUNDATION_ADMIN,
        name="Foundation Administrator",
        description="Full system access. Final authority on all operational decisions.",
        level=100,
        category=RoleCategory.STAFF,
        permissions=frozenset(Permission),
        can_approve=frozenset({
            RoleId.REGIONAL_COORDINATOR, RoleId.LEAD_MODERATOR, RoleId.MODERATOR,
            RoleId.JUNIOR_MODERATOR,
        }) | _VOLUNTEER_ROLES,
        reports_to=None,
        min_age_years=21,
        required_ial=IAL.IAL3,
        requires_2fa=True,
        requires_background_check=True,
        requires_interview=True,
        required_waivers=_STAFF_WAIVERS,
        training_modules=("admin_core", "legal_compliance", "crisis_management", "all_sops"),
    ),
    RoleDefinition(
        id=RoleId.REGIONAL_COORDINATOR,
        name="Regional Coordinator",
        description="Manages operations for a geographic region. Oversees moderators and volunteers.",
        level=90,
        category=RoleCategory.STAFF,
        permissions=_perms(
            *_CASE_ALL, *_MATCH_ALL, *_VERIFICATION_ALL, *_VOLUNTEER_ALL, *_MODERATOR_ALL,
            *_ALERT_ALL, *_FIELD_ALL,
            "asset.view", "asset.checkout", "asset.checkin", "asset.transfer", "asset.audit",
            "system.audit_view", "system.emergency_mode_activate",
            "system.emergency_mode_deactivate",
            "data.pii_view", "data.address_view", "data.contact_view", "data.export",
            "training.view", "training.complete_own", "training.view_progress", "training.certify",
            "governance.view_sops", "governance.view_incidents",
            "governance.investigate_incidents", "governance.resolve_incidents",
            "grievance.submit", "grievance.view_own", "grievance.investigate", "grievance.resolve",
        ),
        can_approve=frozenset({
            RoleId.LEAD_MODERATOR, RoleId.MODERATOR, RoleId.JUNIOR_MODERATOR,
        }) | _VOLUNTEER_ROLES,
        reports_to=RoleId.FOUNDATION_ADMIN,
        min_age_years=21,
        required_ial=IAL.IAL2,
        requires_2fa=True,
        requires_background_check=True,
        requires_interview=True,
        required_waivers=_STAFF_WAIVERS,
        training_modules=("coordinator_core", "volunteer_management", "crisis_response", "all_sops"),
        recertification_days=365,
    ),

    # -------------------------------------------------------------------------
    # MODERATORS
    # -------------------------------------------------------------------------
    RoleDefinition(
        id=RoleId.LEAD_MODERATOR,
        name="Lead Moderator",
        description="Senior moderator with authority to handle escalations, disputes, and sensitive cases.",
        level=80,
        category=RoleCategory.MODERATOR,
        permissions=_perms(
            "case.view", "case.view_sensitive", "case.create", "case.edit", "case.edit_own",
            "case.close", "case.reopen", "case.escalate", "case.deescalate", "case.assign",
            "case.reassign", "case.archive",
            *_MATCH_ALL, *_VERIFICATION_ALL,
            "volunteer.view", "volunteer.approve", "volunteer.suspend", "volunteer.reinstate",
            "volunteer.dispatch", "volunteer.mentor", "volunteer.assign_buddy",
            "moderator.view", "moderator.assign_cases", "moderator.manage_shifts",
            "alert.view", "alert.trigger_t1", "alert.trigger_t2", "alert.trigger_t3",
            "alert.trigger_t4", "alert.cancel",
            "asset.view", "asset.checkout", "asset.checkin", "asset.transfer",
            *_FIELD_ALL,
            "system.audit_view",
            "data.pii_view", "data.address_view", "data.contact_view",
            "training.view", "training.complete_own", "training.view_progress",
            "governance.view_sops", "governance.view_incidents", "governance.investigate_incidents",
            "grievance.submit", "grievance.view_own",
        ),
        can_approve=frozenset({
            RoleId.MODERATOR, RoleId.JUNIOR_MODERATOR, RoleId.SENIOR_TRANSPORTER,
            RoleId.TRANSPORTER, RoleId.EMERGENCY_FOSTER, RoleId.FOSTER, RoleId.TRAPPER,
            RoleId.COMMUNITY_VOLUNTEER,
        }),
        reports_to=RoleId.REGIONAL_COORDINATOR,
        min_age_years=21,
        required_ial=IAL.IAL2,
        requires_2fa=True,
        requires_background_check=True,
        requires_interview=True,
        required_waivers=_STAFF_WAIVERS,
        training_modules=(
            "moderator_core", "lead_moderator_advanced", "dispute_resolution",
            "rainbow_bridge_protocol", "fraud_detection", "all_sops",
        ),
        prerequisite_roles=(RoleId.MODERATOR,),
        minimum_days_in_prerequisite=90,
        recertification_days=180,
        max_active_cases=25,
        max_shift_hours=10,
    ),
    RoleDefinition(
        id=RoleId.MODERATOR,
        name="Moderator",
        description="Core case management and volunteer coordination. Handles standard verifications.",
        level=70,
        category=RoleCategory.MODERATOR,
        permissions=_perms(
            "case.view", "case.create", "case.edit", "case.edit_own", "case.close",
            "case.escalate", "case.assign", "case.reassign",
            "match.view", "match.suggest", "match.verify", "match.reject", "match.notify_owner",
            "verification.view", "verification.initiate", "verification.add_evidence",
            "verification.verify_evidence", "verification.administer_test",
            "verification.approve", "verification.reject", "verification.set_hold",
            "verification.clear_hold", "verification.escalate_dispute",
            "volunteer.view", "volunteer.dispatch", "volunteer.mentor", "volunteer.assign_buddy",
            "moderator.view",
            "alert.view", "alert.trigger_t1", "alert.trigger_t2", "alert.trigger_t3",
            "asset.view", "asset.checkout", "asset.checkin",
            "field.view_operations", "field.start_operation", "field.checkin",
            "field.escalate_safety",
            "training.view", "training.complete_own",
            "governance.view_sops", "governance.view_incidents",
            "grievance.submit", "grievance.view_own",
        ),
        can_approve=frozenset({
            RoleId.JUNIOR_MODERATOR, RoleId.TRANSPORTER, RoleId.FOSTER, RoleId.COMMUNITY_VOLUNTEER,
        }),
        reports_to=RoleId.LEAD_MODERATOR,
        min_age_years=18,
        required_ial=IAL.IAL2,
        requires_2fa=True,
        requires_background_check=True,
        requires_interview=True,
        required_waivers=_STAFF_WAIVERS,
        training_modules=(
            "moderator_core", "match_verification", "owner_verification",
            "volunteer_coordination", "safety_protocols",
        ),
        prerequisite_roles=(RoleId.JUNIOR_MODERATOR,),
        minimum_days_in_prerequisite=30,
        recertification_days=180,
        max_active_cases=15,
        max_shift_hours=8,
    ),
    RoleDefinition(
        id=RoleId.JUNIOR_MODERATOR,
        name="Junior Moderator",
        description="Entry-level moderator. Handles basic triage and case updates under supervision.",
        level=60,
        category=RoleCategory.MODERATOR,
        permissions=_perms(
            "case.view", "case.create", "case.edit_own", "case.escalate",
            "match.view", "match.suggest",
            "verification.view", "verification.add_evidence",
            "volunteer.view",
            "moderator.view",
            "alert.view", "alert.trigger_t1",
            "asset.view",
            "field.view_operations", "field.start_operation", "field.checkin",
            "training.view", "training.complete_own",
            "governance.view_sops",
            "grievance.submit", "grievance.view_own",
        ),
        reports_to=RoleId.MODERATOR,
        min_age_years=18,
        required_ial=IAL.IAL1,
        requires_2fa=True,
        requires_background_check=True,
        requires_interview=True,
        required_waivers=(W.LIABILITY_WAIVER, W.BACKGROUND_CHECK_CONSENT),
        training_modules=("moderator_core", "case_triage", "communication_basics"),
        recertification_days=90,
        reapplication_cooldown_days=90,
        max_active_cases=8,
        max_shift_hours=6,
    ),

    # -------------------------------------------------------------------------
    # VOLUNTEERS
    # -------------------------------------------------------------------------
    RoleDefinition(
        id=RoleId.SENIOR_TRANSPORTER,
        name="Senior Transporter",
        description="Experienced transporter who can handle complex transports and mentor others.",
        level=50,
        category=RoleCategory.VOLUNTEER,
        permissions=_perms(*_FIELD_VOLUNTEER, "case.edit_own", "volunteer.mentor"),
        can_approve=frozenset({RoleId.TRANSPORTER}),
        reports_to=RoleId.MODERATOR,
        min_age_years=21,
        required_ial=IAL.IAL1,
        requires_background_check=True,
        required_waivers=_TRANSPORT_WAIVERS,
        training_modules=("transporter_core", "advanced_animal_handling", "emergency_response"),
        prerequisite_roles=(RoleId.TRANSPORTER,),
        minimum_days_in_prerequisite=60,
        recertification_days=365,
        max_concurrent_dispatches=3,
    ),
    RoleDefinition(
        id=RoleId.EMERGENCY_FOSTER,
        name="Emergency Foster",
        description="Provides immediate temporary housing in crisis situations.",
        level=45,
        category=RoleCategory.VOLUNTEER,
        permissions=_perms(
            *_BASE_VOLUNTEER, "asset.view", "asset.checkout", "asset.checkin",
            "field.view_operations", "field.checkin",
        ),
        reports_to=RoleId.MODERATOR,
        min_age_years=21,
        required_ial=IAL.IAL1,
        requires_background_check=True,
        requires_interview=True,
        required_waivers=_FOSTER_WAIVERS,
        training_modules=("foster_core", "emergency_intake", "basic_medical_care"),
        recertification_days=180,
        reapplication_cooldown_days=30,
    ),
    RoleDefinition(
        id=RoleId.TRAPPER,
        name="Trapper",
        description="Trained in humane trapping for difficult-to-catch animals.",
        level=45,
        category=RoleCategory.VOLUNTEER,
        permissions=_perms(*_FIELD_VOLUNTEER),
        reports_to=RoleId.MODERATOR,
        min_age_years=18,
        required_ial=IAL.IAL1,
        requires_background_check=True,
        requires_interview=True,
        required_waivers=(W.LIABILITY_WAIVER, W.BACKGROUND_CHECK_CONSENT, W.LOCATION_SHARING_CONSENT),
        training_modules=("trapper_core", "humane_trapping", "feral_animal_handling", "safety_protocols"),
        recertification_days=180,
        reapplication_cooldown_days=60,
    ),
    RoleDefinition(
        id=RoleId.TRANSPORTER,
        name="Transporter",
        description="Provides animal transport between locations.",
        level=40,
        category=RoleCategory.VOLUNTEER,
        permissions=_perms(*_FIELD_VOLUNTEER),
        reports_to=RoleId.MODERATOR,
        min_age_years=21,
        required_ial=IAL.IAL1,
        requires_background_check=True,
        required_waivers=_TRANSPORT_WAIVERS,
        training_modules=("transporter_core", "animal_handling_basics", "safety_protocols"),
        recertification_days=365,
        reapplication_cooldown_days=60,
        max_concurrent_dispatches=2,
    ),
    RoleDefinition(
        id=RoleId.FOSTER,
        name="Foster",
        description="Provides temporary housing for animals awaiting placement.",
        level=40,
        category=RoleCategory.VOLUNTEER,
        permissions=_perms(*_BASE_VOLUNTEER, "asset.view", "field.checkin"),
        reports_to=RoleId.MODERATOR,
        min_age_years=21,
        required_ial=IAL.IAL1,
        requires_background_check=True,
        requires_interview=True,
        required_waivers=_FOSTER_WAIVERS,
        training_modules=("foster_core", "animal_care_basics"),
        recertification_days=365,
        reapplication_cooldown_days=60,
    ),
    RoleDefinition(
        id=RoleId.COMMUNITY_VOLUNTEER,
        name="Community Volunteer",
        description="General volunteer for community outreach, flyering, and basic assistance.",
        level=30,
        category=RoleCategory.VOLUNTEER,
        permissions=_perms(*_BASE_VOLUNTEER),
        reports_to=RoleId.MODERATOR,
        min_age_years=16,
        required_ial=IAL.IAL0,
        required_waivers=(W.LIABILITY_WAIVER,),
        training_modules=("volunteer_orientation", "community_outreach"),
        auto_expire_days=365,
        reapplication_cooldown_days=30,
    ),

    # -------------------------------------------------------------------------
    # BASE
    # -------------------------------------------------------------------------
    RoleDefinition(
        id=RoleId.VERIFIED_USER,
        name="Verified User",
        description="User with verified identity who can report and claim animals.",
        level=20,
        category=RoleCategory.USER,
        permissions=_perms(
            "case.view", "case.create",
            "verification.initiate", "verification.add_evidence",
            "training.view",
            "grievance.submit", "grievance.view_own",
        ),
        min_age_years=13,
        required_ial=IAL.IAL1,
    ),
    RoleDefinition(
        id=RoleId.USER,
        name="User",
        description="Basic registered user.",
        level=10,
        category=RoleCategory.USER,
        permissions=_perms("case.view", "case.create", "grievance.submit", "grievance.view_own"),
        min_age_years=13,
        required_ial=IAL.IAL0,
    ),
)

ROLE_DEFINITIONS: Dict[RoleId, RoleDefinition] = {d.id: d for d in _DEFINITIONS}


# =============================================================================
# CATALOG
# =============================================================================

class RoleCatalog:
    """
    Pure lookup surface over the role table.

    No side effects. The only failure mode is an unknown role id, which
    raises UnknownRoleError.
    """

    def __init__(self, definitions: Optional[Mapping[RoleId, RoleDefinition]] = None):
        self._definitions: Dict[RoleId, RoleDefinition] = dict(
            definitions if definitions is not None else ROLE_DEFINITIONS
        )
        self._order: Dict[RoleId, int] = {rid: i for i, rid in enumerate(self._definitions)}
        self._validate()

    # -------------------------------------------------------------------------
    # Load-time validation
    # -------------------------------------------------------------------------

    def _validate(self) -> None:
        for role_id, definition in self._definitions.items():
            if definition.id != role_id:
                raise UnknownRoleError(f"Role table key {role_id} does not match definition id {definition.id}")
            referenced: List[RoleId] = list(definition.can_approve) + list(definition.prerequisite_roles)
            if definition.reports_to is not None:
                referenced.append(definition.reports_to)
            for ref in referenced:
                if ref not in self._definitions:
                    raise UnknownRoleError(f"Role {role_id.value} references unknown role {ref}")

        for role_id in self._definitions:
            seen = {role_id}
            current = self._definitions[role_id].reports_to
            while current is not None:
                if current in seen:
                    logger.error(f"Reporting cycle detected starting at {role_id.value}")
                    raise ReportingCycleError(f"Reporting chain of {role_id.value} contains a cycle at {current.value}")
                seen.add(current)
                current = self._definitions[current].reports_to

        logger.debug(f"Role catalog loaded with {len(self._definitions)} roles")

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _coerce(self, role_id) -> RoleId:
        if isinstance(role_id, RoleId) and role_id in self._definitions:
            return role_id
        try:
            coerced = RoleId(role_id)
        except ValueError:
            raise UnknownRoleError(f"Unknown role id: {role_id}")
        if coerced not in self._definitions:
            raise UnknownRoleError(f"Unknown role id: {role_id}")
        return coerced

    def get(self, role_id) -> RoleDefinition:
        return self._definitions[self._coerce(role_id)]

    def __contains__(self, role_id) -> bool:
        try:
            self._coerce(role_id)
        except UnknownRoleError:
            return False
        return True

    def __iter__(self):
        return iter(self._definitions.values())

    def all_roles(self) -> List[RoleDefinition]:
        return list(self._definitions.values())

    def level_of(self, role_id) -> int:
        return self.get(role_id).level

    def outranks(self, role_a, role_b) -> bool:
        return self.level_of(role_a) > self.level_of(role_b)

    def seniority_key(self, role_id) -> Tuple[int, int]:
        """Sort key: higher level first, then declaration order."""
        rid = self._coerce(role_id)
        return (-self._definitions[rid].level, self._order[rid])

    def reporting_chain(self, role_id) -> List[RoleId]:
        """Ancestors of ``role_id`` along reports_to, nearest first."""
        chain: List[RoleId] = []
        current = self.get(role_id).reports_to
        while current is not None:
            chain.append(current)
            current = self._definitions[current].reports_to
        return chain

    def can_approve(self, approver_role, target_role) -> bool:
        target = self._coerce(target_role)
        return target in self.get(approver_role).can_approve

    def roles_by_category(self, category: RoleCategory) -> List[RoleDefinition]:
        return [d for d in self._definitions.values() if d.category == category]

    def required_waivers(self, role_id) -> Tuple:
        return self.get(role_id).required_waivers

    def required_training(self, role_id) -> Tuple[str, ...]:
        return self.get(role_id).training_modules

    def roles_granting(self, permission: Permission) -> List[RoleId]:
        """Roles whose definition includes ``permission``, most senior first."""
        granting = [d.id for d in self._definitions.values() if permission in d.permissions]
        return sorted(granting, key=self.seniority_key)

    def permissions_for(self, role_ids: Iterable[RoleId]) -> FrozenSet[Permission]:
        result = set()
        for role_id in role_ids:
            result |= self.get(role_id).permissions
        return frozenset(result)


# Module-level default, built once at import
default_catalog = RoleCatalog()
