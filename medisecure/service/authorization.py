from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Optional, Union

from medisecure.logging import get_logger
from medisecure.service.errors import AuthenticationError, AuthorizationError, NotFoundError
from medisecure.storage.models import (
    SUPERUSER_ROLES,
    Identity,
    Organization,
    Plan,
    Resource,
    Role,
)
from medisecure.storage.store import ResourceLookup

logger = get_logger(__name__)

ROLE_PERMISSIONS: Dict[Role, FrozenSet[str]] = {
    Role.PATIENT: frozenset({
        "view_own_appointments",
        "create_own_appointments",
        "cancel_own_appointments",
        "view_own_medical_records",
        "view_own_prescriptions",
        "view_own_lab_results",
        "view_own_bills",
        "make_own_payments",
        "video_call_with_hcw",
        "message_hcw",
    }),
    Role.HCW: frozenset({
        "view_patient_list",
        "view_patient_records",
        "create_medical_notes",
        "create_prescriptions",
        "order_lab_tests",
        "create_referrals",
        "video_call_with_patient",
        "message_patient",
        "view_appointments",
        "update_appointments",
    }),
    Role.NURSE: frozenset({
        "view_patient_list",
        "view_patient_records",
        "create_medical_notes",
        "view_prescriptions",
        "administer_medications",
        "record_vitals",
        "triage_patients",
        "video_call_with_patient",
        "message_patient",
        "message_staff",
        "view_appointments",
    }),
    Role.PHARMACIST: frozenset({
        "view_prescriptions",
        "dispense_medications",
        "manage_inventory",
        "view_dispensing_history",
        "create_drug_interactions",
        "message_hcw",
        "message_patient",
        "message_staff",
        "video_call_with_patient",
    }),
    Role.LAB_TECHNICIAN: frozenset({
        "view_lab_orders",
        "process_lab_tests",
        "upload_lab_results",
        "manage_lab_inventory",
        "message_hcw",
        "message_staff",
        "video_call_with_patient",
    }),
    Role.RECEPTIONIST: frozenset({
        "view_patient_list",
        "create_appointments",
        "update_appointments",
        "cancel_appointments",
        "register_patients",
        "check_in_patients",
        "view_schedules",
        "message_staff",
    }),
    Role.ACCOUNTANT: frozenset({
        "view_all_bills",
        "create_bills",
        "process_payments",
        "view_transactions",
        "manage_insurance_claims",
        "view_financial_reports",
        "manage_billing_codes",
        "view_patient_billing_info",
    }),
    Role.LOGISTICS: frozenset({
        "manage_inventory",
        "track_supplies",
        "create_purchase_orders",
        "view_supply_reports",
        "manage_vendors",
        "message_staff",
    }),
    Role.ADMIN: frozenset({
        "manage_users",
        "manage_staff",
        "manage_departments",
        "manage_organizations",
        "view_audit_logs",
        "manage_system_settings",
        "view_all_data",
        "export_data",
        "manage_roles",
        "view_analytics",
    }),
    Role.COMMAND_CENTER: frozenset({
        "view_all_organizations",
        "view_system_metrics",
        "view_all_data",
        "manage_subscriptions",
        "view_all_analytics",
        "system_administration",
    }),
    Role.RADIOLOGIST: frozenset({
        "view_patient_list",
        "view_patient_records",
        "view_imaging_orders",
        "upload_imaging_results",
        "create_radiology_reports",
        "message_hcw",
        "message_staff",
    }),
    Role.DIETICIAN: frozenset({
        "view_patient_list",
        "view_patient_records",
        "create_meal_plans",
        "view_nutritional_assessments",
        "message_hcw",
        "message_patient",
        "message_staff",
    }),
    Role.IT_SUPPORT: frozenset({
        "view_system_logs",
        "manage_users",
        "view_audit_logs",
        "manage_technical_issues",
        "system_administration",
        "view_all_data",
        "export_data",
    }),
}

# The permission catalog; superusers hold every token in it and nothing else
ALL_PERMISSIONS: FrozenSet[str] = frozenset().union(*ROLE_PERMISSIONS.values())

_BASIC_FEATURES = frozenset({
    "scheduling",
    "ehr",
    "prescribing",
    "patient_portal",
    "ai_summary",
    "role_hcw",
    "role_receptionist",
    "admin_dashboard",
})
_PROFESSIONAL_FEATURES = _BASIC_FEATURES | {
    "lab",
    "pharmacy",
    "inpatient",
    "triage",
    "ai_proactive_care",
    "role_nurse",
    "role_pharmacist",
    "role_lab_technician",
}
_ENTERPRISE_FEATURES = _PROFESSIONAL_FEATURES | {
    "logistics",
    "data_io",
    "audit_log",
    "api_access",
    "role_logistics",
    "role_admin",
    "multi_tenancy",
    "staff_management",
}

PLAN_FEATURES: Dict[Plan, FrozenSet[str]] = {
    Plan.BASIC: _BASIC_FEATURES,
    Plan.PROFESSIONAL: frozenset(_PROFESSIONAL_FEATURES),
    Plan.ENTERPRISE: frozenset(_ENTERPRISE_FEATURES),
}

# Roles that see any record of their tenant for clinical resource types
CLINICAL_ROLES = frozenset({Role.HCW, Role.NURSE, Role.PHARMACIST, Role.LAB_TECHNICIAN})


class DenyReason:
    UNAUTHENTICATED = "unauthenticated"
    PERMISSION_DENIED = "permission_denied"
    NOT_OWNER = "not_owner"
    PLAN_RESTRICTED = "plan_restricted"
    CROSS_TENANT = "cross_tenant"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(True)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(False, reason)

    def __bool__(self) -> bool:
        return self.allowed


OwnershipPredicate = Callable[[Identity, Resource], bool]


class _FallbackRule:
    def __init__(self, name: str, allows: bool) -> None:
        self.name = name
        self.allows = allows

    def __repr__(self) -> str:
        return self.name


DENY_BY_DEFAULT = _FallbackRule("DenyByDefault", False)
FAIL_OPEN = _FallbackRule("FailOpen", True)

OwnershipRule = Union[OwnershipPredicate, _FallbackRule]


def _patient_owns(identity: Identity, resource: Resource) -> bool:
    return resource.attributes.get("patient_id") == identity.id


def _appointment_rule(identity: Identity, resource: Resource) -> bool:
    if identity.role == Role.PATIENT:
        return _patient_owns(identity, resource)
    if identity.role == Role.HCW:
        return resource.attributes.get("hcw_id") == identity.id
    return identity.role in (Role.RECEPTIONIST, Role.ADMIN)


def _medical_record_rule(identity: Identity, resource: Resource) -> bool:
    if identity.role == Role.PATIENT:
        return _patient_owns(identity, resource)
    return identity.role in CLINICAL_ROLES


def _bill_rule(identity: Identity, resource: Resource) -> bool:
    if identity.role == Role.PATIENT:
        return _patient_owns(identity, resource)
    return identity.role in (Role.ACCOUNTANT, Role.ADMIN)


def _prescription_rule(identity: Identity, resource: Resource) -> bool:
    if identity.role == Role.PATIENT:
        return _patient_owns(identity, resource)
    return identity.role in (Role.HCW, Role.PHARMACIST, Role.NURSE)


DEFAULT_OWNERSHIP_RULES: Dict[str, OwnershipRule] = {
    "appointment": _appointment_rule,
    "medical_record": _medical_record_rule,
    "bill": _bill_rule,
    "prescription": _prescription_rule,
}


def role_permissions(role: Role | str) -> FrozenSet[str]:
    return ROLE_PERMISSIONS.get(Role(role), frozenset())


def has_permission(identity: Optional[Identity], permission: str) -> bool:
    if identity is None:
        return False
    if identity.role in SUPERUSER_ROLES:
        return permission in ALL_PERMISSIONS
    return permission in role_permissions(identity.role)


def plan_features(plan: Plan | str) -> FrozenSet[str]:
    return PLAN_FEATURES.get(Plan(plan), frozenset())


def can_access_feature(organization: Optional[Organization], feature: str) -> bool:
    if organization is None:
        return False
    if organization.is_headquarters:
        return True
    plan = organization.plan_id or Plan.BASIC
    return feature in plan_features(plan)


class AuthorizationEngine:
    """Pure allow/deny decisions over four independent gates.

    Gates are evaluated in a fixed order (permission, tenant, ownership,
    plan) and the first denial wins. Only ``load_resource`` performs I/O.
    """

    def __init__(
        self,
        *,
        resources: Optional[ResourceLookup] = None,
        ownership_rules: Optional[Dict[str, OwnershipRule]] = None,
        unknown_resource_rule: _FallbackRule = DENY_BY_DEFAULT,
    ) -> None:
        self.resources = resources
        self.ownership_rules: Dict[str, OwnershipRule] = dict(
            DEFAULT_OWNERSHIP_RULES if ownership_rules is None else ownership_rules
        )
        self.unknown_resource_rule = unknown_resource_rule
        if unknown_resource_rule is FAIL_OPEN:
            logger.warning("ownership_fail_open_enabled")

    def register_ownership_rule(self, resource_type: str, rule: OwnershipRule) -> None:
        self.ownership_rules[resource_type] = rule

    def load_resource(self, resource_type: str, resource_id: str) -> Resource:
        if self.resources is None:
            raise NotFoundError("resource not found")
        resource = self.resources.get_resource(resource_type, resource_id)
        if resource is None:
            raise NotFoundError("resource not found", detail={"resource_type": resource_type})
        return resource

    def authorize(
        self,
        identity: Optional[Identity],
        permission: str,
        *,
        organization: Optional[Organization] = None,
        resource: Optional[Resource] = None,
        feature: Optional[str] = None,
        requested_organization_id: Optional[str] = None,
    ) -> Decision:
        if identity is None:
            return Decision.deny(DenyReason.UNAUTHENTICATED)

        if not has_permission(identity, permission):
            return self._denied(identity, DenyReason.PERMISSION_DENIED, permission=permission)

        if not self._tenant_allows(identity, requested_organization_id):
            logger.warning(
                "cross_tenant_attempt",
                user_id=identity.id,
                role=identity.role.value,
                current_organization_id=identity.current_organization_id,
                requested_organization_id=requested_organization_id,
            )
            return Decision.deny(DenyReason.CROSS_TENANT)

        if resource is not None and not self._ownership_allows(identity, resource):
            return self._denied(
                identity,
                DenyReason.NOT_OWNER,
                resource_type=resource.type,
                resource_id=resource.id,
            )

        if feature is not None and not self._plan_allows(identity, organization, feature):
            return self._denied(
                identity,
                DenyReason.PLAN_RESTRICTED,
                feature=feature,
                organization_id=organization.id if organization else None,
            )

        return Decision.allow()

    def enforce(self, identity: Optional[Identity], permission: str, **kwargs) -> None:
        decision = self.authorize(identity, permission, **kwargs)
        if decision.allowed:
            return
        if decision.reason == DenyReason.UNAUTHENTICATED:
            raise AuthenticationError("authentication required", reason="unauthenticated")
        raise AuthorizationError("access denied", reason=decision.reason)

    def _denied(self, identity: Identity, reason: str, **context) -> Decision:
        logger.info(
            "authorization_denied",
            user_id=identity.id,
            role=identity.role.value,
            reason=reason,
            **context,
        )
        return Decision.deny(reason)

    @staticmethod
    def _tenant_allows(identity: Identity, requested_organization_id: Optional[str]) -> bool:
        if identity.role == Role.COMMAND_CENTER or not requested_organization_id:
            return True
        return requested_organization_id == identity.current_organization_id

    def _ownership_allows(self, identity: Identity, resource: Resource) -> bool:
        if identity.role == Role.COMMAND_CENTER:
            return True
        # Tenant-bound superusers only see their own tenant's records
        if (
            resource.organization_id is not None
            and resource.organization_id != identity.current_organization_id
        ):
            return False
        if identity.role in SUPERUSER_ROLES:
            return True
        rule = self.ownership_rules.get(resource.type)
        if rule is None:
            rule = self.unknown_resource_rule
        if isinstance(rule, _FallbackRule):
            logger.warning(
                "ownership_rule_missing",
                resource_type=resource.type,
                fallback=rule.name,
                user_id=identity.id,
            )
            return rule.allows
        return bool(rule(identity, resource))

    @staticmethod
    def _plan_allows(
        identity: Identity, organization: Optional[Organization], feature: str
    ) -> bool:
        if identity.role == Role.COMMAND_CENTER:
            return True
        return can_access_feature(organization, feature)
