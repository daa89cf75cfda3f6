from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    PATIENT = "patient"
    HCW = "hcw"
    ADMIN = "admin"
    NURSE = "nurse"
    PHARMACIST = "pharmacist"
    LAB_TECHNICIAN = "lab_technician"
    RECEPTIONIST = "receptionist"
    LOGISTICS = "logistics"
    COMMAND_CENTER = "command_center"
    ACCOUNTANT = "accountant"
    RADIOLOGIST = "radiologist"
    DIETICIAN = "dietician"
    IT_SUPPORT = "it_support"


# Roles that implicitly hold every permission
SUPERUSER_ROLES = frozenset({Role.ADMIN, Role.COMMAND_CENTER})


class OrganizationType(str, Enum):
    HOSPITAL = "Hospital"
    CLINIC = "Clinic"
    PHARMACY = "Pharmacy"
    LABORATORY = "Laboratory"
    HEADQUARTERS = "Headquarters"


class Plan(str, Enum):
    BASIC = "basic"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


@dataclass
class Organization:
    id: str
    name: str
    type: OrganizationType = OrganizationType.HOSPITAL
    plan_id: Plan = Plan.BASIC
    parent_organization_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_headquarters(self) -> bool:
        return self.type == OrganizationType.HEADQUARTERS


@dataclass(frozen=True)
class PatientProfile:
    """Profile fields carried only by patient identities."""

    date_of_birth: Optional[date] = None
    last_visit: Optional[date] = None
    kind: str = "patient"


@dataclass(frozen=True)
class StaffProfile:
    """Profile fields carried by every non-patient role."""

    specialization: Optional[str] = None
    department_ids: tuple = ()
    certification_id: Optional[str] = None
    kind: str = "staff"


Profile = Union[PatientProfile, StaffProfile]


def _parse_date(value: Any, field_name: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError as exc:
            raise ValueError(f"{field_name} must be an ISO date") from exc
    raise ValueError(f"{field_name} must be an ISO date")


def build_profile(role: Role | str, fields: Optional[Dict[str, Any]] = None) -> Profile:
    """Construct the role-specific profile variant from loosely typed input.

    Unknown keys are ignored. Raises ``ValueError`` when a recognised field
    cannot be parsed.
    """
    fields = fields or {}
    if Role(role) == Role.PATIENT:
        return PatientProfile(
            date_of_birth=_parse_date(
                fields.get("date_of_birth", fields.get("dateOfBirth")), "date_of_birth"
            ),
            last_visit=_parse_date(fields.get("last_visit"), "last_visit"),
        )
    departments = fields.get("department_ids") or ()
    if isinstance(departments, str):
        departments = (departments,)
    return StaffProfile(
        specialization=fields.get("specialization"),
        department_ids=tuple(departments),
        certification_id=fields.get("certification_id"),
    )


def profile_to_dict(profile: Profile) -> Dict[str, Any]:
    data = asdict(profile)
    for key, value in data.items():
        if isinstance(value, date):
            data[key] = value.isoformat()
        elif isinstance(value, tuple):
            data[key] = list(value)
    return data


@dataclass
class Identity:
    id: str
    email: str
    name: str
    role: Role
    organization_ids: List[str]
    current_organization_id: str
    profile: Profile
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_member(self, organization_id: str) -> bool:
        return organization_id in self.organization_ids

    @property
    def is_sso_only(self) -> bool:
        return self.password_hash is None


class MfaMethod(str, Enum):
    TOTP = "totp"
    WEBAUTHN = "webauthn"
    SECURITY_QUESTIONS = "security_questions"
    # Verification-only fallback, never enrolled on its own
    BACKUP_CODE = "backup_code"


ENROLLABLE_METHODS = (MfaMethod.TOTP, MfaMethod.WEBAUTHN, MfaMethod.SECURITY_QUESTIONS)


@dataclass
class WebAuthnCredential:
    credential_id: str
    public_key: str
    sign_count: int = 0
    device_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None
    flagged: bool = False

    def summary(self) -> Dict[str, Any]:
        return {
            "credential_id": self.credential_id,
            "device_name": self.device_name,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
            "flagged": self.flagged,
        }


@dataclass
class SecurityAnswer:
    question_id: str
    answer_hash: str


@dataclass
class MfaEnrollment:
    """Per-identity MFA state. ``version`` backs compare-and-set updates."""

    user_id: str
    enabled: bool = False
    method: Optional[MfaMethod] = None
    totp_secret: Optional[str] = None
    webauthn_credentials: List[WebAuthnCredential] = field(default_factory=list)
    backup_code_hashes: List[str] = field(default_factory=list)
    security_answers: List[SecurityAnswer] = field(default_factory=list)
    enrolled_at: Optional[datetime] = None
    version: int = 0

    def find_credential(self, credential_id: str) -> Optional[WebAuthnCredential]:
        for credential in self.webauthn_credentials:
            if credential.credential_id == credential_id:
                return credential
        return None


@dataclass
class PendingSsoRegistration:
    ticket: str
    name: str
    email: str
    role: Role
    provider: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ticket": self.ticket,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "provider": self.provider,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingSsoRegistration":
        return cls(
            ticket=data["ticket"],
            name=data.get("name") or "",
            email=data["email"],
            role=Role(data.get("role", Role.PATIENT.value)),
            provider=data.get("provider", "google"),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


class MfaAttemptState(str, Enum):
    METHOD_SELECTION = "method_selection"
    CHALLENGED = "challenged"
    VERIFIED = "verified"
    FAILED = "failed"


@dataclass
class MfaAttempt:
    """A login that passed the password check and now awaits a second factor."""

    id: str
    user_id: str
    organization_id: str
    expires_at: datetime
    state: MfaAttemptState = MfaAttemptState.METHOD_SELECTION
    method: Optional[MfaMethod] = None
    challenge: Optional[str] = None
    failures: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in (MfaAttemptState.VERIFIED, MfaAttemptState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "expires_at": self.expires_at.isoformat(),
            "state": self.state.value,
            "method": self.method.value if self.method else None,
            "challenge": self.challenge,
            "failures": self.failures,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MfaAttempt":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            organization_id=data["organization_id"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            state=MfaAttemptState(data.get("state", MfaAttemptState.METHOD_SELECTION.value)),
            method=MfaMethod(data["method"]) if data.get("method") else None,
            challenge=data.get("challenge"),
            failures=int(data.get("failures", 0)),
        )


@dataclass
class EnrollmentChallenge:
    """Server-side material from ``begin`` that ``confirm`` must match."""

    user_id: str
    method: MfaMethod
    expires_at: datetime
    material: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "method": self.method.value,
            "expires_at": self.expires_at.isoformat(),
            "material": self.material,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnrollmentChallenge":
        return cls(
            user_id=data["user_id"],
            method=MfaMethod(data["method"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            material=dict(data.get("material") or {}),
        )


@dataclass
class Resource:
    """Ownership attributes of a domain record, as returned by a resource lookup."""

    type: str
    id: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    organization_id: Optional[str] = None
