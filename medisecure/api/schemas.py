from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Maximum nesting accepted in free-form proof payloads
MAX_JSON_DEPTH = 8
MAX_STRING_LENGTH = 16384


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested payloads before they reach the verifiers.

    Raises:
        ValueError: If depth exceeds maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)
    elif isinstance(obj, str) and len(obj) > MAX_STRING_LENGTH:
        raise ValueError(f"string value exceeds {MAX_STRING_LENGTH} characters")


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "expired",
    "mfa_failed",
    "not_configured",
    "identity_provider_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# -- requests -----------------------------------------------------------------


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)
    name: str = Field(..., max_length=200)
    date_of_birth: Optional[str] = Field(default=None, max_length=32)


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)


class RegisterOrganizationRequest(BaseModel):
    org_name: str = Field(..., max_length=200)
    org_type: str = Field(..., max_length=32)
    admin_name: str = Field(..., max_length=200)
    admin_email: str = Field(..., max_length=254)
    admin_password: str = Field(..., max_length=256)


class SsoCompleteRequest(BaseModel):
    ticket: str = Field(..., max_length=256)
    date_of_birth: Optional[str] = Field(default=None, max_length=32)
    name: Optional[str] = Field(default=None, max_length=200)


class MfaProofRequest(BaseModel):
    proof: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("proof")
    @classmethod
    def _limit_depth(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class MfaChallengeRequest(BaseModel):
    attempt_id: str = Field(..., max_length=128)
    method: str = Field(..., max_length=32)


class MfaVerifyRequest(MfaProofRequest):
    attempt_id: str = Field(..., max_length=128)
    method: str = Field(..., max_length=32)


class MfaDisableRequest(BaseModel):
    password: str = Field(..., max_length=256)


class SwitchOrganizationRequest(BaseModel):
    organization_id: str = Field(..., max_length=128)


class AuthorizeRequest(BaseModel):
    permission: str = Field(..., max_length=128)
    resource_type: Optional[str] = Field(default=None, max_length=64)
    resource_id: Optional[str] = Field(default=None, max_length=128)
    feature: Optional[str] = Field(default=None, max_length=64)
    organization_id: Optional[str] = Field(default=None, max_length=128)


class LinkOrganizationRequest(BaseModel):
    child_id: str = Field(..., max_length=128)
    parent_id: str = Field(..., max_length=128)


class UnlinkOrganizationRequest(BaseModel):
    child_id: str = Field(..., max_length=128)


# -- responses ----------------------------------------------------------------


class IdentityResponse(BaseModel):
    id: str
    email: str
    name: str
    role: str
    organization_ids: List[str]
    current_organization_id: str
    profile: Dict[str, Any]
    created_at: datetime


class OrganizationResponse(BaseModel):
    id: str
    name: str
    type: str
    plan_id: str
    parent_organization_id: Optional[str] = None


class SessionResponse(BaseModel):
    identity: IdentityResponse
    token: str
    token_type: str = "bearer"
    expires_at: int


class MfaRequiredResponse(BaseModel):
    mfa_required: Literal[True] = True
    attempt_id: str
    method: str
    expires_at: datetime
    backup_codes_available: bool


class OrganizationRegistrationResponse(BaseModel):
    organization: OrganizationResponse
    admin: IdentityResponse


class SsoStatusResponse(BaseModel):
    provider: str
    configured: bool
    message: str


class SsoStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


class PendingRegistrationResponse(BaseModel):
    status: Literal["pending"] = "pending"
    ticket: Optional[str] = None
    name: str
    email: str
    role: str
    provider: str
    expires_at: datetime


class BackupCodesResponse(BaseModel):
    backup_codes: List[str]


class MfaStatusResponse(BaseModel):
    enabled: bool
    method: Optional[str] = None
    enrolled_at: Optional[datetime] = None
    backup_codes_remaining: int = 0
    webauthn_credentials: int = 0


class CredentialResponse(BaseModel):
    credential_id: str
    device_name: Optional[str] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None
    flagged: bool = False


class AuthorizeResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None


class PermissionsResponse(BaseModel):
    role: str
    permissions: List[str]
