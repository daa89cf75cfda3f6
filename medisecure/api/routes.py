from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query

from medisecure.api.schemas import (
    AuthorizeRequest,
    AuthorizeResponse,
    BackupCodesResponse,
    CredentialResponse,
    Envelope,
    IdentityResponse,
    LinkOrganizationRequest,
    LoginRequest,
    MfaChallengeRequest,
    MfaDisableRequest,
    MfaProofRequest,
    MfaRequiredResponse,
    MfaStatusResponse,
    MfaVerifyRequest,
    OrganizationRegistrationResponse,
    OrganizationResponse,
    PendingRegistrationResponse,
    PermissionsResponse,
    RegisterOrganizationRequest,
    RegisterRequest,
    SessionResponse,
    SsoCompleteRequest,
    SsoStartResponse,
    SsoStatusResponse,
    SwitchOrganizationRequest,
    UnlinkOrganizationRequest,
)
from medisecure.logging import get_logger
from medisecure.service.auth import LoginResult
from medisecure.service.errors import AuthorizationError
from medisecure.service.mfa import MfaChallengeRequired
from medisecure.service.runtime import get_runtime
from medisecure.service.sso import SsoAuthenticated
from medisecure.service.tenancy import RequestContext
from medisecure.storage.models import (
    Identity,
    Organization,
    PendingSsoRegistration,
    Resource,
    Role,
    profile_to_dict,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_context(authorization: Optional[str] = Header(None)) -> RequestContext:
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return get_runtime().tenancy.resolve(token)


def _identity_response(identity: Identity) -> IdentityResponse:
    return IdentityResponse(
        id=identity.id,
        email=identity.email,
        name=identity.name,
        role=identity.role.value,
        organization_ids=list(identity.organization_ids),
        current_organization_id=identity.current_organization_id,
        profile=profile_to_dict(identity.profile),
        created_at=identity.created_at,
    )


def _organization_response(organization: Organization) -> OrganizationResponse:
    return OrganizationResponse(
        id=organization.id,
        name=organization.name,
        type=organization.type.value,
        plan_id=organization.plan_id.value,
        parent_organization_id=organization.parent_organization_id,
    )


def _session_response(result: LoginResult) -> SessionResponse:
    return SessionResponse(
        identity=_identity_response(result.identity),
        token=result.token.token,
        token_type=result.token.token_type,
        expires_at=result.token.expires_at,
    )


def _pending_response(
    registration: PendingSsoRegistration, *, include_ticket: bool
) -> PendingRegistrationResponse:
    return PendingRegistrationResponse(
        ticket=registration.ticket if include_ticket else None,
        name=registration.name,
        email=registration.email,
        role=registration.role.value,
        provider=registration.provider,
        expires_at=registration.expires_at,
    )


# -- local accounts -------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a patient account in the default organization.

    Raises:
        400: weak password or malformed input
        409: the e-mail is already registered
    """
    runtime = get_runtime()
    identity = runtime.auth.register(
        body.email,
        body.password,
        body.name,
        profile_fields={"date_of_birth": body.date_of_birth},
    )
    return Envelope(status="ok", data=_identity_response(identity))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with e-mail and password.

    Accounts with MFA enabled get an attempt id instead of a token and must
    finish through ``/auth/mfa/verify``.
    """
    runtime = get_runtime()
    outcome = await runtime.auth.login(body.email, body.password)
    if isinstance(outcome, MfaChallengeRequired):
        return Envelope(
            status="ok",
            data=MfaRequiredResponse(
                attempt_id=outcome.attempt_id,
                method=outcome.method.value,
                expires_at=outcome.expires_at,
                backup_codes_available=outcome.backup_codes_available,
            ),
        )
    return Envelope(status="ok", data=_session_response(outcome))


@router.post("/auth/register-org", response_model=Envelope, status_code=201, tags=["auth"])
async def register_organization(body: RegisterOrganizationRequest):
    runtime = get_runtime()
    organization, admin = runtime.auth.register_organization(
        body.org_name, body.org_type, body.admin_name, body.admin_email, body.admin_password
    )
    return Envelope(
        status="ok",
        data=OrganizationRegistrationResponse(
            organization=_organization_response(organization),
            admin=_identity_response(admin),
        ),
    )


# -- single sign-on -------------------------------------------------------------


@router.get("/auth/sso/status", response_model=Envelope, tags=["sso"])
async def sso_status():
    runtime = get_runtime()
    return Envelope(status="ok", data=SsoStatusResponse(**runtime.auth.sso_status()))


@router.get("/auth/google", response_model=Envelope, tags=["sso"])
async def sso_start():
    """Return the provider authorization URL; the client redirects the browser to it."""
    runtime = get_runtime()
    start = await runtime.auth.start_sso()
    return Envelope(status="ok", data=SsoStartResponse(**start))


@router.get("/auth/google/callback", response_model=Envelope, tags=["sso"])
async def sso_callback(
    code: str = Query(..., max_length=512),
    state: str = Query(..., max_length=128),
):
    """Provider redirect target.

    Returns a session for a known e-mail, otherwise a pending-registration
    ticket to finish with ``/auth/sso/complete``.
    """
    runtime = get_runtime()
    outcome = await runtime.auth.complete_sso_handshake(code, state)
    if isinstance(outcome, SsoAuthenticated):
        return Envelope(
            status="ok",
            data=_session_response(LoginResult(identity=outcome.identity, token=outcome.token)),
        )
    return Envelope(status="ok", data=_pending_response(outcome.registration, include_ticket=True))


@router.get("/auth/sso/pending/{ticket}", response_model=Envelope, tags=["sso"])
async def sso_pending(ticket: str = Path(..., max_length=256)):
    runtime = get_runtime()
    registration = await runtime.auth.fetch_pending_registration(ticket)
    return Envelope(status="ok", data=_pending_response(registration, include_ticket=False))


@router.post("/auth/sso/complete", response_model=Envelope, status_code=201, tags=["sso"])
async def sso_complete(body: SsoCompleteRequest):
    runtime = get_runtime()
    extra = {"date_of_birth": body.date_of_birth}
    if body.name:
        extra["name"] = body.name
    result = await runtime.auth.complete_sso_registration(body.ticket, extra)
    return Envelope(status="ok", data=_session_response(result))


# -- multi-factor authentication -----------------------------------------------


@router.post("/auth/mfa/{method}/enroll/begin", response_model=Envelope, tags=["mfa"])
async def mfa_enroll_begin(
    method: str = Path(..., max_length=32),
    ctx: RequestContext = Depends(get_context),
):
    runtime = get_runtime()
    material = await runtime.mfa.begin_enrollment(ctx.identity, method)
    return Envelope(status="ok", data=material)


@router.post("/auth/mfa/{method}/enroll/confirm", response_model=Envelope, tags=["mfa"])
async def mfa_enroll_confirm(
    body: MfaProofRequest,
    method: str = Path(..., max_length=32),
    ctx: RequestContext = Depends(get_context),
):
    """Verify the setup proof; the response carries the only copy of the backup codes."""
    runtime = get_runtime()
    codes = await runtime.mfa.confirm_enrollment(ctx.identity, method, body.proof)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.post("/auth/mfa/challenge", response_model=Envelope, tags=["mfa"])
async def mfa_challenge(body: MfaChallengeRequest):
    runtime = get_runtime()
    material = await runtime.auth.begin_mfa_challenge(body.attempt_id, body.method)
    return Envelope(status="ok", data=material)


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(body: MfaVerifyRequest):
    runtime = get_runtime()
    result = await runtime.auth.verify_mfa(body.attempt_id, body.method, body.proof)
    return Envelope(status="ok", data=_session_response(result))


@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    return Envelope(status="ok", data=MfaStatusResponse(**runtime.mfa.status(ctx.identity)))


@router.post("/auth/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(body: MfaDisableRequest, ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    runtime.mfa.disable(ctx.identity, body.password)
    return Envelope(status="ok", data={"enabled": False})


@router.post("/auth/mfa/backup-codes/regenerate", response_model=Envelope, tags=["mfa"])
async def mfa_regenerate_backup_codes(ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    codes = runtime.mfa.regenerate_backup_codes(ctx.identity)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.get("/auth/mfa/credentials", response_model=Envelope, tags=["mfa"])
async def mfa_credentials(ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    credentials = [
        CredentialResponse(**summary) for summary in runtime.mfa.list_credentials(ctx.identity)
    ]
    return Envelope(status="ok", data=credentials)


@router.delete("/auth/mfa/credentials/{credential_id}", response_model=Envelope, tags=["mfa"])
async def mfa_remove_credential(
    credential_id: str = Path(..., max_length=512),
    ctx: RequestContext = Depends(get_context),
):
    runtime = get_runtime()
    runtime.mfa.remove_credential(ctx.identity, credential_id)
    return Envelope(status="ok", data={"removed": credential_id})


@router.get("/auth/mfa/security-questions", response_model=Envelope, tags=["mfa"])
async def mfa_security_questions(ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data={"question_ids": runtime.mfa.security_question_ids(ctx.identity)}
    )


# -- session, tenancy and authorization ------------------------------------------


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def current_user(ctx: RequestContext = Depends(get_context)):
    data = _identity_response(ctx.identity).model_dump()
    if ctx.organization is not None:
        data["organization"] = _organization_response(ctx.organization).model_dump()
    return Envelope(status="ok", data=data)


@router.post("/users/switch-organization", response_model=Envelope, tags=["users"])
async def switch_organization(
    body: SwitchOrganizationRequest, ctx: RequestContext = Depends(get_context)
):
    runtime = get_runtime()
    result = runtime.auth.switch_organization(ctx.identity, body.organization_id)
    return Envelope(status="ok", data=_session_response(result))


@router.get("/users/me/permissions", response_model=Envelope, tags=["users"])
async def current_permissions(ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=PermissionsResponse(
            role=ctx.identity.role.value,
            permissions=runtime.auth.role_permissions(ctx.identity.role),
        ),
    )


@router.post("/authorize", response_model=Envelope, tags=["authorization"])
async def authorize(body: AuthorizeRequest, ctx: RequestContext = Depends(get_context)):
    """Evaluate a permission for the caller without performing the action."""
    runtime = get_runtime()
    resource: Optional[Resource] = None
    if body.resource_type and body.resource_id:
        resource = runtime.authorization.load_resource(body.resource_type, body.resource_id)
    decision = runtime.auth.authorize(
        ctx.identity,
        body.permission,
        resource=resource,
        feature=body.feature,
        requested_organization_id=body.organization_id,
    )
    return Envelope(
        status="ok", data=AuthorizeResponse(allowed=decision.allowed, reason=decision.reason)
    )


@router.post("/organizations/link", response_model=Envelope, tags=["organizations"])
async def link_organizations(
    body: LinkOrganizationRequest, ctx: RequestContext = Depends(get_context)
):
    runtime = get_runtime()
    runtime.authorization.enforce(
        ctx.identity,
        "manage_organizations",
        organization=ctx.organization,
        feature="multi_tenancy",
        requested_organization_id=body.child_id,
    )
    if (
        ctx.identity.role != Role.COMMAND_CENTER
        and body.parent_id not in ctx.identity.organization_ids
    ):
        logger.warning(
            "cross_tenant_attempt",
            user_id=ctx.identity.id,
            requested_organization_id=body.parent_id,
        )
        raise AuthorizationError("access denied", reason="cross_tenant")
    organization = runtime.auth.link_organizations(body.child_id, body.parent_id)
    return Envelope(status="ok", data=_organization_response(organization))


@router.post("/organizations/unlink", response_model=Envelope, tags=["organizations"])
async def unlink_organization(
    body: UnlinkOrganizationRequest, ctx: RequestContext = Depends(get_context)
):
    runtime = get_runtime()
    runtime.authorization.enforce(
        ctx.identity,
        "manage_organizations",
        organization=ctx.organization,
        feature="multi_tenancy",
        requested_organization_id=body.child_id,
    )
    organization = runtime.auth.unlink_organization(body.child_id)
    return Envelope(status="ok", data=_organization_response(organization))
