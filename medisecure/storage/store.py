from __future__ import annotations

from typing import List, Optional, Protocol

from medisecure.storage.models import (
    Identity,
    MfaEnrollment,
    Organization,
    Resource,
    Role,
)


class CredentialStore(Protocol):
    """Persistence contract the auth core depends on.

    Every method is atomic per record. ``update_mfa_enrollment`` is a
    compare-and-set on ``MfaEnrollment.version`` and raises
    ``ConcurrentUpdate`` when the stored version moved on.
    """

    def find_by_email(self, email: str) -> Optional[Identity]: ...

    def find_by_id(self, identity_id: str) -> Optional[Identity]: ...

    def create(
        self,
        *,
        email: str,
        name: str,
        role: Role,
        organization_ids: List[str],
        profile,
        password_hash: Optional[str] = None,
    ) -> Identity: ...

    def update_password_hash(self, identity_id: str, password_hash: str) -> None: ...

    def update_current_organization(
        self, identity_id: str, organization_id: str
    ) -> Identity: ...

    def get_mfa_enrollment(self, identity_id: str) -> MfaEnrollment: ...

    def update_mfa_enrollment(
        self, enrollment: MfaEnrollment, *, expected_version: int
    ) -> MfaEnrollment: ...

    def get_organization(self, organization_id: str) -> Optional[Organization]: ...

    def create_organization(self, organization: Organization) -> Organization: ...

    def update_organization(self, organization: Organization) -> Organization: ...

    def list_organizations(self) -> List[Organization]: ...


class ResourceLookup(Protocol):
    """Single-record lookup for domain resources, used only by ownership checks."""

    def get_resource(self, resource_type: str, resource_id: str) -> Optional[Resource]: ...
