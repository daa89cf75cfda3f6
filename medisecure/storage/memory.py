from __future__ import annotations

import base64
import copy
import hashlib
import json
import os
import threading
import uuid
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from medisecure.logging import get_logger
from medisecure.storage.errors import ConcurrentUpdate, ConstraintViolation
from medisecure.storage.models import (
    Identity,
    MfaEnrollment,
    MfaMethod,
    Organization,
    OrganizationType,
    PatientProfile,
    Plan,
    Profile,
    Resource,
    Role,
    SecurityAnswer,
    StaffProfile,
    WebAuthnCredential,
    profile_to_dict,
)


class MemoryStore:
    """Thread-safe in-memory credential store with optional JSON snapshotting.

    Records handed out are copies; callers write back through the update
    methods so that the per-record compare-and-set on MFA enrollments holds.
    """

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        mfa_encryption_key: str,
    ) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self._email_index: Dict[str, str] = {}
        self.organizations: Dict[str, Organization] = {}
        self.mfa_enrollments: Dict[str, MfaEnrollment] = {}
        self.resources: Dict[tuple[str, str], Resource] = {}
        # RLock so that nested helpers can re-enter while holding the lock
        self._data_lock = threading.RLock()
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str) -> Fernet:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        return Fernet(self._derive_cipher_key(key_material))

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if secret is None:
            return None
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if secret is None:
            return None
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("stored MFA secret cannot be decrypted with the configured key")

    # -- identities ---------------------------------------------------------

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def find_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            identity_id = self._email_index.get(self._normalize_email(email))
            if identity_id is None:
                return None
            return copy.deepcopy(self.identities[identity_id])

    def find_by_id(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return copy.deepcopy(identity) if identity else None

    def create(
        self,
        *,
        email: str,
        name: str,
        role: Role,
        organization_ids: List[str],
        profile: Profile,
        password_hash: Optional[str] = None,
    ) -> Identity:
        if not organization_ids:
            raise ConstraintViolation(
                "identity requires at least one organization", {"field": "organization_ids"}
            )
        normalized = self._normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            missing = [org for org in organization_ids if org not in self.organizations]
            if missing:
                raise ConstraintViolation(
                    "organization not found", {"organization_ids": missing}
                )
            identity = Identity(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                role=Role(role),
                organization_ids=list(dict.fromkeys(organization_ids)),
                current_organization_id=organization_ids[0],
                profile=profile,
                password_hash=password_hash,
            )
            self.identities[identity.id] = identity
            self._email_index[normalized] = identity.id
            self._persist_state()
            return copy.deepcopy(identity)

    def update_password_hash(self, identity_id: str, password_hash: str) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                raise ConstraintViolation("identity not found", {"identity_id": identity_id})
            identity.password_hash = password_hash
            self._persist_state()

    def update_current_organization(
        self, identity_id: str, organization_id: str
    ) -> Identity:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                raise ConstraintViolation("identity not found", {"identity_id": identity_id})
            if organization_id not in identity.organization_ids:
                raise ConstraintViolation(
                    "organization is not a membership",
                    {"organization_id": organization_id},
                )
            identity.current_organization_id = organization_id
            self._persist_state()
            return copy.deepcopy(identity)

    def add_membership(self, identity_id: str, organization_id: str) -> Identity:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                raise ConstraintViolation("identity not found", {"identity_id": identity_id})
            if organization_id not in self.organizations:
                raise ConstraintViolation(
                    "organization not found", {"organization_id": organization_id}
                )
            if organization_id not in identity.organization_ids:
                identity.organization_ids.append(organization_id)
                self._persist_state()
            return copy.deepcopy(identity)

    # -- MFA enrollments ----------------------------------------------------

    def get_mfa_enrollment(self, identity_id: str) -> MfaEnrollment:
        with self._data_lock:
            stored = self.mfa_enrollments.get(identity_id)
            if stored is None:
                return MfaEnrollment(user_id=identity_id)
            enrollment = copy.deepcopy(stored)
        enrollment.totp_secret = self._decrypt_secret(enrollment.totp_secret)
        return enrollment

    def update_mfa_enrollment(
        self, enrollment: MfaEnrollment, *, expected_version: int
    ) -> MfaEnrollment:
        record = copy.deepcopy(enrollment)
        record.totp_secret = self._encrypt_secret(record.totp_secret)
        with self._data_lock:
            if enrollment.user_id not in self.identities:
                raise ConstraintViolation(
                    "identity not found for mfa", {"identity_id": enrollment.user_id}
                )
            current = self.mfa_enrollments.get(enrollment.user_id)
            current_version = current.version if current else 0
            if current_version != expected_version:
                raise ConcurrentUpdate(
                    f"mfa_enrollment:{enrollment.user_id}", expected_version, current_version
                )
            record.version = current_version + 1
            self.mfa_enrollments[enrollment.user_id] = record
            self._persist_state()
        saved = copy.deepcopy(enrollment)
        saved.version = record.version
        return saved

    # -- organizations ------------------------------------------------------

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with self._data_lock:
            organization = self.organizations.get(organization_id)
            return copy.deepcopy(organization) if organization else None

    def create_organization(self, organization: Organization) -> Organization:
        with self._data_lock:
            if organization.id in self.organizations:
                raise ConstraintViolation(
                    "organization already exists", {"organization_id": organization.id}
                )
            self.organizations[organization.id] = copy.deepcopy(organization)
            self._persist_state()
            return copy.deepcopy(organization)

    def update_organization(self, organization: Organization) -> Organization:
        with self._data_lock:
            if organization.id not in self.organizations:
                raise ConstraintViolation(
                    "organization not found", {"organization_id": organization.id}
                )
            self.organizations[organization.id] = copy.deepcopy(organization)
            self._persist_state()
            return copy.deepcopy(organization)

    def list_organizations(self) -> List[Organization]:
        with self._data_lock:
            return [copy.deepcopy(org) for org in self.organizations.values()]

    # -- domain resources (ownership lookups) -------------------------------

    def put_resource(self, resource: Resource) -> None:
        with self._data_lock:
            self.resources[(resource.type, resource.id)] = copy.deepcopy(resource)

    def get_resource(self, resource_type: str, resource_id: str) -> Optional[Resource]:
        with self._data_lock:
            resource = self.resources.get((resource_type, resource_id))
            return copy.deepcopy(resource) if resource else None

    # -- snapshotting -------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        with self._data_lock:
            payload = {
                "organizations": [
                    self._serialize_organization(org) for org in self.organizations.values()
                ],
                "identities": [
                    self._serialize_identity(identity) for identity in self.identities.values()
                ],
                "mfa_enrollments": [
                    self._serialize_enrollment(enrollment)
                    for enrollment in self.mfa_enrollments.values()
                ],
            }
            path = self._state_path()
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(payload))
            os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.error("credential_store_load_failed", error=str(exc), path=str(path))
            return False
        with self._data_lock:
            self.organizations = {
                org["id"]: self._deserialize_organization(org)
                for org in data.get("organizations", [])
            }
            self.identities = {
                raw["id"]: self._deserialize_identity(raw) for raw in data.get("identities", [])
            }
            self._email_index = {
                identity.email: identity.id for identity in self.identities.values()
            }
            self.mfa_enrollments = {
                raw["user_id"]: self._deserialize_enrollment(raw)
                for raw in data.get("mfa_enrollments", [])
            }
        self.logger.info(
            "credential_store_loaded",
            identities=len(self.identities),
            organizations=len(self.organizations),
        )
        return True

    @staticmethod
    def _serialize_organization(org: Organization) -> dict:
        return {
            "id": org.id,
            "name": org.name,
            "type": org.type.value,
            "plan_id": org.plan_id.value,
            "parent_organization_id": org.parent_organization_id,
            "created_at": org.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_organization(data: dict) -> Organization:
        return Organization(
            id=data["id"],
            name=data["name"],
            type=OrganizationType(data["type"]),
            plan_id=Plan(data["plan_id"]),
            parent_organization_id=data.get("parent_organization_id"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    @staticmethod
    def _serialize_identity(identity: Identity) -> dict:
        return {
            "id": identity.id,
            "email": identity.email,
            "name": identity.name,
            "role": identity.role.value,
            "organization_ids": list(identity.organization_ids),
            "current_organization_id": identity.current_organization_id,
            "profile": profile_to_dict(identity.profile),
            "password_hash": identity.password_hash,
            "created_at": identity.created_at.isoformat(),
        }

    @staticmethod
    def _deserialize_identity(data: dict) -> Identity:
        raw_profile = dict(data.get("profile") or {})
        if raw_profile.pop("kind", "staff") == "patient":
            profile: Profile = PatientProfile(
                date_of_birth=_maybe_date(raw_profile.get("date_of_birth")),
                last_visit=_maybe_date(raw_profile.get("last_visit")),
            )
        else:
            profile = StaffProfile(
                specialization=raw_profile.get("specialization"),
                department_ids=tuple(raw_profile.get("department_ids") or ()),
                certification_id=raw_profile.get("certification_id"),
            )
        return Identity(
            id=data["id"],
            email=data["email"],
            name=data["name"],
            role=Role(data["role"]),
            organization_ids=list(data["organization_ids"]),
            current_organization_id=data["current_organization_id"],
            profile=profile,
            password_hash=data.get("password_hash"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    @staticmethod
    def _serialize_enrollment(enrollment: MfaEnrollment) -> dict:
        # totp_secret is already encrypted at rest
        return {
            "user_id": enrollment.user_id,
            "enabled": enrollment.enabled,
            "method": enrollment.method.value if enrollment.method else None,
            "totp_secret": enrollment.totp_secret,
            "webauthn_credentials": [
                {
                    "credential_id": cred.credential_id,
                    "public_key": cred.public_key,
                    "sign_count": cred.sign_count,
                    "device_name": cred.device_name,
                    "created_at": cred.created_at.isoformat(),
                    "last_used_at": cred.last_used_at.isoformat() if cred.last_used_at else None,
                    "flagged": cred.flagged,
                }
                for cred in enrollment.webauthn_credentials
            ],
            "backup_code_hashes": list(enrollment.backup_code_hashes),
            "security_answers": [
                {"question_id": answer.question_id, "answer_hash": answer.answer_hash}
                for answer in enrollment.security_answers
            ],
            "enrolled_at": enrollment.enrolled_at.isoformat() if enrollment.enrolled_at else None,
            "version": enrollment.version,
        }

    @staticmethod
    def _deserialize_enrollment(data: dict) -> MfaEnrollment:
        return MfaEnrollment(
            user_id=data["user_id"],
            enabled=bool(data.get("enabled")),
            method=MfaMethod(data["method"]) if data.get("method") else None,
            totp_secret=data.get("totp_secret"),
            webauthn_credentials=[
                WebAuthnCredential(
                    credential_id=cred["credential_id"],
                    public_key=cred["public_key"],
                    sign_count=int(cred.get("sign_count", 0)),
                    device_name=cred.get("device_name"),
                    created_at=datetime.fromisoformat(cred["created_at"]),
                    last_used_at=(
                        datetime.fromisoformat(cred["last_used_at"])
                        if cred.get("last_used_at")
                        else None
                    ),
                    flagged=bool(cred.get("flagged")),
                )
                for cred in data.get("webauthn_credentials", [])
            ],
            backup_code_hashes=list(data.get("backup_code_hashes", [])),
            security_answers=[
                SecurityAnswer(question_id=raw["question_id"], answer_hash=raw["answer_hash"])
                for raw in data.get("security_answers", [])
            ],
            enrolled_at=(
                datetime.fromisoformat(data["enrolled_at"]) if data.get("enrolled_at") else None
            ),
            version=int(data.get("version", 0)),
        )


def _maybe_date(value: Any) -> Optional[date]:
    if not value:
        return None
    return date.fromisoformat(value)
