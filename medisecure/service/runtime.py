from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from medisecure.config import get_settings, reset_settings_cache
from medisecure.logging import get_logger
from medisecure.service.auth import AuthService
from medisecure.service.authorization import DENY_BY_DEFAULT, FAIL_OPEN, AuthorizationEngine
from medisecure.service.mfa import MfaEngine
from medisecure.service.sso import SsoBridge
from medisecure.service.tenancy import TenantContext
from medisecure.service.tokens import TokenService
from medisecure.storage.errors import ConstraintViolation
from medisecure.storage.memory import MemoryStore
from medisecure.storage.models import Organization, OrganizationType, Plan
from medisecure.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        # Signing-key problems are fatal for the whole service
        self.tokens = TokenService(self.settings)

        self.store = MemoryStore(
            fs_root=self.settings.shared_fs_root,
            mfa_encryption_key=self.settings.mfa_encryption_key or self.settings.jwt_secret,
        )
        self._seed_default_organization()

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode so per-test event loops never own a pool
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for SSO tickets, MFA attempts and lockouts; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; pending registrations, "
                    "MFA attempts and lockouts are per-process only."
                ),
                mode=fallback_mode,
            )

        self.sso = SsoBridge(self.store, self.tokens, self.settings, cache=self.cache)
        self.mfa = MfaEngine(self.store, self.tokens, self.settings, cache=self.cache)
        self.tenancy = TenantContext(self.store, self.tokens)
        self.authorization = AuthorizationEngine(
            resources=self.store,
            unknown_resource_rule=FAIL_OPEN if self.settings.ownership_fail_open else DENY_BY_DEFAULT,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            tokens=self.tokens,
            sso=self.sso,
            mfa=self.mfa,
            tenancy=self.tenancy,
            authorization=self.authorization,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            sso_configured=self.sso.configured,
            default_organization_id=self.settings.default_organization_id,
        )

    def _seed_default_organization(self) -> None:
        org_id = self.settings.default_organization_id
        if self.store.get_organization(org_id) is not None:
            return
        try:
            self.store.create_organization(
                Organization(
                    id=org_id,
                    name=self.settings.default_organization_name,
                    type=OrganizationType.HOSPITAL,
                    plan_id=Plan(self.settings.default_organization_plan),
                )
            )
        except ConstraintViolation:
            return
        logger.info("default_organization_created", organization_id=org_id)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
