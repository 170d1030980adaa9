from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from edugate.config import get_settings, reset_settings_cache
from edugate.logging import get_logger
from edugate.service.auth import AuthOrchestrator, StoreGateway
from edugate.service.mfa import MFAService
from edugate.service.notifications import CodeDispatcher, EmailService, SmsGateway
from edugate.service.permissions import PermissionEvaluator
from edugate.service.rate_limit import MemoryRateLimitStore, RateLimiter, RateLimitStore
from edugate.service.sessions import SessionManager
from edugate.service.tokens import TokenLedger, TokenService
from edugate.storage.memory import (
    MemoryOneTimeTokenStore,
    MemoryStore,
    MemoryTokenLedger,
)
from edugate.storage.models import utcnow
from edugate.storage.redis_cache import RedisRateLimitStore, RedisTokenLedger

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """redis://:secret@host:6379 -> redis://:***@host:6379"""
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
        logger.info(
            "runtime_init_started",
            use_redis=self.settings.use_redis,
            test_mode=self.settings.test_mode,
        )

        self.store = MemoryStore(mfa_encryption_key=self.settings.mfa_secret_key)
        self.gateway = StoreGateway(
            self.store,
            timeout=self.settings.store_timeout_seconds,
            retry_backoff=self.settings.store_retry_backoff_seconds,
        )

        self.redis_rate_limits: Optional[RedisRateLimitStore] = None
        self.redis_ledger: Optional[RedisTokenLedger] = None
        if self.settings.use_redis and self.settings.redis_url:
            try:
                rate_store = RedisRateLimitStore(self.settings.redis_url)
                rate_store.verify_connection()
                self.redis_rate_limits = rate_store
                self.redis_ledger = RedisTokenLedger(self.settings.redis_url)
            except (RedisError, OSError) as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "USE_REDIS is set but Redis is unreachable; start Redis or unset USE_REDIS"
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        self.rate_limit_store: RateLimitStore = self.redis_rate_limits or MemoryRateLimitStore()
        self.token_ledger: TokenLedger = self.redis_ledger or MemoryTokenLedger()

        self.tokens = TokenService(self.settings, ledger=self.token_ledger)
        self.sessions = SessionManager(self.settings, self.tokens)
        self.email = EmailService.from_settings(self.settings)
        self.sms = SmsGateway(
            self.settings.sms_gateway_url,
            token=self.settings.sms_gateway_token,
            timeout=self.settings.dispatch_timeout_seconds,
        )
        self.mfa = MFAService(
            self.settings,
            credentials=self.gateway,
            dispatcher=CodeDispatcher(self.email, self.sms),
        )
        self.rate_limiter = RateLimiter(self.settings, store=self.rate_limit_store)
        self.permissions = PermissionEvaluator()
        self.one_time_tokens = MemoryOneTimeTokenStore()
        self.auth = AuthOrchestrator(
            self.settings,
            gateway=self.gateway,
            tokens=self.tokens,
            sessions=self.sessions,
            mfa=self.mfa,
            rate_limiter=self.rate_limiter,
            one_time_tokens=self.one_time_tokens,
            email=self.email,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.redis_rate_limits is not None,
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
            require_email_verification=self.settings.require_email_verification,
        )

    async def run_sweeps(self) -> Dict[str, int]:
        """One pass of every periodic cleanup; failures are logged, never raised."""
        batch = self.settings.sweep_batch_size
        results: Dict[str, int] = {}
        jobs = {
            "sessions": lambda: self.sessions.sweep_expired(batch),
            "session_retention": lambda: self.sessions.purge_retained(batch),
            "mfa_challenges": lambda: self.mfa.sweep_expired_challenges(batch),
            "one_time_tokens": lambda: self.one_time_tokens.prune(utcnow(), batch),
        }
        if isinstance(self.token_ledger, MemoryTokenLedger):
            jobs["refresh_ledger"] = lambda: self.token_ledger.prune(time.time(), batch)
        for name, job in jobs.items():
            try:
                results[name] = job()
            except Exception as exc:
                logger.error("sweep_failed", job=name, error_type=type(exc).__name__, error=str(exc))
                results[name] = 0
        try:
            results["rate_limits"] = await self.rate_limiter.sweep(batch)
        except (RedisError, OSError) as exc:
            logger.error("sweep_failed", job="rate_limits", error_type=type(exc).__name__, error=str(exc))
            results["rate_limits"] = 0
        return results

    async def sweep_forever(self) -> None:
        interval = self.settings.sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            results = await self.run_sweeps()
            logger.debug("sweep_completed", **results)

    async def close(self) -> None:
        if self.redis_rate_limits is not None:
            await self.redis_rate_limits.close()
        if self.redis_ledger is not None:
            await self.redis_ledger.close()


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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous = runtime
        if previous is not None and previous.redis_rate_limits is not None:
            try:
                asyncio.run(previous.close())
            except RuntimeError as exc:
                logger.warning("runtime_close_skipped", error=str(exc))
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
