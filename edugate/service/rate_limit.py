from __future__ import annotations

import hashlib
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol, Tuple, Union

from edugate.config import RateLimitConfig, Settings
from edugate.logging import get_logger
from edugate.service.errors import TooManyAttemptsError
from edugate.storage.models import RateLimitEntry

logger = get_logger(__name__)


@dataclass(frozen=True)
class ClientIdentity:
    """Composite rate-limit subject so anonymous and signed-in callers never share a counter."""

    ip: str
    user_agent: str = ""
    user_id: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.ip}|{self.user_agent}|{self.user_id or 'anonymous'}"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int
    reset_at: float


class RateLimitStore(Protocol):
    async def hit(
        self, key: str, config: RateLimitConfig, now: float
    ) -> Tuple[bool, RateLimitEntry]: ...

    async def reset(self, key: str) -> None: ...

    async def sweep(self, now: float, batch_size: int) -> int: ...


class MemoryRateLimitStore:
    """Fixed-window counters with block escalation, guarded by one lock.

    The whole increment-compare-block sequence runs under the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, RateLimitEntry] = {}

    async def hit(
        self, key: str, config: RateLimitConfig, now: float
    ) -> Tuple[bool, RateLimitEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.blocked_until is not None and entry.blocked_until > now:
                # no increment while blocked
                return False, RateLimitEntry(**vars(entry))
            if entry is None or entry.reset_at <= now:
                entry = RateLimitEntry(key=key, count=1, reset_at=now + config.window_seconds)
                self._entries[key] = entry
                return True, RateLimitEntry(**vars(entry))
            entry.count += 1
            if entry.count > config.max_attempts:
                entry.blocked_until = now + config.effective_block_seconds
                return False, RateLimitEntry(**vars(entry))
            return True, RateLimitEntry(**vars(entry))

    async def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def get(self, key: str) -> Optional[RateLimitEntry]:
        with self._lock:
            entry = self._entries.get(key)
            return RateLimitEntry(**vars(entry)) if entry else None

    async def sweep(self, now: float, batch_size: int) -> int:
        """Drop entries whose window and block have both elapsed, a chunk per lock hold."""
        with self._lock:
            keys = list(self._entries)
        removed = 0
        for start in range(0, len(keys), batch_size):
            with self._lock:
                for key in keys[start : start + batch_size]:
                    entry = self._entries.get(key)
                    if entry is None or entry.reset_at > now:
                        continue
                    if entry.blocked_until is not None and entry.blocked_until > now:
                        continue
                    del self._entries[key]
                    removed += 1
        return removed


class RateLimiter:
    """Admission guard over a pluggable ``RateLimitStore``."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: Optional[RateLimitStore] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self.store: RateLimitStore = store if store is not None else MemoryRateLimitStore()
        self._clock = clock or time.time

    @staticmethod
    def normalize_key(identity: ClientIdentity, profile: str) -> str:
        """Hash the identity so delimiter characters in headers cannot collide keys."""
        digest = hashlib.sha256(identity.key.encode()).hexdigest()
        return f"rate:{profile}:{digest}"

    def _resolve(self, profile: Union[str, RateLimitConfig]) -> Tuple[str, RateLimitConfig]:
        if isinstance(profile, RateLimitConfig):
            name = (
                f"custom-{profile.window_seconds}-{profile.max_attempts}"
                f"-{profile.effective_block_seconds}"
            )
            return name, profile
        return profile, self.settings.rate_limit_profile(profile)

    async def check(
        self, identity: ClientIdentity, profile: Union[str, RateLimitConfig]
    ) -> RateLimitDecision:
        name, config = self._resolve(profile)
        now = float(self._clock())
        allowed, entry = await self.store.hit(self.normalize_key(identity, name), config, now)
        if allowed:
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, config.max_attempts - entry.count),
                retry_after=0,
                reset_at=entry.reset_at,
            )
        blocked_until = entry.blocked_until or entry.reset_at
        retry_after = max(1, math.ceil(blocked_until - now))
        logger.warning(
            "rate_limit_blocked",
            profile=name,
            ip=identity.ip,
            user_id=identity.user_id,
            retry_after=retry_after,
        )
        return RateLimitDecision(
            allowed=False, remaining=0, retry_after=retry_after, reset_at=blocked_until
        )

    async def enforce(
        self, identity: ClientIdentity, profile: Union[str, RateLimitConfig]
    ) -> RateLimitDecision:
        decision = await self.check(identity, profile)
        if not decision.allowed:
            raise TooManyAttemptsError(retry_after=decision.retry_after)
        return decision

    async def reset(self, identity: ClientIdentity, profile: Union[str, RateLimitConfig]) -> None:
        name, _ = self._resolve(profile)
        await self.store.reset(self.normalize_key(identity, name))

    async def sweep(self, batch_size: Optional[int] = None) -> int:
        removed = await self.store.sweep(
            float(self._clock()), batch_size or self.settings.sweep_batch_size
        )
        if removed:
            logger.debug("rate_limit_entries_swept", removed=removed)
        return removed


__all__ = [
    "ClientIdentity",
    "RateLimitDecision",
    "RateLimitStore",
    "MemoryRateLimitStore",
    "RateLimiter",
]
