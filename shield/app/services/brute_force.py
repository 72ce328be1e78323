"""Brute force protection for authentication endpoints.

Tracks failed authentication attempts per identifier in the shared counter
store. Each failure increases the delay imposed on the next attempt; once
the failure budget is spent the identifier is locked out for a fixed
period.

States:
    Open    no lockout record; attempts below max_attempts
    Locked  lockout record with locked_until in the future

Locked always returns to Open, either when the lockout expires or when it
is cleared by a successful login or an administrator.

check_attempt is advisory. It does not count anything by itself, so every
call must be followed by record_failed_attempt or record_successful_attempt
once the real authentication result is known. LoginGuard in
shield.app.middleware.login_guard enforces that pairing.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from shield.app.core.logging import get_logger
from shield.app.core.store import Clock, CounterStore, current_time_ms
from shield.app.exceptions import ConfigurationError, StoreUnavailableError
from shield.app.services.audit import (
    ACCOUNT_LOCKED,
    ACCOUNT_UNLOCKED,
    BRUTE_FORCE_DETECTED,
    AuditEvent,
    AuditSink,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class BruteForceConfig:
    """Brute force protection policy. All durations are in milliseconds."""
    max_attempts: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 5 * 60 * 1000
    window_ms: int = 15 * 60 * 1000
    lockout_duration_ms: int = 30 * 60 * 1000
    key_prefix: str = "auth"

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ConfigurationError("max_attempts must be positive")
        if self.base_delay_ms < 0:
            raise ConfigurationError("base_delay_ms must not be negative")
        if self.max_delay_ms < self.base_delay_ms:
            raise ConfigurationError("max_delay_ms must be at least base_delay_ms")
        if self.window_ms <= 0:
            raise ConfigurationError("window_ms must be positive")
        if self.lockout_duration_ms <= 0:
            raise ConfigurationError("lockout_duration_ms must be positive")
        if not self.key_prefix:
            raise ConfigurationError("key_prefix must not be empty")


@dataclass
class BruteForceCheckResult:
    """Verdict for a single authentication attempt."""
    allowed: bool
    attempts_remaining: int
    delay_ms: int
    locked_until: Optional[datetime] = None
    message: Optional[str] = None


@dataclass
class BruteForceStatus:
    """Read-only snapshot of an identifier's protection state."""
    attempts: int
    is_locked: bool
    attempts_remaining: int
    locked_until: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "attempts": self.attempts,
            "isLocked": self.is_locked,
            "lockedUntil": self.locked_until.isoformat() if self.locked_until else None,
            "attemptsRemaining": self.attempts_remaining,
        }


def _to_datetime(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


class BruteForceProtection:
    """Progressive delay and lockout for authentication attempts.

    Store records:
    - {prefix}:attempts:{identifier} - failure count, TTL window_ms from the
      first failure
    - {prefix}:lockout:{identifier}  - locked_until epoch ms, TTL
      lockout_duration_ms

    Store outages fail open: attempts are allowed without delay and a
    warning is logged.
    """

    def __init__(
        self,
        store: CounterStore,
        config: Optional[BruteForceConfig] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
    ):
        self._store = store
        self._config = config or BruteForceConfig()
        self._audit = audit
        self._clock = clock or current_time_ms

    @property
    def config(self) -> BruteForceConfig:
        return self._config

    def _attempts_key(self, identifier: str) -> str:
        return f"{self._config.key_prefix}:attempts:{identifier}"

    def _lockout_key(self, identifier: str) -> str:
        return f"{self._config.key_prefix}:lockout:{identifier}"

    def calculate_delay(self, attempts: int) -> int:
        """Exponential backoff for the attempt following `attempts` failures."""
        if attempts <= 0:
            return 0
        delay = self._config.base_delay_ms * 2 ** (attempts - 1)
        return min(delay, self._config.max_delay_ms)

    def _emit(self, event: AuditEvent) -> None:
        if self._audit is None:
            return
        try:
            self._audit.record(event)
        except Exception:
            logger.exception("Audit sink rejected event", extra={"identifier": event.identifier})

    def _fail_open(self) -> BruteForceCheckResult:
        return BruteForceCheckResult(
            allowed=True,
            attempts_remaining=self._config.max_attempts,
            delay_ms=0,
        )

    async def check_attempt(self, identifier: str) -> BruteForceCheckResult:
        """Decide whether an authentication attempt may proceed.

        Does not count the attempt; see the module docstring.
        """
        try:
            return await self._check_attempt(identifier)
        except StoreUnavailableError as e:
            logger.warning(
                f"Brute force store unavailable, failing open: {e}",
                extra={"identifier": identifier},
            )
        except Exception as e:
            logger.warning(
                f"Unexpected brute force check error, failing open: {e}",
                extra={"identifier": identifier},
                exc_info=True,
            )
        return self._fail_open()

    async def _check_attempt(self, identifier: str) -> BruteForceCheckResult:
        now = self._clock()
        attempts_key = self._attempts_key(identifier)
        lockout_key = self._lockout_key(identifier)

        # An active lockout wins; attempt counters are not consulted.
        lockout_value = await self._store.get(lockout_key)
        if lockout_value is not None:
            locked_until_ms = int(lockout_value)
            if locked_until_ms > now:
                locked_until = _to_datetime(locked_until_ms)
                logger.info("Attempt rejected, identifier locked", extra={"identifier": identifier})
                self._emit(
                    AuditEvent(
                        action=BRUTE_FORCE_DETECTED,
                        identifier=identifier,
                        metadata={"locked_until": locked_until.isoformat()},
                    )
                )
                return BruteForceCheckResult(
                    allowed=False,
                    attempts_remaining=0,
                    delay_ms=0,
                    locked_until=locked_until,
                    message=(
                        "Account is locked due to too many failed attempts. "
                        f"Try again after {locked_until.isoformat()}."
                    ),
                )
            await self._store.delete(lockout_key, attempts_key)

        attempts_value = await self._store.get(attempts_key)
        attempts = int(attempts_value) if attempts_value else 0

        if attempts >= self._config.max_attempts:
            return await self._lock(identifier, attempts, now)

        return BruteForceCheckResult(
            allowed=True,
            attempts_remaining=self._config.max_attempts - attempts,
            delay_ms=self.calculate_delay(attempts),
        )

    async def _lock(self, identifier: str, attempts: int, now: int) -> BruteForceCheckResult:
        duration = self._config.lockout_duration_ms
        locked_until_ms = now + duration
        locked_until = _to_datetime(locked_until_ms)

        await self._store.set(self._lockout_key(identifier), str(locked_until_ms), ttl_ms=duration)
        await self._store.delete(self._attempts_key(identifier))

        logger.info(
            f"Identifier locked after {attempts} failed attempts",
            extra={"identifier": identifier},
        )
        self._emit(
            AuditEvent(
                action=ACCOUNT_LOCKED,
                identifier=identifier,
                metadata={"attempts": attempts, "locked_until": locked_until.isoformat()},
            )
        )
        return BruteForceCheckResult(
            allowed=False,
            attempts_remaining=0,
            delay_ms=0,
            locked_until=locked_until,
            message=f"Too many failed attempts. Account locked for {duration / 60000:g} minutes.",
        )

    async def record_failed_attempt(self, identifier: str) -> None:
        """Count a failed authentication.

        The window TTL is attached only by the first failure, so repeated
        failures cannot extend it.
        """
        try:
            attempts = await self._store.increment_with_expiry(
                self._attempts_key(identifier), self._config.window_ms
            )
            logger.info(
                f"Failed attempt recorded, total attempts: {attempts}",
                extra={"identifier": identifier},
            )
        except Exception as e:
            logger.warning(f"Failed to record failed attempt: {e}", extra={"identifier": identifier})

    async def record_successful_attempt(self, identifier: str) -> None:
        """Clear all protection state after a successful authentication."""
        try:
            await self._store.delete(self._attempts_key(identifier), self._lockout_key(identifier))
            logger.debug("Successful attempt recorded, counters cleared", extra={"identifier": identifier})
        except Exception as e:
            logger.warning(f"Failed to clear attempts: {e}", extra={"identifier": identifier})

    async def unlock_account(self, identifier: str) -> None:
        """Administrative unlock.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        await self._store.delete(self._attempts_key(identifier), self._lockout_key(identifier))
        logger.info("Account unlocked", extra={"identifier": identifier})
        self._emit(AuditEvent(action=ACCOUNT_UNLOCKED, identifier=identifier, result="success"))

    async def get_status(self, identifier: str) -> BruteForceStatus:
        """Read-only view of attempts and lockout for an identifier."""
        try:
            attempts_value, lockout_value = await asyncio.gather(
                self._store.get(self._attempts_key(identifier)),
                self._store.get(self._lockout_key(identifier)),
            )
            attempts = int(attempts_value) if attempts_value else 0
            locked_until_ms = int(lockout_value) if lockout_value else None
        except Exception as e:
            logger.warning(f"Failed to read protection status: {e}", extra={"identifier": identifier})
            return BruteForceStatus(
                attempts=0,
                is_locked=False,
                attempts_remaining=self._config.max_attempts,
            )

        is_locked = locked_until_ms is not None and locked_until_ms > self._clock()
        locked_until = _to_datetime(locked_until_ms) if is_locked else None

        return BruteForceStatus(
            attempts=attempts,
            is_locked=is_locked,
            attempts_remaining=max(0, self._config.max_attempts - attempts),
            locked_until=locked_until,
        )

    @staticmethod
    async def apply_delay(delay_ms: int) -> None:
        """Suspend the calling request for delay_ms.

        Only the awaiting task sleeps; other requests keep running.
        """
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)


def create_brute_force_identifier(credential: str, ip_address: str) -> str:
    """Identifier for login forms: normalized credential plus client address.

    Tracking both axes covers credential stuffing from rotating addresses
    and slow attacks spread across many accounts from one address.
    """
    return f"{credential.strip().lower()}:{ip_address}"


def create_ip_based_identifier(ip_address: str) -> str:
    """Identifier for endpoints without a credential."""
    return f"ip:{ip_address}"
