"""Guard for credential-checking endpoints.

Wraps a credential verifier with rate limiting and brute force
protection, and returns a tagged result instead of a session-or-response
union:

    match await guard.attempt(request, email, verify):
        case Authorized(session):
            ...
        case Denied(response):
            return response

Every attempt whose verifier returns is recorded exactly once, as a
failure or a success, so the advisory check_attempt can never be probed
without cost.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Generic, Optional, TypeVar, Union

from fastapi import Request
from fastapi.responses import JSONResponse

from shield.app.core.logging import get_logger
from shield.app.exceptions import AccountLockedError
from shield.app.middleware.rate_limit import apply_rate_limit, get_client_ip
from shield.app.services.audit import LOGIN, AuditEvent, AuditSink
from shield.app.services.brute_force import (
    BruteForceCheckResult,
    BruteForceProtection,
    create_brute_force_identifier,
    create_ip_based_identifier,
)
from shield.app.services.rate_limiter import RateLimiter

logger = get_logger(__name__)

S = TypeVar("S")


@dataclass(frozen=True)
class Authorized(Generic[S]):
    """Credentials verified; carries the session produced by the verifier."""
    session: S


@dataclass(frozen=True)
class Denied:
    """Attempt refused; carries the response to send back."""
    response: JSONResponse
    reason: str  # rate_limited | locked | invalid_credentials


GuardResult = Union[Authorized[S], Denied]


def account_locked_response(check: BruteForceCheckResult) -> JSONResponse:
    """Build the 429 response for a locked identifier."""
    locked_until = check.locked_until or datetime.now(timezone.utc)
    error = AccountLockedError(locked_until, detail=check.message)
    retry_after = math.ceil(max(0.0, (locked_until - datetime.now(timezone.utc)).total_seconds()))
    return JSONResponse(
        status_code=error.status_code,
        content=error.to_response(),
        headers={"Retry-After": str(retry_after)},
    )


def invalid_credentials_response(attempts_remaining: int) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={
            "success": False,
            "error": {
                "code": "INVALID_CREDENTIALS",
                "message": "Invalid credentials",
                "attemptsRemaining": max(0, attempts_remaining),
            },
        },
    )


class LoginGuard:
    """Rate limit, brute force check, delay, verify, record.

    Args:
        protection: Brute force protection shared by all login endpoints
        limiter: Per-address limiter applied before any credential work
        audit: Optional sink for login success/failure events
    """

    def __init__(
        self,
        protection: BruteForceProtection,
        limiter: RateLimiter,
        audit: Optional[AuditSink] = None,
    ):
        self.protection = protection
        self.limiter = limiter
        self.audit = audit

    def _audit_login(self, request: Request, identifier: str, result: str) -> None:
        if self.audit is None:
            return
        self.audit.record(
            AuditEvent(
                action=LOGIN,
                identifier=identifier,
                result=result,
                ip_address=get_client_ip(request),
                user_agent=request.headers.get("user-agent"),
            )
        )

    async def attempt(
        self,
        request: Request,
        credential: str,
        verify: Callable[[], Awaitable[Optional[S]]],
        endpoint: Optional[str] = None,
    ) -> GuardResult:
        """Run one guarded authentication attempt.

        Args:
            request: Incoming request
            credential: Login name or email used to build the identifier
            verify: Checks the credentials; returns a session or None
            endpoint: Rate limit endpoint override

        Returns:
            Authorized with the session, or Denied with the response to send.
            Exceptions raised by ``verify`` propagate and are not recorded.
        """
        client_ip = get_client_ip(request)

        limited = await apply_rate_limit(
            request, create_ip_based_identifier(client_ip), self.limiter, endpoint
        )
        if limited is not None:
            return Denied(limited, reason="rate_limited")

        identifier = create_brute_force_identifier(credential, client_ip)
        check = await self.protection.check_attempt(identifier)
        if not check.allowed:
            return Denied(account_locked_response(check), reason="locked")

        await self.protection.apply_delay(check.delay_ms)

        session = await verify()
        if session is None:
            await self.protection.record_failed_attempt(identifier)
            self._audit_login(request, identifier, "failure")
            return Denied(
                invalid_credentials_response(check.attempts_remaining - 1),
                reason="invalid_credentials",
            )

        await self.protection.record_successful_attempt(identifier)
        self._audit_login(request, identifier, "success")
        return Authorized(session)
