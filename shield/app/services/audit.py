"""Fire-and-forget audit channel for security events.

Lockouts, unlocks and rate-limit denials are queued here and written by a
background task. Recording never raises and never waits on the writer, so
a broken audit backend cannot change an allow/deny decision.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from shield.app.core.logging import get_logger

logger = get_logger(__name__)
audit_logger = get_logger("shield.audit")

ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
BRUTE_FORCE_DETECTED = "BRUTE_FORCE_DETECTED"
LOGIN = "LOGIN"


@dataclass
class AuditEvent:
    """A security-relevant event."""
    action: str
    identifier: str
    result: str = "failure"  # success | failure
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


AuditWriter = Callable[[AuditEvent], Awaitable[None]]


async def write_to_log(event: AuditEvent) -> None:
    """Default writer: emit the event on the ``shield.audit`` logger."""
    audit_logger.info(
        f"{event.action} {event.result}",
        extra={"identifier": event.identifier, "client_ip": event.ip_address, "audit": event.to_dict()},
    )


class AuditSink:
    """Queue-backed audit sink.

    Events are buffered in a bounded queue and written in the background.
    When the queue is full new events are dropped with a warning rather
    than slowing down the request that produced them.

    Example:
        sink = AuditSink()
        sink.record(AuditEvent(action=ACCOUNT_LOCKED, identifier="bob:10.0.0.1"))

        # On application shutdown:
        await sink.shutdown()
    """

    def __init__(
        self,
        writer: Optional[AuditWriter] = None,
        queue_size: int = 1000,
        shutdown_timeout: float = 5.0,
    ):
        self._writer = writer or write_to_log
        self._queue: asyncio.Queue[AuditEvent] = asyncio.Queue(maxsize=queue_size)
        self._worker_task: Optional[asyncio.Task] = None
        self._shutdown_timeout = shutdown_timeout

    @property
    def started(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def start(self) -> None:
        """Start the background writer task."""
        if not self.started:
            self._worker_task = asyncio.create_task(self._drain_loop())
            logger.debug("AuditSink started")

    def record(self, event: AuditEvent) -> None:
        """Queue an event for writing. Never raises."""
        try:
            if not self.started:
                self.start()
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                "Audit queue full, dropping event",
                extra={"identifier": event.identifier, "action": event.action},
            )
        except Exception:
            logger.exception("Failed to queue audit event")

    async def flush(self) -> None:
        """Wait until every queued event has been handed to the writer."""
        await self._queue.join()

    async def shutdown(self) -> None:
        """Flush remaining events and stop the writer task."""
        if self._worker_task is None:
            return
        try:
            await asyncio.wait_for(self.flush(), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Audit flush timed out with {self._queue.qsize()} events pending")
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None
        logger.debug("AuditSink shutdown complete")

    async def _drain_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._writer(event)
            except Exception:
                logger.exception(
                    "Audit writer failed",
                    extra={"identifier": event.identifier, "action": event.action},
                )
            finally:
                self._queue.task_done()
