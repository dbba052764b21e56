"""Approval gate: suspends the agent loop until a human decides.

Each request owns exactly one asyncio future, keyed by request id. The future
is resolved by an external ``resolve`` call (the UI), or by cancellation,
whichever comes first. Resolution happens exactly once; the entry stays until
its waiter has collected the response, so a decision made before ``wait``
is reached is not lost.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ollagent.safety import Severity

logger = logging.getLogger("ollagent.approval")


class ApprovalKind(str, Enum):
    COMMAND = "command"
    FILE_EDIT = "fileEdit"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    SKIPPED = "skipped"


@dataclass
class ApprovalRequest:
    """A gated action waiting for a decision."""

    kind: ApprovalKind
    subject: str
    severity: Severity = Severity.MEDIUM
    reason: str = ""
    session_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"approval_{uuid.uuid4().hex[:12]}")
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "subject": self.subject,
            "severity": self.severity.value,
            "reason": self.reason,
            "session_id": self.session_id,
            "details": self.details,
            "status": self.status.value,
            "created_at": self.created_at,
        }


@dataclass
class ApprovalResponse:
    approved: bool
    edited_payload: str | None = None


class ApprovalGate:
    """Request/response channel between the agent loop and the user."""

    def __init__(self):
        self._pending: dict[str, tuple[ApprovalRequest, asyncio.Future]] = {}

    def open(self, request: ApprovalRequest) -> ApprovalRequest:
        """Register a pending request. Must be called from the running loop."""
        if request.id in self._pending:
            raise ValueError(f"Approval request {request.id} is already pending")
        future = asyncio.get_running_loop().create_future()
        self._pending[request.id] = (request, future)
        logger.debug("Approval %s opened: %s %s", request.id, request.kind.value, request.subject)
        return request

    async def wait(
        self,
        request_id: str,
        cancel_event: asyncio.Event | None = None,
    ) -> ApprovalResponse:
        """Wait until the request is resolved or *cancel_event* is set."""
        entry = self._pending.get(request_id)
        if entry is None:
            return ApprovalResponse(approved=False)
        _, future = entry

        try:
            if future.done():
                return future.result()
            if cancel_event is None:
                return await asyncio.shield(future)

            cancel_waiter = asyncio.ensure_future(cancel_event.wait())
            try:
                await asyncio.wait(
                    {future, cancel_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                cancel_waiter.cancel()

            if not future.done():
                self._settle(request_id, ApprovalResponse(approved=False))
            return future.result()
        except asyncio.CancelledError:
            self._settle(request_id, ApprovalResponse(approved=False))
            raise
        finally:
            self._pending.pop(request_id, None)

    async def request_approval(
        self,
        request: ApprovalRequest,
        cancel_event: asyncio.Event | None = None,
    ) -> ApprovalResponse:
        """Open a request and wait for its resolution."""
        self.open(request)
        return await self.wait(request.id, cancel_event)

    def resolve(
        self,
        request_id: str,
        approved: bool,
        edited_payload: str | None = None,
    ) -> bool:
        """Resolve a pending request. Unknown ids are ignored (returns False)."""
        return self._settle(request_id, ApprovalResponse(approved, edited_payload))

    def cancel(self, request_id: str) -> bool:
        """Resolve a pending request as skipped."""
        return self._settle(request_id, ApprovalResponse(approved=False))

    def cancel_all(self, session_id: str | None = None) -> int:
        """Skip every pending request, optionally only those of one session."""
        ids = [request.id for request in self.pending_requests(session_id)]
        return sum(1 for rid in ids if self.cancel(rid))

    def is_pending(self, request_id: str) -> bool:
        entry = self._pending.get(request_id)
        return entry is not None and not entry[1].done()

    def pending_requests(self, session_id: str | None = None) -> list[ApprovalRequest]:
        return [
            request for request, future in self._pending.values()
            if not future.done() and (session_id is None or request.session_id == session_id)
        ]

    def _settle(self, request_id: str, response: ApprovalResponse) -> bool:
        entry = self._pending.get(request_id)
        if entry is None:
            return False
        request, future = entry
        if future.done():
            return False
        request.status = ApprovalStatus.APPROVED if response.approved else ApprovalStatus.SKIPPED
        future.set_result(response)
        logger.info(
            "Approval %s resolved: %s",
            request_id, request.status.value,
            extra={"session_id": request.session_id},
        )
        return True
