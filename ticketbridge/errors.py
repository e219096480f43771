"""Error taxonomy shared by handlers, adapters and the dispatcher.

Handlers never decide whether a failure is retried. They raise one of these
types and :func:`ticketbridge.retry.classify_failure` maps the type to a
dispatcher action:

- ``TransientError``: requeue with backoff until retries are exhausted
- ``PermanentError``: dead-letter immediately
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Optional


class BridgeError(Exception):
    """Base class for all bridge errors."""


class TransientError(BridgeError):
    """Failure expected to clear on its own (network, rate limit, race)."""


class PermanentError(BridgeError):
    """Failure that no amount of retrying will fix."""


class MappingNotFoundError(TransientError):
    """No ticket-to-thread mapping exists (yet) for a ticket."""

    def __init__(self, ticket_id: str, message: Optional[str] = None):
        super().__init__(message or f"No thread mapping found for ticket {ticket_id}")
        self.ticket_id = ticket_id


@dataclass(frozen=True)
class ResolutionContext:
    """Diagnosis attached to a resolver that ran out of attempts."""

    ticket_id: str
    attempts_made: int
    total_retry_time_ms: float
    likely_race_condition: bool
    original_error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ResolverExhaustedError(MappingNotFoundError):
    """The mapping never appeared within the resolver's attempt or time budget."""

    def __init__(self, context: ResolutionContext):
        verdict = "likely race condition" if context.likely_race_condition else "likely outage"
        super().__init__(
            context.ticket_id,
            f"Thread mapping for ticket {context.ticket_id} not found after "
            f"{context.attempts_made} attempts in {context.total_retry_time_ms:.0f}ms ({verdict})",
        )
        self.context = context


class ThreadUnavailableError(PermanentError):
    """The mapped thread is gone or is not a thread channel."""

    def __init__(self, ticket_id: str, thread_id: str, reason: str):
        super().__init__(f"Thread {thread_id} for ticket {ticket_id} is unavailable: {reason}")
        self.ticket_id = ticket_id
        self.thread_id = thread_id
        self.reason = reason


class MappingConflictError(PermanentError):
    """A ticket is already mapped to a different thread."""


class MalformedEventError(PermanentError):
    """An inbound event is missing required fields or has the wrong shape."""


class ChatPlatformError(TransientError):
    """The chat platform failed in a way worth retrying (5xx, 429, network)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ChatPermissionError(PermanentError):
    """The chat platform refused the call (401/403)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AttachmentUploadError(TransientError):
    """The batched attachment upload failed after all attempts."""

    def __init__(self, message: str, result: Any = None):
        super().__init__(message)
        self.result = result


class ChatRequestError(PermanentError):
    """The chat platform rejected the request itself (other 4xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
