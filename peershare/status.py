"""Status events reported to the user interface."""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging

logger = logging.getLogger(__name__)


class Severity(enum.Enum):
    """Severity of a status event."""

    PROGRESS = 'progress'
    SUCCESS = 'success'
    ERROR = 'error'


@dataclasses.dataclass(frozen=True)
class StatusEvent:
    """Status message with a severity."""

    message: str
    severity: Severity = Severity.PROGRESS


class StatusReporter:
    """Base status reporter.

    Components call
    [`update_status()`][peershare.status.StatusReporter.update_status]
    whenever something user visible happens. Subclasses decide where the
    events go.
    """

    def update_status(
        self,
        message: str,
        severity: Severity = Severity.PROGRESS,
    ) -> None:
        """Report a status event."""
        raise NotImplementedError


class LoggingStatusReporter(StatusReporter):
    """Status reporter that writes events to a logger.

    Args:
        name: Name of the logger to write to.
    """

    def __init__(self, name: str = __name__) -> None:
        self._logger = logging.getLogger(name)

    def update_status(
        self,
        message: str,
        severity: Severity = Severity.PROGRESS,
    ) -> None:
        """Log the event. Errors are logged at ERROR, others at INFO."""
        level = logging.ERROR if severity is Severity.ERROR else logging.INFO
        self._logger.log(level, message)


class QueueStatusReporter(StatusReporter):
    """Status reporter that records events and places them on a queue.

    Attributes:
        events: Every event reported, in order.
        queue: Queue of events not yet consumed.
    """

    def __init__(self) -> None:
        self.events: list[StatusEvent] = []
        self.queue: asyncio.Queue[StatusEvent] = asyncio.Queue()

    def update_status(
        self,
        message: str,
        severity: Severity = Severity.PROGRESS,
    ) -> None:
        """Record the event and put it on the queue."""
        event = StatusEvent(message, severity)
        logger.debug(f'Status ({severity.value}): {message}')
        self.events.append(event)
        self.queue.put_nowait(event)

    def messages(self, severity: Severity | None = None) -> list[str]:
        """List reported messages, optionally filtered by severity."""
        return [
            event.message
            for event in self.events
            if severity is None or event.severity is severity
        ]
