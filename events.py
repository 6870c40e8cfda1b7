import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)

OBLIGATION_DEACTIVATED = "obligation_deactivated"
OBLIGATION_DEAD_LETTERED = "obligation_dead_lettered"
OBLIGATION_REMINDER = "obligation_reminder"
OBLIGATION_OVERDUE = "obligation_overdue"
TRANSACTION_MATERIALIZED = "transaction_materialized"
ROLLOVER_COMPLETED = "rollover_completed"


class EventSink(Protocol):
    def emit(self, event: str, user_id: int, payload: dict[str, Any]) -> None: ...


class LoggingEventSink:
    """Default sink: records events in the log and leaves delivery to others."""

    def emit(self, event: str, user_id: int, payload: dict[str, Any]) -> None:
        details = " ".join(f"{key}={value}" for key, value in sorted(payload.items()))
        logger.info(f"{event}: user_id={user_id} {details}".rstrip())


def safe_emit(sink: EventSink, event: str, user_id: int, **payload: Any) -> None:
    # Sink failures never affect the job that fired the event.
    try:
        sink.emit(event, user_id, payload)
    except Exception:
        logger.exception(f"event_emit_failed: event={event} user_id={user_id}")
