"""Persist announcement delivery failures to the error_logs table.

Failed triggers and failed sagas are recorded here for operators, next to the
failure already stored on the saga row. Called from the orchestrator's error
boundary, so it never raises:

    await capture_error(
        session_factory,
        error,
        error_type="saga_failed",
        step=payload.step,
        announcement_id=payload.announcement_id,
        saga_id=str(saga_id),
    )
"""

from __future__ import annotations

import traceback
import uuid

import structlog

from shared.models.error_log import ErrorLog

logger = structlog.get_logger()

# Stored traces are cut to their tail; the innermost frames matter most
MAX_TRACE_CHARS = 8000


def format_trace(error: BaseException) -> str | None:
    if error.__traceback__ is None:
        return None
    trace = "".join(traceback.format_exception(error))
    return trace[-MAX_TRACE_CHARS:]


def _as_uuid(value: uuid.UUID | str | None) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(value)
    except (ValueError, AttributeError):
        return None


def build_error_log(
    error: BaseException,
    *,
    error_type: str,
    service: str = "announcements",
    step: str | None = None,
    announcement_id: uuid.UUID | str | None = None,
    saga_id: uuid.UUID | str | None = None,
    job_id: str | None = None,
) -> ErrorLog:
    return ErrorLog(
        service=service,
        error_type=error_type,
        exception_class=type(error).__name__,
        error_message=str(error) or type(error).__name__,
        stack_trace=format_trace(error),
        step=step,
        job_id=job_id,
        announcement_id=_as_uuid(announcement_id),
        saga_id=_as_uuid(saga_id),
    )


async def capture_error(session_factory, error: BaseException, **fields) -> None:
    """Record ``error`` with the ids that locate it. Never raises."""
    try:
        record = build_error_log(error, **fields)
        async with session_factory() as session:
            session.add(record)
            await session.commit()
        logger.debug(
            "error_captured",
            error_type=record.error_type,
            exception_class=record.exception_class,
            saga_id=fields.get("saga_id") and str(fields["saga_id"]),
        )
    except Exception:
        logger.warning("error_capture_failed", exc_info=True)
