"""Polling helpers for backend long-running operations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

from .errors import OperationCancelled, OperationFailed, OperationTimeout
from .observability import MetricsRecorder

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 3.0
DEFAULT_MAX_ATTEMPTS = 20


@dataclass(frozen=True, slots=True)
class OperationHandle:
    """Opaque reference to a pending backend operation."""

    name: str


@dataclass(slots=True)
class OperationStatus:
    name: str
    done: bool
    error: Any = None
    response: Any = None

    @classmethod
    def from_payload(cls, name: str, payload: dict[str, Any]) -> "OperationStatus":
        operation = payload.get("operation") if isinstance(payload.get("operation"), dict) else payload
        status = str(operation.get("status") or "").lower()
        done = bool(operation.get("done")) or status in {"completed", "done", "succeeded", "failed"}
        error = operation.get("error")
        if error is None and status == "failed":
            error = {"message": operation.get("message") or "Operation failed"}
        return cls(
            name=str(operation.get("name") or operation.get("operationId") or name),
            done=done,
            error=error,
            response=operation.get("response"),
        )


StatusCheck = Callable[[OperationHandle], Awaitable[OperationStatus]]
Sleeper = Callable[[float], Awaitable[Any]]


async def poll_operation(
    handle: OperationHandle,
    check_status: StatusCheck,
    *,
    interval: float = DEFAULT_POLL_INTERVAL,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    cancel_event: asyncio.Event | None = None,
    sleep: Sleeper = asyncio.sleep,
    metrics: MetricsRecorder | None = None,
) -> Any:
    """Check ``handle`` until it is done, waiting ``interval`` seconds between checks.

    Returns the operation's response payload. Raises :class:`OperationFailed`
    when the backend reports an error, :class:`OperationTimeout` once
    ``max_attempts`` checks ran without completion, and
    :class:`OperationCancelled` when ``cancel_event`` is set.
    """

    attempts = max(1, int(max_attempts))
    for attempt in range(1, attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelled(handle.name)
        status = await check_status(handle)
        if metrics:
            metrics.increment("operation.polls", done=status.done)
        logger.debug(
            "operation.poll name=%s attempt=%s done=%s",
            handle.name,
            attempt,
            status.done,
        )
        if status.done:
            if status.error is not None:
                logger.warning("operation.failed name=%s error=%s", handle.name, status.error)
                raise OperationFailed(handle.name, status.error)
            logger.info("operation.completed name=%s attempts=%s", handle.name, attempt)
            return status.response
        if attempt < attempts:
            await _wait(interval, sleep, cancel_event, handle)

    logger.warning("operation.timeout name=%s attempts=%s", handle.name, attempts)
    raise OperationTimeout(handle.name, attempts)


async def _wait(
    interval: float,
    sleep: Sleeper,
    cancel_event: asyncio.Event | None,
    handle: OperationHandle,
) -> None:
    if cancel_event is None:
        await sleep(interval)
        return
    sleeper = asyncio.ensure_future(sleep(interval))
    canceller = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, canceller):
            if not task.done():
                task.cancel()
    if cancel_event.is_set():
        raise OperationCancelled(handle.name)


class CompletionWaiter(Protocol):
    """Something that resolves once a backend operation has finished."""

    async def wait(self, handle: OperationHandle) -> Any:  # pragma: no cover - protocol
        ...


class OperationPoller:
    """Polling-based :class:`CompletionWaiter`."""

    def __init__(
        self,
        check_status: StatusCheck,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Sleeper = asyncio.sleep,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._check_status = check_status
        self._interval = max(0.0, interval)
        self._max_attempts = max(1, max_attempts)
        self._sleep = sleep
        self._metrics = metrics

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def wait(self, handle: OperationHandle, *, cancel_event: asyncio.Event | None = None) -> Any:
        return await poll_operation(
            handle,
            self._check_status,
            interval=self._interval,
            max_attempts=self._max_attempts,
            cancel_event=cancel_event,
            sleep=self._sleep,
            metrics=self._metrics,
        )


__all__ = [
    "CompletionWaiter",
    "OperationHandle",
    "OperationPoller",
    "OperationStatus",
    "poll_operation",
]
