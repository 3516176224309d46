"""Retry classifier and transmission loop.

Every remote call of the client runs through :func:`transmit`.  The loop is
agnostic of the payload type: it only inspects the outcome of an attempt to
decide whether another attempt is worth making.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Collection, Optional, TypeVar

from .errors import OperationCancelled
from .responses import GENERIC_SERVER_ERROR, ErrorKind, OCPIResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRANSMISSION_HTTP_STATUSES = frozenset({408, 429})
DEFAULT_RETRANSMISSION_STATUS_CODES = frozenset({GENERIC_SERVER_ERROR})

RetryDelay = Callable[[int], float]
Attempt = Callable[[int], Awaitable[OCPIResponse[T]]]
Classifier = Callable[[OCPIResponse], bool]


def is_reason_for_retransmission(
    response: OCPIResponse,
    status_codes: Collection[int] = DEFAULT_RETRANSMISSION_STATUS_CODES,
) -> bool:
    """Return ``True`` when ``response`` describes a transient failure.

    Parameters
    ----------
    response: OCPIResponse
        Outcome of a single attempt.
    status_codes: Collection[int], optional
        OCPI status codes (carried inside an HTTP 200 envelope) that are
        worth another attempt.
    """

    if response.error is ErrorKind.TRANSPORT:
        return True
    if response.error is ErrorKind.HTTP:
        status = response.http_status or 0
        return status in RETRANSMISSION_HTTP_STATUSES or 500 <= status < 600
    if response.error is ErrorKind.PROTOCOL:
        return response.status_code in status_codes
    return False


def make_classifier(status_codes: Collection[int]) -> Classifier:
    codes = frozenset(status_codes)
    return lambda response: is_reason_for_retransmission(response, codes)


async def run_cancellable(
    awaitable: Awaitable[T], cancel_event: Optional[asyncio.Event]
) -> T:
    """Await ``awaitable`` unless ``cancel_event`` fires first.

    Raises :class:`OperationCancelled` and cancels the pending work when the
    event wins the race.
    """

    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelled()

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        waiter.cancel()

    if work.done():
        return work.result()
    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    raise OperationCancelled()


async def _pause(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
    """Sleep for ``delay`` seconds; return ``True`` if cancelled meanwhile."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


async def transmit(
    attempt: Attempt[T],
    *,
    max_retries: int,
    retry_delay: Optional[RetryDelay] = None,
    classifier: Classifier = is_reason_for_retransmission,
    cancel_event: Optional[asyncio.Event] = None,
    operation: str = "request",
) -> OCPIResponse[T]:
    """Run ``attempt`` at most ``max_retries + 1`` times.

    ``attempt`` receives the zero based retry number.  Exceptions raised by an
    attempt are captured as an ``EXCEPTION`` outcome, which the classifier
    treats as terminal.  Cancellation (``cancel_event`` or
    :class:`OperationCancelled`) ends the loop with a ``CANCELLED`` outcome;
    ``asyncio.CancelledError`` is never caught.
    """

    retry = 0
    attempts = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            response: OCPIResponse[T] = OCPIResponse.cancelled()
            break

        attempts += 1
        try:
            response = await attempt(retry)
        except OperationCancelled:
            response = OCPIResponse.cancelled()
        except Exception as exc:
            logger.warning("%s attempt %d raised %r", operation, retry + 1, exc)
            response = OCPIResponse.exception(exc)

        if response.error is ErrorKind.CANCELLED:
            break
        if retry >= max_retries or not classifier(response):
            break

        retry += 1
        delay = retry_delay(retry) if retry_delay else 0.0
        logger.warning(
            "%s failed (%s: %s); retry %d/%d in %.2fs",
            operation,
            response.error.value if response.error else "status",
            response.error_message or response.status_code,
            retry,
            max_retries,
            delay,
        )
        if delay > 0 and await _pause(delay, cancel_event):
            response = OCPIResponse.cancelled(
                request_id=response.request_id, correlation_id=response.correlation_id
            )
            break

    response.attempts = attempts
    return response
