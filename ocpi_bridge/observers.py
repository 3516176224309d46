"""Request/response observers and per-client counters.

Observers are notified synchronously right before an HTTP attempt is sent
and right after its outcome is known.  They must never influence the outcome
of an operation: each observer is called in isolation and its failures are
logged and dropped.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Protocol

logger = logging.getLogger(__name__)

OPERATIONS = (
    "list_versions",
    "get_version_detail",
    "fetch_credentials",
    "publish_credentials",
    "rotate_credentials",
    "revoke_credentials",
    "register",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class RequestEvent:
    """An HTTP attempt about to be sent.  Carries no credentials."""

    operation: str
    method: str
    url: str
    request_id: str
    correlation_id: str
    attempt: int
    timestamp: datetime = field(default_factory=_now)


@dataclass(slots=True)
class ResponseEvent:
    """The outcome of an HTTP attempt."""

    operation: str
    method: str
    url: str
    request_id: str
    correlation_id: str
    attempt: int
    http_status: Optional[int]
    status_code: Optional[int]
    error: Optional[str]
    runtime: float
    timestamp: datetime = field(default_factory=_now)


class ClientObserver(Protocol):
    def on_request(self, event: RequestEvent) -> None:
        ...

    def on_response(self, event: ResponseEvent) -> None:
        ...


class ObserverList:
    """Explicit fan-out list of :class:`ClientObserver` objects."""

    def __init__(self, observers: Iterable[ClientObserver] = ()) -> None:
        self._observers: List[ClientObserver] = list(observers)

    def __len__(self) -> int:
        return len(self._observers)

    def add(self, observer: ClientObserver) -> None:
        self._observers.append(observer)

    def remove(self, observer: ClientObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def notify_request(self, event: RequestEvent) -> None:
        for observer in list(self._observers):
            try:
                observer.on_request(event)
            except Exception:
                logger.exception("Observer %r failed on request %s", observer, event.request_id)

    def notify_response(self, event: ResponseEvent) -> None:
        for observer in list(self._observers):
            try:
                observer.on_response(event)
            except Exception:
                logger.exception("Observer %r failed on response %s", observer, event.request_id)


class LoggingObserver:
    """Write request/response events to the ``ocpi_bridge.http`` logger."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self.log = log or logging.getLogger("ocpi_bridge.http")

    def on_request(self, event: RequestEvent) -> None:
        self.log.debug(
            "→ %s %s %s req=%s corr=%s attempt=%d",
            event.operation,
            event.method,
            event.url,
            event.request_id,
            event.correlation_id,
            event.attempt,
        )

    def on_response(self, event: ResponseEvent) -> None:
        level = logging.INFO if event.error is None else logging.WARNING
        self.log.log(
            level,
            "← %s %s %s http=%s status=%s error=%s req=%s (%.3fs)",
            event.operation,
            event.method,
            event.url,
            event.http_status,
            event.status_code,
            event.error,
            event.request_id,
            event.runtime,
        )


@dataclass(slots=True)
class CounterValues:
    requests: int = 0
    responses_ok: int = 0
    responses_error: int = 0


class ClientCounters:
    """Request/response tallies per operation, owned by one client."""

    def __init__(self) -> None:
        self._values: Dict[str, CounterValues] = {name: CounterValues() for name in OPERATIONS}

    def __getitem__(self, operation: str) -> CounterValues:
        return self._values[operation]

    def inc_requests(self, operation: str) -> None:
        self._values[operation].requests += 1

    def record(self, operation: str, ok: bool) -> None:
        values = self._values[operation]
        if ok:
            values.responses_ok += 1
        else:
            values.responses_error += 1

    def to_dict(self) -> Dict[str, Dict[str, int]]:
        return {name: asdict(values) for name, values in self._values.items()}
