"""Structured results returned by every client operation.

An :class:`OCPIResponse` always tells the caller which of three situations it
is looking at: data is present, nothing was found (a resolution failure), or
an error happened on the way (transport, HTTP, protocol, validation,
cancellation, persistence).
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

GENERIC_SERVER_ERROR = 3000


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    HTTP = "http"
    PROTOCOL = "protocol"
    RESOLUTION = "resolution"
    VALIDATION = "validation"
    CANCELLED = "cancelled"
    EXCEPTION = "exception"
    PERSISTENCE = "persistence"


@dataclass
class OCPIResponse(Generic[T]):
    data: Optional[T] = None
    status_code: Optional[int] = None
    status_message: Optional[str] = None
    http_status: Optional[int] = None
    error: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    request_id: Optional[str] = None
    correlation_id: Optional[str] = None
    attempts: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def has_data(self) -> bool:
        return self.data is not None

    # Constructors for failure outcomes ------------------------------------

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, **kwargs: Any) -> "OCPIResponse[Any]":
        return cls(error=kind, error_message=message, **kwargs)

    @classmethod
    def transport_failure(cls, message: str, **kwargs: Any) -> "OCPIResponse[Any]":
        return cls.failure(ErrorKind.TRANSPORT, message, **kwargs)

    @classmethod
    def resolution_failure(cls, message: str, **kwargs: Any) -> "OCPIResponse[Any]":
        return cls.failure(ErrorKind.RESOLUTION, message, **kwargs)

    @classmethod
    def cancelled(cls, **kwargs: Any) -> "OCPIResponse[Any]":
        return cls.failure(ErrorKind.CANCELLED, "Operation cancelled", **kwargs)

    @classmethod
    def exception(cls, exc: BaseException, **kwargs: Any) -> "OCPIResponse[Any]":
        message = str(exc) or type(exc).__name__
        return cls.failure(ErrorKind.EXCEPTION, message, **kwargs)

    def with_error(self, kind: ErrorKind, message: str) -> "OCPIResponse[T]":
        """Return a copy flagged with ``kind``; payload and ids are kept."""
        return dataclasses.replace(self, error=kind, error_message=message)

    def to_dict(self) -> dict[str, Any]:
        """Render the response for display.

        Secrets stay masked: pydantic ``SecretStr`` values are dumped in python
        mode and stringify as ``'**********'``.
        """
        data: Any = self.data
        if isinstance(data, BaseModel):
            data = data.model_dump(exclude_none=True)
        elif isinstance(data, list):
            data = [
                item.model_dump(exclude_none=True) if isinstance(item, BaseModel) else item
                for item in data
            ]
        result = {
            "data": data,
            "status_code": self.status_code,
            "status_message": self.status_message,
            "http_status": self.http_status,
            "error": self.error.value if self.error else None,
            "error_message": self.error_message,
            "request_id": self.request_id,
            "correlation_id": self.correlation_id,
            "attempts": self.attempts,
            "timestamp": self.timestamp.isoformat(),
        }
        return {key: value for key, value in result.items() if value is not None}
