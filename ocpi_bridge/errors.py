"""Exceptions raised inside the client.

Remote failures are not raised to callers; they are returned as
:class:`~ocpi_bridge.responses.OCPIResponse` objects.  The exceptions below
are internal signals or configuration errors.
"""

from __future__ import annotations


class OCPIClientError(Exception):
    """Base class for errors raised by :mod:`ocpi_bridge`."""


class OperationCancelled(OCPIClientError):
    """The caller's cancel event fired while an attempt was in flight."""


class ResponseParseError(OCPIClientError):
    """A response body did not match the expected payload model."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
