"""Endpoint directory: cached version discovery and lazy URL resolution.

The directory holds two caches per client:

* the advertised ``version id -> version detail URL`` map, replaced as a
  whole after every successful version listing, and
* the ``version id -> VersionDetail`` map, replaced entry by entry.

:meth:`EndpointDirectory.resolve` answers "which URL serves module M under
version V" and fills the caches on first use by driving the discovery calls
of the owning client.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from .models import InterfaceRole, VersionDetail, VersionInformation, highest_version
from .responses import ErrorKind, OCPIResponse

logger = logging.getLogger(__name__)


class VersionDiscovery(Protocol):
    async def list_versions(
        self,
        *,
        correlation_id: Optional[str] = None,
        request_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OCPIResponse[List[VersionInformation]]:
        ...

    async def get_version_detail(
        self,
        version_id: Optional[str] = None,
        set_as_default: bool = True,
        *,
        correlation_id: Optional[str] = None,
        request_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OCPIResponse[VersionDetail]:
        ...


class ResolutionFailure(str, Enum):
    NO_VERSION = "no_version"
    UNKNOWN_VERSION = "unknown_version"
    DISCOVERY_FAILED = "discovery_failed"
    NO_ENDPOINT = "no_endpoint"


@dataclass(slots=True)
class EndpointResolution:
    """Outcome of :meth:`EndpointDirectory.resolve`."""

    url: Optional[str] = None
    version_id: Optional[str] = None
    failure: Optional[ResolutionFailure] = None
    message: Optional[str] = None
    discovery: Optional[OCPIResponse] = None

    @property
    def found(self) -> bool:
        return self.url is not None

    def as_response(self) -> OCPIResponse[Any]:
        """Turn a failed resolution into a response for the caller.

        Discovery failures keep the error kind of the failed discovery call so
        transport trouble and cancellation stay distinguishable from a plain
        missing mapping.
        """
        if self.discovery is not None and self.discovery.is_error:
            return OCPIResponse.failure(
                self.discovery.error,
                f"{self.message}: {self.discovery.error_message}",
                status_code=self.discovery.status_code,
                http_status=self.discovery.http_status,
                correlation_id=self.discovery.correlation_id,
            )
        return OCPIResponse.resolution_failure(self.message or "No remote URL available")


class EndpointDirectory:
    def __init__(
        self,
        discovery: VersionDiscovery,
        supported_version_ids: Optional[Iterable[str]] = None,
    ) -> None:
        self._discovery = discovery
        self._supported = frozenset(supported_version_ids) if supported_version_ids else None
        self._versions: Dict[str, str] = {}
        self._details: Dict[str, VersionDetail] = {}
        self._selected_version_id: Optional[str] = None
        self._lock = threading.Lock()

    # Caches ---------------------------------------------------------------

    @property
    def versions(self) -> Dict[str, str]:
        """Snapshot of the advertised ``version id -> URL`` map."""
        return dict(self._versions)

    @property
    def version_details(self) -> Dict[str, VersionDetail]:
        return dict(self._details)

    @property
    def selected_version_id(self) -> Optional[str]:
        return self._selected_version_id

    def select_version(self, version_id: str) -> None:
        with self._lock:
            self._selected_version_id = version_id

    def version_url(self, version_id: str) -> Optional[str]:
        return self._versions.get(version_id)

    def replace_versions(self, versions: Dict[str, str]) -> None:
        """Replace the whole version map with ``versions``.

        Details of versions that are no longer advertised are dropped as well.
        The selected version is left untouched.
        """
        snapshot = dict(versions)
        with self._lock:
            self._versions = snapshot
            stale = [version_id for version_id in self._details if version_id not in snapshot]
            for version_id in stale:
                del self._details[version_id]
        if stale:
            logger.info("Dropped version details no longer advertised: %s", ", ".join(stale))

    def version_detail(self, version_id: str) -> Optional[VersionDetail]:
        return self._details.get(version_id)

    def upsert_version_detail(
        self, version_id: str, detail: VersionDetail, select: bool = False
    ) -> None:
        with self._lock:
            self._details[version_id] = detail
            if select:
                self._selected_version_id = version_id

    def _usable(self, version_ids: Iterable[str]) -> List[str]:
        if self._supported is None:
            return list(version_ids)
        return [version_id for version_id in version_ids if version_id in self._supported]

    def highest_known_version(self) -> Optional[str]:
        """Highest usable version with a cached detail, else advertised."""
        return highest_version(self._usable(self._details)) or highest_version(
            self._usable(self._versions)
        )

    # Resolution -----------------------------------------------------------

    async def _choose_version(
        self, select_version: bool, **call_options: Any
    ) -> Tuple[Optional[str], Optional[EndpointResolution]]:
        version_id = self.highest_known_version()
        if version_id is None:
            response = await self._discovery.list_versions(**call_options)
            if response.is_error:
                return None, EndpointResolution(
                    failure=ResolutionFailure.DISCOVERY_FAILED,
                    message="Version discovery failed",
                    discovery=response,
                )
            version_id = highest_version(self._usable(self._versions))
            if version_id is None:
                return None, EndpointResolution(
                    failure=ResolutionFailure.NO_VERSION,
                    message="No common version available",
                )
        if select_version:
            self.select_version(version_id)
        return version_id, None

    async def resolve(
        self,
        module_id: str,
        version_id: Optional[str] = None,
        *,
        role: Optional[InterfaceRole] = None,
        select_version: bool = True,
        correlation_id: Optional[str] = None,
        request_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> EndpointResolution:
        """Resolve the URL of ``module_id``, discovering lazily.

        Parameters
        ----------
        module_id: str
            The module to look up, e.g. ``"credentials"``.
        version_id: str, optional
            Explicit version; defaults to the selected version, then to the
            highest known one, then to the highest version after listing.
        role: InterfaceRole, optional
            Preferred interface role of the endpoint.
        select_version: bool, optional
            When ``False`` the selected version is never changed as a side
            effect of resolution.  An explicit ``version_id`` is never
            selected either.
        """

        call_options = {
            "correlation_id": correlation_id,
            "request_timeout": request_timeout,
            "cancel_event": cancel_event,
        }

        negotiated = False
        version_id = version_id or self._selected_version_id
        if version_id is None:
            version_id, failure = await self._choose_version(select_version, **call_options)
            if failure is not None:
                logger.warning("Cannot resolve %s: %s", module_id, failure.message)
                return failure
            negotiated = select_version

        detail = self.version_detail(version_id)
        if detail is None:
            response = await self._discovery.get_version_detail(
                version_id, set_as_default=negotiated, **call_options
            )
            if response.error is ErrorKind.RESOLUTION:
                logger.warning("Cannot resolve %s: unknown version %s", module_id, version_id)
                return EndpointResolution(
                    version_id=version_id,
                    failure=ResolutionFailure.UNKNOWN_VERSION,
                    message=f"Unknown version identification {version_id!r}",
                )
            if response.is_error or response.data is None:
                logger.warning("Cannot resolve %s: version detail %s unavailable", module_id, version_id)
                return EndpointResolution(
                    version_id=version_id,
                    failure=ResolutionFailure.DISCOVERY_FAILED,
                    message=f"Fetching version detail {version_id} failed",
                    discovery=response,
                )
            detail = response.data

        endpoint = detail.find_endpoint(module_id, role)
        if endpoint is None:
            logger.warning("Version %s of the peer has no %s endpoint", version_id, module_id)
            return EndpointResolution(
                version_id=version_id,
                failure=ResolutionFailure.NO_ENDPOINT,
                message=f"No {module_id} endpoint available for version {version_id}",
            )
        return EndpointResolution(url=endpoint.url, version_id=version_id)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self._versions:
            result["versions"] = dict(self._versions)
        if self._selected_version_id:
            result["selectedVersionId"] = self._selected_version_id
        if self._details:
            result["versionDetails"] = [
                detail.model_dump(mode="json", exclude_none=True) for detail in self._details.values()
            ]
        return result
