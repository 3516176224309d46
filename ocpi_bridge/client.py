"""Async OCPI client for version discovery and the credentials handshake.

The client talks to exactly one peer, identified by the peer's VERSIONS URL.
Every public operation is a coroutine returning an
:class:`~ocpi_bridge.responses.OCPIResponse`; remote failures never raise.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import httpx
from pydantic import TypeAdapter, ValidationError

from .auth import AccessToken
from .config import ClientConfig
from .directory import EndpointDirectory, EndpointResolution
from .errors import OperationCancelled, ResponseParseError
from .models import (
    SUCCESS_STATUS_CODE,
    Credentials,
    InterfaceRole,
    ModuleId,
    OCPIEnvelope,
    PartyRole,
    VersionDetail,
    VersionInformation,
)
from .observers import (
    ClientCounters,
    ClientObserver,
    LoggingObserver,
    ObserverList,
    RequestEvent,
    ResponseEvent,
)
from .parties import RemoteParty, party_key
from .registration import (
    build_own_credentials,
    identity_matches,
    registered_party,
    remote_token,
    rotated_party,
)
from .responses import ErrorKind, OCPIResponse
from .services.party_store import InMemoryPartyStore, RemotePartyStore
from .transmission import make_classifier, run_cancellable, transmit

logger = logging.getLogger(__name__)

Parser = Callable[[Any], Any]

_VERSION_LIST = TypeAdapter(List[VersionInformation])
_CREDENTIALS = ModuleId.CREDENTIALS.value


def new_id() -> str:
    return str(uuid.uuid4())


def parse_response(
    http_response: httpx.Response,
    parse: Optional[Parser],
    *,
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> OCPIResponse[Any]:
    """Turn an HTTP response into an :class:`OCPIResponse`.

    HTTP errors, OCPI status codes other than 1000 and the payload are told
    apart here.  ``parse`` is ``None`` for calls answered without data.
    Raises :class:`ResponseParseError` for bodies that are not OCPI.
    """

    meta = {
        "request_id": request_id,
        "correlation_id": correlation_id,
        "http_status": http_response.status_code,
    }

    envelope: Optional[OCPIEnvelope] = None
    if http_response.content:
        try:
            body = http_response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and "status_code" in body:
            try:
                envelope = OCPIEnvelope.model_validate(body)
            except ValidationError as exc:
                raise ResponseParseError("Malformed OCPI response envelope", exc) from exc

    if not http_response.is_success:
        message = f"HTTP {http_response.status_code} {http_response.reason_phrase}"
        if envelope is not None and envelope.status_message:
            message = f"{message}: {envelope.status_message}"
        return OCPIResponse.failure(
            ErrorKind.HTTP,
            message,
            status_code=envelope.status_code if envelope else None,
            status_message=envelope.status_message if envelope else None,
            **meta,
        )

    if envelope is None:
        if parse is None:
            return OCPIResponse(**meta)
        raise ResponseParseError("Response is not an OCPI envelope")

    if envelope.status_code != SUCCESS_STATUS_CODE:
        return OCPIResponse.failure(
            ErrorKind.PROTOCOL,
            envelope.status_message or f"OCPI status {envelope.status_code}",
            status_code=envelope.status_code,
            status_message=envelope.status_message,
            **meta,
        )

    data = None
    if parse is not None and envelope.data is not None:
        try:
            data = parse(envelope.data)
        except ValidationError as exc:
            raise ResponseParseError(
                f"Unexpected payload ({exc.error_count()} validation errors)", exc
            ) from exc

    return OCPIResponse(
        data=data,
        status_code=envelope.status_code,
        status_message=envelope.status_message,
        **meta,
    )


class CommonClient:
    """OCPI client for the versions and credentials modules of one peer.

    Parameters
    ----------
    config: ClientConfig
        All client options.
    party_store: RemotePartyStore, optional
        Receives negotiated trust records; an in-memory store by default.
    remote_party: RemoteParty, optional
        The existing trust record with this peer, if any.  Required for
        :meth:`rotate_credentials`.
    transport: httpx.AsyncBaseTransport, optional
        Custom transport, e.g. :class:`httpx.MockTransport` in tests.
    observers: Iterable[ClientObserver], optional
        Notified before and after every HTTP attempt.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        party_store: Optional[RemotePartyStore] = None,
        remote_party: Optional[RemoteParty] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        observers: Iterable[ClientObserver] = (),
    ) -> None:
        self.config = config
        self.directory = EndpointDirectory(self, config.supported_version_ids)
        self.counters = ClientCounters()
        self.observers = ObserverList(observers)
        if config.log_requests:
            self.observers.add(LoggingObserver())
        self.party_store = party_store if party_store is not None else InMemoryPartyStore()
        self._remote_party = remote_party
        self._access_token = config.access_token
        self._classifier = make_classifier(config.retransmission_status_codes)
        self._state_lock = threading.Lock()
        self._http = httpx.AsyncClient(
            transport=transport,
            timeout=config.request_timeout,
            headers={
                "User-Agent": config.user_agent,
                "Accept": "application/json",
                **config.extra_headers,
            },
        )

    async def __aenter__(self) -> "CommonClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.aclose()

    @property
    def access_token(self) -> AccessToken:
        """The token currently sent as bearer credential."""
        return self._access_token

    @property
    def remote_party(self) -> Optional[RemoteParty]:
        return self._remote_party

    @property
    def selected_version_id(self) -> Optional[str]:
        return self.directory.selected_version_id

    # Transmission -------------------------------------------------------

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        retry: int,
        *,
        parse: Optional[Parser],
        json_body: Optional[Dict[str, Any]],
        request_id: Optional[str],
        correlation_id: str,
        request_timeout: Optional[float],
        cancel_event: Optional[asyncio.Event],
    ) -> OCPIResponse[Any]:
        """Perform a single HTTP attempt."""
        request_id = request_id or new_id()
        timeout = request_timeout or self.config.request_timeout
        headers = {
            "Authorization": self._access_token.authorization_header(),
            "X-Request-ID": request_id,
            "X-Correlation-ID": correlation_id,
        }
        meta = {"request_id": request_id, "correlation_id": correlation_id}

        self.observers.notify_request(
            RequestEvent(operation, method, url, request_id, correlation_id, retry + 1)
        )
        started = time.perf_counter()
        try:
            # The attempt as a whole is bounded by the timeout, not only each
            # network operation inside httpx.
            http_response = await run_cancellable(
                asyncio.wait_for(
                    self._http.request(method, url, headers=headers, json=json_body, timeout=timeout),
                    timeout,
                ),
                cancel_event,
            )
            response = parse_response(http_response, parse, **meta)
        except OperationCancelled:
            response = OCPIResponse.cancelled(**meta)
        except httpx.TimeoutException as exc:
            response = OCPIResponse.transport_failure(
                f"Timeout after {timeout}s ({type(exc).__name__})", **meta
            )
        except asyncio.TimeoutError:
            response = OCPIResponse.transport_failure(f"No answer within {timeout}s", **meta)
        except httpx.TransportError as exc:
            response = OCPIResponse.transport_failure(str(exc) or type(exc).__name__, **meta)
        except ResponseParseError as exc:
            response = OCPIResponse.exception(exc, http_status=http_response.status_code, **meta)

        self.observers.notify_response(
            ResponseEvent(
                operation,
                method,
                url,
                request_id,
                correlation_id,
                retry + 1,
                http_status=response.http_status,
                status_code=response.status_code,
                error=response.error.value if response.error else None,
                runtime=time.perf_counter() - started,
            )
        )
        return response

    async def _call(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        parse: Optional[Parser],
        json_body: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
        correlation_id: str,
        request_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OCPIResponse[Any]:
        """Run one logical call through the transmission loop."""

        async def attempt(retry: int) -> OCPIResponse[Any]:
            return await self._send(
                operation,
                method,
                url,
                retry,
                parse=parse,
                json_body=json_body,
                request_id=request_id,
                correlation_id=correlation_id,
                request_timeout=request_timeout,
                cancel_event=cancel_event,
            )

        response = await transmit(
            attempt,
            max_retries=self.config.max_number_of_retries,
            retry_delay=self.config.transmission_retry_delay,
            classifier=self._classifier,
            cancel_event=cancel_event,
            operation=operation,
        )
        if response.correlation_id is None:
            response.correlation_id = correlation_id
        return response

    def _finish(self, operation: str, response: OCPIResponse[Any]) -> OCPIResponse[Any]:
        self.counters.record(operation, response.ok)
        if response.ok:
            logger.info("%s succeeded after %d attempt(s)", operation, response.attempts)
        else:
            logger.warning(
                "%s failed: %s (%s)",
                operation,
                response.error_message,
                response.error.value if response.error else "-",
            )
        return response

    # Versions -----------------------------------------------------------

    async def list_versions(
        self,
        *,
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        request_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OCPIResponse[List[VersionInformation]]:
        """Fetch the versions the peer supports.

        A successful, non-empty answer replaces the cached version map
        entirely; versions missing from it are forgotten.
        """
        operation = "list_versions"
        self.counters.inc_requests(operation)
        response = await self._call(
            operation,
            "GET",
            self.config.versions_url,
            parse=_VERSION_LIST.validate_python,
            request_id=request_id,
            correlation_id=correlation_id or new_id(),
            request_timeout=request_timeout,
            cancel_event=cancel_event,
        )
        if response.ok and response.data:
            self.directory.replace_versions({info.version: info.url for info in response.data})
        return self._finish(operation, response)

    async def get_version_detail(
        self,
        version_id: Optional[str] = None,
        set_as_default: bool = True,
        *,
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        request_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OCPIResponse[VersionDetail]:
        """Fetch the endpoints of ``version_id`` (default: selected version).

        Lists the versions first when the URL of ``version_id`` is unknown.
        """
        operation = "get_version_detail"
        self.counters.inc_requests(operation)
        correlation_id = correlation_id or new_id()

        version_id = version_id or self.directory.selected_version_id
        if version_id is None:
            return self._finish(
                operation,
                OCPIResponse.resolution_failure(
                    "No version identification available", correlation_id=correlation_id
                ),
            )

        url = self.directory.version_url(version_id)
        if url is None:
            versions = await self.list_versions(
                correlation_id=correlation_id,
                request_timeout=request_timeout,
                cancel_event=cancel_event,
            )
            url = self.directory.version_url(version_id)
            if url is None:
                if versions.is_error:
                    response = OCPIResponse.failure(
                        versions.error,
                        f"Version discovery failed: {versions.error_message}",
                        status_code=versions.status_code,
                        http_status=versions.http_status,
                        correlation_id=correlation_id,
                    )
                else:
                    response = OCPIResponse.resolution_failure(
                        f"Unknown version identification {version_id!r}",
                        correlation_id=correlation_id,
                    )
                return self._finish(operation, response)

        response = await self._call(
            operation,
            "GET",
            url,
            parse=VersionDetail.model_validate,
            request_id=request_id,
            correlation_id=correlation_id,
            request_timeout=request_timeout,
            cancel_event=cancel_event,
        )
        if response.ok and response.data is not None:
            if response.data.version != version_id:
                logger.warning(
                    "Peer answered version detail %s for requested version %s",
                    response.data.version,
                    version_id,
                )
            self.directory.upsert_version_detail(version_id, response.data, select=set_as_default)
        return self._finish(operation, response)

    async def resolve_endpoint(
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
        return await self.directory.resolve(
            module_id,
            version_id,
            role=role,
            select_version=select_version,
            correlation_id=correlation_id,
            request_timeout=request_timeout,
            cancel_event=cancel_event,
        )

    async def resolve_endpoint_url(
        self,
        module_id: str,
        version_id: Optional[str] = None,
        *,
        role: Optional[InterfaceRole] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Optional[str]:
        """Return the URL of ``module_id`` or ``None``."""
        resolution = await self.resolve_endpoint(
            module_id, version_id, role=role, cancel_event=cancel_event
        )
        return resolution.url

    # Credentials --------------------------------------------------------

    async def _credentials_call(
        self,
        operation: str,
        method: str,
        *,
        version_id: Optional[str],
        parse: Optional[Parser],
        json_body: Optional[Dict[str, Any]] = None,
        select_version: bool = True,
        request_id: Optional[str] = None,
        correlation_id: str,
        request_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Tuple[OCPIResponse[Any], EndpointResolution]:
        resolution = await self.directory.resolve(
            _CREDENTIALS,
            version_id,
            role=self.config.credentials_role,
            select_version=select_version,
            correlation_id=correlation_id,
            request_timeout=request_timeout,
            cancel_event=cancel_event,
        )
        if not resolution.found:
            response = resolution.as_response()
            response.correlation_id = correlation_id
            return response, resolution

        response = await self._call(
            operation,
            method,
            resolution.url,
            parse=parse,
            json_body=json_body,
            request_id=request_id,
            correlation_id=correlation_id,
            request_timeout=request_timeout,
            cancel_event=cancel_event,
        )
        if response.ok and parse is not None and response.data is None:
            response = response.with_error(ErrorKind.PROTOCOL, "Peer answered without credentials")
        return response, resolution

    async def fetch_credentials(
        self,
        version_id: Optional[str] = None,
        *,
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        request_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OCPIResponse[Credentials]:
        """GET the credentials the peer holds for us."""
        operation = "fetch_credentials"
        self.counters.inc_requests(operation)
        response, _ = await self._credentials_call(
            operation,
            "GET",
            version_id=version_id,
            parse=Credentials.model_validate,
            request_id=request_id,
            correlation_id=correlation_id or new_id(),
            request_timeout=request_timeout,
            cancel_event=cancel_event,
        )
        return self._finish(operation, response)

    async def publish_credentials(
        self,
        credentials: Credentials,
        version_id: Optional[str] = None,
        *,
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        request_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OCPIResponse[Credentials]:
        """POST ``credentials`` to the peer without touching local state."""
        operation = "publish_credentials"
        self.counters.inc_requests(operation)
        response, _ = await self._credentials_call(
            operation,
            "POST",
            version_id=version_id,
            parse=Credentials.model_validate,
            json_body=credentials.to_wire(),
            request_id=request_id,
            correlation_id=correlation_id or new_id(),
            request_timeout=request_timeout,
            cancel_event=cancel_event,
        )
        return self._finish(operation, response)

    async def rotate_credentials(
        self,
        credentials: Credentials,
        remote_role: Optional[PartyRole] = None,
        version_id: Optional[str] = None,
        *,
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        request_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OCPIResponse[Credentials]:
        """PUT updated ``credentials`` and switch to the token of the answer.

        The peer must answer with the country code and party id (and, when
        ``remote_role`` is given, the role) of the existing trust record;
        otherwise the answer is rejected as a validation failure and neither
        the token nor the trust record change.
        """
        operation = "rotate_credentials"
        self.counters.inc_requests(operation)
        correlation_id = correlation_id or new_id()

        previous = self._remote_party
        if previous is None:
            return self._finish(
                operation,
                OCPIResponse.resolution_failure(
                    "No registered remote party to update credentials with",
                    correlation_id=correlation_id,
                ),
            )

        response, _ = await self._credentials_call(
            operation,
            "PUT",
            version_id=version_id,
            parse=Credentials.model_validate,
            json_body=credentials.to_wire(),
            request_id=request_id,
            correlation_id=correlation_id,
            request_timeout=request_timeout,
            cancel_event=cancel_event,
        )

        if response.ok:
            received: Credentials = response.data
            if not identity_matches(previous, received, remote_role):
                logger.error(
                    "Illegal credentials update: %s (%s) answered as %s (%s)",
                    previous.key,
                    previous.role.value,
                    party_key(received.country_code, received.party_id),
                    remote_role.value if remote_role else previous.role.value,
                )
                response = response.with_error(
                    ErrorKind.VALIDATION,
                    f"Peer identity changed from {previous.key} to "
                    f"{party_key(received.country_code, received.party_id)}",
                )
            else:
                base64_encoded = self.config.access_token_base64
                updated = rotated_party(
                    previous,
                    received,
                    local_token=AccessToken(credentials.token.get_secret_value(), base64_encoded),
                    base64_encoded=base64_encoded,
                )
                if not await self._commit(updated, remote_token(received, base64_encoded)):
                    response = response.with_error(
                        ErrorKind.PERSISTENCE, f"Storing remote party {updated.key} failed"
                    )

        return self._finish(operation, response)

    async def revoke_credentials(
        self,
        version_id: Optional[str] = None,
        *,
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        request_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OCPIResponse[None]:
        """DELETE our credentials at the peer."""
        operation = "revoke_credentials"
        self.counters.inc_requests(operation)
        response, _ = await self._credentials_call(
            operation,
            "DELETE",
            version_id=version_id,
            parse=None,
            request_id=request_id,
            correlation_id=correlation_id or new_id(),
            request_timeout=request_timeout,
            cancel_event=cancel_event,
        )
        return self._finish(operation, response)

    # Registration -------------------------------------------------------

    async def register(
        self,
        version_id: Optional[str] = None,
        set_as_default: bool = True,
        remote_role: Optional[PartyRole] = None,
        token_b: Optional[AccessToken] = None,
        *,
        request_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        request_timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> OCPIResponse[Credentials]:
        """Run the credentials handshake with the peer.

        Parameters
        ----------
        version_id: str, optional
            Version to register with; negotiated when omitted.
        set_as_default: bool, optional
            Select ``version_id`` for later calls once registration succeeded.
        remote_role: PartyRole, optional
            Role recorded for the peer in the trust record.
        token_b: AccessToken, optional
            The token the peer shall use towards us; random when omitted.

        Token, selected version and trust record only change together, after
        the peer accepted our credentials and the party store accepted the
        new trust record.
        """
        operation = "register"
        self.counters.inc_requests(operation)
        correlation_id = correlation_id or new_id()

        missing = self.config.missing_identity()
        if missing:
            return self._finish(
                operation,
                OCPIResponse.resolution_failure(
                    f"Own identity incomplete, missing: {', '.join(missing)}",
                    correlation_id=correlation_id,
                ),
            )

        base64_encoded = self.config.access_token_base64
        token_b = token_b or AccessToken.new_random(base64_encoded)
        credentials = build_own_credentials(self.config, token_b)

        response, resolution = await self._credentials_call(
            operation,
            "POST",
            version_id=version_id,
            parse=Credentials.model_validate,
            json_body=credentials.to_wire(),
            select_version=False,
            request_id=request_id,
            correlation_id=correlation_id,
            request_timeout=request_timeout,
            cancel_event=cancel_event,
        )

        if response.ok:
            received: Credentials = response.data
            party = registered_party(
                received,
                local_token=token_b,
                version_id=resolution.version_id,
                role=remote_role or self._known_role(received),
                base64_encoded=base64_encoded,
            )
            committed = await self._commit(
                party,
                remote_token(received, base64_encoded),
                version_id=resolution.version_id if set_as_default else None,
            )
            if committed:
                logger.info("Registered with %s using version %s", party.key, resolution.version_id)
            else:
                response = response.with_error(
                    ErrorKind.PERSISTENCE, f"Storing remote party {party.key} failed"
                )

        return self._finish(operation, response)

    def _known_role(self, received: Credentials) -> PartyRole:
        existing = self._remote_party
        if existing is not None and identity_matches(existing, received):
            return existing.role
        return self.config.default_remote_role

    async def _commit(
        self,
        party: RemoteParty,
        token: AccessToken,
        version_id: Optional[str] = None,
    ) -> bool:
        """Persist ``party``, then switch token, version and trust record."""
        try:
            stored = await self.party_store.add_or_update(party)
        except Exception:
            logger.exception("Storing remote party %s failed", party.key)
            stored = False
        if not stored:
            return False

        with self._state_lock:
            if version_id is not None:
                self.directory.select_version(version_id)
            self._access_token = token
            self._remote_party = party
        return True

    def describe(self) -> Dict[str, Any]:
        """Client state for diagnostics; never includes tokens."""
        result: Dict[str, Any] = {
            "type": type(self).__name__,
            "remoteVersionsURL": self.config.versions_url,
            "requestTimeout": self.config.request_timeout,
            "maxNumberOfRetries": self.config.max_number_of_retries,
        }
        result.update(self.directory.to_dict())
        if self._remote_party is not None:
            result["remoteParty"] = self._remote_party.key
        return result
