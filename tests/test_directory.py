import asyncio

import httpx
import pytest

from conftest import BASE, FakePeer, Scripted, make_config, ocpi
from ocpi_bridge import (
    CommonClient,
    EndpointDirectory,
    EndpointResolution,
    ErrorKind,
    InterfaceRole,
    OCPIResponse,
    ResolutionFailure,
    VersionDetail,
)


class NoDiscovery:
    async def list_versions(self, **kwargs):
        raise AssertionError("unexpected version listing")

    async def get_version_detail(self, version_id=None, set_as_default=True, **kwargs):
        raise AssertionError("unexpected version detail fetch")


def peer_client(peer, **overrides):
    return CommonClient(make_config(**overrides), transport=httpx.ASGITransport(app=peer.app))


@pytest.mark.asyncio
async def test_resolves_credentials_of_only_advertised_version():
    peer = FakePeer(versions=("2.1.1",))
    async with peer_client(peer) as client:
        resolution = await client.resolve_endpoint("credentials")

    assert resolution.found
    assert resolution.url == "https://peer/ocpi/2.1.1/credentials"
    assert resolution.version_id == "2.1.1"
    assert client.selected_version_id == "2.1.1"
    assert [r["path"] for r in peer.requests] == ["/ocpi/versions", "/ocpi/2.1.1"]


@pytest.mark.asyncio
async def test_resolution_picks_highest_version_and_is_cached(client, peer):
    first = await client.resolve_endpoint_url("credentials", role=InterfaceRole.RECEIVER)
    requests_after_first = len(peer.requests)
    second = await client.resolve_endpoint_url("credentials", role=InterfaceRole.RECEIVER)

    assert first == second == f"{BASE}/2.2.1/credentials"
    assert requests_after_first == 2
    assert len(peer.requests) == 2


@pytest.mark.asyncio
async def test_role_selects_between_sender_and_receiver(client):
    sender = await client.resolve_endpoint("credentials", "2.2.1", role=InterfaceRole.SENDER)
    receiver = await client.resolve_endpoint("credentials", "2.2.1", role=InterfaceRole.RECEIVER)
    any_role = await client.resolve_endpoint("credentials", "2.2.1")

    assert sender.url == f"{BASE}/2.2.1/credentials/sender"
    assert receiver.url == f"{BASE}/2.2.1/credentials"
    assert any_role.url == sender.url


@pytest.mark.asyncio
async def test_roleless_endpoints_match_any_role(client):
    resolution = await client.resolve_endpoint("credentials", "2.1.1", role=InterfaceRole.RECEIVER)

    assert resolution.url == f"{BASE}/2.1.1/credentials"


@pytest.mark.asyncio
async def test_missing_module_is_a_resolution_failure(client):
    resolution = await client.resolve_endpoint("tariffs", "2.2.1")

    assert not resolution.found
    assert resolution.failure is ResolutionFailure.NO_ENDPOINT
    response = resolution.as_response()
    assert response.error is ErrorKind.RESOLUTION
    assert response.data is None


@pytest.mark.asyncio
async def test_unknown_version_is_a_resolution_failure(client, peer):
    resolution = await client.resolve_endpoint("credentials", "9.9")

    assert resolution.failure is ResolutionFailure.UNKNOWN_VERSION
    assert resolution.as_response().error is ErrorKind.RESOLUTION
    assert [r["path"] for r in peer.requests] == ["/ocpi/versions"]


@pytest.mark.asyncio
async def test_supported_versions_limit_negotiation():
    peer = FakePeer()
    async with peer_client(peer, supported_version_ids=("2.1.1",)) as client:
        resolution = await client.resolve_endpoint("credentials")

    assert resolution.version_id == "2.1.1"


@pytest.mark.asyncio
async def test_no_common_version():
    peer = FakePeer(versions=("2.2.1",))
    async with peer_client(peer, supported_version_ids=("2.1.1",)) as client:
        resolution = await client.resolve_endpoint("credentials")

    assert resolution.failure is ResolutionFailure.NO_VERSION
    assert client.selected_version_id is None


@pytest.mark.asyncio
async def test_discovery_failure_keeps_error_kind():
    script = Scripted(ocpi(None, http_status=500))
    async with CommonClient(make_config(max_number_of_retries=1), transport=script.transport) as client:
        resolution = await client.resolve_endpoint("credentials")

    assert resolution.failure is ResolutionFailure.DISCOVERY_FAILED
    response = resolution.as_response()
    assert response.error is ErrorKind.HTTP
    assert response.http_status == 500
    assert client.selected_version_id is None


@pytest.mark.asyncio
async def test_resolution_without_selecting_a_version(client):
    resolution = await client.resolve_endpoint("credentials", select_version=False)

    assert resolution.version_id == "2.2.1"
    assert client.selected_version_id is None


@pytest.mark.asyncio
async def test_cached_detail_is_used_without_network():
    directory = EndpointDirectory(NoDiscovery())
    detail = VersionDetail.model_validate(
        {"version": "2.2.1", "endpoints": [{"identifier": "credentials", "url": f"{BASE}/c"}]}
    )
    directory.replace_versions({"2.2.1": f"{BASE}/2.2.1"})
    directory.upsert_version_detail("2.2.1", detail)

    resolution = await directory.resolve("credentials")

    assert resolution.url == f"{BASE}/c"
    assert directory.selected_version_id == "2.2.1"


def test_replace_versions_is_total():
    directory = EndpointDirectory(NoDiscovery())
    directory.replace_versions({"2.1.1": f"{BASE}/2.1.1", "2.2.1": f"{BASE}/2.2.1"})
    directory.upsert_version_detail("2.2.1", VersionDetail(version="2.2.1"), select=True)
    directory.upsert_version_detail("2.1.1", VersionDetail(version="2.1.1"))

    directory.replace_versions({"2.1.1": f"{BASE}/2.1.1-new"})

    assert directory.versions == {"2.1.1": f"{BASE}/2.1.1-new"}
    assert set(directory.version_details) == {"2.1.1"}
    assert directory.selected_version_id == "2.2.1"


def test_highest_known_version_orders_numerically():
    directory = EndpointDirectory(NoDiscovery())
    directory.replace_versions({"2.2": "https://a", "2.10": "https://b", "2.1.1": "https://c"})

    assert directory.highest_known_version() == "2.10"


def test_failed_resolution_message_is_kept():
    response = OCPIResponse.failure(ErrorKind.TRANSPORT, "timeout", correlation_id="corr")

    resolution = EndpointResolution(
        failure=ResolutionFailure.DISCOVERY_FAILED, message="Version discovery failed", discovery=response
    )
    as_response = resolution.as_response()

    assert as_response.error is ErrorKind.TRANSPORT
    assert as_response.error_message == "Version discovery failed: timeout"
    assert as_response.correlation_id == "corr"


@pytest.mark.asyncio
async def test_resolution_after_explicit_discovery_needs_no_network():
    script = Scripted(
        ocpi([{"version": "2.1.1", "url": "https://peer/ocpi/2.1.1"}]),
        ocpi(
            {
                "version": "2.1.1",
                "endpoints": [
                    {
                        "identifier": "credentials",
                        "role": "RECEIVER",
                        "url": "https://peer/ocpi/2.1.1/credentials",
                    }
                ],
            }
        ),
    )
    async with CommonClient(make_config(), transport=script.transport) as client:
        await client.list_versions()
        await client.get_version_detail("2.1.1")
        url = await client.resolve_endpoint_url("credentials")

    assert url == "https://peer/ocpi/2.1.1/credentials"
    assert [request.url.path for request in script.requests] == ["/ocpi/versions", "/ocpi/2.1.1"]


class InterleavingTransport(httpx.AsyncBaseTransport):
    """Serves the fake peer slowly, failing the first request to every path.

    Requests are keyed by their correlation id so overlapping attempts of one
    logical call can be detected.
    """

    def __init__(self, peer):
        self._inner = httpx.ASGITransport(app=peer.app)
        self.in_flight = set()
        self.overlapping = []
        self.most_in_flight = 0
        self.failed_paths = set()
        self.attempts = {}

    async def handle_async_request(self, request):
        key = request.headers["x-correlation-id"]
        if key in self.in_flight:
            self.overlapping.append(key)
        self.in_flight.add(key)
        self.most_in_flight = max(self.most_in_flight, len(self.in_flight))
        self.attempts.setdefault(key, []).append(request.url.path)
        try:
            await asyncio.sleep(0.01)
            if request.url.path not in self.failed_paths:
                self.failed_paths.add(request.url.path)
                raise httpx.ConnectError("flaky peer", request=request)
            return await self._inner.handle_async_request(request)
        finally:
            self.in_flight.discard(key)


@pytest.mark.asyncio
async def test_concurrent_version_details_are_cached_intact():
    peer = FakePeer()
    transport = InterleavingTransport(peer)
    async with CommonClient(make_config(), transport=transport) as client:
        older, newer = await asyncio.gather(
            client.get_version_detail("2.1.1", correlation_id="older"),
            client.get_version_detail("2.2.1", correlation_id="newer"),
        )

    assert older.ok and newer.ok
    assert transport.most_in_flight == 2
    assert transport.overlapping == []
    assert client.directory.versions == {"2.1.1": f"{BASE}/2.1.1", "2.2.1": f"{BASE}/2.2.1"}
    assert client.directory.version_detail("2.1.1") == older.data
    assert client.directory.version_detail("2.2.1") == newer.data
    assert [e.identifier for e in older.data.endpoints] == ["credentials", "locations"]
    assert len(newer.data.endpoints) == 3
    assert client.selected_version_id in {"2.1.1", "2.2.1"}


@pytest.mark.asyncio
async def test_concurrent_resolutions_keep_their_own_versions():
    peer = FakePeer()
    transport = InterleavingTransport(peer)
    async with CommonClient(make_config(), transport=transport) as client:
        await client.list_versions(correlation_id="listing")
        legacy, current = await asyncio.gather(
            client.resolve_endpoint("credentials", "2.1.1", correlation_id="legacy"),
            client.resolve_endpoint(
                "credentials", "2.2.1", role=InterfaceRole.RECEIVER, correlation_id="current"
            ),
        )

    assert legacy.url == f"{BASE}/2.1.1/credentials"
    assert current.url == f"{BASE}/2.2.1/credentials"
    assert transport.overlapping == []
    assert transport.attempts["legacy"] == ["/ocpi/2.1.1", "/ocpi/2.1.1"]
    assert transport.attempts["current"] == ["/ocpi/2.2.1", "/ocpi/2.2.1"]
    assert set(client.directory.version_details) == {"2.1.1", "2.2.1"}
    assert client.selected_version_id is None
