import base64
from typing import Any, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pytest_asyncio import fixture

from ocpi_bridge import AccessToken, BusinessDetails, ClientConfig, CommonClient

BASE = "https://peer/ocpi"
TOKEN_A = "token-a"
TOKEN_C = "token-c"
TOKEN_C2 = "token-c2"


def envelope(data: Any = None, status_code: int = 1000, message: str = "Success") -> Dict[str, Any]:
    return {
        "data": data,
        "status_code": status_code,
        "status_message": message,
        "timestamp": "2026-10-17T12:00:00Z",
    }


def make_config(**overrides: Any) -> ClientConfig:
    values: Dict[str, Any] = {
        "versions_url": f"{BASE}/versions",
        "access_token": AccessToken(TOKEN_A),
        "own_versions_url": "https://us.example.com/ocpi/versions",
        "own_country_code": "NL",
        "own_party_id": "XYZ",
        "own_business_details": BusinessDetails(name="Us", website="https://us.example.com"),
    }
    values.update(overrides)
    return ClientConfig(**values)


def version_detail(version: str) -> Dict[str, Any]:
    if version == "2.1.1":
        endpoints = [
            {"identifier": "credentials", "url": f"{BASE}/2.1.1/credentials"},
            {"identifier": "locations", "url": f"{BASE}/2.1.1/locations"},
        ]
    else:
        endpoints = [
            {"identifier": "credentials", "role": "SENDER", "url": f"{BASE}/{version}/credentials/sender"},
            {"identifier": "credentials", "role": "RECEIVER", "url": f"{BASE}/{version}/credentials"},
            {"identifier": "locations", "role": "SENDER", "url": f"{BASE}/{version}/locations"},
        ]
    return {"version": version, "endpoints": endpoints}


class FakePeer:
    """A minimal OCPI peer serving versions and credentials over FastAPI."""

    def __init__(self, versions=("2.1.1", "2.2.1"), country_code="DE", party_id="ABC"):
        self.versions = list(versions)
        self.country_code = country_code
        self.party_id = party_id
        self.accepted_tokens = {TOKEN_A}
        self.registered: Optional[Dict[str, Any]] = None
        self.requests: List[Dict[str, Any]] = []
        self.app = self._build_app()

    def credentials(self, token: str) -> Dict[str, Any]:
        return {
            "token": token,
            "url": f"{BASE}/versions",
            "business_details": {"name": "Peer Mobility"},
            "party_id": self.party_id,
            "country_code": self.country_code,
        }

    def _token(self, request: Request) -> Optional[str]:
        header = request.headers.get("authorization", "")
        if not header.startswith("Token "):
            return None
        raw = header[len("Token "):]
        try:
            decoded = base64.b64decode(raw, validate=True).decode("utf-8")
        except ValueError:
            decoded = None
        if decoded in self.accepted_tokens:
            return decoded
        return raw if raw in self.accepted_tokens else None

    def _enter(self, request: Request) -> Optional[JSONResponse]:
        self.requests.append(
            {
                "method": request.method,
                "path": request.url.path,
                "authorization": request.headers.get("authorization"),
                "request_id": request.headers.get("x-request-id"),
                "correlation_id": request.headers.get("x-correlation-id"),
            }
        )
        if self._token(request) is None:
            return JSONResponse(envelope(None, 2000, "Invalid or missing token"), status_code=401)
        return None

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="Fake OCPI peer")

        @app.get("/ocpi/versions")
        async def get_versions(request: Request):
            rejected = self._enter(request)
            if rejected:
                return rejected
            return envelope([{"version": v, "url": f"{BASE}/{v}"} for v in self.versions])

        @app.get("/ocpi/{version}")
        async def get_version_detail(version: str, request: Request):
            rejected = self._enter(request)
            if rejected:
                return rejected
            if version not in self.versions:
                return JSONResponse(envelope(None, 2000, "Unknown version"), status_code=404)
            return envelope(version_detail(version))

        @app.get("/ocpi/{version}/credentials")
        async def get_credentials(version: str, request: Request):
            rejected = self._enter(request)
            if rejected:
                return rejected
            return envelope(self.credentials(next(iter(self.accepted_tokens))))

        @app.post("/ocpi/{version}/credentials")
        async def post_credentials(version: str, request: Request):
            rejected = self._enter(request)
            if rejected:
                return rejected
            if self.registered is not None:
                return JSONResponse(envelope(None, 2000, "Already registered"), status_code=405)
            self.registered = await request.json()
            self.accepted_tokens = {TOKEN_C}
            return envelope(self.credentials(TOKEN_C))

        @app.put("/ocpi/{version}/credentials")
        async def put_credentials(version: str, request: Request):
            rejected = self._enter(request)
            if rejected:
                return rejected
            if self.registered is None:
                return JSONResponse(envelope(None, 2000, "Not registered"), status_code=405)
            self.registered = await request.json()
            self.accepted_tokens = {TOKEN_C2}
            return envelope(self.credentials(TOKEN_C2))

        @app.delete("/ocpi/{version}/credentials")
        async def delete_credentials(version: str, request: Request):
            rejected = self._enter(request)
            if rejected:
                return rejected
            self.registered = None
            return envelope(None)

        return app


class Scripted:
    """``httpx.MockTransport`` handler answering from a list.

    Each answer is an ``httpx.Response`` or a callable taking the request;
    the last answer repeats once the list is used up.
    """

    def __init__(self, *answers: Any) -> None:
        self.answers = list(answers)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if callable(answer):
            return answer(request)
        return httpx.Response(answer.status_code, headers=answer.headers, content=answer.content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def ocpi(data: Any = None, status_code: int = 1000, http_status: int = 200) -> httpx.Response:
    return httpx.Response(http_status, json=envelope(data, status_code, "scripted"))


def connect_error(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


VERSIONS = [{"version": "2.2.1", "url": f"{BASE}/2.2.1"}]


@fixture
def peer():
    return FakePeer()


@fixture
async def client(peer):
    async with CommonClient(make_config(), transport=httpx.ASGITransport(app=peer.app)) as client:
        yield client


@fixture
async def registered_client(client):
    response = await client.register(remote_role=None)
    assert response.ok, response.error_message
    yield client
