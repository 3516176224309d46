"""Wire models for the OCPI bootstrap modules.

These pydantic models mirror the JSON payloads exchanged with a peer while
discovering versions and negotiating credentials.  Only the fields used by the
bootstrap handshake are modelled; unknown keys sent by a peer are ignored.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_serializer

SUCCESS_STATUS_CODE = 1000


class ModuleId(str, Enum):
    """Module identifiers advertised in a version detail."""

    CDRS = "cdrs"
    CHARGING_PROFILES = "chargingprofiles"
    COMMANDS = "commands"
    CREDENTIALS = "credentials"
    HUB_CLIENT_INFO = "hubclientinfo"
    LOCATIONS = "locations"
    SESSIONS = "sessions"
    TARIFFS = "tariffs"
    TOKENS = "tokens"


class InterfaceRole(str, Enum):
    """Whether an endpoint is the sending or the receiving side of a module."""

    SENDER = "SENDER"
    RECEIVER = "RECEIVER"


class PartyRole(str, Enum):
    CPO = "CPO"
    EMSP = "EMSP"
    HUB = "HUB"
    NAP = "NAP"
    NSP = "NSP"
    SCSP = "SCSP"
    OTHER = "OTHER"


def version_sort_key(version_id: str) -> tuple:
    """Return a key ordering version ids numerically ("2.2" < "2.10")."""
    key = []
    for part in version_id.split("."):
        if part.isdigit():
            key.append((int(part), ""))
        else:
            key.append((-1, part))
    return tuple(key)


def highest_version(version_ids: Iterable[str]) -> Optional[str]:
    """Return the highest version id or ``None`` for an empty iterable."""
    ordered = sorted(version_ids, key=version_sort_key, reverse=True)
    return ordered[0] if ordered else None


class VersionInformation(BaseModel):
    version: str
    url: str


class Endpoint(BaseModel):
    identifier: str
    role: Optional[InterfaceRole] = None
    url: str


class VersionDetail(BaseModel):
    version: str
    endpoints: List[Endpoint] = Field(default_factory=list)

    def find_endpoint(
        self, module_id: str, role: Optional[InterfaceRole] = None
    ) -> Optional[Endpoint]:
        """Return the endpoint serving ``module_id``.

        With a ``role`` an endpoint advertising exactly that role wins over
        endpoints without any role (OCPI 2.1.1 does not publish roles).
        Without a ``role`` the first endpoint of the module is returned.
        """
        roleless = None
        for endpoint in self.endpoints:
            if endpoint.identifier != module_id:
                continue
            if role is None or endpoint.role == role:
                return endpoint
            if endpoint.role is None and roleless is None:
                roleless = endpoint
        return roleless


class Image(BaseModel):
    url: str
    thumbnail: Optional[str] = None
    category: str = "OPERATOR"
    type: str = "png"
    width: Optional[int] = None
    height: Optional[int] = None


class BusinessDetails(BaseModel):
    name: str
    website: Optional[str] = None
    logo: Optional[Image] = None


class Credentials(BaseModel):
    """A party's self description handed to its peer.

    The token is kept as a :class:`~pydantic.SecretStr` so it never shows up in
    reprs or log lines; it is only revealed when the model is rendered for the
    wire with :meth:`to_wire`.
    """

    model_config = ConfigDict(frozen=True)

    token: SecretStr
    url: str
    business_details: BusinessDetails
    party_id: str = Field(min_length=1, max_length=3)
    country_code: str = Field(min_length=2, max_length=2)

    @field_serializer("token", when_used="json")
    def _dump_token(self, token: SecretStr) -> str:
        return token.get_secret_value()

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class OCPIEnvelope(BaseModel):
    """The response frame wrapping every OCPI payload."""

    data: Any = None
    status_code: int
    status_message: Optional[str] = None
    timestamp: Any = None
