"""Client configuration.

All options live in :class:`ClientConfig`; the client has a single
construction path consuming it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

from .auth import AccessToken
from .models import BusinessDetails, InterfaceRole, PartyRole
from .transmission import DEFAULT_RETRANSMISSION_STATUS_CODES

DEFAULT_REQUEST_TIMEOUT = 180.0
DEFAULT_MAX_NUMBER_OF_RETRIES = 3
DEFAULT_USER_AGENT = "ocpi-bridge/0.1"


def _check_url(name: str, url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid {name}: {url!r}. Expected an http(s) URL.")


@dataclass
class ClientConfig:
    """Every option of :class:`~ocpi_bridge.client.CommonClient`.

    Attributes
    ----------
    versions_url:
        The peer's well-known VERSIONS endpoint.
    access_token:
        The token used as bearer credential (Token A before registration).
    access_token_base64:
        Whether tokens handed out by the peer are base64 encoded in the
        ``Authorization`` header.
    request_timeout:
        Per-attempt timeout in seconds; each call may override it.
    max_number_of_retries:
        Additional attempts after the first one for transient failures.
    transmission_retry_delay:
        ``retry_number -> seconds`` evaluated between attempts.
    retransmission_status_codes:
        OCPI status codes that are retried like transport failures.
    supported_version_ids:
        Versions this client is able to speak; ``None`` accepts any.
    credentials_role:
        Interface role of the peer's credentials endpoint to talk to.
    own_*:
        Our own identity, sent to the peer while registering.
    """

    versions_url: str
    access_token: AccessToken
    access_token_base64: bool = True
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_number_of_retries: int = DEFAULT_MAX_NUMBER_OF_RETRIES
    transmission_retry_delay: Optional[Callable[[int], float]] = None
    retransmission_status_codes: FrozenSet[int] = DEFAULT_RETRANSMISSION_STATUS_CODES
    user_agent: str = DEFAULT_USER_AGENT
    supported_version_ids: Optional[Tuple[str, ...]] = None
    credentials_role: Optional[InterfaceRole] = InterfaceRole.RECEIVER
    own_versions_url: Optional[str] = None
    own_country_code: Optional[str] = None
    own_party_id: Optional[str] = None
    own_business_details: Optional[BusinessDetails] = None
    default_remote_role: PartyRole = PartyRole.OTHER
    log_requests: bool = True
    extra_headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _check_url("versions_url", self.versions_url)
        if self.own_versions_url:
            _check_url("own_versions_url", self.own_versions_url)
        if self.max_number_of_retries < 0:
            raise ValueError("max_number_of_retries must not be negative")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be positive")

    def missing_identity(self) -> List[str]:
        """Return the names of own-identity options needed for registration."""
        required = {
            "own_versions_url": self.own_versions_url,
            "own_country_code": self.own_country_code,
            "own_party_id": self.own_party_id,
            "own_business_details": self.own_business_details,
        }
        return [name for name, value in required.items() if not value]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "ClientConfig":
        """Build a configuration from ``OCPI_*`` environment variables.

        Keyword ``overrides`` win over the environment; ``None`` values are
        ignored so that unset command line flags fall through.
        """

        env = os.environ if environ is None else environ
        base64_encoded = env.get("OCPI_ACCESS_TOKEN_BASE64", "true").lower() not in ("0", "false", "no")
        values: dict = {
            "versions_url": env.get("OCPI_VERSIONS_URL"),
            "access_token": env.get("OCPI_ACCESS_TOKEN"),
            "access_token_base64": base64_encoded,
            "own_versions_url": env.get("OCPI_OWN_VERSIONS_URL"),
            "own_country_code": env.get("OCPI_COUNTRY_CODE"),
            "own_party_id": env.get("OCPI_PARTY_ID"),
        }
        if env.get("OCPI_BUSINESS_NAME"):
            values["own_business_details"] = BusinessDetails(
                name=env["OCPI_BUSINESS_NAME"], website=env.get("OCPI_BUSINESS_WEBSITE")
            )
        if env.get("OCPI_REQUEST_TIMEOUT"):
            values["request_timeout"] = float(env["OCPI_REQUEST_TIMEOUT"])
        if env.get("OCPI_MAX_RETRIES"):
            values["max_number_of_retries"] = int(env["OCPI_MAX_RETRIES"])
        if env.get("OCPI_SUPPORTED_VERSIONS"):
            values["supported_version_ids"] = tuple(
                v.strip() for v in env["OCPI_SUPPORTED_VERSIONS"].split(",") if v.strip()
            )

        values.update({key: value for key, value in overrides.items() if value is not None})
        if not values.get("versions_url"):
            raise ValueError("No versions URL configured (OCPI_VERSIONS_URL)")
        if not values.get("access_token"):
            raise ValueError("No access token configured (OCPI_ACCESS_TOKEN)")
        if isinstance(values["access_token"], str):
            values["access_token"] = AccessToken(values["access_token"], values["access_token_base64"])
        return cls(**{key: value for key, value in values.items() if value is not None})
