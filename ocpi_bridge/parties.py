"""The trust record describing our relationship with one peer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple

from .auth import AccessToken
from .models import BusinessDetails, PartyRole


class AccessStatus(str, Enum):
    """Whether the peer may access our API with its token."""

    ALLOWED = "ALLOWED"
    BLOCKED = "BLOCKED"


class PartyStatus(str, Enum):
    ENABLED = "ENABLED"
    DISABLED = "DISABLED"
    PRE_REMOTE_REGISTRATION = "PRE_REMOTE_REGISTRATION"


class RemoteAccessStatus(str, Enum):
    """Whether we are able to reach the peer's API."""

    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    ERROR = "ERROR"


def party_key(country_code: str, party_id: str) -> str:
    return f"{country_code.upper()}*{party_id.upper()}"


@dataclass(frozen=True, slots=True)
class RemoteParty:
    """Negotiated relationship with one peer.

    Instances are immutable; the registration logic proposes a new instance
    and the persistence collaborator decides whether to keep it.
    """

    country_code: str
    party_id: str
    role: PartyRole
    business_details: Optional[BusinessDetails] = None
    local_access_token: Optional[AccessToken] = None
    remote_access_token: Optional[AccessToken] = None
    remote_versions_url: Optional[str] = None
    selected_version_id: Optional[str] = None
    version_ids: Tuple[str, ...] = ()
    access_status: AccessStatus = AccessStatus.ALLOWED
    party_status: PartyStatus = PartyStatus.PRE_REMOTE_REGISTRATION
    remote_status: RemoteAccessStatus = RemoteAccessStatus.OFFLINE
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str:
        return party_key(self.country_code, self.party_id)
