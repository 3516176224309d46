"""Trust record transitions of the credentials handshake.

Registration, client perspective:

1. We hold Token A, handed to us out of band by the peer.
2. We resolve the peer's credentials endpoint for the chosen version.
3. We generate Token B and describe ourselves (versions URL, business
   details, country code, party id, Token B).
4. We POST that description using Token A and get the peer's credentials
   back, carrying Token C.
5. From now on we talk to the peer with Token C, the peer talks to us with
   Token B.

A later credentials update (PUT) exchanges tokens again but must never change
who the peer is.  The functions below build the proposed trust records; the
client commits them.
"""

from __future__ import annotations

import dataclasses
from datetime import datetime, timezone
from typing import Optional

from .auth import AccessToken
from .config import ClientConfig
from .models import Credentials, PartyRole
from .parties import AccessStatus, PartyStatus, RemoteAccessStatus, RemoteParty


def build_own_credentials(config: ClientConfig, token: AccessToken) -> Credentials:
    """Describe ourselves to the peer; requires a complete own identity."""
    missing = config.missing_identity()
    if missing:
        raise ValueError(f"Own identity incomplete, missing: {', '.join(missing)}")
    return Credentials(
        token=token.value,
        url=config.own_versions_url,
        business_details=config.own_business_details,
        party_id=config.own_party_id,
        country_code=config.own_country_code,
    )


def identity_matches(
    party: RemoteParty, received: Credentials, role: Optional[PartyRole] = None
) -> bool:
    """Return ``True`` when ``received`` describes the same peer as ``party``."""
    if party.country_code.upper() != received.country_code.upper():
        return False
    if party.party_id.upper() != received.party_id.upper():
        return False
    return role is None or role == party.role


def remote_token(received: Credentials, base64_encoded: bool) -> AccessToken:
    return AccessToken(received.token.get_secret_value(), base64_encoded)


def registered_party(
    received: Credentials,
    *,
    local_token: AccessToken,
    version_id: str,
    role: PartyRole,
    base64_encoded: bool = True,
) -> RemoteParty:
    """Trust record after a successful POST of our credentials."""
    return RemoteParty(
        country_code=received.country_code,
        party_id=received.party_id,
        role=role,
        business_details=received.business_details,
        local_access_token=local_token,
        remote_access_token=remote_token(received, base64_encoded),
        remote_versions_url=received.url,
        selected_version_id=version_id,
        version_ids=(version_id,),
        access_status=AccessStatus.ALLOWED,
        party_status=PartyStatus.ENABLED,
        remote_status=RemoteAccessStatus.ONLINE,
    )


def rotated_party(
    previous: RemoteParty,
    received: Credentials,
    *,
    local_token: AccessToken,
    base64_encoded: bool = True,
) -> RemoteParty:
    """Trust record after a successful PUT of updated credentials.

    Only tokens, business details and statuses change; identity, versions URL
    and selected version are carried over from ``previous``.
    """
    return dataclasses.replace(
        previous,
        business_details=received.business_details,
        local_access_token=local_token,
        remote_access_token=remote_token(received, base64_encoded),
        access_status=AccessStatus.ALLOWED,
        party_status=PartyStatus.ENABLED,
        remote_status=RemoteAccessStatus.ONLINE,
        updated_at=datetime.now(timezone.utc),
    )
