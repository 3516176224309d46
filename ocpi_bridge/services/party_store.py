"""Persistence of negotiated trust records.

The client never owns persistence: it proposes :class:`RemoteParty` records
to a :class:`RemotePartyStore`.  :class:`InMemoryPartyStore` is used when no
store is supplied and in tests.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Protocol

from ..parties import RemoteParty


class RemotePartyStore(Protocol):
    async def get(self, key: str) -> Optional[RemoteParty]:
        ...

    async def add_or_update(self, party: RemoteParty) -> bool:
        """Store ``party``; return ``False`` when the update is refused."""
        ...


class InMemoryPartyStore:
    """Simple in-memory store keyed by ``COUNTRY*PARTY``."""

    def __init__(self) -> None:
        self._parties: Dict[str, RemoteParty] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[RemoteParty]:
        return self._parties.get(key)

    async def add_or_update(self, party: RemoteParty) -> bool:
        async with self._lock:
            self._parties[party.key] = party
        return True

    def list_parties(self) -> List[RemoteParty]:
        return list(self._parties.values())
