"""Collaborators the client hands its results to."""

from .party_store import InMemoryPartyStore, RemotePartyStore

__all__ = ["InMemoryPartyStore", "RemotePartyStore"]
