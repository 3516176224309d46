"""OCPI bootstrap client: version discovery and credentials handshake."""

from .auth import AccessToken
from .client import CommonClient
from .config import ClientConfig
from .directory import EndpointDirectory, EndpointResolution, ResolutionFailure
from .errors import OCPIClientError, OperationCancelled, ResponseParseError
from .models import (
    BusinessDetails,
    Credentials,
    Endpoint,
    InterfaceRole,
    ModuleId,
    PartyRole,
    VersionDetail,
    VersionInformation,
)
from .observers import ClientCounters, ClientObserver, LoggingObserver, RequestEvent, ResponseEvent
from .parties import AccessStatus, PartyStatus, RemoteAccessStatus, RemoteParty
from .responses import ErrorKind, OCPIResponse
from .services import InMemoryPartyStore, RemotePartyStore

__all__ = [
    "AccessToken",
    "CommonClient",
    "ClientConfig",
    "EndpointDirectory",
    "EndpointResolution",
    "ResolutionFailure",
    "OCPIClientError",
    "OperationCancelled",
    "ResponseParseError",
    "BusinessDetails",
    "Credentials",
    "Endpoint",
    "InterfaceRole",
    "ModuleId",
    "PartyRole",
    "VersionDetail",
    "VersionInformation",
    "ClientCounters",
    "ClientObserver",
    "LoggingObserver",
    "RequestEvent",
    "ResponseEvent",
    "AccessStatus",
    "PartyStatus",
    "RemoteAccessStatus",
    "RemoteParty",
    "ErrorKind",
    "OCPIResponse",
    "InMemoryPartyStore",
    "RemotePartyStore",
]
