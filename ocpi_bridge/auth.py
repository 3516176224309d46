"""Access tokens and the OCPI ``Authorization`` header."""

from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass

TOKEN_BYTES = 32


@dataclass(frozen=True, slots=True, repr=False)
class AccessToken:
    """A bearer credential string.

    OCPI 2.2 and later expect the token base64 encoded inside the header;
    2.1.1 peers expect it verbatim, hence ``base64_encoded``.
    """

    value: str
    base64_encoded: bool = True

    @classmethod
    def new_random(cls, base64_encoded: bool = True) -> "AccessToken":
        return cls(secrets.token_urlsafe(TOKEN_BYTES), base64_encoded)

    def authorization_header(self) -> str:
        if self.base64_encoded:
            encoded = base64.b64encode(self.value.encode("utf-8")).decode("ascii")
            return f"Token {encoded}"
        return f"Token {self.value}"

    def __repr__(self) -> str:
        return f"AccessToken('**********', base64_encoded={self.base64_encoded})"

    __str__ = __repr__
