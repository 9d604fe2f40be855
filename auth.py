from __future__ import annotations

import hashlib
import secrets
import string
from typing import Optional

from errors import Unauthenticated

# Author: Daniel Neugent

API_KEY_ALPHABET = string.ascii_uppercase + string.digits
API_KEY_LENGTH = 64
BEARER_SCHEME = "Bearer"
# Browser clients send this literal once the stored token cookie is cleared.
CLEARED_TOKEN_PLACEHOLDER = "undefined"


def generate_api_key(length: int = API_KEY_LENGTH) -> str:
    """Return a random key drawn uniformly from A-Z and 0-9."""
    if length <= 0:
        raise ValueError("length must be a positive integer")
    return "".join(secrets.choice(API_KEY_ALPHABET) for _ in range(length))


def hash_api_key(api_key: str) -> str:
    """Hash an API key before it is stored or looked up."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def extract_bearer_token(header_value: Optional[str]) -> str:
    """Pull the key out of a ``Bearer <key>`` header value.

    Raises ``Unauthenticated`` for anything that is not exactly a scheme and a
    key. This never consults the credential store.
    """
    value = (header_value or "").strip()
    if not value or value == CLEARED_TOKEN_PLACEHOLDER:
        raise Unauthenticated()
    parts = value.split()
    if parts[0] != BEARER_SCHEME:
        raise Unauthenticated(reason="Authentication Missing 'Bearer'")
    if len(parts) != 2:
        raise Unauthenticated(reason="Invalid API key")
    return parts[1]
