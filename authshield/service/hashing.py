from __future__ import annotations

import hashlib
import uuid
from typing import Callable

Digest = Callable[[str, int], str]
IdFactory = Callable[[], str]

IDENTITY_DIGEST_LENGTH = 16
TOKEN_DIGEST_LENGTH = 32
FINGERPRINT_DIGEST_LENGTH = 32


def digest(value: str, length: int) -> str:
    """Hex SHA-256 of ``value`` truncated to ``length`` characters."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def normalize_identity(identity: str) -> str:
    return identity.strip().casefold()


def hash_identity(identity: str, digest_fn: Digest = digest) -> str:
    # Raw emails never become cache keys
    return digest_fn(normalize_identity(identity), IDENTITY_DIGEST_LENGTH)


def new_family_id() -> str:
    # uuid4 draws from os.urandom
    return str(uuid.uuid4())
