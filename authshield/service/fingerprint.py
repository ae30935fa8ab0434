from __future__ import annotations

import hmac
from typing import Optional

from authshield.logging import get_logger
from authshield.service.hashing import FINGERPRINT_DIGEST_LENGTH, Digest, digest

logger = get_logger(__name__)


class FingerprintService:
    """Bind a refresh token to the network/client context that received it."""

    def __init__(self, *, digest_fn: Digest = digest) -> None:
        self._digest = digest_fn

    def generate_fingerprint(self, source_ip: str, client_signature: str) -> str:
        return self._digest(f"{source_ip}:{client_signature}", FINGERPRINT_DIGEST_LENGTH)

    def validate_fingerprint(
        self,
        stored_hash: Optional[str],
        source_ip: str,
        client_signature: str,
    ) -> bool:
        """True when no fingerprint was stored or it matches the presenting client."""
        if not stored_hash:
            # Tokens issued before fingerprinting carry none
            return True
        current = self.generate_fingerprint(source_ip, client_signature)
        matches = hmac.compare_digest(stored_hash.encode("utf-8"), current.encode("utf-8"))
        if not matches:
            logger.warning("fingerprint_mismatch", source_ip=source_ip)
        return matches
