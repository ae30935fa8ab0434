from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

MAX_TRACKED_IPS = 10


def _parse_ts(value: Any) -> datetime:
    parsed = datetime.fromisoformat(value) if isinstance(value, str) else value
    if not isinstance(parsed, datetime):
        raise ValueError(f"invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class AttemptRecord:
    count: int
    first_attempt_at: datetime
    last_attempt_at: datetime
    source_ips: List[str] = field(default_factory=list)

    def track_ip(self, source_ip: str) -> None:
        """Remember ``source_ip``; the list is unique and capped at MAX_TRACKED_IPS."""
        if source_ip and source_ip not in self.source_ips and len(self.source_ips) < MAX_TRACKED_IPS:
            self.source_ips.append(source_ip)

    def to_cache(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "first_attempt_at": self.first_attempt_at.isoformat(),
            "last_attempt_at": self.last_attempt_at.isoformat(),
            "source_ips": list(self.source_ips),
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "AttemptRecord":
        return cls(
            count=int(data.get("count", 0)),
            first_attempt_at=_parse_ts(data["first_attempt_at"]),
            last_attempt_at=_parse_ts(data["last_attempt_at"]),
            source_ips=list(data.get("source_ips") or [])[:MAX_TRACKED_IPS],
        )


@dataclass
class LockoutRecord:
    locked_at: datetime
    unlock_at: datetime
    reason: str
    failed_attempts: int
    last_ip: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return self.unlock_at > now

    def to_cache(self) -> Dict[str, Any]:
        return {
            "locked_at": self.locked_at.isoformat(),
            "unlock_at": self.unlock_at.isoformat(),
            "reason": self.reason,
            "failed_attempts": self.failed_attempts,
            "last_ip": self.last_ip,
        }

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "LockoutRecord":
        return cls(
            locked_at=_parse_ts(data["locked_at"]),
            unlock_at=_parse_ts(data["unlock_at"]),
            reason=str(data.get("reason", "")),
            failed_attempts=int(data.get("failed_attempts", 0)),
            last_ip=data.get("last_ip"),
        )


@dataclass
class BlacklistEntry:
    """Marker stored for a revoked token, token family, or user."""

    blacklisted_at: datetime
    all_tokens: bool = False

    def to_cache(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["blacklisted_at"] = self.blacklisted_at.isoformat()
        if not self.all_tokens:
            payload.pop("all_tokens")
        return payload

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "BlacklistEntry":
        return cls(
            blacklisted_at=_parse_ts(data["blacklisted_at"]),
            all_tokens=bool(data.get("all_tokens", False)),
        )
