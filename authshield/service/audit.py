from __future__ import annotations

from typing import Any, Optional, Protocol

from authshield.logging import get_logger

# Event kinds that represent an attack signal or a degraded control
ALERT_EVENT_KINDS = frozenset({
    "account_locked",
    "login_attempt_warning",
    "login_guard_cache_unavailable",
})


class SecurityAuditLog(Protocol):
    def log_security_event(self, kind: str, **fields: Any) -> None: ...


class StructlogAuditLog:
    """Security audit sink backed by structlog.

    Alert kinds are written at WARNING so they survive production log
    filtering; everything else is INFO.
    """

    def __init__(self, logger: Optional[Any] = None) -> None:
        self.logger = logger or get_logger("security_audit")

    def log_security_event(self, kind: str, **fields: Any) -> None:
        if kind in ALERT_EVENT_KINDS:
            self.logger.warning("security_event", event_kind=kind, **fields)
        else:
            self.logger.info("security_event", event_kind=kind, **fields)
