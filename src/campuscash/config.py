from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class MessagingConfig:
    message_request_limit: int = 3
    call_tick_interval_s: float = 1.0
    realtime_reconnect_s: float = 1.0
    realtime_max_reconnect_s: float = 30.0
    ping_interval_s: int = 30
    session_ttl_s: int = 3600
    db_path: str | None = None

    @property
    def session_ttl_ms(self) -> int:
        return max(self.session_ttl_s, 0) * 1000


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def load_config_from_env() -> MessagingConfig:
    request_limit = _parse_non_negative_int("CAMPUSCASH_MESSAGE_REQUEST_LIMIT", 3)
    tick_interval = _parse_positive_float("CAMPUSCASH_CALL_TICK_INTERVAL_S", 1.0)
    reconnect_s = _parse_positive_float("CAMPUSCASH_REALTIME_RECONNECT_S", 1.0)
    max_reconnect_s = _parse_positive_float("CAMPUSCASH_REALTIME_MAX_RECONNECT_S", 30.0)
    if max_reconnect_s < reconnect_s:
        raise ValueError("CAMPUSCASH_REALTIME_MAX_RECONNECT_S must not be below CAMPUSCASH_REALTIME_RECONNECT_S")
    ping_interval_s = _parse_non_negative_int("CAMPUSCASH_PING_INTERVAL_S", 30)
    session_ttl_s = _parse_non_negative_int("CAMPUSCASH_SESSION_TTL_S", 3600)
    db_path = os.environ.get("CAMPUSCASH_DB_PATH") or None
    return MessagingConfig(
        message_request_limit=request_limit,
        call_tick_interval_s=tick_interval,
        realtime_reconnect_s=reconnect_s,
        realtime_max_reconnect_s=max_reconnect_s,
        ping_interval_s=ping_interval_s,
        session_ttl_s=session_ttl_s,
        db_path=db_path,
    )
