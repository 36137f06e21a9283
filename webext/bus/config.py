from __future__ import annotations

import logging
import os
from dataclasses import dataclass

_LOGGER = logging.getLogger("webext.bus.config")

KIB = 1024
MIB = 1024 * KIB


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    try:
        val = int(os.environ.get(name) or default)
    except Exception:
        val = default
    return max(lo, min(val, hi))


@dataclass(frozen=True, slots=True)
class BusConfig:
    # Native messaging caps what the helper may send at 1 MiB per frame. A fragment
    # re-embeds JSON inside JSON (escaping), so keep at least 2x headroom.
    split_threshold: int = 512 * KIB
    max_frame_bytes: int = 1 * MIB

    response_timeout: float = 20.0
    native_response_timeout: float = 20.0

    idle_timeout: float = 30.0
    idle_recheck: float = 1.0

    janitoring_period: float = 10.0
    fragments_ttl: float = 10.0
    # How long ids of timed out requests are remembered to recognise late replies.
    requests_ttl: float = 120.0

    reconnect_delay: float = 1.0

    gateway_host: str = "127.0.0.1"
    gateway_port: int = 8766

    def __post_init__(self) -> None:
        if self.split_threshold <= 0:
            raise ValueError("split_threshold must be positive")
        if self.max_frame_bytes and self.split_threshold * 2 > self.max_frame_bytes:
            raise ValueError(
                f"split_threshold={self.split_threshold} leaves no headroom under max_frame_bytes={self.max_frame_bytes}"
            )

    @classmethod
    def from_env(cls) -> BusConfig:
        max_frame = _int_env("WEBEXT_MAX_FRAME_BYTES", default=1 * MIB, lo=0, hi=0xFFFFFFFF)
        split = _int_env("WEBEXT_SPLIT_THRESHOLD", default=512 * KIB, lo=16, hi=0xFFFFFFFF)
        if max_frame and split * 2 > max_frame:
            _LOGGER.warning("WEBEXT_SPLIT_THRESHOLD=%d clamped to %d (max frame %d)", split, max_frame // 2, max_frame)
            split = max(16, max_frame // 2)

        host = (os.environ.get("WEBEXT_GATEWAY_HOST") or "127.0.0.1").strip() or "127.0.0.1"
        return cls(
            split_threshold=split,
            max_frame_bytes=max_frame,
            response_timeout=_float_env("WEBEXT_RESPONSE_TIMEOUT", default=20.0, lo=0.05, hi=3600.0),
            native_response_timeout=_float_env("WEBEXT_NATIVE_RESPONSE_TIMEOUT", default=20.0, lo=0.05, hi=3600.0),
            idle_timeout=_float_env("WEBEXT_IDLE_TIMEOUT", default=30.0, lo=0.05, hi=86400.0),
            idle_recheck=_float_env("WEBEXT_IDLE_RECHECK", default=1.0, lo=0.01, hi=60.0),
            janitoring_period=_float_env("WEBEXT_JANITORING_PERIOD", default=10.0, lo=0.0, hi=3600.0),
            fragments_ttl=_float_env("WEBEXT_FRAGMENTS_TTL", default=10.0, lo=0.01, hi=3600.0),
            requests_ttl=_float_env("WEBEXT_REQUESTS_TTL", default=120.0, lo=0.0, hi=86400.0),
            reconnect_delay=_float_env("WEBEXT_RECONNECT_DELAY", default=1.0, lo=0.0, hi=60.0),
            gateway_host=host,
            gateway_port=_int_env("WEBEXT_GATEWAY_PORT", default=8766, lo=0, hi=65535),
        )
