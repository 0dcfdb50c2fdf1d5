"""Configuration helpers for backend runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class BackendSettings:
    host: str
    port: int
    log_level: str
    keepalive_seconds: float
    sweep_interval_seconds: float
    finished_ttl_seconds: float
    idle_ttl_seconds: float
    seed: int | None


def load_settings() -> BackendSettings:
    seed_raw = os.getenv("MARBLEGAME_SEED")
    return BackendSettings(
        host=os.getenv("MARBLEGAME_HOST", "127.0.0.1"),
        port=int(os.getenv("MARBLEGAME_PORT", "8000")),
        log_level=os.getenv("MARBLEGAME_LOG_LEVEL", "INFO").upper(),
        keepalive_seconds=float(os.getenv("MARBLEGAME_KEEPALIVE_SECONDS", "5")),
        sweep_interval_seconds=float(os.getenv("MARBLEGAME_SWEEP_INTERVAL_SECONDS", "900")),
        finished_ttl_seconds=float(os.getenv("MARBLEGAME_FINISHED_TTL_SECONDS", "3600")),
        idle_ttl_seconds=float(os.getenv("MARBLEGAME_IDLE_TTL_SECONDS", "14400")),
        seed=int(seed_raw) if seed_raw else None,
    )
