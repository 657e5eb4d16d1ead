"""Runtime settings read from ``DUELXO_*`` environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

DEFAULT_STUN_URLS: Tuple[str, ...] = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)
DEFAULT_ICE_GATHERING_TIMEOUT = 30.0


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    stun_urls: Tuple[str, ...] = DEFAULT_STUN_URLS
    ice_gathering_timeout: float = DEFAULT_ICE_GATHERING_TIMEOUT


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ

    stun_raw = env.get("DUELXO_STUN_URLS")
    stun_urls = DEFAULT_STUN_URLS
    if stun_raw is not None:
        stun_urls = tuple(url.strip() for url in stun_raw.split(",") if url.strip())

    timeout = float(
        env.get("DUELXO_ICE_GATHERING_TIMEOUT", str(DEFAULT_ICE_GATHERING_TIMEOUT))
    )
    if timeout <= 0:
        raise ValueError("DUELXO_ICE_GATHERING_TIMEOUT must be positive")

    return Settings(
        host=env.get("DUELXO_HOST", "0.0.0.0"),
        port=int(env.get("DUELXO_PORT", "8000")),
        log_level=env.get("DUELXO_LOG_LEVEL", "INFO").upper(),
        stun_urls=stun_urls,
        ice_gathering_timeout=timeout,
    )
