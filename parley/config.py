"""
config.py — runtime settings, read from PARLEY_* environment variables.

Every process (server, CLI client) builds one Settings via from_env();
run.py then lets command-line flags override individual fields.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

logger = logging.getLogger(__name__)

DEV_SECRET = "parley-dev-secret-change-me"
DEFAULT_ICE_SERVERS = ["stun:stun.l.google.com:19302", "stun:stun1.l.google.com:19302"]


def _number(env: Mapping[str, str], name: str, default: float, cast=float):
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass
class Settings:
    host: str = "127.0.0.1"
    port: int = 8080
    secret_key: str = DEV_SECRET
    token_max_age: float = 30 * 86400
    ring_timeout: float = 60.0
    redis_url: str = ""
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    home: Path = field(default_factory=lambda: Path.home() / ".parley")
    log_level: str = "INFO"
    poll_interval: float = 2.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        ice = env.get("PARLEY_ICE_SERVERS")
        return cls(
            host=env.get("PARLEY_HOST") or "127.0.0.1",
            port=_number(env, "PARLEY_PORT", 8080, int),
            secret_key=env.get("PARLEY_SECRET_KEY") or DEV_SECRET,
            token_max_age=_number(env, "PARLEY_TOKEN_MAX_AGE", 30 * 86400.0),
            ring_timeout=_number(env, "PARLEY_RING_TIMEOUT", 60.0),
            redis_url=env.get("PARLEY_REDIS_URL") or "",
            ice_servers=[u.strip() for u in ice.split(",") if u.strip()] if ice else list(DEFAULT_ICE_SERVERS),
            home=Path(env.get("PARLEY_HOME") or Path.home() / ".parley").expanduser(),
            log_level=(env.get("PARLEY_LOG_LEVEL") or "INFO").upper(),
            poll_interval=_number(env, "PARLEY_POLL_INTERVAL", 2.0),
        )

    def warn_if_insecure(self) -> None:
        if self.secret_key == DEV_SECRET:
            logger.warning("PARLEY_SECRET_KEY is not set; using the development secret")
