"""Runtime configuration for the registry server.

Every setting comes from the environment (optionally seeded from a `.env`
file at the repository root) so the same build runs in development, CI and
behind a reverse proxy without code changes.
"""

import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

HERE = os.path.dirname(os.path.abspath(__file__))
ROOT = os.path.dirname(os.path.dirname(HERE))
DOTENV_PATH = os.path.join(ROOT, ".env")

DEFAULT_DATA_FILE = os.path.join(HERE, "data", "nodes.json")
DEFAULT_SEED_FILE = os.path.join(ROOT, "static", "data", "global_map_layer.geojson")


def load_dotenv_if_present() -> None:
    if os.path.exists(DOTENV_PATH):
        load_dotenv(DOTENV_PATH)


def _int_from_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip(), 10)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


class Settings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 4000
    data_file: str = DEFAULT_DATA_FILE
    seed_file: str = DEFAULT_SEED_FILE
    write_token: Optional[str] = None
    read_origins: str = "*"
    write_origins: str = ""
    rate_limit_window_ms: int = 60_000
    rate_limit_max_writes: int = 60
    sse_keepalive_ms: int = 25_000
    max_body_bytes: int = 1_000_000

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from `env` (defaults to `os.environ`)."""
        if env is None:
            env = os.environ

        token = (env.get("REGISTRY_WRITE_TOKEN") or "").strip() or None

        return cls(
            host=env.get("HOST") or "0.0.0.0",
            port=_int_from_env(env, "PORT", 4000),
            data_file=env.get("REGISTRY_DATA_FILE") or DEFAULT_DATA_FILE,
            seed_file=env.get("REGISTRY_STATIC_SEED_FILE") or DEFAULT_SEED_FILE,
            write_token=token,
            read_origins=env.get("REGISTRY_READ_ORIGINS", "*"),
            write_origins=env.get("REGISTRY_WRITE_ORIGINS", ""),
            rate_limit_window_ms=_int_from_env(env, "REGISTRY_RATE_LIMIT_WINDOW_MS", 60_000),
            rate_limit_max_writes=_int_from_env(env, "REGISTRY_RATE_LIMIT_MAX_WRITES", 60),
            sse_keepalive_ms=_int_from_env(env, "REGISTRY_SSE_KEEPALIVE_MS", 25_000),
            max_body_bytes=_int_from_env(env, "REGISTRY_MAX_BODY_BYTES", 1_000_000),
        )

    @property
    def writes_enabled(self) -> bool:
        return bool(self.write_token)
