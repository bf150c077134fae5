from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass(frozen=True)
class StoreConfig:
    root_prefix: str
    stale_minutes: int
    clean_default_minutes: int
    legacy_owner: str
    cron_secret: str
    cors_origins: list[str]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "StoreConfig":
        env = os.environ if environ is None else environ
        return cls(
            root_prefix=env.get("REPORTSTORE_ROOT", "analyses").strip().strip("/") or "analyses",
            stale_minutes=_env_int(env, "REPORTSTORE_STALE_MINUTES", default=30, minimum=1),
            clean_default_minutes=_env_int(env, "REPORTSTORE_CLEAN_DEFAULT_MINUTES", default=10, minimum=1),
            legacy_owner=env.get("REPORTSTORE_LEGACY_OWNER", "1").strip() or "1",
            cron_secret=env.get("CRON_SECRET", "").strip(),
            cors_origins=_split_csv(env.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:3000,http://localhost:3000")),
        )
