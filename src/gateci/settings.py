from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Tuple

from .errors import ConfigError


def _int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    cache_dir: str = ".gateci/cache"
    redis_url: Optional[str] = None
    workers: Optional[int] = None
    step_timeout: Optional[float] = None           # seconds; None = no budget
    cache_keep: int = 3
    concurrency_vars: Tuple[str, ...] = ("RUST_TEST_THREADS",)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        vars_raw = env.get("GATECI_CONCURRENCY_VARS")
        return cls(
            cache_dir=env.get("GATECI_CACHE_DIR", cls.cache_dir),
            redis_url=env.get("GATECI_REDIS_URL") or None,
            workers=_int(env, "GATECI_WORKERS", None),
            step_timeout=_float(env, "GATECI_STEP_TIMEOUT", None),
            cache_keep=_int(env, "GATECI_CACHE_KEEP", cls.cache_keep),
            concurrency_vars=(
                tuple(v.strip() for v in vars_raw.split(",") if v.strip())
                if vars_raw is not None
                else cls.concurrency_vars
            ),
        )

    def override(self, **changes) -> "Settings":
        """Return a copy with the non-None changes applied (CLI flags)."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
