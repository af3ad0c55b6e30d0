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


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float_list(env: Mapping[str, str], name: str, *, default: tuple[float, ...]) -> tuple[float, ...]:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    values: list[float] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            values.append(max(0.0, float(part)))
        except ValueError:
            return default
    return tuple(values) or default


@dataclass(frozen=True)
class CoreSettings:
    list_default_page_size: int = 50
    list_max_page_size: int = 100
    export_max_page_size: int = 1000
    export_cache_ttl_s: float = 3600.0
    export_cache_max_entries: int = 1000
    export_timeout_s: float = 0.0
    webhook_timeout_s: float = 30.0
    webhook_max_workers: int = 8
    webhook_max_pending: int = 1000
    webhook_max_retries: int = 3
    webhook_retry_delays_s: tuple[float, ...] = (60.0, 300.0, 900.0)
    deployment_store_backend: str = "memory"
    postgres_dsn: str = ""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "CoreSettings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            list_default_page_size=_env_int(
                env, "DEPLOYMENT_LIST_DEFAULT_PAGE_SIZE", default=defaults.list_default_page_size, minimum=1
            ),
            list_max_page_size=_env_int(
                env, "DEPLOYMENT_LIST_MAX_PAGE_SIZE", default=defaults.list_max_page_size, minimum=1
            ),
            export_max_page_size=_env_int(
                env, "AUDIT_EXPORT_MAX_PAGE_SIZE", default=defaults.export_max_page_size, minimum=1
            ),
            export_cache_ttl_s=_env_float(env, "AUDIT_EXPORT_CACHE_TTL_S", default=defaults.export_cache_ttl_s),
            export_cache_max_entries=_env_int(
                env, "AUDIT_EXPORT_CACHE_MAX_ENTRIES", default=defaults.export_cache_max_entries, minimum=1
            ),
            export_timeout_s=_env_float(env, "AUDIT_EXPORT_TIMEOUT_S", default=defaults.export_timeout_s),
            webhook_timeout_s=_env_float(
                env, "WEBHOOK_DELIVERY_TIMEOUT_S", default=defaults.webhook_timeout_s, minimum=0.1
            ),
            webhook_max_workers=_env_int(env, "WEBHOOK_MAX_WORKERS", default=defaults.webhook_max_workers, minimum=1),
            webhook_max_pending=_env_int(env, "WEBHOOK_MAX_PENDING", default=defaults.webhook_max_pending, minimum=1),
            webhook_max_retries=_env_int(env, "WEBHOOK_MAX_RETRIES", default=defaults.webhook_max_retries),
            webhook_retry_delays_s=_env_float_list(
                env, "WEBHOOK_RETRY_DELAYS_S", default=defaults.webhook_retry_delays_s
            ),
            deployment_store_backend=(
                env.get("DEPLOYMENT_STORE_BACKEND", "").strip().lower() or defaults.deployment_store_backend
            ),
            postgres_dsn=env.get("POSTGRES_DSN", "").strip(),
        )

    def retry_delay_s(self, retry_count: int) -> float:
        if not self.webhook_retry_delays_s:
            return 0.0
        idx = min(max(0, retry_count), len(self.webhook_retry_delays_s) - 1)
        return self.webhook_retry_delays_s[idx]
