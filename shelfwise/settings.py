from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

from .utils import load_config

DEFAULT_PUBLIC_PROXY_URL = "https://corsproxy.io/?"

_ENV_KEYS = {
    "own_proxy_url": "SHELFWISE_OWN_PROXY_URL",
    "public_proxy_url": "SHELFWISE_PUBLIC_PROXY_URL",
    "force_proxy": "SHELFWISE_FORCE_PROXY",
    "skip_cors_check": "SHELFWISE_SKIP_CORS_CHECK",
    "app_origin": "SHELFWISE_APP_ORIGIN",
    "timeout": "SHELFWISE_TIMEOUT",
    "max_hops": "SHELFWISE_MAX_HOPS",
    "verify_ssl": "SHELFWISE_VERIFY_SSL",
}


@dataclass(frozen=True)
class CatalogSettings:
    own_proxy_url: str = ""
    public_proxy_url: str = DEFAULT_PUBLIC_PROXY_URL
    force_proxy: bool = False
    skip_cors_check: bool = False
    app_origin: str = ""
    timeout: float = 20.0
    max_hops: int = 5
    verify_ssl: bool = True
    user_agent: str = "shelfwise-catalog/1.0"

    def normalized_proxy_base(self) -> str:
        """Return the owned proxy endpoint whose path always ends in ``/proxy``.

        A query string already present on the configured base is kept.
        """
        base = (self.own_proxy_url or "").strip()
        if not base:
            return ""
        parts = urlsplit(base)
        path = parts.path.rstrip("/")
        if not path.lower().endswith("/proxy"):
            path = f"{path}/proxy"
        return urlunsplit((parts.scheme, parts.netloc, path, parts.query, ""))


def coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    if value is None:
        return default
    return bool(value)


def coerce_float(value: Any, default: float, *, minimum: float = 15.0, maximum: float = 30.0) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(parsed, maximum))


def coerce_int(value: Any, default: int, *, minimum: int = 1, maximum: int = 10) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(parsed, maximum))


def _coerce_field(name: str, value: Any, defaults: CatalogSettings) -> Any:
    current = getattr(defaults, name)
    if isinstance(current, bool):
        return coerce_bool(value, current)
    if isinstance(current, float):
        return coerce_float(value, current)
    if isinstance(current, int):
        return coerce_int(value, current)
    return str(value).strip() if value is not None else current


def load_catalog_settings(overrides: Optional[Mapping[str, Any]] = None) -> CatalogSettings:
    """Build settings from defaults, ``config.json`` ``catalog`` section, env, then overrides."""
    settings = CatalogSettings()
    known = {item.name for item in fields(CatalogSettings)}

    layers: List[Mapping[str, Any]] = []
    stored = load_config().get("catalog")
    if isinstance(stored, Mapping):
        layers.append(stored)
    env_values: Dict[str, Any] = {}
    for name, env_key in _ENV_KEYS.items():
        raw = os.environ.get(env_key)
        if raw is not None and raw != "":
            env_values[name] = raw
    layers.append(env_values)
    if overrides:
        layers.append(overrides)

    for layer in layers:
        updates = {
            name: _coerce_field(name, value, settings)
            for name, value in layer.items()
            if name in known
        }
        if updates:
            settings = replace(settings, **updates)
    return settings
