# chaoscanvas/config.py
from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, field_validator


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        _log.warning("ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        _log.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return [p.strip() for p in raw.split(",") if p.strip()]


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a top-level mapping from YAML.

    Constraints:
      - Ignore if path is unset or missing.
      - Only accept a dict at top-level.
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    return {str(k): v for k, v in doc.items()}


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    # --- Core / identity --------------------------------------------------

    debug: bool = False
    version: str = "dev"
    app_name: str = "Chaos Canvas"
    env: str = "dev"

    # Indicates how this config reached the process (defaults/yaml)
    config_origin: str = "defaults"

    # --- Storage ----------------------------------------------------------

    # "mem://" or "sqlite:///path/to/chaoscanvas.db"
    database_dsn: str = "mem://"

    # --- Economy ----------------------------------------------------------

    starting_coins: int = 100
    baseline_market_price: str = "10.00"
    # author receives floor(amount * share)
    boost_author_share: str = "0.5"
    boost_price_multiplier: str = "1.1"
    coin_packages: Dict[str, int] = {"100": 100, "500": 500, "1000": 1000, "2000": 2000}

    # --- Contribution limits ----------------------------------------------

    contribution_rate_max: int = 20
    contribution_rate_window_ms: int = 300_000
    daily_contribution_cap: int = 15

    # --- Listing ----------------------------------------------------------

    transactions_default_limit: int = 50
    transactions_max_limit: int = 500

    # --- HTTP -------------------------------------------------------------

    cors_origins: List[str] = ["*"]
    metrics_enabled: bool = True

    # --- Collaborators ----------------------------------------------------

    # Checkout service; empty disables /api/checkout-session.
    checkout_url: str = ""
    generation_timeout_s: float = 5.0
    websocket_queue_size: int = 256

    model_config = ConfigDict(extra="forbid", frozen=True)

    @field_validator("starting_coins", "daily_contribution_cap", "contribution_rate_max")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be >= 0")
        return v

    @field_validator("contribution_rate_window_ms", "transactions_default_limit", "transactions_max_limit")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("coin_packages")
    @classmethod
    def _packages(cls, v: Dict[str, int]) -> Dict[str, int]:
        for name, coins in v.items():
            if coins <= 0:
                raise ValueError(f"coin package {name!r} must grant > 0 coins")
        return v

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    def config_hash(self) -> str:
        """
        Stable hash of the current settings, safe to put in logs.

        Secrets are not stored in Settings.
        """
        payload = self.model_dump(mode="json")
        blob = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by CHAOS_CONFIG_PATH.
      3. Environment variables (CHAOS_*), ignored when out of bounds.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = os.environ.get("CHAOS_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # will enforce extra="forbid"
        origin = "yaml"

    # 2) Environment overrides

    def _env_override(name: str, key: str, parser, bounds=None) -> None:
        old = merged.get(key)
        new = parser(name, old)
        if bounds is not None:
            lo, hi = bounds
            if new < lo or new > hi:
                _log.warning("ignoring out-of-range %s=%r", name, new)
                return
        merged[key] = new

    # Core
    _env_override("CHAOS_DEBUG", "debug", _env_bool)
    merged["version"] = os.environ.get("CHAOS_VERSION", merged["version"])
    merged["env"] = os.environ.get("CHAOS_ENV", merged["env"])

    # Storage
    merged["database_dsn"] = os.environ.get("CHAOS_DATABASE_DSN", merged["database_dsn"])

    # Economy
    _env_override("CHAOS_STARTING_COINS", "starting_coins", _env_int, (0, 1_000_000))

    # Limits
    _env_override("CHAOS_RATE_MAX", "contribution_rate_max", _env_int, (1, 10_000))
    _env_override("CHAOS_RATE_WINDOW_MS", "contribution_rate_window_ms", _env_int, (1, 86_400_000))
    _env_override("CHAOS_DAILY_CAP", "daily_contribution_cap", _env_int, (0, 10_000))
    _env_override("CHAOS_TX_LIMIT", "transactions_default_limit", _env_int, (1, 10_000))

    # HTTP
    merged["cors_origins"] = _env_list("CHAOS_CORS_ORIGINS", merged["cors_origins"])
    _env_override("CHAOS_METRICS_ENABLED", "metrics_enabled", _env_bool)

    # Collaborators
    merged["checkout_url"] = os.environ.get("CHAOS_CHECKOUT_URL", merged["checkout_url"])
    _env_override("CHAOS_GENERATION_TIMEOUT_S", "generation_timeout_s", _env_float, (0.1, 60.0))

    merged["config_origin"] = origin

    return Settings(**merged)


def load_settings() -> Settings:
    return _load_settings()


# ---------------------------------------------------------------------------
# Reloadable wrapper
# ---------------------------------------------------------------------------


class ReloadableSettings:
    """
    Thread-safe wrapper around Settings.

    Properties:
      - get(): returns an immutable Settings snapshot.
      - refresh(): reloads from file and environment.
      - set(): in-memory overrides of known fields; unknown keys are ignored.
    """

    def __init__(self, initial: Optional[Settings] = None) -> None:
        self._lock = threading.RLock()
        self._settings = initial or _load_settings()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    def refresh(self) -> Settings:
        with self._lock:
            self._settings = _load_settings()
            _log.info("settings reloaded hash=%s", self._settings.config_hash())
            return self._settings

    def set(self, **overrides: Any) -> Settings:
        with self._lock:
            data = self._settings.model_dump()
            for key, value in overrides.items():
                if key in data:
                    data[key] = value
            self._settings = Settings(**data)
            return self._settings


__all__ = ["Settings", "ReloadableSettings", "load_settings"]
