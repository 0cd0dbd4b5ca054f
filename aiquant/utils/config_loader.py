from __future__ import annotations

import logging
import os
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_cache_lock = threading.Lock()
_cached: dict[str, Any] | None = None
_cached_path: str | None = None


def _project_root() -> Path:
    # aiquant/utils/config_loader.py -> aiquant/utils -> aiquant -> project root
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    override = (os.getenv("AIQUANT_CONFIG_PATH") or "").strip()
    if override:
        return Path(override)
    return _project_root() / "config" / "config.yaml"


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """Override selected YAML settings with environment variables."""
    trading = cfg.setdefault("trading", {})
    if os.getenv("AIQUANT_STARTING_CASH"):
        trading["starting_cash"] = float(os.environ["AIQUANT_STARTING_CASH"])

    scheduler = cfg.setdefault("scheduler", {})
    if os.getenv("AIQUANT_CYCLE_INTERVAL_SECONDS"):
        scheduler["cycle_interval_seconds"] = int(os.environ["AIQUANT_CYCLE_INTERVAL_SECONDS"])

    market_data = cfg.setdefault("market_data", {})
    if os.getenv("FINNHUB_API_KEY"):
        market_data["api_key"] = os.environ["FINNHUB_API_KEY"]


def _require_fraction(section: dict[str, Any], key: str, *, name: str, allow_zero: bool = False) -> None:
    v = section.get(key)
    if not isinstance(v, (int, float)) or isinstance(v, bool):
        raise ValueError(f"Missing or non-numeric {name}.{key} in config")
    lo_ok = v >= 0 if allow_zero else v > 0
    if not lo_ok or v > 1:
        raise ValueError(f"{name}.{key} must be in {'[0, 1]' if allow_zero else '(0, 1]'}; got {v}")


def validate_config(cfg: dict[str, Any]) -> None:
    """
    Fail fast if the configuration is incomplete.

    Policy thresholds and normalisation ranges are validated again (in full) by
    `load_policy_config` / `load_normaliser` when the services are built.
    """
    required_top = ["trading", "policy", "risk", "normalisation"]
    missing = [k for k in required_top if not isinstance(cfg.get(k), dict)]
    if missing:
        raise ValueError(f"Missing required config sections: {', '.join(missing)}")

    trading = cfg["trading"]
    _require_fraction(trading, "allocation_fraction", name="trading")
    starting_cash = trading.get("starting_cash")
    if not isinstance(starting_cash, (int, float)) or isinstance(starting_cash, bool) or starting_cash < 0:
        raise ValueError("trading.starting_cash must be a non-negative number")

    _require_fraction(cfg["risk"], "trail_stop_fraction", name="risk")


def load_config(config_path: str | Path | None = None, *, force_reload: bool = False) -> dict[str, Any]:
    """
    Load the YAML config once and reuse it across the process.

    - Reads `config/config.yaml` by default (or `AIQUANT_CONFIG_PATH`).
    - Applies environment overrides for a small set of operational settings.
    - Returns a deep copy so callers can safely mutate local copies.
    """
    global _cached, _cached_path

    path = Path(config_path) if config_path else default_config_path()
    path_str = str(path.resolve())

    with _cache_lock:
        if not force_reload and _cached is not None and _cached_path == path_str:
            return deepcopy(_cached)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

        if not isinstance(cfg, dict):
            raise ValueError(f"Config must be a YAML mapping (dict); got {type(cfg).__name__}")

        _apply_env_overrides(cfg)
        validate_config(cfg)

        _cached = cfg
        _cached_path = path_str
        logger.info("Loaded config from %s", path_str)
        return deepcopy(cfg)
