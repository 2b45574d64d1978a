# FILE: atp/config.py
from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

from .storage import DEFAULT_STORAGE_PATH, PathConfinementError, validate_storage_path


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Defaults / caps
# ---------------------------------------------------------------------------

DEFAULT_RETENTION_MINUTES = 30
MAX_RETENTION_MINUTES = 30
DEFAULT_SMOOTHING_FACTOR = 0.2
DEFAULT_COMPOSITE_THRESHOLD = 1.5
DEFAULT_ANOMALY_HISTORY_SIZE = 10
MAX_ANOMALY_HISTORY_SIZE = 100
DEFAULT_ANOMALY_CHANGE_THRESHOLD = 200.0
DEFAULT_ANOMALY_MIN_DATA_POINTS = 3

# YAML keys whose values stay structured instead of being coerced to str.
_MAPPING_FIELDS = frozenset({"metric_thresholds", "min_thresholds", "max_thresholds", "weights"})
_LIST_FIELDS = frozenset({"include_process_list"})


class ConfigError(ValueError):
    """Invalid filter configuration; fatal at construction."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        _log.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load the top-level filter mapping from YAML.

    Constraints:
      - Ignore if path missing.
      - Only accept dict at top-level.
      - Threshold/weight tables stay mappings, the include list stays a list;
        any other non-scalar value is coerced via str() so pydantic rejects it.
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
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        key = str(k)
        if key in _MAPPING_FIELDS and isinstance(v, dict):
            out[key] = {str(mk): mv for mk, mv in v.items()}
        elif key in _LIST_FIELDS and isinstance(v, list):
            out[key] = [str(item) for item in v]
        elif isinstance(v, (str, int, float, bool)) or v is None:
            out[key] = v
        else:
            out[key] = str(v)
    return out


# ---------------------------------------------------------------------------
# Filter configuration
# ---------------------------------------------------------------------------


class FilterConfig(BaseModel):
    # --- Thresholds -------------------------------------------------------

    # Metrics named here take part in evaluation. 0 means "always include".
    metric_thresholds: Dict[str, float] = {}

    # --- Retention / persistence -----------------------------------------

    retention_minutes: int = DEFAULT_RETENTION_MINUTES
    storage_path: str = DEFAULT_STORAGE_PATH
    enable_storage: bool = True

    # --- Dynamic thresholds ----------------------------------------------

    enable_dynamic_thresholds: bool = False
    dynamic_smoothing_factor: float = DEFAULT_SMOOTHING_FACTOR
    min_thresholds: Dict[str, float] = {}
    max_thresholds: Dict[str, float] = {}

    # --- Multi-metric composite ------------------------------------------

    enable_multi_metric: bool = False
    composite_threshold: Optional[float] = None
    weights: Dict[str, float] = {}

    # --- Anomaly detection -----------------------------------------------

    enable_anomaly_detection: bool = False
    anomaly_history_size: Optional[int] = None
    anomaly_change_threshold: Optional[float] = None
    anomaly_min_data_points: Optional[int] = None

    # --- Bypass / debug --------------------------------------------------

    # Entries with a path separator match the executable path exactly;
    # bare basenames never match.
    include_process_list: List[str] = []
    debug_show_all_filter_stages: bool = False

    model_config = ConfigDict(extra="forbid")

    @field_validator("include_process_list")
    @classmethod
    def _strip_entries(cls, v: List[str]) -> List[str]:
        return [s.strip() for s in v if s and s.strip()]

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    @property
    def persistence_enabled(self) -> bool:
        return bool(self.enable_storage and self.storage_path)

    def normalized(self) -> "FilterConfig":
        """
        Return a copy with defaults applied and caps enforced.

        Unset (None) knobs take their defaults. Explicit non-positive anomaly
        or composite values are left alone so ensure_valid() can reject them.
        """
        upd: Dict[str, Any] = {}

        retention = self.retention_minutes
        if retention <= 0:
            retention = DEFAULT_RETENTION_MINUTES
        upd["retention_minutes"] = min(retention, MAX_RETENTION_MINUTES)

        if self.enable_dynamic_thresholds:
            alpha = self.dynamic_smoothing_factor
            if alpha <= 0 or alpha > 1:
                upd["dynamic_smoothing_factor"] = DEFAULT_SMOOTHING_FACTOR

        composite = self.composite_threshold
        if composite is None or (not self.enable_multi_metric and composite <= 0):
            upd["composite_threshold"] = DEFAULT_COMPOSITE_THRESHOLD

        # With detection disabled, zero/negative knobs are just unset.
        lenient = not self.enable_anomaly_detection

        history = self.anomaly_history_size
        if history is None or (lenient and history <= 0):
            history = DEFAULT_ANOMALY_HISTORY_SIZE
        if history > MAX_ANOMALY_HISTORY_SIZE:
            _log.warning(
                "anomaly_history_size=%d exceeds maximum %d; capping",
                history,
                MAX_ANOMALY_HISTORY_SIZE,
            )
            history = MAX_ANOMALY_HISTORY_SIZE
        upd["anomaly_history_size"] = history

        change = self.anomaly_change_threshold
        if change is None or (lenient and change <= 0):
            upd["anomaly_change_threshold"] = DEFAULT_ANOMALY_CHANGE_THRESHOLD

        min_points = self.anomaly_min_data_points
        if min_points is None or (lenient and min_points <= 0):
            min_points = DEFAULT_ANOMALY_MIN_DATA_POINTS
        if 0 < min_points < DEFAULT_ANOMALY_MIN_DATA_POINTS:
            _log.warning(
                "anomaly_min_data_points=%d is below the minimum of %d; raising",
                min_points,
                DEFAULT_ANOMALY_MIN_DATA_POINTS,
            )
            min_points = DEFAULT_ANOMALY_MIN_DATA_POINTS
        if history > 0 and history < min_points:
            min_points = DEFAULT_ANOMALY_MIN_DATA_POINTS
        upd["anomaly_min_data_points"] = min_points

        return self.model_copy(update=upd)

    def ensure_valid(self, *, storage_base_dir: Optional[str] = None) -> None:
        """Raise ConfigError for values that normalization must not paper over."""
        for table in ("metric_thresholds", "min_thresholds", "max_thresholds", "weights"):
            for metric, value in getattr(self, table).items():
                if value < 0:
                    raise ConfigError(f"{table}[{metric}]", f"must be >= 0, got {value}")

        if self.enable_anomaly_detection:
            for name in (
                "anomaly_history_size",
                "anomaly_change_threshold",
                "anomaly_min_data_points",
            ):
                value = getattr(self, name)
                if value is not None and value <= 0:
                    raise ConfigError(name, f"must be > 0 when anomaly detection is enabled, got {value}")

        if self.enable_multi_metric:
            if self.composite_threshold is not None and self.composite_threshold <= 0:
                raise ConfigError(
                    "composite_threshold",
                    f"must be > 0 when multi-metric is enabled, got {self.composite_threshold}",
                )

        if self.persistence_enabled:
            try:
                validate_storage_path(self.storage_path, base_dir=storage_base_dir)
            except PathConfinementError as e:
                raise ConfigError("storage_path", str(e)) from e

    def prepared(self, *, storage_base_dir: Optional[str] = None) -> "FilterConfig":
        """Validate, then normalize. This is what the processor runs on."""
        self.ensure_valid(storage_base_dir=storage_base_dir)
        return self.normalized()


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_filter_config() -> FilterConfig:
    """
    Load FilterConfig from defaults, optional YAML, and environment variables.

    Priority:
      1. FilterConfig defaults (in-code).
      2. YAML file pointed to by ATP_CONFIG_PATH.
      3. Environment variables (ATP_*) for scalar toggles.

    Threshold and weight tables are only taken from YAML.
    """
    merged = FilterConfig().model_dump()

    yaml_path = os.environ.get("ATP_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = FilterConfig(**tmp).model_dump()  # will enforce extra="forbid"

    merged["retention_minutes"] = _env_int("ATP_RETENTION_MINUTES", merged["retention_minutes"])
    merged["storage_path"] = os.environ.get("ATP_STORAGE_PATH", merged["storage_path"])
    merged["enable_storage"] = _env_bool("ATP_ENABLE_STORAGE", merged["enable_storage"])
    merged["enable_dynamic_thresholds"] = _env_bool(
        "ATP_ENABLE_DYNAMIC_THRESHOLDS", merged["enable_dynamic_thresholds"]
    )
    merged["enable_multi_metric"] = _env_bool("ATP_ENABLE_MULTI_METRIC", merged["enable_multi_metric"])
    merged["enable_anomaly_detection"] = _env_bool(
        "ATP_ENABLE_ANOMALY_DETECTION", merged["enable_anomaly_detection"]
    )
    merged["debug_show_all_filter_stages"] = _env_bool(
        "ATP_DEBUG_SHOW_ALL_FILTER_STAGES", merged["debug_show_all_filter_stages"]
    )

    return FilterConfig(**merged)


__all__ = [
    "ConfigError",
    "FilterConfig",
    "load_filter_config",
    "DEFAULT_RETENTION_MINUTES",
    "DEFAULT_COMPOSITE_THRESHOLD",
    "DEFAULT_ANOMALY_HISTORY_SIZE",
    "DEFAULT_ANOMALY_CHANGE_THRESHOLD",
    "DEFAULT_ANOMALY_MIN_DATA_POINTS",
]
