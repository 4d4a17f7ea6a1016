"""
CRM Follow-up Engine -- Configuration Module

Centralizes all configuration for the follow-up engine.
Loads defaults from dataclasses, then overlays any overrides from config.yaml.

Usage:
    from crm_engine.config import get_config
    cfg = get_config()                         # loads config.yaml if present
    cfg = get_config("path/to/custom.yaml")    # loads a specific file
    print(cfg.cadence.default_frequency_months)   # 3
    print(cfg.queue.upcoming_window_days)         # 14
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo

import yaml

# ---------------------------------------------------------------------------
# Path constants -- everything relative to the project root
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # crm_engine/
PROJECT_ROOT = _THIS_DIR.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"

DB_PATH_ENV_VAR = "CRM_ENGINE_DB_PATH"


# ===================================================================
# 1. Cadence
# ===================================================================

# Used when an account has neither a frequency nor a times-per-year.
DEFAULT_FOLLOW_UP_FREQUENCY_MONTHS: int = 3


@dataclass
class CadenceSettings:
    """How follow-up due dates are computed."""
    default_frequency_months: Optional[int] = DEFAULT_FOLLOW_UP_FREQUENCY_MONTHS


# ===================================================================
# 2. Queue classification
# ===================================================================

@dataclass
class QueueSettings:
    """Dashboard queue window and the reference timezone for day bounds."""
    upcoming_window_days: int = 14
    timezone: str = "UTC"

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# ===================================================================
# 3. Follow-up completion rules
# ===================================================================

@dataclass
class FollowUpSettings:
    """Rules applied when creating and completing follow-up tasks."""
    # Stripped notes shorter than this cannot complete a follow-up.
    min_notes_length: int = 2
    default_title: str = "Follow-up: {account_name}"


# ===================================================================
# 4. Bulk assignment
# ===================================================================

@dataclass
class AssignmentSettings:
    """Manager bulk-assignment defaults."""
    default_strategy: str = "ROUND_ROBIN"
    bulk_limit: int = 100


# ===================================================================
# 5. Inventory
# ===================================================================

@dataclass
class InventorySettings:
    """Device batch registration rules."""
    imei_pattern: str = r"^\d{15}$"


# ===================================================================
# 6. Storage
# ===================================================================

@dataclass
class StoreSettings:
    """SQLite store location (relative to project root unless absolute)."""
    db_path: str = "crm_engine.db"

    def __post_init__(self):
        self.db_path = os.environ.get(DB_PATH_ENV_VAR, "") or self.db_path

    @property
    def resolved_path(self) -> Path:
        p = Path(self.db_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 7. Output
# ===================================================================

@dataclass
class OutputConfig:
    """Where digests and logs are written."""
    output_dir: str = "output/digests"
    log_file: str = "output/crm_engine.log"

    def resolve(self, rel: str) -> Path:
        p = Path(rel)
        return p if p.is_absolute() else PROJECT_ROOT / p

    @property
    def digest_dir(self) -> Path:
        return self.resolve(self.output_dir)

    @property
    def log_path(self) -> Path:
        return self.resolve(self.log_file)

    def ensure_dirs(self) -> None:
        """Create output directories if they don't exist."""
        self.digest_dir.mkdir(parents=True, exist_ok=True)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class CrmEngineConfig:
    """Top-level configuration container for the follow-up engine."""
    cadence: CadenceSettings = field(default_factory=CadenceSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    followups: FollowUpSettings = field(default_factory=FollowUpSettings)
    assignment: AssignmentSettings = field(default_factory=AssignmentSettings)
    inventory: InventorySettings = field(default_factory=InventorySettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    output: OutputConfig = field(default_factory=OutputConfig)


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: CrmEngineConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a CrmEngineConfig instance.

    Unknown sections and keys are ignored.
    """
    _section_map = {
        "cadence": cfg.cadence,
        "queue": cfg.queue,
        "followups": cfg.followups,
        "assignment": cfg.assignment,
        "inventory": cfg.inventory,
        "store": cfg.store,
        "output": cfg.output,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)

    # The environment still wins over the file for the store path.
    env_db = os.environ.get(DB_PATH_ENV_VAR)
    if env_db:
        cfg.store.db_path = env_db


def get_config(yaml_path: Optional[str | Path] = None) -> CrmEngineConfig:
    """Build a CrmEngineConfig, optionally overlaying values from a YAML file.

    Args:
        yaml_path: Path to a config.yaml file.  If None, looks for the
                   default config.yaml at the project root.  If that file
                   doesn't exist, returns pure defaults.

    Returns:
        Fully populated CrmEngineConfig instance.
    """
    cfg = CrmEngineConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        _apply_yaml_to_config(cfg, data)
    elif yaml_path:
        raise FileNotFoundError(f"Config file not found: {path}")

    return cfg
