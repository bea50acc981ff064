"""Engine configuration loaded from ``tabcalc.yaml`` with defaults."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict

from tabcalc.validation import Severity

CONFIG_FILENAME = "tabcalc.yaml"

DEFAULT_CONFIG = {
    "duplicate_target_severity": "warning",
    "invalid_range_severity": "warning",
    "log_dir": None,  # structured event log disabled unless set
    "logging_fsync": False,
    "logging_tail_bytes": 2_097_152,  # 2 MB
}


def _flatten_logging_block(user_config: dict[str, Any]) -> dict[str, Any]:
    """Flatten a nested ``logging:`` block into flat config keys.

    Supports::

        logging:
          dir: .tabcalc/logs
          fsync: true
          tail_bytes: 65536

    Maps to ``log_dir``, ``logging_fsync`` and ``logging_tail_bytes``.
    """
    block = user_config.pop("logging", None)
    if not isinstance(block, dict):
        return user_config

    mapping = {
        "dir": "log_dir",
        "fsync": "logging_fsync",
        "tail_bytes": "logging_tail_bytes",
    }
    for short_key, flat_key in mapping.items():
        if short_key in block:
            user_config[flat_key] = block[short_key]
    return user_config


def load_config(config_dir: Path) -> dict[str, Any]:
    """Load configuration from ``tabcalc.yaml`` in *config_dir*, with defaults.

    Unknown keys are kept so hosts can carry their own settings in the
    same file.  A relative ``log_dir`` is resolved against *config_dir*.

    Args:
        config_dir: Directory that may contain ``tabcalc.yaml``.

    Returns:
        Merged configuration dict.
    """
    config = dict(DEFAULT_CONFIG)
    config_path = Path(config_dir) / CONFIG_FILENAME
    if config_path.exists():
        user_config = yaml.safe_load(config_path.read_text()) or {}
        user_config = _flatten_logging_block(user_config)
        config.update(user_config)

    log_dir = config.get("log_dir")
    if log_dir is not None and not Path(log_dir).is_absolute():
        config["log_dir"] = str(Path(config_dir) / log_dir)

    return config


class EngineSettings(BaseModel):
    """Typed view of the settings the engine itself consumes."""

    model_config = ConfigDict(frozen=True)

    duplicate_target_severity: Severity = Severity.warning
    invalid_range_severity: Severity = Severity.warning
    log_dir: str | None = None
    logging_fsync: bool = False
    logging_tail_bytes: int = 2_097_152

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> EngineSettings:
        known = {k: config[k] for k in cls.model_fields if config.get(k) is not None}
        return cls(**known)

    @classmethod
    def load(cls, config_dir: Path) -> EngineSettings:
        return cls.from_config(load_config(config_dir))
