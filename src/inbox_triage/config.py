"""YAML configuration: loading, the process-wide instance and hot reload.

The CLI and the web app read `config/config.yaml` (or the file named by
TRIAGE_CONFIG_PATH) once through `get_config()`. The run manager calls
`reload_config_if_changed()` before every run; an edited file replaces the
active config only if it loads and validates, otherwise the last good one
stays active. Library callers and tests can build `AppConfig()` directly.

Usage:
    from inbox_triage.config import get_config, reload_config_if_changed

    config = get_config()
    if reload_config_if_changed():
        config = get_config()
"""

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from inbox_triage.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from inbox_triage.core.errors import ConfigLoadError, ConfigValidationError
from inbox_triage.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "TRIAGE_CONFIG_PATH"


@dataclass
class _ActiveConfig:
    config: AppConfig
    path: Path
    mtime: float


_lock = threading.Lock()
_active: _ActiveConfig | None = None


def config_path() -> Path:
    """File used by get_config(): TRIAGE_CONFIG_PATH or config/config.yaml."""
    return Path(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)


def _error_lines(error: ValidationError) -> str:
    lines = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"]) or "<root>"
        if detail["type"] == "missing":
            lines.append(f"  - Missing required field '{location}'")
        else:
            lines.append(f"  - Field '{location}': {detail['msg']}")
    return "\n".join(lines)


def _read_mapping(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it by copying config/config.yaml.example to {path}"
        ) from e
    except OSError as e:
        raise ConfigLoadError(f"Cannot read configuration file {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(f"Configuration file must be a YAML mapping, got {type(data).__name__}")
    return data


def parse_config(data: dict[str, Any], source: Path | str = "<memory>") -> AppConfig:
    """Validate a config mapping.

    Raises:
        ConfigValidationError: Schema errors (one line per field) or a
            schema_version this release does not know
    """
    try:
        config = AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError(f"Configuration validation failed for {source}:\n{_error_lines(e)}") from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} in {source} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Upgrade inbox-triage or downgrade the config."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Read and validate a config file, bypassing the process-wide instance.

    Raises:
        ConfigLoadError: Missing, unreadable or non-mapping file, bad YAML
        ConfigValidationError: Schema validation failed
    """
    path = path or config_path()
    config = parse_config(_read_mapping(path), path)
    logger.info(
        "config_loaded",
        path=str(path),
        schema_version=config.schema_version,
        classify_model=config.models.classify,
    )
    return config


def get_config() -> AppConfig:
    """Process-wide config, loaded on first use.

    Raises:
        ConfigLoadError, ConfigValidationError: On the first load only
    """
    global _active

    with _lock:
        if _active is None:
            path = config_path()
            config = load_config(path)
            _active = _ActiveConfig(config=config, path=path, mtime=path.stat().st_mtime)
        return _active.config


def reload_config_if_changed() -> bool:
    """Reload the active config when its file was modified.

    Returns:
        True when a new config became active. False when nothing was loaded
        yet, the file is unchanged, or the edited file is invalid (logged;
        the same broken file is not retried until it changes again).
    """
    with _lock:
        if _active is None:
            return False

        try:
            mtime = _active.path.stat().st_mtime
        except OSError as e:
            logger.warning("config_mtime_check_failed", path=str(_active.path), error=str(e))
            return False
        if mtime <= _active.mtime:
            return False

        _active.mtime = mtime
        try:
            _active.config = load_config(_active.path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning("config_reload_failed", path=str(_active.path), error=str(e))
            return False

        logger.info("config_reloaded", path=str(_active.path))
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a config file without activating it.

    Returns:
        (is_valid, message) where the message is either the error or a
        short summary of the effective settings
    """
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"

    classifier = config.classifier
    summary = [
        f"Configuration valid (schema version {config.schema_version})",
        f"  - model: {config.models.classify}",
        f"  - batch: {classifier.max_batch_size} emails / {classifier.max_batch_chars} chars",
        f"  - {len(classifier.confidence_thresholds)} category thresholds",
        f"  - stale run after {config.pipeline.stale_run_minutes} minutes",
    ]
    return True, "\n".join(summary)


def reset_config() -> None:
    """Forget the active config (tests)."""
    global _active
    with _lock:
        _active = None
