# Configuration for the failure analysis subsystem
# Defaults live on the dataclass; a JSON file and FAILTRIAGE_* environment variables override them

import json
import os
import logging
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "config/failure_analysis.json"
ENV_PREFIX = "FAILTRIAGE_"

# File layout under log_dir
HANDLER_LOG_TEMPLATE = "error-handler-{date}.log"
LATEST_HANDLER_FILE = "latest-handler-errors.json"
RUN_DUMP_PREFIX = "errors-"
LATEST_RUN_JSON = "latest-errors.json"
LATEST_RUN_TEXT = "latest-errors.txt"
SESSION_SUMMARY_TEMPLATE = "session-summary-{session_id}.txt"
ANALYTICS_FILE = "failure-analytics.json"
HISTORY_HTML_FILE = "failure-history.html"


@dataclass
class AnalysisConfig:
    # Tunables shared by the store, capture, analyzer and adapters
    log_dir: str = "test-results/error-logs"
    capture_dir: str = "test-results/error-screenshots"
    latest_limit: int = 100
    consistent_failure_threshold: float = 0.8
    capture_timeout_seconds: float = 5.0
    max_console_messages: int = 100
    max_network_entries: int = 200
    min_failures_per_insight: int = 1
    operation_retries: int = 0
    retry_delay_seconds: float = 1.0
    log_level: str = "INFO"

    def __post_init__(self):
        if self.latest_limit < 1:
            raise ValueError("latest_limit must be at least 1")
        if not 0.0 < self.consistent_failure_threshold <= 1.0:
            raise ValueError("consistent_failure_threshold must be in (0, 1]")
        if self.capture_timeout_seconds <= 0:
            raise ValueError("capture_timeout_seconds must be positive")
        if self.operation_retries < 0:
            raise ValueError("operation_retries cannot be negative")
        if self.min_failures_per_insight < 1:
            raise ValueError("min_failures_per_insight must be at least 1")

    @property
    def log_path(self) -> Path:
        return Path(self.log_dir)

    @property
    def capture_path(self) -> Path:
        return Path(self.capture_dir)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce(raw: str, target_type: Any) -> Any:
    # Convert an environment string to the field's declared type
    if target_type in (int, "int"):
        return int(raw)
    if target_type in (float, "float"):
        return float(raw)
    return raw


def _env_overrides() -> Dict[str, Any]:
    overrides = {}
    for field in fields(AnalysisConfig):
        env_name = f"{ENV_PREFIX}{field.name.upper()}"
        if env_name in os.environ:
            try:
                overrides[field.name] = _coerce(os.environ[env_name], field.type)
            except ValueError:
                raise ValueError(f"Invalid value for {env_name}: {os.environ[env_name]!r}")
    return overrides


def load_config(config_file: Optional[str] = None, **overrides) -> AnalysisConfig:
    # Load configuration: defaults < JSON file < environment < explicit overrides
    path = Path(config_file or DEFAULT_CONFIG_FILE)
    values: Dict[str, Any] = {}

    if path.exists():
        try:
            with open(path, 'r', encoding='utf-8') as f:
                values.update(json.load(f))
            logger.debug(f"Loaded failure analysis config from {path}")
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file {path}: {e}")
    elif config_file:
        logger.warning(f"Config file not found: {path}, using defaults")

    known = {field.name for field in fields(AnalysisConfig)}
    unknown = set(values) - known
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        values = {k: v for k, v in values.items() if k in known}

    values.update(_env_overrides())
    values.update({k: v for k, v in overrides.items() if v is not None})
    return AnalysisConfig(**values)


def configure_logging(level: str = "INFO"):
    # Console logging for CLI usage; pytest manages its own handlers
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
