"""Run directory, logging and naming helpers."""

import logging
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

LOG_FORMAT = '[%(asctime)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'
LOGGER_NAMES = ('pvcm', 'pvcm_common')


class _LevelPrefixFormatter(logging.Formatter):
    """Prefix warnings and errors with their level name."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if record.levelno >= logging.WARNING:
            stamp_end = line.find('] ') + 2
            return f"{line[:stamp_end]}{record.levelname}: {line[stamp_end:]}"
        return line


def run_timestamp() -> str:
    """Timestamp shared by the run directory, log file and workload names."""
    return datetime.now().strftime("%Y%m%d-%H%M%S")


def safe_name(value: str) -> str:
    """Normalize a string into a DNS-1123 compatible resource name."""
    name = re.sub(r'[^a-z0-9.-]+', '-', value.lower())
    return name.strip('-')


def create_run_dir(base: Path, ts: str) -> Path:
    """Create the timestamped run directory holding logs and staging files."""
    run_dir = base / f"pvc-migrate-logs-{ts}"
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def setup_logging(run_dir: Path, ts: str, verbose: bool = False) -> Path:
    """Send package logs to stderr and to the master log in the run directory.

    Returns:
        Path to the master log file
    """
    log_path = run_dir / f"run-{ts}.log"
    formatter = _LevelPrefixFormatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    file_handler = logging.FileHandler(log_path, encoding='utf-8')
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)

    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.setLevel(logging.DEBUG if verbose else logging.INFO)
        logger.handlers = [file_handler, stream_handler]
        logger.propagate = False

    return log_path


def write_manifest(run_dir: Path | None, name: str, manifest: dict[str, Any]) -> None:
    """Keep a YAML copy of a submitted manifest next to the run log."""
    if run_dir is None:
        return
    path = run_dir / f"{name}.yaml"
    path.write_text(yaml.safe_dump(manifest, default_flow_style=False, sort_keys=False), encoding='utf-8')
