from __future__ import annotations

import argparse
import os
import re
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

from dotenv import load_dotenv

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


class ConfigError(ValueError):
    pass


@dataclass
class Settings:
    run_address: str = "localhost:18080"
    database_uri: str = "sqlite:///gophermart.db"
    accrual_address: str = "http://localhost:8080"
    poll_interval: float = 2.0
    storage_timeout: float = 5.0
    accrual_timeout: float = 5.0
    accrual_retry_attempts: int = 5
    accrual_retry_max_wait: float = 10.0
    accrual_retry_total_wait: float = 30.0
    reconcile_deadline: float = 60.0
    log_level: str = "INFO"
    log_format: str = "console"


def parse_duration(value: str) -> float:
    """Parse `2`, `2s`, `500ms`, `1m` or `1h` into seconds."""

    match = _DURATION_RE.match(str(value))
    if not match:
        raise ConfigError(f"Invalid duration: {value!r}")
    seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return seconds


def _positive_int(name: str, value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None
    if number <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return number


def _build_parser(defaults: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Loyalty points ledger and accrual reconciler")
    parser.add_argument("-a", dest="run_address", default=defaults.run_address,
                        help="HTTP listen address, host:port")
    parser.add_argument("-d", dest="database_uri", default=defaults.database_uri,
                        help="Database URI (postgres://... or sqlite:///path)")
    parser.add_argument("-r", dest="accrual_address", default=defaults.accrual_address,
                        help="Accrual service base URL")
    parser.add_argument("-i", dest="poll_interval", default=None,
                        help="Accrual polling interval, e.g. 2s or 500ms")
    return parser


def load_settings(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """
    Build settings from command-line flags and the environment.

    Environment variables take precedence over flags. A `.env` file in the
    working directory is loaded when reading the real process environment.
    """

    if environ is None:
        load_dotenv()
        environ = os.environ

    settings = Settings()
    args = _build_parser(settings).parse_args(argv)

    settings.run_address = environ.get("RUN_ADDRESS", args.run_address)
    settings.database_uri = environ.get("DATABASE_URI", args.database_uri)
    settings.accrual_address = environ.get("ACCRUAL_SYSTEM_ADDRESS", args.accrual_address)

    poll_interval = environ.get("POLL_INTERVAL", args.poll_interval)
    if poll_interval is not None:
        settings.poll_interval = parse_duration(poll_interval)

    if "STORAGE_TIMEOUT" in environ:
        settings.storage_timeout = parse_duration(environ["STORAGE_TIMEOUT"])
    if "ACCRUAL_TIMEOUT" in environ:
        settings.accrual_timeout = parse_duration(environ["ACCRUAL_TIMEOUT"])
    if "ACCRUAL_RETRY_ATTEMPTS" in environ:
        settings.accrual_retry_attempts = _positive_int(
            "ACCRUAL_RETRY_ATTEMPTS", environ["ACCRUAL_RETRY_ATTEMPTS"]
        )
    if "ACCRUAL_RETRY_MAX_WAIT" in environ:
        settings.accrual_retry_max_wait = parse_duration(environ["ACCRUAL_RETRY_MAX_WAIT"])
    if "ACCRUAL_RETRY_TOTAL_WAIT" in environ:
        settings.accrual_retry_total_wait = parse_duration(environ["ACCRUAL_RETRY_TOTAL_WAIT"])
    if "RECONCILE_DEADLINE" in environ:
        settings.reconcile_deadline = parse_duration(environ["RECONCILE_DEADLINE"])

    settings.log_level = environ.get("LOG_LEVEL", settings.log_level).upper()
    if settings.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"Invalid LOG_LEVEL: {settings.log_level!r}")
    settings.log_format = environ.get("LOG_FORMAT", settings.log_format).lower()
    if settings.log_format not in ("console", "json"):
        raise ConfigError(f"Invalid LOG_FORMAT: {settings.log_format!r}")

    if not settings.database_uri:
        raise ConfigError("DATABASE_URI must not be empty.")
    if not settings.accrual_address.startswith(("http://", "https://")):
        settings.accrual_address = f"http://{settings.accrual_address}"

    return settings
