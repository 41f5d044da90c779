from __future__ import annotations
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional
import yaml
from dotenv import load_dotenv

from report_engine.data.models import SystemConfig
from report_engine.exceptions.errors import ConfigNotFound
from report_engine.logging.logger import get_logger

log = get_logger("config.settings")

_PLACEHOLDER = re.compile(r"\$\{(\w+)\}")


def _env(key: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(key, default)

def _env_int(key: str, default: Any) -> int:
    return int(_env(key, str(default)))

def _env_float(key: str, default: Any) -> float:
    return float(_env(key, str(default)))

@dataclass(frozen=True)
class Settings:
    env: str = "dev"
    log_level: str = "INFO"
    log_file: str = "logs/report_engine.log"

    # Credential file holding the list of systems (see load_systems)
    systems_file: str = ".emailer_credentials"

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------
    query_timeout_seconds: float = 300.0
    retry_max_attempts: int = 3
    retry_initial_delay: float = 1.0
    retry_backoff_factor: float = 2.0
    retry_max_delay: float = 30.0

    # ------------------------------------------------------------------
    # Report run
    # ------------------------------------------------------------------
    output_dir: str = "/tmp/report_engine"
    query_workers: int = 4
    chart_workers: int = 2

    chart_dpi: int = 100
    chart_width: int = 640
    chart_height: int = 400

def load_settings(config_dir: str = "config") -> Settings:
    load_dotenv()
    app_env = _env("APP_ENV", "dev")
    cfg_path = Path(config_dir) / f"{app_env}.yaml"
    if not cfg_path.exists():
        raise ConfigNotFound(f"Config not found: {cfg_path}")

    cfg = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
    defaults = Settings()

    app_cfg = cfg.get("app") or {}
    db_cfg = cfg.get("database") or {}
    retry_cfg = db_cfg.get("retry") or {}
    report_cfg = cfg.get("report") or {}
    chart_cfg = cfg.get("charts") or {}

    settings = Settings(
        env=app_env,
        log_level=_env("LOG_LEVEL", app_cfg.get("log_level", defaults.log_level)),
        log_file=_env("LOG_FILE", app_cfg.get("log_file", defaults.log_file)),
        systems_file=_env("SYSTEMS_FILE", db_cfg.get("systems_file", defaults.systems_file)),
        query_timeout_seconds=_env_float(
            "QUERY_TIMEOUT_SECONDS", db_cfg.get("query_timeout_seconds", defaults.query_timeout_seconds)
        ),
        retry_max_attempts=_env_int("RETRY_MAX_ATTEMPTS", retry_cfg.get("max_attempts", defaults.retry_max_attempts)),
        retry_initial_delay=_env_float(
            "RETRY_INITIAL_DELAY", retry_cfg.get("initial_delay", defaults.retry_initial_delay)
        ),
        retry_backoff_factor=_env_float(
            "RETRY_BACKOFF_FACTOR", retry_cfg.get("backoff_factor", defaults.retry_backoff_factor)
        ),
        retry_max_delay=_env_float("RETRY_MAX_DELAY", retry_cfg.get("max_delay", defaults.retry_max_delay)),
        output_dir=_env("OUTPUT_DIR", report_cfg.get("output_dir", defaults.output_dir)),
        query_workers=_env_int("QUERY_WORKERS", report_cfg.get("query_workers", defaults.query_workers)),
        chart_workers=_env_int("CHART_WORKERS", report_cfg.get("chart_workers", defaults.chart_workers)),
        chart_dpi=_env_int("CHART_DPI", chart_cfg.get("dpi", defaults.chart_dpi)),
        chart_width=int(chart_cfg.get("width", defaults.chart_width)),
        chart_height=int(chart_cfg.get("height", defaults.chart_height)),
    )
    if settings.retry_max_attempts < 1:
        raise ValueError("retry.max_attempts must be >= 1")
    if settings.query_workers < 1 or settings.chart_workers < 1:
        raise ValueError("report.query_workers and report.chart_workers must be >= 1")
    return settings


# ----------------------------------------------------------------------
# System (credential) file
# ----------------------------------------------------------------------

def _substitute(value: Any, environ: Mapping[str, str]) -> Any:
    if isinstance(value, str):
        return _PLACEHOLDER.sub(lambda m: environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _substitute(v, environ) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(v, environ) for v in value]
    return value


def load_systems(path: str, environ: Optional[Mapping[str, str]] = None) -> List[SystemConfig]:
    """Read the systems file (JSON or YAML) into SystemConfig values.

    Accepts either a top-level list or a mapping with a `systems` list.
    `${VAR}` placeholders are filled from `environ` (defaults to os.environ);
    unknown variables become empty strings. Passwords are expected to be
    decrypted already.
    """
    p = Path(path)
    if not p.exists():
        raise ConfigNotFound(f"Systems file not found: {p}")

    doc = yaml.safe_load(p.read_text(encoding="utf-8")) or []
    entries = doc.get("systems", []) if isinstance(doc, dict) else doc
    if not isinstance(entries, list):
        raise ValueError(f"Systems file must hold a list of systems: {p}")

    env = os.environ if environ is None else environ
    systems = [SystemConfig.from_mapping(_substitute(dict(e), env)) for e in entries]
    log.info("Loaded systems", extra={"path": str(p), "systems": len(systems)})
    return systems


def find_system(systems: Iterable[SystemConfig], name: str) -> SystemConfig:
    wanted = (name or "").strip().lower()
    for s in systems:
        if s.name.lower() == wanted:
            return s
    raise ConfigNotFound(f"System configuration not found for: {name}", system=name)

