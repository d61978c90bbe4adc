"""Settings shared by the command line tools: ptah.yaml, environment, then flags."""

from __future__ import annotations

import argparse
import dataclasses
import os
from pathlib import Path

from sqlalchemy.engine import make_url

try:
    import yaml
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required. Install with: pip install pyyaml") from exc

from render import DIALECT_ALIASES, canonical_dialect

DEFAULT_CONFIG_PATH = "ptah.yaml"
DATABASE_URL_ENV = "PTAH_DATABASE_URL"


@dataclasses.dataclass
class Config:
    database_url: str = ""
    dialect: str = ""
    source_dir: str = "models"
    migrations_dir: str = "migrations"
    schema: str | None = None
    log_level: str = "INFO"
    timeout: float | None = None

    def resolved_dialect(self) -> str:
        if self.dialect:
            return canonical_dialect(self.dialect)
        if self.database_url:
            return dialect_from_url(self.database_url)
        return "postgres"


def dialect_from_url(url: str) -> str:
    backend = make_url(url).get_backend_name()
    return canonical_dialect(DIALECT_ALIASES.get(backend, backend))


def read_config_file(path: Path) -> dict:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping at the top of {path}")
    known = {f.name for f in dataclasses.fields(Config)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown settings in {path}: {', '.join(unknown)}")
    return data


def load_config(args: argparse.Namespace | None = None, path: str | Path | None = None) -> Config:
    config_path = Path(path or getattr(args, "config", None) or DEFAULT_CONFIG_PATH)
    values = read_config_file(config_path)

    env_url = os.environ.get(DATABASE_URL_ENV)
    if env_url:
        values["database_url"] = env_url

    if args is not None:
        for field in dataclasses.fields(Config):
            value = getattr(args, field.name, None)
            if value is not None:
                values[field.name] = value

    cfg = Config(**values)
    if cfg.timeout is not None:
        cfg.timeout = float(cfg.timeout)
    cfg.log_level = str(cfg.log_level).upper()
    return cfg


def add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default=None, help=f"YAML settings file (default: {DEFAULT_CONFIG_PATH})")
    parser.add_argument("--database-url", dest="database_url", default=None, help=f"SQLAlchemy URL (env: {DATABASE_URL_ENV})")
    parser.add_argument("--dialect", default=None, help="postgres, mysql or mariadb (default: from the URL)")
    parser.add_argument("--schema", default=None, help="Database schema to inspect")
    parser.add_argument("--timeout", type=float, default=None, help="Statement timeout in seconds")
    parser.add_argument("--log-level", dest="log_level", default=None, help="Logging level (default: INFO)")
