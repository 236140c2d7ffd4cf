from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from src.bookkeeping.errors import ConfigError


class SeedConfig(BaseModel):
    enabled: bool = True
    demo_users: bool = True
    categories: bool = True
    vendors: bool = True


class LedgerConfig(BaseModel):
    database_url: Optional[str] = None
    connection_file: str = "db_connection.txt"
    echo_sql: bool = False
    seed: SeedConfig = Field(default_factory=SeedConfig)


def _candidate_paths() -> list[Path]:
    paths = [Path("ledger.yaml")]
    home = Path(os.path.expanduser("~"))
    paths.append(home / ".ledger" / "ledger.yaml")
    return paths


def _load_file(path: Path) -> LedgerConfig:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping")
    try:
        return LedgerConfig.model_validate(data.get("ledger") or data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config {path}: {e}") from e


def load_ledger_config(path: Optional[Path] = None) -> tuple[LedgerConfig, Optional[str]]:
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return _load_file(path), str(path)
    for p in _candidate_paths():
        if p.exists():
            return _load_file(p), str(p)
    return LedgerConfig(), None
