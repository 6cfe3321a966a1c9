"""
Environment lookups for the tern CLI.

Resolves where configuration files and migrations live from, in order of
precedence, explicit CLI values, environment variables and defaults.
`.env` files in the working directory are loaded first so they can supply
any of these variables (and `PG*` variables used from config templates).
"""

import os
from pathlib import Path
from typing import Sequence

from tern.config.logging_config import get_logger

log = get_logger(__name__)

CONFIG_ENV_VAR = "TERN_CONFIG"
MIGRATIONS_ENV_VAR = "TERN_MIGRATIONS"
DEFAULT_CONFIG_FILE = "tern.yaml"


def load_dotenv_files(directory: str | Path | None = None) -> None:
    """Load environment variables from .env files in a directory.

    Files are read in order of precedence: `.env`, `.env.<TERN_ENV>` and
    `.env.<TERN_ENV>.local`. Variables already set in the process
    environment are never overridden.
    """
    from dotenv import load_dotenv

    base = Path(directory) if directory is not None else Path.cwd()
    env_name = os.environ.get("TERN_ENV", "development")

    env_files = [
        base / ".env",
        base / f".env.{env_name}",
        base / f".env.{env_name}.local",
    ]

    for env_file in env_files:
        if env_file.exists():
            log.debug(f"Loading environment from {env_file}")
            load_dotenv(env_file, override=False)


def resolve_config_paths(cli_paths: Sequence[str] = ()) -> list[Path]:
    """Return the config files to load.

    CLI paths win, then `TERN_CONFIG`, then `./tern.yaml` if it exists.
    """
    if cli_paths:
        return [Path(p) for p in cli_paths]

    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return [Path(env_path)]

    default = Path(DEFAULT_CONFIG_FILE)
    if default.exists():
        return [default]
    return []


def resolve_migrations_path(cli_path: str | None = None) -> Path:
    """Return the migrations directory: CLI value, then `TERN_MIGRATIONS`, then `.`."""
    return Path(cli_path or os.environ.get(MIGRATIONS_ENV_VAR) or ".")
