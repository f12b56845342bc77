# copychu/config/loader.py
import logging
import os
from pathlib import Path
from typing import Iterable

from .config import AppSettings


def _existing(paths: Iterable[Path]) -> list[Path]:
    return [p for p in paths if p.exists()]


def load_settings(workspace: str | None = None) -> AppSettings:
    # allow an explicit path via env var
    explicit = Path(os.environ["COPYCHU_ENV_FILE"]) if "COPYCHU_ENV_FILE" in os.environ else None

    candidates = _existing([
        explicit or Path("NON_EXISTENT"),  # placeholder if not set
        Path.cwd() / ".env",
        Path(workspace) / ".env" if workspace else Path("NON_EXISTENT"),
    ])

    if not candidates and explicit:
        raise FileNotFoundError(f"Explicitly specified env file not found: {explicit}")

    if len(candidates) == 0:
        log = logging.getLogger("copychu.config.loader")
        log.warning("No env files found; using defaults and env vars only.")

    overrides = {"workspace": workspace} if workspace else {}
    if candidates:
        # Later files override earlier ones
        return AppSettings(_env_file=[str(p) for p in candidates], **overrides)
    return AppSettings(**overrides)
