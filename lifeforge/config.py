from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    database_path: Path = Path("./data/lifeforge.sqlite3")
    snapshot_dir: Path = Path("./data/snapshots")
    snapshot_name: str = "lifeforge-storage"
    multi_level_up: bool = False
    whatsapp_api_url: str = ""
    whatsapp_api_key: str = ""
    reminder_window_minutes: int = 15
    log_level: str = "INFO"


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        raw = line.strip()
        if not raw or raw.startswith("#") or "=" not in raw:
            continue
        key, value = raw.split("=", maxsplit=1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def load_settings(env_file: Path | None = Path(".env")) -> Settings:
    if env_file is not None:
        _load_env_file(env_file)

    defaults = Settings()
    window = os.getenv("LIFEFORGE_REMINDER_WINDOW_MINUTES")
    return Settings(
        database_path=Path(os.getenv("LIFEFORGE_DATABASE_PATH", str(defaults.database_path))),
        snapshot_dir=Path(os.getenv("LIFEFORGE_SNAPSHOT_DIR", str(defaults.snapshot_dir))),
        snapshot_name=os.getenv("LIFEFORGE_SNAPSHOT_NAME", defaults.snapshot_name),
        multi_level_up=_parse_bool(os.getenv("LIFEFORGE_MULTI_LEVEL_UP"), default=defaults.multi_level_up),
        whatsapp_api_url=os.getenv("LIFEFORGE_WHATSAPP_API_URL", "").strip(),
        whatsapp_api_key=os.getenv("LIFEFORGE_WHATSAPP_API_KEY", "").strip(),
        reminder_window_minutes=int(window) if window else defaults.reminder_window_minutes,
        log_level=os.getenv("LIFEFORGE_LOG_LEVEL", defaults.log_level).upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
