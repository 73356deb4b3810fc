from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

PROJECT_ROOT = Path(os.environ.get("QUILLSYNC_HOME") or (Path.home() / ".quillsync"))
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"


class DriveAuthConfig(BaseModel):
    client_id: str = ""
    client_secret: str = ""
    token_file: str = str(RUNTIME_DIR / "google_tokens.json")
    timeout_sec: int = 30


class SyncConfig(BaseModel):
    # Master switch; when off every cycle reports "offline".
    enabled: bool = False
    # Push after every local mutation (fire-and-forget through the worker queue).
    auto_sync_enabled: bool = True
    # 0 means disabled; positive values are seconds between scheduled push+pull runs.
    auto_sync_interval_sec: int = Field(default=0, ge=0, le=86400)
    pull_on_startup: bool = True
    app_folder_name: str = "QuillSync"
    max_retry: int = Field(default=3, ge=0, le=10)
    retry_backoff_sec: float = Field(default=1.0, ge=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "quillsync.log")


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "quillsync.db")


class AppConfig(BaseModel):
    auth: DriveAuthConfig = Field(default_factory=DriveAuthConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Web API
    web_bind_host: str = "127.0.0.1"
    web_port: int = 8766


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = AppConfig.model_validate(data)
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
