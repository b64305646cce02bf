"""Configuration persistence for WhatsApp Chat Manager.

This module stores user configuration on disk so the service can survive restarts.

Stored fields:
- storage_backend: "file", "sqlite" or "memory".
- storage_path: Directory holding the persisted account state.
- encrypt_storage: Encrypt values at rest (sqlite backend only).
- prefetch_media: Download media right after a message is created.
- backfill_timeout: Seconds to wait for the initial history sync.
- log_level: Logging level name.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Optional


_LOCK = threading.Lock()

STORAGE_BACKENDS = ("file", "sqlite", "memory")


def _config_file_path() -> Path:
    """Resolve config file path.

    Test harnesses can override via:
    - WHATSAPP_MANAGER_CONFIG_FILE: full path to config.json
    - WHATSAPP_MANAGER_CONFIG_DIR: directory containing config.json
    """

    file_env = os.environ.get("WHATSAPP_MANAGER_CONFIG_FILE")
    if file_env:
        return Path(file_env)

    dir_env = os.environ.get("WHATSAPP_MANAGER_CONFIG_DIR")
    if dir_env:
        return Path(dir_env) / "config.json"

    return Path.home() / ".whatsapp_manager" / "config.json"


def _default_storage_path() -> str:
    return str(Path.home() / ".whatsapp_manager" / "data")


@dataclass
class AppConfig:
    storage_backend: str = "file"
    storage_path: Optional[str] = None
    encrypt_storage: bool = False
    prefetch_media: bool = False
    backfill_timeout: float = 60.0
    log_level: str = "INFO"

    def resolved_storage_path(self) -> str:
        return self.storage_path or _default_storage_path()


def load_config() -> AppConfig:
    with _LOCK:
        try:
            cfg_file = _config_file_path()
            if not cfg_file.exists():
                return AppConfig()
            data = json.loads(cfg_file.read_text(encoding="utf-8"))
            known = {f.name for f in fields(AppConfig)}
            cfg = AppConfig(**{k: v for k, v in data.items() if k in known})
        except (OSError, ValueError, TypeError):
            return AppConfig()
        if cfg.storage_backend not in STORAGE_BACKENDS:
            cfg.storage_backend = "file"
        return cfg


def save_config(cfg: AppConfig) -> None:
    with _LOCK:
        cfg_file = _config_file_path()
        cfg_file.parent.mkdir(parents=True, exist_ok=True)
        cfg_file.write_text(
            json.dumps(asdict(cfg), indent=2, ensure_ascii=False),
            encoding="utf-8",
        )


def set_storage(backend: str, path: Optional[str] = None) -> AppConfig:
    if backend not in STORAGE_BACKENDS:
        raise ValueError(f"Unknown storage backend: {backend}")
    cfg = load_config()
    cfg.storage_backend = backend
    cfg.storage_path = path
    save_config(cfg)
    return cfg


def set_prefetch_media(enabled: bool) -> AppConfig:
    cfg = load_config()
    cfg.prefetch_media = enabled
    save_config(cfg)
    return cfg
