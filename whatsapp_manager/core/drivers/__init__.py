"""Storage engine drivers"""

from whatsapp_manager.core.config import AppConfig
from whatsapp_manager.core.drivers.filesystem import FileEngine
from whatsapp_manager.core.drivers.memory import MemoryEngine
from whatsapp_manager.core.drivers.sqlite import SQLiteEngine
from whatsapp_manager.core.engine import Engine
from whatsapp_manager.core import keys


def build_engine(cfg: AppConfig) -> Engine:
    """Create the engine selected by the configuration"""
    if cfg.storage_backend == "memory":
        return MemoryEngine()
    if cfg.storage_backend == "sqlite":
        password = keys.ensure_passphrase() if cfg.encrypt_storage else None
        return SQLiteEngine(cfg.resolved_storage_path(), password)
    return FileEngine(cfg.resolved_storage_path())


__all__ = ["FileEngine", "MemoryEngine", "SQLiteEngine", "build_engine"]
