"""
Shared dependencies for API routes.

The routes read through the ``WhatsAppManager`` owned by the process that runs
the session; it is registered once at startup.
"""

from typing import Optional

from fastapi import HTTPException

from whatsapp_manager.core.manager import WhatsAppManager

_manager: Optional[WhatsAppManager] = None


def set_manager(manager: Optional[WhatsAppManager]) -> None:
    """Register the running manager (None unregisters it)"""
    global _manager
    _manager = manager


def get_manager() -> WhatsAppManager:
    """Get the registered WhatsAppManager.

    Raises:
        HTTPException: If no manager is running
    """
    if _manager is None:
        raise HTTPException(status_code=503, detail="WhatsApp manager not running.")
    return _manager
