"""API 路由模块"""

from whatsapp_manager.api.routes import chats, contacts, messages

__all__ = ["chats", "contacts", "messages"]
