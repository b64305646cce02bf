"""
WhatsApp Chat Manager - FastAPI Application

Read-only HTTP view of the normalized account state kept by a running
``WhatsAppManager``. Register it with ``dependencies.set_manager`` before
serving requests.
"""

from fastapi import FastAPI

from whatsapp_manager.api.routes import chats, contacts, messages

app = FastAPI(
    title="WhatsApp 聊天记录管理",
    description="WhatsApp Chat Manager - synchronized contacts, chats and messages",
    version="1.0.0",
)


@app.get("/")
async def root():
    return {"message": "WhatsApp Chat Manager API", "docs": "/docs"}


@app.get("/api/health")
async def health():
    """Health check endpoint"""
    return {"status": "ok"}


app.include_router(contacts.router, prefix="/api/contacts", tags=["contacts"])
app.include_router(chats.router, prefix="/api/chats", tags=["chats"])
app.include_router(messages.router, prefix="/api/chats", tags=["messages"])
