# chatsync/main.py
import logging
import os
from dotenv import load_dotenv

# 1) cargar variables de entorno del .env (antes de importar módulos que las leen)
load_dotenv()

import asyncio
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatsync.api.conversations import router as conversations_router
from chatsync.api.notifications import router as notifications_router
from chatsync.api.websocket import router as ws_router
from chatsync.infra.backend import RemoteBackend
from chatsync.infra.memory_backend import InMemoryBackend
from chatsync.services.session import SessionRegistry

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_backend() -> RemoteBackend:
    """Azure si hay connection string; si no, backend en memoria."""
    if os.getenv("AZURE_STORAGE_CONNECTION_STRING"):
        from chatsync.infra.table_client import AzureBackend
        return AzureBackend()

    logger.warning("AZURE_STORAGE_CONNECTION_STRING no configurada: usando backend en memoria")
    return InMemoryBackend()


def create_app(backend: Optional[RemoteBackend] = None) -> FastAPI:
    app = FastAPI(title="Chat Sync Service")

    app.state.backend = backend or build_backend()
    app.state.sessions = SessionRegistry(app.state.backend)
    app.state.consumer_task = None
    app.state.sweeper_task = None

    # 2) CORS (puedes limitar orígenes en prod)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 3) Rutas REST
    app.include_router(conversations_router)
    app.include_router(notifications_router)
    # 4) Ruta WebSocket
    app.include_router(ws_router)

    @app.on_event("startup")
    async def startup_event():
        # 5) lanzar el consumer del feed de cambios en background
        feed = getattr(app.state.backend, "feed", None)
        if feed is not None and feed.configured:
            app.state.consumer_task = asyncio.create_task(feed.consume())
        # 6) liberar sesiones ociosas
        app.state.sweeper_task = asyncio.create_task(app.state.sessions.sweep())

    @app.on_event("shutdown")
    async def shutdown_event():
        for task in (app.state.consumer_task, app.state.sweeper_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        await app.state.sessions.close_all()
        await app.state.backend.close()

    return app


app = create_app()
