# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# chat/api/web_app.py
"""
FastAPI app hosting the Socket.IO bridge, the broker client and the build pipeline.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import builder_ai_app.apps.utils.logging_config as logging_config
from builder_ai_app.apps.chat.api.socketio.connection_manager import ConnectionManager
from builder_ai_app.apps.chat.builder import BuildOrchestrator
from builder_ai_app.apps.chat.emitters import BrokerRelayEmitter
from builder_ai_app.config import Settings, get_settings
from builder_ai_app.infra.llm.streaming import ModelStreamClient, create_stream_client
from builder_ai_app.infra.llm.tool_call_driver import ChunkedToolCallDriver, DriverConfig
from builder_ai_app.infra.orchestration.app.communicator import BrokerClient

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None,
               *,
               broker: Optional[BrokerClient] = None,
               connections: Optional[ConnectionManager] = None,
               stream_client: Optional[ModelStreamClient] = None) -> FastAPI:
    settings = settings or get_settings()
    broker = broker or BrokerClient(
        settings.REDIS_URL,
        client_id=settings.BROKER_CLIENT_ID,
        restart_debounce_s=settings.BROKER_RESTART_DEBOUNCE_S,
    )
    connections = connections or ConnectionManager(
        broker,
        allowed_origins=settings.cors_origins,
        topic_prefix=settings.BROKER_TOPIC_PREFIX,
        outbound_topic=next(iter(settings.bind_topics), None),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(f"Builder service starting on port {settings.PORT}")
        app.state.broker = broker
        app.state.connections = connections

        try:
            await broker.connect_producer()
        except Exception as e:
            logger.error(f"Broker producer connect failed: {e}")
        await connections.bind_topics(settings.bind_topics)
        try:
            await broker.start()
        except Exception as e:
            logger.error(f"Broker consumer start failed: {e}")

        client = stream_client
        if client is None:
            try:
                client = create_stream_client(settings)
            except Exception as e:
                logger.error(f"Model stream client unavailable ({settings.LLM_PROVIDER}): {e}")
        if client is not None:
            driver = ChunkedToolCallDriver(
                client,
                emitter=BrokerRelayEmitter(connections),
                config=DriverConfig.from_settings(settings),
            )
            app.state.builder = BuildOrchestrator(driver, connections)
        else:
            app.state.builder = None

        yield

        # Shutdown
        await broker.disconnect()
        await connections.close()
        logger.info("Builder service stopped")

    app = FastAPI(
        title="Builder AI App",
        description="Chunked tool-call driver with a Socket.IO / Redis topic event bridge",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "broker_running": broker.running,
            "topics": broker.topics,
        }

    app.mount("/socket.io", connections.get_asgi_app())
    return app


if __name__ == "__main__":
    import uvicorn

    logging_config.configure_logging()
    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=settings.PORT,
        log_config=None,
        log_level=None,
    )
