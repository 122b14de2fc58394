# node_deployer/api/main.py

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from node_deployer.api.errors import setup_exception_handlers
from node_deployer.api.routes.auth import router as auth_router
from node_deployer.api.routes.deployments import router as deployments_router
from node_deployer.api.routes.github import router as github_router
from node_deployer.api.routes.k8s import router as k8s_router
from node_deployer.api.routes.metrics import router as metrics_router
from node_deployer.api.routes.nodes import router as nodes_router
from node_deployer.config import get_settings
from node_deployer.container import Container, build_container

logger = logging.getLogger(__name__)


def create_app(container: Optional[Container] = None) -> FastAPI:
    """
    Build the application. Without a container one is wired from settings
    when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "container", None) is None:
            app.state.container = build_container()
        current = app.state.container

        if current.settings.run_background_workers:
            current.start_workers()
        logger.info("[api] node deployer API started")

        yield

        logger.info("[api] shutting down")
        current.shutdown()

    app = FastAPI(title="Node Deployer API", version="1.0.0", lifespan=lifespan)
    app.state.container = container

    settings = container.settings if container else get_settings()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    setup_exception_handlers(app)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(auth_router)
    app.include_router(nodes_router)
    app.include_router(deployments_router)
    app.include_router(github_router)
    app.include_router(k8s_router)
    app.include_router(metrics_router)
    return app


app = create_app()
