"""
Heirloom — Application Entry Point

FastAPI application serving the Privado ID verification and enrollment
routes.

`uvicorn heirloom.main:app`
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Load .env file before any configuration is loaded
load_dotenv()

from heirloom.api.routers.privado import router as privado_router
from heirloom.clients.ledger import LedgerNotifier
from heirloom.clients.registry import HasuraRegistryClient
from heirloom.config import HeirloomConfig, load_config
from heirloom.systems.identity.errors import EnrollmentError
from heirloom.systems.identity.service import EnrollmentService
from heirloom.systems.identity.sessions import SessionStore
from heirloom.systems.identity.verifier import build_proof_verifier
from heirloom.telemetry.logging import setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = structlog.get_logger("heirloom.main")


def create_app(
    config: HeirloomConfig | None = None,
    enrollment: EnrollmentService | None = None,
) -> FastAPI:
    """
    Build the application.

    With ``enrollment`` supplied the lifespan wires nothing and closes
    nothing; the caller owns those collaborators.
    """
    if config is None:
        config_path = os.environ.get("HEIRLOOM_CONFIG_PATH", "config/default.yaml")
        config = load_config(config_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # ── 1. Configuration & logging ────────────────────────────
        app.state.config = config
        setup_logging(config.logging)

        if enrollment is not None:
            app.state.enrollment = enrollment
            yield
            return

        logger.info(
            "heirloom_starting",
            dev_mode=config.privado.dev_mode,
            ledger_disabled=config.ledger.disabled,
        )

        # ── 2. External clients ───────────────────────────────────
        registry = HasuraRegistryClient(config.registry)
        await registry.connect()
        ledger = LedgerNotifier(config.ledger)

        # ── 3. Identity system ────────────────────────────────────
        sessions = SessionStore(ttl_s=config.privado.request_ttl_seconds)
        verifier = build_proof_verifier(config.privado, sessions)
        app.state.registry = registry
        app.state.enrollment = EnrollmentService(
            sessions=sessions,
            verifier=verifier,
            registry=registry,
            ledger=ledger,
        )
        logger.info("heirloom_ready", verifier_mode=verifier.mode)

        try:
            yield
        finally:
            logger.info("heirloom_shutting_down")
            await verifier.close()
            await ledger.close()
            await registry.close()

    app = FastAPI(
        title="Heirloom",
        description="Proof-of-personhood gated enrollment",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_credentials="*" not in config.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EnrollmentError)
    async def enrollment_error_handler(request: Request, exc: EnrollmentError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "request_failed",
                path=request.url.path,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    app.include_router(privado_router, prefix=config.server.route_prefix)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Liveness check."""
        return {"ok": True}

    @app.get("/health/enrollment")
    async def enrollment_health(request: Request) -> dict[str, Any]:
        """Session, ledger and outcome counters, plus registry connectivity."""
        status = await request.app.state.enrollment.health()
        registry = getattr(request.app.state, "registry", None)
        if registry is not None:
            status["registry"] = await registry.health_check()
        return status

    return app


app = create_app()


def run() -> None:
    import uvicorn

    config = load_config(os.environ.get("HEIRLOOM_CONFIG_PATH", "config/default.yaml"))
    uvicorn.run("heirloom.main:app", host=config.server.host, port=config.server.port)
