"""FastAPI app hosting the preview runtime and the page-facing endpoints."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI

from .config import Config
from .router import router
from .runtime import PreviewRuntime

logging.basicConfig(level=logging.INFO, format="%(levelname)-8s | %(message)s")
logging.getLogger("aioice").setLevel(logging.WARNING)


def create_app(runtime_factory: Callable[[], PreviewRuntime] = PreviewRuntime) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not Config.validate():
            raise RuntimeError("Invalid preview configuration")
        runtime = runtime_factory()
        await runtime.start()
        app.state.runtime = runtime
        try:
            yield
        finally:
            await runtime.stop()
            app.state.runtime = None

    app = FastAPI(title="Active Audit Webcam Preview", lifespan=lifespan)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
