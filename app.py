from __future__ import annotations

import contextlib
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    registry = getattr(app.state, "stores", None)
    if registry is not None:
        await registry.close_all()
        logger.info("Closed all stores")


def create_app() -> FastAPI:
    load_dotenv("local.env")

    # Imported after load_dotenv so settings see local.env.
    from pathkv.server import StoreRegistry, router as stores_router

    app = FastAPI(lifespan=lifespan)
    app.state.stores = StoreRegistry()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health():
        settings = app.state.stores.settings
        return {"status": "ok", "provider": settings.provider}

    app.include_router(stores_router)

    return app


app = create_app()
