from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from .engine import Store
from .errors import StoreError
from .protocol import Method
from .providers import build_provider
from .settings import Settings, get_settings
from .wire import (
    REMOTE_METHODS,
    WireRequest,
    WireResponse,
    payload_from_request,
    response_from_error,
    response_from_payload,
    response_from_value,
)

router = APIRouter(prefix="/stores", tags=["stores"])
logger = logging.getLogger(__name__)


class StoreRegistry:
    """
    Stores served by this process, opened lazily on first use.

    Every store gets its own provider instance built from ``Settings``.
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._stores: dict[str, Store] = {}
        self._lock: asyncio.Lock | None = None

    async def get(self, name: str) -> Store:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            store = self._stores.get(name)
            if store is None:
                store = Store(
                    name,
                    build_provider(self.settings),
                    auto_migrate=self.settings.auto_migrate,
                    debug_log_payloads=self.settings.debug_log_payloads,
                )
                try:
                    await store.init()
                except StoreError:
                    await store.close()
                    raise
                self._stores[name] = store
            return store

    async def close_all(self) -> None:
        stores, self._stores = list(self._stores.values()), {}
        for store in stores:
            try:
                await store.close()
            except StoreError as e:
                logger.warning("STORE CLOSE: failed to close %r: %r", store.name, e)


def get_registry(request: Request) -> StoreRegistry:
    registry = getattr(request.app.state, "stores", None)
    if registry is None:
        registry = StoreRegistry()
        request.app.state.stores = registry
    return registry


@router.post("/{name}/{method}", response_model=WireResponse)
async def call_store(name: str, method: Method, body: WireRequest, request: Request) -> WireResponse:
    if method not in REMOTE_METHODS:
        raise HTTPException(status_code=400, detail=f"{method.value!r} takes a hook and cannot be called remotely")

    registry = get_registry(request)
    try:
        store = await registry.get(name)
        if method is Method.INIT:
            return response_from_value(store.schema_version)
        if method is Method.MIGRATE:
            return response_from_value(await store.migrate())
        payload = await store.execute(payload_from_request(method, body))
    except StoreError as e:
        logger.debug("Store %r %s failed: %r", name, method.value, e)
        return response_from_error(e)
    except (ValidationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return response_from_payload(payload)
