from __future__ import annotations

import logging

import httpx

from .. import mutations
from ..errors import LifecycleError, StorageError
from ..keypath import ABSENT
from ..protocol import (
    CURRENT_SCHEMA_VERSION,
    GetPayload,
    InitPayload,
    Method,
    Payload,
    Provider,
    RemovePayload,
    SetPayload,
    call_hook,
    handles,
)
from ..wire import REMOTE_METHODS, WireRequest, WireResponse, apply_response, request_from_payload

logger = logging.getLogger(__name__)


class HttpProvider(Provider):
    """
    Client for a store served by ``pathkv.server``.

    Every non-hook Method is forwarded as ``POST /stores/{name}/{method}``;
    hook Methods are left out of the capabilities so the local ``Store``
    synthesizes them from remote Get/Set/Entries.

    Pass ``client`` to reuse an ``httpx.AsyncClient`` (e.g. one mounted on an
    ASGI app in tests); it is then not closed by ``close()``.
    """

    schema_version = CURRENT_SCHEMA_VERSION

    def __init__(
        self,
        base_url: str = "",
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self._owns_client = client is None
        self._base_url = base_url
        self._timeout = timeout
        self._client = client
        self._name: str | None = None

    @property
    def name(self) -> str:
        if self._name is None:
            raise LifecycleError("HttpProvider used before init()")
        return self._name

    async def _call(self, method: Method, request: WireRequest) -> WireResponse:
        url = f"/stores/{self.name}/{method.value}"
        if self._client is None:
            raise LifecycleError("HttpProvider used before init() or after close()")
        try:
            resp = await self._client.post(url, json=request.model_dump(mode="json", exclude_none=True))
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise StorageError(
                f"POST {url} failed with HTTP {e.response.status_code}: {e.response.text}", e
            ) from e
        except httpx.HTTPError as e:
            raise StorageError(f"POST {url} failed: {e!r}", e) from e
        return WireResponse.model_validate(resp.json())

    async def _forward(self, payload: Payload) -> Payload:
        response = await self._call(payload.method, request_from_payload(payload))
        return apply_response(payload, response)

    @handles(Method.INIT)
    async def init(self, payload: InitPayload) -> InitPayload:
        self._name = payload.name
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        await self._forward(payload)
        logger.info("Connected to remote store %r (schema v%s)", self._name, payload.data)
        return payload

    @handles(*sorted(REMOTE_METHODS - {Method.INIT}, key=lambda m: m.value))
    async def remote(self, payload: Payload) -> Payload:
        if isinstance(payload, RemovePayload) and payload.hook is not None:
            await self._remove_by_hook(payload)
            return payload
        return await self._forward(payload)

    async def _remove_by_hook(self, payload: RemovePayload) -> None:
        current = await self._forward(GetPayload(key=payload.key, path=payload.path))
        if current.data is ABSENT:
            return
        items = mutations.as_sequence(current.data, key=payload.key, path=payload.path, method="remove")
        flags = [await call_hook(payload.hook, item, payload.key) for item in items]
        kept = mutations.remove_flagged(items, flags, key=payload.key, path=payload.path)
        await self._forward(SetPayload(key=payload.key, path=payload.path, value=kept))

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            client, self._client = self._client, None
            await client.aclose()
