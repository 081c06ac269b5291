from __future__ import annotations

import copy
from typing import Any

from ..keypath import ABSENT, assign, remove, resolve
from ..protocol import (
    CURRENT_SCHEMA_VERSION,
    AutoKeyPayload,
    DeletePayload,
    EntriesPayload,
    GetPayload,
    Method,
    Provider,
    SetPayload,
    handles,
)


class MemoryProvider(Provider):
    """
    Process-local provider backed by a dict.

    Only the primitives are implemented here (get/set/delete/entries and the
    key counter); the ``Store`` synthesizes every other Method on top of them.
    Values are deep-copied in and out so callers never alias stored documents.
    """

    schema_version = CURRENT_SCHEMA_VERSION

    def __init__(self) -> None:
        self._docs: dict[str, Any] = {}
        self._auto_key_count = 0

    @handles(Method.GET)
    async def get(self, payload: GetPayload) -> GetPayload:
        doc = self._docs.get(payload.key, ABSENT)
        found = resolve(doc, payload.path) if doc is not ABSENT else ABSENT
        if found is not ABSENT:
            payload.data = copy.deepcopy(found)
        return payload

    @handles(Method.SET)
    async def set(self, payload: SetPayload) -> SetPayload:
        doc = self._docs.get(payload.key)
        self._docs[payload.key] = assign(copy.deepcopy(doc), payload.path, copy.deepcopy(payload.value))
        return payload

    @handles(Method.DELETE)
    async def delete(self, payload: DeletePayload) -> DeletePayload:
        if not payload.path:
            self._docs.pop(payload.key, None)
        elif payload.key in self._docs:
            remove(self._docs[payload.key], payload.path)
        return payload

    @handles(Method.ENTRIES)
    async def entries(self, payload: EntriesPayload) -> EntriesPayload:
        payload.data = [(key, copy.deepcopy(value)) for key, value in self._docs.items()]
        return payload

    @handles(Method.AUTO_KEY)
    async def auto_key(self, payload: AutoKeyPayload) -> AutoKeyPayload:
        self._auto_key_count += 1
        payload.data = str(self._auto_key_count)
        return payload
