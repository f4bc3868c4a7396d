"""
Keyed storage backends for intents, orders and the tx-hash index.

MemoryStore keeps everything in process (tests, dry runs). FileStore keeps
one JSON document per namespace under a state directory and writes it with
a temp-file + atomic rename, running file IO in the default executor and
serializing access with an asyncio.Lock so concurrent flows never
interleave writes.

Values are JSON-compatible dicts; callers own (de)serialization.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger("solver")

# Namespaces used by the engine
INTENTS = "intents"
ORDERS = "orders"
TX_INDEX = "tx_index"

FilterFn = Callable[[Dict[str, Any]], bool]


class MemoryStore:
    """In-process store. Returned values are copies."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _ns(self, namespace: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(namespace, {})

    async def exists(self, namespace: str, key: str) -> bool:
        return key in self._ns(namespace)

    async def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        value = self._ns(namespace).get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, namespace: str, key: str, value: Dict[str, Any]) -> None:
        async with self._lock:
            self._ns(namespace)[key] = copy.deepcopy(value)

    async def set_if_absent(self, namespace: str, key: str, value: Dict[str, Any]) -> bool:
        async with self._lock:
            ns = self._ns(namespace)
            if key in ns:
                return False
            ns[key] = copy.deepcopy(value)
            return True

    async def delete(self, namespace: str, key: str) -> bool:
        async with self._lock:
            return self._ns(namespace).pop(key, None) is not None

    async def list(
        self,
        namespace: str,
        filter_fn: Optional[FilterFn] = None,
    ) -> List[Dict[str, Any]]:
        values = [copy.deepcopy(v) for v in self._ns(namespace).values()]
        if filter_fn is not None:
            values = [v for v in values if filter_fn(v)]
        return values


class FileStore:
    """
    JSON-file store, one file per namespace.

    Usage:
        store = FileStore("state")
        await store.set("orders", order.id, order.to_dict())
        raw = await store.get("orders", order.id)
    """

    def __init__(self, state_dir: str) -> None:
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._cache: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _path(self, namespace: str) -> Path:
        safe = namespace.replace(":", "_").replace("/", "_")
        return self.state_dir / f"{safe}.json"

    def _read(self, namespace: str) -> Dict[str, Dict[str, Any]]:
        path = self._path(namespace)
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            # A corrupt namespace must not be silently replaced by an empty one
            log.error(json.dumps({"event": "store_load_error", "namespace": namespace, "error": str(exc)}))
            raise

    def _write(self, namespace: str, data: Dict[str, Dict[str, Any]]) -> None:
        path = self._path(namespace)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(path)

    async def _load(self, namespace: str) -> Dict[str, Dict[str, Any]]:
        if namespace not in self._cache:
            loop = asyncio.get_running_loop()
            self._cache[namespace] = await loop.run_in_executor(None, self._read, namespace)
        return self._cache[namespace]

    async def _flush(self, namespace: str) -> None:
        loop = asyncio.get_running_loop()
        snapshot = copy.deepcopy(self._cache[namespace])
        await loop.run_in_executor(None, lambda: self._write(namespace, snapshot))

    async def exists(self, namespace: str, key: str) -> bool:
        async with self._lock:
            return key in await self._load(namespace)

    async def get(self, namespace: str, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            value = (await self._load(namespace)).get(key)
            return copy.deepcopy(value) if value is not None else None

    async def set(self, namespace: str, key: str, value: Dict[str, Any]) -> None:
        async with self._lock:
            (await self._load(namespace))[key] = copy.deepcopy(value)
            await self._flush(namespace)

    async def set_if_absent(self, namespace: str, key: str, value: Dict[str, Any]) -> bool:
        async with self._lock:
            ns = await self._load(namespace)
            if key in ns:
                return False
            ns[key] = copy.deepcopy(value)
            await self._flush(namespace)
            return True

    async def delete(self, namespace: str, key: str) -> bool:
        async with self._lock:
            ns = await self._load(namespace)
            if ns.pop(key, None) is None:
                return False
            await self._flush(namespace)
            return True

    async def list(
        self,
        namespace: str,
        filter_fn: Optional[FilterFn] = None,
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            values = [copy.deepcopy(v) for v in (await self._load(namespace)).values()]
        if filter_fn is not None:
            values = [v for v in values if filter_fn(v)]
        return values


def create_store(backend: str, state_dir: str = "state"):
    """Build a storage backend by name ("memory" or "file")."""
    if backend == "memory":
        return MemoryStore()
    if backend == "file":
        return FileStore(state_dir)
    raise ValueError(f"unknown storage backend: {backend}")
