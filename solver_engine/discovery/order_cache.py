"""
Order-cache discovery: polls an off-chain cache of signed orders over HTTP.

    GET {base_url}/orders  ->  [signed order, ...]  (or {"orders": [...]})

Each signed order becomes an Intent:
    id           "<prefix>-<permit nonce>"
    order_bytes  the order's JSON encoding
    data         the decoded order
    metadata     requires_auction=False, discovered_at=now

Fetch errors are logged and polling continues at the next tick. Intents
listed by the previous fetch are not emitted again. An id that drops out of
the cache and comes back is emitted again and left to the engine's intent
deduplication.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import httpx

from solver_engine.config.config import MAX_CACHE_POLL_SEC, MIN_CACHE_POLL_SEC
from solver_engine.core.exceptions import ConfigError, ValidationError
from solver_engine.core.types import Intent, IntentMetadata
from solver_engine.core.utils import now_s

log = logging.getLogger("solver")

IntentSink = Callable[[Intent], Awaitable[Any]]


class OrderCacheDiscovery:
    """
    Polling discovery source.

    Usage:
        discovery = OrderCacheDiscovery(url, engine.submit_intent, poll_interval_sec=5)
        await discovery.start()
        ...
        await discovery.stop()
    """

    SOURCE = "order-cache"

    def __init__(
        self,
        base_url: str,
        sink: IntentSink,
        poll_interval_sec: int = 5,
        whitelist: Optional[Iterable[str]] = None,
        standard: str = "eip7683",
        lock_type: str = "permit2",
        id_prefix: str = "cache",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        if not base_url:
            raise ConfigError("order cache url cannot be empty")
        if not MIN_CACHE_POLL_SEC <= poll_interval_sec <= MAX_CACHE_POLL_SEC:
            raise ConfigError(
                f"poll_interval_sec must be between {MIN_CACHE_POLL_SEC} and {MAX_CACHE_POLL_SEC}"
            )

        self.base_url = base_url.rstrip("/")
        self.sink = sink
        self.poll_interval_sec = poll_interval_sec
        self.whitelist: Optional[Set[str]] = (
            {addr.lower() for addr in whitelist} if whitelist else None
        )
        self.standard = standard
        self.lock_type = lock_type
        self.id_prefix = id_prefix
        self._log_event = log_event or self._default_log

        # A shared client passed in is not closed by close()
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

        self._task: Optional[asyncio.Task] = None
        self._seen: Set[str] = set()
        self._stats = {
            "polls": 0,
            "fetch_errors": 0,
            "orders_fetched": 0,
            "intents_emitted": 0,
            "filtered": 0,
            "invalid": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        level = logging.WARNING if event.endswith("_error") else logging.INFO
        log.log(level, json.dumps({"event": event, **kwargs}, default=str))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._poll_loop())
        self._log_event(
            "cache_discovery_started",
            url=self.base_url,
            poll_interval_sec=self.poll_interval_sec,
            whitelist_enabled=self.whitelist is not None,
        )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        await self.close()
        self._log_event("cache_discovery_stopped", **self._stats)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _poll_loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.poll_interval_sec)

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def fetch_orders(self) -> List[Dict[str, Any]]:
        resp = await self.client.get("/orders")
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict):
            data = data.get("orders", [])
        if not isinstance(data, list):
            raise ValidationError(f"unexpected order cache payload: {type(data).__name__}")
        return data

    async def poll_once(self) -> int:
        """Fetch once and hand new intents to the sink. Returns intents emitted."""
        self._stats["polls"] += 1
        try:
            orders = await self.fetch_orders()
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            self._stats["fetch_errors"] += 1
            self._log_event("cache_fetch_error", url=self.base_url, error=str(e))
            return 0

        self._stats["orders_fetched"] += len(orders)
        emitted = 0
        listed: Set[str] = set()
        for order in orders:
            if not self.matches_whitelist(order):
                self._stats["filtered"] += 1
                continue
            try:
                intent = self.order_to_intent(order)
            except ValidationError as e:
                self._stats["invalid"] += 1
                self._log_event("cache_order_invalid", error=str(e))
                continue
            listed.add(intent.id)
            if intent.id in self._seen:
                continue
            await self.sink(intent)
            emitted += 1

        # Only ids still listed are remembered; the engine dedupes the rest
        self._seen = listed
        self._stats["intents_emitted"] += emitted
        if emitted:
            self._log_event("cache_intents_emitted", count=emitted)
        return emitted

    def matches_whitelist(self, order: Dict[str, Any]) -> bool:
        if self.whitelist is None:
            return True
        owner = _owner(order)
        return owner is not None and owner.lower() in self.whitelist

    def order_to_intent(self, order: Dict[str, Any]) -> Intent:
        nonce = _nonce(order)
        if nonce is None:
            raise ValidationError("signed order has no permit nonce")
        return Intent(
            id=f"{self.id_prefix}-{nonce}",
            source=self.SOURCE,
            standard=self.standard,
            order_bytes=json.dumps(order, separators=(",", ":"), sort_keys=True).encode(),
            data=order,
            lock_type=self.lock_type,
            quote_id=None,
            metadata=IntentMetadata(
                requires_auction=False,
                exclusive_until=None,
                discovered_at=now_s(),
            ),
        )

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "running": self.running}


def _permit(order: Dict[str, Any]) -> Dict[str, Any]:
    permit = order.get("permit")
    return permit if isinstance(permit, dict) else {}


def _nonce(order: Dict[str, Any]) -> Optional[str]:
    permit = _permit(order)
    inner = permit.get("permit") if isinstance(permit.get("permit"), dict) else permit
    nonce = inner.get("nonce")
    return str(nonce) if nonce is not None else None


def _owner(order: Dict[str, Any]) -> Optional[str]:
    owner = _permit(order).get("owner") or order.get("owner")
    return str(owner) if owner else None
