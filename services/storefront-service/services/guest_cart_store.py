"""Redis-backed storage for anonymous (guest) carts."""
import json
import logging
from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as redis

from config import GUEST_CART_TTL_SECONDS

logger = logging.getLogger(__name__)


class GuestCartStore:
    """
    Guest carts keyed by the client-held guest cart id.

    Each cart is two hashes sharing one TTL: quantities (so increments are a
    single atomic HINCRBY) and the product display data captured when the
    product was first added.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = GUEST_CART_TTL_SECONDS):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds

    def _qty_key(self, guest_cart_id: str) -> str:
        return f"guest_cart:{guest_cart_id}:qty"

    def _product_key(self, guest_cart_id: str) -> str:
        return f"guest_cart:{guest_cart_id}:product"

    def _touch(self, pipe, guest_cart_id: str) -> None:
        pipe.expire(self._qty_key(guest_cart_id), self.ttl_seconds)
        pipe.expire(self._product_key(guest_cart_id), self.ttl_seconds)

    async def get_items(self, guest_cart_id: str) -> List[Dict[str, Any]]:
        """
        Return guest cart entries ordered by product id.

        Each entry is ``{"product_id", "quantity", "product"}`` where
        ``product`` is the stored display snapshot (may be None if only the
        quantity survived).
        """
        quantities = await self.redis_client.hgetall(self._qty_key(guest_cart_id))
        if not quantities:
            return []
        snapshots = await self.redis_client.hgetall(self._product_key(guest_cart_id))

        items = []
        for product_id, quantity in quantities.items():
            quantity = int(quantity)
            if quantity < 1:
                continue
            raw = snapshots.get(product_id)
            items.append({
                "product_id": int(product_id),
                "quantity": quantity,
                "product": json.loads(raw) if raw else None,
            })
        items.sort(key=lambda entry: entry["product_id"])
        return items

    async def get_quantity(self, guest_cart_id: str, product_id: int) -> Optional[int]:
        value = await self.redis_client.hget(self._qty_key(guest_cart_id), str(product_id))
        return int(value) if value is not None else None

    async def add(
        self,
        guest_cart_id: str,
        product_id: int,
        quantity: int,
        snapshot: Optional[Dict[str, Any]] = None
    ) -> int:
        """Increment a line, creating it if needed. Returns the new quantity."""
        pipe = self.redis_client.pipeline()
        pipe.hincrby(self._qty_key(guest_cart_id), str(product_id), quantity)
        if snapshot is not None:
            pipe.hsetnx(self._product_key(guest_cart_id), str(product_id), json.dumps(snapshot))
        self._touch(pipe, guest_cart_id)
        results = await pipe.execute()
        return int(results[0])

    async def set_quantity(self, guest_cart_id: str, product_id: int, quantity: int) -> None:
        pipe = self.redis_client.pipeline()
        pipe.hset(self._qty_key(guest_cart_id), str(product_id), quantity)
        self._touch(pipe, guest_cart_id)
        await pipe.execute()

    async def remove(self, guest_cart_id: str, product_ids: Iterable[int]) -> None:
        fields = [str(product_id) for product_id in product_ids]
        if not fields:
            return
        pipe = self.redis_client.pipeline()
        pipe.hdel(self._qty_key(guest_cart_id), *fields)
        pipe.hdel(self._product_key(guest_cart_id), *fields)
        await pipe.execute()

    async def claim(self, guest_cart_id: str, product_id: int) -> Optional[Dict[str, Any]]:
        """
        Atomically take a line out of the guest cart.

        Returns the line's ``{"quantity", "product"}`` or None when another
        caller claimed it first.
        """
        field = str(product_id)
        pipe = self.redis_client.pipeline(transaction=True)
        pipe.hget(self._qty_key(guest_cart_id), field)
        pipe.hget(self._product_key(guest_cart_id), field)
        pipe.hdel(self._qty_key(guest_cart_id), field)
        pipe.hdel(self._product_key(guest_cart_id), field)
        quantity, raw, removed, _ = await pipe.execute()
        if not removed or quantity is None or int(quantity) < 1:
            return None
        return {"quantity": int(quantity), "product": json.loads(raw) if raw else None}

    async def restore(self, guest_cart_id: str, product_id: int, line: Dict[str, Any]) -> None:
        """Put a claimed line back, adding to anything added since."""
        await self.add(guest_cart_id, product_id, line["quantity"], line["product"])

    async def clear(self, guest_cart_id: str) -> None:
        await self.redis_client.delete(
            self._qty_key(guest_cart_id),
            self._product_key(guest_cart_id)
        )
        logger.info("Cleared guest cart", extra={"guest_cart_id": guest_cart_id})
