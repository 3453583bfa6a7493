"""Cart management service."""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from opentelemetry import trace

from errors import DataStoreError, NotFoundError, ProductNotFoundError, ValidationError
from models import CartItem, Product, utcnow
from monitoring import cart_additions_counter, cart_merge_items_counter
from services.guest_cart_store import GuestCartStore

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def effective_price(price_regular, price_offer) -> Decimal:
    """Offer price when present and nonzero, else the regular price."""
    if price_offer is not None and Decimal(str(price_offer)) != 0:
        return Decimal(str(price_offer))
    if price_regular is None:
        return ZERO
    return Decimal(str(price_regular))


def product_snapshot(product: Product) -> Dict[str, Any]:
    """Display data for a product, as stored in guest carts and order lines."""
    return {
        "id": product.id,
        "name": product.name,
        "slug": product.slug,
        "price_regular": str(product.price_regular),
        "price_offer": str(product.price_offer) if product.price_offer is not None else None,
        "image_url": product.image_url,
        "stock": product.stock,
    }


class CartOwner:
    """Whose cart a request operates on: a signed-in user or a guest device."""

    def __init__(self, user_id: Optional[str] = None, guest_cart_id: Optional[str] = None):
        self.user_id = user_id
        self.guest_cart_id = guest_cart_id

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def __repr__(self) -> str:
        if self.is_authenticated:
            return f"CartOwner(user_id={self.user_id!r})"
        return f"CartOwner(guest_cart_id={self.guest_cart_id!r})"


class CartService:
    """
    Service for managing shopping carts.

    Authenticated carts are rows in ``cart_items``; guest carts live in the
    guest cart store. Both are exposed through the same operations, and
    totals are recomputed on every read.
    """

    def __init__(self, guest_store: GuestCartStore):
        """
        Initialize cart service.

        Args:
            guest_store: Storage for anonymous carts
        """
        self.guest_store = guest_store
        self.tracer = trace.get_tracer(__name__)

    # Queries

    async def get_cart(self, db: Session, owner: CartOwner) -> Dict[str, Any]:
        """
        Get the owner's cart with derived totals.

        Args:
            db: Database session
            owner: Cart owner

        Returns:
            Cart summary with lines, total_items, total_price and item_count
        """
        if owner.is_authenticated:
            lines = self._user_lines(db, owner.user_id)
        else:
            lines = await self._guest_lines(owner.guest_cart_id)

        return {
            "owner": "user" if owner.is_authenticated else "guest",
            "user_id": owner.user_id,
            "guest_cart_id": None if owner.is_authenticated else owner.guest_cart_id,
            "items": lines,
            "total_items": sum(line["quantity"] for line in lines),
            "total_price": sum((line["subtotal"] for line in lines), ZERO),
            "item_count": len(lines),
        }

    def _user_lines(self, db: Session, user_id: str) -> List[Dict[str, Any]]:
        with self.tracer.start_as_current_span("db.query.get_cart_items") as db_span:
            db_span.set_attribute("db.operation", "SELECT")
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("user.id", user_id)

            rows = (
                db.query(CartItem, Product)
                .join(Product, Product.id == CartItem.product_id)
                .filter(CartItem.user_id == user_id)
                .order_by(CartItem.created_at.desc(), CartItem.id.desc())
                .all()
            )

            db_span.set_attribute("db.rows_returned", len(rows))

        lines = []
        for item, product in rows:
            unit_price = effective_price(product.price_regular, product.price_offer)
            lines.append({
                "key": str(item.id),
                "product_id": product.id,
                "name": product.name,
                "slug": product.slug,
                "image_url": product.image_url,
                "unit_price": unit_price,
                "quantity": item.quantity,
                "subtotal": unit_price * item.quantity,
                "stock": product.stock,
            })
        return lines

    async def _guest_lines(self, guest_cart_id: str) -> List[Dict[str, Any]]:
        lines = []
        for entry in await self.guest_store.get_items(guest_cart_id):
            product = entry["product"] or {}
            unit_price = effective_price(product.get("price_regular"), product.get("price_offer"))
            lines.append({
                "key": str(entry["product_id"]),
                "product_id": entry["product_id"],
                "name": product.get("name"),
                "slug": product.get("slug"),
                "image_url": product.get("image_url"),
                "unit_price": unit_price,
                "quantity": entry["quantity"],
                "subtotal": unit_price * entry["quantity"],
                "stock": product.get("stock"),
            })
        return lines

    def validate_stock(self, db: Session, user_id: str) -> Dict[str, Any]:
        """
        Check every line of the user's cart against current stock.

        Returns:
            ``{"valid": bool, "errors": [...]}`` listing lines that ask for
            more than is available
        """
        rows = (
            db.query(CartItem, Product)
            .join(Product, Product.id == CartItem.product_id)
            .filter(CartItem.user_id == user_id)
            .all()
        )
        errors = [
            {
                "product_id": product.id,
                "name": product.name,
                "requested": item.quantity,
                "available": product.stock,
            }
            for item, product in rows
            if item.quantity > product.stock
        ]
        return {"valid": not errors, "errors": errors}

    # Commands

    async def add_item(
        self,
        db: Session,
        owner: CartOwner,
        product_id: int,
        quantity: int
    ) -> Dict[str, Any]:
        """
        Add a product to the owner's cart, incrementing an existing line.

        Args:
            db: Database session
            owner: Cart owner
            product_id: Product identifier
            quantity: Quantity to add

        Returns:
            Updated cart summary

        Raises:
            ValidationError: If quantity is below one
            ProductNotFoundError: If the product does not exist
        """
        if quantity < 1:
            raise ValidationError("quantity", "Quantity must be at least 1")

        span = trace.get_current_span()
        span.set_attribute("product.id", product_id)
        span.set_attribute("quantity", quantity)

        if owner.is_authenticated:
            # Existence is enforced by the cart_items -> products foreign key
            try:
                self._upsert_line(db, owner.user_id, product_id, quantity)
                db.commit()
            except IntegrityError:
                db.rollback()
                if db.get(Product, product_id) is None:
                    raise ProductNotFoundError(product_id)
                raise
        else:
            product = db.get(Product, product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            await self.guest_store.add(
                owner.guest_cart_id, product_id, quantity, product_snapshot(product)
            )

        cart_additions_counter.add(1, {"owner": "user" if owner.is_authenticated else "guest"})
        logger.info("Added product to cart", extra={
            "user_id": owner.user_id,
            "guest_cart_id": owner.guest_cart_id,
            "product_id": product_id,
            "quantity": quantity
        })

        return await self.get_cart(db, owner)

    async def update_quantity(
        self,
        db: Session,
        owner: CartOwner,
        item_key: str,
        quantity: int
    ) -> Dict[str, Any]:
        """
        Overwrite a line's quantity. Zero or less removes the line.

        ``item_key`` is the cart row id for users and the product id for
        guests. Stock is not checked here; checkout reserves it.
        """
        if quantity <= 0:
            return await self.remove_item(db, owner, item_key)

        if owner.is_authenticated:
            item = self._find_user_line(db, owner.user_id, item_key)
            item.quantity = quantity
            db.commit()
        else:
            product_id = self._guest_key(item_key)
            if await self.guest_store.get_quantity(owner.guest_cart_id, product_id) is None:
                raise NotFoundError("Cart item", item_key)
            await self.guest_store.set_quantity(owner.guest_cart_id, product_id, quantity)

        logger.info("Updated cart item quantity", extra={
            "user_id": owner.user_id,
            "item_key": item_key,
            "quantity": quantity
        })
        return await self.get_cart(db, owner)

    async def remove_item(self, db: Session, owner: CartOwner, item_key: str) -> Dict[str, Any]:
        """Delete one line from whichever store backs the owner's cart."""
        if owner.is_authenticated:
            item = self._find_user_line(db, owner.user_id, item_key)
            db.delete(item)
            db.commit()
        else:
            product_id = self._guest_key(item_key)
            if await self.guest_store.get_quantity(owner.guest_cart_id, product_id) is None:
                raise NotFoundError("Cart item", item_key)
            await self.guest_store.remove(owner.guest_cart_id, [product_id])

        logger.info("Removed cart item", extra={"user_id": owner.user_id, "item_key": item_key})
        return await self.get_cart(db, owner)

    async def clear(self, db: Session, owner: CartOwner) -> Dict[str, Any]:
        """
        Clear the owner's cart.

        Args:
            db: Database session
            owner: Cart owner
        """
        if owner.is_authenticated:
            with self.tracer.start_as_current_span("db.query.delete_cart_items") as db_span:
                db_span.set_attribute("db.operation", "DELETE")
                db_span.set_attribute("db.table", "cart_items")
                db_span.set_attribute("user.id", owner.user_id)

                deleted_count = (
                    db.query(CartItem)
                    .filter(CartItem.user_id == owner.user_id)
                    .delete(synchronize_session=False)
                )
                db.commit()

                db_span.set_attribute("db.rows_affected", deleted_count)
        else:
            await self.guest_store.clear(owner.guest_cart_id)

        return await self.get_cart(db, owner)

    async def merge_guest_into_user(
        self,
        db: Session,
        user_id: str,
        guest_cart_id: str
    ) -> Dict[str, Any]:
        """
        Move every guest cart line into the user's server cart.

        Each line is upsert-added and committed on its own, so quantities add
        to whatever the user already had. A line is claimed out of the guest
        cart before it is added, so two merges running at once (sign-in from
        two tabs) cannot both add it. Failed lines are put back and reported,
        so a second merge neither doubles merged lines nor loses failed ones.

        Args:
            db: Database session
            user_id: Authenticated user identifier
            guest_cart_id: Guest cart to drain

        Returns:
            ``{"merged", "failed", "results", "cart"}`` with one result per
            guest line
        """
        entries = await self.guest_store.get_items(guest_cart_id)
        results = []

        with self.tracer.start_as_current_span("cart.merge_guest") as merge_span:
            merge_span.set_attribute("user.id", user_id)
            merge_span.set_attribute("cart.guest_lines", len(entries))

            for entry in entries:
                product_id = entry["product_id"]
                line = await self.guest_store.claim(guest_cart_id, product_id)
                if line is None:
                    # Taken by a concurrent merge of the same guest cart
                    continue
                quantity = line["quantity"]
                try:
                    self._upsert_line(db, user_id, product_id, quantity)
                    db.commit()
                except SQLAlchemyError as e:
                    db.rollback()
                    await self.guest_store.restore(guest_cart_id, product_id, line)
                    reason = "product not found" if isinstance(e, IntegrityError) else "data store error"
                    results.append({
                        "product_id": product_id,
                        "quantity": quantity,
                        "status": "failed",
                        "reason": reason,
                    })
                    cart_merge_items_counter.add(1, {"outcome": "failed"})
                    logger.warning("Failed to merge guest cart line", extra={
                        "user_id": user_id,
                        "guest_cart_id": guest_cart_id,
                        "product_id": product_id,
                        "quantity": quantity,
                        "error": str(e)
                    })
                    continue

                results.append({
                    "product_id": product_id,
                    "quantity": quantity,
                    "status": "merged",
                    "reason": None,
                })
                cart_merge_items_counter.add(1, {"outcome": "merged"})

        merged = sum(1 for result in results if result["status"] == "merged")
        failed = len(results) - merged
        logger.info("Merged guest cart into user cart", extra={
            "user_id": user_id,
            "guest_cart_id": guest_cart_id,
            "merged": merged,
            "failed": failed
        })

        return {
            "merged": merged,
            "failed": failed,
            "results": results,
            "cart": await self.get_cart(db, CartOwner(user_id=user_id)),
        }

    # Helpers

    def _upsert_line(self, db: Session, user_id: str, product_id: int, quantity: int) -> None:
        """INSERT ... ON CONFLICT (user_id, product_id) DO UPDATE quantity += n."""
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            insert = pg_insert
        elif dialect == "sqlite":
            insert = sqlite_insert
        else:
            raise DataStoreError(f"Cart upsert not supported on {dialect}")

        now = utcnow()
        stmt = insert(CartItem).values(
            user_id=user_id,
            product_id=product_id,
            quantity=quantity,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "product_id"],
            set_={
                "quantity": CartItem.quantity + stmt.excluded.quantity,
                "updated_at": now,
            },
        )

        with self.tracer.start_as_current_span("db.query.upsert_cart_item") as db_span:
            db_span.set_attribute("db.operation", "UPSERT")
            db_span.set_attribute("db.table", "cart_items")
            db_span.set_attribute("product.id", product_id)
            db.execute(stmt)

    def _find_user_line(self, db: Session, user_id: str, item_key: str) -> CartItem:
        try:
            item_id = int(item_key)
        except (TypeError, ValueError):
            raise NotFoundError("Cart item", item_key)
        item = (
            db.query(CartItem)
            .filter(CartItem.id == item_id, CartItem.user_id == user_id)
            .first()
        )
        if item is None:
            raise NotFoundError("Cart item", item_key)
        return item

    @staticmethod
    def _guest_key(item_key: str) -> int:
        try:
            return int(item_key)
        except (TypeError, ValueError):
            raise NotFoundError("Cart item", item_key)
