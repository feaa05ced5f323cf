"""
Shopping cart aggregate and operations.

A user owns exactly one cart document. Line items keep the price captured
when they were added (or last explicitly updated); totals are derived from
the items and recomputed whenever the cart is loaded or persisted.

Writes are optimistic: every cart carries a ``version`` and a save only
succeeds against the version that was read. A lost race re-reads the cart
and re-applies the mutation.
"""
import os
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import structlog
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from coupons import DEFAULT_COUPONS, CouponBook
from errors import Conflict, InvalidInput, InvalidState, NotFound, OutOfStock, ShopError
from schemas import (
    Cart,
    CartIssue,
    CartItem,
    CartItemView,
    CartSummary,
    CartValidation,
    CartView,
    CouponQuote,
    CouponView,
    ProductSummary,
    utcnow,
)

logger = structlog.get_logger(__name__)

CART_MAX_RETRIES = int(os.getenv("CART_MAX_RETRIES", 3))
PRICE_TOLERANCE = 0.01


class CartAggregate:
    """In-memory cart; the only place totals are computed."""

    def __init__(self, user: str, items: Optional[List[CartItem]] = None, id=None, version: int = 0,
                 created_at=None, updated_at=None):
        self.id = id
        self.user = user
        self.items = list(items or [])
        self.version = version
        self.created_at = created_at
        self.updated_at = updated_at
        self.changed = False
        self.total_items = 0
        self.total_price = 0.0
        self.recompute_totals()

    @classmethod
    def from_document(cls, doc) -> "CartAggregate":
        cart = Cart.model_validate(doc)
        return cls(
            user=cart.user,
            items=cart.items,
            id=doc.get("_id"),
            version=cart.version,
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
        )

    def recompute_totals(self):
        self.total_items = sum(item.quantity for item in self.items)
        self.total_price = round(sum(item.price * item.quantity for item in self.items), 2)

    def to_document(self) -> dict:
        self.recompute_totals()
        return Cart(
            user=self.user,
            items=self.items,
            total_items=self.total_items,
            total_price=self.total_price,
            version=self.version,
        ).model_dump()

    def product_ids(self) -> List[str]:
        return [item.product for item in self.items]

    def find(self, product_id: str) -> Optional[CartItem]:
        return next((item for item in self.items if item.product == product_id), None)

    def add(self, product_id: str, quantity: int, price: float) -> CartItem:
        """Merge into an existing line (keeping its price) or append a new one."""
        item = self.find(product_id)
        if item is not None:
            item.quantity += quantity
        else:
            item = CartItem(product=product_id, quantity=quantity, price=price)
            self.items.append(item)
        self._touch()
        return item

    def set_item(self, product_id: str, quantity: int, price: float) -> CartItem:
        item = self.find(product_id)
        if item is None:
            raise NotFound("Item not found in cart")
        item.quantity = quantity
        item.price = price
        self._touch()
        return item

    def remove(self, product_id: str) -> bool:
        item = self.find(product_id)
        if item is None:
            return False
        self.items.remove(item)
        self._touch()
        return True

    def clear(self):
        self.items = []
        self._touch()

    def retain(self, keep: Callable[[CartItem], bool]) -> List[CartItem]:
        """Drop items for which ``keep`` is false; return the dropped ones."""
        dropped = [item for item in self.items if not keep(item)]
        if dropped:
            self.items = [item for item in self.items if keep(item)]
            self._touch()
        return dropped

    def _touch(self):
        self.changed = True
        self.recompute_totals()


def is_available(product) -> bool:
    return product is not None and bool(product.get("is_active", False))


def summarize_product(doc) -> ProductSummary:
    return ProductSummary.model_validate({**doc, "id": str(doc["_id"])})


class CartService:
    def __init__(self, database, coupons: CouponBook = DEFAULT_COUPONS, max_retries: int = CART_MAX_RETRIES):
        self.carts = database["cart"]
        self.products = database["product"]
        self.coupons = coupons
        self.max_retries = max_retries

    # ----------------------- Persistence -----------------------
    def _find(self, user_id: str) -> Optional[CartAggregate]:
        doc = self.carts.find_one({"user": user_id})
        return CartAggregate.from_document(doc) if doc else None

    def _find_or_create(self, user_id: str) -> CartAggregate:
        cart = self._find(user_id)
        if cart is not None:
            return cart
        doc = CartAggregate(user=user_id).to_document()
        doc["created_at"] = doc["updated_at"] = utcnow()
        try:
            self.carts.insert_one(doc)
            logger.info("cart_created", user_id=user_id)
        except DuplicateKeyError:
            # another request created it first
            pass
        return self._find(user_id)

    def _save(self, cart: CartAggregate) -> bool:
        doc = cart.to_document()
        now = utcnow()
        result = self.carts.update_one(
            {"_id": cart.id, "version": cart.version},
            {
                "$set": {
                    "items": doc["items"],
                    "total_items": doc["total_items"],
                    "total_price": doc["total_price"],
                    "updated_at": now,
                },
                "$inc": {"version": 1},
            },
        )
        if result.matched_count == 0:
            return False
        cart.version += 1
        cart.updated_at = now
        cart.changed = False
        return True

    def _mutate(self, user_id: str, mutation, create: bool = False, missing: Optional[ShopError] = None):
        """Load the user's cart, apply ``mutation`` and persist it if it changed.

        Returns ``(cart, result of mutation)``. Errors raised by the mutation
        abort without writing.
        """
        for attempt in range(1, self.max_retries + 1):
            cart = self._find_or_create(user_id) if create else self._find(user_id)
            if cart is None:
                raise missing or NotFound("Cart not found")
            result = mutation(cart)
            if not cart.changed or self._save(cart):
                return cart, result
            logger.warning("cart_write_conflict", user_id=user_id, attempt=attempt)
        raise Conflict("Cart was modified by another request, please retry")

    # ----------------------- Catalog lookups -----------------------
    def _load_products(self, product_ids: Iterable[str]) -> Dict[str, dict]:
        oids = [ObjectId(pid) for pid in set(product_ids) if ObjectId.is_valid(pid)]
        if not oids:
            return {}
        return {str(doc["_id"]): doc for doc in self.products.find({"_id": {"$in": oids}})}

    def _active_product(self, product_id: str) -> dict:
        product = None
        if ObjectId.is_valid(product_id):
            product = self.products.find_one({"_id": ObjectId(product_id)})
        if not is_available(product):
            raise NotFound("Product not found or inactive")
        return product

    def render(self, cart: CartAggregate, products: Optional[Dict[str, dict]] = None) -> CartView:
        if products is None:
            products = self._load_products(cart.product_ids())
        items = []
        for item in cart.items:
            product = products.get(item.product)
            items.append(CartItemView(
                product=summarize_product(product) if product else item.product,
                quantity=item.quantity,
                price=item.price,
            ))
        return CartView(
            id=str(cart.id),
            user=cart.user,
            items=items,
            total_items=cart.total_items,
            total_price=cart.total_price,
            created_at=cart.created_at,
            updated_at=cart.updated_at,
        )

    # ----------------------- Operations -----------------------
    def get_cart(self, user_id: str) -> CartView:
        def drop_unavailable(cart):
            products = self._load_products(cart.product_ids())
            dropped = cart.retain(lambda item: is_available(products.get(item.product)))
            if dropped:
                logger.info("cart_pruned", user_id=user_id, dropped=[item.product for item in dropped])
            return products

        cart, products = self._mutate(user_id, drop_unavailable, create=True)
        return self.render(cart, products)

    def add_item(self, user_id: str, product_id: str, quantity: int = 1) -> CartView:
        if quantity < 1:
            raise InvalidInput("Quantity must be at least 1")

        product = self._active_product(product_id)
        available = product["inventory"]["quantity"]
        if quantity > available:
            raise OutOfStock(f"Only {available} items available in stock")

        def add(cart):
            existing = cart.find(product_id)
            in_cart = existing.quantity if existing else 0
            if in_cart + quantity > available:
                if existing:
                    raise OutOfStock(
                        f"Cannot add {quantity} items. Only {max(available - in_cart, 0)} more available"
                    )
                raise OutOfStock(f"Only {available} items available in stock")
            cart.add(product_id, quantity, product["price"])

        cart, _ = self._mutate(user_id, add, create=True)
        logger.info("cart_item_added", user_id=user_id, product_id=product_id, quantity=quantity)
        return self.render(cart)

    def update_item(self, user_id: str, product_id: str, quantity: int) -> CartView:
        if quantity < 1:
            raise InvalidInput("Quantity must be at least 1")

        def update(cart):
            if cart.find(product_id) is None:
                raise NotFound("Item not found in cart")
            product = self._active_product(product_id)
            available = product["inventory"]["quantity"]
            if available < quantity:
                raise OutOfStock(f"Only {available} items available in stock")
            cart.set_item(product_id, quantity, product["price"])

        cart, _ = self._mutate(user_id, update)
        logger.info("cart_item_updated", user_id=user_id, product_id=product_id, quantity=quantity)
        return self.render(cart)

    def remove_item(self, user_id: str, product_id: str) -> CartView:
        def remove(cart):
            if not cart.remove(product_id):
                raise NotFound("Item not found in cart")

        cart, _ = self._mutate(user_id, remove)
        logger.info("cart_item_removed", user_id=user_id, product_id=product_id)
        return self.render(cart)

    def clear_cart(self, user_id: str) -> CartView:
        cart, _ = self._mutate(user_id, lambda cart: cart.clear())
        logger.info("cart_cleared", user_id=user_id)
        return self.render(cart, {})

    def get_summary(self, user_id: str) -> CartSummary:
        cart = self._find(user_id)
        if cart is None or not cart.items:
            return CartSummary()
        return CartSummary(
            total_items=cart.total_items,
            total_price=cart.total_price,
            items_count=len(cart.items),
            is_empty=False,
        )

    def validate_cart(self, user_id: str) -> CartValidation:
        def validate(cart) -> Tuple[List[CartIssue], int, Dict[str, dict]]:
            if not cart.items:
                raise InvalidState("Cart is empty")
            products = self._load_products(cart.product_ids())
            issues = []
            valid = set()
            for item in cart.items:
                product = products.get(item.product)
                if not is_available(product):
                    issues.append(CartIssue(
                        product_id=item.product,
                        message="Product is no longer available",
                        type="unavailable",
                    ))
                    continue
                available = product["inventory"]["quantity"]
                if available < item.quantity:
                    issues.append(CartIssue(
                        product_id=item.product,
                        product_name=product.get("name"),
                        message=f"Only {available} items available, but {item.quantity} requested",
                        type="insufficient_stock",
                        available=available,
                        requested=item.quantity,
                    ))
                    continue
                if abs(item.price - product["price"]) > PRICE_TOLERANCE:
                    issues.append(CartIssue(
                        product_id=item.product,
                        product_name=product.get("name"),
                        message=f"Price has changed from ${item.price:.2f} to ${product['price']:.2f}",
                        type="price_change",
                        old_price=item.price,
                        new_price=product["price"],
                    ))
                valid.add(item.product)

            if issues and len(valid) != len(cart.items):
                cart.retain(lambda item: item.product in valid)
            return issues, len(valid), products

        cart, (issues, valid_count, products) = self._mutate(
            user_id, validate, missing=InvalidState("Cart is empty")
        )
        if issues:
            logger.info("cart_validation_failed", user_id=user_id, issues=len(issues))
        return CartValidation(
            cart=self.render(cart, products),
            is_valid=not issues,
            errors=issues,
            valid_items_count=valid_count,
        )

    def apply_coupon(self, user_id: str, code: str) -> CouponQuote:
        coupon = self.coupons.lookup(code)
        if coupon is None:
            raise InvalidInput("Invalid coupon code")
        cart = self._find(user_id)
        if cart is None or not cart.items:
            raise InvalidState("Cart is empty")
        discount = coupon.discount_for(cart.total_price)
        return CouponQuote(
            coupon=CouponView(code=coupon.code, discount=coupon.discount, type=coupon.type),
            original_price=cart.total_price,
            discount_amount=discount,
            final_price=round(cart.total_price - discount, 2),
        )
