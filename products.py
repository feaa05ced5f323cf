"""
Catalog queries and mutations over the product and category collections.
"""
import math
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from bson import ObjectId
from pydantic import ValidationError
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents
from errors import Conflict, InvalidInput, NotFound, describe_validation_error
from schemas import (
    Category,
    CategoryView,
    Inventory,
    Pagination,
    Product,
    ProductInput,
    ProductView,
    Ratings,
    Review,
    ReviewView,
    utcnow,
)

logger = structlog.get_logger(__name__)

# public sort key -> stored field
SORT_FIELDS = {
    "name": "name",
    "price": "price",
    "createdAt": "created_at",
    "ratings.average": "ratings.average",
    "brand": "brand",
}
MAX_PAGE_SIZE = 100
MAX_SEARCH_LIMIT = 50
REVIEW_MAX_RETRIES = int(os.getenv("REVIEW_MAX_RETRIES", 3))
# never written through update()
PROTECTED_FIELDS = {"_id", "reviews", "ratings", "created_at", "created_by"}


@dataclass
class ProductFilters:
    category: Optional[str] = None
    brand: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    rating: Optional[float] = None
    search: Optional[str] = None
    featured: bool = False


def calculate_ratings(ratings: Iterable[int]) -> Ratings:
    """Average rounded half-up to one decimal, plus the count."""
    ratings = list(ratings)
    if not ratings:
        return Ratings(average=0, count=0)
    mean = sum(ratings) / len(ratings)
    return Ratings(average=math.floor(mean * 10 + 0.5) / 10, count=len(ratings))


def _contains(text: str) -> Dict[str, Any]:
    return {"$regex": re.escape(text), "$options": "i"}


def list_query(filters: ProductFilters) -> Dict[str, Any]:
    """Mongo filter for the product listing; `search` goes through the text index."""
    query: Dict[str, Any] = {"is_active": True}
    if filters.category:
        query["category"] = filters.category
    if filters.brand:
        query["brand"] = _contains(filters.brand)
    price = {}
    if filters.min_price is not None:
        price["$gte"] = float(filters.min_price)
    if filters.max_price is not None:
        price["$lte"] = float(filters.max_price)
    if price:
        if "$gte" in price and "$lte" in price and price["$gte"] > price["$lte"]:
            raise InvalidInput("Minimum price cannot exceed maximum price")
        query["price"] = price
    if filters.rating is not None:
        query["ratings.average"] = {"$gte": float(filters.rating)}
    if filters.search:
        query["$text"] = {"$search": filters.search}
    if filters.featured:
        query["is_featured"] = True
    return query


def _object_id(value: str, label: str = "product") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise InvalidInput(f"Invalid {label} ID")
    return ObjectId(value)


class ProductService:
    def __init__(self, database, max_retries: int = REVIEW_MAX_RETRIES):
        self.db = database
        self.max_retries = max_retries
        self.products = database["product"]
        self.categories = database["category"]
        self.users = database["user"]

    # ----------------------- Views -----------------------
    def _category_refs(self, category_ids: Iterable[str]) -> Dict[str, dict]:
        oids = [ObjectId(c) for c in set(category_ids) if c and ObjectId.is_valid(c)]
        if not oids:
            return {}
        docs = self.categories.find({"_id": {"$in": oids}}, {"name": 1, "slug": 1})
        return {str(d["_id"]): {"id": str(d["_id"]), "name": d["name"], "slug": d["slug"]} for d in docs}

    def _user_refs(self, user_ids: Iterable[str]) -> Dict[str, dict]:
        oids = [ObjectId(u) for u in set(user_ids) if u and ObjectId.is_valid(u)]
        if not oids:
            return {}
        docs = self.users.find({"_id": {"$in": oids}}, {"name": 1})
        return {str(d["_id"]): {"id": str(d["_id"]), "name": d["name"]} for d in docs}

    def _views(self, docs: List[dict], with_reviewers: bool = False) -> List[ProductView]:
        categories = self._category_refs(d.get("category") for d in docs)
        users = {}
        if with_reviewers:
            users = self._user_refs(r["user"] for d in docs for r in d.get("reviews", []))
        views = []
        for doc in docs:
            doc = dict(doc)
            doc["id"] = str(doc.pop("_id"))
            doc["category"] = categories.get(doc.get("category"), doc.get("category"))
            doc["reviews"] = [{**r, "user": users.get(r["user"], r["user"])} for r in doc.get("reviews", [])]
            views.append(ProductView.model_validate(doc))
        return views

    def _find(self, product_id: str) -> dict:
        doc = self.products.find_one({"_id": _object_id(product_id)})
        if not doc:
            raise NotFound("Product not found")
        return doc

    def _require_category(self, category_id: str):
        oid = _object_id(category_id, "category")
        if not self.categories.find_one({"_id": oid}):
            raise NotFound("Category not found")

    def _require_unique_sku(self, sku: str, exclude: Optional[ObjectId] = None):
        query = {"sku": sku}
        if exclude is not None:
            query["_id"] = {"$ne": exclude}
        if self.products.find_one(query):
            raise Conflict(f"Product with SKU {sku} already exists")

    # ----------------------- Queries -----------------------
    def list(self, filters: ProductFilters, page: int = 1, limit: int = 12, sort_by: str = "createdAt",
             sort_order: str = "desc") -> Tuple[List[ProductView], Pagination]:
        if page < 1:
            raise InvalidInput("Page must be a positive integer")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise InvalidInput(f"Limit must be between 1 and {MAX_PAGE_SIZE}")
        if sort_by not in SORT_FIELDS:
            raise InvalidInput("Invalid sort field")
        if sort_order not in ("asc", "desc"):
            raise InvalidInput("Sort order must be asc or desc")

        query = list_query(filters)
        direction = DESCENDING if sort_order == "desc" else ASCENDING
        cursor = (
            self.products.find(query, {"reviews": 0})
            .sort(SORT_FIELDS[sort_by], direction)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        docs = list(cursor)
        total = self.products.count_documents(query)
        return self._views(docs), Pagination.build(page, limit, total)

    def get(self, product_id: str) -> ProductView:
        return self._views([self._find(product_id)], with_reviewers=True)[0]

    def search(self, q: str, limit: int = 10) -> List[ProductView]:
        q = (q or "").strip()
        if not q:
            raise InvalidInput("Search query is required")
        if not 1 <= limit <= MAX_SEARCH_LIMIT:
            raise InvalidInput(f"Limit must be between 1 and {MAX_SEARCH_LIMIT}")
        query = {
            "is_active": True,
            "$or": [
                {"name": _contains(q)},
                {"description": _contains(q)},
                {"brand": _contains(q)},
                {"tags": _contains(q)},
            ],
        }
        return self._views(list(self.products.find(query, {"reviews": 0}).limit(limit)))

    def related(self, product_id: str, limit: int = 4) -> List[ProductView]:
        product = self._find(product_id)
        docs = self.products.find(
            {"_id": {"$ne": product["_id"]}, "category": product["category"], "is_active": True},
            {"reviews": 0},
        ).limit(limit)
        return self._views(list(docs))

    def low_stock(self) -> List[ProductView]:
        docs = [
            d for d in self.products.find({"is_active": True}, {"reviews": 0})
            if d["inventory"]["quantity"] <= d["inventory"].get("low_stock_threshold", 10)
        ]
        docs.sort(key=lambda d: d["inventory"]["quantity"])
        return self._views(docs)

    def get_reviews(self, product_id: str, page: int = 1, limit: int = 10) -> Tuple[List[ReviewView], Pagination]:
        product = self.get(product_id)
        reviews = sorted(product.reviews, key=lambda r: r.created_at, reverse=True)
        start = (page - 1) * limit
        return reviews[start:start + limit], Pagination.build(page, limit, len(reviews))

    # ----------------------- Mutations -----------------------
    def create(self, data: ProductInput, created_by: Optional[str] = None) -> ProductView:
        self._require_category(data.category)
        self._require_unique_sku(data.sku)
        doc = Product(**data.model_dump()).model_dump()
        doc["created_by"] = created_by
        try:
            product_id = create_document("product", doc, database=self.db)
        except DuplicateKeyError:
            raise Conflict(f"Product with SKU {data.sku} already exists")
        logger.info("product_created", product_id=product_id, sku=data.sku)
        return self.get(product_id)

    def update(self, product_id: str, changes: Dict[str, Any]) -> ProductView:
        existing = self._find(product_id)
        changes = {k: v for k, v in changes.items() if k not in PROTECTED_FIELDS}
        if "category" in changes:
            self._require_category(changes["category"])
        if "sku" in changes and changes["sku"] != existing.get("sku"):
            self._require_unique_sku(changes["sku"], exclude=existing["_id"])

        merged = {k: v for k, v in existing.items() if k not in ("_id", "created_at", "updated_at", "created_by")}
        merged.update(changes)
        try:
            product = Product.model_validate(merged)
        except ValidationError as exc:
            raise InvalidInput(describe_validation_error(exc))

        validated = product.model_dump()
        update = {k: validated[k] for k in changes if k in validated}
        update["updated_at"] = utcnow()
        try:
            self.products.update_one({"_id": existing["_id"]}, {"$set": update})
        except DuplicateKeyError:
            raise Conflict(f"Product with SKU {changes.get('sku')} already exists")
        logger.info("product_updated", product_id=product_id, fields=sorted(changes))
        return self.get(product_id)

    def soft_delete(self, product_id: str):
        result = self.products.update_one(
            {"_id": _object_id(product_id)},
            {"$set": {"is_active": False, "updated_at": utcnow()}},
        )
        if result.matched_count == 0:
            raise NotFound("Product not found")
        logger.info("product_deactivated", product_id=product_id)

    def add_review(self, product_id: str, user_id: str, rating: int, comment: str) -> Review:
        """Append a review and recompute ratings from the same review list.

        The write only lands if the review list still has the length that
        was read, so concurrent reviewers re-read and retry instead of
        writing ratings from a stale list.
        """
        review = None
        for attempt in range(1, self.max_retries + 1):
            product = self._find(product_id)
            reviews = product.get("reviews", [])
            if any(r["user"] == user_id for r in reviews):
                raise Conflict("You have already reviewed this product")
            if review is None:
                try:
                    review = Review(user=user_id, rating=rating, comment=comment)
                except ValidationError as exc:
                    raise InvalidInput(describe_validation_error(exc))

            ratings = calculate_ratings([r["rating"] for r in reviews] + [review.rating])
            result = self.products.update_one(
                {"_id": product["_id"], "reviews": {"$size": len(reviews)}, "reviews.user": {"$ne": user_id}},
                {
                    "$push": {"reviews": review.model_dump()},
                    "$set": {"ratings": ratings.model_dump(), "updated_at": utcnow()},
                },
            )
            if result.matched_count:
                logger.info("review_added", product_id=product_id, user_id=user_id, rating=rating)
                return review
            logger.warning("review_write_conflict", product_id=product_id, attempt=attempt)
        raise Conflict("Product was modified by another request, please retry")

    def update_inventory(self, product_id: str, quantity: Optional[int] = None,
                         low_stock_threshold: Optional[int] = None) -> Inventory:
        product = self._find(product_id)
        current = product.get("inventory", {})
        try:
            inventory = Inventory(
                quantity=current.get("quantity", 0) if quantity is None else quantity,
                low_stock_threshold=current.get("low_stock_threshold", 10) if low_stock_threshold is None else low_stock_threshold,
            )
        except ValidationError as exc:
            raise InvalidInput(describe_validation_error(exc))

        update = {"updated_at": utcnow()}
        if quantity is not None:
            update["inventory.quantity"] = inventory.quantity
        if low_stock_threshold is not None:
            update["inventory.low_stock_threshold"] = inventory.low_stock_threshold
        self.products.update_one({"_id": product["_id"]}, {"$set": update})
        logger.info("inventory_updated", product_id=product_id, quantity=inventory.quantity,
                    low_stock_threshold=inventory.low_stock_threshold)
        return inventory

    # ----------------------- Categories -----------------------
    def list_categories(self) -> List[CategoryView]:
        docs = sorted(get_documents("category", {"is_active": True}, database=self.db), key=lambda d: d["name"])
        return [CategoryView.model_validate({**d, "id": str(d["_id"])}) for d in docs]

    def create_category(self, data: Category) -> CategoryView:
        if self.categories.find_one({"slug": data.slug}):
            raise Conflict(f"Category {data.slug} already exists")
        try:
            category_id = create_document("category", data, database=self.db)
        except DuplicateKeyError:
            raise Conflict(f"Category {data.slug} already exists")
        logger.info("category_created", category_id=category_id, slug=data.slug)
        return CategoryView(id=category_id, **data.model_dump())
