"""
Database Schemas for the Shop API

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name:
- User -> "user"
- Category -> "category"
- Product -> "product"
- Cart -> "cart"

Documents are stored with snake_case keys. Models derived from ApiModel
also accept and emit camelCase aliases, which is what the HTTP API speaks.
The *View models at the bottom are response shapes only.
"""
import math
from datetime import datetime, timezone
from typing import List, Literal, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


# ----------------------- Users -----------------------
class User(BaseModel):
    name: str = Field(..., min_length=2, max_length=80, description="Full name")
    email: EmailStr
    password_hash: str = Field(..., description="Hashed password")
    is_admin: bool = False


# ----------------------- Catalog -----------------------
class Category(ApiModel):
    name: str = Field(..., min_length=2, max_length=50)
    slug: str = Field(..., min_length=2, max_length=50, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    description: Optional[str] = Field(None, max_length=500)
    is_active: bool = True


class ProductImage(ApiModel):
    url: str
    alt: Optional[str] = None
    is_main: bool = False


class Specification(ApiModel):
    name: str
    value: str


class Inventory(ApiModel):
    quantity: int = Field(0, ge=0)
    low_stock_threshold: int = Field(10, ge=0)


class Dimensions(ApiModel):
    length: Optional[float] = Field(None, ge=0)
    width: Optional[float] = Field(None, ge=0)
    height: Optional[float] = Field(None, ge=0)


class Review(ApiModel):
    id: str = Field(default_factory=lambda: str(ObjectId()))
    user: str = Field(..., description="Reviewer user id")
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1, max_length=500)
    created_at: datetime = Field(default_factory=utcnow)


class Ratings(ApiModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class ProductInput(ApiModel):
    """Fields an admin may set on a product."""
    name: str = Field(..., min_length=2, max_length=100)
    description: str = Field(..., min_length=10, max_length=2000)
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    category: str = Field(..., description="Category id")
    brand: str = Field(..., min_length=1, max_length=50)
    sku: str = Field(..., min_length=1, max_length=50)
    inventory: Inventory = Field(default_factory=Inventory)
    images: List[ProductImage] = Field(default_factory=list)
    specifications: List[Specification] = Field(default_factory=list)
    is_active: bool = True
    is_featured: bool = False
    tags: List[str] = Field(default_factory=list)
    weight: Optional[float] = Field(None, ge=0, description="Weight in grams")
    dimensions: Optional[Dimensions] = None
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None

    @field_validator("images")
    @classmethod
    def single_main_image(cls, images):
        if sum(1 for img in images if img.is_main) > 1:
            raise ValueError("Only one image can be marked as main")
        return images

    @field_validator("tags")
    @classmethod
    def unique_tags(cls, tags):
        seen = []
        for tag in tags:
            tag = tag.strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen


class Product(ProductInput):
    reviews: List[Review] = Field(default_factory=list)
    ratings: Ratings = Field(default_factory=Ratings)


# ----------------------- Cart -----------------------
class CartItem(ApiModel):
    product: str = Field(..., description="Product id")
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price when the item was added or last updated")


class Cart(ApiModel):
    user: str = Field(..., description="Owner user id")
    items: List[CartItem] = Field(default_factory=list)
    total_items: int = 0
    total_price: float = 0.0
    version: int = 0


# ----------------------- Views -----------------------
class CategoryRef(ApiModel):
    id: str
    name: str
    slug: str


class UserRef(ApiModel):
    id: str
    name: str


class CategoryView(Category):
    id: str


class ReviewView(Review):
    user: Union[UserRef, str]


class ProductView(Product):
    id: str
    category: Union[CategoryRef, str]
    reviews: List[ReviewView] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field(alias="inStock")
    @property
    def in_stock(self) -> bool:
        return self.inventory.quantity > 0

    @computed_field(alias="lowStock")
    @property
    def low_stock(self) -> bool:
        return self.inventory.quantity <= self.inventory.low_stock_threshold

    @computed_field(alias="mainImage")
    @property
    def main_image(self) -> Optional[str]:
        main = next((img for img in self.images if img.is_main), None)
        if main:
            return main.url
        return self.images[0].url if self.images else None


class ProductSummary(ApiModel):
    id: str
    name: str
    price: float
    brand: str
    images: List[ProductImage] = Field(default_factory=list)
    inventory: Inventory = Field(default_factory=Inventory)
    is_active: bool = True


class CartItemView(ApiModel):
    product: Union[ProductSummary, str]
    quantity: int
    price: float


class CartView(ApiModel):
    id: str
    user: str
    items: List[CartItemView] = Field(default_factory=list)
    total_items: int = 0
    total_price: float = 0.0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CartSummary(ApiModel):
    total_items: int = 0
    total_price: float = 0.0
    items_count: int = 0
    is_empty: bool = True


class CartIssue(ApiModel):
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    message: str
    type: Literal["unavailable", "insufficient_stock", "price_change"]
    available: Optional[int] = None
    requested: Optional[int] = None
    old_price: Optional[float] = None
    new_price: Optional[float] = None


class CartValidation(ApiModel):
    cart: CartView
    is_valid: bool
    errors: List[CartIssue] = Field(default_factory=list)
    valid_items_count: int


class CouponView(ApiModel):
    code: str
    discount: float
    type: Literal["percentage", "fixed"]


class CouponQuote(ApiModel):
    coupon: CouponView
    original_price: float
    discount_amount: float
    final_price: float


class Pagination(ApiModel):
    current_page: int
    total_pages: int
    total: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = math.ceil(total / limit) if limit else 0
        return cls(
            current_page=page,
            total_pages=total_pages,
            total=total,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        )
