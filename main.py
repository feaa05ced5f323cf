import hashlib
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Annotated, List, Literal, Optional

import jwt
import structlog
from bson.objectid import ObjectId
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import AfterValidator, BaseModel, EmailStr, Field
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from cart import CartService
from database import create_document, db, ensure_indexes
from errors import ErrorKind, ShopError, describe_validation_error
from products import ProductFilters, ProductService
from schemas import (
    ApiModel,
    Category,
    Dimensions,
    Inventory,
    Product,
    ProductImage,
    ProductInput,
    Specification,
    User as UserSchema,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


def configure_logging():
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if os.getenv("LOG_JSON"):
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, LOG_LEVEL.upper(), logging.INFO)),
    )


configure_logging()
logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is None:
        logger.warning("database_not_configured")
    else:
        ensure_indexes(db)
    yield


app = FastAPI(title="Shop API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    return response


# ----------------------- Errors -----------------------
def failure(status_code: int, message: str, code: Optional[str] = None, headers=None) -> JSONResponse:
    content = {"success": False, "message": message}
    if code:
        content["code"] = code
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    return failure(exc.status_code, exc.message, exc.kind.value)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return failure(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return failure(400, describe_validation_error(exc), ErrorKind.INVALID_INPUT.value)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("database_error", path=request.url.path, error=str(exc), exc_info=exc)
    return failure(500, "Database error")


def respond(data=None, message: Optional[str] = None, success: bool = True) -> dict:
    body = {"success": success}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


# ----------------------- Utils -----------------------
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me-0123456789abcdef")
JWT_ALGO = "HS256"
JWT_EXPIRES_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", 7))
security = HTTPBearer()


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def get_cart_service(database=Depends(get_db)) -> CartService:
    return CartService(database)


def get_product_service(database=Depends(get_db)) -> ProductService:
    return ProductService(database)


def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    doc.pop("password_hash", None)
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
    return doc


def public_user(user: dict) -> dict:
    return {"id": user["id"], "name": user["name"], "email": user["email"], "is_admin": user.get("is_admin", False)}


def hash_password(password: str) -> str:
    return hashlib.sha256(password.encode()).hexdigest()


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=JWT_EXPIRES_DAYS)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security), database=Depends(get_db)):
    payload = decode_token(credentials.credentials)
    user_id = payload.get("id")
    if not user_id or not ObjectId.is_valid(user_id):
        raise HTTPException(status_code=401, detail="Invalid token payload")
    user = database["user"].find_one({"_id": ObjectId(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return serialize_doc(user)


def get_admin_user(user=Depends(get_current_user)):
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin only")
    return user


def _check_object_id(value: str) -> str:
    if not ObjectId.is_valid(value):
        raise ValueError("Valid product ID is required")
    return value


ObjectIdStr = Annotated[str, AfterValidator(_check_object_id)]


# ----------------------- Models -----------------------
class SignupBody(BaseModel):
    name: str = Field(..., min_length=2, max_length=80)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class ProductCreateBody(ProductInput):
    pass


class ProductUpdateBody(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    compare_price: Optional[float] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    sku: Optional[str] = None
    inventory: Optional[Inventory] = None
    images: Optional[List[ProductImage]] = None
    specifications: Optional[List[Specification]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    tags: Optional[List[str]] = None
    weight: Optional[float] = None
    dimensions: Optional[Dimensions] = None
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None


class InventoryBody(ApiModel):
    quantity: Optional[int] = Field(None, ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)


class ReviewBody(ApiModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=5, max_length=500)


class AddToCartBody(ApiModel):
    product_id: ObjectIdStr
    quantity: int = Field(1, ge=1, le=100)


class UpdateCartBody(ApiModel):
    product_id: ObjectIdStr
    quantity: int = Field(..., ge=1, le=100)


class RemoveFromCartBody(ApiModel):
    product_id: ObjectIdStr


class CouponBody(ApiModel):
    coupon_code: str = Field(..., min_length=3, max_length=20, pattern=r"^[A-Z0-9]+$")


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "Shop API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is None:
        return response
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/api/auth/signup", status_code=201)
def signup(body: SignupBody, database=Depends(get_db)):
    if database["user"].find_one({"email": body.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = UserSchema(name=body.name, email=body.email, password_hash=hash_password(body.password), is_admin=False)
    try:
        user_id = create_document("user", user, database=database)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    logger.info("user_registered", user_id=user_id)
    token = create_token({"id": user_id, "email": body.email, "is_admin": False})
    return respond({"token": token, "user": {"id": user_id, "name": body.name, "email": body.email, "is_admin": False}})


@app.post("/api/auth/login")
def login(body: LoginBody, database=Depends(get_db)):
    user = database["user"].find_one({"email": body.email})
    if not user or user.get("password_hash") != hash_password(body.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    suser = public_user(serialize_doc(user))
    token = create_token({"id": suser["id"], "email": suser["email"], "is_admin": suser["is_admin"]})
    return respond({"token": token, "user": suser})


@app.get("/api/auth/me")
def me(user=Depends(get_current_user)):
    return respond({"user": public_user(user)})


# ----------------------- Categories -----------------------
@app.get("/api/categories")
def list_categories(service: ProductService = Depends(get_product_service)):
    return respond({"categories": service.list_categories()})


@app.post("/api/categories", status_code=201)
def create_category(body: Category, user=Depends(get_admin_user), service: ProductService = Depends(get_product_service)):
    return respond({"category": service.create_category(body)}, "Category created successfully")


# ----------------------- Products -----------------------
@app.get("/api/products")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    category: Optional[str] = None,
    brand: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0, alias="minPrice"),
    max_price: Optional[float] = Query(None, ge=0, alias="maxPrice"),
    rating: Optional[float] = Query(None, ge=1, le=5),
    search: Optional[str] = None,
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    featured: bool = False,
    service: ProductService = Depends(get_product_service),
):
    filters = ProductFilters(
        category=category,
        brand=brand,
        min_price=min_price,
        max_price=max_price,
        rating=rating,
        search=search,
        featured=featured,
    )
    products, pagination = service.list(filters, page, limit, sort_by, sort_order)
    return respond({"products": products, "pagination": pagination})


@app.get("/api/products/search")
def search_products(
    q: str = Query(..., min_length=1, max_length=100),
    limit: int = Query(10, ge=1, le=50),
    service: ProductService = Depends(get_product_service),
):
    products = service.search(q, limit)
    return respond({"products": products, "count": len(products)})


@app.get("/api/products/low-stock")
def low_stock_products(user=Depends(get_admin_user), service: ProductService = Depends(get_product_service)):
    products = service.low_stock()
    return respond({"products": products, "count": len(products)})


@app.get("/api/products/{product_id}")
def get_product(product_id: str, service: ProductService = Depends(get_product_service)):
    return respond({"product": service.get(product_id)})


@app.get("/api/products/{product_id}/related")
def related_products(
    product_id: str,
    limit: int = Query(4, ge=1, le=20),
    service: ProductService = Depends(get_product_service),
):
    return respond({"products": service.related(product_id, limit)})


@app.get("/api/products/{product_id}/reviews")
def product_reviews(
    product_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: ProductService = Depends(get_product_service),
):
    reviews, pagination = service.get_reviews(product_id, page, limit)
    return respond({"reviews": reviews, "pagination": pagination})


@app.post("/api/products/{product_id}/reviews", status_code=201)
def add_review(
    product_id: str,
    body: ReviewBody,
    user=Depends(get_current_user),
    service: ProductService = Depends(get_product_service),
):
    review = service.add_review(product_id, user["id"], body.rating, body.comment)
    return respond({"review": review}, "Review added successfully")


@app.post("/api/products", status_code=201)
def create_product(
    body: ProductCreateBody,
    user=Depends(get_admin_user),
    service: ProductService = Depends(get_product_service),
):
    product = service.create(body, created_by=user["id"])
    return respond({"product": product}, "Product created successfully")


@app.put("/api/products/{product_id}")
def update_product(
    product_id: str,
    body: ProductUpdateBody,
    user=Depends(get_admin_user),
    service: ProductService = Depends(get_product_service),
):
    product = service.update(product_id, body.model_dump(exclude_unset=True))
    return respond({"product": product}, "Product updated successfully")


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, user=Depends(get_admin_user), service: ProductService = Depends(get_product_service)):
    service.soft_delete(product_id)
    return respond(message="Product deleted successfully")


@app.put("/api/products/{product_id}/inventory")
def update_inventory(
    product_id: str,
    body: InventoryBody,
    user=Depends(get_admin_user),
    service: ProductService = Depends(get_product_service),
):
    inventory = service.update_inventory(product_id, body.quantity, body.low_stock_threshold)
    return respond({"inventory": inventory}, "Inventory updated successfully")


# ----------------------- Cart -----------------------
@app.get("/api/cart")
def get_cart(user=Depends(get_current_user), service: CartService = Depends(get_cart_service)):
    return respond({"cart": service.get_cart(user["id"])})


@app.get("/api/cart/summary")
def cart_summary(user=Depends(get_current_user), service: CartService = Depends(get_cart_service)):
    return respond(service.get_summary(user["id"]))


@app.post("/api/cart/validate")
def validate_cart(user=Depends(get_current_user), service: CartService = Depends(get_cart_service)):
    result = service.validate_cart(user["id"])
    return respond(result, success=result.is_valid)


@app.post("/api/cart/add")
def add_to_cart(body: AddToCartBody, user=Depends(get_current_user), service: CartService = Depends(get_cart_service)):
    cart = service.add_item(user["id"], body.product_id, body.quantity)
    return respond({"cart": cart}, "Item added to cart successfully")


@app.put("/api/cart/update")
def update_cart_item(body: UpdateCartBody, user=Depends(get_current_user), service: CartService = Depends(get_cart_service)):
    cart = service.update_item(user["id"], body.product_id, body.quantity)
    return respond({"cart": cart}, "Cart updated successfully")


@app.delete("/api/cart/remove")
def remove_from_cart(body: RemoveFromCartBody, user=Depends(get_current_user), service: CartService = Depends(get_cart_service)):
    cart = service.remove_item(user["id"], body.product_id)
    return respond({"cart": cart}, "Item removed from cart successfully")


@app.delete("/api/cart/clear")
def clear_cart(user=Depends(get_current_user), service: CartService = Depends(get_cart_service)):
    cart = service.clear_cart(user["id"])
    return respond({"cart": cart}, "Cart cleared successfully")


@app.post("/api/cart/coupon")
def apply_coupon(body: CouponBody, user=Depends(get_current_user), service: CartService = Depends(get_cart_service)):
    quote = service.apply_coupon(user["id"], body.coupon_code)
    return respond(quote, "Coupon applied successfully")


# ----------------------- Seed Demo Data -----------------------
DEMO_CATEGORIES = [
    {"name": "Mobiles", "slug": "mobiles", "description": "Phones and tablets"},
    {"name": "Laptops", "slug": "laptops", "description": "Notebooks and ultrabooks"},
    {"name": "Accessories", "slug": "accessories", "description": "Audio, input and wearables"},
]

DEMO_PRODUCTS = [
    {
        "name": "Pixel 7A",
        "brand": "Google",
        "description": "Powerful camera and smooth Android experience.",
        "price": 349.99,
        "category": "mobiles",
        "sku": "GOO-PX7A-128",
        "images": [{"url": "https://images.unsplash.com/photo-1511707171634-5f897ff02aa9", "is_main": True}],
        "specifications": [{"name": "Storage", "value": "128GB"}, {"name": "RAM", "value": "8GB"}],
        "inventory": {"quantity": 25, "low_stock_threshold": 5},
        "tags": ["phone", "android"],
        "is_featured": True,
    },
    {
        "name": "ThinkPad X1",
        "brand": "Lenovo",
        "description": "Business-class laptop with legendary keyboard.",
        "price": 1199.99,
        "category": "laptops",
        "sku": "LEN-X1-512",
        "images": [{"url": "https://images.unsplash.com/photo-1517336714731-489689fd1ca8", "is_main": True}],
        "specifications": [{"name": "CPU", "value": "i7"}, {"name": "RAM", "value": "16GB"}],
        "inventory": {"quantity": 10, "low_stock_threshold": 3},
        "tags": ["laptop", "business"],
    },
    {
        "name": "Noise Cancelling Headphones",
        "brand": "Sony",
        "description": "Immerse in music with active noise cancelling.",
        "price": 199.99,
        "compare_price": 249.99,
        "category": "accessories",
        "sku": "SON-WH-ANC",
        "images": [{"url": "https://images.unsplash.com/photo-1518443248587-30bdc8f94f04", "is_main": True}],
        "specifications": [{"name": "Battery", "value": "30h"}],
        "inventory": {"quantity": 4, "low_stock_threshold": 5},
        "tags": ["audio", "wireless"],
    },
    {
        "name": "Mechanical Keyboard",
        "brand": "Keychron",
        "description": "Hot-swappable RGB mechanical keyboard.",
        "price": 79.99,
        "category": "accessories",
        "sku": "KEY-K2-RGB",
        "images": [{"url": "https://images.unsplash.com/photo-1516382799247-87df95d790b5", "is_main": True}],
        "specifications": [{"name": "Switches", "value": "Gateron"}],
        "inventory": {"quantity": 30},
        "tags": ["keyboard"],
    },
]


@app.post("/seed")
def seed(database=Depends(get_db)):
    if database["product"].count_documents({}) > 0:
        return respond(message="Products already exist", success=False)
    category_ids = {}
    for c in DEMO_CATEGORIES:
        category_ids[c["slug"]] = create_document("category", Category(**c), database=database)
    for p in DEMO_PRODUCTS:
        prod = Product(**{**p, "category": category_ids[p["category"]]})
        create_document("product", prod, database=database)
    # create admin user if none
    if database["user"].count_documents({"is_admin": True}) == 0:
        admin = UserSchema(name="Admin", email="admin@shop.com", password_hash=hash_password("admin123"), is_admin=True)
        create_document("user", admin, database=database)
    logger.info("demo_data_seeded", products=len(DEMO_PRODUCTS))
    return respond({"products": database["product"].count_documents({})}, "Demo data seeded")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
