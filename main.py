import os
import re
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any

import socketio
from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, ValidationError
from bson import ObjectId
from pymongo import ReturnDocument

import messages
import realtime
from database import db, create_document, get_documents, parse_object_id, serialize_doc
from schemas import (
    User as UserSchema,
    Address as AddressSchema,
    Preferences,
    Product as ProductSchema,
    ShippingAddress,
    Order as OrderSchema,
    OrderItem,
    Review,
    StockChange,
    Category,
    Unit,
    StockChangeType,
    PaymentMethod,
    PaymentStatus,
    OrderStatus,
)
from security import (
    hash_password,
    verify_password,
    create_token,
    get_current_user,
    require_admin,
    public_user,
)

logger = logging.getLogger(__name__)

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
ADMIN_NAME = os.getenv("ADMIN_NAME", "Administrator")

PHONE_RE = re.compile(r"^\+?[\d\s-]{10,}$")


def ensure_admin():
    """Create the bootstrap admin account from the environment, once."""
    if not ADMIN_EMAIL or not ADMIN_PASSWORD:
        return
    email = ADMIN_EMAIL.lower()
    if db["user"].find_one({"email": email}):
        return
    admin = UserSchema(name=ADMIN_NAME, email=email, hashed_password=hash_password(ADMIN_PASSWORD), role="admin")
    create_document("user", admin)
    logger.info("created bootstrap admin %s", email)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db["user"].create_index("email", unique=True)
    ensure_admin()
    yield


# App setup
app = FastAPI(title="FarmBros E-commerce API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(messages.router)

# HTTP app wrapped by the Socket.IO server; this is what uvicorn serves
asgi_app = socketio.ASGIApp(realtime.sio, other_asgi_app=app)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Something went wrong!", "error": str(exc)})


# Schemas (request/response)
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str
    price: float = Field(..., ge=0)
    category: Category
    stock: int = Field(0, ge=0)
    unit: Unit = "piece"
    min_order_quantity: int = Field(1, ge=1)
    max_order_quantity: int = Field(..., ge=1)
    images: List[str] = []
    farm_location: str
    organic: bool = False
    harvest_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[Category] = None
    stock: Optional[int] = Field(None, ge=0)
    unit: Optional[Unit] = None
    min_order_quantity: Optional[int] = Field(None, ge=1)
    max_order_quantity: Optional[int] = Field(None, ge=1)
    images: Optional[List[str]] = None
    farm_location: Optional[str] = None
    organic: Optional[bool] = None
    harvest_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None


class StockUpdateRequest(BaseModel):
    quantity: int = Field(..., gt=0)
    type: StockChangeType
    reason: Optional[str] = ""


class QuantityRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class CartItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderRequest(BaseModel):
    items: Optional[List[OrderItemIn]] = None
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    notes: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    order_status: OrderStatus


class PaymentStatusUpdate(BaseModel):
    payment_status: PaymentStatus


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    profile_picture: Optional[str] = None
    preferences: Optional[Preferences] = None


class AddressIn(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    longitude: float = Field(..., ge=-180, le=180, strict=True)
    latitude: float = Field(..., ge=-90, le=90, strict=True)
    is_default: bool = False


# Health and helpers
@app.get("/")
def root():
    return {"message": "FarmBros E-commerce API running"}


@app.get("/test")
def test_database():
    """Connectivity report: which collections exist and how many users/products/orders they hold."""
    report: Dict[str, Any] = {"backend": "running", "database": db.name, "connection_status": "Not Connected"}
    try:
        names = db.list_collection_names()
    except Exception as e:
        report["error"] = str(e)[:80]
        return report
    report["connection_status"] = "Connected"
    report["collections"] = {name: db[name].count_documents({}) for name in ("user", "product", "order")
                             if name in names}
    return report


def get_product_or_404(product_id: str) -> dict:
    oid = parse_object_id(product_id, "product id")
    product = db["product"].find_one({"_id": oid})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def quantity_available(product: dict, quantity: int) -> bool:
    return (product.get("stock", 0) >= quantity
            and quantity >= product.get("min_order_quantity", 1)
            and quantity <= product.get("max_order_quantity", quantity))


def apply_stock_change(oid: ObjectId, quantity: int, change_type: str, reason: str = "") -> dict:
    """Move stock by `quantity` and log it in quantity_history. Decreases never go below zero."""
    entry = StockChange(type=change_type, quantity=quantity, reason=reason or "").model_dump()
    filt: Dict[str, Any] = {"_id": oid}
    if change_type in ("removed", "sold"):
        filt["stock"] = {"$gte": quantity}
        delta = -quantity
    else:
        delta = quantity
    updated = db["product"].find_one_and_update(
        filt,
        {"$inc": {"stock": delta}, "$push": {"quantity_history": entry}, "$set": {"updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        if db["product"].count_documents({"_id": oid}) == 0:
            raise HTTPException(status_code=404, detail="Product not found")
        raise HTTPException(status_code=400, detail="Insufficient stock")
    return updated


# Auth
@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user_model = UserSchema(
        name=payload.name.strip(),
        email=email,
        hashed_password=hash_password(payload.password),
        phone=payload.phone,
    )
    inserted_id = create_document("user", user_model)
    user = db["user"].find_one({"_id": ObjectId(inserted_id)})
    return {"token": create_token(user), "user": public_user(user)}


@app.post("/api/auth/login")
def login(payload: LoginRequest):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_token(user), "user": public_user(user)}


@app.get("/api/auth/me")
async def me(current_user: dict = Depends(get_current_user)):
    return public_user(current_user)


# Products
@app.get("/api/products/all")
def list_all_products():
    return [serialize_doc(p) for p in get_documents("product")]


@app.get("/api/products")
def list_products(category: Optional[Category] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, search: Optional[str] = None, sort: Optional[str] = None,
                  page: int = Query(1, ge=1), page_size: int = Query(12, ge=1, le=100)):
    filt: Dict[str, Any] = {}
    if category:
        filt["category"] = category
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    if search:
        pattern = re.escape(search)
        filt["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]

    cursor = db["product"].find(filt)
    if sort == "price_asc":
        cursor = cursor.sort("price", 1)
    elif sort == "price_desc":
        cursor = cursor.sort("price", -1)
    elif sort == "rating":
        cursor = cursor.sort("rating", -1)
    else:
        cursor = cursor.sort("created_at", -1)

    total = db["product"].count_documents(filt)
    cursor = cursor.skip((page - 1) * page_size).limit(page_size)
    items = [serialize_doc(p) for p in cursor]
    return {"items": items, "page": page, "page_size": page_size, "total": total}


@app.get("/api/products/{product_id}")
def get_product(product_id: str):
    return serialize_doc(get_product_or_404(product_id))


@app.post("/api/products", status_code=201)
async def create_product(payload: ProductIn, user: dict = Depends(require_admin)):
    product = ProductSchema(**payload.model_dump(), seller=str(user["_id"]))
    inserted = create_document("product", product)
    return serialize_doc(db["product"].find_one({"_id": ObjectId(inserted)}))


@app.patch("/api/products/{product_id}")
async def update_product(product_id: str, payload: ProductUpdate, user: dict = Depends(require_admin)):
    product = get_product_or_404(product_id)
    update = payload.model_dump(exclude_unset=True)
    if not update:
        raise HTTPException(status_code=400, detail="No fields to update")
    # Re-validate the merged document so enums and bounds hold after the update
    try:
        merged = ProductSchema(**{**product, **update})
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=jsonable_encoder(e.errors(include_url=False)))
    update["max_order_quantity"] = merged.max_order_quantity
    update["updated_at"] = datetime.utcnow()
    db["product"].update_one({"_id": product["_id"]}, {"$set": update})
    return serialize_doc(db["product"].find_one({"_id": product["_id"]}))


@app.patch("/api/products/{product_id}/stock")
async def update_stock(product_id: str, payload: StockUpdateRequest, user: dict = Depends(require_admin)):
    oid = parse_object_id(product_id, "product id")
    updated = apply_stock_change(oid, payload.quantity, payload.type, payload.reason)
    return serialize_doc(updated)


@app.post("/api/products/{product_id}/check-availability")
def check_availability(product_id: str, payload: QuantityRequest):
    product = get_product_or_404(product_id)
    available = quantity_available(product, payload.quantity)
    return {
        "available": available,
        "message": "Quantity is available" if available else "Quantity is not available",
    }


@app.delete("/api/products/{product_id}")
async def delete_product(product_id: str, user: dict = Depends(require_admin)):
    oid = parse_object_id(product_id, "product id")
    if db["product"].delete_one({"_id": oid}).deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"message": "Product deleted successfully"}


@app.post("/api/products/{product_id}/reviews", status_code=201)
async def add_review(product_id: str, payload: ReviewRequest, user: dict = Depends(get_current_user)):
    product = get_product_or_404(product_id)
    review = Review(user=str(user["_id"]), rating=payload.rating, comment=payload.comment).model_dump()
    ratings = [r["rating"] for r in product.get("reviews", [])] + [review["rating"]]
    rating = sum(ratings) / len(ratings)
    db["product"].update_one(
        {"_id": product["_id"]},
        {"$push": {"reviews": review}, "$set": {"rating": rating, "updated_at": datetime.utcnow()}},
    )
    return serialize_doc(db["product"].find_one({"_id": product["_id"]}))


# Optional: seed sample products for demo
@app.post("/api/admin/seed")
async def seed_products(user: dict = Depends(require_admin)):
    if db["product"].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    samples = [
        ProductIn(
            name="Organic Tomatoes",
            description="Vine-ripened tomatoes picked the morning they ship.",
            price=3.5,
            category="vegetables",
            stock=250,
            unit="kg",
            min_order_quantity=1,
            max_order_quantity=20,
            images=["https://images.unsplash.com/photo-1546094096-0df4bcaaa337?q=80&w=1200&auto=format&fit=crop"],
            farm_location="Nashik, Maharashtra",
            organic=True,
        ),
        ProductIn(
            name="Alphonso Mangoes",
            description="Hand-sorted seasonal mangoes, packed by the dozen.",
            price=12.0,
            category="fruits",
            stock=80,
            unit="dozen",
            min_order_quantity=1,
            max_order_quantity=5,
            images=["https://images.unsplash.com/photo-1553279768-865429fa0078?q=80&w=1200&auto=format&fit=crop"],
            farm_location="Ratnagiri, Maharashtra",
        ),
        ProductIn(
            name="Basmati Rice",
            description="Aged long-grain basmati straight from the mill.",
            price=2.2,
            category="grains",
            stock=1000,
            unit="kg",
            min_order_quantity=5,
            max_order_quantity=100,
            images=["https://images.unsplash.com/photo-1586201375761-83865001e31c?q=80&w=1200&auto=format&fit=crop"],
            farm_location="Karnal, Haryana",
        ),
    ]
    for sample in samples:
        create_document("product", ProductSchema(**sample.model_dump(), seller=str(user["_id"])))
    return {"seeded": True, "count": len(samples)}


# Cart
def _cart_view(cart: dict) -> dict:
    ids = [ObjectId(it["product_id"]) for it in cart.get("items", []) if ObjectId.is_valid(it["product_id"])]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}})}
    items = []
    total = 0.0
    for it in cart.get("items", []):
        prod = products.get(ObjectId(it["product_id"])) if ObjectId.is_valid(it["product_id"]) else None
        if prod:
            total += float(prod.get("price", 0)) * it["quantity"]
            prod = serialize_doc({k: prod.get(k) for k in ("_id", "name", "price", "images", "stock")})
        items.append({**it, "product": prod})
    return {
        "id": str(cart["_id"]) if cart.get("_id") else None,
        "user_id": cart["user_id"],
        "items": items,
        "total_amount": round(total, 2),
        "updated_at": cart.get("updated_at"),
    }


def _save_cart(cart: dict, items: List[dict]) -> dict:
    cart["items"] = items
    view = _cart_view(cart)
    db["cart"].update_one(
        {"_id": cart["_id"]},
        {"$set": {"items": items, "total_amount": view["total_amount"], "updated_at": datetime.utcnow()}},
    )
    return view


def _check_cart_quantity(product: dict, quantity: int):
    stock = product.get("stock", 0)
    if stock < quantity:
        raise HTTPException(status_code=400, detail=f"Only {stock} items available in stock")
    max_qty = product.get("max_order_quantity")
    if max_qty is not None and quantity > max_qty:
        raise HTTPException(status_code=400, detail=f"Maximum order quantity is {max_qty}")


@app.get("/api/cart")
async def get_cart(user: dict = Depends(get_current_user)):
    uid = str(user["_id"])
    cart = db["cart"].find_one({"user_id": uid})
    if not cart:
        inserted = create_document("cart", {"user_id": uid, "items": [], "total_amount": 0})
        cart = db["cart"].find_one({"_id": ObjectId(inserted)})
    return _cart_view(cart)


@app.post("/api/cart/items")
async def cart_add(item: CartItemIn, user: dict = Depends(get_current_user)):
    uid = str(user["_id"])
    product = get_product_or_404(item.product_id)
    cart = db["cart"].find_one({"user_id": uid})
    if not cart:
        inserted = create_document("cart", {"user_id": uid, "items": [], "total_amount": 0})
        cart = db["cart"].find_one({"_id": ObjectId(inserted)})
    items = cart.get("items", [])
    existing = next((it for it in items if it["product_id"] == item.product_id), None)
    quantity = item.quantity + (existing["quantity"] if existing else 0)
    _check_cart_quantity(product, quantity)
    if existing:
        existing["quantity"] = quantity
    else:
        items.append({"product_id": item.product_id, "quantity": item.quantity})
    return _save_cart(cart, items)


@app.patch("/api/cart/items/{product_id}")
async def cart_update(product_id: str, payload: QuantityRequest, user: dict = Depends(get_current_user)):
    cart = db["cart"].find_one({"user_id": str(user["_id"])})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    items = cart.get("items", [])
    existing = next((it for it in items if it["product_id"] == product_id), None)
    if not existing:
        raise HTTPException(status_code=404, detail="Item not found in cart")
    _check_cart_quantity(get_product_or_404(product_id), payload.quantity)
    existing["quantity"] = payload.quantity
    return _save_cart(cart, items)


@app.delete("/api/cart/items/{product_id}")
async def cart_remove(product_id: str, user: dict = Depends(get_current_user)):
    cart = db["cart"].find_one({"user_id": str(user["_id"])})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    items = [it for it in cart.get("items", []) if it["product_id"] != product_id]
    return _save_cart(cart, items)


@app.delete("/api/cart")
async def cart_clear(user: dict = Depends(get_current_user)):
    cart = db["cart"].find_one({"user_id": str(user["_id"])})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    return _save_cart(cart, [])


# Orders
def _order_view(order: dict) -> dict:
    ids = [ObjectId(it["product_id"]) for it in order.get("items", [])]
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": ids}}, {"name": 1, "images": 1, "price": 1})}
    out = serialize_doc(order)
    for it in out["items"]:
        prod = products.get(ObjectId(it["product_id"]))
        it["product"] = serialize_doc(prod) if prod else None
    return out


def get_order_for(order_id: str, user: dict) -> dict:
    oid = parse_object_id(order_id, "order id")
    order = db["order"].find_one({"_id": oid})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if user.get("role") != "admin" and order["user_id"] != str(user["_id"]):
        raise HTTPException(status_code=403, detail="Not authorized to access this order")
    return order


@app.post("/api/orders", status_code=201)
async def create_order(payload: OrderRequest, user: dict = Depends(get_current_user)):
    uid = str(user["_id"])
    from_cart = payload.items is None
    if from_cart:
        cart = db["cart"].find_one({"user_id": uid})
        requested = [OrderItemIn(**it) for it in (cart or {}).get("items", [])]
    else:
        requested = payload.items
    if not requested:
        raise HTTPException(status_code=400, detail="Order must contain at least one item")

    # One line per product, so stock and order bounds apply to the summed quantity
    merged: Dict[str, int] = {}
    for it in requested:
        merged[it.product_id] = merged.get(it.product_id, 0) + it.quantity
    requested = [OrderItemIn(product_id=pid, quantity=qty) for pid, qty in merged.items()]

    # Validate items and check stock
    items = []
    for it in requested:
        product = get_product_or_404(it.product_id)
        if product.get("stock", 0) < it.quantity:
            raise HTTPException(
                status_code=400,
                detail=f"Insufficient stock for {product['name']}. Available: {product.get('stock', 0)}",
            )
        if not quantity_available(product, it.quantity):
            raise HTTPException(
                status_code=400,
                detail=f"Quantity for {product['name']} must be between "
                       f"{product.get('min_order_quantity', 1)} and {product.get('max_order_quantity')}",
            )
        items.append(OrderItem(product_id=it.product_id, quantity=it.quantity, price=float(product["price"])))

    order = OrderSchema(
        user_id=uid,
        items=items,
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
        notes=payload.notes,
    )
    order_id = create_document("order", order)

    # Stock is decremented after the order is stored; the two writes are not atomic
    for it in items:
        apply_stock_change(ObjectId(it.product_id), it.quantity, "sold", f"Order {order_id}")

    if from_cart:
        db["cart"].update_one({"user_id": uid}, {"$set": {"items": [], "total_amount": 0, "updated_at": datetime.utcnow()}})

    return _order_view(db["order"].find_one({"_id": ObjectId(order_id)}))


@app.get("/api/orders")
async def list_orders(user: dict = Depends(get_current_user)):
    filt = {} if user.get("role") == "admin" else {"user_id": str(user["_id"])}
    cursor = db["order"].find(filt).sort("created_at", -1)
    return [_order_view(o) for o in cursor]


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, user: dict = Depends(get_current_user)):
    return _order_view(get_order_for(order_id, user))


@app.patch("/api/orders/{order_id}/status")
async def update_order_status(order_id: str, payload: OrderStatusUpdate, user: dict = Depends(require_admin)):
    order = get_order_for(order_id, user)
    update: Dict[str, Any] = {"order_status": payload.order_status, "updated_at": datetime.utcnow()}
    if payload.order_status == "DELIVERED":
        update["delivery_date"] = datetime.utcnow()
    db["order"].update_one({"_id": order["_id"]}, {"$set": update})
    return _order_view(db["order"].find_one({"_id": order["_id"]}))


@app.patch("/api/orders/{order_id}/payment")
async def update_payment_status(order_id: str, payload: PaymentStatusUpdate, user: dict = Depends(require_admin)):
    order = get_order_for(order_id, user)
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"payment_status": payload.payment_status, "updated_at": datetime.utcnow()}},
    )
    return _order_view(db["order"].find_one({"_id": order["_id"]}))


# Profile
def get_profile_owner(user_id: str, current_user: dict) -> dict:
    """Load the profile at `user_id` and make sure the caller is its owner."""
    oid = parse_object_id(user_id, "user id")
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if current_user["_id"] != oid:
        raise HTTPException(status_code=403, detail="Not authorized to update this profile")
    return user


@app.get("/api/profile/{user_id}")
async def get_profile(user_id: str, current_user: dict = Depends(get_current_user)):
    oid = parse_object_id(user_id, "user id")
    user = db["user"].find_one({"_id": oid})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if current_user["_id"] != oid and current_user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Not authorized to view this profile")
    return public_user(user)


@app.put("/api/profile/{user_id}")
async def update_profile(user_id: str, payload: ProfileUpdate, current_user: dict = Depends(get_current_user)):
    user = get_profile_owner(user_id, current_user)
    updates: Dict[str, Any] = {}

    if payload.name:
        if len(payload.name.strip()) < 2:
            raise HTTPException(status_code=400, detail="Name must be at least 2 characters long")
        updates["name"] = payload.name.strip()

    if payload.email:
        email = payload.email.lower()
        if db["user"].find_one({"email": email, "_id": {"$ne": user["_id"]}}):
            raise HTTPException(status_code=400, detail="Email already in use")
        updates["email"] = email

    if payload.phone:
        if not PHONE_RE.match(payload.phone):
            raise HTTPException(status_code=400, detail="Invalid phone number format")
        updates["phone"] = payload.phone.strip()

    if payload.profile_picture:
        updates["profile_picture"] = payload.profile_picture

    if payload.preferences is not None:
        updates["preferences"] = payload.preferences.model_dump()

    if not updates:
        raise HTTPException(status_code=400, detail="No valid updates provided")

    updates["updated_at"] = datetime.utcnow()
    updated = db["user"].find_one_and_update(
        {"_id": user["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    return {"message": "Profile updated successfully", "user": public_user(updated)}


@app.post("/api/profile/{user_id}/addresses")
async def add_address(user_id: str, payload: AddressIn, current_user: dict = Depends(get_current_user)):
    user = get_profile_owner(user_id, current_user)
    address = AddressSchema(
        street=payload.street.strip(),
        city=payload.city.strip(),
        state=payload.state.strip(),
        country=payload.country.strip(),
        zip_code=payload.zip_code.strip(),
        longitude=payload.longitude,
        latitude=payload.latitude,
        is_default=payload.is_default,
    ).model_dump()
    address["_id"] = ObjectId()

    addresses = user.get("addresses", [])
    # The first address, or one flagged default, becomes the only default
    if address["is_default"] or not addresses:
        for a in addresses:
            a["is_default"] = False
        address["is_default"] = True
    addresses.append(address)

    updated = db["user"].find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {"addresses": addresses, "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"message": "Address added successfully", "address": serialize_doc(address), "user": public_user(updated)}


@app.patch("/api/profile/{user_id}/addresses/{address_id}/default")
async def set_default_address(user_id: str, address_id: str, current_user: dict = Depends(get_current_user)):
    user = get_profile_owner(user_id, current_user)
    aid = parse_object_id(address_id, "address id")
    addresses = user.get("addresses", [])
    if not any(a.get("_id") == aid for a in addresses):
        raise HTTPException(status_code=404, detail="Address not found")
    for a in addresses:
        a["is_default"] = a.get("_id") == aid
    updated = db["user"].find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {"addresses": addresses, "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"message": "Default address updated", "user": public_user(updated)}


@app.delete("/api/profile/{user_id}/addresses/{address_id}")
async def delete_address(user_id: str, address_id: str, current_user: dict = Depends(get_current_user)):
    user = get_profile_owner(user_id, current_user)
    aid = parse_object_id(address_id, "address id")
    addresses = user.get("addresses", [])
    target = next((a for a in addresses if a.get("_id") == aid), None)
    if target is None:
        raise HTTPException(status_code=404, detail="Address not found")

    remaining = [a for a in addresses if a.get("_id") != aid]
    if target.get("is_default") and remaining:
        remaining[0]["is_default"] = True

    db["user"].update_one({"_id": user["_id"]}, {"$set": {"addresses": remaining, "updated_at": datetime.utcnow()}})
    return {"message": "Address deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(asgi_app, host="0.0.0.0", port=port)
