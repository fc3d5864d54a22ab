"""
Database Schemas for the FarmBros marketplace

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class User -> collection "user"
"""
from typing import List, Literal, Optional
from datetime import datetime

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, EmailStr, computed_field, model_validator

Role = Literal["user", "admin"]
Category = Literal["vegetables", "fruits", "grains", "dairy", "livestock", "equipment"]
Unit = Literal["kg", "g", "l", "ml", "piece", "dozen", "box"]
StockChangeType = Literal["added", "removed", "sold", "returned"]
PaymentMethod = Literal["card", "cash", "upi"]
PaymentStatus = Literal["PENDING", "PAID", "FAILED"]
OrderStatus = Literal["PENDING", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED"]
MessageType = Literal["private", "broadcast"]

# Embedded documents

class Preferences(BaseModel):
    notifications: bool = True
    theme: Literal["light", "dark"] = "light"

class Address(BaseModel):
    street: str
    city: str
    state: str
    country: str
    zip_code: str
    longitude: float = Field(..., ge=-180, le=180)
    latitude: float = Field(..., ge=-90, le=90)
    is_default: bool = False

class ShippingAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)

class Review(BaseModel):
    user: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

class StockChange(BaseModel):
    type: StockChangeType
    quantity: int = Field(..., gt=0)
    date: datetime = Field(default_factory=datetime.utcnow)
    reason: Optional[str] = ""

# Collections

class User(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    hashed_password: str
    role: Role = "user"
    phone: Optional[str] = None
    address: Optional[str] = None
    profile_picture: Optional[str] = None
    preferences: Preferences = Field(default_factory=Preferences)
    addresses: List[Address] = Field(default_factory=list)

    @computed_field
    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str
    price: float = Field(..., ge=0)
    category: Category
    stock: int = Field(0, ge=0)
    unit: Unit = "piece"
    min_order_quantity: int = Field(1, ge=1)
    max_order_quantity: int = Field(..., ge=1)
    images: List[str] = Field(default_factory=list)
    rating: float = Field(0, ge=0, le=5)
    reviews: List[Review] = Field(default_factory=list)
    seller: str
    farm_location: str
    organic: bool = False
    harvest_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    quantity_history: List[StockChange] = Field(default_factory=list)

    @model_validator(mode="after")
    def _max_not_below_min(self):
        if self.max_order_quantity < self.min_order_quantity:
            self.max_order_quantity = self.min_order_quantity
        return self

class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)

class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_amount: float = Field(0, ge=0)

class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)

class Order(BaseModel):
    user_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "PENDING"
    order_status: OrderStatus = "PENDING"
    delivery_date: Optional[datetime] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None

    @computed_field
    @property
    def total_amount(self) -> float:
        return round(sum(it.price * it.quantity for it in self.items), 2)

class Message(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    sender_id: ObjectId
    receiver_id: Optional[ObjectId] = None
    message_body: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    is_read: bool = False
    message_type: MessageType = "private"

    @model_validator(mode="before")
    @classmethod
    def _trim_body(cls, data):
        if isinstance(data, dict) and isinstance(data.get("message_body"), str):
            data = {**data, "message_body": data["message_body"].strip()}
        return data


def conversation_id(message: dict) -> str:
    """Stable key for the two participants of a message, independent of direction."""
    if message.get("message_type") == "broadcast" or message.get("receiver_id") is None:
        return "broadcast"
    ids = sorted([str(message["sender_id"]), str(message["receiver_id"])])
    return f"{ids[0]}-{ids[1]}"
