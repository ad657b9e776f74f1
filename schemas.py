"""
Database Schemas for Koseli Mart

Each Pydantic model typically maps to a MongoDB collection named after the
lowercased entity (e.g., Product -> "product"). Some embedded models are used
for nested fields (e.g., product stock, order items, addresses). Request
bodies for the API live here as well.
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import datetime

from order_status import OrderStatus

# ------------ Auth & User ------------
class UserAddress(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None

class NotificationPreferences(BaseModel):
    email: bool = True
    sms: bool = False

class Preferences(BaseModel):
    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)

class UserCreate(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None

class UserLogin(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    salt: str
    role: Literal["user", "admin"] = "user"
    provider: Literal["local", "google", "facebook"] = "local"
    is_active: bool = True
    phone: Optional[str] = None
    address: Optional[UserAddress] = None
    preferences: Preferences = Field(default_factory=Preferences)
    last_login: Optional[datetime] = None

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"

class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2)
    phone: Optional[str] = None
    address: Optional[UserAddress] = None
    preferences: Optional[Preferences] = None

class PasswordChange(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)

class UserStatusUpdate(BaseModel):
    is_active: bool

class UserRoleUpdate(BaseModel):
    role: Literal["user", "admin"]

# ------------ Categories ------------
class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1)
    slug: Optional[str] = Field(None, description="URL-safe identifier; derived from the name when omitted")
    description: Optional[str] = None
    is_active: bool = True

class CategoryUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None

# ------------ Products ------------
class ProductImage(BaseModel):
    url: str
    url_medium: Optional[str] = None
    alt: Optional[str] = None
    is_primary: bool = False

class Stock(BaseModel):
    quantity: int = Field(0, ge=0)
    low_stock_threshold: int = Field(10, ge=0)
    track_inventory: bool = True

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    slug: Optional[str] = None
    description: str
    short_description: Optional[str] = Field(None, max_length=200)
    category: Optional[str] = Field(None, description="Category id")
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    stock: Stock = Field(default_factory=Stock)
    images: List[ProductImage] = []
    tags: List[str] = []
    status: Literal["active", "inactive", "draft"] = "active"
    is_active: bool = True
    is_featured: bool = False

class ProductUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = Field(None, max_length=200)
    category: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    stock: Optional[Stock] = None
    images: Optional[List[ProductImage]] = None
    tags: Optional[List[str]] = None
    status: Optional[Literal["active", "inactive", "draft"]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None

class StockUpdate(BaseModel):
    quantity: int = Field(..., ge=0)
    operation: Literal["set", "add", "subtract"]

# ------------ Cart ------------
class CartAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=100)

class CartQuantityUpdate(BaseModel):
    quantity: int = Field(..., ge=0, le=100)

class GuestCartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1, le=100)

class CartMerge(BaseModel):
    guest_cart_items: List[GuestCartItem]

class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1, le=100)
    price: float = Field(..., ge=0, description="Unit price snapshot taken when the item was added")
    added_at: Optional[datetime] = None

# ------------ Orders ------------
class Address(BaseModel):
    first_name: str
    last_name: str
    street: str
    city: str
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str
    phone: Optional[str] = None

class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float
    name: Optional[str] = Field(None, description="Product name at time of order")
    image: Optional[str] = Field(None, description="Product image at time of order")

class Order(BaseModel):
    order_number: str
    user_id: str
    items: List[OrderItem]
    shipping_address: Address
    billing_address: Address
    subtotal: float = Field(..., ge=0)
    shipping_cost: float = Field(0, ge=0)
    tax_amount: float = Field(0, ge=0)
    discount_amount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    payment_method: Literal["stripe", "cash_on_delivery", "bank_transfer"]
    payment_status: Literal["pending", "paid", "failed", "refunded", "partially_refunded"] = "pending"
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    status: Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "returned"] = "pending"
    inventory_status: Literal["pending", "deducting", "deducted", "released"] = "pending"
    notes: Optional[str] = None

class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    notes: Optional[str] = None

class TrackingUpdate(BaseModel):
    tracking_number: str = Field(..., min_length=1)
    carrier: str = Field(..., min_length=1)
    estimated_delivery: Optional[datetime] = None

# ------------ Checkout ------------
class PaymentIntentCreate(BaseModel):
    shipping_address: Address
    billing_address: Address
    shipping_cost: float = Field(0, ge=0)
    tax_amount: float = Field(0, ge=0)
    notes: Optional[str] = None

class PaymentIntentResponse(BaseModel):
    client_secret: Optional[str]
    order_id: str
    total: float

class PaymentConfirm(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1)
