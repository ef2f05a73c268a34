"""
Database Schemas for AgroMart

Each Pydantic model corresponds to a MongoDB collection. Collection name is the
lowercase class name (CartItem -> "cartitem"). References to other documents
are stored as the string form of their ObjectId.
"""
from enum import Enum
from typing import Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Role(str, Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"
    SHOP_OWNER = "shop_owner"
    SELLER = "seller"
    RIDER = "rider"


class ProductStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    OUT_OF_STOCK = "OUT_OF_STOCK"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class NotificationType(str, Enum):
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_CONFIRMED = "ORDER_CONFIRMED"
    ORDER_DELIVERED = "ORDER_DELIVERED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    NEW_PRODUCT = "NEW_PRODUCT"
    STOCK_LOW = "STOCK_LOW"
    SYSTEM_ANNOUNCEMENT = "SYSTEM_ANNOUNCEMENT"


class User(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    phone: Optional[str] = None
    password_hash: str = Field(..., description="BCrypt hash of the password")
    role: Role = Role.CUSTOMER
    is_active: bool = True
    notification_preferences: Optional[Dict[str, bool]] = None


class Address(BaseModel):
    user_id: str
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address_line1: str = Field(..., min_length=1)
    address_line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = "Bangladesh"
    is_default: bool = False


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    category: str = Field(..., description="Category slug, e.g. crops, dairy, fish")
    price: float = Field(..., ge=0)
    unit: str = "kg"
    stock_quantity: int = Field(..., ge=0)
    min_order_quantity: int = Field(1, ge=1)
    max_order_quantity: Optional[int] = Field(None, ge=1, description="None means bounded by stock only")
    status: ProductStatus = ProductStatus.ACTIVE
    seller_id: str
    shop_id: Optional[str] = None
    is_organic: bool = False
    images: List[str] = Field(default_factory=list)


class CartItem(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(..., ge=1)


class Notification(BaseModel):
    user_id: str
    type: NotificationType
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    data: Optional[dict] = None
    is_read: bool = False


class OrderItem(BaseModel):
    product_id: str
    seller_id: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)


class Order(BaseModel):
    order_number: str
    customer_id: str
    rider_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    delivery_fee: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    payment_method: str
    delivery_address_id: str


class Review(BaseModel):
    customer_id: str
    order_id: str
    product_id: Optional[str] = None
    shop_id: Optional[str] = None
    rider_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class Shop(BaseModel):
    owner_id: str = Field(..., description="One shop per owner")
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    address: Optional[str] = None
    is_verified: bool = False
    average_rating: float = Field(0.0, ge=0, le=5)
    review_count: int = Field(0, ge=0)


# Notification payloads: one variant per notification type.

class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class OrderEventData(_Payload):
    order_id: str
    order_number: str
    status: str


class NewProductData(_Payload):
    product_id: str
    product_name: str
    shop_name: str


class StockLowData(_Payload):
    product_id: str
    product_name: str
    current_stock: int = Field(..., ge=0)


class AnnouncementData(_Payload):
    is_welcome: bool = False
    link: Optional[str] = None


PAYLOAD_MODELS: Dict[NotificationType, Type[_Payload]] = {
    NotificationType.ORDER_PLACED: OrderEventData,
    NotificationType.ORDER_CONFIRMED: OrderEventData,
    NotificationType.ORDER_DELIVERED: OrderEventData,
    NotificationType.PAYMENT_RECEIVED: OrderEventData,
    NotificationType.NEW_PRODUCT: NewProductData,
    NotificationType.STOCK_LOW: StockLowData,
    NotificationType.SYSTEM_ANNOUNCEMENT: AnnouncementData,
}
