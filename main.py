import logging
import math
import os
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from fastapi import Body, Depends, FastAPI, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr, Field
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

import addresses
import cart
import dispatch
import notifications
from auth import (
    create_access_token,
    get_current_user,
    get_password_hash,
    require_capability,
    verify_password,
)
from database import create_document, ensure_indexes, get_db, now, parse_id, sanitize
from errors import Conflict, Forbidden, NotFound, ValidationError, install_error_handlers
from permissions import (
    Capability,
    can_manage_deliveries,
    can_manage_products,
    can_place_orders,
    capabilities,
    role_display_name,
)
from schemas import NotificationType, OrderStatus, ProductStatus, Role

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", 5))
FREE_DELIVERY_OVER = 1000
DELIVERY_FEE = 50

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes(get_db())
    except PyMongoError as e:
        logger.warning("Could not ensure indexes at startup: %s", e)
    yield


app = FastAPI(title="AgroMart API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handlers(app)


def low_stock_check(db: Database, product: Dict) -> None:
    stock = product.get("stock_quantity", 0)
    if stock <= LOW_STOCK_THRESHOLD and product.get("seller_id"):
        dispatch.notify_safely(
            dispatch.notify_low_stock, db, product["seller_id"], product.get("name"), str(product["_id"]), stock
        )


# Routes
@app.get("/")
def root():
    return {"message": "AgroMart API is running"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
        collections = db.list_collection_names()
        response["collections"] = collections[:10]
        response["database"] = "✅ Connected & Working"
    except PyMongoError as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"

    return response


# Auth endpoints
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: EmailStr
    phone: Optional[str] = None
    password: str = Field(..., min_length=6)
    role: Role = Role.CUSTOMER


@app.post("/auth/register", status_code=status.HTTP_201_CREATED)
def register(payload: UserCreate, db: Database = Depends(get_db)):
    if payload.role is Role.ADMIN:
        raise ValidationError("Invalid role specified")
    if db["user"].find_one({"email": payload.email}):
        raise Conflict("User with this email already exists")

    doc = {
        "name": payload.name,
        "email": payload.email,
        "phone": payload.phone,
        "password_hash": get_password_hash(payload.password),
        "role": payload.role.value,
        "is_active": True,
    }
    uid = create_document(db, "user", doc)
    dispatch.notify_safely(dispatch.notify_welcome, db, uid, payload.name)
    logger.info("Registered %s user %s", payload.role.value, uid)

    user = sanitize(db["user"].find_one({"_id": parse_id(uid)}))
    return {"message": "User created successfully", "user": user}


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": form_data.username})
    if not user or not verify_password(form_data.password, user.get("password_hash", "")):
        raise ValidationError("Incorrect email or password")
    if not user.get("is_active", True):
        raise Forbidden("Account disabled")

    access_token = create_access_token({"sub": str(user["_id"]), "role": user.get("role")})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/me")
def me(user=Depends(get_current_user)):
    return {
        **user,
        "role_name": role_display_name(user.get("role")),
        "capabilities": sorted(c.value for c in capabilities(user.get("role"))),
    }


# User administration
@app.get("/admin/users")
def admin_users(
    role: Optional[Role] = None,
    is_active: Optional[bool] = None,
    db: Database = Depends(get_db),
    admin=Depends(require_capability(Capability.MANAGE_USERS)),
):
    filt: Dict[str, Any] = {}
    if role:
        filt["role"] = role.value
    if is_active is not None:
        filt["is_active"] = is_active
    return [sanitize(u) for u in db["user"].find(filt).sort("created_at", DESCENDING)]


class UserAdminUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None


@app.patch("/admin/users/{user_id}")
def admin_update_user(
    user_id: str,
    payload: UserAdminUpdate,
    db: Database = Depends(get_db),
    admin=Depends(require_capability(Capability.MANAGE_USERS)),
):
    set_fields = payload.model_dump(exclude_none=True, mode="json")
    if not set_fields:
        raise ValidationError("No valid fields")
    oid = parse_id(user_id, "User")
    result = db["user"].update_one({"_id": oid}, {"$set": {**set_fields, "updated_at": now()}})
    if not result.matched_count:
        raise NotFound("User not found")
    if set_fields.get("is_active") is False:
        logger.info("User %s deactivated by %s", user_id, admin["id"])
    return sanitize(db["user"].find_one({"_id": oid}))


# Notification endpoints
class NotificationIn(BaseModel):
    user_id: Optional[str] = None
    user_ids: Optional[List[str]] = None
    type: Optional[NotificationType] = None
    title: Optional[str] = None
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class AnnouncementIn(BaseModel):
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    data: Optional[Dict[str, Any]] = None


class ReadStateIn(BaseModel):
    is_read: bool


@app.get("/notifications")
def list_notifications(
    page: int = Query(notifications.DEFAULT_PAGE, ge=1),
    limit: int = Query(notifications.DEFAULT_LIMIT, ge=1, le=100),
    filter: str = Query(notifications.FILTER_ALL),
    db: Database = Depends(get_db),
    user=Depends(get_current_user),
):
    return notifications.list_notifications(db, user["id"], page, limit, filter)


@app.post("/notifications", status_code=status.HTTP_201_CREATED)
def create_notification(
    payload: NotificationIn,
    db: Database = Depends(get_db),
    admin=Depends(require_capability(Capability.SEND_NOTIFICATIONS)),
):
    if not payload.title or not payload.message or not payload.type:
        raise ValidationError("Title, message, and type are required")

    if payload.user_ids is not None:
        count = notifications.create_bulk_notifications(
            db, payload.user_ids, payload.type, payload.title, payload.message, payload.data
        )
        return {"message": f"{count} notifications created successfully", "count": count}
    if payload.user_id:
        notification = notifications.create_notification(
            db, payload.user_id, payload.type, payload.title, payload.message, payload.data
        )
        return {"message": "Notification created successfully", "notification": notification}
    raise ValidationError("Either user_id or user_ids array is required")


@app.get("/notifications/unread-count")
def unread_count(db: Database = Depends(get_db), user=Depends(get_current_user)):
    return {"count": notifications.unread_count(db, user["id"])}


@app.put("/notifications/mark-all-read")
def mark_all_read(db: Database = Depends(get_db), user=Depends(get_current_user)):
    count = notifications.mark_all_read(db, user["id"])
    return {"message": f"{count} notifications marked as read", "count": count}


@app.delete("/notifications/clear-all")
def clear_all_notifications(db: Database = Depends(get_db), user=Depends(get_current_user)):
    count = notifications.clear_all(db, user["id"])
    return {"message": f"{count} notifications cleared", "count": count}


@app.get("/notifications/preferences")
def get_preferences(db: Database = Depends(get_db), user=Depends(get_current_user)):
    return {"preferences": notifications.get_preferences(db, user["id"])}


@app.put("/notifications/preferences")
def update_preferences(
    updates: Dict[str, Any] = Body(...),
    db: Database = Depends(get_db),
    user=Depends(get_current_user),
):
    preferences = notifications.update_preferences(db, user["id"], updates)
    return {"message": "Notification preferences updated successfully", "preferences": preferences}


@app.post("/notifications/announcements", status_code=status.HTTP_201_CREATED)
def create_announcement(
    payload: AnnouncementIn,
    db: Database = Depends(get_db),
    admin=Depends(require_capability(Capability.SEND_NOTIFICATIONS)),
):
    count = dispatch.announce(db, payload.title, payload.message, payload.data)
    return {"message": f"Announcement sent to {count} users", "count": count}


@app.get("/notifications/{notification_id}")
def get_notification(notification_id: str, db: Database = Depends(get_db), user=Depends(get_current_user)):
    return {"notification": notifications.get_notification(db, user["id"], notification_id)}


@app.put("/notifications/{notification_id}")
def update_notification(
    notification_id: str,
    payload: ReadStateIn,
    db: Database = Depends(get_db),
    user=Depends(get_current_user),
):
    notification = notifications.set_read_state(db, user["id"], notification_id, payload.is_read)
    return {
        "message": f"Notification marked as {'read' if payload.is_read else 'unread'}",
        "notification": notification,
    }


@app.put("/notifications/{notification_id}/read")
def mark_read(notification_id: str, db: Database = Depends(get_db), user=Depends(get_current_user)):
    notification = notifications.mark_read(db, user["id"], notification_id)
    return {"message": "Notification marked as read", "notification": notification}


@app.put("/notifications/{notification_id}/unread")
def mark_unread(notification_id: str, db: Database = Depends(get_db), user=Depends(get_current_user)):
    notification = notifications.mark_unread(db, user["id"], notification_id)
    return {"message": "Notification marked as unread", "notification": notification}


@app.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, db: Database = Depends(get_db), user=Depends(get_current_user)):
    notifications.delete_notification(db, user["id"], notification_id)
    return {"message": "Notification deleted successfully"}


# Cart endpoints (per-user)
class CartItemIn(BaseModel):
    product_id: str
    quantity: int


class CartQuantityIn(BaseModel):
    quantity: int


@app.get("/cart")
def get_cart(db: Database = Depends(get_db), user=Depends(get_current_user)):
    return cart.get_cart(db, user["id"])


@app.post("/cart", status_code=status.HTTP_201_CREATED)
def add_to_cart(payload: CartItemIn, db: Database = Depends(get_db), user=Depends(get_current_user)):
    cart_item, created = cart.add_item(db, user["id"], payload.product_id, payload.quantity)
    message = "Item added to cart successfully" if created else "Cart updated successfully"
    return {"message": message, "cart_item": cart_item}


@app.delete("/cart")
def clear_cart(db: Database = Depends(get_db), user=Depends(get_current_user)):
    count = cart.clear_cart(db, user["id"])
    return {"message": "Cart cleared successfully", "count": count}


@app.put("/cart/{item_id}")
def update_cart_item(
    item_id: str,
    payload: CartQuantityIn,
    db: Database = Depends(get_db),
    user=Depends(get_current_user),
):
    cart_item = cart.set_quantity(db, user["id"], item_id, payload.quantity)
    return {"message": "Cart item updated successfully", "cart_item": cart_item}


@app.delete("/cart/{item_id}")
def remove_from_cart(item_id: str, db: Database = Depends(get_db), user=Depends(get_current_user)):
    cart.remove_item(db, user["id"], item_id)
    return {"message": "Cart item removed successfully"}


# Address endpoints
class AddressIn(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    is_default: Optional[bool] = None


@app.get("/addresses")
def list_addresses(db: Database = Depends(get_db), user=Depends(get_current_user)):
    return {"addresses": addresses.list_addresses(db, user["id"])}


@app.post("/addresses", status_code=status.HTTP_201_CREATED)
def create_address(payload: AddressIn, db: Database = Depends(get_db), user=Depends(get_current_user)):
    address = addresses.create_address(db, user["id"], payload.model_dump())
    return {"message": "Address created successfully", "address": address}


@app.get("/addresses/{address_id}")
def get_address(address_id: str, db: Database = Depends(get_db), user=Depends(get_current_user)):
    return {"address": addresses.get_address(db, user["id"], address_id)}


@app.put("/addresses/{address_id}")
def update_address(
    address_id: str,
    payload: AddressIn,
    db: Database = Depends(get_db),
    user=Depends(get_current_user),
):
    address = addresses.update_address(db, user["id"], address_id, payload.model_dump(exclude_unset=True))
    return {"message": "Address updated successfully", "address": address}


@app.delete("/addresses/{address_id}")
def delete_address(address_id: str, db: Database = Depends(get_db), user=Depends(get_current_user)):
    addresses.delete_address(db, user["id"], address_id)
    return {"message": "Address deleted successfully"}


@app.post("/addresses/{address_id}/set-default")
def set_default_address(address_id: str, db: Database = Depends(get_db), user=Depends(get_current_user)):
    address, changed = addresses.set_default_address(db, user["id"], address_id)
    message = "Default address updated successfully" if changed else "Address is already default"
    return {"message": message, "address": address}


# Product endpoints
class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category: str
    price: float = Field(..., ge=0)
    unit: str = "kg"
    stock_quantity: int = Field(..., ge=0)
    min_order_quantity: int = Field(1, ge=1)
    max_order_quantity: Optional[int] = Field(None, ge=1)
    is_organic: bool = False
    images: List[str] = Field(default_factory=list)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock_quantity: Optional[int] = Field(None, ge=0)
    min_order_quantity: Optional[int] = Field(None, ge=1)
    max_order_quantity: Optional[int] = Field(None, ge=1)
    status: Optional[ProductStatus] = None
    is_organic: Optional[bool] = None
    images: Optional[List[str]] = None


def _product_or_404(db: Database, product_id: str) -> Dict:
    product = db["product"].find_one({"_id": parse_id(product_id, "Product")})
    if not product:
        raise NotFound("Product not found")
    return product


@app.get("/products")
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    seller_id: Optional[str] = None,
    shop_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
):
    filter_q: Dict[str, Any] = {"status": ProductStatus.ACTIVE.value}
    if q:
        filter_q["name"] = {"$regex": q, "$options": "i"}
    if category:
        filter_q["category"] = category
    if seller_id:
        filter_q["seller_id"] = seller_id
    if shop_id:
        filter_q["shop_id"] = shop_id

    total = db["product"].count_documents(filter_q)
    items = list(
        db["product"].find(filter_q).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    )
    return {
        "products": [sanitize(it) for it in items],
        "pagination": {"page": page, "limit": limit, "total": total, "total_pages": math.ceil(total / limit)},
    }


@app.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return sanitize(_product_or_404(db, product_id))


@app.post("/products", status_code=status.HTTP_201_CREATED)
def create_product(payload: ProductIn, db: Database = Depends(get_db), user=Depends(get_current_user)):
    if not can_manage_products(user.get("role")):
        raise Forbidden("Not allowed to manage products")
    if payload.max_order_quantity and payload.max_order_quantity < payload.min_order_quantity:
        raise ValidationError("Maximum order quantity cannot be below the minimum")

    shop = db["shop"].find_one({"owner_id": user["id"]})
    doc = {
        **payload.model_dump(),
        "status": ProductStatus.ACTIVE.value,
        "seller_id": user["id"],
        "shop_id": str(shop["_id"]) if shop else None,
    }
    pid = create_document(db, "product", doc)

    # Customers who bought from this seller before hear about new products
    previous_customers = db["order"].distinct("customer_id", {"items.seller_id": user["id"]})
    if previous_customers:
        shop_name = shop["name"] if shop else user.get("name", "AgroMart")
        dispatch.notify_safely(dispatch.notify_new_product, db, previous_customers, payload.name, pid, shop_name)
    return {"id": pid, **sanitize(doc)}


@app.put("/products/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    db: Database = Depends(get_db),
    user=Depends(get_current_user),
):
    product = _product_or_404(db, product_id)
    is_admin = Capability.MANAGE_PRODUCTS in capabilities(user.get("role"))
    if not is_admin and product.get("seller_id") != user["id"]:
        raise Forbidden("Not allowed to modify this product")

    changes = payload.model_dump(exclude_none=True, mode="json")
    if not changes:
        raise ValidationError("No valid fields")
    merged = {**product, **changes}
    if merged.get("max_order_quantity") and merged["max_order_quantity"] < (merged.get("min_order_quantity") or 1):
        raise ValidationError("Maximum order quantity cannot be below the minimum")
    db["product"].update_one({"_id": product["_id"]}, {"$set": {**changes, "updated_at": now()}})
    product = db["product"].find_one({"_id": product["_id"]})
    if "stock_quantity" in changes:
        low_stock_check(db, product)
    return sanitize(product)


# Shop endpoints
class ShopIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    address: Optional[str] = None
    address_id: Optional[str] = None


class ShopUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    address: Optional[str] = None
    is_verified: Optional[bool] = None


def _shop_or_404(db: Database, shop_id: str) -> Dict:
    shop = db["shop"].find_one({"_id": parse_id(shop_id, "Shop")})
    if not shop:
        raise NotFound("Shop not found")
    return shop


@app.get("/shops")
def list_shops(verified: Optional[bool] = None, db: Database = Depends(get_db)):
    filt = {} if verified is None else {"is_verified": verified}
    return [sanitize(s) for s in db["shop"].find(filt).sort("created_at", DESCENDING)]


@app.get("/shops/{shop_id}")
def get_shop(shop_id: str, db: Database = Depends(get_db)):
    return sanitize(_shop_or_404(db, shop_id))


@app.post("/shops", status_code=status.HTTP_201_CREATED)
def create_shop(
    payload: ShopIn,
    db: Database = Depends(get_db),
    user=Depends(require_capability(Capability.MANAGE_OWN_SHOP)),
):
    if db["shop"].find_one({"owner_id": user["id"]}):
        raise Conflict("You already own a shop")
    if payload.address_id:
        addresses.get_address(db, user["id"], payload.address_id)

    doc = {
        **payload.model_dump(),
        "owner_id": user["id"],
        "is_verified": False,
        "average_rating": 0.0,
        "review_count": 0,
    }
    sid = create_document(db, "shop", doc)
    return {"id": sid, **sanitize(doc)}


@app.put("/shops/{shop_id}")
def update_shop(
    shop_id: str,
    payload: ShopUpdate,
    db: Database = Depends(get_db),
    user=Depends(get_current_user),
):
    shop = _shop_or_404(db, shop_id)
    is_admin = Capability.MANAGE_SHOPS in capabilities(user.get("role"))
    if not is_admin and shop.get("owner_id") != user["id"]:
        raise Forbidden()
    changes = payload.model_dump(exclude_none=True)
    if "is_verified" in changes and not is_admin:
        raise Forbidden("Only administrators can verify shops")
    if not changes:
        raise ValidationError("No valid fields")
    db["shop"].update_one({"_id": shop["_id"]}, {"$set": {**changes, "updated_at": now()}})
    return sanitize(db["shop"].find_one({"_id": shop["_id"]}))


# Checkout / Orders
class OrderLineIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderIn(BaseModel):
    shipping_address_id: str
    payment_method: str = Field(..., min_length=1)
    items: List[OrderLineIn] = Field(..., min_length=1)


class OrderStatusIn(BaseModel):
    status: OrderStatus
    rider_id: Optional[str] = None


@app.get("/orders")
def list_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: Database = Depends(get_db),
    user=Depends(get_current_user),
):
    role = user.get("role")
    filt: Dict[str, Any] = {}
    if role == Role.ADMIN.value:
        pass
    elif role in (Role.SELLER.value, Role.SHOP_OWNER.value):
        filt["items.seller_id"] = user["id"]
    elif role == Role.RIDER.value:
        filt["rider_id"] = user["id"]
    else:
        filt["customer_id"] = user["id"]
    if status_filter:
        filt["status"] = status_filter.value

    total = db["order"].count_documents(filt)
    items = list(db["order"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit))
    return {
        "orders": [sanitize(it) for it in items],
        "pagination": {"page": page, "limit": limit, "total": total, "total_pages": math.ceil(total / limit)},
    }


@app.post("/orders", status_code=status.HTTP_201_CREATED)
def create_order(
    payload: OrderIn,
    db: Database = Depends(get_db),
    user=Depends(get_current_user),
):
    if not can_place_orders(user.get("role")):
        raise Forbidden("Only customers can place orders")
    if not db["address"].find_one({"_id": parse_id(payload.shipping_address_id, "Address"), "user_id": user["id"]}):
        raise ValidationError("Invalid shipping address")

    # Repeated lines for one product are checked and reserved as one quantity
    quantities: Dict[str, int] = {}
    for it in payload.items:
        quantities[it.product_id] = quantities.get(it.product_id, 0) + it.quantity

    subtotal = 0.0
    order_items = []
    products = []
    for product_id, quantity in quantities.items():
        product = db["product"].find_one({"_id": parse_id(product_id, "Product")})
        if not product:
            raise ValidationError(f"Product {product_id} not found")
        try:
            cart.check_quantity(product, quantity)
        except ValidationError as e:
            raise ValidationError(f"{product['name']}: {e.detail}")
        price = float(product.get("price", 0))
        subtotal += price * quantity
        order_items.append({
            "product_id": product_id,
            "seller_id": product.get("seller_id"),
            "quantity": quantity,
            "unit_price": price,
            "total_price": round(price * quantity, 2),
        })
        products.append(product)

    cart.reserve_stock(db, {p["_id"]: it["quantity"] for p, it in zip(products, order_items)})

    delivery_fee = 0 if subtotal > FREE_DELIVERY_OVER else DELIVERY_FEE
    order_number = f"ORD-{int(time.time() * 1000)}-{db['order'].count_documents({}) + 1:04d}"
    order_doc = {
        "order_number": order_number,
        "customer_id": user["id"],
        "rider_id": None,
        "status": OrderStatus.PENDING.value,
        "items": order_items,
        "subtotal": round(subtotal, 2),
        "delivery_fee": delivery_fee,
        "total": round(subtotal + delivery_fee, 2),
        "payment_method": payload.payment_method,
        "payment_status": "PENDING",
        "delivery_address_id": payload.shipping_address_id,
    }
    order_id = create_document(db, "order", order_doc)

    for product in products:
        low_stock_check(db, db["product"].find_one({"_id": product["_id"]}))

    # Clear ordered products from the cart
    db["cartitem"].delete_many({"user_id": user["id"], "product_id": {"$in": [it["product_id"] for it in order_items]}})

    dispatch.notify_safely(
        dispatch.notify_order_status, db, user["id"], order_id, order_number, OrderStatus.PENDING.value
    )
    logger.info("Order %s placed by %s", order_number, user["id"])
    return {"message": "Order created successfully", "order": {"id": order_id, **sanitize(order_doc)}}


@app.put("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: OrderStatusIn,
    db: Database = Depends(get_db),
    user=Depends(get_current_user),
):
    order = db["order"].find_one({"_id": parse_id(order_id, "Order")})
    if not order:
        raise NotFound("Order not found")

    caps = capabilities(user.get("role"))
    uid = user["id"]
    if Capability.MANAGE_ORDERS in caps:
        pass
    elif can_manage_deliveries(user.get("role")) and order.get("rider_id") == uid:
        if payload.status not in (OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            raise Forbidden("Riders can only mark orders shipped or delivered")
    elif any(item.get("seller_id") == uid for item in order.get("items", [])):
        if payload.status is OrderStatus.DELIVERED:
            raise Forbidden("Only the rider or an administrator can mark orders delivered")
    elif order.get("customer_id") == uid:
        if payload.status is not OrderStatus.CANCELLED or order.get("status") != OrderStatus.PENDING.value:
            raise Forbidden("Customers can only cancel pending orders")
    else:
        raise NotFound("Order not found")

    changes: Dict[str, Any] = {"status": payload.status.value, "updated_at": now()}
    if payload.rider_id:
        if Capability.MANAGE_ORDERS not in caps:
            raise Forbidden("Only administrators can assign riders")
        rider = db["user"].find_one({"_id": parse_id(payload.rider_id, "Rider"), "role": Role.RIDER.value})
        if not rider:
            raise ValidationError("rider_id must reference a rider")
        changes["rider_id"] = payload.rider_id
    db["order"].update_one({"_id": order["_id"]}, {"$set": changes})

    if order.get("status") != payload.status.value:
        dispatch.notify_safely(
            dispatch.notify_order_status,
            db,
            order["customer_id"],
            order_id,
            order["order_number"],
            payload.status.value,
        )
    return {"message": "Order status updated", "order": sanitize(db["order"].find_one({"_id": order["_id"]}))}


# Reviews
class ReviewIn(BaseModel):
    order_id: str
    product_id: Optional[str] = None
    shop_id: Optional[str] = None
    rider_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = None


REVIEW_TARGETS = ("product_id", "shop_id", "rider_id")


def recalc_rating(db: Database, field: str, target_id: str) -> None:
    collection = {"product_id": "product", "shop_id": "shop"}.get(field)
    if not collection:
        return
    agg = list(db["review"].aggregate([
        {"$match": {field: target_id}},
        {"$group": {"_id": f"${field}", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}}
    ]))
    avg = round(float(agg[0]["avg"]), 2) if agg else 0.0
    cnt = int(agg[0]["count"]) if agg else 0
    db[collection].update_one(
        {"_id": parse_id(target_id)},
        {"$set": {"average_rating": avg, "review_count": cnt, "updated_at": now()}},
    )


def _review_target(review: Dict):
    for field in REVIEW_TARGETS:
        if review.get(field):
            return field, review[field]
    return None, None


@app.get("/reviews/products/{product_id}")
def product_reviews(product_id: str, db: Database = Depends(get_db)):
    return [sanitize(r) for r in db["review"].find({"product_id": product_id}).sort("created_at", DESCENDING)]


@app.get("/reviews/shops/{shop_id}")
def shop_reviews(shop_id: str, db: Database = Depends(get_db)):
    return [sanitize(r) for r in db["review"].find({"shop_id": shop_id}).sort("created_at", DESCENDING)]


@app.post("/reviews", status_code=status.HTTP_201_CREATED)
def create_review(
    payload: ReviewIn,
    db: Database = Depends(get_db),
    user=Depends(require_capability(Capability.WRITE_REVIEWS)),
):
    targets = [f for f in REVIEW_TARGETS if getattr(payload, f)]
    if len(targets) != 1:
        raise ValidationError("Must specify exactly one of product_id, shop_id, or rider_id to review")
    field = targets[0]
    target_id = getattr(payload, field)

    order = db["order"].find_one({"_id": parse_id(payload.order_id, "Order"), "customer_id": user["id"]})
    if not order:
        raise NotFound("Order not found or doesn't belong to you")
    if field == "product_id" and not any(i["product_id"] == target_id for i in order.get("items", [])):
        raise ValidationError("Product is not part of this order")
    if field == "rider_id" and order.get("rider_id") != target_id:
        raise ValidationError("Rider did not deliver this order")
    if field == "shop_id":
        _shop_or_404(db, target_id)

    if db["review"].find_one({"customer_id": user["id"], "order_id": payload.order_id, field: target_id}):
        raise ValidationError("You have already reviewed this item")

    doc = {**payload.model_dump(), "customer_id": user["id"]}
    rid = create_document(db, "review", doc)
    recalc_rating(db, field, target_id)
    return {"message": "Review created successfully", "review": {"id": rid, **sanitize(doc)}}


@app.put("/reviews/{review_id}")
def update_review(
    review_id: str,
    payload: ReviewUpdate,
    db: Database = Depends(get_db),
    user=Depends(get_current_user),
):
    review = db["review"].find_one({"_id": parse_id(review_id, "Review"), "customer_id": user["id"]})
    if not review:
        raise NotFound("Review not found or you don't have permission to edit it")
    changes = payload.model_dump(exclude_none=True)
    if changes:
        db["review"].update_one({"_id": review["_id"]}, {"$set": {**changes, "updated_at": now()}})
        recalc_rating(db, *_review_target(review))
    return {"message": "Review updated successfully", "review": sanitize(db["review"].find_one({"_id": review["_id"]}))}


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, db: Database = Depends(get_db), user=Depends(get_current_user)):
    review = db["review"].find_one({"_id": parse_id(review_id, "Review")})
    if not review:
        raise NotFound("Review not found")
    moderator = Capability.MODERATE_CONTENT in capabilities(user.get("role"))
    if review.get("customer_id") != user["id"] and not moderator:
        raise Forbidden("You don't have permission to delete this review")
    db["review"].delete_one({"_id": review["_id"]})
    recalc_rating(db, *_review_target(review))
    return {"message": "Review deleted successfully"}


# Review moderation (admin)
MODERATION_FILTERS = ("all", "flagged", "recent")
FLAGGED_RATING = 2
RECENT_DAYS = 7


class ModerationIn(BaseModel):
    action: Optional[str] = None
    review_ids: Optional[List[str]] = None


def _moderation_query(filter_by: str) -> Dict[str, Any]:
    if filter_by == "flagged":
        return {"rating": {"$lte": FLAGGED_RATING}}
    if filter_by == "recent":
        return {"created_at": {"$gte": now() - timedelta(days=RECENT_DAYS)}}
    return {}


@app.get("/reviews/moderation")
def moderation_queue(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    filter: str = Query("all"),
    db: Database = Depends(get_db),
    admin=Depends(require_capability(Capability.MODERATE_CONTENT)),
):
    if filter not in MODERATION_FILTERS:
        raise ValidationError(f"Unknown filter: {filter}")
    where = _moderation_query(filter)
    total = db["review"].count_documents(where)
    items = list(
        db["review"].find(where)
        .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    total_pages = math.ceil(total / limit)
    return {
        "reviews": [sanitize(r) for r in items],
        "statistics": {
            "total_reviews": db["review"].count_documents({}),
            "flagged_reviews": db["review"].count_documents(_moderation_query("flagged")),
            "recent_reviews": db["review"].count_documents(_moderation_query("recent")),
        },
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


@app.post("/reviews/moderation")
def moderate_reviews(
    payload: ModerationIn,
    db: Database = Depends(get_db),
    admin=Depends(require_capability(Capability.MODERATE_CONTENT)),
):
    if not payload.action or payload.review_ids is None:
        raise ValidationError("Action and review_ids array are required")
    if payload.action != "delete":
        raise ValidationError("Invalid action. Supported actions: delete")

    ids = [ObjectId(rid) for rid in payload.review_ids if ObjectId.is_valid(rid)]
    reviews = list(db["review"].find({"_id": {"$in": ids}}))
    result = db["review"].delete_many({"_id": {"$in": [r["_id"] for r in reviews]}})
    for target in {_review_target(r) for r in reviews}:
        recalc_rating(db, *target)
    logger.info("Moderator %s deleted %d reviews", admin["id"], result.deleted_count)
    return {"message": f"Successfully deleted {result.deleted_count} reviews", "count": result.deleted_count}


# Simple seed endpoint to create a demo seller and produce (admin only)
@app.post("/seed")
def seed(db: Database = Depends(get_db), admin=Depends(require_capability(Capability.MANAGE_PRODUCTS))):
    seller = db["user"].find_one({"email": "farmer@agromart.com.bd"})
    if not seller:
        create_document(db, "user", {
            "name": "Demo Farmer",
            "email": "farmer@agromart.com.bd",
            "password_hash": get_password_hash("farmer123"),
            "role": Role.SELLER.value,
            "is_active": True,
        })
        seller = db["user"].find_one({"email": "farmer@agromart.com.bd"})
    seller_id = str(seller["_id"])

    sample_products = [
        {"name": "Miniket Rice", "category": "grains", "unit": "kg", "price": 68, "stock_quantity": 500, "min_order_quantity": 5, "max_order_quantity": 100},
        {"name": "Organic Tomatoes", "category": "crops", "unit": "kg", "price": 80, "stock_quantity": 120, "is_organic": True},
        {"name": "Fresh Cow Milk", "category": "dairy", "unit": "litre", "price": 90, "stock_quantity": 60, "max_order_quantity": 10},
        {"name": "Hilsa Fish", "category": "fish", "unit": "kg", "price": 1200, "stock_quantity": 25, "max_order_quantity": 5},
        {"name": "Himsagar Mango", "category": "fruits", "unit": "kg", "price": 150, "stock_quantity": 300, "min_order_quantity": 2},
        {"name": "Deshi Chicken", "category": "meat", "unit": "piece", "price": 550, "stock_quantity": 40},
    ]

    created = 0
    for p in sample_products:
        if not db["product"].find_one({"name": p["name"], "seller_id": seller_id}):
            doc = {
                "description": None,
                "min_order_quantity": 1,
                "max_order_quantity": None,
                "is_organic": False,
                "images": [],
                **p,
                "status": ProductStatus.ACTIVE.value,
                "seller_id": seller_id,
                "shop_id": None,
            }
            create_document(db, "product", doc)
            created += 1

    return {"status": "ok", "products_created": created}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
