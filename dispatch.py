"""
Notification dispatch helpers

Turn a domain event into (type, title, message, data) and hand it to the
notification store. Helpers raise on failure; request handlers call them
through `notify_safely` so a failed notification never undoes the action that
triggered it.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from pymongo.database import Database

import notifications
from database import parse_id
from schemas import NotificationType, OrderStatus

logger = logging.getLogger(__name__)

ORDER_STATUS_MESSAGES = {
    OrderStatus.PENDING.value: "Your order has been placed successfully",
    OrderStatus.CONFIRMED.value: "Your order has been confirmed by the seller",
    OrderStatus.PROCESSING.value: "Your order is being prepared for delivery",
    OrderStatus.SHIPPED.value: "Your order has been shipped",
    OrderStatus.DELIVERED.value: "Your order has been delivered successfully",
    OrderStatus.CANCELLED.value: "Your order has been cancelled",
}

ORDER_STATUS_TYPES = {
    OrderStatus.PENDING.value: NotificationType.ORDER_PLACED,
    OrderStatus.DELIVERED.value: NotificationType.ORDER_DELIVERED,
}


def _user(db: Database, user_id: str) -> Optional[Dict]:
    return db["user"].find_one({"_id": parse_id(user_id, "User")}, {"notification_preferences": 1})


def order_status_message(status: str) -> str:
    return ORDER_STATUS_MESSAGES.get(status, f"Your order status has been updated to {status}")


def notify_order_status(db: Database, user_id: str, order_id: str, order_number: str, status: str):
    if not notifications.accepts(_user(db, user_id), "order_updates"):
        return None
    return notifications.create_notification(
        db,
        user_id,
        ORDER_STATUS_TYPES.get(status, NotificationType.ORDER_CONFIRMED),
        f"Order #{order_number} {status}",
        order_status_message(status),
        {"order_id": order_id, "order_number": order_number, "status": status},
    )


def notify_new_product(db: Database, user_ids: List[str], product_name: str, product_id: str, shop_name: str) -> int:
    recipients = notifications.recipients_accepting(db, list(user_ids), "new_product_notifications")
    return notifications.create_bulk_notifications(
        db,
        recipients,
        NotificationType.NEW_PRODUCT,
        "New Product Available",
        f"{product_name} is now available at {shop_name}",
        {"product_id": product_id, "product_name": product_name, "shop_name": shop_name},
    )


def notify_low_stock(db: Database, seller_id: str, product_name: str, product_id: str, current_stock: int):
    if not notifications.accepts(_user(db, seller_id), "product_alerts"):
        return None
    return notifications.create_notification(
        db,
        seller_id,
        NotificationType.STOCK_LOW,
        "Low Stock Alert",
        f"{product_name} is running low with only {current_stock} items left",
        {"product_id": product_id, "product_name": product_name, "current_stock": current_stock},
    )


def notify_welcome(db: Database, user_id: str, user_name: str):
    return notifications.create_notification(
        db,
        user_id,
        NotificationType.SYSTEM_ANNOUNCEMENT,
        "Welcome to AgroMart!",
        f"Hi {user_name}! Welcome to AgroMart, your agricultural marketplace. "
        "Start exploring fresh products from local farmers and producers.",
        {"is_welcome": True},
    )


def announce(db: Database, title: str, message: str, data: Optional[Dict[str, Any]] = None) -> int:
    """Send a system announcement to every active user who has not opted out."""
    user_ids = [
        str(u["_id"])
        for u in db["user"].find(
            {"is_active": {"$ne": False}, "notification_preferences.system_announcements": {"$ne": False}},
            {"_id": 1},
        )
    ]
    return notifications.create_bulk_notifications(
        db, user_ids, NotificationType.SYSTEM_ANNOUNCEMENT, title, message, data
    )


def notify_safely(helper: Callable, *args, **kwargs):
    try:
        return helper(*args, **kwargs)
    except Exception:
        logger.exception("Notification %s failed", getattr(helper, "__name__", helper))
        return None
