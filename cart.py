"""
Cart synchronization

Server-side cart lines per (user, product). Every mutation re-checks the
quantity against the product as it is now: it must be ACTIVE, and the
quantity must respect min order, max order (or stock when no max is set) and
live stock.
"""
import logging
from typing import Dict, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import now, parse_id, sanitize
from errors import Forbidden, NotFound, ValidationError
from schemas import ProductStatus

logger = logging.getLogger(__name__)


def max_quantity(product: Dict) -> int:
    return product.get("max_order_quantity") or product.get("stock_quantity", 0)


def check_quantity(product: Dict, quantity: int) -> None:
    """Raise ValidationError naming the first bound `quantity` violates."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Valid quantity is required")
    if product.get("status") != ProductStatus.ACTIVE.value:
        raise ValidationError("Product is not available")

    min_qty = product.get("min_order_quantity") or 1
    if quantity < min_qty:
        raise ValidationError(f"Minimum order quantity is {min_qty}")

    max_qty = product.get("max_order_quantity")
    if max_qty and quantity > max_qty:
        raise ValidationError(f"Maximum order quantity is {max_qty}")

    stock = product.get("stock_quantity", 0)
    if quantity > stock:
        raise ValidationError(f"Only {stock} items available in stock")


def _product(db: Database, product_id: str) -> Optional[Dict]:
    try:
        return db["product"].find_one({"_id": ObjectId(product_id)})
    except (InvalidId, TypeError):
        return None


def _owned_line(db: Database, user_id: str, cart_item_id: str) -> Dict:
    line = db["cartitem"].find_one({"_id": parse_id(cart_item_id, "Cart item")})
    if not line:
        raise NotFound("Cart item not found")
    if line["user_id"] != user_id:
        raise Forbidden("Unauthorized to modify this cart item")
    return line


def _with_product(line: Dict, product: Dict) -> Dict:
    out = sanitize(line)
    out["product"] = {
        "id": str(product["_id"]),
        "name": product.get("name"),
        "price": product.get("price"),
        "unit": product.get("unit"),
        "images": product.get("images", []),
    }
    return out


def add_item(db: Database, user_id: str, product_id: str, quantity: int) -> Tuple[Dict, bool]:
    """Add `quantity` of a product; returns (cart_item, created)."""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Product ID and valid quantity are required")
    product = _product(db, product_id)
    if not product:
        raise NotFound("Product not found")
    if product.get("seller_id") == user_id:
        raise ValidationError("Cannot add your own products to cart")

    existing = db["cartitem"].find_one({"user_id": user_id, "product_id": product_id})
    new_quantity = quantity + (existing["quantity"] if existing else 0)
    check_quantity(product, new_quantity)

    stamp = now()
    if existing:
        db["cartitem"].update_one(
            {"_id": existing["_id"]}, {"$set": {"quantity": new_quantity, "updated_at": stamp}}
        )
        existing.update(quantity=new_quantity, updated_at=stamp)
        return _with_product(existing, product), False

    doc = {
        "user_id": user_id,
        "product_id": product_id,
        "quantity": quantity,
        "created_at": stamp,
        "updated_at": stamp,
    }
    try:
        res = db["cartitem"].insert_one(doc)
    except DuplicateKeyError:
        # A concurrent add created the line first; add to it instead
        logger.info("Cart line for user %s and product %s already exists, incrementing", user_id, product_id)
        return add_item(db, user_id, product_id, quantity)
    doc["_id"] = res.inserted_id
    return _with_product(doc, product), True


def set_quantity(db: Database, user_id: str, cart_item_id: str, quantity: int) -> Dict:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Valid quantity is required")
    line = _owned_line(db, user_id, cart_item_id)
    product = _product(db, line["product_id"])
    if not product:
        raise ValidationError("Product is no longer available")
    check_quantity(product, quantity)

    stamp = now()
    db["cartitem"].update_one({"_id": line["_id"]}, {"$set": {"quantity": quantity, "updated_at": stamp}})
    line.update(quantity=quantity, updated_at=stamp)
    return _with_product(line, product)


def remove_item(db: Database, user_id: str, cart_item_id: str) -> None:
    line = _owned_line(db, user_id, cart_item_id)
    db["cartitem"].delete_one({"_id": line["_id"]})


def get_cart(db: Database, user_id: str) -> Dict:
    lines = list(db["cartitem"].find({"user_id": user_id}).sort([("created_at", DESCENDING), ("_id", DESCENDING)]))
    products = {
        str(p["_id"]): p
        for p in db["product"].find({"_id": {"$in": [ObjectId(line["product_id"]) for line in lines]}})
    }

    items = []
    total_items = 0
    total_price = 0.0
    for line in lines:
        product = products.get(line["product_id"])
        if not product:
            continue
        images = product.get("images") or []
        items.append({
            "id": str(line["_id"]),
            "product_id": line["product_id"],
            "name": product.get("name"),
            "price": product.get("price"),
            "unit": product.get("unit"),
            "quantity": line["quantity"],
            "min_quantity": product.get("min_order_quantity") or 1,
            "max_quantity": max_quantity(product),
            "stock_quantity": product.get("stock_quantity", 0),
            "image": images[0] if images else "",
            "seller_id": product.get("seller_id"),
            "shop_id": product.get("shop_id"),
            "is_organic": product.get("is_organic", False),
        })
        total_items += line["quantity"]
        total_price += float(product.get("price", 0)) * line["quantity"]

    return {"cart_items": items, "total_items": total_items, "total_price": round(total_price, 2)}


def clear_cart(db: Database, user_id: str) -> int:
    result = db["cartitem"].delete_many({"user_id": user_id})
    logger.info("Cleared %d cart lines for user %s", result.deleted_count, user_id)
    return result.deleted_count


def reserve_stock(db: Database, quantities: Dict[ObjectId, int]) -> None:
    """Take each quantity off its product's stock, all or nothing.

    The decrement only matches while enough stock is left, so two checkouts
    racing for the last items cannot push stock below zero.
    """
    taken = []
    for product_id, quantity in quantities.items():
        result = db["product"].update_one(
            {"_id": product_id, "stock_quantity": {"$gte": quantity}},
            {"$inc": {"stock_quantity": -quantity}, "$set": {"updated_at": now()}},
        )
        if not result.matched_count:
            for done_id, done_quantity in taken:
                db["product"].update_one({"_id": done_id}, {"$inc": {"stock_quantity": done_quantity}})
            product = db["product"].find_one({"_id": product_id}) or {}
            raise ValidationError(
                f"{product.get('name', 'Product')}: Only {product.get('stock_quantity', 0)} items available in stock"
            )
        taken.append((product_id, quantity))
