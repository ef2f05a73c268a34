"""
Addresses and the default-address flag

A user has at most one address with `is_default` set. The partial unique
index `one_default_address_per_user` enforces that in the store. Switching
the default unsets the old default and sets the new one as two ordered writes
in one transaction. A concurrent switch that claims the default between those
writes makes ours fail on the index; we retry so the last request wins.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING
from pymongo.client_session import ClientSession
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import now, parse_id, run_atomically, sanitize
from errors import Conflict, NotFound, ValidationError

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("name", "phone", "address_line1", "city", "state", "postal_code")
EDITABLE_FIELDS = REQUIRED_FIELDS + ("address_line2", "country")
DEFAULT_COUNTRY = "Bangladesh"
DEFAULT_SWITCH_ATTEMPTS = 3


def _owned(db: Database, user_id: str, address_id: str) -> Dict:
    doc = db["address"].find_one({"_id": parse_id(address_id, "Address"), "user_id": user_id})
    if not doc:
        raise NotFound("Address not found")
    return doc


def _make_exclusive_default(db: Database, user_id: str, target: ObjectId) -> None:
    def switch(session: Optional[ClientSession]) -> None:
        stamp = now()
        db["address"].update_many(
            {"user_id": user_id, "is_default": True, "_id": {"$ne": target}},
            {"$set": {"is_default": False, "updated_at": stamp}},
            session=session,
        )
        db["address"].update_one(
            {"_id": target, "user_id": user_id},
            {"$set": {"is_default": True, "updated_at": stamp}},
            session=session,
        )

    for attempt in range(1, DEFAULT_SWITCH_ATTEMPTS + 1):
        try:
            run_atomically(db, switch)
        except DuplicateKeyError:
            logger.warning("Default address switch for user %s lost a race (attempt %d)", user_id, attempt)
            continue
        logger.info("Default address of user %s is now %s", user_id, target)
        return
    raise Conflict("Default address is being changed by another request")


def list_addresses(db: Database, user_id: str) -> List[Dict]:
    cursor = db["address"].find({"user_id": user_id}).sort(
        [("is_default", DESCENDING), ("created_at", DESCENDING), ("_id", DESCENDING)]
    )
    return [sanitize(a) for a in cursor]


def get_address(db: Database, user_id: str, address_id: str) -> Dict:
    return sanitize(_owned(db, user_id, address_id))


def create_address(db: Database, user_id: str, fields: Dict[str, Any]) -> Dict:
    if any(not fields.get(name) for name in REQUIRED_FIELDS):
        raise ValidationError("Name, phone, address line 1, city, state, and postal code are required")

    stamp = now()
    doc = {name: fields.get(name) for name in EDITABLE_FIELDS}
    doc.update(
        user_id=user_id,
        country=fields.get("country") or DEFAULT_COUNTRY,
        is_default=False,
        created_at=stamp,
        updated_at=stamp,
    )
    res = db["address"].insert_one(doc)
    if fields.get("is_default"):
        _make_exclusive_default(db, user_id, res.inserted_id)
    return sanitize(db["address"].find_one({"_id": res.inserted_id}))


def update_address(db: Database, user_id: str, address_id: str, fields: Dict[str, Any]) -> Dict:
    existing = _owned(db, user_id, address_id)
    changes = {k: v for k, v in fields.items() if k in EDITABLE_FIELDS and v is not None}
    for name in REQUIRED_FIELDS:
        if name in changes and not changes[name]:
            raise ValidationError(f"{name} cannot be empty")

    if changes:
        changes["updated_at"] = now()
        db["address"].update_one({"_id": existing["_id"]}, {"$set": changes})

    make_default = fields.get("is_default")
    if make_default and not existing.get("is_default"):
        _make_exclusive_default(db, user_id, existing["_id"])
    elif make_default is False and existing.get("is_default"):
        db["address"].update_one({"_id": existing["_id"]}, {"$set": {"is_default": False, "updated_at": now()}})
    return sanitize(db["address"].find_one({"_id": existing["_id"]}))


def set_default_address(db: Database, user_id: str, address_id: str) -> Tuple[Dict, bool]:
    """Returns (address, changed)."""
    existing = _owned(db, user_id, address_id)
    if existing.get("is_default"):
        return sanitize(existing), False
    _make_exclusive_default(db, user_id, existing["_id"])
    return sanitize(db["address"].find_one({"_id": existing["_id"]})), True


def delete_address(db: Database, user_id: str, address_id: str) -> None:
    existing = _owned(db, user_id, address_id)
    key = str(existing["_id"])
    if db["order"].count_documents({"delivery_address_id": key}, limit=1):
        raise ValidationError("Cannot delete address that has been used in orders")
    if db["shop"].count_documents({"address_id": key}, limit=1):
        raise ValidationError("Cannot delete address that is associated with shops")

    db["address"].delete_one({"_id": existing["_id"]})

    if existing.get("is_default"):
        oldest = db["address"].find_one({"user_id": user_id}, sort=[("created_at", ASCENDING), ("_id", ASCENDING)])
        if oldest:
            _make_exclusive_default(db, user_id, oldest["_id"])
