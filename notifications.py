"""
Notification store

Per-user notification records: creation (single and bulk), read/unread state,
filtering, paging and bulk clean-up, plus the notification preferences kept on
the user document. Every function takes the database handle first.
"""
import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING
from pymongo.database import Database

from database import now, parse_id, sanitize
from errors import NotFound, ValidationError
from schemas import PAYLOAD_MODELS, NotificationType

logger = logging.getLogger(__name__)

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20

FILTER_ALL = "all"
FILTER_UNREAD = "unread"

DEFAULT_PREFERENCES: Dict[str, bool] = {
    "email_notifications": True,
    "order_updates": True,
    "product_alerts": True,
    "system_announcements": True,
    "marketing_emails": False,
    "new_product_notifications": True,
    "price_drop_alerts": True,
    "delivery_updates": True,
}


def _coerce_type(value: Union[NotificationType, str]) -> NotificationType:
    try:
        return NotificationType(value)
    except ValueError:
        raise ValidationError(f"Unknown notification type: {value}")


def validate_payload(ntype: NotificationType, data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Check `data` against the payload variant of `ntype`."""
    if data is None:
        return None
    model = PAYLOAD_MODELS[ntype]
    try:
        return model.model_validate(data).model_dump(exclude_none=True)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationError(f"Invalid {ntype.value} data: {field} {first.get('msg')}".strip())


def _build(user_id: str, ntype: NotificationType, title: str, message: str, data: Optional[Dict]) -> Dict:
    stamp = now()
    return {
        "user_id": user_id,
        "type": ntype.value,
        "title": title,
        "message": message,
        "data": data,
        "is_read": False,
        "created_at": stamp,
        "updated_at": stamp,
    }


def _owned(db: Database, user_id: str, notification_id: str) -> Dict:
    oid = parse_id(notification_id, "Notification")
    doc = db["notification"].find_one({"_id": oid, "user_id": user_id})
    if not doc:
        raise NotFound("Notification not found")
    return doc


def create_notification(
    db: Database,
    user_id: str,
    ntype: Union[NotificationType, str],
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
) -> Dict:
    ntype = _coerce_type(ntype)
    payload = validate_payload(ntype, data)
    if not db["user"].find_one({"_id": parse_id(user_id, "User")}, {"_id": 1}):
        raise NotFound("User not found")

    doc = _build(user_id, ntype, title, message, payload)
    result = db["notification"].insert_one(doc)
    doc["_id"] = result.inserted_id
    return sanitize(doc)


def create_bulk_notifications(
    db: Database,
    user_ids: Iterable[str],
    ntype: Union[NotificationType, str],
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
) -> int:
    """Create the same notification for every user in `user_ids`.

    The ids are all checked before anything is written, so an unknown id
    fails the whole batch. Returns the number of notifications created.
    """
    ntype = _coerce_type(ntype)
    payload = validate_payload(ntype, data)
    unique_ids = list(dict.fromkeys(user_ids))
    if not unique_ids:
        return 0

    oids = [parse_id(uid, "User") for uid in unique_ids]
    found = db["user"].count_documents({"_id": {"$in": oids}})
    if found != len(oids):
        raise NotFound("User not found")

    docs = [_build(uid, ntype, title, message, payload) for uid in unique_ids]
    result = db["notification"].insert_many(docs)
    logger.info("Fanned out %s notification to %d users", ntype.value, len(result.inserted_ids))
    return len(result.inserted_ids)


def _filter_query(user_id: str, filter_by: str) -> Dict:
    where: Dict[str, Any] = {"user_id": user_id}
    if filter_by == FILTER_UNREAD:
        where["is_read"] = False
    elif filter_by != FILTER_ALL:
        where["type"] = _coerce_type(filter_by).value
    return where


def list_notifications(
    db: Database,
    user_id: str,
    page: int = DEFAULT_PAGE,
    limit: int = DEFAULT_LIMIT,
    filter_by: str = FILTER_ALL,
) -> Dict:
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive")
    where = _filter_query(user_id, filter_by)
    skip = (page - 1) * limit

    items = list(
        db["notification"]
        .find(where)
        .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
        .skip(skip)
        .limit(limit)
    )
    total = db["notification"].count_documents(where)
    unread = unread_count(db, user_id)
    total_pages = math.ceil(total / limit)

    return {
        "notifications": [sanitize(it) for it in items],
        "unread_count": unread,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def get_notification(db: Database, user_id: str, notification_id: str) -> Dict:
    return sanitize(_owned(db, user_id, notification_id))


def set_read_state(db: Database, user_id: str, notification_id: str, is_read: bool) -> Dict:
    doc = _owned(db, user_id, notification_id)
    stamp = now()
    db["notification"].update_one({"_id": doc["_id"]}, {"$set": {"is_read": is_read, "updated_at": stamp}})
    doc.update(is_read=is_read, updated_at=stamp)
    return sanitize(doc)


def mark_read(db: Database, user_id: str, notification_id: str) -> Dict:
    return set_read_state(db, user_id, notification_id, True)


def mark_unread(db: Database, user_id: str, notification_id: str) -> Dict:
    return set_read_state(db, user_id, notification_id, False)


def mark_all_read(db: Database, user_id: str) -> int:
    result = db["notification"].update_many(
        {"user_id": user_id, "is_read": False},
        {"$set": {"is_read": True, "updated_at": now()}},
    )
    return result.modified_count


def delete_notification(db: Database, user_id: str, notification_id: str) -> None:
    doc = _owned(db, user_id, notification_id)
    db["notification"].delete_one({"_id": doc["_id"]})


def clear_all(db: Database, user_id: str) -> int:
    result = db["notification"].delete_many({"user_id": user_id})
    logger.info("Cleared %d notifications for user %s", result.deleted_count, user_id)
    return result.deleted_count


def unread_count(db: Database, user_id: str) -> int:
    return db["notification"].count_documents({"user_id": user_id, "is_read": False})


# Preferences

def merged_preferences(user: Optional[Dict]) -> Dict[str, bool]:
    stored = (user or {}).get("notification_preferences") or {}
    return {**DEFAULT_PREFERENCES, **{k: v for k, v in stored.items() if k in DEFAULT_PREFERENCES}}


def accepts(user: Optional[Dict], preference: str) -> bool:
    return merged_preferences(user).get(preference, True)


def get_preferences(db: Database, user_id: str) -> Dict[str, bool]:
    user = db["user"].find_one({"_id": parse_id(user_id, "User")}, {"notification_preferences": 1})
    if not user:
        raise NotFound("User not found")
    return merged_preferences(user)


def update_preferences(db: Database, user_id: str, updates: Dict[str, Any]) -> Dict[str, bool]:
    """Persist the known boolean keys of `updates`; anything else is ignored."""
    valid = {k: v for k, v in updates.items() if k in DEFAULT_PREFERENCES and isinstance(v, bool)}
    oid = parse_id(user_id, "User")
    if valid:
        db["user"].update_one(
            {"_id": oid},
            {"$set": {**{f"notification_preferences.{k}": v for k, v in valid.items()}, "updated_at": now()}},
        )
    return get_preferences(db, user_id)


def recipients_accepting(db: Database, user_ids: List[str], preference: str) -> List[str]:
    oids = [parse_id(uid, "User") for uid in user_ids]
    opted_out = {
        str(u["_id"])
        for u in db["user"].find(
            {"_id": {"$in": oids}, f"notification_preferences.{preference}": False}, {"_id": 1}
        )
    }
    return [uid for uid in user_ids if uid not in opted_out]
