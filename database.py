"""
MongoDB access for AgroMart

One pooled MongoClient per process. Route handlers receive the database
handle through `Depends(get_db)` and pass it on to the service functions, so
tests can swap in any pymongo-compatible database.
"""
import logging
import os
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, Optional, TypeVar

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.client_session import ClientSession
from pymongo.database import Database

from errors import NotFound

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "agromart")
# Multi-document transactions need a replica set; standalone servers run without them
USE_TRANSACTIONS = os.getenv("DATABASE_TRANSACTIONS", "true").lower() in ("1", "true", "yes")

logger = logging.getLogger(__name__)

T = TypeVar("T")


@lru_cache(maxsize=1)
def get_client() -> MongoClient:
    # MongoClient connects lazily and keeps its own connection pool
    return MongoClient(DATABASE_URL, tz_aware=True)


def get_db() -> Database:
    return get_client()[DATABASE_NAME]


def ensure_indexes(db: Database) -> None:
    db["user"].create_index("email", unique=True)
    db["cartitem"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    db["notification"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["address"].create_index([("user_id", ASCENDING), ("is_default", DESCENDING)])
    db["address"].create_index(
        "user_id",
        name="one_default_address_per_user",
        unique=True,
        partialFilterExpression={"is_default": True},
    )
    db["shop"].create_index("owner_id", unique=True)
    logger.info("Indexes ensured on database %s", db.name)


def now() -> datetime:
    return datetime.now(timezone.utc)


def parse_id(value: str, what: str = "Resource") -> ObjectId:
    """Malformed ids are answered like missing documents."""
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")


def sanitize(doc: Optional[Dict]) -> Optional[Dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("password_hash", None)
    return d


def create_document(db: Database, collection_name: str, data: Dict[str, Any]) -> str:
    doc = dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc.setdefault("updated_at", stamp)
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def run_atomically(db: Database, work: Callable[[Optional[ClientSession]], T]) -> T:
    """Run `work(session)` as one transaction, retried on transient errors."""
    if not USE_TRANSACTIONS:
        return work(None)
    with db.client.start_session() as session:
        return session.with_transaction(work)
