"""
Database helpers

MongoDB access through pymongo. The client is created once at startup from
the configured DATABASE_URL / DATABASE_NAME; request handlers receive the
database handle through the get_db dependency.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import Settings

logger = logging.getLogger("koseli.database")

db: Optional[Database] = None


def connect(settings: Settings) -> Optional[Database]:
    global db
    if not settings.database_url or not settings.database_name:
        logger.warning("DATABASE_URL or DATABASE_NAME not set; database unavailable")
        return None
    client = MongoClient(settings.database_url)
    db = client[settings.database_name]
    logger.info("Connected to MongoDB database %s", settings.database_name)
    return db


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["user"].create_index("token")
    database["category"].create_index("slug", unique=True)
    database["product"].create_index("slug", unique=True)
    database["product"].create_index([("category", ASCENDING), ("status", ASCENDING)])
    database["cart"].create_index("user_id", unique=True)
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index("payment_status")
    database["order"].create_index("payment_intent_id")


def now() -> datetime:
    return datetime.now(timezone.utc)


def object_id_or_none(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    # ObjectId(None) would mint a fresh id
    if value is None:
        return None
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]], session=None) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    inserted_id = database[collection_name].insert_one(doc, session=session).inserted_id
    return str(inserted_id)
