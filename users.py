"""
Users

Accounts, profiles and passwords, plus the admin user management
operations. Passwords are stored as a salted SHA-256 digest.
"""

import hashlib
import logging
import re
import secrets
from typing import List, Optional, Tuple

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from database import now, object_id_or_none
from errors import UserNotFoundError, ValidationError
from schemas import ProfileUpdate

logger = logging.getLogger("koseli.users")

# fields never returned from user queries
PRIVATE_FIELDS = {"password_hash": 0, "salt": 0, "token": 0, "token_expires": 0}

SORTABLE_FIELDS = ("created_at", "name", "email", "last_login")


def hash_password(password: str, salt: Optional[str] = None) -> tuple[str, str]:
    if not salt:
        salt = secrets.token_hex(16)
    h = hashlib.sha256((salt + password).encode()).hexdigest()
    return h, salt


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    h, _ = hash_password(password, salt)
    return secrets.compare_digest(h, expected_hash)


def get_user(db: Database, user_id: str, include_private: bool = False) -> dict:
    oid = object_id_or_none(user_id)
    projection = None if include_private else PRIVATE_FIELDS
    user = db["user"].find_one({"_id": oid}, projection) if oid else None
    if not user:
        raise UserNotFoundError(user_id)
    return user


def update_profile(db: Database, user_id: str, payload: ProfileUpdate) -> dict:
    """Apply the fields present in ``payload``; name, phone, address and preferences only."""
    user = get_user(db, user_id)
    update = payload.model_dump(exclude_none=True)
    update["updated_at"] = now()
    return db["user"].find_one_and_update(
        {"_id": user["_id"]}, {"$set": update}, PRIVATE_FIELDS, return_document=ReturnDocument.AFTER
    )


def change_password(db: Database, user_id: str, current_password: str, new_password: str) -> None:
    user = get_user(db, user_id, include_private=True)
    if user.get("provider", "local") != "local" or not user.get("password_hash"):
        raise ValidationError("Password change not available for OAuth users")
    if not verify_password(current_password, user.get("salt", ""), user["password_hash"]):
        raise ValidationError("Current password is incorrect")
    pw_hash, salt = hash_password(new_password)
    db["user"].update_one(
        {"_id": user["_id"]}, {"$set": {"password_hash": pw_hash, "salt": salt, "updated_at": now()}}
    )
    logger.info("User %s changed their password", user["email"])


def logout(db: Database, user_id: str) -> None:
    db["user"].update_one(
        {"_id": object_id_or_none(user_id)}, {"$unset": {"token": "", "token_expires": ""}}
    )


# -------------------- Admin --------------------

def list_users(db: Database, search: Optional[str] = None, role: Optional[str] = None,
               is_active: Optional[bool] = None, sort_by: str = "created_at", sort_order: str = "desc",
               page: int = 1, limit: int = 20) -> Tuple[List[dict], int]:
    query = {}
    if role:
        query["role"] = role
    if is_active is not None:
        query["is_active"] = is_active
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"email": pattern}]
    if sort_by not in SORTABLE_FIELDS:
        sort_by = "created_at"
    direction = ASCENDING if sort_order == "asc" else DESCENDING
    total = db["user"].count_documents(query)
    cursor = db["user"].find(query, PRIVATE_FIELDS).sort(sort_by, direction).skip((page - 1) * limit).limit(limit)
    return list(cursor), total


def get_user_details(db: Database, user_id: str) -> dict:
    """A user with their five latest orders and order totals."""
    user = get_user(db, user_id)
    uid = str(user["_id"])
    recent = list(
        db["order"].find(
            {"user_id": uid}, {"order_number": 1, "status": 1, "total": 1, "created_at": 1}
        ).sort("created_at", DESCENDING).limit(5)
    )
    stats = list(db["order"].aggregate([
        {"$match": {"user_id": uid}},
        {"$group": {
            "_id": None,
            "total_orders": {"$sum": 1},
            "total_spent": {"$sum": "$total"},
            "average_order_value": {"$avg": "$total"},
        }},
    ]))
    statistics = {"total_orders": 0, "total_spent": 0, "average_order_value": 0}
    if stats:
        statistics.update({k: v for k, v in stats[0].items() if k != "_id"})
    return {"user": user, "recent_orders": recent, "statistics": statistics}


def set_active(db: Database, user_id: str, is_active: bool) -> dict:
    user = get_user(db, user_id)
    update = {"$set": {"is_active": is_active, "updated_at": now()}}
    if not is_active:
        update["$unset"] = {"token": "", "token_expires": ""}
    updated = db["user"].find_one_and_update(
        {"_id": user["_id"]}, update, PRIVATE_FIELDS, return_document=ReturnDocument.AFTER
    )
    logger.info("User %s %s", updated["email"], "activated" if is_active else "deactivated")
    return updated


def set_role(db: Database, admin_id: str, user_id: str, role: str) -> dict:
    if user_id == admin_id:
        raise ValidationError("Cannot change your own role")
    user = get_user(db, user_id)
    updated = db["user"].find_one_and_update(
        {"_id": user["_id"]}, {"$set": {"role": role, "updated_at": now()}}, PRIVATE_FIELDS,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("User %s is now %s", updated["email"], role)
    return updated
