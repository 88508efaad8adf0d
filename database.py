"""
MongoDB access for Recycle-IT.

`db` is None when DATABASE_URL / DATABASE_NAME are not configured; routes
call `ensure_db()` in main.py before touching it.
"""
import os
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "recycle_it")

_client = None
db = None

if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def now_utc() -> datetime:
    # naive UTC, the same shape pymongo hands back when reading
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id."""
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME.")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    stamp = now_utc()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp

    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def serialize(doc: Optional[dict], hidden: tuple = ()) -> Optional[dict]:
    """Turn a Mongo document into a JSON-friendly dict (`_id` -> `id`)."""
    if doc is None:
        return None
    out = {}
    for key, value in doc.items():
        if key in hidden:
            continue
        if key == "_id":
            out["id"] = str(value)
        elif isinstance(value, ObjectId):
            out[key] = str(value)
        else:
            out[key] = value
    return out


def ensure_indexes(database=None) -> None:
    target = database if database is not None else db
    if target is None:
        return
    target["user"].create_index([("email", ASCENDING)], unique=True)
    target["recycler"].create_index([("email", ASCENDING)], unique=True)
    target["recycler"].create_index([("company_name", ASCENDING)], unique=True)
    target["admin"].create_index([("email", ASCENDING)], unique=True)
    target["pickup"].create_index([("user_id", ASCENDING)])
    target["pickup"].create_index([("pickup_status", ASCENDING)])
    target["inspection"].create_index([("pickup_id", ASCENDING)], unique=True)
    target["payment"].create_index([("inspection_id", ASCENDING)], unique=True)
    target["deliverypartner"].create_index(
        [("recycler_id", ASCENDING), ("email", ASCENDING)], unique=True
    )
    target["payoutintent"].create_index([("idempotency_key", ASCENDING)], unique=True)
