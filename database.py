"""
MongoDB access helpers.

`db` is the process-wide database handle. Service functions take the
database as their first argument so the HTTP layer can inject it through
`get_db` (and tests can hand in an in-memory double).
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from config import settings
from errors import ValidationError

client: MongoClient = MongoClient(settings.DATABASE_URL, tz_aware=True)
db: Database = client[settings.DATABASE_NAME]


def get_db() -> Database:
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(value: Union[str, ObjectId, None], field: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {field} format: {value!r}")


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = d.pop("_id")
    return _plain(d)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> ObjectId:
    """Insert a document stamped with created_at/updated_at and return its _id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict["created_at"] = stamp
    data_dict["updated_at"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return result.inserted_id


def ensure_indexes(database: Database) -> None:
    # one crowd row per shelf
    database["crowdstate"].create_index("shelf_id", unique=True)
    database["containerops"].create_index([("logistic_center_id", 1), ("state", 1)])
    database["picktask"].create_index([("logistic_center_id", 1), ("state", 1)])
