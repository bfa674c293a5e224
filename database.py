import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv

# Load environment variables if present
load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "nilaiakademik")

REMEDIATION_COLLECTION = "remediation_task"

client = None
_db = None

try:
    client = MongoClient(DATABASE_URL)
    _db = client[DATABASE_NAME]
except Exception:
    logger.exception("Could not create MongoDB client for %s", DATABASE_URL)
    client = None
    _db = None

# Expose db for other modules
db = _db


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_str_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    if doc.get("_id"):
        doc["id"] = str(doc["_id"])
        del doc["_id"]
    return doc


def get_collection(collection_name: str) -> Collection:
    if db is None:
        raise RuntimeError("Database not initialized")
    return db[collection_name]


def create_document(collection_name: str, data: Dict[str, Any]) -> str:
    data = dict(data)
    now = _now()
    if "created_at" not in data:
        data["created_at"] = now
    data["updated_at"] = now
    result = get_collection(collection_name).insert_one(data)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = 100) -> List[Dict[str, Any]]:
    """`limit=None` reads the whole cursor."""
    filter_dict = filter_dict or {}
    cursor = get_collection(collection_name).find(filter_dict)
    if limit is not None:
        cursor = cursor.limit(int(limit))
    return [_to_str_id(doc) for doc in cursor]


def get_document_by_id(collection_name: str, doc_id: str) -> Optional[Dict[str, Any]]:
    try:
        oid = ObjectId(doc_id)
    except (InvalidId, TypeError):
        return None
    doc = get_collection(collection_name).find_one({"_id": oid})
    return _to_str_id(doc) if doc else None


def upsert_document(collection_name: str, key: Dict[str, Any], data: Dict[str, Any]) -> str:
    """Update the document matching `key`, or insert it. Returns its id."""
    data = dict(data)
    now = _now()
    data["updated_at"] = now
    collection = get_collection(collection_name)
    result = collection.update_one(
        key,
        {"$set": data, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )
    if result.upserted_id is not None:
        return str(result.upserted_id)
    existing = collection.find_one(key, {"_id": 1})
    return str(existing["_id"])


def ensure_indexes() -> None:
    """At most one pending remediation task per (student, subject, stage)."""
    get_collection(REMEDIATION_COLLECTION).create_index(
        [("student_id", ASCENDING), ("subject_id", ASCENDING), ("stage_id", ASCENDING)],
        name="one_pending_task_per_subject_stage",
        unique=True,
        partialFilterExpression={"status": "pending"},
    )
    get_collection("exam_score").create_index(
        [("student_id", ASCENDING), ("subject_id", ASCENDING), ("stage_id", ASCENDING)],
        name="one_exam_per_subject_stage",
        unique=True,
    )
    logger.info("MongoDB indexes ensured on %s", DATABASE_NAME)
