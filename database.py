"""
MongoDB connection and small document helpers.

`db` is None when DATABASE_URL is not configured; callers check for that.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pymongo import AsyncMongoClient

from config import DATABASE_NAME, DATABASE_URL

client: Optional[AsyncMongoClient] = AsyncMongoClient(DATABASE_URL, tz_aware=True) if DATABASE_URL else None
db = client[DATABASE_NAME] if client is not None else None


async def create_document(collection_name: str, data: Dict[str, Any]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id."""
    if db is None:
        raise RuntimeError("Database not configured")
    now = datetime.now(timezone.utc)
    doc = dict(data)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = await db[collection_name].insert_one(doc)
    return str(result.inserted_id)

