"""
Database Helper Functions

MongoDB connection and small helpers shared by the API and the lifecycle code.
Every helper takes the database handle explicitly so tests can pass an
in-memory database instead of the module-level connection.
"""
import os
from datetime import datetime, timezone
from typing import Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from errors import InvalidInput

load_dotenv()

USERS = "users"
ASSETS = "assets"
REQUESTS = "requests"
ASSIGNED_ASSETS = "assignedAssets"
EMPLOYEE_AFFILIATIONS = "employeeAffiliations"
PACKAGES = "packages"
PAYMENTS = "payments"

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME", "assetsDB")

if database_url:
    _client = MongoClient(database_url)
    db = _client[database_name]


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Union[str, ObjectId], what: str = "document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise InvalidInput(f"Invalid {what} id")


def ensure_indexes(database: Database) -> None:
    database[USERS].create_index("email", unique=True)
    database[ASSETS].create_index([("companyName", ASCENDING)])
    database[REQUESTS].create_index([("hrEmail", ASCENDING), ("requestDate", ASCENDING)])
    database[REQUESTS].create_index(
        [("assetId", ASCENDING), ("requesterEmail", ASCENDING), ("requestStatus", ASCENDING)],
        name="one_pending_request",
        unique=True,
        partialFilterExpression={"requestStatus": "pending"},
    )
    database[ASSIGNED_ASSETS].create_index("requestId")
    database[ASSIGNED_ASSETS].create_index([("employeeEmail", ASCENDING), ("status", ASCENDING)])
    database[EMPLOYEE_AFFILIATIONS].create_index(
        [("employeeEmail", ASCENDING), ("hrEmail", ASCENDING)], unique=True
    )
    database[PAYMENTS].create_index("transactionId", unique=True)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> ObjectId:
    """Insert a single document with timestamps"""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True)
    else:
        data_dict = data.copy()
    now = utcnow()
    data_dict.setdefault("createdAt", now)
    data_dict["updatedAt"] = now
    result = database[collection_name].insert_one(data_dict)
    return result.inserted_id


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[list] = None,
) -> list:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
