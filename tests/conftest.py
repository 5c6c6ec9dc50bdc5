from typing import Optional

import mongomock
import pytest
from fastapi import Header
from fastapi.testclient import TestClient

from auth import get_token_email
from database import ASSETS, USERS, ensure_indexes, get_db
from errors import Unauthenticated
from lifecycle import create_asset
from main import app


async def fake_token_email(authorization: Optional[str] = Header(None)) -> str:
    """Treats the bearer value itself as the verified email."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthenticated("Missing or invalid Authorization header")
    return authorization.split(" ", 1)[1].strip().lower()


def bearer(email: str) -> dict:
    return {"Authorization": f"Bearer {email}"}


def make_user(db, email: str, role: str, **extra) -> dict:
    doc = {"email": email, "name": email.split("@")[0].title(), "role": role, "companyAffiliations": []}
    if role == "hr":
        doc.update({"companyName": "Acme", "packageLimit": 5, "currentEmployees": 0})
    doc.update(extra)
    db[USERS].insert_one(doc)
    return db[USERS].find_one({"email": email})


def reload(db, collection: str, doc: dict) -> dict:
    return db[collection].find_one({"_id": doc["_id"]})


@pytest.fixture
def db():
    database = mongomock.MongoClient().assets_test
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_token_email] = fake_token_email
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def hr(db):
    return make_user(db, "hr@acme.com", "hr")


@pytest.fixture
def other_hr(db):
    return make_user(db, "hr@globex.com", "hr", companyName="Globex")


@pytest.fixture
def employee(db):
    return make_user(db, "eli@mail.com", "employee")


@pytest.fixture
def second_employee(db):
    return make_user(db, "sam@mail.com", "employee")


@pytest.fixture
def laptop(db, hr):
    return create_asset(db, hr, "Laptop", "Returnable", 3, "https://img.example.org/laptop.png")


@pytest.fixture
def single_monitor(db, hr):
    return create_asset(db, hr, "Monitor", "Returnable", 1)


def refresh_hr(db, hr: dict) -> dict:
    return db[USERS].find_one({"email": hr["email"]})


def asset_available(db, asset: dict) -> int:
    return db[ASSETS].find_one({"_id": asset["_id"]})["availableQuantity"]
