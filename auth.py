"""
Identity verification and role checks.

Bearer tokens are Firebase ID tokens; the verified email is the principal.
The stored users document decides the role.
"""
import base64
import binascii
import json
import logging
import os
from typing import Optional

import firebase_admin
from fastapi import Depends, Header
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials
from firebase_admin.exceptions import FirebaseError
from pymongo.database import Database

from database import USERS, get_db
from errors import Forbidden, Unauthenticated
from schemas import Role

logger = logging.getLogger(__name__)

FB_SERVICE_KEY = os.getenv("FB_SERVICE_KEY")


def init_identity_provider(service_key: Optional[str] = FB_SERVICE_KEY) -> bool:
    """Initialise the default Firebase app from a base64-encoded service account."""
    try:
        firebase_admin.get_app()
        return True
    except ValueError:
        pass
    if not service_key:
        logger.warning("FB_SERVICE_KEY not set, every bearer token will be rejected")
        return False
    try:
        info = json.loads(base64.b64decode(service_key).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RuntimeError(f"FB_SERVICE_KEY is not base64-encoded JSON: {e}")
    firebase_admin.initialize_app(credentials.Certificate(info))
    logger.info("Identity provider initialised for project %s", info.get("project_id"))
    return True


def verify_token(token: str) -> str:
    try:
        decoded = firebase_auth.verify_id_token(token)
    except (ValueError, FirebaseError) as e:
        logger.info("Rejected bearer token: %s", e)
        raise Unauthenticated("Unauthorized Access!")
    email = decoded.get("email")
    if not email:
        raise Unauthenticated("Token carries no email")
    return email.lower()


async def get_token_email(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthenticated("Missing or invalid Authorization header")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise Unauthenticated("Missing or invalid Authorization header")
    return verify_token(token)


def require_role(db: Database, email: str, role: Role) -> dict:
    user = db[USERS].find_one({"email": email})
    if not user:
        raise Forbidden("User is not registered")
    if user.get("role") != role.value:
        raise Forbidden(f"Only {role.value} accounts can do this")
    return user


def current_user(email: str = Depends(get_token_email), db: Database = Depends(get_db)) -> dict:
    user = db[USERS].find_one({"email": email})
    if not user:
        raise Forbidden("User is not registered")
    return user


def hr_user(email: str = Depends(get_token_email), db: Database = Depends(get_db)) -> dict:
    return require_role(db, email, Role.HR)


def employee_user(email: str = Depends(get_token_email), db: Database = Depends(get_db)) -> dict:
    return require_role(db, email, Role.EMPLOYEE)
