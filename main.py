import logging
import os
import re
from datetime import datetime
from typing import Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import EmailStr
from pymongo import ReturnDocument

from auth import current_user, employee_user, get_token_email, hr_user, init_identity_provider
from billing import (
    confirm_checkout_session,
    create_checkout_session,
    handle_webhook,
    list_packages,
    seed_packages,
)
from database import (
    ASSETS,
    ASSIGNED_ASSETS,
    EMPLOYEE_AFFILIATIONS,
    PAYMENTS,
    REQUESTS,
    USERS,
    db,
    ensure_indexes,
    get_db,
    get_documents,
    utcnow,
)
from errors import Conflict, Forbidden, InvalidInput, ServiceError
from lifecycle import (
    approve_request,
    create_asset,
    delete_asset,
    reject_request,
    remove_employee,
    return_asset,
    submit_request,
)
from schemas import AffiliationStatus, AssignmentStatus, Document, RequestStatus, Role, User

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CLIENT_DOMAIN = os.getenv("CLIENT_DOMAIN", "http://localhost:5173")
DEFAULT_PACKAGE_LIMIT = int(os.getenv("DEFAULT_PACKAGE_LIMIT", "5"))

app = FastAPI(title="AssetVerse API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[CLIENT_DOMAIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceError)
async def _service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors()), "error": InvalidInput.__name__},
    )


@app.on_event("startup")
def startup():
    init_identity_provider()
    if db is None:
        logger.warning("DATABASE_URL not set, API calls will fail until it is configured")
        return
    ensure_indexes(db)
    seed_packages(db)


# ------------------- Utils -------------------

def serialize_doc(doc):
    if isinstance(doc, dict):
        return {k: serialize_doc(v) for k, v in doc.items()}
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    return doc


# ------------------- Health -------------------
@app.get("/")
def read_root():
    return {"message": "Welcome to AssetVerse Server"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is not None:
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response

# ------------------- Users -------------------
class RegisterRequest(Document):
    email: EmailStr
    name: Optional[str] = None
    photo: Optional[str] = None
    date_of_birth: Optional[str] = None
    company_name: Optional[str] = None
    company_logo: Optional[str] = None

class ProfileUpdateRequest(Document):
    name: Optional[str] = None
    photo: Optional[str] = None
    date_of_birth: Optional[str] = None
    company_logo: Optional[str] = None


def upsert_user(database, email: str, role: Role, payload: RegisterRequest):
    """Create the profile on first call; later calls only refresh display fields.

    Returns (user, created).
    """
    if payload.email.lower() != email:
        raise Forbidden("Email does not match the signed-in account")
    existing = database[USERS].find_one({"email": email})
    if existing and existing.get("role") != role.value:
        raise Conflict(f"Account is already registered as {existing.get('role')}")
    if role == Role.HR and not existing and not payload.company_name:
        raise InvalidInput("companyName is required for HR accounts")

    now = utcnow()
    profile = payload.model_dump(
        by_alias=True, exclude_none=True, include={"name", "photo", "date_of_birth", "company_logo"}
    )
    user = User(
        email=email,
        role=role,
        company_name=payload.company_name if role == Role.HR else None,
        package_limit=DEFAULT_PACKAGE_LIMIT if role == Role.HR else None,
    )
    on_insert = user.model_dump(
        by_alias=True,
        exclude_none=True,
        exclude=None if role == Role.HR else {"current_employees"},
    )
    on_insert = {k: v for k, v in on_insert.items() if k not in profile}
    on_insert["createdAt"] = now
    profile["updatedAt"] = now
    database[USERS].update_one({"email": email}, {"$set": profile, "$setOnInsert": on_insert}, upsert=True)
    return database[USERS].find_one({"email": email}), existing is None

@app.post("/user")
def save_hr(payload: RegisterRequest, email: str = Depends(get_token_email), database=Depends(get_db)):
    user, created = upsert_user(database, email, Role.HR, payload)
    return {"message": "User created" if created else "User updated", "user": serialize_doc(user)}

@app.post("/user/employee")
def save_employee(payload: RegisterRequest, email: str = Depends(get_token_email), database=Depends(get_db)):
    user, created = upsert_user(database, email, Role.EMPLOYEE, payload)
    return {"message": "User created" if created else "User updated", "user": serialize_doc(user)}

@app.get("/user/role")
def get_role(email: str = Depends(get_token_email), database=Depends(get_db)):
    user = database[USERS].find_one({"email": email}) or {}
    return {"role": user.get("role"), "companyName": user.get("companyName")}

@app.get("/profile")
def get_profile(user: dict = Depends(current_user)):
    return serialize_doc(user)

@app.patch("/user/update")
def update_profile(payload: ProfileUpdateRequest, user: dict = Depends(current_user), database=Depends(get_db)):
    updates = payload.model_dump(by_alias=True, exclude_none=True)
    if not updates:
        return serialize_doc(user)
    updates["updatedAt"] = utcnow()
    doc = database[USERS].find_one_and_update(
        {"_id": user["_id"]}, {"$set": updates}, return_document=ReturnDocument.AFTER
    )
    return serialize_doc(doc)

# ------------------- Assets -------------------
class AssetCreateRequest(Document):
    product_name: Optional[str] = None
    product_type: Optional[str] = None
    product_quantity: Optional[int] = None
    product_image: Optional[str] = None

@app.post("/assets")
def add_asset(payload: AssetCreateRequest, hr: dict = Depends(hr_user), database=Depends(get_db)):
    asset = create_asset(
        database, hr,
        payload.product_name, payload.product_type, payload.product_quantity, payload.product_image,
    )
    return serialize_doc(asset)

@app.get("/assets")
def list_assets(
    mine: bool = Query(False),
    search: Optional[str] = Query(None),
    asset_type: Optional[str] = Query(None, alias="type"),
    user: dict = Depends(current_user),
    database=Depends(get_db),
):
    if mine:
        if user.get("role") != Role.HR.value:
            raise Forbidden("Only hr accounts can do this")
        q = {"hrEmail": user["email"]}
    else:
        q = {"availableQuantity": {"$gt": 0}}
    if search and search.strip():
        q["productName"] = {"$regex": re.escape(search.strip()), "$options": "i"}
    if asset_type:
        q["productType"] = asset_type
    docs = get_documents(database, ASSETS, q, sort=[("dateAdded", -1)])
    return [serialize_doc(d) for d in docs]

@app.delete("/assets/{asset_id}")
def remove_asset(asset_id: str, hr: dict = Depends(hr_user), database=Depends(get_db)):
    delete_asset(database, hr, asset_id)
    return {"message": "Asset deleted"}

# ------------------- Requests -------------------
class AssetRequestCreate(Document):
    asset_id: Optional[str] = None
    note: Optional[str] = None

@app.post("/requests")
def create_request(payload: AssetRequestCreate, employee: dict = Depends(employee_user), database=Depends(get_db)):
    if not payload.asset_id:
        raise InvalidInput("assetId is required")
    request = submit_request(database, employee, payload.asset_id, payload.note)
    return serialize_doc(request)

@app.get("/requests/all")
def list_company_requests(
    status: Optional[RequestStatus] = Query(None),
    hr: dict = Depends(hr_user),
    database=Depends(get_db),
):
    q = {"hrEmail": hr["email"]}
    if status:
        q["requestStatus"] = status.value
    docs = get_documents(database, REQUESTS, q, sort=[("requestDate", -1)])
    return [serialize_doc(d) for d in docs]

@app.get("/requests/my")
def list_my_requests(employee: dict = Depends(employee_user), database=Depends(get_db)):
    docs = get_documents(database, REQUESTS, {"requesterEmail": employee["email"]}, sort=[("requestDate", -1)])
    return [serialize_doc(d) for d in docs]

@app.patch("/requests/{request_id}/approve")
def approve(request_id: str, hr: dict = Depends(hr_user), database=Depends(get_db)):
    assignment = approve_request(database, hr, request_id)
    return {"message": "Request approved and assigned", "assignedAsset": serialize_doc(assignment)}

@app.patch("/requests/{request_id}/reject")
def reject(request_id: str, hr: dict = Depends(hr_user), database=Depends(get_db)):
    request = reject_request(database, hr, request_id)
    return {"message": "Request rejected", "request": serialize_doc(request)}

# ------------------- Assigned assets -------------------
@app.get("/assigned-assets/my")
def list_my_assets(
    status: Optional[AssignmentStatus] = Query(None),
    employee: dict = Depends(employee_user),
    database=Depends(get_db),
):
    q = {"employeeEmail": employee["email"]}
    if status:
        q["status"] = status.value
    docs = get_documents(database, ASSIGNED_ASSETS, q, sort=[("assignmentDate", -1)])
    return [serialize_doc(d) for d in docs]

@app.patch("/assigned-assets/{assigned_id}/return")
def return_assigned(assigned_id: str, employee: dict = Depends(employee_user), database=Depends(get_db)):
    assignment = return_asset(database, employee, assigned_id)
    return {"message": "Asset returned", "assignedAsset": serialize_doc(assignment)}

# ------------------- Employees -------------------
@app.get("/employees/my")
def list_my_employees(hr: dict = Depends(hr_user), database=Depends(get_db)):
    affiliations = get_documents(
        database, EMPLOYEE_AFFILIATIONS,
        {"hrEmail": hr["email"], "status": AffiliationStatus.ACTIVE.value},
        sort=[("affiliationDate", 1)],
    )
    emails = [a["employeeEmail"] for a in affiliations]
    profiles = {u["email"]: u for u in database[USERS].find({"email": {"$in": emails}})}
    out = []
    for a in affiliations:
        profile = profiles.get(a["employeeEmail"], {})
        item = serialize_doc(a)
        item["photo"] = profile.get("photo")
        item["employeeName"] = a.get("employeeName") or profile.get("name")
        item["assetsCount"] = database[ASSIGNED_ASSETS].count_documents({
            "employeeEmail": a["employeeEmail"],
            "hrEmail": hr["email"],
            "status": AssignmentStatus.ASSIGNED.value,
        })
        out.append(item)
    return out

@app.patch("/employees/{employee_email}/remove")
def remove_from_team(employee_email: str, hr: dict = Depends(hr_user), database=Depends(get_db)):
    affiliation = remove_employee(database, hr, employee_email.lower())
    return {"message": "Employee removed", "affiliation": serialize_doc(affiliation)}

# ------------------- Billing -------------------
class CheckoutRequest(Document):
    package_id: Optional[str] = None

class PaymentConfirmRequest(Document):
    session_id: Optional[str] = None

@app.get("/packages")
def get_packages(database=Depends(get_db)):
    return [serialize_doc(p) for p in list_packages(database)]

@app.post("/create-checkout-session")
def checkout(payload: CheckoutRequest, hr: dict = Depends(hr_user), database=Depends(get_db)):
    if not payload.package_id:
        raise InvalidInput("packageId is required")
    return {"url": create_checkout_session(database, hr, payload.package_id)}

@app.post("/payment-success")
def payment_success(payload: PaymentConfirmRequest, hr: dict = Depends(hr_user), database=Depends(get_db)):
    payment, created = confirm_checkout_session(database, hr, payload.session_id)
    return {
        "message": "Payment recorded" if created else "Payment already recorded",
        "payment": serialize_doc(payment),
    }

@app.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    database=Depends(get_db),
):
    payload = await request.body()
    event_type = await run_in_threadpool(handle_webhook, database, payload, stripe_signature)
    return {"received": True, "type": event_type}

@app.get("/payments")
def list_payments(hr: dict = Depends(hr_user), database=Depends(get_db)):
    docs = get_documents(database, PAYMENTS, {"hrEmail": hr["email"]}, sort=[("paymentDate", -1)])
    return [serialize_doc(d) for d in docs]

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
