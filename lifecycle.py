"""
Asset request -> approval -> assignment -> return lifecycle.

Counters and statuses only change through conditional single-document updates,
so two callers racing on the same asset or request cannot both win. Operations
that touch several collections keep an undo log and replay it in reverse when
a later step fails.
"""
import logging
from typing import Callable, Dict, List, Optional, Set, Tuple

from pymongo import ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import (
    ASSETS,
    ASSIGNED_ASSETS,
    EMPLOYEE_AFFILIATIONS,
    REQUESTS,
    USERS,
    create_document,
    to_object_id,
    utcnow,
)
from errors import (
    Conflict,
    Forbidden,
    InvalidInput,
    InvalidState,
    LimitReached,
    NotFound,
    Unavailable,
)
from schemas import (
    AffiliationStatus,
    Asset,
    AssetRequest,
    AssignedAsset,
    AssignmentStatus,
    CompanyAffiliation,
    EmployeeAffiliation,
    RequestStatus,
)

logger = logging.getLogger(__name__)

REQUEST_TRANSITIONS: Dict[RequestStatus, Set[RequestStatus]] = {
    RequestStatus.PENDING: {RequestStatus.APPROVED, RequestStatus.REJECTED},
    RequestStatus.APPROVED: {RequestStatus.RETURNED},
    RequestStatus.REJECTED: set(),
    RequestStatus.RETURNED: set(),
}

ASSIGNMENT_TRANSITIONS: Dict[AssignmentStatus, Set[AssignmentStatus]] = {
    AssignmentStatus.ASSIGNED: {AssignmentStatus.RETURNED},
    AssignmentStatus.RETURNED: set(),
}

AFFILIATION_TRANSITIONS: Dict[AffiliationStatus, Set[AffiliationStatus]] = {
    AffiliationStatus.ACTIVE: {AffiliationStatus.INACTIVE},
    AffiliationStatus.INACTIVE: {AffiliationStatus.ACTIVE},
}


def check_transition(table: dict, current, target) -> None:
    if target not in table.get(current, ()):
        raise InvalidState(f"Cannot move from {current.value} to {target.value}")


def transition(
    collection: Collection,
    doc_id,
    field: str,
    table: dict,
    current,
    target,
    extra: Optional[dict] = None,
) -> Optional[dict]:
    """Move a document from `current` to `target` if it is still in `current`.

    Returns the updated document, or None when another caller moved it first.
    """
    check_transition(table, current, target)
    changes = {field: target.value}
    if extra:
        changes.update(extra)
    return collection.find_one_and_update(
        {"_id": doc_id, field: current.value},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )


class Compensations:
    """Undo log for an operation spanning several documents."""

    def __init__(self, operation: str):
        self.operation = operation
        self._steps: List[Tuple[str, Callable[[], object]]] = []

    def add(self, description: str, undo: Callable[[], object]) -> None:
        self._steps.append((description, undo))

    def rollback(self) -> None:
        while self._steps:
            description, undo = self._steps.pop()
            logger.warning("%s: undoing %s", self.operation, description)
            try:
                undo()
            except PyMongoError:
                logger.exception("%s: could not undo %s, manual reconciliation needed", self.operation, description)


# ------------------- Counters -------------------

def take_unit(db: Database, asset_id) -> Optional[dict]:
    return db[ASSETS].find_one_and_update(
        {"_id": asset_id, "availableQuantity": {"$gte": 1}},
        {"$inc": {"availableQuantity": -1}},
        return_document=ReturnDocument.AFTER,
    )


def put_back_unit(db: Database, asset_id) -> bool:
    asset = db[ASSETS].find_one({"_id": asset_id}, {"productQuantity": 1})
    if not asset:
        logger.warning("Asset %s no longer exists, unit not restocked", asset_id)
        return False
    result = db[ASSETS].update_one(
        {"_id": asset_id, "availableQuantity": {"$lt": asset["productQuantity"]}},
        {"$inc": {"availableQuantity": 1}},
    )
    if not result.modified_count:
        logger.warning("Asset %s is already fully stocked", asset_id)
    return bool(result.modified_count)


def reserve_seat(db: Database, hr: dict) -> bool:
    query = {"email": hr["email"]}
    limit = hr.get("packageLimit")
    if limit:
        query["currentEmployees"] = {"$lt": limit}
    return db[USERS].update_one(query, {"$inc": {"currentEmployees": 1}}).modified_count == 1


def release_seat(db: Database, hr_email: str) -> bool:
    result = db[USERS].update_one(
        {"email": hr_email, "currentEmployees": {"$gt": 0}},
        {"$inc": {"currentEmployees": -1}},
    )
    return result.modified_count == 1


# ------------------- Assets -------------------

def create_asset(
    db: Database,
    hr: dict,
    product_name: Optional[str],
    product_type: Optional[str],
    product_quantity: Optional[int],
    product_image: Optional[str] = None,
) -> dict:
    if not product_name or not product_name.strip():
        raise InvalidInput("productName is required")
    if not product_type or not product_type.strip():
        raise InvalidInput("productType is required")
    if product_quantity is None or product_quantity <= 0:
        raise InvalidInput("productQuantity must be a positive integer")
    if not hr.get("companyName"):
        raise InvalidInput("HR profile has no company name")

    asset = Asset(
        product_name=product_name.strip(),
        product_type=product_type.strip(),
        product_image=product_image,
        product_quantity=product_quantity,
        available_quantity=product_quantity,
        hr_email=hr["email"],
        company_name=hr["companyName"],
        date_added=utcnow(),
    )
    asset_id = create_document(db, ASSETS, asset)
    logger.info("%s added asset %s (%s x%d)", hr["email"], asset_id, asset.product_name, product_quantity)
    return db[ASSETS].find_one({"_id": asset_id})


def delete_asset(db: Database, hr: dict, asset_id: str) -> None:
    oid = to_object_id(asset_id, "asset")
    asset = db[ASSETS].find_one({"_id": oid})
    if not asset:
        raise NotFound("Asset not found")
    if asset.get("hrEmail") != hr["email"]:
        raise Forbidden("Asset belongs to another company")
    outstanding = db[ASSIGNED_ASSETS].count_documents(
        {"assetId": oid, "status": AssignmentStatus.ASSIGNED.value}
    )
    if outstanding:
        logger.warning("Deleting asset %s with %d units still assigned", oid, outstanding)
    db[ASSETS].delete_one({"_id": oid})
    logger.info("%s deleted asset %s", hr["email"], oid)


def _load_asset(db: Database, asset_id) -> Optional[dict]:
    return db[ASSETS].find_one({"_id": asset_id})


# ------------------- Requests -------------------

def submit_request(db: Database, employee: dict, asset_id: str, note: Optional[str] = None) -> dict:
    oid = to_object_id(asset_id, "asset")
    asset = _load_asset(db, oid)
    if not asset:
        raise NotFound("Asset not found")
    if asset.get("availableQuantity", 0) < 1:
        raise Unavailable("Asset is out of stock")

    request = AssetRequest(
        asset_id=oid,
        asset_name=asset["productName"],
        asset_type=asset["productType"],
        asset_image=asset.get("productImage"),
        requester_name=employee.get("name"),
        requester_email=employee["email"],
        hr_email=asset["hrEmail"],
        company_name=asset["companyName"],
        request_date=utcnow(),
        note=note or "",
    ).model_dump(by_alias=True, exclude_none=True)

    # the pending key is the upsert filter and a unique partial index, so at most
    # one pending request per employee and asset survives concurrent submits
    key = {
        "assetId": oid,
        "requesterEmail": employee["email"],
        "requestStatus": RequestStatus.PENDING.value,
    }
    now = utcnow()
    on_insert = {k: v for k, v in request.items() if k not in key}
    on_insert["createdAt"] = now
    on_insert["updatedAt"] = now
    try:
        result = db[REQUESTS].update_one(key, {"$setOnInsert": on_insert}, upsert=True)
    except DuplicateKeyError:
        logger.info("%s lost a concurrent submit for asset %s", employee["email"], oid)
        raise Conflict("You already have a pending request for this asset")
    if result.upserted_id is None:
        raise Conflict("You already have a pending request for this asset")
    logger.info("%s requested asset %s (request %s)", employee["email"], oid, result.upserted_id)
    return db[REQUESTS].find_one({"_id": result.upserted_id})


def _load_own_request(db: Database, hr: dict, request_id: str) -> dict:
    request = db[REQUESTS].find_one({"_id": to_object_id(request_id, "request")})
    if not request:
        raise NotFound("Request not found")
    if request.get("hrEmail") != hr["email"]:
        raise Forbidden("Request belongs to another company")
    return request


def approve_request(db: Database, hr: dict, request_id: str) -> dict:
    """Approve a pending request and hand the asset to the requester.

    Checks run before any write: request still pending, a unit in stock, the
    employee not already holding this asset, the HR seat limit. The writes
    then run in order (request, inventory, assignment, affiliation + seat),
    each one conditional, and are undone if a later one fails.
    """
    request = _load_own_request(db, hr, request_id)
    req_oid = request["_id"]
    if not hr.get("companyName"):
        raise InvalidInput("HR profile has no company name")
    check_transition(REQUEST_TRANSITIONS, RequestStatus(request["requestStatus"]), RequestStatus.APPROVED)

    asset = _load_asset(db, request["assetId"])
    if not asset:
        raise NotFound("Asset not found")
    if asset.get("availableQuantity", 0) < 1:
        raise Unavailable("Asset is out of stock")

    employee_email = request["requesterEmail"]
    already_holds = db[ASSIGNED_ASSETS].find_one({
        "assetId": asset["_id"],
        "employeeEmail": employee_email,
        "status": AssignmentStatus.ASSIGNED.value,
    })
    if already_holds:
        raise Conflict("Employee already holds this asset")

    limit = hr.get("packageLimit")
    if limit and hr.get("currentEmployees", 0) >= limit:
        raise LimitReached("Employee limit reached, upgrade your package")

    now = utcnow()
    undo = Compensations(f"approve request {req_oid}")
    try:
        approved = transition(
            db[REQUESTS], req_oid, "requestStatus", REQUEST_TRANSITIONS,
            RequestStatus.PENDING, RequestStatus.APPROVED,
            {"approvalDate": now, "processedBy": hr["email"]},
        )
        if approved is None:
            raise InvalidState("Request was already processed")
        undo.add("request approval", lambda: db[REQUESTS].update_one(
            {"_id": req_oid},
            {"$set": {"requestStatus": RequestStatus.PENDING.value},
             "$unset": {"approvalDate": "", "processedBy": ""}},
        ))

        if take_unit(db, asset["_id"]) is None:
            raise Unavailable("Asset is out of stock")
        undo.add("inventory decrement", lambda: put_back_unit(db, asset["_id"]))

        assignment = AssignedAsset(
            request_id=req_oid,
            asset_id=asset["_id"],
            asset_name=request["assetName"],
            asset_type=request["assetType"],
            asset_image=request.get("assetImage"),
            employee_email=employee_email,
            employee_name=request.get("requesterName"),
            hr_email=hr["email"],
            company_name=hr["companyName"],
            assignment_date=now,
        ).model_dump(by_alias=True, exclude_none=True)
        assignment_id = db[ASSIGNED_ASSETS].insert_one(assignment).inserted_id
        undo.add("assignment", lambda: db[ASSIGNED_ASSETS].delete_one({"_id": assignment_id}))

        new_member = _affiliate(db, hr, request, now, undo)
    except Exception:
        undo.rollback()
        raise

    logger.info(
        "%s approved request %s, assigned %s to %s%s",
        hr["email"], req_oid, asset["_id"], employee_email, " (new team member)" if new_member else "",
    )
    assignment["_id"] = assignment_id
    return assignment


def _affiliate(db: Database, hr: dict, request: dict, now, undo: Compensations) -> bool:
    """Make the requester an active member of the HR's team.

    Returns True when this call added the member and took a seat.
    """
    employee_email = request["requesterEmail"]
    affiliations = db[EMPLOYEE_AFFILIATIONS]
    existing = affiliations.find_one({"employeeEmail": employee_email, "hrEmail": hr["email"]})
    if existing and existing.get("status") == AffiliationStatus.ACTIVE.value:
        return False

    if existing:
        revived = transition(
            affiliations, existing["_id"], "status", AFFILIATION_TRANSITIONS,
            AffiliationStatus.INACTIVE, AffiliationStatus.ACTIVE,
            {"affiliationDate": now},
        )
        if revived is None:
            return False
        undo.add("affiliation reactivation", lambda: affiliations.update_one(
            {"_id": existing["_id"]},
            {"$set": {"status": AffiliationStatus.INACTIVE.value, "affiliationDate": existing.get("affiliationDate")}},
        ))
    else:
        doc = EmployeeAffiliation(
            employee_email=employee_email,
            employee_name=request.get("requesterName"),
            hr_email=hr["email"],
            company_name=hr["companyName"],
            company_logo=hr.get("companyLogo"),
            affiliation_date=now,
        ).model_dump(by_alias=True, exclude_none=True)
        try:
            affiliation_id = affiliations.insert_one(doc).inserted_id
        except DuplicateKeyError:
            # joined by a concurrent approval
            return False
        undo.add("affiliation", lambda: affiliations.delete_one({"_id": affiliation_id}))

    if not reserve_seat(db, hr):
        raise LimitReached("Employee limit reached, upgrade your package")
    undo.add("seat reservation", lambda: release_seat(db, hr["email"]))

    entry = CompanyAffiliation(
        company_name=hr["companyName"],
        company_logo=hr.get("companyLogo"),
        hr_email=hr["email"],
        approved_by=hr["email"],
        approved_at=now,
    ).model_dump(by_alias=True, exclude_none=True)
    db[USERS].update_one(
        {"email": employee_email, "companyAffiliations.companyName": {"$ne": hr["companyName"]}},
        {"$push": {"companyAffiliations": entry}},
    )
    return True


def reject_request(db: Database, hr: dict, request_id: str) -> dict:
    request = _load_own_request(db, hr, request_id)
    rejected = transition(
        db[REQUESTS], request["_id"], "requestStatus", REQUEST_TRANSITIONS,
        RequestStatus(request["requestStatus"]), RequestStatus.REJECTED,
        {"approvalDate": utcnow(), "processedBy": hr["email"]},
    )
    if rejected is None:
        raise InvalidState("Request was already processed")
    logger.info("%s rejected request %s", hr["email"], request["_id"])
    return rejected


# ------------------- Assignments -------------------

def return_asset(db: Database, employee: dict, assigned_asset_id: str) -> dict:
    oid = to_object_id(assigned_asset_id, "assigned asset")
    assignment = db[ASSIGNED_ASSETS].find_one({"_id": oid})
    if not assignment:
        raise NotFound("Assigned asset not found")
    if assignment.get("employeeEmail") != employee["email"]:
        raise InvalidState("This asset is not assigned to you")

    now = utcnow()
    undo = Compensations(f"return assignment {oid}")
    try:
        returned = transition(
            db[ASSIGNED_ASSETS], oid, "status", ASSIGNMENT_TRANSITIONS,
            AssignmentStatus(assignment["status"]), AssignmentStatus.RETURNED,
            {"returnDate": now},
        )
        if returned is None:
            raise InvalidState("Asset was already returned")
        undo.add("assignment return", lambda: db[ASSIGNED_ASSETS].update_one(
            {"_id": oid},
            {"$set": {"status": AssignmentStatus.ASSIGNED.value}, "$unset": {"returnDate": ""}},
        ))

        if put_back_unit(db, assignment["assetId"]):
            undo.add("inventory increment", lambda: take_unit(db, assignment["assetId"]))

        request_id = assignment.get("requestId")
        if request_id is not None:
            closed = transition(
                db[REQUESTS], request_id, "requestStatus", REQUEST_TRANSITIONS,
                RequestStatus.APPROVED, RequestStatus.RETURNED,
                {"returnDate": now},
            )
            if closed is None:
                logger.warning("Request %s was not approved when its asset came back", request_id)
    except Exception:
        undo.rollback()
        raise

    logger.info("%s returned assignment %s", employee["email"], oid)
    return returned


# ------------------- Team -------------------

def remove_employee(db: Database, hr: dict, employee_email: str) -> dict:
    """Drop an employee from the HR's team. Assets they hold stay assigned."""
    affiliation = db[EMPLOYEE_AFFILIATIONS].find_one({
        "employeeEmail": employee_email,
        "hrEmail": hr["email"],
        "status": AffiliationStatus.ACTIVE.value,
    })
    if not affiliation:
        raise NotFound("Employee is not in your team")

    removed = transition(
        db[EMPLOYEE_AFFILIATIONS], affiliation["_id"], "status", AFFILIATION_TRANSITIONS,
        AffiliationStatus.ACTIVE, AffiliationStatus.INACTIVE,
        {"removedAt": utcnow()},
    )
    if removed is None:
        raise InvalidState("Employee was already removed")
    if not release_seat(db, hr["email"]):
        logger.warning("%s had no seat to release for %s", hr["email"], employee_email)
    db[USERS].update_one(
        {"email": employee_email},
        {"$pull": {"companyAffiliations": {"companyName": hr["companyName"]}}},
    )
    logger.info("%s removed %s from the team", hr["email"], employee_email)
    return removed
