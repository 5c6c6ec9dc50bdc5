"""
Seat packages and Stripe payments.

A payment is recorded once per processor transaction id. The row is marked
applied only after the HR's packageLimit has been raised, so webhook retries
and a second client confirmation either do nothing or finish a failed apply.
"""
import logging
import os
from typing import Optional, Tuple

import stripe
from pymongo.database import Database

from database import PACKAGES, PAYMENTS, USERS, get_documents, to_object_id, utcnow
from errors import Forbidden, InvalidInput, InvalidState, NotFound
from schemas import Package, Payment, Role

logger = logging.getLogger(__name__)

stripe.api_key = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
CLIENT_DOMAIN = os.getenv("CLIENT_DOMAIN", "http://localhost:5173")

DEFAULT_PACKAGES = [
    Package(name="Basic", price=5, employee_limit=5,
            features=["Asset Tracking", "Employee Management", "Basic Support"]),
    Package(name="Standard", price=8, employee_limit=10,
            features=["All Basic features", "Advanced Analytics", "Priority Support"]),
    Package(name="Premium", price=15, employee_limit=20,
            features=["All Standard features", "Custom Branding", "24/7 Support"]),
]


def _field(obj, key: str, default=None):
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def seed_packages(db: Database) -> int:
    if db[PACKAGES].count_documents({}):
        return 0
    db[PACKAGES].insert_many([p.model_dump(by_alias=True) for p in DEFAULT_PACKAGES])
    logger.info("Seeded %d packages", len(DEFAULT_PACKAGES))
    return len(DEFAULT_PACKAGES)


def list_packages(db: Database) -> list:
    return get_documents(db, PACKAGES, sort=[("price", 1)])


def get_package(db: Database, package_id: str) -> dict:
    package = db[PACKAGES].find_one({"_id": to_object_id(package_id, "package")})
    if not package:
        raise NotFound("Package not found")
    return package


def create_checkout_session(db: Database, hr: dict, package_id: str) -> str:
    """Open a Stripe Checkout session for a package and return its URL."""
    package = get_package(db, package_id)
    try:
        session = stripe.checkout.Session.create(
            mode="payment",
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": "usd",
                    "unit_amount": int(round(package["price"] * 100)),
                    "product_data": {
                        "name": f"{package['name']} package",
                        "description": f"Up to {package['employeeLimit']} employees",
                    },
                },
                "quantity": 1,
            }],
            customer_email=hr["email"],
            metadata={
                "hrEmail": hr["email"],
                "packageId": str(package["_id"]),
            },
            success_url=f"{CLIENT_DOMAIN}/dashboard/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{CLIENT_DOMAIN}/dashboard/upgrade-package",
        )
    except stripe.StripeError as e:
        logger.error("Stripe checkout session failed for %s: %s", hr["email"], e, exc_info=True)
        raise
    logger.info("Checkout session %s opened for %s (%s)", session["id"], hr["email"], package["name"])
    return session["url"]


def record_payment(
    db: Database,
    hr_email: str,
    package_id: str,
    transaction_id: str,
) -> Tuple[dict, bool]:
    """Append a completed payment and apply the package seat limit.

    Returns (payment, created). The row carries an `applied` flag that is only
    set once the seat limit has been written, so a retry after a failed limit
    write applies it again while a retry after success leaves the HR alone.
    """
    if not transaction_id:
        raise InvalidInput("Payment has no transaction id")
    package = get_package(db, package_id)
    payment = Payment(
        transaction_id=transaction_id,
        hr_email=hr_email,
        package_id=str(package["_id"]),
        package_name=package["name"],
        employee_limit=package["employeeLimit"],
        amount=package["price"],
        payment_date=utcnow(),
    ).model_dump(by_alias=True)
    on_insert = {k: v for k, v in payment.items() if k != "transactionId"}
    result = db[PAYMENTS].update_one(
        {"transactionId": transaction_id},
        {"$setOnInsert": on_insert},
        upsert=True,
    )
    created = result.upserted_id is not None
    stored = db[PAYMENTS].find_one({"transactionId": transaction_id})
    if stored.get("applied", True):
        logger.info("Payment %s already recorded, skipping", transaction_id)
        return stored, created
    if not created:
        logger.warning("Payment %s was recorded but its seat limit never applied, retrying", transaction_id)

    # the limit stored on the row, not the package as it is now
    employee_limit = stored["employeeLimit"]
    updated = db[USERS].update_one(
        {"email": stored["hrEmail"], "role": Role.HR.value},
        {"$set": {"packageLimit": employee_limit, "updatedAt": utcnow()}},
    )
    if not updated.matched_count:
        logger.warning("Payment %s recorded for unknown HR account %s", transaction_id, stored["hrEmail"])
    db[PAYMENTS].update_one(
        {"transactionId": transaction_id, "applied": False},
        {"$set": {"applied": True}},
    )
    logger.info("%s bought %s (%d seats), transaction %s",
                stored["hrEmail"], stored["packageName"], employee_limit, transaction_id)
    return db[PAYMENTS].find_one({"transactionId": transaction_id}), created


def _record_session(db: Database, session) -> Tuple[dict, bool]:
    metadata = _field(session, "metadata", {})
    hr_email = _field(metadata, "hrEmail")
    package_id = _field(metadata, "packageId")
    if not hr_email or not package_id:
        raise InvalidInput("Checkout session is missing hrEmail/packageId metadata")
    transaction_id = _field(session, "payment_intent") or _field(session, "id")
    return record_payment(db, hr_email, package_id, transaction_id)


def confirm_checkout_session(db: Database, hr: dict, session_id: Optional[str]) -> Tuple[dict, bool]:
    """Client-side confirmation after Stripe redirects back with a session id."""
    if not session_id:
        raise InvalidInput("sessionId is required")
    try:
        session = stripe.checkout.Session.retrieve(session_id)
    except stripe.InvalidRequestError as e:
        logger.warning("Unknown checkout session %s: %s", session_id, e)
        raise NotFound("Checkout session not found")
    if _field(session, "payment_status") != "paid":
        raise InvalidState("Payment is not completed")
    if _field(_field(session, "metadata", {}), "hrEmail") != hr["email"]:
        raise Forbidden("Checkout session belongs to another account")
    return _record_session(db, session)


def handle_webhook(db: Database, payload: bytes, signature: Optional[str]) -> str:
    """Verify a Stripe webhook and apply completed checkouts. Returns the event type."""
    if not STRIPE_WEBHOOK_SECRET:
        logger.error("STRIPE_WEBHOOK_SECRET not configured, rejecting webhook")
        raise InvalidInput("Webhook secret not configured")
    try:
        event = stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
    except ValueError as e:
        logger.warning("Invalid webhook payload: %s", e)
        raise InvalidInput("Invalid payload")
    except stripe.SignatureVerificationError as e:
        logger.warning("Invalid webhook signature: %s", e)
        raise InvalidInput("Invalid signature")

    event_type = _field(event, "type", "unknown")
    logger.info("Stripe webhook %s (%s)", _field(event, "id"), event_type)
    if event_type == "checkout.session.completed":
        session = event["data"]["object"]
        if _field(session, "payment_status") == "paid":
            _record_session(db, session)
        else:
            logger.info("Checkout session %s completed without payment yet", _field(session, "id"))
    return event_type
