import logging
import os
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from database import create_document, ensure_indexes, now_utc, serialize
from evidence import build_evidence, check_upload_count, store_document
from mailer import MailDeliveryError, generate_otp, send_otp_email, send_report_email
from payouts import PAYOUT_CURRENCY, SIGNATURE_HEADER, LedgerGateway, verify_signature
from pickup_workflow import (
    Conflict,
    ErrorKind,
    Forbidden,
    InspectionStatus,
    InvalidTransition,
    NotFound,
    PaymentStatus,
    PickupStatus,
    PreconditionFailed,
    TERMINAL,
    Unauthorized,
    ValidationFailed,
    WorkflowError,
    agreements_complete,
    apply_agreements,
    ensure_agreements,
    ensure_can_complete_inspection,
    ensure_can_finalize,
    ensure_can_propose,
    ensure_can_reject,
    ensure_can_start_inspection,
    ensure_received,
    ensure_transition,
    ensure_verifiable,
    history_entry,
)
from schemas import (
    AcceptTerms,
    Admin,
    ApprovalUpdate,
    AssignPartner,
    AssignRecycler,
    AvailabilityUpdate,
    CancelRequest,
    DeliveryPartnerCreate,
    DeliveryPartnerUpdate,
    Deliverypartner,
    EmailRequest,
    Inspection,
    InspectionReport,
    InspectionStatusUpdate,
    LoginRequest,
    OtpVerify,
    PasswordReset,
    Payment,
    PaymentProposal,
    PayoutEvent,
    Pickup,
    PickupCreate,
    PickupUpdate,
    Recycler,
    RecyclerInspectionStatus,
    RecyclerProfileUpdate,
    RecyclerRegister,
    RejectRequest,
    StatusUpdate,
    TestimonialCreate,
    User,
    UserProfileUpdate,
    UserRegister,
)
from security import (
    create_access_token,
    get_password_hash,
    require_role,
    verify_password,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("recycle_it")

HIDDEN_FIELDS = ("password_hash", "otp", "otp_expiry")

app = FastAPI(title="Recycle-IT API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ------------------ Error envelope ------------------
STATUS_KINDS = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.CONFLICT,
}


def error_response(status_code: int, message: str, kind: ErrorKind, **extra) -> JSONResponse:
    content = {"success": False, "message": message, "error": kind.value}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError):
    return error_response(exc.status_code, exc.message, exc.kind)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    kind = STATUS_KINDS.get(exc.status_code, ErrorKind.SERVER)
    return error_response(exc.status_code, str(exc.detail), kind)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    message = "; ".join(f"{e['field']}: {e['message']}" for e in errors) or "Validation failed"
    return error_response(400, message, ErrorKind.VALIDATION, errors=errors)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error", ErrorKind.SERVER)


def ok(data: Any = None, message: Optional[str] = None, **extra) -> dict:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    body["data"] = data
    body.update(extra)
    return body


# ------------------ Utility ------------------
def ensure_db():
    if database.db is None:
        raise WorkflowError("Database not configured")
    return database.db


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationFailed("Invalid id")


def find_or_404(collection: str, id_str: str, label: str) -> dict:
    doc = ensure_db()[collection].find_one({"_id": oid(id_str)})
    if not doc:
        raise NotFound(f"{label} not found")
    return doc


def public(doc: Optional[dict]) -> Optional[dict]:
    return serialize(doc, hidden=HIDDEN_FIELDS)


def ci_exact(value: str) -> dict:
    return {"$regex": f"^{re.escape(value.strip())}$", "$options": "i"}


@app.on_event("startup")
def on_startup():
    if database.db is None:
        logger.warning("DATABASE_URL not set; running without a database")
        return
    ensure_indexes()
    ensure_admin_user()


def ensure_admin_user():
    db = ensure_db()
    admin_email = os.getenv("ADMIN_EMAIL", "admin@recycleit.com").lower()
    admin_pass = os.getenv("ADMIN_PASSWORD", "admin123")
    if not db["admin"].find_one({"email": admin_email}):
        create_document("admin", Admin(email=admin_email, password_hash=get_password_hash(admin_pass)))
        logger.info("Seeded admin account %s", admin_email)


@app.get("/")
def read_root():
    return {"message": "Recycle-IT Backend Running"}


@app.get("/test")
def test_database():
    try:
        collections = ensure_db().list_collection_names()
        return {"backend": "✅ Running", "database": "✅ Connected", "collections": collections[:10]}
    except Exception as e:
        return {"backend": "✅ Running", "database": f"❌ {str(e)[:80]}"}


# ------------------ Shared account flows ------------------
def issue_otp(collection: str, account: dict, kind: str = "verification") -> bool:
    otp, expiry = generate_otp()
    ensure_db()[collection].update_one(
        {"_id": account["_id"]}, {"$set": {"otp": otp, "otp_expiry": expiry, "updated_at": now_utc()}}
    )
    try:
        send_otp_email(account["email"], otp, kind)
    except MailDeliveryError:
        logger.warning("OTP for %s stored but not delivered; client must resend", account["email"])
        return False
    return True


def consume_otp(collection: str, email: str, otp: str) -> dict:
    db = ensure_db()
    account = db[collection].find_one({"email": email.lower(), "otp": otp})
    if not account or not account.get("otp_expiry") or account["otp_expiry"] < now_utc():
        raise ValidationFailed("Invalid or expired OTP")
    db[collection].update_one(
        {"_id": account["_id"]},
        {"$set": {"otp": None, "otp_expiry": None, "updated_at": now_utc()}},
    )
    return account


def check_credentials(collection: str, email: str, password: str) -> dict:
    account = ensure_db()[collection].find_one({"email": email.lower()})
    if not account or not verify_password(password, account.get("password_hash")):
        raise Unauthorized("Invalid email or password")
    return account


def find_account_by_email(collection: str, email: str, label: str) -> dict:
    account = ensure_db()[collection].find_one({"email": email.lower()})
    if not account:
        raise NotFound(f"{label} not found")
    return account


def reset_account_password(collection: str, payload: PasswordReset) -> None:
    account = consume_otp(collection, payload.email, payload.otp)
    ensure_db()[collection].update_one(
        {"_id": account["_id"]},
        {"$set": {"password_hash": get_password_hash(payload.new_password), "updated_at": now_utc()}},
    )


def token_for(account: dict, role: str) -> str:
    return create_access_token({"sub": str(account["_id"]), "role": role})


# ------------------ Users (consumers) ------------------
@app.post("/users/register", status_code=201)
def register_user(payload: UserRegister):
    db = ensure_db()
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise Conflict("User already exists")
    user = User(
        name=payload.name.strip(),
        email=email,
        password_hash=get_password_hash(payload.password),
        phone_number=payload.phone_number,
        address=payload.address,
    )
    try:
        uid = create_document("user", user)
    except DuplicateKeyError:
        raise Conflict("User already exists")
    otp_sent = issue_otp("user", {"_id": ObjectId(uid), "email": email})
    return ok({"id": uid, "email": email, "otp_sent": otp_sent},
              "User registered successfully. Please verify your email.")


@app.post("/users/verify-otp")
def verify_user_otp(payload: OtpVerify):
    account = consume_otp("user", payload.email, payload.otp)
    ensure_db()["user"].update_one({"_id": account["_id"]}, {"$set": {"is_verified": True}})
    account["is_verified"] = True
    return ok({"token": token_for(account, "user"), "user": public(account)}, "Email verified")


@app.post("/users/login")
def login_user(payload: LoginRequest):
    account = check_credentials("user", payload.email, payload.password)
    if not account.get("is_verified"):
        raise Unauthorized("Please verify your email first")
    return ok({"token": token_for(account, "user"), "user": public(account)})


@app.post("/users/resend-otp")
def resend_user_otp(payload: EmailRequest):
    account = find_account_by_email("user", payload.email, "User")
    return ok({"otp_sent": issue_otp("user", account)}, "New OTP sent to your email")


@app.post("/users/forgot-password")
def forgot_user_password(payload: EmailRequest):
    account = find_account_by_email("user", payload.email, "User")
    return ok({"otp_sent": issue_otp("user", account, "reset")}, "Password reset OTP sent to your email")


@app.post("/users/reset-password")
def reset_user_password(payload: PasswordReset):
    reset_account_password("user", payload)
    return ok(None, "Password reset successful")


@app.get("/users/profile")
def get_user_profile(user=Depends(require_role(["user"]))):
    return ok(public(find_or_404("user", user["id"], "User")))


@app.put("/users/profile")
def update_user_profile(payload: UserProfileUpdate, user=Depends(require_role(["user"]))):
    db = ensure_db()
    find_or_404("user", user["id"], "User")
    changes = payload.model_dump(exclude_none=True)
    if "password" in changes:
        changes["password_hash"] = get_password_hash(changes.pop("password"))
    changes["updated_at"] = now_utc()
    updated = db["user"].find_one_and_update(
        {"_id": oid(user["id"])}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    return ok(public(updated), "Profile updated")


@app.get("/users/recyclers")
def discover_recyclers(city: Optional[str] = None, pincode: Optional[str] = None):
    filt: Dict[str, Any] = {"is_verified": True}
    if city:
        filt["city"] = ci_exact(city)
    if pincode:
        filt["pincode"] = pincode
    fields = ("owner_name", "company_name", "email", "phone_number", "address", "city", "state", "pincode")
    out = []
    for doc in ensure_db()["recycler"].find(filt).sort("created_at", DESCENDING):
        item = {"id": str(doc["_id"])}
        item.update({f: doc.get(f) for f in fields})
        out.append(item)
    return ok(out, total=len(out))


# ------------------ Recyclers ------------------
def agreement_updates(account: dict, terms: bool, conduct: bool) -> dict:
    new_terms, new_conduct = apply_agreements(
        bool(account.get("terms_accepted")), bool(account.get("conduct_accepted")), terms, conduct
    )
    now = now_utc()
    changes: Dict[str, Any] = {}
    if new_terms and not account.get("terms_accepted"):
        changes.update({"terms_accepted": True, "terms_accepted_at": now})
    if new_conduct and not account.get("conduct_accepted"):
        changes.update({"conduct_accepted": True, "conduct_accepted_at": now})
    return changes


def recycler_session(account: dict, message: Optional[str] = None) -> dict:
    """Token when the account is fully gated-in, otherwise what is still missing."""
    must_accept = not agreements_complete(account)
    must_verify = not account.get("is_verified")
    token = None if (must_accept or must_verify) else token_for(account, "recycler")
    return ok({
        "token": token,
        "must_accept_terms": must_accept,
        "must_verify_email": must_verify,
        "recycler": public(account),
    }, message)


@app.post("/recyclers/register", status_code=201)
def register_recycler(payload: RecyclerRegister):
    db = ensure_db()
    email = payload.email.lower()
    company = payload.company_name.strip()
    if db["recycler"].find_one({"$or": [{"email": email}, {"company_name": company}]}):
        raise Conflict("Recycler already exists with this email or company name")

    # validates terms-before-conduct ordering
    terms, conduct = apply_agreements(False, False, payload.terms_accepted, payload.conduct_accepted)
    now = now_utc()
    recycler = Recycler(
        owner_name=payload.owner_name.strip(),
        company_name=company,
        email=email,
        password_hash=get_password_hash(payload.password),
        phone_number=payload.phone_number,
        address=payload.address.strip(),
        city=payload.city.strip(),
        state=payload.state.strip(),
        pincode=payload.pincode,
        terms_accepted=terms,
        terms_accepted_at=now if terms else None,
        conduct_accepted=conduct,
        conduct_accepted_at=now if conduct else None,
    )
    try:
        rid = create_document("recycler", recycler)
    except DuplicateKeyError:
        raise Conflict("Recycler already exists with this email or company name")
    otp_sent = issue_otp("recycler", {"_id": ObjectId(rid), "email": email})
    must_accept = not (terms and conduct)
    message = "Recycler registered successfully. Please verify your email."
    if must_accept:
        message += " Terms & Conditions and Code of Conduct must be accepted before login."
    return ok({"id": rid, "email": email, "otp_sent": otp_sent, "must_accept_terms": must_accept}, message)


@app.post("/recyclers/accept-terms")
def accept_recycler_terms(payload: AcceptTerms):
    db = ensure_db()
    account = check_credentials("recycler", payload.email, payload.password)
    changes = agreement_updates(account, payload.terms_accepted, payload.conduct_accepted)
    if changes:
        changes["updated_at"] = now_utc()
        account = db["recycler"].find_one_and_update(
            {"_id": account["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
        logger.info("Recycler %s accepted agreements: %s", account["email"],
                    ", ".join(k for k in ("terms_accepted", "conduct_accepted") if k in changes))
    return recycler_session(account, "Agreements recorded")


@app.post("/recyclers/verify-otp")
def verify_recycler_otp(payload: OtpVerify):
    account = consume_otp("recycler", payload.email, payload.otp)
    ensure_db()["recycler"].update_one({"_id": account["_id"]}, {"$set": {"is_verified": True}})
    account["is_verified"] = True
    return recycler_session(account, "Email verified")


@app.post("/recyclers/login")
def login_recycler(payload: LoginRequest):
    account = check_credentials("recycler", payload.email, payload.password)
    if not account.get("is_verified"):
        raise Unauthorized("Please verify your email first")
    ensure_agreements(account)
    return ok({"token": token_for(account, "recycler"), "recycler": public(account)})


@app.post("/recyclers/resend-otp")
def resend_recycler_otp(payload: EmailRequest):
    account = find_account_by_email("recycler", payload.email, "Recycler")
    return ok({"otp_sent": issue_otp("recycler", account)}, "New OTP sent to your email")


@app.post("/recyclers/forgot-password")
def forgot_recycler_password(payload: EmailRequest):
    account = find_account_by_email("recycler", payload.email, "Recycler")
    return ok({"otp_sent": issue_otp("recycler", account, "reset")}, "Password reset OTP sent to your email")


@app.post("/recyclers/reset-password")
def reset_recycler_password(payload: PasswordReset):
    reset_account_password("recycler", payload)
    return ok(None, "Password reset successful")


@app.get("/recyclers/profile")
def get_recycler_profile(user=Depends(require_role(["recycler"]))):
    return ok(public(find_or_404("recycler", user["id"], "Recycler")))


@app.put("/recyclers/profile")
def update_recycler_profile(payload: RecyclerProfileUpdate, user=Depends(require_role(["recycler"]))):
    db = ensure_db()
    find_or_404("recycler", user["id"], "Recycler")
    changes = payload.model_dump(exclude_none=True)
    if "password" in changes:
        changes["password_hash"] = get_password_hash(changes.pop("password"))
    changes["updated_at"] = now_utc()
    updated = db["recycler"].find_one_and_update(
        {"_id": oid(user["id"])}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    return ok(public(updated), "Profile updated")


@app.post("/recyclers/upload-documents")
def upload_recycler_documents(documents: List[UploadFile] = File(...), user=Depends(require_role(["recycler"]))):
    db = ensure_db()
    find_or_404("recycler", user["id"], "Recycler")
    check_upload_count(documents)
    stored = [store_document(f, f"documents/{user['id']}") for f in documents]
    updated = db["recycler"].find_one_and_update(
        {"_id": oid(user["id"])},
        {"$push": {"verification_documents": {"$each": stored}}, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    return ok(updated.get("verification_documents", []), "Documents uploaded successfully")


@app.get("/recyclers/assigned-ewaste")
def assigned_ewaste(user=Depends(require_role(["recycler"]))):
    docs = ensure_db()["pickup"].find({"assigned_recycler_id": user["id"]}).sort("updated_at", DESCENDING)
    items = [serialize(d) for d in docs]
    return ok(items, count=len(items))


@app.get("/recyclers/unapproved-device")
def unapproved_devices(user=Depends(require_role(["recycler", "admin"]))):
    docs = ensure_db()["pickup"].find({"pickup_status": PickupStatus.PENDING.value}).sort("preferred_pickup_date", 1)
    items = [serialize(d) for d in docs]
    return ok(items, count=len(items))


@app.put("/recyclers/inspection-status")
def recycler_inspection_status(payload: RecyclerInspectionStatus, user=Depends(require_role(["recycler"]))):
    return change_inspection_status(payload.pickup_id, payload.status, user)


# ------------------ Admin ------------------
@app.post("/admin/login")
def login_admin(payload: LoginRequest):
    account = check_credentials("admin", payload.email, payload.password)
    if not account.get("is_active", True):
        raise Unauthorized("Admin account disabled")
    return ok({"token": token_for(account, "admin"), "admin": public(account)})


def count_by(collection: str, field: str) -> Dict[str, int]:
    rows = ensure_db()[collection].aggregate([{"$group": {"_id": f"${field}", "count": {"$sum": 1}}}])
    return {str(r["_id"]): r["count"] for r in rows}


def recycler_totals(recycler_id: str) -> dict:
    payments = list(ensure_db()["payment"].find({"recycler_id": recycler_id}))
    completed = [p for p in payments if p.get("status") == PaymentStatus.COMPLETED.value]
    return {
        "total_transactions": len(payments),
        "total_amount": sum(p.get("final_amount") or 0 for p in completed),
    }


@app.get("/admin/stats")
def admin_stats(user=Depends(require_role(["admin"]))):
    db = ensure_db()
    now = now_utc()
    revenue_rows = list(db["payment"].aggregate([
        {"$match": {"status": PaymentStatus.COMPLETED.value}},
        {"$group": {"_id": None, "total": {"$sum": "$final_amount"}}},
    ]))
    payments_by_status = count_by("payment", "status")
    return ok({
        "recyclers": {
            "total": db["recycler"].count_documents({}),
            "verified": db["recycler"].count_documents({"is_verified": True}),
            "pending": db["recycler"].count_documents({"is_verified": False}),
            "approved": db["recycler"].count_documents({"approval_status": "approved"}),
            "recent": db["recycler"].count_documents({"created_at": {"$gte": now - timedelta(days=30)}}),
        },
        "pickups": {
            "total": db["pickup"].count_documents({}),
            "by_status": count_by("pickup", "pickup_status"),
            "recent": db["pickup"].count_documents({"created_at": {"$gte": now - timedelta(days=7)}}),
        },
        "transactions": {
            "total": sum(payments_by_status.values()),
            "by_status": payments_by_status,
        },
        "revenue": {"total": revenue_rows[0]["total"] if revenue_rows else 0},
    })


@app.get("/admin/recyclers")
def admin_list_recyclers(user=Depends(require_role(["admin"]))):
    out = []
    for doc in ensure_db()["recycler"].find().sort("created_at", DESCENDING):
        item = public(doc)
        item.update(recycler_totals(item["id"]))
        out.append(item)
    return ok(out, total=len(out))


@app.get("/admin/recyclers/{recycler_id}")
def admin_get_recycler(recycler_id: str, user=Depends(require_role(["admin"]))):
    item = public(find_or_404("recycler", recycler_id, "Recycler"))
    payments = ensure_db()["payment"].find({"recycler_id": recycler_id}).sort("created_at", DESCENDING)
    item["transactions"] = [serialize(p) for p in payments]
    item.update(recycler_totals(recycler_id))
    return ok(item)


@app.put("/admin/recyclers/{recycler_id}/verify")
def admin_verify_recycler(recycler_id: str, payload: ApprovalUpdate, user=Depends(require_role(["admin"]))):
    updated = ensure_db()["recycler"].find_one_and_update(
        {"_id": oid(recycler_id)},
        {"$set": {"approval_status": payload.approval_status, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise NotFound("Recycler not found")
    return ok(public(updated), f"Recycler marked {payload.approval_status}")


@app.get("/admin/transactions")
def admin_transactions(user=Depends(require_role(["admin"]))):
    db = ensure_db()
    recyclers: Dict[str, Optional[dict]] = {}
    out = []
    for payment in db["payment"].find().sort("created_at", DESCENDING):
        rid = payment.get("recycler_id")
        if rid not in recyclers:
            recyclers[rid] = db["recycler"].find_one({"_id": oid(rid)}) if rid and ObjectId.is_valid(rid) else None
        recycler = recyclers[rid] or {}
        item = serialize(payment)
        item.update({
            "recycler_name": recycler.get("owner_name"),
            "company_name": recycler.get("company_name"),
            "recycler_email": recycler.get("email"),
        })
        out.append(item)
    return ok(out, total=len(out))


@app.get("/admin/all-users")
def admin_all_users(user=Depends(require_role(["admin"]))):
    db = ensure_db()
    pickup_counts = {
        r["_id"]: r["count"]
        for r in db["pickup"].aggregate([{"$group": {"_id": "$user_id", "count": {"$sum": 1}}}])
    }
    out = []
    for doc in db["user"].find().sort("created_at", DESCENDING):
        item = public(doc)
        item["total_pickups"] = pickup_counts.get(item["id"], 0)
        out.append(item)
    return ok(out, "All users retrieved successfully", count=len(out))


# ------------------ Pickup lifecycle ------------------
def ensure_pickup_visible(pickup: dict, user: dict) -> None:
    role = user["role"]
    if role == "admin":
        return
    if role == "user" and pickup.get("user_id") == user["id"]:
        return
    if role == "recycler" and (
        pickup.get("assigned_recycler_id") == user["id"]
        or pickup.get("pickup_status") == PickupStatus.PENDING.value
    ):
        return
    raise Forbidden("Not allowed to access this pickup")


def ensure_assigned_recycler(pickup: dict, user: dict) -> None:
    if user["role"] == "admin":
        return
    if user["role"] != "recycler" or pickup.get("assigned_recycler_id") != user["id"]:
        raise Forbidden("Only the assigned recycler can do this")


def transition_pickup(pickup: dict, target, user: dict, reason: Optional[str] = None,
                      extra: Optional[dict] = None) -> dict:
    """Apply one validated status move; fails if the pickup changed underneath us."""
    db = ensure_db()
    current = pickup["pickup_status"]
    target = ensure_transition(current, target, pickup.get("assigned_recycler_id"), reason)

    changes = {"pickup_status": target.value, "updated_at": now_utc()}
    if target is PickupStatus.CANCELLED:
        changes["cancellation_reason"] = reason.strip()
    changes.update(extra or {})
    updated = db["pickup"].find_one_and_update(
        {"_id": pickup["_id"], "pickup_status": current},
        {"$set": changes, "$push": {"status_history": history_entry(current, target, user["id"], user["role"], reason)}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Pickup was modified by someone else; reload and retry")

    if target is PickupStatus.COLLECTED and updated.get("assigned_delivery_agent_id"):
        db["deliverypartner"].update_one(
            {"_id": oid(updated["assigned_delivery_agent_id"])}, {"$inc": {"completed_pickups": 1}}
        )
    logger.info("Pickup %s: %s -> %s by %s %s", pickup["_id"], current, target.value, user["role"], user["id"])
    return updated


def accept_pickup(pickup: dict, recycler_id: str, user: dict) -> dict:
    """First acceptance wins; a concurrent second accept gets Conflict."""
    db = ensure_db()
    current = pickup["pickup_status"]
    target = ensure_transition(current, PickupStatus.SCHEDULED, recycler_id)
    updated = db["pickup"].find_one_and_update(
        {"_id": pickup["_id"], "pickup_status": PickupStatus.PENDING.value, "assigned_recycler_id": None},
        {
            "$set": {"pickup_status": target.value, "assigned_recycler_id": recycler_id, "updated_at": now_utc()},
            "$push": {"status_history": history_entry(current, target, user["id"], user["role"], "Pickup accepted")},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        logger.warning("Recycler %s lost the race to accept pickup %s", recycler_id, pickup["_id"])
        raise Conflict("Pickup has already been accepted by another recycler")
    logger.info("Pickup %s accepted by recycler %s", pickup["_id"], recycler_id)
    return updated


@app.post("/schedule-pickup", status_code=201)
def create_pickup(payload: PickupCreate, user=Depends(require_role(["user"]))):
    find_or_404("user", user["id"], "User")
    pickup = Pickup(user_id=user["id"], **payload.model_dump())
    data = pickup.model_dump(mode="json")
    data["status_history"] = [history_entry(None, PickupStatus.PENDING, user["id"], "user", "Pickup requested")]
    pid = create_document("pickup", data)
    logger.info("Pickup %s created by user %s", pid, user["id"])
    return ok(serialize(find_or_404("pickup", pid, "Pickup")), "Pickup request created")


@app.get("/schedule-pickup")
def list_pickups(status: Optional[PickupStatus] = None, user=Depends(require_role(["recycler", "admin"]))):
    filt: Dict[str, Any] = {}
    if status:
        filt["pickup_status"] = status.value
    if user["role"] == "recycler":
        filt["$or"] = [{"pickup_status": PickupStatus.PENDING.value}, {"assigned_recycler_id": user["id"]}]
    docs = ensure_db()["pickup"].find(filt).sort("created_at", DESCENDING)
    items = [serialize(d) for d in docs]
    return ok(items, count=len(items))


@app.get("/schedule-pickup/user/{user_id}")
def list_user_pickups(user_id: str, user=Depends(require_role(["user", "recycler", "admin"]))):
    if user["role"] == "user" and user["id"] != user_id:
        raise Forbidden("You can only view your own pickups")
    docs = ensure_db()["pickup"].find({"user_id": user_id}).sort("created_at", DESCENDING)
    items = [serialize(d) for d in docs]
    return ok(items, count=len(items))


@app.get("/schedule-pickup/{pickup_id}")
def get_pickup(pickup_id: str, user=Depends(require_role(["user", "recycler", "admin"]))):
    pickup = find_or_404("pickup", pickup_id, "Pickup")
    ensure_pickup_visible(pickup, user)
    return ok(serialize(pickup))


@app.put("/schedule-pickup/{pickup_id}")
def update_pickup(pickup_id: str, payload: PickupUpdate, user=Depends(require_role(["user"]))):
    pickup = find_or_404("pickup", pickup_id, "Pickup")
    if pickup["user_id"] != user["id"]:
        raise Forbidden("You can only edit your own pickups")
    if pickup["pickup_status"] != PickupStatus.PENDING.value:
        raise InvalidTransition("Pickup cannot be updated after confirmation")
    changes = payload.model_dump(mode="json", exclude_none=True)
    changes["updated_at"] = now_utc()
    updated = ensure_db()["pickup"].find_one_and_update(
        {"_id": pickup["_id"], "pickup_status": PickupStatus.PENDING.value},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Pickup was accepted while you were editing it")
    return ok(serialize(updated), "Pickup updated")


@app.put("/schedule-pickup/{pickup_id}/status")
def update_pickup_status(pickup_id: str, payload: StatusUpdate, user=Depends(require_role(["recycler", "admin"]))):
    db = ensure_db()
    pickup = find_or_404("pickup", pickup_id, "Pickup")
    ensure_assigned_recycler(pickup, user)
    if payload.status is PickupStatus.VERIFIED:
        inspection = db["inspection"].find_one({"pickup_id": pickup_id}) or {}
        payment = db["payment"].find_one({"pickup_id": pickup_id}) or {}
        ensure_verifiable(inspection.get("inspection_status"), payment.get("status"))
    updated = transition_pickup(pickup, payload.status, user, payload.reason)
    return ok(serialize(updated), "Pickup status updated")


@app.put("/schedule-pickup/{pickup_id}/assign-recycler")
def assign_recycler(pickup_id: str, payload: AssignRecycler = AssignRecycler(),
                    user=Depends(require_role(["recycler", "admin"]))):
    if user["role"] == "recycler":
        recycler_id = user["id"]
    elif payload.recycler_id:
        recycler_id = payload.recycler_id
    else:
        raise ValidationFailed("recycler_id is required")
    recycler = find_or_404("recycler", recycler_id, "Recycler")
    if not recycler.get("is_verified"):
        raise PreconditionFailed("Recycler has not verified their email")
    pickup = find_or_404("pickup", pickup_id, "Pickup")
    return ok(serialize(accept_pickup(pickup, recycler_id, user)), "Recycler assigned")


@app.put("/schedule-pickup/{pickup_id}/assign-partner")
def assign_partner(pickup_id: str, payload: AssignPartner, user=Depends(require_role(["recycler", "admin"]))):
    db = ensure_db()
    pickup = find_or_404("pickup", pickup_id, "Pickup")
    ensure_assigned_recycler(pickup, user)
    partner = db["deliverypartner"].find_one(
        {"_id": oid(payload.partner_id), "recycler_id": pickup.get("assigned_recycler_id")}
    )
    if not partner:
        raise NotFound("Delivery partner not found")
    if partner.get("status") != "Active" or not partner.get("is_available"):
        raise PreconditionFailed("Delivery partner is not available")
    updated = transition_pickup(
        pickup, PickupStatus.IN_TRANSIT, user, "Delivery partner assigned",
        extra={"assigned_delivery_agent_id": payload.partner_id},
    )
    db["deliverypartner"].update_one({"_id": partner["_id"]}, {"$inc": {"total_pickups": 1}})
    return ok(serialize(updated), "Delivery partner assigned")


@app.put("/schedule-pickup/{pickup_id}/cancel")
def cancel_pickup(pickup_id: str, payload: CancelRequest, user=Depends(require_role(["user"]))):
    pickup = find_or_404("pickup", pickup_id, "Pickup")
    if pickup["user_id"] != user["id"]:
        raise Forbidden("You can only cancel your own pickups")
    if pickup.get("assigned_delivery_agent_id"):
        raise PreconditionFailed("Cannot cancel, delivery agent already assigned")
    updated = transition_pickup(pickup, PickupStatus.CANCELLED, user, payload.reason)
    return ok(serialize(updated), "Pickup cancelled")


@app.get("/schedule-pickup/{pickup_id}/track")
def track_pickup(pickup_id: str, user=Depends(require_role(["user", "recycler", "admin"]))):
    db = ensure_db()
    pickup = find_or_404("pickup", pickup_id, "Pickup")
    ensure_pickup_visible(pickup, user)

    recycler = None
    if pickup.get("assigned_recycler_id"):
        doc = db["recycler"].find_one({"_id": oid(pickup["assigned_recycler_id"])}) or {}
        recycler = {"id": pickup["assigned_recycler_id"], "company_name": doc.get("company_name"),
                    "city": doc.get("city"), "phone_number": doc.get("phone_number")}
    agent = None
    if pickup.get("assigned_delivery_agent_id"):
        doc = db["deliverypartner"].find_one({"_id": oid(pickup["assigned_delivery_agent_id"])}) or {}
        agent = {"id": pickup["assigned_delivery_agent_id"], "name": doc.get("name"),
                 "phone_number": doc.get("phone_number")}
    inspection = db["inspection"].find_one({"pickup_id": pickup_id})
    payment = db["payment"].find_one({"pickup_id": pickup_id})
    return ok({
        "status": pickup["pickup_status"],
        "recycler": recycler,
        "agent": agent,
        "history": pickup.get("status_history", []),
        "inspection": {
            "status": inspection.get("inspection_status"),
            "condition": inspection.get("condition"),
            "estimated_value": inspection.get("estimated_value"),
        } if inspection else None,
        "payment": {
            "status": payment.get("status"),
            "proposed_amount": payment.get("proposed_amount"),
            "final_amount": payment.get("final_amount"),
            "paid_at": payment.get("paid_at"),
        } if payment else None,
    })


# ------------------ Inspection & payment ------------------
REPORT_FIELDS = (
    "condition", "estimated_value", "notes", "physical_damage",
    "working_components", "reusable_semiconductors", "inspection_date",
)

def inspection_for_pickup(pickup_id: str) -> dict:
    inspection = ensure_db()["inspection"].find_one({"pickup_id": pickup_id})
    if not inspection:
        raise NotFound("Inspection not found for this pickup")
    return inspection


def ensure_pickup_open(pickup: dict) -> None:
    if PickupStatus(pickup["pickup_status"]) in TERMINAL:
        raise PreconditionFailed(f"Pickup is already {pickup['pickup_status']}")


def change_inspection_status(pickup_id: str, status: InspectionStatus, user: dict) -> dict:
    pickup = find_or_404("pickup", pickup_id, "Pickup")
    ensure_assigned_recycler(pickup, user)
    ensure_pickup_open(pickup)
    inspection = inspection_for_pickup(pickup_id)
    if status is InspectionStatus.COMPLETED:
        raise ValidationFailed("Submit the inspection report to complete an inspection")
    if status is not InspectionStatus.IN_PROGRESS:
        raise InvalidTransition(f"Inspection cannot move to '{status.value}'")
    current = inspection["inspection_status"]
    target = ensure_can_start_inspection(current)
    updated = ensure_db()["inspection"].find_one_and_update(
        {"_id": inspection["_id"], "inspection_status": current},
        {"$set": {"inspection_status": target.value, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Inspection was modified by someone else; reload and retry")
    return ok(serialize(updated), "Inspection started")


@app.get("/recycler-pickup/recycler/{recycler_id}")
def recycler_inspections(recycler_id: str, user=Depends(require_role(["recycler", "admin"]))):
    if user["role"] == "recycler" and user["id"] != recycler_id:
        raise Forbidden("You can only view your own pickups")
    db = ensure_db()
    out = []
    for inspection in db["inspection"].find({"recycler_id": recycler_id}).sort("created_at", DESCENDING):
        item = serialize(inspection)
        pickup = db["pickup"].find_one({"_id": oid(inspection["pickup_id"])})
        item["pickup"] = serialize(pickup)
        item["payment"] = serialize(db["payment"].find_one({"inspection_id": item["id"]}))
        out.append(item)
    return ok(out, count=len(out))


@app.put("/recycler-pickup/{pickup_id}/confirm-received", status_code=201)
def confirm_received(pickup_id: str, user=Depends(require_role(["recycler", "admin"]))):
    db = ensure_db()
    pickup = find_or_404("pickup", pickup_id, "Pickup")
    ensure_assigned_recycler(pickup, user)
    ensure_received(pickup["pickup_status"])
    if db["inspection"].find_one({"pickup_id": pickup_id}):
        raise Conflict("Device has already been received for inspection")
    try:
        inspection = Inspection(
            pickup_id=pickup_id,
            recycler_id=pickup["assigned_recycler_id"],
            user_id=pickup["user_id"],
        )
        iid = create_document("inspection", inspection.model_dump(mode="json"))
    except DuplicateKeyError:
        raise Conflict("Device has already been received for inspection")
    return ok(serialize(find_or_404("inspection", iid, "Inspection")), "Device received; inspection pending")


@app.put("/recycler-pickup/{pickup_id}/inspection-status")
def update_inspection_status(pickup_id: str, payload: InspectionStatusUpdate,
                             user=Depends(require_role(["recycler", "admin"]))):
    return change_inspection_status(pickup_id, payload.status, user)


@app.put("/recycler-pickup/{pickup_id}/inspect")
def inspect_device(pickup_id: str, payload: InspectionReport, user=Depends(require_role(["recycler", "admin"]))):
    db = ensure_db()
    pickup = find_or_404("pickup", pickup_id, "Pickup")
    ensure_assigned_recycler(pickup, user)
    ensure_pickup_open(pickup)
    inspection = inspection_for_pickup(pickup_id)
    current = inspection["inspection_status"]
    target = ensure_can_complete_inspection(current, payload.condition, payload.estimated_value)

    report = payload.model_dump(mode="json")
    report.update({"inspection_status": target.value, "inspection_date": now_utc(), "updated_at": now_utc()})
    updated = db["inspection"].find_one_and_update(
        {"_id": inspection["_id"], "inspection_status": current},
        {"$set": report},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Inspection was modified by someone else; reload and retry")

    payment = Payment(
        pickup_id=pickup_id,
        inspection_id=str(updated["_id"]),
        recycler_id=updated["recycler_id"],
        user_id=updated["user_id"],
        currency=PAYOUT_CURRENCY,
    )
    create_document("payment", payment.model_dump(mode="json"))
    logger.info("Inspection %s completed for pickup %s", updated["_id"], pickup_id)
    return ok(serialize(updated), "Inspection report updated")


@app.post("/recycler-pickup/{inspection_id}/images")
def upload_inspection_images(inspection_id: str, images: List[UploadFile] = File(...),
                             user=Depends(require_role(["recycler", "admin"]))):
    db = ensure_db()
    inspection = find_or_404("inspection", inspection_id, "Inspection")
    if user["role"] == "recycler" and inspection["recycler_id"] != user["id"]:
        raise Forbidden("Only the assigned recycler can do this")
    check_upload_count(images)

    entries = []
    for image in images:
        entry = build_evidence(image, f"inspections/{inspection_id}")
        match = db["inspection"].find_one(
            {"_id": {"$ne": inspection["_id"]}, "evidence.phash": entry["phash"]}, {"_id": 1}
        )
        if match:
            entry["duplicate_of"] = str(match["_id"])
            logger.warning("Inspection %s image matches evidence on inspection %s", inspection_id, match["_id"])
        entries.append(entry)

    updated = db["inspection"].find_one_and_update(
        {"_id": inspection["_id"]},
        {"$push": {"evidence": {"$each": entries}}, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    return ok({"uploaded": entries, "inspection": serialize(updated)}, "Images uploaded successfully")


def payment_for_inspection(inspection_id: str) -> dict:
    payment = ensure_db()["payment"].find_one({"inspection_id": inspection_id})
    if not payment:
        raise PreconditionFailed("Inspection must be completed before proposing payment")
    return payment


def ensure_owns_record(record: dict, user: dict) -> None:
    if user["role"] == "recycler" and record.get("recycler_id") != user["id"]:
        raise Forbidden("Only the assigned recycler can do this")


@app.put("/recycler-pickup/{inspection_id}/propose-payment")
def propose_payment(inspection_id: str, payload: PaymentProposal, user=Depends(require_role(["recycler", "admin"]))):
    db = ensure_db()
    inspection = find_or_404("inspection", inspection_id, "Inspection")
    ensure_owns_record(inspection, user)
    if inspection["inspection_status"] != InspectionStatus.COMPLETED.value:
        raise PreconditionFailed("Inspection must be completed before proposing payment")
    ensure_pickup_open(find_or_404("pickup", inspection["pickup_id"], "Pickup"))
    payment = payment_for_inspection(inspection_id)
    target = ensure_can_propose(inspection["inspection_status"], payment["status"], payload.amount)
    updated = db["payment"].find_one_and_update(
        {"_id": payment["_id"], "status": payment["status"]},
        {"$set": {"status": target.value, "proposed_amount": payload.amount, "notes": payload.notes,
                  "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Payment was modified by someone else; reload and retry")
    return ok(serialize(updated), "Payment proposed to user")


@app.put("/recycler-pickup/{payment_id}/finalize-payment")
def finalize_payment(payment_id: str, user=Depends(require_role(["recycler", "admin"]))):
    db = ensure_db()
    payment = find_or_404("payment", payment_id, "Payment")
    ensure_owns_record(payment, user)
    target = ensure_can_finalize(payment["status"], payment.get("proposed_amount"))
    pickup = find_or_404("pickup", payment["pickup_id"], "Pickup")
    ensure_received(pickup["pickup_status"])
    inspection = find_or_404("inspection", payment["inspection_id"], "Inspection")
    ensure_verifiable(inspection["inspection_status"], target)
    ensure_transition(pickup["pickup_status"], PickupStatus.VERIFIED, pickup.get("assigned_recycler_id"))

    paid_at = now_utc()
    updated = db["payment"].find_one_and_update(
        {"_id": payment["_id"], "status": PaymentStatus.PROPOSED.value},
        {"$set": {"status": target.value, "final_amount": payment["proposed_amount"], "paid_at": paid_at,
                  "updated_at": paid_at}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Payment was modified by someone else; reload and retry")

    gateway = LedgerGateway(db["payoutintent"])
    try:
        intent = gateway.create_intent(
            updated["final_amount"], updated.get("currency") or PAYOUT_CURRENCY, idempotency_key=payment_id
        )
        updated = db["payment"].find_one_and_update(
            {"_id": updated["_id"]},
            {"$set": {"payout_intent_id": intent.id, "gateway_status": intent.status}},
            return_document=ReturnDocument.AFTER,
        )
        verified = transition_pickup(pickup, PickupStatus.VERIFIED, user, "Inspection and payment completed")
    except WorkflowError:
        # Put the payment back to proposed so finalize can be retried.
        gateway.void_intent(payment_id)
        db["payment"].update_one(
            {"_id": payment["_id"]},
            {"$set": {"status": PaymentStatus.PROPOSED.value, "final_amount": None, "paid_at": None,
                      "payout_intent_id": None, "gateway_status": None, "updated_at": now_utc()}},
        )
        logger.warning("Finalize of payment %s rolled back; pickup %s could not be verified",
                       payment_id, pickup["_id"])
        raise
    return ok({"payment": serialize(updated), "pickup": serialize(verified)}, "Payment finalized")


@app.put("/recycler-pickup/{inspection_id}/reject")
def reject_device(inspection_id: str, payload: RejectRequest, user=Depends(require_role(["recycler", "admin"]))):
    db = ensure_db()
    inspection = find_or_404("inspection", inspection_id, "Inspection")
    ensure_owns_record(inspection, user)
    payment = payment_for_inspection(inspection_id)
    target = ensure_can_reject(payment["status"])
    pickup = find_or_404("pickup", inspection["pickup_id"], "Pickup")
    reason = f"Device rejected: {payload.reason}"
    ensure_transition(pickup["pickup_status"], PickupStatus.CANCELLED, pickup.get("assigned_recycler_id"), reason)

    updated = db["payment"].find_one_and_update(
        {"_id": payment["_id"], "status": payment["status"]},
        {"$set": {"status": target.value, "rejection_reason": payload.reason, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Payment was modified by someone else; reload and retry")
    try:
        cancelled = transition_pickup(pickup, PickupStatus.CANCELLED, user, reason)
    except WorkflowError:
        db["payment"].update_one(
            {"_id": payment["_id"], "status": target.value},
            {"$set": {"status": payment["status"], "rejection_reason": payment.get("rejection_reason"),
                      "updated_at": now_utc()}},
        )
        logger.warning("Reject of inspection %s rolled back; pickup %s could not be cancelled",
                       inspection_id, pickup["_id"])
        raise
    return ok({"payment": serialize(updated), "pickup": serialize(cancelled)}, "Device rejected")


@app.get("/recycler-pickup/{inspection_id}/send-report")
def send_inspection_report(inspection_id: str, user=Depends(require_role(["recycler", "admin"]))):
    inspection = find_or_404("inspection", inspection_id, "Inspection")
    ensure_owns_record(inspection, user)
    if inspection["inspection_status"] != InspectionStatus.COMPLETED.value:
        raise PreconditionFailed("Inspection must be completed before sending the report")
    pickup = find_or_404("pickup", inspection["pickup_id"], "Pickup")
    owner = find_or_404("user", inspection["user_id"], "User")

    report = {field: inspection.get(field) for field in REPORT_FIELDS}
    report.update({
        "inspection_id": inspection_id,
        "pickup_id": inspection["pickup_id"],
        "device": f"{pickup.get('brand')} {pickup.get('model')} ({pickup.get('device_type')})",
    })
    try:
        send_report_email(owner["email"], owner.get("name"), report)
        emailed = True
    except MailDeliveryError:
        emailed = False
    report["emailed"] = emailed
    return ok(report, "Inspection report sent" if emailed else "Inspection report ready; email could not be sent")


@app.post("/payments/webhook")
async def payout_webhook(request: Request):
    body = await request.body()
    verify_signature(body, request.headers.get(SIGNATURE_HEADER))
    try:
        event = PayoutEvent.model_validate_json(body)
    except ValueError:
        raise ValidationFailed("Malformed webhook payload")
    db = ensure_db()
    intent = LedgerGateway(db["payoutintent"]).reconcile(
        event.intent_id, event.event, event.reference, event.failure_reason
    )
    db["payment"].update_one(
        {"payout_intent_id": event.intent_id},
        {"$set": {"gateway_status": intent["status"], "updated_at": now_utc()}},
    )
    return ok({"intent_id": event.intent_id, "status": intent["status"]}, "Webhook processed")


@app.get("/payments/history")
def payment_history(user=Depends(require_role(["user", "recycler"]))):
    db = ensure_db()
    owner_field = "user_id" if user["role"] == "user" else "recycler_id"
    out = []
    for payment in db["payment"].find({owner_field: user["id"]}).sort("created_at", DESCENDING):
        item = serialize(payment)
        pickup = db["pickup"].find_one({"_id": oid(payment["pickup_id"])}) or {}
        recycler = db["recycler"].find_one({"_id": oid(payment["recycler_id"])}) or {}
        item.update({
            "device_type": pickup.get("device_type"),
            "brand": pickup.get("brand"),
            "model": pickup.get("model"),
            "pickup_status": pickup.get("pickup_status"),
            "company_name": recycler.get("company_name"),
        })
        out.append(item)
    return ok(out, count=len(out))


# ------------------ Delivery partners ------------------
PARTNER_SORT_FIELDS = {"created_at", "name", "rating", "total_pickups", "completed_pickups"}


def digits_only(phone: str) -> str:
    phone = re.sub(r"\D", "", phone or "")
    if not re.fullmatch(r"[0-9]{10}", phone):
        raise ValidationFailed("Please enter a valid 10-digit phone number")
    return phone


def with_metrics(partner: dict, at: Optional[datetime] = None) -> dict:
    item = serialize(partner)
    total = partner.get("total_pickups", 0)
    item["success_rate"] = round(partner.get("completed_pickups", 0) / total * 100) if total else 0
    item["vehicle_info"] = f"{partner.get('vehicle_type')} - {partner.get('vehicle_number')}"
    item["is_available_now"] = partner_available_now(partner, at)
    return item


def partner_available_now(partner: dict, at: Optional[datetime] = None) -> bool:
    if not partner.get("is_available") or partner.get("status") != "Active":
        return False
    at = at or datetime.now()
    if at.strftime("%A") not in partner.get("working_days", []):
        return False
    hours = partner.get("working_hours") or {}
    current = at.strftime("%H:%M")
    return bool(hours.get("start")) and bool(hours.get("end")) and hours["start"] <= current <= hours["end"]


def find_partner(partner_id: str, recycler_id: str) -> dict:
    partner = ensure_db()["deliverypartner"].find_one({"_id": oid(partner_id), "recycler_id": recycler_id})
    if not partner:
        raise NotFound("Delivery partner not found")
    return partner


@app.post("/delivery-partners", status_code=201)
def create_delivery_partner(payload: DeliveryPartnerCreate, user=Depends(require_role(["recycler"]))):
    db = ensure_db()
    email = payload.email.lower().strip()
    if db["deliverypartner"].find_one({"recycler_id": user["id"], "email": email}):
        raise Conflict("A delivery partner with this email already exists for your account")
    data = payload.model_dump(exclude_none=True)
    data.update({
        "recycler_id": user["id"],
        "email": email,
        "name": payload.name.strip(),
        "phone_number": digits_only(payload.phone_number),
        "vehicle_number": payload.vehicle_number.upper().strip(),
        "notes": (payload.notes or "").strip(),
    })
    partner = Deliverypartner(**data)
    try:
        pid = create_document("deliverypartner", partner.model_dump(mode="json"))
    except DuplicateKeyError:
        raise Conflict("A delivery partner with this email already exists for your account")
    return ok(with_metrics(find_or_404("deliverypartner", pid, "Delivery partner")),
              "Delivery partner created successfully")


@app.get("/delivery-partners")
def list_delivery_partners(
    status: Optional[str] = None,
    is_available: Optional[bool] = None,
    city: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    user=Depends(require_role(["recycler"])),
):
    filt: Dict[str, Any] = {"recycler_id": user["id"]}
    if status and status != "all":
        filt["status"] = status
    if is_available is not None:
        filt["is_available"] = is_available
    if city:
        filt["service_areas.city"] = {"$regex": re.escape(city), "$options": "i"}
    if sort_by not in PARTNER_SORT_FIELDS:
        raise ValidationFailed(f"Cannot sort by {sort_by}")

    collection = ensure_db()["deliverypartner"]
    total = collection.count_documents(filt)
    docs = (collection.find(filt)
            .sort(sort_by, DESCENDING if sort_order == "desc" else 1)
            .skip((page - 1) * limit)
            .limit(limit))
    total_pages = (total + limit - 1) // limit
    return ok({
        "partners": [with_metrics(d) for d in docs],
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_partners": total,
            "has_next_page": page < total_pages,
            "has_prev_page": page > 1,
            "limit": limit,
        },
    }, "Delivery partners retrieved successfully")


@app.get("/delivery-partners/available")
def available_delivery_partners(city: str, pincode: str, user=Depends(require_role(["recycler", "admin"]))):
    filt: Dict[str, Any] = {
        "is_available": True,
        "status": "Active",
        "service_areas": {"$elemMatch": {"city": ci_exact(city), "pincode": pincode}},
    }
    if user["role"] == "recycler":
        filt["recycler_id"] = user["id"]
    partners = [with_metrics(d) for d in ensure_db()["deliverypartner"].find(filt)]
    return ok({"delivery_partners": partners, "count": len(partners), "area": {"city": city, "pincode": pincode}})


@app.get("/delivery-partners/{partner_id}")
def get_delivery_partner(partner_id: str, user=Depends(require_role(["recycler"]))):
    return ok(with_metrics(find_partner(partner_id, user["id"])))


@app.put("/delivery-partners/{partner_id}")
def update_delivery_partner(partner_id: str, payload: DeliveryPartnerUpdate, user=Depends(require_role(["recycler"]))):
    db = ensure_db()
    find_partner(partner_id, user["id"])
    changes = payload.model_dump(mode="json", exclude_none=True)
    if "phone_number" in changes:
        changes["phone_number"] = digits_only(changes["phone_number"])
    if "vehicle_number" in changes:
        changes["vehicle_number"] = changes["vehicle_number"].upper().strip()
    if "email" in changes:
        changes["email"] = changes["email"].lower().strip()
        clash = db["deliverypartner"].find_one(
            {"_id": {"$ne": oid(partner_id)}, "recycler_id": user["id"], "email": changes["email"]}
        )
        if clash:
            raise Conflict("A delivery partner with this email already exists")
    changes["updated_at"] = now_utc()
    updated = db["deliverypartner"].find_one_and_update(
        {"_id": oid(partner_id), "recycler_id": user["id"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("Delivery partner not found")
    return ok(with_metrics(updated), "Delivery partner updated successfully")


@app.delete("/delivery-partners/{partner_id}")
def delete_delivery_partner(partner_id: str, user=Depends(require_role(["recycler"]))):
    partner = find_partner(partner_id, user["id"])
    ensure_db()["deliverypartner"].delete_one({"_id": partner["_id"]})
    return ok(serialize(partner), "Delivery partner deleted successfully")


@app.patch("/delivery-partners/{partner_id}/availability")
def update_partner_availability(partner_id: str, payload: AvailabilityUpdate,
                                user=Depends(require_role(["recycler"]))):
    find_partner(partner_id, user["id"])
    updated = ensure_db()["deliverypartner"].find_one_and_update(
        {"_id": oid(partner_id), "recycler_id": user["id"]},
        {"$set": {"is_available": payload.is_available, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFound("Delivery partner not found")
    state = "available" if payload.is_available else "unavailable"
    return ok(with_metrics(updated), f"Partner availability updated to {state}")


# ------------------ Testimonials ------------------
def testimonials_with_users(filt: dict) -> List[dict]:
    db = ensure_db()
    out = []
    for doc in db["testimonial"].find(filt).sort("created_at", DESCENDING):
        item = serialize(doc)
        author = db["user"].find_one({"_id": oid(doc["user_id"])}) if ObjectId.is_valid(doc["user_id"]) else None
        item["user"] = {"name": author.get("name"), "email": author.get("email")} if author else None
        out.append(item)
    return out


@app.post("/testimonials", status_code=201)
def add_testimonial(payload: TestimonialCreate, user=Depends(require_role(["user"]))):
    find_or_404("recycler", payload.recycler_id, "Recycler")
    tid = create_document("testimonial", {
        "recycler_id": payload.recycler_id,
        "user_id": user["id"],
        "feedback": payload.feedback.strip(),
        "rating": payload.rating,
    })
    return ok(serialize(find_or_404("testimonial", tid, "Testimonial")), "Testimonial added successfully")


@app.get("/testimonials")
def list_testimonials(user=Depends(require_role(["admin"]))):
    return ok(testimonials_with_users({}))


@app.get("/testimonials/my-testimonials")
def my_testimonials(user=Depends(require_role(["recycler"]))):
    return ok(testimonials_with_users({"recycler_id": user["id"]}))


@app.get("/testimonials/recycler/{recycler_id}")
def recycler_testimonials(recycler_id: str):
    return ok(testimonials_with_users({"recycler_id": recycler_id}))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
