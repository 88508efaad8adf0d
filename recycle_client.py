"""
Typed client for the Recycle-IT API.

Every call returns `Ok(data)` or `Err(kind, message, status_code)`; nothing
raises for HTTP or transport failures. Form payloads are checked before any
request is sent, and a 401 from the backend clears the injected session.
"""
import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, MutableMapping, Optional, Protocol, Union

import httpx

from pickup_workflow import (
    ErrorKind,
    InspectionCondition,
    PickupStatus,
    WorkflowError,
    can_transition,
)

logger = logging.getLogger(__name__)

PINCODE_RE = re.compile(r"^[0-9]{6}$")
PHONE_RE = re.compile(r"^[0-9]{10}$")
MIN_PASSWORD_LENGTH = 6

TOKEN_KEYS = {"recycler": "recyclerToken", "admin": "adminToken", "user": "userToken"}
LEGACY_KEYS = ("pickups", "testimonials", "recycler", "assigned_ewaste")

PICKUP_REQUIRED = (
    "device_type", "brand", "model", "condition", "pickup_address",
    "city", "state", "pincode", "preferred_pickup_date",
)

FALLBACK_MESSAGES = {
    ErrorKind.VALIDATION: "Invalid request",
    ErrorKind.UNAUTHORIZED: "Session expired, please log in again",
    ErrorKind.FORBIDDEN: "You are not allowed to do that",
    ErrorKind.NOT_FOUND: "Not found",
    ErrorKind.CONFLICT: "The record was changed by someone else",
    ErrorKind.SERVER: "Something went wrong, please try again",
}


# ------------------ Session ------------------
class Session(Protocol):
    def get_token(self) -> Optional[str]:
        ...

    def set_token(self, token: str) -> None:
        ...

    def clear_session(self) -> None:
        ...


class KeyValueSession:
    """Keeps one role's token in any mutable mapping (a dict, a shelf, ...)."""

    def __init__(self, storage: MutableMapping[str, Any], key: str = "userToken"):
        self.storage = storage
        self.key = key

    @classmethod
    def for_role(cls, storage: MutableMapping[str, Any], role: str) -> "KeyValueSession":
        return cls(storage, TOKEN_KEYS[role])

    def get_token(self) -> Optional[str]:
        return self.storage.get(self.key)

    def set_token(self, token: str) -> None:
        self.storage[self.key] = token

    def clear_session(self) -> None:
        self.storage.pop(self.key, None)


# ------------------ Results ------------------
@dataclass
class Ok:
    data: Any = None
    message: Optional[str] = None
    ok: bool = True


@dataclass
class Err:
    kind: ErrorKind
    message: str
    status_code: Optional[int] = None
    ok: bool = False


Result = Union[Ok, Err]


def invalid(message: str) -> Err:
    return Err(ErrorKind.VALIDATION, message)


def unwrap(body: dict) -> Any:
    if "data" in body:
        return body["data"]
    for key in LEGACY_KEYS:
        if key in body:
            return body[key]
    return None


def kind_for(status_code: int, body: dict) -> ErrorKind:
    try:
        return ErrorKind(body.get("error"))
    except ValueError:
        pass
    if status_code == 400:
        return ErrorKind.VALIDATION
    if status_code == 401:
        return ErrorKind.UNAUTHORIZED
    if status_code == 403:
        return ErrorKind.FORBIDDEN
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 409:
        return ErrorKind.CONFLICT
    return ErrorKind.SERVER


# ------------------ Form checks ------------------
def validate_pickup_form(form: Dict[str, Any], today: Optional[date] = None) -> Optional[Err]:
    missing = [f for f in PICKUP_REQUIRED if not str(form.get(f) or "").strip()]
    if missing:
        return invalid(f"Missing required fields: {', '.join(missing)}")
    if not PINCODE_RE.match(str(form["pincode"])):
        return invalid("Pincode must be 6 digits")
    purchase = form.get("purchase_date")
    if purchase:
        try:
            purchased_on = purchase if isinstance(purchase, date) else date.fromisoformat(str(purchase))
        except ValueError:
            return invalid("Purchase date must be a valid date")
        if purchased_on > (today or date.today()):
            return invalid("Purchase date cannot be in the future")
    weight = form.get("weight")
    if weight not in (None, ""):
        try:
            weight = float(weight)
        except (TypeError, ValueError):
            return invalid("Weight must be a number")
        if weight < 0:
            return invalid("Weight cannot be negative")
    return None


def validate_registration(form: Dict[str, Any]) -> Optional[Err]:
    if not PHONE_RE.match(str(form.get("phone_number") or "")):
        return invalid("Phone number must be 10 digits")
    if len(form.get("password") or "") < MIN_PASSWORD_LENGTH:
        return invalid(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if "pincode" in form and not PINCODE_RE.match(str(form.get("pincode") or "")):
        return invalid("Pincode must be 6 digits")
    return None


def validate_inspection(condition, estimated_value) -> Optional[Err]:
    try:
        InspectionCondition(condition)
    except ValueError:
        return invalid(f"Condition must be one of: {', '.join(c.value for c in InspectionCondition)}")
    try:
        value = float(estimated_value)
    except (TypeError, ValueError):
        return invalid("Estimated value must be a number")
    if value < 0:
        return invalid("Estimated value cannot be negative")
    return None


# ------------------ Agreements ------------------
class LegalAgreement:
    """Two-step acceptance: Terms & Conditions first, then Code of Conduct."""

    TERMS = "terms"
    CONDUCT = "conduct"

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.terms_accepted = False
        self.conduct_accepted = False
        self.step = self.TERMS

    def accept_terms(self) -> None:
        self.terms_accepted = True
        self.step = self.CONDUCT

    def accept_conduct(self) -> None:
        if not self.terms_accepted:
            raise ValueError("Accept the Terms & Conditions first")
        self.conduct_accepted = True

    @property
    def can_proceed(self) -> bool:
        return self.terms_accepted and self.conduct_accepted

    def as_payload(self) -> Dict[str, bool]:
        return {"terms_accepted": self.terms_accepted, "conduct_accepted": self.conduct_accepted}


# ------------------ Client ------------------
class RecycleItClient:
    def __init__(self, base_url: str, session: Session, http: Optional[httpx.Client] = None,
                 timeout: float = 10.0):
        self.session = session
        self.http = http or httpx.Client(base_url=base_url, timeout=timeout)

    def close(self) -> None:
        self.http.close()

    def request(self, method: str, path: str, **kwargs) -> Result:
        headers = kwargs.pop("headers", {})
        token = self.session.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = self.http.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            return Err(ErrorKind.NETWORK, "Network error, please check your connection")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        if response.status_code == 401:
            self.session.clear_session()
            return Err(ErrorKind.UNAUTHORIZED, body.get("message") or FALLBACK_MESSAGES[ErrorKind.UNAUTHORIZED], 401)
        if response.is_success and body.get("success", True):
            return Ok(unwrap(body), body.get("message"))
        kind = kind_for(response.status_code, body)
        return Err(kind, body.get("message") or FALLBACK_MESSAGES.get(kind, "Request failed"), response.status_code)

    def _store_token(self, result: Result) -> Result:
        if result.ok and isinstance(result.data, dict) and result.data.get("token"):
            self.session.set_token(result.data["token"])
        return result

    # accounts
    def register_user(self, form: Dict[str, Any]) -> Result:
        return invalid_or(validate_registration(form), lambda: self.request("POST", "/users/register", json=form))

    def verify_user_otp(self, email: str, otp: str) -> Result:
        return self._store_token(self.request("POST", "/users/verify-otp", json={"email": email, "otp": otp}))

    def login_user(self, email: str, password: str) -> Result:
        return self._store_token(self.request("POST", "/users/login", json={"email": email, "password": password}))

    def register_recycler(self, form: Dict[str, Any], agreement: Optional[LegalAgreement] = None) -> Result:
        """Data carries `must_accept_terms` when login will still be refused."""
        payload = dict(form)
        if agreement is not None:
            payload.update(agreement.as_payload())
        return invalid_or(validate_registration(payload),
                          lambda: self.request("POST", "/recyclers/register", json=payload))

    def verify_recycler_otp(self, email: str, otp: str) -> Result:
        return self._store_token(self.request("POST", "/recyclers/verify-otp", json={"email": email, "otp": otp}))

    def accept_terms(self, email: str, password: str, agreement: LegalAgreement) -> Result:
        payload = {"email": email, "password": password}
        payload.update(agreement.as_payload())
        return self._store_token(self.request("POST", "/recyclers/accept-terms", json=payload))

    def login(self, email: str, password: str) -> Result:
        return self._store_token(self.request("POST", "/recyclers/login", json={"email": email, "password": password}))

    def admin_login(self, email: str, password: str) -> Result:
        return self._store_token(self.request("POST", "/admin/login", json={"email": email, "password": password}))

    def logout(self) -> None:
        self.session.clear_session()

    # pickups
    def schedule_pickup(self, form: Dict[str, Any]) -> Result:
        payload = {k: (v.isoformat() if isinstance(v, date) else v) for k, v in form.items()}
        return invalid_or(validate_pickup_form(form), lambda: self.request("POST", "/schedule-pickup", json=payload))

    def list_pickups(self, status: Optional[str] = None) -> Result:
        params = {"status": status} if status else None
        return self.request("GET", "/schedule-pickup", params=params)

    def user_pickups(self, user_id: str) -> Result:
        return self.request("GET", f"/schedule-pickup/user/{user_id}")

    def get_pickup(self, pickup_id: str) -> Result:
        return self.request("GET", f"/schedule-pickup/{pickup_id}")

    def track_pickup(self, pickup_id: str) -> Result:
        return self.request("GET", f"/schedule-pickup/{pickup_id}/track")

    def accept_pickup(self, pickup_id: str) -> Result:
        return self.request("PUT", f"/schedule-pickup/{pickup_id}/assign-recycler", json={})

    def update_pickup_status(self, pickup_id: str, status: str, current_status: Optional[str] = None,
                             reason: Optional[str] = None) -> Result:
        if current_status is not None:
            try:
                allowed = can_transition(current_status, status)
            except WorkflowError:
                allowed = False
            if not allowed:
                return Err(ErrorKind.INVALID_TRANSITION, f"Cannot move pickup from '{current_status}' to '{status}'")
        if status == PickupStatus.CANCELLED.value and not (reason and reason.strip()):
            return invalid("A reason is required to cancel a pickup")
        return self.request("PUT", f"/schedule-pickup/{pickup_id}/status", json={"status": status, "reason": reason})

    def assign_partner(self, pickup_id: str, partner_id: str) -> Result:
        return self.request("PUT", f"/schedule-pickup/{pickup_id}/assign-partner", json={"partner_id": partner_id})

    def cancel_pickup(self, pickup_id: str, reason: str) -> Result:
        if not (reason and reason.strip()):
            return invalid("A reason is required to cancel a pickup")
        return self.request("PUT", f"/schedule-pickup/{pickup_id}/cancel", json={"reason": reason})

    # inspection & payment
    def assigned_ewaste(self) -> Result:
        return self.request("GET", "/recyclers/assigned-ewaste")

    def confirm_received(self, pickup_id: str) -> Result:
        return self.request("PUT", f"/recycler-pickup/{pickup_id}/confirm-received")

    def start_inspection(self, pickup_id: str) -> Result:
        return self.request("PUT", f"/recycler-pickup/{pickup_id}/inspection-status", json={"status": "in_progress"})

    def complete_inspection(self, pickup_id: str, condition: str, estimated_value, **details) -> Result:
        payload = {"condition": condition, "estimated_value": estimated_value}
        payload.update(details)
        return invalid_or(validate_inspection(condition, estimated_value),
                          lambda: self.request("PUT", f"/recycler-pickup/{pickup_id}/inspect", json=payload))

    def propose_payment(self, inspection_id: str, amount, notes: Optional[str] = None) -> Result:
        try:
            if float(amount) < 0:
                return invalid("Amount cannot be negative")
        except (TypeError, ValueError):
            return invalid("Amount must be a number")
        return self.request("PUT", f"/recycler-pickup/{inspection_id}/propose-payment",
                            json={"amount": amount, "notes": notes})

    def finalize_payment(self, payment_id: str) -> Result:
        return self.request("PUT", f"/recycler-pickup/{payment_id}/finalize-payment")

    def reject_device(self, inspection_id: str, reason: str) -> Result:
        if not (reason and reason.strip()):
            return invalid("A rejection reason is required")
        return self.request("PUT", f"/recycler-pickup/{inspection_id}/reject", json={"reason": reason})

    def send_inspection_report(self, inspection_id: str) -> Result:
        return self.request("GET", f"/recycler-pickup/{inspection_id}/send-report")

    def payment_history(self) -> Result:
        return self.request("GET", "/payments/history")

    # delivery partners
    def list_partners(self, **filters) -> Result:
        return self.request("GET", "/delivery-partners", params=filters or None)

    def create_partner(self, form: Dict[str, Any]) -> Result:
        return self.request("POST", "/delivery-partners", json=form)

    def set_partner_availability(self, partner_id: str, is_available: bool) -> Result:
        return self.request("PATCH", f"/delivery-partners/{partner_id}/availability",
                            json={"is_available": is_available})

    def available_partners(self, city: str, pincode: str) -> Result:
        if not PINCODE_RE.match(pincode or ""):
            return invalid("Pincode must be 6 digits")
        return self.request("GET", "/delivery-partners/available", params={"city": city, "pincode": pincode})

    # testimonials
    def add_testimonial(self, recycler_id: str, feedback: str, rating: int) -> Result:
        try:
            if not 1 <= int(rating) <= 5:
                return invalid("Rating must be between 1 and 5")
        except (TypeError, ValueError):
            return invalid("Rating must be a number")
        return self.request("POST", "/testimonials",
                            json={"recycler_id": recycler_id, "feedback": feedback, "rating": rating})

    def recycler_testimonials(self, recycler_id: str) -> Result:
        return self.request("GET", f"/testimonials/recycler/{recycler_id}")

    def my_testimonials(self) -> Result:
        return self.request("GET", "/testimonials/my-testimonials")

    # admin
    def admin_stats(self) -> Result:
        return self.request("GET", "/admin/stats")

    def admin_recyclers(self) -> Result:
        return self.request("GET", "/admin/recyclers")

    def approve_recycler(self, recycler_id: str, approval_status: str = "approved") -> Result:
        return self.request("PUT", f"/admin/recyclers/{recycler_id}/verify",
                            json={"approval_status": approval_status})

    def admin_transactions(self) -> Result:
        return self.request("GET", "/admin/transactions")

    def admin_users(self) -> Result:
        return self.request("GET", "/admin/all-users")


def invalid_or(error: Optional[Err], send) -> Result:
    return error if error is not None else send()
