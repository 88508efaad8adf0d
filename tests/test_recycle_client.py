import json
from datetime import date, timedelta

import httpx
import pytest

from pickup_workflow import ErrorKind
from recycle_client import (
    Err,
    KeyValueSession,
    LegalAgreement,
    Ok,
    RecycleItClient,
    validate_pickup_form,
)


class Recorder:
    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body if body is not None else {"success": True, "data": {}}
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)


def make_client(handler, storage=None, key="recyclerToken"):
    storage = {} if storage is None else storage
    http = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://api.test")
    return RecycleItClient("http://api.test", KeyValueSession(storage, key), http=http), storage


def form(**overrides):
    data = {
        "device_type": "Phone", "brand": "Nokia", "model": "3310", "condition": "Working",
        "pickup_address": "1 Park St", "city": "Kolkata", "state": "WB", "pincode": "700016",
        "preferred_pickup_date": (date.today() + timedelta(days=1)).isoformat(),
    }
    data.update(overrides)
    return data


def test_bad_pincode_never_hits_network():
    recorder = Recorder()
    client, _ = make_client(recorder)
    result = client.schedule_pickup(form(pincode="12345"))
    assert isinstance(result, Err)
    assert result.kind is ErrorKind.VALIDATION
    assert recorder.requests == []


@pytest.mark.parametrize("overrides,message", [
    ({"brand": ""}, "Missing required fields: brand"),
    ({"purchase_date": (date.today() + timedelta(days=1)).isoformat()}, "Purchase date cannot be in the future"),
    ({"weight": "heavy"}, "Weight must be a number"),
    ({"weight": -3}, "Weight cannot be negative"),
])
def test_pickup_form_checks(overrides, message):
    assert validate_pickup_form(form(**overrides)).message == message


def test_valid_pickup_is_sent_with_token():
    recorder = Recorder(201, {"success": True, "message": "Pickup request created", "data": {"id": "p1"}})
    client, _ = make_client(recorder, {"userToken": "tok"}, key="userToken")
    result = client.schedule_pickup(form(purchase_date=date(2020, 1, 1)))
    assert result == Ok({"id": "p1"}, "Pickup request created")
    sent = recorder.requests[0]
    assert sent.headers["Authorization"] == "Bearer tok"
    assert json.loads(sent.content)["purchase_date"] == "2020-01-01"


def test_401_clears_session():
    recorder = Recorder(401, {"success": False, "message": "Token expired", "error": "unauthorized"})
    client, storage = make_client(recorder, {"recyclerToken": "old"})
    result = client.assigned_ewaste()
    assert result.kind is ErrorKind.UNAUTHORIZED
    assert result.message == "Token expired"
    assert "recyclerToken" not in storage


def test_error_kind_and_message_pass_through():
    recorder = Recorder(409, {"success": False, "message": "Pickup has already been accepted by another recycler",
                              "error": "conflict"})
    client, _ = make_client(recorder)
    result = client.accept_pickup("p1")
    assert result == Err(ErrorKind.CONFLICT, "Pickup has already been accepted by another recycler", 409)


def test_fallback_message_without_body():
    client, _ = make_client(lambda request: httpx.Response(500, text="boom"))
    result = client.admin_stats()
    assert result.kind is ErrorKind.SERVER
    assert result.message == "Something went wrong, please try again"


def test_transport_failure_is_network_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client, _ = make_client(handler)
    assert client.list_pickups().kind is ErrorKind.NETWORK


def test_legacy_envelopes_are_unwrapped():
    client, _ = make_client(Recorder(body={"success": True, "assigned_ewaste": [{"id": "p1"}]}))
    assert client.assigned_ewaste().data == [{"id": "p1"}]
    client, _ = make_client(Recorder(body={"success": True, "testimonials": []}))
    assert client.my_testimonials().data == []


def test_transition_checked_before_dispatch():
    recorder = Recorder()
    client, _ = make_client(recorder)
    result = client.update_pickup_status("p1", "Delivered", current_status="Scheduled")
    assert result.kind is ErrorKind.INVALID_TRANSITION
    result = client.update_pickup_status("p1", "Teleported", current_status="Scheduled")
    assert result.kind is ErrorKind.INVALID_TRANSITION
    result = client.update_pickup_status("p1", "Cancelled", current_status="Scheduled")
    assert result.kind is ErrorKind.VALIDATION
    assert recorder.requests == []
    assert client.update_pickup_status("p1", "In Transit", current_status="Scheduled").ok


def test_inspection_checked_before_dispatch():
    recorder = Recorder()
    client, _ = make_client(recorder)
    assert client.complete_inspection("p1", "mint", 100).kind is ErrorKind.VALIDATION
    assert client.complete_inspection("p1", "good", -1).kind is ErrorKind.VALIDATION
    assert recorder.requests == []
    assert client.complete_inspection("p1", "good", 100, notes="ok").ok
    assert json.loads(recorder.requests[0].content)["notes"] == "ok"


def test_registration_checks():
    recorder = Recorder()
    client, _ = make_client(recorder)
    assert client.register_user({"phone_number": "12345", "password": "secret1"}).message == \
        "Phone number must be 10 digits"
    assert client.register_user({"phone_number": "9876543210", "password": "abc"}).kind is ErrorKind.VALIDATION
    assert recorder.requests == []


def test_legal_agreement_stepper():
    agreement = LegalAgreement()
    assert not agreement.can_proceed
    with pytest.raises(ValueError):
        agreement.accept_conduct()
    agreement.accept_terms()
    assert agreement.step == LegalAgreement.CONDUCT
    agreement.accept_conduct()
    assert agreement.can_proceed
    agreement.reset()
    assert agreement.as_payload() == {"terms_accepted": False, "conduct_accepted": False}


def test_register_recycler_sends_agreements_and_reports_gate():
    recorder = Recorder(201, {"success": True, "data": {"id": "r1", "must_accept_terms": False}})
    client, _ = make_client(recorder)
    agreement = LegalAgreement()
    agreement.accept_terms()
    agreement.accept_conduct()
    result = client.register_recycler({"phone_number": "9876543210", "password": "secret1", "pincode": "411001"},
                                      agreement)
    assert result.data["must_accept_terms"] is False
    sent = json.loads(recorder.requests[0].content)
    assert sent["terms_accepted"] and sent["conduct_accepted"]


def test_login_stores_token():
    client, storage = make_client(Recorder(body={"success": True, "data": {"token": "fresh"}}))
    assert client.login("r@example.com", "secret1").ok
    assert storage["recyclerToken"] == "fresh"
    client.logout()
    assert storage == {}


def test_terms_required_login():
    body = {"success": False, "message": "Terms & Conditions and Code of Conduct must be accepted",
            "error": "terms_required"}
    client, storage = make_client(Recorder(403, body))
    result = client.login("r@example.com", "secret1")
    assert result.kind is ErrorKind.TERMS_REQUIRED
    assert storage == {}


def test_client_against_app(client, make_user):
    """The typed client speaks the live app's envelope."""
    user = make_user()
    api = RecycleItClient("http://testserver", KeyValueSession({"userToken": user["token"]}), http=client)
    result = api.schedule_pickup(form())
    assert result.ok, result
    assert result.data["pickup_status"] == "Pending"
    assert api.get_pickup("64b7f0c2a1b2c3d4e5f60718").kind is ErrorKind.NOT_FOUND


@pytest.mark.parametrize("rating,message", [
    ("five", "Rating must be a number"),
    (None, "Rating must be a number"),
    (7, "Rating must be between 1 and 5"),
])
def test_testimonial_rating_checked_before_dispatch(rating, message):
    recorder = Recorder()
    client, _ = make_client(recorder)
    result = client.add_testimonial("r1", "nice", rating)
    assert result == Err(ErrorKind.VALIDATION, message)
    assert recorder.requests == []


def test_report_history_and_users_paths():
    recorder = Recorder()
    client, _ = make_client(recorder, {"recyclerToken": "tok"})
    assert client.send_inspection_report("i1").ok
    assert client.payment_history().ok
    assert client.admin_users().ok
    assert [(r.method, r.url.path) for r in recorder.requests] == [
        ("GET", "/recycler-pickup/i1/send-report"),
        ("GET", "/payments/history"),
        ("GET", "/admin/all-users"),
    ]
