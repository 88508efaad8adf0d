import io
import json

import pytest
from PIL import Image

import evidence
import main
from conftest import auth, pickup_form
from payouts import SIGNATURE_HEADER, sign_payload
from pickup_workflow import Conflict


def png_bytes(color=(200, 30, 30), size=(64, 64)):
    image = Image.new("RGB", size, color)
    for x in range(size[0] // 2):
        image.putpixel((x, x), (0, 0, 0))
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def inspected(client, delivered_pickup):
    """Delivered pickup with a completed inspection; returns ids and headers."""
    user, recycler, pickup_id = delivered_pickup()
    headers = auth(recycler["token"])
    res = client.put(f"/recycler-pickup/{pickup_id}/confirm-received", headers=headers)
    inspection_id = res.json()["data"]["id"]
    res = client.put(f"/recycler-pickup/{pickup_id}/inspect",
                     json={"condition": "fair", "estimated_value": 900}, headers=headers)
    assert res.status_code == 200, res.text
    return {"user": user, "recycler": recycler, "pickup_id": pickup_id,
            "inspection_id": inspection_id, "headers": headers}


def test_receive_requires_delivered(client, make_user, make_recycler):
    user, recycler = make_user(), make_recycler()
    res = client.post("/schedule-pickup", json=pickup_form(), headers=auth(user["token"]))
    pickup_id = res.json()["data"]["id"]
    client.put(f"/schedule-pickup/{pickup_id}/assign-recycler", json={}, headers=auth(recycler["token"]))
    res = client.put(f"/recycler-pickup/{pickup_id}/confirm-received", headers=auth(recycler["token"]))
    assert res.status_code == 409
    assert res.json()["error"] == "precondition_failed"


def test_receive_twice_conflicts(client, delivered_pickup):
    _, recycler, pickup_id = delivered_pickup()
    headers = auth(recycler["token"])
    assert client.put(f"/recycler-pickup/{pickup_id}/confirm-received", headers=headers).status_code == 201
    res = client.put(f"/recycler-pickup/{pickup_id}/confirm-received", headers=headers)
    assert res.status_code == 409
    assert res.json()["error"] == "conflict"


def test_inspect_creates_pending_payment(client, db, inspected):
    payment = db["payment"].find_one({"inspection_id": inspected["inspection_id"]})
    assert payment["status"] == "pending"
    assert payment["pickup_id"] == inspected["pickup_id"]


def test_inspect_twice_is_invalid(client, inspected):
    res = client.put(f"/recycler-pickup/{inspected['pickup_id']}/inspect",
                     json={"condition": "good", "estimated_value": 100}, headers=inspected["headers"])
    assert res.status_code == 409
    assert res.json()["error"] == "invalid_transition"


def test_inspect_rejects_unknown_condition(client, delivered_pickup):
    _, recycler, pickup_id = delivered_pickup()
    headers = auth(recycler["token"])
    client.put(f"/recycler-pickup/{pickup_id}/confirm-received", headers=headers)
    res = client.put(f"/recycler-pickup/{pickup_id}/inspect",
                     json={"condition": "pristine", "estimated_value": 100}, headers=headers)
    assert res.status_code == 400


def test_propose_before_inspection_completes(client, delivered_pickup):
    _, recycler, pickup_id = delivered_pickup()
    headers = auth(recycler["token"])
    inspection_id = client.put(f"/recycler-pickup/{pickup_id}/confirm-received", headers=headers).json()["data"]["id"]
    res = client.put(f"/recycler-pickup/{inspection_id}/propose-payment", json={"amount": 10}, headers=headers)
    assert res.status_code == 409
    assert res.json()["error"] == "precondition_failed"


def test_negative_amount_rejected(client, inspected):
    res = client.put(f"/recycler-pickup/{inspected['inspection_id']}/propose-payment",
                     json={"amount": -5}, headers=inspected["headers"])
    assert res.status_code == 400


def test_finalize_requires_proposal(client, db, inspected):
    payment = db["payment"].find_one({"inspection_id": inspected["inspection_id"]})
    res = client.put(f"/recycler-pickup/{payment['_id']}/finalize-payment", headers=inspected["headers"])
    assert res.status_code == 409
    assert res.json()["error"] == "invalid_transition"


def test_finalize_twice_is_invalid(client, inspected):
    res = client.put(f"/recycler-pickup/{inspected['inspection_id']}/propose-payment",
                     json={"amount": 700}, headers=inspected["headers"])
    payment_id = res.json()["data"]["id"]
    assert client.put(f"/recycler-pickup/{payment_id}/finalize-payment",
                      headers=inspected["headers"]).status_code == 200
    res = client.put(f"/recycler-pickup/{payment_id}/finalize-payment", headers=inspected["headers"])
    assert res.status_code == 409


def test_reject_cancels_pickup(client, db, inspected):
    res = client.put(f"/recycler-pickup/{inspected['inspection_id']}/reject",
                     json={"reason": "Battery swollen"}, headers=inspected["headers"])
    assert res.status_code == 200, res.text
    data = res.json()["data"]
    assert data["payment"]["status"] == "rejected"
    assert data["pickup"]["pickup_status"] == "Cancelled"
    assert data["pickup"]["cancellation_reason"] == "Device rejected: Battery swollen"


def test_other_recycler_cannot_propose(client, inspected, make_recycler):
    other = make_recycler()
    res = client.put(f"/recycler-pickup/{inspected['inspection_id']}/propose-payment",
                     json={"amount": 100}, headers=auth(other["token"]))
    assert res.status_code == 403


def test_recycler_inspection_listing(client, inspected):
    recycler = inspected["recycler"]
    res = client.get(f"/recycler-pickup/recycler/{recycler['id']}", headers=inspected["headers"])
    items = res.json()["data"]
    assert len(items) == 1
    assert items[0]["pickup"]["id"] == inspected["pickup_id"]
    assert items[0]["payment"]["status"] == "pending"


def test_evidence_images_are_hashed(client, db, inspected):
    files = [("images", ("front.png", png_bytes(), "image/png"))]
    res = client.post(f"/recycler-pickup/{inspected['inspection_id']}/images",
                      files=files, headers=inspected["headers"])
    assert res.status_code == 200, res.text
    entry = res.json()["data"]["uploaded"][0]
    assert len(entry["phash"]) == 16
    assert entry["duplicate_of"] is None
    assert entry["width"] == 64


def test_reused_evidence_is_flagged(client, db, inspected):
    contents = png_bytes()
    earlier = db["inspection"].insert_one({
        "pickup_id": "elsewhere",
        "evidence": [{"phash": evidence.image_perceptual_hash(evidence.open_image(contents))}],
    })
    files = [("images", ("front.png", contents, "image/png"))]
    res = client.post(f"/recycler-pickup/{inspected['inspection_id']}/images",
                      files=files, headers=inspected["headers"])
    assert res.json()["data"]["uploaded"][0]["duplicate_of"] == str(earlier.inserted_id)


def test_non_image_upload_rejected(client, inspected):
    files = [("images", ("notes.txt", b"hello", "text/plain"))]
    res = client.post(f"/recycler-pickup/{inspected['inspection_id']}/images",
                      files=files, headers=inspected["headers"])
    assert res.status_code == 400


def finalized_payment(client, inspected):
    res = client.put(f"/recycler-pickup/{inspected['inspection_id']}/propose-payment",
                     json={"amount": 650}, headers=inspected["headers"])
    payment_id = res.json()["data"]["id"]
    res = client.put(f"/recycler-pickup/{payment_id}/finalize-payment", headers=inspected["headers"])
    return res.json()["data"]["payment"]


def post_webhook(client, payload, signature=None):
    body = json.dumps(payload).encode()
    headers = {"Content-Type": "application/json",
               SIGNATURE_HEADER: signature if signature is not None else sign_payload(body)}
    return client.post("/payments/webhook", content=body, headers=headers)


def test_webhook_settles_payout(client, db, inspected):
    payment = finalized_payment(client, inspected)
    assert payment["gateway_status"] == "created"

    res = post_webhook(client, {"event": "payout.captured", "intent_id": payment["payout_intent_id"],
                                "reference": "UTR123"})
    assert res.status_code == 200, res.text
    assert res.json()["data"]["status"] == "captured"
    assert db["payment"].find_one({"payout_intent_id": payment["payout_intent_id"]})["gateway_status"] == "captured"


def test_webhook_replay_is_ignored(client, db, inspected):
    payment = finalized_payment(client, inspected)
    intent_id = payment["payout_intent_id"]
    post_webhook(client, {"event": "payout.captured", "intent_id": intent_id})
    res = post_webhook(client, {"event": "payout.failed", "intent_id": intent_id, "failure_reason": "late"})
    assert res.status_code == 200
    assert db["payoutintent"].find_one({"intent_id": intent_id})["status"] == "captured"


def test_webhook_rejects_bad_signature(client, inspected):
    payment = finalized_payment(client, inspected)
    res = post_webhook(client, {"event": "payout.captured", "intent_id": payment["payout_intent_id"]},
                       signature="deadbeef")
    assert res.status_code == 400


def test_webhook_unknown_intent(client, db):
    res = post_webhook(client, {"event": "payout.captured", "intent_id": "po_missing"})
    assert res.status_code == 404


def test_admin_transactions_join_recycler(client, inspected, admin_token):
    finalized_payment(client, inspected)
    res = client.get("/admin/transactions", headers=auth(admin_token))
    rows = res.json()["data"]
    assert rows[0]["company_name"].startswith("GreenCycle")
    stats = client.get("/admin/stats", headers=auth(admin_token)).json()["data"]
    assert stats["revenue"]["total"] == 650


def propose(client, inspected, amount=100):
    res = client.put(f"/recycler-pickup/{inspected['inspection_id']}/propose-payment",
                     json={"amount": amount}, headers=inspected["headers"])
    assert res.status_code == 200, res.text
    return res.json()["data"]["id"]


def admin_cancel(client, inspected, admin_token):
    res = client.put(f"/schedule-pickup/{inspected['pickup_id']}/status",
                     json={"status": "Cancelled", "reason": "Owner unreachable"}, headers=auth(admin_token))
    assert res.status_code == 200, res.text


def lose_pickup_race(*args, **kwargs):
    raise Conflict("Pickup was modified by someone else; reload and retry")


def test_reject_after_cancel_leaves_payment_alone(client, db, inspected, admin_token):
    propose(client, inspected)
    admin_cancel(client, inspected, admin_token)
    res = client.put(f"/recycler-pickup/{inspected['inspection_id']}/reject",
                     json={"reason": "Battery swollen"}, headers=inspected["headers"])
    assert res.status_code == 409
    assert res.json()["error"] == "invalid_transition"
    payment = db["payment"].find_one({"inspection_id": inspected["inspection_id"]})
    assert payment["status"] == "proposed"
    assert payment["rejection_reason"] is None


def test_reject_rolls_back_when_pickup_moves(client, db, inspected, monkeypatch):
    monkeypatch.setattr(main, "transition_pickup", lose_pickup_race)
    res = client.put(f"/recycler-pickup/{inspected['inspection_id']}/reject",
                     json={"reason": "Battery swollen"}, headers=inspected["headers"])
    assert res.status_code == 409
    assert res.json()["error"] == "conflict"
    payment = db["payment"].find_one({"inspection_id": inspected["inspection_id"]})
    assert payment["status"] == "pending"
    assert payment["rejection_reason"] is None


def test_finalize_after_cancel_changes_nothing(client, db, inspected, admin_token):
    payment_id = propose(client, inspected)
    admin_cancel(client, inspected, admin_token)
    res = client.put(f"/recycler-pickup/{payment_id}/finalize-payment", headers=inspected["headers"])
    assert res.status_code == 409
    assert res.json()["error"] == "precondition_failed"
    assert db["payment"].find_one({"inspection_id": inspected["inspection_id"]})["status"] == "proposed"
    assert db["payoutintent"].count_documents({}) == 0


def test_finalize_rolls_back_when_pickup_moves(client, db, inspected, monkeypatch):
    payment_id = propose(client, inspected, amount=650)
    transition = main.transition_pickup
    monkeypatch.setattr(main, "transition_pickup", lose_pickup_race)
    res = client.put(f"/recycler-pickup/{payment_id}/finalize-payment", headers=inspected["headers"])
    assert res.status_code == 409
    assert res.json()["error"] == "conflict"

    payment = db["payment"].find_one({"inspection_id": inspected["inspection_id"]})
    assert payment["status"] == "proposed"
    assert payment["final_amount"] is None
    assert payment["paid_at"] is None
    assert payment["payout_intent_id"] is None
    assert db["payoutintent"].count_documents({}) == 0

    monkeypatch.setattr(main, "transition_pickup", transition)
    res = client.put(f"/recycler-pickup/{payment_id}/finalize-payment", headers=inspected["headers"])
    assert res.status_code == 200, res.text
    assert res.json()["data"]["pickup"]["pickup_status"] == "Verified"
    assert db["payoutintent"].count_documents({}) == 1


def test_no_proposal_on_cancelled_pickup(client, db, inspected, admin_token):
    admin_cancel(client, inspected, admin_token)
    res = client.put(f"/recycler-pickup/{inspected['inspection_id']}/propose-payment",
                     json={"amount": 100}, headers=inspected["headers"])
    assert res.status_code == 409
    assert res.json()["error"] == "precondition_failed"
    assert db["payment"].find_one({"inspection_id": inspected["inspection_id"]})["status"] == "pending"


def test_no_inspection_on_cancelled_pickup(client, db, delivered_pickup, admin_token):
    _, recycler, pickup_id = delivered_pickup()
    headers = auth(recycler["token"])
    client.put(f"/recycler-pickup/{pickup_id}/confirm-received", headers=headers)
    client.put(f"/schedule-pickup/{pickup_id}/status", json={"status": "Cancelled", "reason": "Lost in transit"},
               headers=auth(admin_token))

    res = client.put(f"/recycler-pickup/{pickup_id}/inspection-status", json={"status": "in_progress"},
                     headers=headers)
    assert res.status_code == 409
    assert res.json()["error"] == "precondition_failed"
    res = client.put(f"/recycler-pickup/{pickup_id}/inspect",
                     json={"condition": "good", "estimated_value": 100}, headers=headers)
    assert res.status_code == 409
    assert res.json()["error"] == "precondition_failed"
    assert db["inspection"].find_one({"pickup_id": pickup_id})["inspection_status"] == "pending"
    assert db["payment"].count_documents({"pickup_id": pickup_id}) == 0


def test_send_report_mails_owner(client, db, inspected):
    res = client.get(f"/recycler-pickup/{inspected['inspection_id']}/send-report", headers=inspected["headers"])
    assert res.status_code == 200, res.text
    report = res.json()["data"]
    assert report["condition"] == "fair"
    assert report["estimated_value"] == 900
    assert report["device"] == "Dell Inspiron 15 (Laptop)"
    assert report["emailed"] is True
    mail = db["emaillog"].find_one({"subject": "Your Device Inspection Report"})
    assert mail["to"] == [inspected["user"]["email"]]
    assert "Condition: fair" in mail["body"]


def test_send_report_needs_completed_inspection(client, delivered_pickup):
    _, recycler, pickup_id = delivered_pickup()
    headers = auth(recycler["token"])
    inspection_id = client.put(f"/recycler-pickup/{pickup_id}/confirm-received", headers=headers).json()["data"]["id"]
    res = client.get(f"/recycler-pickup/{inspection_id}/send-report", headers=headers)
    assert res.status_code == 409
    assert res.json()["error"] == "precondition_failed"


def test_send_report_only_for_own_inspection(client, inspected, make_recycler):
    other = make_recycler()
    res = client.get(f"/recycler-pickup/{inspected['inspection_id']}/send-report", headers=auth(other["token"]))
    assert res.status_code == 403


def test_payment_history_for_user_and_recycler(client, inspected, admin_token):
    finalized_payment(client, inspected)
    res = client.get("/payments/history", headers=auth(inspected["user"]["token"]))
    assert res.status_code == 200, res.text
    rows = res.json()["data"]
    assert len(rows) == 1
    assert rows[0]["status"] == "completed"
    assert rows[0]["final_amount"] == 650
    assert rows[0]["brand"] == "Dell"
    assert rows[0]["pickup_status"] == "Verified"
    assert rows[0]["company_name"].startswith("GreenCycle")

    res = client.get("/payments/history", headers=inspected["headers"])
    assert [r["id"] for r in res.json()["data"]] == [rows[0]["id"]]
    assert client.get("/payments/history", headers=auth(admin_token)).status_code == 403


def test_payment_history_is_per_user(client, inspected, make_user):
    finalized_payment(client, inspected)
    stranger = make_user()
    res = client.get("/payments/history", headers=auth(stranger["token"]))
    assert res.json()["data"] == []
