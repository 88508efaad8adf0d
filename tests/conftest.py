import itertools
from datetime import date, timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
import evidence
import main

ADMIN_EMAIL = "admin@recycleit.com"
ADMIN_PASSWORD = "admin123"
PASSWORD = "secret123"

_seq = itertools.count(1)


@pytest.fixture
def db(monkeypatch, tmp_path):
    mock_db = mongomock.MongoClient()["recycle_it_test"]
    monkeypatch.setattr(database, "db", mock_db)
    monkeypatch.setattr(evidence, "STORAGE_DIR", str(tmp_path))
    monkeypatch.setenv("ADMIN_EMAIL", ADMIN_EMAIL)
    monkeypatch.setenv("ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.delenv("SMTP_HOST", raising=False)
    database.ensure_indexes(mock_db)
    main.ensure_admin_user()
    return mock_db


@pytest.fixture
def client(db):
    return TestClient(main.app)


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def pickup_form(**overrides):
    form = {
        "device_type": "Laptop",
        "brand": "Dell",
        "model": "Inspiron 15",
        "purchase_date": "2019-06-01",
        "condition": "Partially Working",
        "weight": 2.2,
        "pickup_address": "12 MG Road",
        "city": "Pune",
        "state": "Maharashtra",
        "pincode": "411001",
        "preferred_pickup_date": (date.today() + timedelta(days=3)).isoformat(),
    }
    form.update(overrides)
    return form


def recycler_form(**overrides):
    n = next(_seq)
    form = {
        "owner_name": f"Owner {n}",
        "company_name": f"GreenCycle {n}",
        "email": f"recycler{n}@example.com",
        "password": PASSWORD,
        "phone_number": "9876543210",
        "address": "Plot 4, MIDC",
        "city": "Pune",
        "state": "Maharashtra",
        "pincode": "411001",
        "terms_accepted": True,
        "conduct_accepted": True,
    }
    form.update(overrides)
    return form


def current_otp(db, collection, email):
    return db[collection].find_one({"email": email.lower()})["otp"]


@pytest.fixture
def make_user(client, db):
    def _make_user():
        n = next(_seq)
        email = f"user{n}@example.com"
        res = client.post("/users/register", json={
            "name": f"User {n}", "email": email, "password": PASSWORD, "phone_number": "9123456780",
        })
        assert res.status_code == 201, res.text
        res = client.post("/users/verify-otp", json={"email": email, "otp": current_otp(db, "user", email)})
        assert res.status_code == 200, res.text
        data = res.json()["data"]
        return {"id": data["user"]["id"], "email": email, "token": data["token"]}
    return _make_user


@pytest.fixture
def make_recycler(client, db):
    def _make_recycler(**overrides):
        form = recycler_form(**overrides)
        res = client.post("/recyclers/register", json=form)
        assert res.status_code == 201, res.text
        res = client.post("/recyclers/verify-otp",
                          json={"email": form["email"], "otp": current_otp(db, "recycler", form["email"])})
        assert res.status_code == 200, res.text
        data = res.json()["data"]
        return {"id": data["recycler"]["id"], "email": form["email"], "token": data["token"]}
    return _make_recycler


@pytest.fixture
def admin_token(client, db):
    res = client.post("/admin/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert res.status_code == 200, res.text
    return res.json()["data"]["token"]


@pytest.fixture
def make_partner(client):
    def _make_partner(recycler, **overrides):
        n = next(_seq)
        body = {
            "name": f"Rider {n}",
            "email": f"rider{n}@example.com",
            "phone_number": "98765 43210",
            "vehicle_type": "Bike",
            "vehicle_number": "mh12ab1234",
            "service_areas": [{"city": "Pune", "pincode": "411001"}],
        }
        body.update(overrides)
        res = client.post("/delivery-partners", json=body, headers=auth(recycler["token"]))
        assert res.status_code == 201, res.text
        return res.json()["data"]
    return _make_partner


@pytest.fixture
def delivered_pickup(client, make_user, make_recycler, make_partner):
    """A pickup walked up to Delivered; returns (user, recycler, pickup_id)."""
    def _delivered(**overrides):
        user = make_user()
        recycler = make_recycler()
        res = client.post("/schedule-pickup", json=pickup_form(**overrides), headers=auth(user["token"]))
        pickup_id = res.json()["data"]["id"]

        client.put(f"/schedule-pickup/{pickup_id}/assign-recycler", json={}, headers=auth(recycler["token"]))
        partner = make_partner(recycler)
        res = client.put(f"/schedule-pickup/{pickup_id}/assign-partner",
                         json={"partner_id": partner["id"]}, headers=auth(recycler["token"]))
        assert res.status_code == 200, res.text
        for status in ("Collected", "Delivered"):
            res = client.put(f"/schedule-pickup/{pickup_id}/status",
                             json={"status": status}, headers=auth(recycler["token"]))
            assert res.status_code == 200, res.text
        return user, recycler, pickup_id
    return _delivered
