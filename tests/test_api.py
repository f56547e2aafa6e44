"""API tests."""

import asyncio
import base64

import httpx
import openpyxl
import pytest
from httpx import AsyncClient

from app.api.aramex import get_aramex_client
from app.api.billing_reminders import get_billing_service
from app.api.tariffs import get_search_service
from app.config import Settings
from app.main import app
from app.services.aramex import AramexClient
from app.services.billing import BillingReminderService
from app.services.email import SendGridMailer
from app.services.hts_search import ExcelSearchService
from app.services.notification import NotificationService, notification_service

PDF_BYTES = b"%PDF-1.4 label"


def aramex_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "labels.aramex.test":
        return httpx.Response(200, content=PDF_BYTES)
    if request.url.path.endswith("/CalculateRate"):
        return httpx.Response(200, json={
            "HasErrors": False,
            "TotalAmount": {"Value": 21.4, "CurrencyCode": "USD"},
        })
    if b'"Order#2"' in request.content:
        return httpx.Response(200, json={
            "HasErrors": True,
            "Notifications": [{"Code": "ERR01", "Message": "Invalid consignee"}],
        })
    return httpx.Response(200, json={
        "HasErrors": False,
        "Shipments": [{"ID": 5550001, "ShipmentLabel": {"LabelURL": "https://labels.aramex.test/1.pdf"}}],
    })


@pytest.fixture
def aramex_client():
    client = AramexClient(
        settings=Settings(
            aramex_base_url="https://aramex.test/ShippingAPI.V2",
            aramex_username="api@moogship.com",
            aramex_password="secret",
            aramex_account_number="71234567",
        ),
        transport=httpx.MockTransport(aramex_handler),
    )
    app.dependency_overrides[get_aramex_client] = lambda: client
    yield client
    app.dependency_overrides.pop(get_aramex_client, None)


@pytest.fixture
def outbox():
    sent = []

    def handler(request):
        sent.append(request)
        return httpx.Response(202)

    svc = BillingReminderService(
        SendGridMailer(api_key="SG.test", transport=httpx.MockTransport(handler)),
        NotificationService(),
        "",
    )
    app.dependency_overrides[get_billing_service] = lambda: svc
    yield sent
    app.dependency_overrides.pop(get_billing_service, None)


@pytest.fixture
def tariff_search(tmp_path):
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Chapter 61"
    ws.append(("6115.10.30", "00", "Of synthetic fibers, knitted socks for adults",
               "doz. prs", "14.6%", "Free (AU,BH,CA)", "90%"))
    path = tmp_path / "hts.xlsx"
    wb.save(path)
    svc = ExcelSearchService(str(path))
    app.dependency_overrides[get_search_service] = lambda: svc
    yield svc
    app.dependency_overrides.pop(get_search_service, None)


# ── Health & auth ───────────────────────────────────────

@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["service"] == "MoogShip"
    assert data["version"] == "1.0.0"


@pytest.mark.asyncio
async def test_protected_routes_require_token(client: AsyncClient):
    for path in ("/api/v1/shipments/", "/api/v1/refunds/", "/api/v1/billing-reminders/history"):
        resp = await client.get(path)
        assert resp.status_code == 401


@pytest.mark.asyncio
async def test_billing_reminders_reject_non_admin(client: AsyncClient, user_headers):
    resp = await client.get("/api/v1/billing-reminders/history", headers=user_headers)
    assert resp.status_code == 403


# ── Users ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_register_and_approve(client: AsyncClient, admin_headers):
    payload = {
        "username": "kemal",
        "email": "kemal@example.com",
        "password": "longpassword",
        "name": "Kemal",
    }
    resp = await client.post("/api/v1/users/register", json=payload)
    assert resp.status_code == 201
    user = resp.json()
    assert user["is_approved"] is False
    assert user["role"] == "user"

    dup = await client.post("/api/v1/users/register", json=payload)
    assert dup.status_code == 409

    pending = await client.get("/api/v1/users/?pending=true", headers=admin_headers)
    assert [u["username"] for u in pending.json()] == ["kemal"]

    approved = await client.post(
        f"/api/v1/users/{user['id']}/approve",
        json={"minimum_balance": -5000},
        headers=admin_headers,
    )
    assert approved.status_code == 200
    assert approved.json()["is_approved"] is True
    assert approved.json()["minimum_balance"] == -5000

    again = await client.post(f"/api/v1/users/{user['id']}/approve", json={}, headers=admin_headers)
    assert again.status_code == 400

    login = await client.post(
        "/api/v1/auth/login",
        json={"email": "kemal@example.com", "password": "longpassword"},
    )
    assert login.status_code == 200


@pytest.mark.asyncio
async def test_list_users_admin_only(client: AsyncClient, user_headers):
    resp = await client.get("/api/v1/users/", headers=user_headers)
    assert resp.status_code == 403


# ── Shipments ───────────────────────────────────────────

SHIPMENT = {
    "receiver_name": "Omar Haddad",
    "receiver_address": "Al Wasl Road 12",
    "receiver_city": "Dubai",
    "receiver_country_code": "ae",
    "package_length": "30",
    "package_width": "20",
    "package_height": "15",
    "package_weight": "1.5",
    "package_contents": "Cotton socks",
}


@pytest.mark.asyncio
async def test_create_and_list_shipments(client: AsyncClient, user_headers, admin_headers):
    resp = await client.post("/api/v1/shipments/", json=SHIPMENT, headers=user_headers)
    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "pending"
    assert data["receiver_country_code"] == "AE"
    assert data["provider_service_code"] == "aramex-ppx"

    mine = await client.get("/api/v1/shipments/", headers=user_headers)
    assert len(mine.json()) == 1
    admin_view = await client.get(f"/api/v1/shipments/{data['id']}", headers=admin_headers)
    assert admin_view.status_code == 200


@pytest.mark.asyncio
async def test_shipment_requires_receiver(client: AsyncClient, user_headers):
    payload = {k: v for k, v in SHIPMENT.items() if k != "receiver_city"}
    resp = await client.post("/api/v1/shipments/", json=payload, headers=user_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_shipment_hidden_from_other_users(client: AsyncClient, create_user, create_shipment, user_headers):
    other = await create_user("other")
    shipment = await create_shipment(other)
    resp = await client.get(f"/api/v1/shipments/{shipment.id}", headers=user_headers)
    assert resp.status_code == 404


# ── Aramex ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_aramex_rates(client: AsyncClient, aramex_client, user_headers):
    resp = await client.post(
        "/api/v1/aramex/rates",
        json={
            "origin": {"city": "Istanbul", "country_code": "TR"},
            "destination": {"city": "Dubai", "country_code": "AE"},
            "weight_kg": 1.2,
        },
        headers=user_headers,
    )
    assert resp.status_code == 200
    rates = resp.json()
    assert rates[0]["service_code"] == "PPX"
    assert float(rates[0]["amount"]) == 21.4


@pytest.mark.asyncio
async def test_aramex_rates_unconfigured(client: AsyncClient, user_headers):
    unconfigured = AramexClient(settings=Settings(aramex_username="", aramex_password=""))
    app.dependency_overrides[get_aramex_client] = lambda: unconfigured
    try:
        resp = await client.post(
            "/api/v1/aramex/rates",
            json={
                "origin": {"city": "Istanbul", "country_code": "TR"},
                "destination": {"city": "Dubai", "country_code": "AE"},
                "weight_kg": 1.2,
            },
            headers=user_headers,
        )
    finally:
        app.dependency_overrides.pop(get_aramex_client, None)
    assert resp.status_code == 503


@pytest.mark.asyncio
async def test_purchase_labels(
    client: AsyncClient, db, aramex_client, customer, create_shipment, admin_headers, user_headers,
):
    ok = await create_shipment(customer)
    bad = await create_shipment(customer)
    assert (ok.id, bad.id) == (1, 2)

    resp = await client.post(
        "/api/v1/aramex/purchase-labels",
        json={"shipment_ids": [ok.id, bad.id, 999]},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["shipment_ids"] == [ok.id]
    assert data["failed_shipment_ids"] == [bad.id, 999]
    assert data["carrier_tracking_numbers"] == {str(ok.id): "5550001"}
    assert data["shipment_errors"]["999"] == "Shipment not found"
    assert data["message"] == "Processed 1/3 Aramex shipments successfully"
    assert "carrier_label_pdfs" not in data

    await db.refresh(ok)
    await db.refresh(bad)
    assert ok.status == "pre_transit"
    assert ok.carrier_tracking_number == "5550001"
    assert base64.b64decode(ok.carrier_label_pdf) == PDF_BYTES
    assert bad.status == "pending"
    assert "Invalid consignee" in bad.label_error

    label = await client.get(f"/api/v1/aramex/labels/{ok.id}", headers=user_headers)
    assert label.status_code == 200
    assert label.headers["content-type"] == "application/pdf"
    assert label.content == PDF_BYTES

    missing = await client.get(f"/api/v1/aramex/labels/{bad.id}", headers=user_headers)
    assert missing.status_code == 404

    events = [n.event.value for n in notification_service.get_history()]
    assert "shipment.label_purchased" in events
    assert "shipment.label_failed" in events


@pytest.mark.asyncio
async def test_purchase_labels_admin_only(client: AsyncClient, aramex_client, user_headers):
    resp = await client.post(
        "/api/v1/aramex/purchase-labels", json={"shipment_ids": [1]}, headers=user_headers,
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_purchase_labels_counts_duplicate_ids_once(
    client: AsyncClient, aramex_client, customer, create_shipment, admin_headers,
):
    ok = await create_shipment(customer)
    resp = await client.post(
        "/api/v1/aramex/purchase-labels",
        json={"shipment_ids": [ok.id, ok.id, 999, 999]},
        headers=admin_headers,
    )
    data = resp.json()
    assert data["shipment_ids"] == [ok.id]
    assert data["failed_shipment_ids"] == [999]
    assert data["message"] == "Processed 1/2 Aramex shipments successfully"


# ── Tariffs ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_tariff_lookup(client: AsyncClient, tariff_search, user_headers):
    resp = await client.get("/api/v1/tariffs/hts/61151030", headers=user_headers)
    assert resp.status_code == 200
    assert resp.json()["general_rate"] == "14.6%"

    missing = await client.get("/api/v1/tariffs/hts/0101.21.00", headers=user_headers)
    assert missing.status_code == 404

    search = await client.get("/api/v1/tariffs/search?q=socks", headers=user_headers)
    assert [r["hs_code"] for r in search.json()] == ["6115.10.30"]

    stats = await client.get("/api/v1/tariffs/stats", headers=user_headers)
    assert stats.json()["total_sheets"] == 1


@pytest.mark.asyncio
async def test_tariff_data_unavailable(client: AsyncClient, tmp_path, user_headers):
    svc = ExcelSearchService(str(tmp_path / "missing.xlsx"))
    app.dependency_overrides[get_search_service] = lambda: svc
    try:
        resp = await client.get("/api/v1/tariffs/hts/6115.10.30", headers=user_headers)
    finally:
        app.dependency_overrides.pop(get_search_service, None)
    assert resp.status_code == 503


def _record_caller(seen: list, fn):
    def wrapper(*args, **kwargs):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            seen.append("threadpool")
        else:
            seen.append("event loop")
        return fn(*args, **kwargs)
    return wrapper


@pytest.mark.asyncio
async def test_tariff_scans_run_in_threadpool(client: AsyncClient, tariff_search, user_headers, monkeypatch):
    seen = []
    for name in ("search_hs_code", "search_description", "stats"):
        monkeypatch.setattr(tariff_search, name, _record_caller(seen, getattr(tariff_search, name)))

    assert (await client.get("/api/v1/tariffs/hts/6115.10.30", headers=user_headers)).status_code == 200
    assert (await client.get("/api/v1/tariffs/search?q=socks", headers=user_headers)).status_code == 200
    assert (await client.get("/api/v1/tariffs/stats", headers=user_headers)).status_code == 200
    assert seen == ["threadpool"] * 3


# ── Refunds ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_refund_flow(
    client: AsyncClient, db, customer, create_shipment, user_headers, admin_headers,
):
    shipment = await create_shipment(customer, carrier_tracking_number="5550001")

    created = await client.post(
        "/api/v1/refunds/",
        json={"shipment_ids": f"[{shipment.id}]", "reason": "Never delivered", "requested_amount": 1800},
        headers=user_headers,
    )
    assert created.status_code == 201
    refund = created.json()
    assert refund["status"] == "pending"
    assert refund["shipment_ids"] == [shipment.id]

    dup = await client.post(
        "/api/v1/refunds/",
        json={"shipment_ids": [shipment.id], "reason": "Again"},
        headers=user_headers,
    )
    assert dup.status_code == 400

    listed = await client.get("/api/v1/refunds/", headers=user_headers)
    assert [r["id"] for r in listed.json()] == [refund["id"]]

    shipments = await client.post(
        "/api/v1/refunds/shipments", json={"shipment_ids": [shipment.id]}, headers=user_headers,
    )
    assert shipments.json()[0]["carrier_tracking_number"] == "5550001"

    forbidden = await client.patch(
        f"/api/v1/refunds/admin/{refund['id']}",
        json={"status": "approved", "processed_amount": 1800},
        headers=user_headers,
    )
    assert forbidden.status_code == 403

    processed = await client.patch(
        f"/api/v1/refunds/admin/{refund['id']}",
        json={"status": "approved", "processed_amount": 1800, "admin_notes": "Carrier confirmed loss"},
        headers=admin_headers,
    )
    assert processed.status_code == 200
    assert processed.json()["status"] == "approved"

    await db.refresh(customer)
    assert customer.balance == -12500 + 1800

    again = await client.patch(
        f"/api/v1/refunds/admin/{refund['id']}",
        json={"status": "rejected"},
        headers=admin_headers,
    )
    assert again.status_code == 400

    tracking = await client.put(
        f"/api/v1/refunds/{refund['id']}/tracking",
        json={"admin_tracking_status": "completed", "carrier_refund_reference": "ARX-RF-9"},
        headers=admin_headers,
    )
    assert tracking.status_code == 200
    assert tracking.json()["admin_tracking_status"] == "completed"

    fetched = await client.get(f"/api/v1/refunds/{refund['id']}", headers=user_headers)
    assert fetched.json()["carrier_refund_reference"] == "ARX-RF-9"


@pytest.mark.asyncio
async def test_refund_of_other_users_request(client: AsyncClient, create_user, create_shipment, user_headers):
    from app.services.auth import token_for_user

    other = await create_user("other")
    shipment = await create_shipment(other)
    created = await client.post(
        "/api/v1/refunds/",
        json={"shipment_ids": [shipment.id], "reason": "Damaged"},
        headers={"Authorization": f"Bearer {token_for_user(other)}"},
    )
    resp = await client.get(f"/api/v1/refunds/{created.json()['id']}", headers=user_headers)
    assert resp.status_code == 403

    missing = await client.get("/api/v1/refunds/9999", headers=user_headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_refund_invalid_ids(client: AsyncClient, customer, user_headers):
    resp = await client.post(
        "/api/v1/refunds/", json={"shipment_ids": "abc", "reason": "x"}, headers=user_headers,
    )
    assert resp.status_code == 400


# ── Billing reminders ───────────────────────────────────

@pytest.mark.asyncio
async def test_billing_reminders(client: AsyncClient, outbox, customer, create_user, admin_headers):
    await create_user("fine", balance=1000)

    negative = await client.get(
        "/api/v1/billing-reminders/users-with-negative-balance", headers=admin_headers,
    )
    assert [u["username"] for u in negative.json()] == ["ayse"]

    everyone = await client.get("/api/v1/billing-reminders/all-users", headers=admin_headers)
    assert len(everyone.json()) == 2

    sent = await client.post(
        "/api/v1/billing-reminders/send-reminder",
        json={"user_id": customer.id, "subject": "Bakiye hatırlatması", "reminder_type": "overdue"},
        headers=admin_headers,
    )
    assert sent.status_code == 200
    assert sent.json()["success"] is True
    assert len(outbox) == 1

    unknown = await client.post(
        "/api/v1/billing-reminders/send-reminder",
        json={"user_id": 9999, "subject": "x"},
        headers=admin_headers,
    )
    assert unknown.status_code == 404

    bulk = await client.post(
        "/api/v1/billing-reminders/send-bulk-reminders",
        json={"user_ids": [customer.id, 9999], "subject": "Toplu"},
        headers=admin_headers,
    )
    assert bulk.status_code == 200
    assert bulk.json()["message"] == "Bulk reminders processed: 1 successful, 1 failed"

    history = await client.get("/api/v1/billing-reminders/history", headers=admin_headers)
    entries = history.json()
    assert len(entries) == 2
    assert entries[0]["subject"] == "Toplu"
    assert entries[1]["reminder_type"] == "overdue"
    assert entries[1]["email_sent"] is True


@pytest.mark.asyncio
async def test_billing_reminder_email_failure(client: AsyncClient, customer, admin_headers):
    svc = BillingReminderService(
        SendGridMailer(api_key="", transport=httpx.MockTransport(lambda r: httpx.Response(202))),
        NotificationService(),
        "",
    )
    app.dependency_overrides[get_billing_service] = lambda: svc
    try:
        resp = await client.post(
            "/api/v1/billing-reminders/send-reminder",
            json={"user_id": customer.id, "subject": "Bakiye"},
            headers=admin_headers,
        )
    finally:
        app.dependency_overrides.pop(get_billing_service, None)
    assert resp.status_code == 502
    assert "not configured" in resp.json()["detail"]["error"]


# ── Notifications ───────────────────────────────────────

@pytest.mark.asyncio
async def test_notification_history(client: AsyncClient, admin_headers, user_headers):
    notification_service.notify_user_approved({"username": "kemal", "email": "kemal@example.com"})

    history = await client.get("/api/v1/notifications/history", headers=admin_headers)
    assert history.status_code == 200
    assert history.json()[0]["event"] == "user.approved"

    filtered = await client.get(
        "/api/v1/notifications/history?event=refund.requested", headers=admin_headers,
    )
    assert filtered.json() == []

    bad = await client.get("/api/v1/notifications/history?event=nope", headers=admin_headers)
    assert bad.status_code == 400

    stats = await client.get("/api/v1/notifications/stats", headers=admin_headers)
    assert stats.json()["total"] == 1

    assert (await client.get("/api/v1/notifications/stats", headers=user_headers)).status_code == 403
