from datetime import timedelta
from decimal import Decimal

from conftest import T0


VARIANT = "gid://shopify/ProductVariant/11"


def test_create_immediate_auction_returns_status(client, catalog):
    resp = client.post(
        "/api/auction",
        json={"intervalMinutes": 30, "discountIncrementPercent": 5, "startMode": "immediate"},
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["isRunning"] is True
    assert body["currentDiscountPercent"] == 5.0
    assert body["nextUpdateAt"] == (T0 + timedelta(minutes=30)).isoformat()
    assert catalog.variant(VARIANT).price == Decimal("95.00")
    assert resp.headers["X-Request-ID"]


def test_create_scheduled_auction(client):
    resp = client.post(
        "/api/auction",
        json={
            "intervalMinutes": 60,
            "discountIncrementPercent": 10,
            "startMode": "scheduled",
            "scheduledTime": "2026-03-03T08:00",
            "timezone": "Europe/Berlin",
        },
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["isScheduled"] is True
    assert body["formattedScheduledTime"] == "2026-03-03 08:00:00"

    listing = client.get("/api/auction/scheduled").json()
    assert listing["count"] == 1
    assert listing["auctions"][0]["timezone"] == "Europe/Berlin"


def test_create_rejects_invalid_values_with_400(client):
    resp = client.post(
        "/api/auction",
        json={"intervalMinutes": 0, "discountIncrementPercent": 5, "startMode": "immediate"},
    )
    assert resp.status_code == 400
    assert "Interval" in resp.json()["detail"]

    resp = client.post(
        "/api/auction",
        json={"intervalMinutes": 10**13, "discountIncrementPercent": 5, "startMode": "immediate"},
    )
    assert resp.status_code == 400
    assert client.get("/api/auction/status").json()["isRunning"] is False

    resp = client.post(
        "/api/auction",
        json={
            "intervalMinutes": 10,
            "discountIncrementPercent": 5,
            "startMode": "scheduled",
            "scheduledTime": "2026-03-03T08:00",
            "timezone": "Nowhere/Town",
        },
    )
    assert resp.status_code == 400


def test_create_reports_catalog_outage(client, catalog):
    catalog.fail_fetch = True

    resp = client.post(
        "/api/auction",
        json={"intervalMinutes": 10, "discountIncrementPercent": 5},
    )

    assert resp.status_code == 503


def test_status_when_idle(client):
    body = client.get("/api/auction/status").json()

    assert body["isRunning"] is False
    assert body["isScheduled"] is False
    assert body["schedule"] == []
    assert body["serverTime"] == T0.isoformat()


def test_stop_then_reset_prices(client, catalog):
    client.post("/api/auction", json={"intervalMinutes": 10, "discountIncrementPercent": 20})
    assert catalog.variant(VARIANT).price == Decimal("80.00")

    stop = client.post("/api/auction/stop")
    assert stop.status_code == 200
    assert stop.json()["stopped"] is True
    assert catalog.variant(VARIANT).price == Decimal("80.00")

    reset = client.post("/api/auction/reset-prices")
    assert reset.status_code == 200
    assert reset.json()["updated_count"] == 1
    assert catalog.variant(VARIANT).price == Decimal("100.00")


def test_manual_discount(client, catalog):
    resp = client.post("/api/auction/manual-discount", json={"percent": 12.5})

    assert resp.status_code == 200
    assert resp.json()["updated_variants"] == 1
    assert catalog.variant(VARIANT).price == Decimal("87.50")
    assert client.get("/api/auction/status").json()["currentDiscountPercent"] == 12.5

    assert client.post("/api/auction/manual-discount", json={"percent": -1}).status_code == 400


def test_compare_prices(client, catalog):
    resp = client.post("/api/auction/compare-prices")

    assert resp.status_code == 200
    assert resp.json()["updated_count"] == 1
    assert catalog.variant(VARIANT).compare_at_price == Decimal("100.00")


def test_logs_endpoint_lists_recent_actions(client):
    client.post("/api/auction", json={"intervalMinutes": 10, "discountIncrementPercent": 20})
    client.post("/api/auction/stop")

    logs = client.get("/api/auction/logs", params={"limit": 10}).json()["logs"]

    actions = {entry["action"] for entry in logs}
    assert {"STARTED", "CREATED", "STOPPED"} <= actions
    assert client.get("/api/auction/logs", params={"limit": 0}).status_code == 422


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}
