"""API tests."""
import asyncio
from datetime import timedelta

from models import utcnow
from parameters import Parameter
from readings import store_reading
from scheduler import run_due_tasks

DEVICE = {
    "device_id": "buoy-a1",
    "name": "Buoy A1",
    "type": "buoy",
    "location": {"latitude": 31.2304, "longitude": 121.4737, "description": "East China Sea"},
    "config": {"sample_rate": 15, "upload_interval": 60, "parameters": ["temperature", "salinity", "ph"]},
    "battery_level": 97,
}

READING = {
    "device_id": "buoy-a1",
    "timestamp": "2026-02-01T14:23:45Z",
    "location": {"latitude": 31.23, "longitude": 121.47, "depth": 5},
    "temperature": 18.5,
    "salinity": 35.2,
    "dissolved_oxygen": 6.8,
}


def _register(client, **overrides):
    response = client.post("/devices", json={**DEVICE, **overrides})
    assert response.status_code == 201
    return response.json()


def test_health(client):
    """GET /health returns 200 and status ok."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_register_and_get_device(client):
    created = _register(client)
    assert created["id"] == "buoy-a1"
    assert created["status"] == "online"
    assert created["is_simulating"] is False
    assert created["config"]["parameters"] == ["temperature", "salinity", "ph"]

    fetched = client.get("/devices/buoy-a1")
    assert fetched.status_code == 200
    assert fetched.json()["location"]["description"] == "East China Sea"

    listed = client.get("/devices", params={"status": "online"})
    assert [d["id"] for d in listed.json()] == ["buoy-a1"]
    assert client.get("/devices", params={"status": "offline"}).json() == []


def test_register_generates_id_when_missing(client):
    body = {k: v for k, v in DEVICE.items() if k != "device_id"}
    response = client.post("/devices", json=body)
    assert response.status_code == 201
    assert len(response.json()["id"]) == 32


def test_register_duplicate_and_invalid(client):
    _register(client)
    dup = client.post("/devices", json=DEVICE)
    assert dup.status_code == 409
    assert "already exists" in dup.json()["detail"]

    bad = client.post("/devices", json={**DEVICE, "device_id": "bad id!"})
    assert bad.status_code == 400
    assert any("device_id" in str(e.get("loc", [])) for e in bad.json()["errors"])

    bad_param = client.post(
        "/devices", json={**DEVICE, "device_id": "b2", "config": {"parameters": ["chlorophyll"]}}
    )
    assert bad_param.status_code == 400


def test_update_device(client):
    _register(client)
    response = client.patch("/devices/buoy-a1", json={"name": "Buoy A1 (moved)", "location": {"latitude": 30, "longitude": 122}})
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "Buoy A1 (moved)"
    assert body["location"]["latitude"] == 30
    assert body["type"] == "buoy"


def test_post_reading_then_get_readings(client):
    """POST a valid reading then GET the range returns the stored point."""
    _register(client)
    post = client.post("/readings", json=READING)
    assert post.status_code == 201
    body = post.json()
    assert body["status"] == "created"
    assert body["reading_status"] == "normal"
    assert body["alerts_raised"] == 0

    get_readings = client.get(
        "/devices/buoy-a1/readings",
        params={"start_time": "2026-02-01T00:00:00Z", "end_time": "2026-02-02T00:00:00Z"},
    )
    assert get_readings.status_code == 200
    data = get_readings.json()
    assert data["device_id"] == "buoy-a1"
    assert len(data["data"]) == 1
    row = data["data"][0]
    assert row["temperature"] == 18.5
    assert row["salinity"] == 35.2
    assert row["dissolved_oxygen"] == 6.8
    assert row["ph"] is None
    assert "2026-02-01" in row["timestamp"] and "14:23:45" in row["timestamp"]


def test_post_reading_validation_fails(client):
    """POST with invalid body returns 400 and structured error response."""
    bad_device = {**READING, "device_id": "bad id!"}
    r = client.post("/readings", json=bad_device)
    assert r.status_code == 400
    body = r.json()
    assert "detail" in body
    assert any("device_id" in str(e.get("loc", [])) for e in body["errors"])

    no_values = {k: v for k, v in READING.items() if k not in ("temperature", "salinity", "dissolved_oxygen")}
    r2 = client.post("/readings", json=no_values)
    assert r2.status_code == 400
    assert "measurement" in r2.json()["detail"]

    bad_location = {**READING, "location": {"latitude": 123, "longitude": 0}}
    assert client.post("/readings", json=bad_location).status_code == 400


def test_post_reading_unknown_device(client):
    response = client.post("/readings", json={**READING, "device_id": "ghost"})
    assert response.status_code == 404
    assert response.json()["detail"] == "Device not found"


def test_get_readings_device_not_found(client):
    response = client.get(
        "/devices/nonexistent-99/readings",
        params={"start_time": "2026-02-01T00:00:00Z", "end_time": "2026-02-02T00:00:00Z"},
    )
    assert response.status_code == 404
    assert response.json()["detail"] == "Device not found"


def test_get_readings_bad_time_range(client):
    _register(client)
    r = client.get(
        "/devices/buoy-a1/readings",
        params={"start_time": "2026-02-02T00:00:00Z", "end_time": "2026-02-01T00:00:00Z"},
    )
    assert r.status_code == 400
    assert "before" in r.json()["detail"]

    r2 = client.get(
        "/devices/buoy-a1/readings",
        params={"start_time": "2026-01-01T00:00:00Z", "end_time": "2026-03-15T00:00:00Z"},
    )
    assert r2.status_code == 400
    assert "days" in r2.json()["detail"]


def test_rate_limit_exceeds_per_device(client):
    """POST /readings returns 429 when a device exceeds the rate limit (10/sec)."""
    _register(client)
    for _ in range(10):
        r = client.post("/readings", json=READING)
        assert r.status_code == 201
    r11 = client.post("/readings", json=READING)
    assert r11.status_code == 429
    assert "rate limit" in r11.json()["detail"].lower()


def test_alert_lifecycle_over_http(client):
    _register(client)
    post = client.post("/readings", json={**READING, "temperature": 35.0})
    assert post.json()["reading_status"] == "abnormal"
    assert post.json()["alerts_raised"] == 1

    alerts = client.get("/alerts", params={"status": "new"}).json()
    assert len(alerts) == 1
    alert = alerts[0]
    assert alert["parameter_type"] == "temperature"
    assert alert["threshold"] == 30.0

    ack = client.post(f"/alerts/{alert['id']}/acknowledge")
    assert ack.status_code == 200
    assert ack.json()["status"] == "acknowledged"
    assert client.post(f"/alerts/{alert['id']}/acknowledge").status_code == 409

    resolved = client.post(f"/alerts/{alert['id']}/resolve")
    assert resolved.json()["status"] == "resolved"
    again = client.post(f"/alerts/{alert['id']}/resolve")
    assert again.status_code == 409
    assert "resolved" in again.json()["detail"]

    assert client.post("/alerts/9999/resolve").status_code == 404


def test_resolve_all_and_batch(client):
    _register(client)
    client.post("/readings", json={**READING, "temperature": 35.0, "salinity": 45.0})
    device_alerts = client.get("/devices/buoy-a1/alerts").json()
    assert len(device_alerts) == 2

    batch = client.post(
        "/alerts/batch-status", json={"ids": [device_alerts[0]["id"], 9999], "status": "acknowledged"}
    )
    assert batch.status_code == 200
    assert batch.json()["message"] == "Updated 1 alert(s)"
    assert [r["success"] for r in batch.json()["results"]] == [True, False]

    resolved = client.post("/devices/buoy-a1/alerts/resolve-all")
    assert resolved.json()["resolved_count"] == 2
    assert client.post("/devices/buoy-a1/alerts/resolve-all").json()["resolved_count"] == 0

    summary = client.get("/alerts/summary").json()
    assert summary["total"] == 2
    assert summary["by_status"]["resolved"] == 2
    assert len(summary["recent"]) == 2


def test_status_update_back_online_resolves_alerts(client):
    _register(client)
    client.post("/readings", json={**READING, "ph": 6.0})
    offline = client.post("/devices/buoy-a1/status", json={"status": "offline"})
    assert offline.json() == {"device_id": "buoy-a1", "status": "offline", "resolved_alerts": 0}

    online = client.post("/devices/buoy-a1/status", json={"status": "online", "battery_level": 40})
    assert online.json()["resolved_alerts"] == 1
    assert client.get("/devices/buoy-a1").json()["battery_level"] == 40


def test_device_health(client):
    _register(client, battery_level=15)
    client.post("/readings", json={**READING, "timestamp": utcnow().isoformat(), "temperature": 40.0})
    health = client.get("/devices/buoy-a1/health")
    assert health.status_code == 200
    body = health.json()
    assert body["activity"] == "normal"
    assert body["open_alerts"] == 1
    assert body["readings_last_week"] == 1
    # -20 battery, -5 one open alert
    assert body["health_score"] == 75
    assert len(client.get("/devices/health").json()) == 1


def test_simulation_over_http(client, session_factory):
    _register(client)
    start = client.post("/devices/buoy-a1/simulation/start")
    assert start.status_code == 200
    assert start.json()["tick_scheduled"] is True
    assert client.post("/devices/buoy-a1/simulation/start").json()["already_simulating"] is True
    assert [d["id"] for d in client.get("/simulation/devices").json()] == ["buoy-a1"]

    now = utcnow()
    for i in range(3):
        asyncio.run(run_due_tasks(session_factory, now + timedelta(seconds=30 * i)))

    readings = client.get(
        "/devices/buoy-a1/readings",
        params={
            "start_time": (now - timedelta(minutes=5)).isoformat(),
            "end_time": (now + timedelta(minutes=5)).isoformat(),
        },
    ).json()["data"]
    assert len(readings) == 3
    assert set(k for k, v in readings[0].items() if v is not None) >= {"temperature", "salinity", "ph"}
    assert readings[0]["dissolved_oxygen"] is None

    stop = client.post("/devices/buoy-a1/simulation/stop")
    assert stop.json() == {
        "device_id": "buoy-a1",
        "is_simulating": False,
        "was_simulating": True,
        "cancelled_ticks": 1,
    }
    assert client.get("/simulation/devices").json() == []


def test_generate_historical_over_http(client):
    _register(client)
    response = client.post(
        "/devices/buoy-a1/readings/historical",
        json={"days": 1, "points_per_day": 24, "start_date": "2026-02-01T00:00:00Z"},
    )
    assert response.status_code == 201
    assert response.json()["count"] == 24
    data = client.get(
        "/devices/buoy-a1/readings",
        params={"start_time": "2026-02-01T00:00:00Z", "end_time": "2026-02-02T00:00:00Z"},
    ).json()["data"]
    assert len(data) == 24

    too_many = client.post("/devices/buoy-a1/readings/historical", json={"days": 90, "points_per_day": 1440})
    assert too_many.status_code == 400


def test_delete_device_cascades(client):
    _register(client)
    client.post("/readings", json={**READING, "temperature": 35.0})
    client.post("/devices/buoy-a1/simulation/start")
    response = client.delete("/devices/buoy-a1")
    assert response.status_code == 200
    body = response.json()
    assert body["deleted_readings"] == 1
    assert body["deleted_alerts"] == 1
    assert client.get("/devices/buoy-a1").status_code == 404
    assert client.get("/alerts").json() == []


def test_offset_timestamp_is_stored_as_utc(client):
    """A reading sent at 20:00+08:00 lands in the 12:00Z window, not the 20:00Z one."""
    _register(client)
    post = client.post("/readings", json={**READING, "timestamp": "2026-03-01T20:00:00+08:00"})
    assert post.status_code == 201

    in_range = client.get(
        "/devices/buoy-a1/readings",
        params={"start_time": "2026-03-01T11:59:00Z", "end_time": "2026-03-01T12:01:00Z"},
    ).json()["data"]
    assert len(in_range) == 1
    assert "12:00:00" in in_range[0]["timestamp"]

    wall_clock = client.get(
        "/devices/buoy-a1/readings",
        params={"start_time": "2026-03-01T19:59:00Z", "end_time": "2026-03-01T20:01:00Z"},
    ).json()["data"]
    assert wall_clock == []


def _store_temperatures(session_factory, values, end):
    async def store():
        async with session_factory() as session:
            for i, value in enumerate(values):
                await store_reading(
                    session, "buoy-a1", end - timedelta(minutes=len(values) - i), 31.23, 121.47, 5.0,
                    {Parameter.TEMPERATURE: value}, raise_alerts=False,
                )
            await session.commit()

    asyncio.run(store())


def test_anomaly_detection_over_http(client, session_factory):
    _register(client)
    _store_temperatures(session_factory, [8.0] * 10 + [19.0], utcnow())

    first = client.post("/analysis/anomalies", params={"device_id": "buoy-a1"})
    assert first.status_code == 200
    body = first.json()
    assert body["readings_checked"] == 11
    assert body["alerts_created"] == 1
    assert body["anomalies"][0]["parameter"] == "temperature"
    assert body["anomalies"][0]["severity"] == "low"

    again = client.post("/analysis/anomalies", params={"device_id": "buoy-a1"}).json()
    assert again["alerts_created"] == 0
    assert len(client.get("/devices/buoy-a1/alerts").json()) == 1

    assert client.post("/analysis/anomalies", params={"device_id": "ghost"}).status_code == 404
    assert client.post("/analysis/anomalies", params={"lookback_hours": 0}).status_code == 400


def test_reading_statistics_over_http(client, session_factory):
    _register(client)
    end = utcnow()
    _store_temperatures(session_factory, [13.0, 12.0, 11.0, 10.0], end)

    response = client.get(
        "/readings/statistics",
        params={
            "parameter": "temperature",
            "device_id": "buoy-a1",
            "start_time": (end - timedelta(hours=1)).isoformat(),
            "end_time": end.isoformat(),
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["count"] == 4
    assert body["average"] == 11.5
    assert body["minimum"] == 10.0
    assert body["maximum"] == 13.0
    assert body["trend"] == "decreasing"

    bad = client.get(
        "/readings/statistics",
        params={"parameter": "chlorophyll", "start_time": end.isoformat(), "end_time": end.isoformat()},
    )
    assert bad.status_code == 400


def test_alert_trends_over_http(client):
    _register(client)
    client.post("/readings", json={**READING, "timestamp": utcnow().isoformat(), "temperature": 40.0, "ph": 6.0})

    response = client.get("/alerts/trends", params={"days": 3})
    assert response.status_code == 200
    days = response.json()
    assert len(days) == 3
    assert days[-1]["total"] == 2
    assert days[-1]["high"] == 2
    assert sum(d["total"] for d in days) == 2
    assert client.get("/alerts/trends", params={"days": 0}).status_code == 400
