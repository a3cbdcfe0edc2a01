import asyncio
import inspect
import time

import httpx
import pytest
from fastapi.routing import APIRoute
from fastapi.testclient import TestClient

import main
from auth import create_access_token, get_password_hash
from audit_log import query_operations, OP_LICENSE_ACTIVATE
from device_fingerprint import DeviceIdentitySignals
from main import app, get_device_collector, get_license_service
from models import License, User, get_db


DEVICE = "SRV-AB12-CD34-EF56"


class StubCollector:
    async def collect(self):
        return DeviceIdentitySignals(hostname="archive-01", machine_id="abc123", platform="Linux 6.1")


class BrokenSession:
    def query(self, *args, **kwargs):
        from sqlalchemy.exc import OperationalError
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    def rollback(self):
        pass

    def close(self):
        pass


@pytest.fixture
def client(session_factory, service):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_license_service] = lambda: service
    app.dependency_overrides[get_device_collector] = lambda: StubCollector()
    # No context manager: the lifespan would initialise the real database
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def users(db):
    admin = User(username="admin", password_hash=get_password_hash("admin-pass"), role="admin")
    operator = User(username="clerk", password_hash=get_password_hash("clerk-pass"), role="operator")
    db.add_all([admin, operator])
    db.commit()
    return {"admin": admin, "operator": operator}


@pytest.fixture
def admin_headers(users):
    token = create_access_token({"user_id": users["admin"].id, "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def operator_headers(users):
    token = create_access_token({"user_id": users["operator"].id, "role": "operator"})
    return {"Authorization": f"Bearer {token}"}


def create(client, headers, device_code=DEVICE, days=30, name="Head office"):
    return client.post("/api/licenses", json={"deviceCode": device_code, "durationDays": days, "name": name},
                       headers=headers)


def test_health(client):
    assert client.get("/api/health").json()["status"] == "healthy"


def test_device_fingerprint_is_public(client):
    response = client.get("/api/device-fingerprint")

    assert response.status_code == 200
    body = response.json()
    assert body["method"] == "hardware"
    assert body["deviceCode"].startswith("SRV-")
    assert body["fingerprint"]["macAddress"] == "unknown"


# ---------------------------
# authorization of admin routes
# ---------------------------
@pytest.mark.parametrize("method,path", [
    ("get", "/api/licenses"),
    ("post", "/api/licenses"),
    ("post", "/api/licenses/1/renew"),
    ("delete", "/api/licenses/1"),
    ("get", f"/api/licenses/device/{DEVICE}"),
    ("get", "/api/logs"),
])
def test_admin_routes_require_login(client, method, path):
    response = client.request(method, path, json={"deviceCode": DEVICE, "durationDays": 30, "additionalDays": 5})
    assert response.status_code == 401


def test_non_admin_cannot_create(client, db, operator_headers):
    response = create(client, operator_headers)

    assert response.status_code == 403
    assert response.json()["detail"] == "权限不足"
    assert db.query(License).count() == 0


def test_non_admin_cannot_list_or_delete(client, service, db, operator_headers):
    lic = service.create_license(db, DEVICE, 30)

    assert client.get("/api/licenses", headers=operator_headers).status_code == 403
    assert client.delete(f"/api/licenses/{lic.id}", headers=operator_headers).status_code == 403
    assert db.query(License).count() == 1


# ---------------------------
# license administration
# ---------------------------
def test_admin_license_lifecycle(client, admin_headers):
    created = create(client, admin_headers)
    assert created.status_code == 200
    lic = created.json()["license"]
    assert lic["deviceCode"] == DEVICE
    assert lic["isActive"] is True

    listed = client.get("/api/licenses", headers=admin_headers).json()
    assert [item["id"] for item in listed["licenses"]] == [lic["id"]]

    renewed = client.post(f"/api/licenses/{lic['id']}/renew", json={"additionalDays": 10}, headers=admin_headers)
    assert renewed.status_code == 200
    assert renewed.json()["license"]["expireTime"] > lic["expireTime"]

    by_device = client.get(f"/api/licenses/device/{DEVICE.lower()}", headers=admin_headers)
    assert by_device.json()["license"]["id"] == lic["id"]

    deleted = client.delete(f"/api/licenses/{lic['id']}", headers=admin_headers)
    assert deleted.status_code == 200
    assert client.get("/api/license/status", params={"device_code": DEVICE}).json()["valid"] is False

    logs = client.get("/api/logs", headers=admin_headers).json()
    assert logs["total"] == 3
    assert {entry["operator"] for entry in logs["logs"]} == {"admin"}


def test_duplicate_create_is_conflict(client, admin_headers):
    assert create(client, admin_headers).status_code == 200

    response = create(client, admin_headers, days=90)

    assert response.status_code == 409
    assert response.json() == {"success": False, "error": "该设备已绑定授权"}


def test_create_rejects_bad_duration(client, admin_headers):
    assert create(client, admin_headers, days=0).status_code == 422
    assert create(client, admin_headers, days=5000).status_code == 422


def test_renew_and_delete_missing_license(client, admin_headers):
    assert client.post("/api/licenses/99/renew", json={"additionalDays": 5}, headers=admin_headers).status_code == 404
    assert client.delete("/api/licenses/99", headers=admin_headers).status_code == 404
    assert client.get("/api/licenses/device/SRV-0000-0000-0000", headers=admin_headers).status_code == 404


def test_clear_cache(client, service, db, admin_headers):
    service.check_license(db, DEVICE)
    assert len(service.cache) == 1

    assert client.post("/api/license/cache/clear", headers=admin_headers).json() == {"success": True}
    assert len(service.cache) == 0


# ---------------------------
# status and activation
# ---------------------------
def test_status_for_licensed_device(client, service, db):
    lic = service.create_license(db, DEVICE, 30)

    body = client.get("/api/license/status", params={"device_code": DEVICE}).json()

    assert body["success"] is True
    assert body["valid"] is True
    assert body["expireTime"] == lic.expire_time.isoformat()


def test_status_storage_failure_is_503(client):
    def broken_db():
        yield BrokenSession()
    app.dependency_overrides[get_db] = broken_db

    response = client.get("/api/license/status", params={"device_code": DEVICE})

    assert response.status_code == 503
    assert response.json() == {"success": False, "error": "检查授权状态失败", "valid": False}


def test_activate(client, service, db):
    lic = service.create_license(db, DEVICE, 30)

    response = client.post("/api/license/activate", json={"deviceCode": DEVICE, "authCode": lic.auth_code})

    assert response.status_code == 200
    assert response.json() == {"success": True, "expireTime": lic.expire_time.isoformat()}


def test_activate_with_wrong_code(client, service, db):
    service.create_license(db, DEVICE, 30)
    wrong = service.codec.issue("SRV-FFFF-FFFF-FFFF", 30)

    response = client.post("/api/license/activate", json={"deviceCode": DEVICE, "authCode": wrong})

    assert response.status_code == 400
    assert response.json()["error"] == "激活失败"


def test_activate_expired(client, service, db, clock):
    lic = service.create_license(db, DEVICE, 1)
    clock.advance(days=2)

    response = client.post("/api/license/activate", json={"deviceCode": DEVICE, "authCode": lic.auth_code})

    assert response.status_code == 403
    assert response.json()["error"] == "系统授权已过期，请联系管理员续费"


# ---------------------------
# login gate
# ---------------------------
def test_login_bad_password(client, users):
    response = client.post("/api/auth/login", json={"username": "clerk", "password": "nope"})
    assert response.status_code == 401


def test_admin_login_bypasses_license_gate(client, users):
    response = client.post("/api/auth/login", json={"username": "admin", "password": "admin-pass"})

    assert response.status_code == 200
    assert response.json()["user"]["role"] == "admin"
    assert response.json()["token"]


def test_operator_login_without_license_is_refused(client, users):
    response = client.post("/api/auth/login",
                           json={"username": "clerk", "password": "clerk-pass", "deviceCode": DEVICE, "remember": True})

    assert response.status_code == 403
    assert response.json() == {"success": False, "error": "系统授权已过期，请联系管理员续费", "remember": True}


def test_operator_login_with_license(client, service, db, users):
    service.create_license(db, DEVICE, 30)

    response = client.post("/api/auth/login", json={"username": "clerk", "password": "clerk-pass", "deviceCode": DEVICE})

    assert response.status_code == 200
    token = response.json()["token"]
    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["username"] == "clerk"


# ---------------------------
# concurrency
# ---------------------------
def test_only_fingerprint_route_runs_on_the_event_loop():
    async_paths = {
        route.path for route in app.routes
        if isinstance(route, APIRoute) and inspect.iscoroutinefunction(route.endpoint)
    }
    assert async_paths == {"/api/device-fingerprint"}


def test_slow_login_does_not_stall_other_requests(client, monkeypatch):
    def slow_authenticate(db, username, password):
        time.sleep(0.5)
        return None
    monkeypatch.setattr(main, "authenticate_user", slow_authenticate)

    async def health_during_logins():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://archive.test") as http:
            logins = [
                asyncio.create_task(http.post("/api/auth/login", json={"username": "clerk", "password": "x"}))
                for _ in range(4)
            ]
            await asyncio.sleep(0.05)
            started = time.monotonic()
            health = await http.get("/api/health")
            latency = time.monotonic() - started
            responses = await asyncio.gather(*logins)
        return health.status_code, latency, [r.status_code for r in responses]

    status, latency, login_statuses = asyncio.run(health_during_logins())

    assert status == 200
    assert login_statuses == [401] * 4
    assert latency < 0.4


# ---------------------------
# client address in the operation log
# ---------------------------
def activation_ip(db):
    total, entries = query_operations(db, operation=OP_LICENSE_ACTIVATE)
    assert total == 1
    return entries[0].ip


def test_forwarded_for_ignored_without_trusted_proxy(client, service, db):
    lic = service.create_license(db, DEVICE, 30)

    client.post("/api/license/activate", json={"deviceCode": DEVICE, "authCode": lic.auth_code},
                headers={"X-Forwarded-For": "203.0.113.9"})

    assert activation_ip(db) == "testclient"


def test_forwarded_for_honoured_behind_trusted_proxy(client, service, db, monkeypatch):
    monkeypatch.setattr(main, "TRUSTED_PROXIES", ("testclient", "10.0.0.2"))
    lic = service.create_license(db, DEVICE, 30)

    # The leftmost entry was supplied by the client; the proxies appended the rest
    client.post("/api/license/activate", json={"deviceCode": DEVICE, "authCode": lic.auth_code},
                headers={"X-Forwarded-For": "198.51.100.7, 203.0.113.9, 10.0.0.2"})

    assert activation_ip(db) == "203.0.113.9"
