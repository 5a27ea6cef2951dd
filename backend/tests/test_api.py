from datetime import datetime

import backend.routers.core as core
import backend.security as security
import database.db as db


def _today() -> str:
    return datetime.now().strftime("%Y-%m-%d")


def _classroom(seed) -> dict:
    class_id = seed.add_class("K2")
    return {
        "class_id": class_id,
        "ada": seed.add_student("Ada", "Lovelace", class_id),
        "alan": seed.add_student("Alan", "Turing", class_id),
    }


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_debug_dbpath_disabled_by_default(client, auth_headers):
    res = client.get("/debug/dbpath", headers=auth_headers)
    assert res.status_code == 404
    assert res.json()["detail"] == "Not found."


def test_debug_dbpath_requires_session_when_enabled(client, monkeypatch, auth_headers):
    monkeypatch.setattr(core, "ENABLE_DEBUG_ENDPOINTS", True)

    res = client.get("/debug/dbpath")
    assert res.status_code == 401

    res = client.get("/debug/dbpath", headers=auth_headers)
    assert res.status_code == 200
    assert "db_path" in res.json()


def test_login_rejects_invalid_password(client):
    res = client.post("/auth/login", json={"password": "wrong-password"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid admin password."

    res = client.post("/auth/login", json={"password": "   "})
    assert res.status_code == 400


def test_auth_me_reports_session(client, auth_headers):
    res = client.get("/auth/me", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["role"] == "admin"

    res = client.get("/auth/me", headers={"Authorization": "Bearer not.a-token"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid or expired session token."


def test_tampered_or_expired_token_is_rejected(client, auth_headers, monkeypatch):
    token = auth_headers["Authorization"].split(" ", 1)[1]
    body, _, signature = token.partition(".")

    forged = f"{body}x.{signature}"
    res = client.get("/auth/me", headers={"Authorization": f"Bearer {forged}"})
    assert res.status_code == 401

    monkeypatch.setattr(security, "AUTH_TOKEN_TTL_SECONDS", -60)
    stale, _ = security.issue_session_token()
    res = client.get("/auth/me", headers={"Authorization": f"Bearer {stale}"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid or expired session token."


def test_admin_endpoints_require_session(client):
    for method, path in (
        ("get", "/admin/records"),
        ("post", "/admin/reset-day"),
        ("get", "/history"),
        ("get", f"/history/{_today()}"),
        ("post", "/admin/records/1/sign-in"),
    ):
        res = getattr(client, method)(path)
        assert res.status_code == 401, path
        assert res.json()["detail"] == "Missing bearer token."


def test_classes_and_available_students(client, seed):
    room = _classroom(seed)
    seed.add_class("A1")

    res = client.get("/classes")
    assert res.status_code == 200
    assert [c["name"] for c in res.json()["classes"]] == ["A1", "K2"]

    res = client.post("/sign-out", json={"student_id": room["ada"], "signer_name": "Mom"})
    assert res.status_code == 200

    res = client.get(f"/students/{room['class_id']}")
    assert res.status_code == 200
    assert [s["first_name"] for s in res.json()["students"]] == ["Alan"]


def test_sign_out_creates_record(client, seed, signed_data_url):
    room = _classroom(seed)

    res = client.post(
        "/sign-out",
        json={"student_id": room["ada"], "signer_name": "  Mom  ", "signature_data": signed_data_url},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["success"] is True
    record = body["record"]
    assert record["student_id"] == room["ada"]
    assert record["signer_name"] == "Mom"
    assert record["signature_data"] == signed_data_url
    assert record["signed_back_in_at"] is None
    assert record["signed_out_at"].startswith(_today())


def test_sign_out_twice_is_rejected(client, seed):
    room = _classroom(seed)

    first = client.post("/sign-out", json={"student_id": room["ada"], "signer_name": "Mom"})
    assert first.status_code == 200

    second = client.post("/sign-out", json={"student_id": room["ada"], "signer_name": "Dad"})
    assert second.status_code == 400
    assert second.json()["detail"] == "Student is already signed out."


def test_sign_out_validation(client, seed, blank_data_url, signed_data_url):
    room = _classroom(seed)

    res = client.post("/sign-out", json={"student_id": room["ada"], "signer_name": ""})
    assert res.status_code == 400
    assert res.json()["detail"] == "Student ID and signer name are required."

    res = client.post("/sign-out", json={"student_id": 9999, "signer_name": "Mom"})
    assert res.status_code == 400
    assert res.json()["detail"] == "Student not found."

    res = client.post(
        "/sign-out",
        json={"student_id": room["ada"], "signer_name": "Mom", "signature_data": blank_data_url},
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Please sign before submitting."

    res = client.post(
        "/sign-out",
        json={
            "student_id": room["ada"],
            "signer_name": "Mom",
            "signature_data": signed_data_url,
            "signature_url": "https://storage.example/sig.png",
        },
    )
    assert res.status_code == 400

    assert seed.live_count() == 0


def test_today_records_and_sign_back_in(client, seed, auth_headers):
    room = _classroom(seed)
    seed.add_record(room["alan"], "Grandpa", "2020-01-01T08:00:00")
    created = client.post("/sign-out", json={"student_id": room["ada"], "signer_name": "Mom"}).json()["record"]

    res = client.get("/admin/records", headers=auth_headers)
    assert res.status_code == 200
    records = res.json()["records"]
    assert [r["id"] for r in records] == [created["id"]]
    assert records[0]["student"]["class_name"] == "K2"

    res = client.post(f"/admin/records/{created['id']}/sign-in", headers=auth_headers)
    assert res.status_code == 200

    res = client.post(f"/admin/records/{created['id']}/sign-in", headers=auth_headers)
    assert res.status_code == 404

    res = client.get(f"/students/{room['class_id']}")
    assert "Ada" in [s["first_name"] for s in res.json()["students"]]


def test_reset_day_with_no_records(client, auth_headers):
    res = client.post("/admin/reset-day", headers=auth_headers)
    assert res.status_code == 200
    assert res.json() == {"success": True, "archived": 0}


def test_reset_day_then_history(client, seed, auth_headers):
    room = _classroom(seed)
    client.post("/sign-out", json={"student_id": room["ada"], "signer_name": "Mom"})
    client.post("/sign-out", json={"student_id": room["alan"], "signer_name": "Dad"})

    res = client.post("/admin/reset-day", headers=auth_headers)
    assert res.status_code == 200
    assert res.json() == {"success": True, "archived": 2}

    res = client.get("/admin/records", headers=auth_headers)
    assert res.json()["records"] == []

    res = client.get("/history", headers=auth_headers)
    assert res.status_code == 200
    assert [d["day"] for d in res.json()["days"]] == [_today()]

    res = client.get(f"/history/{_today()}", headers=auth_headers)
    assert res.status_code == 200
    archive = res.json()["archive"]
    assert archive["day"] == _today()
    assert archive["data"]["day"] == _today()
    assert sorted(r["signer_name"] for r in archive["data"]["records"]) == ["Dad", "Mom"]


def test_history_detail_normalizes_bare_array(client, seed, auth_headers):
    seed.execute(
        "INSERT INTO sign_out_archives (day, data) VALUES (?, ?)",
        ("2025-12-01", '[{"id": 1, "signer_name": "Mom"}, {"id": 2, "signer_name": "Dad"}]'),
    )

    res = client.get("/history/2025-12-01", headers=auth_headers)
    assert res.status_code == 200
    data = res.json()["archive"]["data"]
    assert data["day"] == "2025-12-01"
    assert len(data["records"]) == 2

    res = client.get("/history/2025-12-02", headers=auth_headers)
    assert res.status_code == 404


def test_corrupt_archive_row_returns_error_body(client, seed, auth_headers):
    room = _classroom(seed)
    seed.execute("INSERT INTO sign_out_archives (day, data) VALUES (?, ?)", (_today(), "{not json"))
    client.post("/sign-out", json={"student_id": room["ada"], "signer_name": "Mom"})

    res = client.post("/admin/reset-day", headers=auth_headers)
    assert res.status_code == 500
    assert "unreadable data" in res.json()["error"]

    res = client.get(f"/history/{_today()}", headers=auth_headers)
    assert res.status_code == 500
    assert "unreadable data" in res.json()["error"]


def test_reset_day_twice_reports_zero_second_time(client, seed, auth_headers):
    room = _classroom(seed)
    client.post("/sign-out", json={"student_id": room["ada"], "signer_name": "Mom"})
    client.post("/sign-out", json={"student_id": room["alan"], "signer_name": "Dad"})

    first = client.post("/admin/reset-day", headers=auth_headers)
    second = client.post("/admin/reset-day", headers=auth_headers)

    assert first.json() == {"success": True, "archived": 2}
    assert second.json() == {"success": True, "archived": 0}


def test_missing_archive_table_surfaces_migration_hint(client, seed, auth_headers):
    room = _classroom(seed)
    client.post("/sign-out", json={"student_id": room["ada"], "signer_name": "Mom"})
    seed.replace_archive_table("")

    res = client.post("/admin/reset-day", headers=auth_headers)
    assert res.status_code == 503
    assert "001_sign_out_archives.sql" in res.json()["error"]
    assert seed.live_count() == 1

    res = client.get("/history", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["days"] == []
    assert "001_sign_out_archives.sql" in res.json()["note"]


def test_reset_day_total_failure_returns_error(client, seed, auth_headers):
    room = _classroom(seed)
    client.post("/sign-out", json={"student_id": room["ada"], "signer_name": "Mom"})
    seed.replace_archive_table(
        """
        CREATE TABLE sign_out_archives (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            day TEXT NOT NULL UNIQUE,
            data TEXT NOT NULL,
            operator_id TEXT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    res = client.post("/admin/reset-day", headers=auth_headers)
    assert res.status_code == 500
    assert "operator_id" in res.json()["error"]
    assert len(db.get_live_records()) == 1
