import base64

import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.routers.core as core
import database.db as db


class Seed:
    """Direct-SQL helpers for reference data the API does not create."""

    def execute(self, sql: str, params: tuple = ()) -> int:
        conn = db.connect_db()
        cur = conn.cursor()
        cur.execute(sql, params)
        last_id = int(cur.lastrowid or 0)
        conn.commit()
        conn.close()
        return last_id

    def add_class(self, name: str) -> int:
        return self.execute("INSERT INTO classes (name) VALUES (?)", (name,))

    def add_student(self, first_name: str, last_name: str, class_id: int | None) -> int:
        return self.execute(
            """
            INSERT INTO students (first_name, last_name, class_id)
            VALUES (?, ?, ?)
            """,
            (first_name, last_name, class_id),
        )

    def add_record(
        self,
        student_id: int,
        signer_name: str,
        signed_out_at: str,
        *,
        signed_back_in_at: str | None = None,
        signature_data: str | None = None,
        signature_url: str | None = None,
    ) -> int:
        return self.execute(
            """
            INSERT INTO sign_out_records
                (student_id, signer_name, signature_data, signature_url, signed_out_at, signed_back_in_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (student_id, signer_name, signature_data, signature_url, signed_out_at, signed_back_in_at),
        )

    def delete_student(self, student_id: int) -> None:
        self.execute("DELETE FROM students WHERE id = ?", (student_id,))

    def live_count(self) -> int:
        conn = db.connect_db()
        cur = conn.cursor()
        cur.execute("SELECT COUNT(1) FROM sign_out_records")
        count = int(cur.fetchone()[0])
        conn.close()
        return count

    def archive_rows(self, day: str) -> int:
        conn = db.connect_db()
        cur = conn.cursor()
        cur.execute("SELECT COUNT(1) FROM sign_out_archives WHERE day = ?", (day,))
        count = int(cur.fetchone()[0])
        conn.close()
        return count

    def replace_archive_table(self, ddl: str) -> None:
        conn = db.connect_db()
        conn.execute("DROP TABLE IF EXISTS sign_out_archives")
        if ddl:
            conn.execute(ddl)
        conn.commit()
        conn.close()


@pytest.fixture()
def kiosk_db(tmp_path, monkeypatch):
    test_db = tmp_path / "kiosk_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    monkeypatch.setattr(core, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def seed(kiosk_db):
    return Seed()


@pytest.fixture()
def client(kiosk_db):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def auth_headers(client):
    res = client.post("/auth/login", json={"password": config.ADMIN_PASSWORD})
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


def _png_data_url(image) -> str:
    ok, buf = cv2.imencode(".png", image)
    assert ok
    return "data:image/png;base64," + base64.b64encode(buf.tobytes()).decode("ascii")


@pytest.fixture()
def signed_data_url():
    canvas = np.zeros((120, 360, 4), dtype=np.uint8)
    cv2.line(canvas, (20, 60), (340, 70), (20, 20, 20, 255), 4)
    return _png_data_url(canvas)


@pytest.fixture()
def blank_data_url():
    return _png_data_url(np.zeros((120, 360, 4), dtype=np.uint8))
