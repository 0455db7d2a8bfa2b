"""
HTTP API tests through the Flask test client.
"""

import json

import pytest

import app as app_module
import config
from app import create_app
from db import MysqlStore
from mailer import MailNotConfigured


def _save(client, kind, data):
    return client.post("/api/save-survey", json={"type": kind, "data": data})


class TestAuth:
    """Login, logout and the auth gate."""

    def test_protected_endpoints_require_login(self, client):
        assert client.get("/api/surveys").status_code == 401
        assert client.get("/api/surveys/unique-values?type=worker&field=q").status_code == 401
        assert client.get("/api/backup").status_code == 401
        assert client.delete("/api/survey/worker/1").status_code == 401
        assert client.post("/api/survey-locks", json={"type": "worker", "locked": True}).status_code == 401
        resp = client.post("/api/maintenance/normalize-branches")
        assert resp.status_code == 401
        assert resp.get_json() == {"status": "error", "message": "Unauthorized"}

    def test_login_success(self, client, monkeypatch):
        monkeypatch.setattr(config, "ADMIN_USERNAME", "admin")
        monkeypatch.setattr(config, "ADMIN_PASSWORD", "s3cret")
        monkeypatch.setattr(config, "ADMIN_PASSWORD_HASH", "")

        resp = client.post("/api/login", json={"username": "admin", "password": "s3cret"})

        assert resp.status_code == 200
        assert resp.get_json() == {"status": "success"}
        assert client.get("/api/surveys").status_code == 200

    def test_login_with_form_body(self, client, monkeypatch):
        monkeypatch.setattr(config, "ADMIN_USERNAME", "admin")
        monkeypatch.setattr(config, "ADMIN_PASSWORD", "s3cret")
        monkeypatch.setattr(config, "ADMIN_PASSWORD_HASH", "")
        resp = client.post("/api/login", data={"username": "admin", "password": "s3cret"})
        assert resp.status_code == 200

    def test_login_with_password_hash(self, client, monkeypatch):
        from werkzeug.security import generate_password_hash

        monkeypatch.setattr(config, "ADMIN_USERNAME", "admin")
        monkeypatch.setattr(config, "ADMIN_PASSWORD_HASH", generate_password_hash("hashed-pw"))
        assert client.post("/api/login", json={"username": "admin", "password": "hashed-pw"}).status_code == 200

    def test_login_failure(self, client, monkeypatch):
        monkeypatch.setattr(config, "ADMIN_PASSWORD", "s3cret")
        monkeypatch.setattr(config, "ADMIN_PASSWORD_HASH", "")
        resp = client.post("/api/login", json={"username": "admin", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.get_json()["message"] == "Invalid credentials"

    def test_logout_clears_session(self, auth_client):
        resp = auth_client.get("/api/logout")
        assert resp.status_code == 302
        assert resp.headers["Location"].endswith("/login.html")
        assert auth_client.get("/api/surveys").status_code == 401


class TestSaveAndList:
    """Intake and dashboard listing."""

    def test_save_validation(self, client):
        assert _save(client, "worker", {}).status_code == 400
        assert client.post("/api/save-survey", json={"data": {"a": 1}}).status_code == 400
        resp = _save(client, "admin", {"a": 1})
        assert resp.status_code == 400
        assert resp.get_json()["message"] == "Invalid survey type"
        assert _save(client, "worker", ["not", "a", "dict"]).status_code == 400

    def test_saved_record_reproduces_data(self, client, store):
        data = {"الرقابة عادلة؟": "نعم", "اسم الفرع": "جسر الشغور", "reasons": ["a", "b"]}
        resp = _save(client, "worker", data)
        assert resp.status_code == 200
        record_id = resp.get_json()["id"]

        record = store.get_worker_by_id(record_id)
        assert record["id"] == record_id
        assert record["receivedAt"]
        for key, value in data.items():
            assert record[key] == value

    def test_client_cannot_choose_id(self, client, store):
        record_id = _save(client, "manager", {"id": "forced", "q": "x"}).get_json()["id"]
        assert record_id != "forced"
        assert store.get_manager_by_id("forced") is None

    def test_pagination(self, auth_client, store):
        for i in range(3):
            store.add_worker({"receivedAt": f"2026-01-0{i + 1}T00:00:00.000Z", "n": str(i)})
        store.add_manager({"q": "x"})

        first = auth_client.get("/api/surveys?page=1&limit=2").get_json()
        assert len(first["workers"]) == 2
        assert first["workers"][0]["n"] == "2"
        assert first["pagination"] == {
            "page": 1,
            "limit": 2,
            "totalManagers": 1,
            "totalWorkers": 3,
            "totalPagesManagers": 1,
            "totalPagesWorkers": 2,
        }
        second = auth_client.get("/api/surveys?page=2&limit=2").get_json()
        assert [w["n"] for w in second["workers"]] == ["0"]
        assert second["managers"] == []

    def test_limit_all(self, auth_client, store):
        for i in range(60):
            store.add_manager({"n": i})
        body = auth_client.get("/api/surveys?limit=all&page=3").get_json()
        assert len(body["managers"]) == 60
        assert body["pagination"]["totalPagesManagers"] == 1
        assert body["pagination"]["totalPagesWorkers"] == 1
        assert body["pagination"]["limit"] == 60

    def test_default_limit(self, auth_client):
        body = auth_client.get("/api/surveys?limit=abc").get_json()
        assert body["pagination"]["limit"] == 50
        assert body["pagination"]["totalPagesWorkers"] == 0

    def test_search_and_filters(self, auth_client, store):
        store.add_worker({"branch": "حلب", "answer": "نعم"})
        store.add_worker({"branch": "إدلب", "answer": "لا"})
        filters = json.dumps({"branch": ["حلب"]}, ensure_ascii=False)

        body = auth_client.get("/api/surveys", query_string={"filters": filters}).get_json()
        assert [w["branch"] for w in body["workers"]] == ["حلب"]
        assert body["pagination"]["totalWorkers"] == 1

        body = auth_client.get("/api/surveys", query_string={"search": "لا"}).get_json()
        assert body["pagination"]["totalWorkers"] == 1

    def test_malformed_filters_are_ignored(self, auth_client, store):
        store.add_worker({"q": "x"})
        body = auth_client.get("/api/surveys?filters={oops").get_json()
        assert body["pagination"]["totalWorkers"] == 1

    def test_unsafe_filter_field_is_rejected(self, auth_client):
        filters = json.dumps({"x') OR 1=1 --": ["a"]})
        resp = auth_client.get("/api/surveys", query_string={"filters": filters})
        assert resp.status_code == 400
        assert resp.get_json()["status"] == "error"


class TestUniqueValuesAndStats:
    def test_unique_values(self, auth_client, store):
        store.add_worker({"branch": "حلب"})
        store.add_worker({"branch": "إدلب"})
        resp = auth_client.get("/api/surveys/unique-values", query_string={"type": "worker", "field": "branch"})
        assert resp.get_json() == {"status": "success", "values": sorted(["حلب", "إدلب"])}

    def test_unique_values_validation(self, auth_client):
        assert auth_client.get("/api/surveys/unique-values?type=worker").status_code == 400
        assert auth_client.get("/api/surveys/unique-values?type=x&field=q").status_code == 400

    def test_stats(self, auth_client, store):
        store.add_worker({"اسم الفرع": "جسر الشغور", "receivedAt": "2026-03-01T00:00:00.000Z"})
        store.add_worker({"اسم الفرع": "حلب", "receivedAt": "2026-03-01T05:00:00.000Z"})
        body = auth_client.get("/api/surveys/stats?type=worker").get_json()
        assert body["stats"]["total"] == 2
        assert body["stats"]["branches"] == {"إدلب": 1, "حلب": 1}
        assert body["stats"]["timeline"] == [{"date": "2026-03-01", "count": 2}]

        body = auth_client.get("/api/surveys/stats", query_string={"type": "worker", "branch": "حلب"}).get_json()
        assert body["stats"]["total"] == 1

    def test_stats_requires_type(self, auth_client):
        assert auth_client.get("/api/surveys/stats").status_code == 400


class TestDelete:
    def test_delete_twice(self, auth_client, store):
        record_id = store.add_worker({"q": "x"})
        first = auth_client.delete(f"/api/survey/worker/{record_id}")
        assert first.status_code == 200
        assert first.get_json() == {"status": "success"}
        second = auth_client.delete(f"/api/survey/worker/{record_id}")
        assert second.status_code == 404

    def test_invalid_type(self, auth_client):
        assert auth_client.delete("/api/survey/boss/1").status_code == 400


class TestLocks:
    def test_public_read_defaults(self, client):
        assert client.get("/api/survey-locks").get_json() == {"worker": False, "manager": False}

    def test_update(self, auth_client, client):
        resp = auth_client.post("/api/survey-locks", json={"type": "worker", "locked": True})
        assert resp.get_json() == {"status": "success", "locks": {"worker": True, "manager": False}}
        assert client.get("/api/survey-locks").get_json() == {"worker": True, "manager": False}

    def test_string_flag(self, auth_client):
        auth_client.post("/api/survey-locks", json={"type": "manager", "locked": True})
        resp = auth_client.post("/api/survey-locks", json={"type": "manager", "locked": "false"})
        assert resp.get_json()["locks"]["manager"] is False

    def test_invalid_type(self, auth_client):
        assert auth_client.post("/api/survey-locks", json={"type": "x", "locked": True}).status_code == 400


class TestBackup:
    def test_download(self, auth_client, store):
        store.add_worker({"q": "x"})
        resp = auth_client.get("/api/backup")
        assert resp.status_code == 200
        assert "survey-backup-" in resp.headers["Content-Disposition"]
        assert resp.data.startswith(b"SQLite format 3")
        resp.close()

    def test_missing_file(self, auth_client):
        assert auth_client.get("/api/backup").status_code == 404

    def test_not_available_for_mysql(self):
        app = create_app(store=MysqlStore("localhost", "u", "p", "db"), settings={"TESTING": True})
        client = app.test_client()
        with client.session_transaction() as sess:
            sess["auth"] = True
        resp = client.get("/api/backup")
        assert resp.status_code == 400


class TestMaintenanceEndpoints:
    def test_normalize_branches(self, auth_client, store):
        record_id = store.add_worker({"اسم الفرع": "جسر الشغور"})
        resp = auth_client.post("/api/maintenance/normalize-branches")
        assert resp.get_json() == {"status": "success", "changed": 1}
        assert store.get_worker_by_id(record_id)["اسم الفرع"] == "إدلب"

    def test_cli_normalize(self, app, store):
        store.add_worker({"اسم الفرع": "سرمدا"})
        result = app.test_cli_runner().invoke(args=["normalize-branches"])
        assert result.exit_code == 0
        assert "1 record(s) updated" in result.output

    def test_cli_diagnose(self, app):
        result = app.test_cli_runner().invoke(args=["diagnose"])
        assert result.exit_code == 0
        assert json.loads(result.output)["engine"] == "sqlite"


class TestEmail:
    def test_unconfigured(self, client, monkeypatch):
        def _raise(data, meta):
            raise MailNotConfigured("Server is not configured (MAIL_TO is missing).")

        monkeypatch.setattr(app_module, "send_submission", _raise)
        resp = client.post("/send-email", data={"name": "Sam"})
        assert resp.status_code == 500
        assert "MAIL_TO" in resp.get_json()["message"]

    def test_sends_form_fields(self, client, monkeypatch):
        sent = {}

        def _capture(data, meta):
            sent["data"] = data
            sent["meta"] = meta

        monkeypatch.setattr(app_module, "send_submission", _capture)
        resp = client.post(
            "/send-email",
            data={"name": "Sam", "tags": ["a", "b"]},
            headers={"X-Forwarded-For": "1.2.3.4, 10.0.0.1", "User-Agent": "pytest"},
        )
        assert resp.get_json() == {"status": "success", "message": "Sent successfully."}
        assert sent["data"] == {"name": "Sam", "tags": ["a", "b"]}
        assert sent["meta"]["ip"] == "1.2.3.4"
        assert sent["meta"]["user_agent"] == "pytest"


class TestMisc:
    def test_health(self, client):
        assert client.get("/health").get_json() == {"ok": True}

    def test_ping(self, client):
        assert client.get("/api/ping").get_json()["status"] == "ok"

    def test_unknown_api_route(self, client):
        resp = client.get("/api/does-not-exist")
        assert resp.status_code == 404
        body = resp.get_json()
        assert body["status"] == "error"
        assert "hint" in body

    @pytest.mark.parametrize("path", ["/api/save-survey", "/api/login"])
    def test_wrong_method_on_known_route(self, client, path):
        assert client.get(path).status_code in (404, 405)


class TestSessionSecret:
    """Workers must share one signing key outside debug and testing."""

    def test_required_in_production(self, store, monkeypatch):
        monkeypatch.setattr(config, "SESSION_SECRET", "")
        monkeypatch.setattr(config, "DEBUG", False)
        with pytest.raises(RuntimeError, match="SESSION_SECRET"):
            create_app(store=store)

    def test_configured_secret_is_used(self, store, monkeypatch):
        monkeypatch.setattr(config, "SESSION_SECRET", "shared-key")
        monkeypatch.setattr(config, "DEBUG", False)
        assert create_app(store=store).secret_key == "shared-key"

    def test_generated_key_in_debug(self, store, monkeypatch):
        monkeypatch.setattr(config, "SESSION_SECRET", "")
        monkeypatch.setattr(config, "DEBUG", True)
        assert create_app(store=store).secret_key
