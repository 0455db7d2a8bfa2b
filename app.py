# app.py - SurveyDesk
# Survey intake + review dashboard API (Flask). Storage lives in db.py.

from __future__ import annotations

import hmac
import json
import logging
import math
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import click
from flask import Blueprint, Flask, current_app, jsonify, redirect, request, send_file, session
from flask.cli import with_appcontext
from werkzeug.security import check_password_hash

import analytics as ana
import branches as br
import config
import maintenance as mnt
from db import ALL, DEFAULT_LIMIT, KINDS, SqliteStore, SurveyStore, create_store, get_store, new_record_id, now_iso
from logs import setup_logging
from mailer import MailDeliveryError, MailNotConfigured, redact_email, send_submission
from query import InvalidField

logger = logging.getLogger(__name__)

MAX_BODY = 250 * 1024
LOGIN_PAGE = "/login.html"
STORE_KEY = "survey_store"

bp = Blueprint("surveydesk", __name__)


def _safe_int(x, default=0) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _error(message: str, status: int, **extra):
    body: Dict[str, Any] = {"status": "error", "message": message}
    body.update(extra)
    return jsonify(body), status


def _store() -> SurveyStore:
    return current_app.extensions[STORE_KEY]


def _request_data() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    out: Dict[str, Any] = {}
    for key, values in request.form.to_dict(flat=False).items():
        out[key] = values[0] if len(values) == 1 else values
    return out


def _parse_filters(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring malformed filters parameter: %r", raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _kind(value: Any) -> str:
    kind = str(value or "").strip().lower()
    return kind if kind in KINDS else ""


def _credentials_ok(username: Any, password: Any) -> bool:
    username = str(username or "")
    password = str(password or "")
    user_ok = hmac.compare_digest(username.encode("utf-8"), config.ADMIN_USERNAME.encode("utf-8"))
    if config.ADMIN_PASSWORD_HASH:
        pass_ok = check_password_hash(config.ADMIN_PASSWORD_HASH, password)
    else:
        pass_ok = hmac.compare_digest(password.encode("utf-8"), config.ADMIN_PASSWORD.encode("utf-8"))
    return user_ok and pass_ok


def _is_authed() -> bool:
    return bool(session.get("auth"))


def _requires_auth(path: str, method: str) -> bool:
    if path.startswith("/api/surveys") or path.startswith("/api/backup") or path.startswith("/api/maintenance"):
        return True
    if path.startswith("/api/survey-locks") and method == "POST":
        return True
    if path.startswith("/api/survey/") and method == "DELETE":
        return True
    return False


@bp.before_app_request
def _before_request_auth():
    logger.info("%s %s", request.method, request.path)
    if _requires_auth(request.path, request.method) and not _is_authed():
        logger.warning("Unauthorized API access blocked: %s %s", request.method, request.path)
        return _error("Unauthorized", 401)
    return None


# ---------------------------
# Auth
# ---------------------------

@bp.route("/api/login", methods=["POST"])
def api_login():
    data = _request_data()
    if not _credentials_ok(data.get("username"), data.get("password")):
        return _error("Invalid credentials", 401)
    session.clear()
    session.permanent = True
    session["auth"] = True
    return jsonify({"status": "success"})


@bp.route("/api/logout", methods=["GET"])
def api_logout():
    session.clear()
    return redirect(LOGIN_PAGE)


# ---------------------------
# Health
# ---------------------------

@bp.route("/health", methods=["GET"])
def health():
    return jsonify({"ok": True})


@bp.route("/api/ping", methods=["GET"])
def api_ping():
    return jsonify({"status": "ok", "message": "Server is running latest code", "timestamp": now_iso()})


# ---------------------------
# Dashboard API
# ---------------------------

@bp.route("/api/surveys", methods=["GET"])
def api_surveys():
    page = max(_safe_int(request.args.get("page"), 1), 1)
    limit_raw = (request.args.get("limit") or "").strip().lower()
    if limit_raw == ALL:
        limit: Any = ALL
        offset = 0
    else:
        limit = _safe_int(limit_raw, DEFAULT_LIMIT)
        if limit <= 0:
            limit = DEFAULT_LIMIT
        offset = (page - 1) * limit
    search = request.args.get("search") or ""
    filters = _parse_filters(request.args.get("filters"))

    store = _store()
    try:
        managers = store.list_managers(limit, offset, search, filters)
        workers = store.list_workers(limit, offset, search, filters)
        total_managers = store.count_managers(search, filters)
        total_workers = store.count_workers(search, filters)
    except InvalidField as e:
        return _error(str(e), 400)
    except Exception as e:
        logger.exception("Failed to fetch surveys")
        return _error("Internal server error while fetching data", 500, detail=str(e))

    if limit == ALL:
        pagination = {
            "page": page,
            "limit": max(total_managers, total_workers),
            "totalManagers": total_managers,
            "totalWorkers": total_workers,
            "totalPagesManagers": 1,
            "totalPagesWorkers": 1,
        }
    else:
        pagination = {
            "page": page,
            "limit": limit,
            "totalManagers": total_managers,
            "totalWorkers": total_workers,
            "totalPagesManagers": math.ceil(total_managers / limit),
            "totalPagesWorkers": math.ceil(total_workers / limit),
        }
    return jsonify({"managers": managers, "workers": workers, "pagination": pagination})


@bp.route("/api/surveys/unique-values", methods=["GET"])
def api_unique_values():
    kind = _kind(request.args.get("type"))
    field = (request.args.get("field") or "").strip()
    if not request.args.get("type") or not field:
        return _error("Missing type or field", 400)
    if not kind:
        return _error("Invalid survey type", 400)
    filters = _parse_filters(request.args.get("filters"))
    try:
        values = _store().list_unique_values(kind, field, filters)
    except InvalidField as e:
        return _error(str(e), 400)
    except Exception:
        logger.exception("Failed to fetch unique values for %s.%s", kind, field)
        return _error("Failed to fetch unique values", 500)
    return jsonify({"status": "success", "values": values})


@bp.route("/api/surveys/stats", methods=["GET"])
def api_stats():
    kind = _kind(request.args.get("type"))
    if not kind:
        return _error("Invalid survey type", 400)
    search = request.args.get("search") or ""
    filters = _parse_filters(request.args.get("filters"))
    branch = request.args.get("branch") or ""
    try:
        records = _store().list_records(kind, ALL, 0, search, filters)
    except InvalidField as e:
        return _error(str(e), 400)
    except Exception:
        logger.exception("Failed to load %s records for stats", kind)
        return _error("Failed to compute statistics", 500)
    return jsonify({"status": "success", "type": kind, "stats": ana.summarize(records, branch=branch)})


@bp.route("/api/save-survey", methods=["POST"])
def api_save_survey():
    body = _request_data()
    kind_raw = body.get("type")
    data = body.get("data")
    if not kind_raw or not data:
        return _error("Missing type or data", 400)
    kind = _kind(kind_raw)
    if not kind:
        return _error("Invalid survey type", 400)
    if not isinstance(data, dict):
        return _error("Invalid survey data", 400)

    entry = dict(data)
    entry["id"] = new_record_id()
    entry["receivedAt"] = now_iso()
    try:
        record_id = _store().add_record(kind, entry)
    except Exception:
        logger.exception("Error saving %s survey", kind)
        return _error("Failed to save survey", 500)
    logger.info("Saved %s survey %s", kind, record_id)
    return jsonify({"status": "success", "id": record_id})


@bp.route("/api/survey/<kind_raw>/<record_id>", methods=["DELETE"])
def api_delete_survey(kind_raw, record_id):
    kind = _kind(kind_raw)
    if not kind:
        return _error("Invalid type", 400)
    try:
        deleted = _store().delete_record(kind, record_id)
    except Exception:
        logger.exception("Error deleting %s survey %s", kind, record_id)
        return _error("Failed to delete survey", 500)
    if not deleted:
        return _error("Not found", 404)
    logger.info("Deleted %s survey %s", kind, record_id)
    return jsonify({"status": "success"})


@bp.route("/api/survey-locks", methods=["GET"])
def api_get_locks():
    try:
        return jsonify(_store().get_lock_status())
    except Exception:
        logger.exception("Error fetching survey lock status")
        return _error("Failed to fetch lock status", 500)


@bp.route("/api/survey-locks", methods=["POST"])
def api_set_lock():
    body = _request_data()
    kind = _kind(body.get("type"))
    if not kind:
        return _error("Invalid survey type", 400)
    locked = _as_bool(body.get("locked"))
    store = _store()
    try:
        store.set_lock(kind, locked)
        locks = store.get_lock_status()
    except Exception:
        logger.exception("Error updating survey lock status")
        return _error("Failed to update lock status", 500)
    logger.info("Survey lock for %s set to %s", kind, locked)
    return jsonify({"status": "success", "locks": locks})


@bp.route("/api/backup", methods=["GET"])
@bp.route("/api/backup/", methods=["GET"])
def api_backup():
    store = _store()
    if not isinstance(store, SqliteStore):
        return _error("Backup download is only supported for SQLite mode.", 400)
    path = store.path
    if not path:
        return _error("Database path is not configured.", 500)
    if not os.path.exists(path):
        return _error("Database file not found.", 404)
    file_name = f"survey-backup-{datetime.now(timezone.utc).date().isoformat()}.db"
    try:
        return send_file(
            path,
            mimetype="application/vnd.sqlite3",
            as_attachment=True,
            download_name=file_name,
        )
    except OSError:
        logger.exception("Error sending backup file")
        return _error("Failed to download backup file.", 500)


@bp.route("/api/maintenance/normalize-branches", methods=["POST"])
def api_normalize_branches():
    try:
        changed = br.normalize_branches(_store())
    except Exception:
        logger.exception("Branch normalization failed")
        return _error("Branch normalization failed", 500)
    return jsonify({"status": "success", "changed": changed})


@bp.route("/api", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
@bp.route("/api/<path:rest>", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
def api_not_found(rest: str = ""):
    logger.info("API endpoint not found: %s %s", request.method, request.path)
    return _error(
        f"API endpoint {request.method} {request.path} not found.",
        404,
        hint="Ensure your server is running the latest code and has been restarted.",
    )


# ---------------------------
# Email relay
# ---------------------------

@bp.route("/send-email", methods=["POST"])
def send_email():
    logger.info("New submission received for email relay")
    data = _request_data()
    forwarded = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    meta = {
        "received_at": now_iso(),
        "ip": forwarded or request.remote_addr or "",
        "user_agent": request.headers.get("User-Agent", ""),
    }
    try:
        send_submission(data, meta)
    except MailNotConfigured as e:
        return _error(str(e), 500)
    except MailDeliveryError as e:
        return _error(str(e), 500)
    return jsonify({"status": "success", "message": "Sent successfully."})


# ---------------------------
# CLI
# ---------------------------

@click.command("normalize-branches")
@with_appcontext
def normalize_branches_command():
    """Rewrite branch names to their canonical city."""
    changed = br.normalize_branches(_store())
    click.echo(f"{changed} record(s) updated")


@click.command("import-json")
@click.argument("path", required=False)
@with_appcontext
def import_json_command(path):
    """Import a legacy database.json file into an empty store."""
    counts = mnt.import_json(_store(), path or config.LEGACY_JSON_PATH)
    click.echo(json.dumps(counts))


@click.command("copy-to-mysql")
@with_appcontext
def copy_to_mysql_command():
    """Copy every record from the SQLite file into the configured MySQL database."""
    source = SqliteStore(config.SQLITE_PATH)
    target = create_store("mysql")
    try:
        counts = mnt.copy_records(source, target)
    finally:
        target.close()
    click.echo(json.dumps(counts))


@click.command("diagnose")
@with_appcontext
def diagnose_command():
    """Print record counts, lock flags and query timing."""
    click.echo(json.dumps(mnt.diagnose(_store()), ensure_ascii=False, indent=2))


# ---------------------------
# App factory
# ---------------------------

def create_app(store: Optional[SurveyStore] = None, settings: Optional[Dict[str, Any]] = None) -> Flask:
    setup_logging()
    app = Flask(__name__)
    app.secret_key = config.SESSION_SECRET or None
    app.permanent_session_lifetime = timedelta(hours=config.SESSION_HOURS)
    app.config["MAX_CONTENT_LENGTH"] = MAX_BODY
    app.config["SESSION_COOKIE_HTTPONLY"] = True
    app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
    if settings:
        app.config.update(settings)
    app.json.ensure_ascii = False

    # Every worker process must sign sessions with the same key.
    if not app.secret_key:
        if not (config.DEBUG or app.testing):
            raise RuntimeError("SESSION_SECRET must be set when DEBUG is off")
        logger.warning("SESSION_SECRET is not set; using a per-process key")
        app.secret_key = secrets.token_urlsafe(32)

    app.extensions[STORE_KEY] = store or get_store()
    app.register_blueprint(bp)
    for command in (normalize_branches_command, import_json_command, copy_to_mysql_command, diagnose_command):
        app.cli.add_command(command)
    return app


if __name__ == "__main__":
    application = create_app()
    mnt.import_json(application.extensions[STORE_KEY], config.LEGACY_JSON_PATH)
    logger.info("Server running on http://localhost:%s", config.PORT)
    logger.info("Receiver (MAIL_TO): %s", redact_email(config.MAIL_TO) or "(not set)")
    logger.info("SMTP (SMTP_USER): %s", redact_email(config.SMTP_USER) or "(not set)")
    application.run(host=config.HOST, port=config.PORT, debug=config.DEBUG)
