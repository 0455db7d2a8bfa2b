# mailer.py - SurveyDesk
# Formats a raw form submission and delivers it over SMTP.

from __future__ import annotations

import html
import json
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List, Mapping, Tuple

import config

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "New form submission"
MAX_SUBJECT = 180
EMPTY_MARK = "—"


class MailNotConfigured(RuntimeError):
    pass


class MailDeliveryError(RuntimeError):
    pass


def redact_email(email: Any) -> str:
    if not email or not isinstance(email, str):
        return ""
    at = email.find("@")
    if at <= 1:
        return "***"
    return f"{email[:2]}***{email[at:]}"


def normalize_field_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _visible_entries(data: Mapping[str, Any]) -> List[Tuple[str, Any]]:
    return [(str(k), v) for k, v in (data or {}).items() if not str(k).startswith("_")]


def build_email_content(data: Mapping[str, Any], meta: Mapping[str, Any]) -> Tuple[str, str]:
    """
    Returns (text_body, html_body). Keys starting with "_" are control fields
    (e.g. _subject) and are left out.
    """
    entries = _visible_entries(data)
    received = str(meta.get("received_at") or "")
    ip = str(meta.get("ip") or "")
    agent = str(meta.get("user_agent") or "")

    lines = [f"Time: {received}"]
    if ip:
        lines.append(f"IP: {ip}")
    if agent:
        lines.append(f"User-Agent: {agent}")
    lines.append("")
    for key, value in entries:
        lines.append(f"{key}: {normalize_field_value(value) or EMPTY_MARK}")

    cell = "padding:8px;border:1px solid #e5e7eb;vertical-align:top;white-space:pre-wrap;"
    rows = []
    for key, value in entries:
        rows.append(
            f"<tr><td style=\"{cell}font-weight:600;\">{html.escape(key)}</td>"
            f"<td style=\"{cell}\">{html.escape(normalize_field_value(value) or EMPTY_MARK)}</td></tr>"
        )
    rows_html = "".join(rows) or (
        "<tr><td colspan=\"2\" style=\"padding:10px;border:1px solid #e5e7eb;\">No fields received.</td></tr>"
    )
    meta_html = f"<div><b>Time:</b> {html.escape(received)}</div>"
    if ip:
        meta_html += f"<div><b>IP:</b> {html.escape(ip)}</div>"
    if agent:
        meta_html += f"<div><b>User-Agent:</b> {html.escape(agent)}</div>"

    html_body = f"""<!doctype html>
<html>
  <body style="font-family:Arial, sans-serif;background:#f7fafc;padding:16px;">
    <div style="max-width:760px;margin:0 auto;background:#ffffff;border:1px solid #e5e7eb;border-radius:10px;overflow:hidden;">
      <div style="background:#219150;color:#fff;padding:14px 16px;font-size:16px;font-weight:700;">
        New website form submission
      </div>
      <div style="padding:14px 16px;color:#111827;font-size:13px;">
        <div style="margin-bottom:10px;color:#374151;">{meta_html}</div>
        <table style="width:100%;border-collapse:collapse;font-size:13px;">
          <thead>
            <tr>
              <th style="text-align:left;padding:8px;border:1px solid #e5e7eb;background:#f3f4f6;">Field</th>
              <th style="text-align:left;padding:8px;border:1px solid #e5e7eb;background:#f3f4f6;">Value</th>
            </tr>
          </thead>
          <tbody>{rows_html}</tbody>
        </table>
      </div>
    </div>
  </body>
</html>"""
    return "\n".join(lines), html_body


def subject_for(data: Mapping[str, Any]) -> str:
    raw = data.get("_subject") if data else None
    subject = raw if isinstance(raw, str) and raw.strip() else DEFAULT_SUBJECT
    return subject[:MAX_SUBJECT]


def _settings() -> Dict[str, Any]:
    if not config.MAIL_TO:
        raise MailNotConfigured("Server is not configured (MAIL_TO is missing).")
    if not (config.SMTP_HOST and config.SMTP_USER and config.SMTP_PASS):
        raise MailNotConfigured("Server is not configured (SMTP_HOST/SMTP_USER/SMTP_PASS are missing).")
    return {
        "host": config.SMTP_HOST,
        "port": int(config.SMTP_PORT or 587),
        "user": config.SMTP_USER,
        "password": config.SMTP_PASS,
        "secure": bool(config.SMTP_SECURE),
        "timeout": int(config.SMTP_TIMEOUT or 15),
        "to": config.MAIL_TO,
        "from": config.MAIL_FROM or config.SMTP_USER,
    }


def send_submission(data: Mapping[str, Any], meta: Mapping[str, Any]) -> None:
    settings = _settings()
    text_body, html_body = build_email_content(data, meta)

    msg = EmailMessage()
    msg["From"] = settings["from"]
    msg["To"] = settings["to"]
    msg["Subject"] = subject_for(data)
    msg.set_content(text_body)
    msg.add_alternative(html_body, subtype="html")

    logger.info("Sending email to %s", redact_email(settings["to"]))
    try:
        if settings["secure"]:
            server = smtplib.SMTP_SSL(settings["host"], settings["port"], timeout=settings["timeout"])
        else:
            server = smtplib.SMTP(settings["host"], settings["port"], timeout=settings["timeout"])
        with server:
            if not settings["secure"]:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls()
                    server.ehlo()
            server.login(settings["user"], settings["password"])
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Email send failed: %s", exc)
        raise MailDeliveryError("Email send failed on server.") from exc
    logger.info("Email sent")
