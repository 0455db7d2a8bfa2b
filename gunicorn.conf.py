import os
from config import HOST, PORT

bind = os.getenv("GUNICORN_BIND", f"{HOST}:{PORT}")
workers = int(os.getenv("GUNICORN_WORKERS", "2"))
threads = int(os.getenv("GUNICORN_THREADS", "4"))
timeout = int(os.getenv("GUNICORN_TIMEOUT", "60"))
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()


def on_starting(server):
    import maintenance

    try:
        maintenance.import_legacy_on_boot()
    except Exception:
        server.log.exception("Legacy JSON import failed")
