from app import create_app

# The legacy JSON import runs once in the gunicorn master (see gunicorn.conf.py)
# or on demand with `flask import-json`.
app = create_app()
