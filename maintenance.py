# maintenance.py - SurveyDesk
# One-shot data jobs: legacy JSON import, SQLite -> MySQL copy, diagnostics.

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict

from db import KINDS, SurveyStore

logger = logging.getLogger(__name__)


def import_json(store: SurveyStore, path: str) -> Dict[str, int]:
    """
    Imports a legacy {"managers": [...], "workers": [...]} file.
    Skipped when the file is missing or the store already holds records.

    The import is all-or-nothing: if any entry fails, nothing is written and
    the next run tries again.
    """
    counts = {kind: 0 for kind in KINDS}
    if not path or not os.path.exists(path):
        logger.info("No JSON database file at %s, skipping import", path)
        return counts
    if any(store.count_records(kind) for kind in KINDS):
        logger.info("Database already contains data, skipping import")
        return counts

    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    kind = None
    try:
        with store.batch():
            for kind, table in KINDS.items():
                entries = data.get(table) if isinstance(data, dict) else None
                if not isinstance(entries, list):
                    continue
                for entry in entries:
                    if not isinstance(entry, dict):
                        continue
                    store.add_record(kind, entry)
                    counts[kind] += 1
    except Exception:
        logger.exception("Import of %s records from %s failed; nothing was imported", kind, path)
        return {k: 0 for k in KINDS}

    for kind, count in counts.items():
        logger.info("Imported %s %s record(s)", count, kind)
    return counts


def import_legacy_on_boot() -> Dict[str, int]:
    """
    Runs the legacy import once against a fresh store built from config,
    closed afterwards so no pooled connection outlives the call.
    """
    import config
    from db import create_store

    store = create_store()
    try:
        return import_json(store, config.LEGACY_JSON_PATH)
    finally:
        store.close()


def copy_records(source: SurveyStore, target: SurveyStore) -> Dict[str, int]:
    """
    Copies every record from `source` into `target`, keeping ids and
    timestamps. Ids already present in the target are left alone.
    """
    counts = {kind: 0 for kind in KINDS}
    for kind in KINDS:
        for record in source.iter_records(kind):
            if target.get_record(kind, record["id"]) is not None:
                continue
            target.add_record(kind, record)
            counts[kind] += 1
        logger.info("Copied %s %s record(s) to %s", counts[kind], kind, target.engine)
    return counts


def diagnose(store: SurveyStore) -> Dict[str, Any]:
    start = time.perf_counter()
    counts = {kind: store.count_records(kind) for kind in KINDS}
    locks = store.get_lock_status()
    elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
    return {
        "engine": store.engine,
        "target": store.describe(),
        "counts": counts,
        "locks": locks,
        "elapsed_ms": elapsed_ms,
    }
