# db.py - SurveyDesk storage
# One store interface over two engines: embedded SQLite file or pooled MySQL.

from __future__ import annotations

import json
import logging
import os
import random
import sqlite3
import string
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from query import MYSQL, RECEIVED_AT, SQLITE, Dialect, build_where, validate_field

logger = logging.getLogger(__name__)

KINDS: Dict[str, str] = {"manager": "managers", "worker": "workers"}
LOCK_KEYS: Dict[str, str] = {"worker": "lock_worker", "manager": "lock_manager"}
ALL = "all"
DEFAULT_LIMIT = 50


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_record_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=10))
    return f"{int(time.time() * 1000)}{suffix}"


def _safe_int(x, default=0) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _table(kind: str) -> str:
    table = KINDS.get((kind or "").strip().lower())
    if not table:
        raise ValueError(f"Unknown survey type: {kind!r}")
    return table


def _page(limit: Any, offset: Any) -> Tuple[Optional[int], int]:
    """
    Returns (limit, offset) as ints; limit is None for "all", in which case
    the offset is ignored.
    """
    if isinstance(limit, str) and limit.strip().lower() == ALL:
        return None, 0
    lim = _safe_int(limit, DEFAULT_LIMIT)
    if lim <= 0:
        lim = DEFAULT_LIMIT
    off = max(_safe_int(offset, 0), 0)
    return lim, off


def split_entry(entry: Mapping[str, Any]) -> Tuple[str, str, Dict[str, Any]]:
    payload = dict(entry or {})
    record_id = str(payload.pop("id", "") or "").strip() or new_record_id()
    received_at = str(payload.pop(RECEIVED_AT, "") or "").strip() or now_iso()
    return record_id, received_at, payload


def _load_payload(raw: Any, record_id: str = "") -> Dict[str, Any]:
    if raw is None or raw == "":
        return {}
    try:
        data = json.loads(raw)
    except Exception:
        logger.warning("Corrupt payload for record %s; reading it as empty", record_id)
        return {}
    if not isinstance(data, dict):
        return {}
    data.pop("id", None)
    data.pop(RECEIVED_AT, None)
    return data


def _dump_payload(payload: Mapping[str, Any]) -> str:
    clean = {k: v for k, v in payload.items() if k not in ("id", RECEIVED_AT)}
    return json.dumps(clean, ensure_ascii=False)


def expand_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    record_id = str(row["id"])
    out: Dict[str, Any] = {"id": record_id, RECEIVED_AT: row[RECEIVED_AT]}
    out.update(_load_payload(row["data"], record_id))
    return out


def _flatten_value(raw: Any) -> List[str]:
    if raw is None:
        return []
    text = str(raw).strip()
    if not text or text == "null":
        return []
    if text.startswith("["):
        try:
            items = json.loads(text)
        except Exception:
            return [text]
        if isinstance(items, list):
            return [str(i).strip() for i in items if i is not None and str(i).strip()]
    return [text]


class SurveyStore:
    """
    Repository over the two record tables and the settings table.

    Subclasses provide the connection primitives, DDL and upsert statement for
    their engine; every operation below is written once against `dialect`.
    """

    engine = ""
    dialect: Dialect = SQLITE

    def __init__(self) -> None:
        self._ready = False
        self._local = threading.local()

    # -------------------------
    # Engine primitives
    # -------------------------

    def _schema(self) -> List[str]:
        raise NotImplementedError

    def _open(self) -> None:
        pass

    def _upsert_setting_sql(self) -> str:
        raise NotImplementedError

    def _fetchall(self, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _execute(self, sql: str, params: List[Any]) -> int:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def describe(self) -> str:
        return self.engine

    def _ensure_ready(self) -> None:
        if self._ready:
            return
        self._open()
        for stmt in self._schema():
            self._execute(stmt, [])
        self._ready = True
        logger.info("%s store initialized (%s)", self.engine, self.describe())

    def _active(self):
        return getattr(self._local, "conn", None)

    @contextmanager
    def batch(self) -> Iterator["SurveyStore"]:
        """
        Runs every store call made by this thread inside the block on one
        connection, so the writes commit together or roll back together.
        Nested batches join the outer one.
        """
        if self._active() is not None:
            yield self
            return
        self._ensure_ready()
        with self._conn() as conn:
            self._local.conn = conn
            try:
                yield self
            finally:
                self._local.conn = None

    def _fetchone(self, sql: str, params: List[Any]) -> Optional[Dict[str, Any]]:
        rows = self._fetchall(sql, params)
        return rows[0] if rows else None

    # -------------------------
    # Records
    # -------------------------

    def list_records(
        self,
        kind: str,
        limit: Any = DEFAULT_LIMIT,
        offset: Any = 0,
        search: str = "",
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        table = _table(kind)
        self._ensure_ready()
        where_sql, params = build_where(search, filters, self.dialect)
        sql = f"SELECT id, {RECEIVED_AT}, data FROM {table} {where_sql} ORDER BY {RECEIVED_AT} DESC, id DESC"
        lim, off = _page(limit, offset)
        if lim is not None:
            ph = self.dialect.placeholder
            sql += f" LIMIT {ph} OFFSET {ph}"
            params = params + [lim, off]
        return [expand_row(r) for r in self._fetchall(sql, params)]

    def count_records(
        self,
        kind: str,
        search: str = "",
        filters: Optional[Mapping[str, Any]] = None,
    ) -> int:
        table = _table(kind)
        self._ensure_ready()
        where_sql, params = build_where(search, filters, self.dialect)
        row = self._fetchone(f"SELECT COUNT(*) AS total FROM {table} {where_sql}", params)
        return _safe_int(row["total"]) if row else 0

    def iter_records(self, kind: str) -> Iterator[Dict[str, Any]]:
        yield from self.list_records(kind, limit=ALL)

    def add_record(self, kind: str, entry: Mapping[str, Any]) -> str:
        table = _table(kind)
        self._ensure_ready()
        record_id, received_at, payload = split_entry(entry)
        ph = self.dialect.placeholder
        self._execute(
            f"INSERT INTO {table} (id, {RECEIVED_AT}, data) VALUES ({ph}, {ph}, {ph})",
            [record_id, received_at, _dump_payload(payload)],
        )
        return record_id

    def get_record(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        table = _table(kind)
        self._ensure_ready()
        row = self._fetchone(
            f"SELECT id, {RECEIVED_AT}, data FROM {table} WHERE id={self.dialect.placeholder} LIMIT 1",
            [str(record_id)],
        )
        return expand_row(row) if row else None

    def delete_record(self, kind: str, record_id: str) -> bool:
        table = _table(kind)
        self._ensure_ready()
        changed = self._execute(
            f"DELETE FROM {table} WHERE id={self.dialect.placeholder}",
            [str(record_id)],
        )
        return changed > 0

    def update_payload(self, kind: str, record_id: str, payload: Mapping[str, Any]) -> bool:
        table = _table(kind)
        self._ensure_ready()
        ph = self.dialect.placeholder
        changed = self._execute(
            f"UPDATE {table} SET data={ph} WHERE id={ph}",
            [_dump_payload(payload), str(record_id)],
        )
        return changed > 0

    def list_unique_values(
        self,
        kind: str,
        field: str,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[str]:
        table = _table(kind)
        field = validate_field(field)
        self._ensure_ready()
        col = self.dialect.column(field)
        where_sql, params = build_where("", filters, self.dialect, exclude=[field])
        not_empty = f"{col} IS NOT NULL AND {col} <> ''"
        where_sql = f"{where_sql} AND {not_empty}" if where_sql else f"WHERE {not_empty}"
        rows = self._fetchall(f"SELECT DISTINCT {col} AS value FROM {table} {where_sql}", params)
        values = set()
        for r in rows:
            values.update(_flatten_value(r["value"]))
        return sorted(values)

    # Named forms used by the HTTP layer and the dashboard.

    def list_managers(self, limit=DEFAULT_LIMIT, offset=0, search="", filters=None):
        return self.list_records("manager", limit, offset, search, filters)

    def list_workers(self, limit=DEFAULT_LIMIT, offset=0, search="", filters=None):
        return self.list_records("worker", limit, offset, search, filters)

    def count_managers(self, search="", filters=None) -> int:
        return self.count_records("manager", search, filters)

    def count_workers(self, search="", filters=None) -> int:
        return self.count_records("worker", search, filters)

    def add_manager(self, entry) -> str:
        return self.add_record("manager", entry)

    def add_worker(self, entry) -> str:
        return self.add_record("worker", entry)

    def delete_manager(self, record_id) -> bool:
        return self.delete_record("manager", record_id)

    def delete_worker(self, record_id) -> bool:
        return self.delete_record("worker", record_id)

    def get_manager_by_id(self, record_id):
        return self.get_record("manager", record_id)

    def get_worker_by_id(self, record_id):
        return self.get_record("worker", record_id)

    # -------------------------
    # Settings (intake locks)
    # -------------------------

    def get_lock_status(self) -> Dict[str, bool]:
        self._ensure_ready()
        keys = list(LOCK_KEYS.values())
        rows = self._fetchall(
            f"SELECT setting_key, setting_value FROM settings WHERE setting_key IN ({self.dialect.placeholders(len(keys))})",
            keys,
        )
        stored = {r["setting_key"]: str(r["setting_value"]) for r in rows}
        return {kind: stored.get(key) == "1" for kind, key in LOCK_KEYS.items()}

    def set_lock(self, kind: str, locked: bool) -> None:
        key = LOCK_KEYS.get((kind or "").strip().lower())
        if not key:
            raise ValueError(f"Unknown survey type: {kind!r}")
        self._ensure_ready()
        self._execute(self._upsert_setting_sql(), [key, "1" if locked else "0"])


class SqliteStore(SurveyStore):
    engine = "sqlite"
    dialect = SQLITE

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = str(path)

    def describe(self) -> str:
        return self.path

    def get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        active = self._active()
        if active is not None:
            yield active
            return
        conn = self.get_conn()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _open(self) -> None:
        parent = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(parent, exist_ok=True)

    def _schema(self) -> List[str]:
        stmts = []
        for table in KINDS.values():
            stmts.append(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                  id TEXT PRIMARY KEY,
                  receivedAt TEXT NOT NULL,
                  data TEXT NOT NULL
                )
                """
            )
            stmts.append(f"CREATE INDEX IF NOT EXISTS idx_{table}_receivedAt ON {table}(receivedAt)")
        stmts.append(
            """
            CREATE TABLE IF NOT EXISTS settings (
              setting_key TEXT PRIMARY KEY,
              setting_value TEXT NOT NULL
            )
            """
        )
        return stmts

    def _upsert_setting_sql(self) -> str:
        return (
            "INSERT INTO settings (setting_key, setting_value) VALUES (?, ?) "
            "ON CONFLICT(setting_key) DO UPDATE SET setting_value=excluded.setting_value"
        )

    def _fetchall(self, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute(sql, tuple(params))
            return [dict(r) for r in cur.fetchall()]

    def _execute(self, sql: str, params: List[Any]) -> int:
        with self._conn() as conn:
            cur = conn.cursor()
            cur.execute(sql, tuple(params))
            return cur.rowcount


class MysqlStore(SurveyStore):
    engine = "mysql"
    dialect = MYSQL

    def __init__(
        self,
        host: str,
        user: str,
        password: str,
        database: str,
        port: int = 3306,
        pool_size: int = 10,
    ) -> None:
        super().__init__()
        self.host = host
        self.user = user
        self.password = password
        self.database = database
        self.port = int(port)
        self.pool_size = max(int(pool_size), 1)
        self._engine = None

    def describe(self) -> str:
        return f"{self.user}@{self.host}:{self.port}/{self.database} pool={self.pool_size}"

    def _open(self) -> None:
        if self._engine is not None:
            return
        from sqlalchemy import create_engine
        from sqlalchemy.engine import URL

        url = URL.create(
            "mysql+pymysql",
            username=self.user or None,
            password=self.password or None,
            host=self.host,
            port=self.port,
            database=self.database or None,
            query={"charset": "utf8mb4"},
        )
        self._engine = create_engine(
            url,
            pool_size=self.pool_size,
            max_overflow=0,
            pool_pre_ping=True,
            pool_recycle=3600,
        )

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
        self._ready = False

    @contextmanager
    def _conn(self):
        active = self._active()
        if active is not None:
            yield active
            return
        self._open()
        with self._engine.begin() as conn:
            yield conn

    def _schema(self) -> List[str]:
        stmts = []
        for table in KINDS.values():
            stmts.append(
                f"""
                CREATE TABLE IF NOT EXISTS {table} (
                  id VARCHAR(64) NOT NULL PRIMARY KEY,
                  receivedAt VARCHAR(40) NOT NULL,
                  data LONGTEXT NOT NULL,
                  INDEX idx_{table}_receivedAt (receivedAt)
                ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
                """
            )
        stmts.append(
            """
            CREATE TABLE IF NOT EXISTS settings (
              setting_key VARCHAR(64) NOT NULL PRIMARY KEY,
              setting_value VARCHAR(255) NOT NULL
            ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4
            """
        )
        return stmts

    def _upsert_setting_sql(self) -> str:
        return (
            "INSERT INTO settings (setting_key, setting_value) VALUES (%s, %s) "
            "ON DUPLICATE KEY UPDATE setting_value=VALUES(setting_value)"
        )

    def _fetchall(self, sql: str, params: List[Any]) -> List[Dict[str, Any]]:
        with self._conn() as conn:
            result = conn.exec_driver_sql(sql, tuple(params))
            return [dict(r._mapping) for r in result.fetchall()]

    def _execute(self, sql: str, params: List[Any]) -> int:
        with self._conn() as conn:
            result = conn.exec_driver_sql(sql, tuple(params))
            return result.rowcount


def create_store(engine: Optional[str] = None) -> SurveyStore:
    import config

    name = (engine or config.DB_ENGINE or "sqlite").strip().lower()
    if name == "mysql":
        return MysqlStore(
            host=config.DB_HOST,
            user=config.DB_USER,
            password=config.DB_PASS,
            database=config.DB_NAME,
            port=config.DB_PORT,
            pool_size=config.DB_POOL_SIZE,
        )
    if name != "sqlite":
        raise ValueError(f"Unsupported DB_ENGINE: {name!r}")
    return SqliteStore(config.SQLITE_PATH)


_store: Optional[SurveyStore] = None


def get_store() -> SurveyStore:
    global _store
    if _store is None:
        _store = create_store()
    return _store
