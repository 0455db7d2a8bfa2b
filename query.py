# query.py - SurveyDesk
# Search + filter predicates for the survey tables, rendered per SQL dialect.

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

RECEIVED_AT = "receivedAt"
MAX_FIELD_LENGTH = 200

# Field names end up inside a quoted JSON path literal, so anything that could
# close the literal or clash with the driver's paramstyle is refused.
_UNSAFE_FIELD = re.compile(r"[\"'\\%`\x00-\x1f\x7f]")


class InvalidField(ValueError):
    pass


@dataclass(frozen=True)
class Dialect:
    """
    SQL fragments for one engine.

    `document` stands in for the payload column and yields an empty object
    for rows whose stored JSON is corrupt, so one bad row never fails a query.
    `member_template` matches filter values against a scalar answer or any
    item of a list answer.
    """

    name: str
    placeholder: str
    document: str
    json_template: str
    member_template: str
    like_escape: str

    def json_field(self, field: str) -> str:
        return self.json_template.format(doc=self.document, path=json_path(field))

    def column(self, field: str) -> str:
        if field == RECEIVED_AT:
            return RECEIVED_AT
        return self.json_field(field)

    def placeholders(self, count: int) -> str:
        return ", ".join([self.placeholder] * int(count))

    def member_filter(self, field: str, values: List[str]) -> Tuple[str, List[str]]:
        sql = self.member_template.format(
            col=self.json_field(field),
            doc=self.document,
            path=json_path(field),
            values=self.placeholders(len(values)),
        )
        return sql, list(values) * self.member_template.count("{values}")


SQLITE = Dialect(
    name="sqlite",
    placeholder="?",
    document="CASE WHEN json_valid(data) THEN data ELSE '{}' END",
    json_template="CAST(json_extract({doc}, '{path}') AS TEXT)",
    member_template=(
        "EXISTS (SELECT 1 FROM json_each({doc}, '{path}') AS j "
        "WHERE CAST(j.value AS TEXT) IN ({values}))"
    ),
    like_escape=r"ESCAPE '\'",
)
# MySQL string literals treat the backslash as an escape character.
MYSQL = Dialect(
    name="mysql",
    placeholder="%s",
    document="CASE WHEN JSON_VALID(data) THEN data ELSE '{}' END",
    json_template="JSON_UNQUOTE(JSON_EXTRACT({doc}, '{path}'))",
    member_template=(
        "({col} IN ({values}) OR EXISTS (SELECT 1 FROM JSON_TABLE({doc}, '{path}[*]' "
        "COLUMNS (v VARCHAR(1024) PATH '$')) AS jt WHERE jt.v IN ({values})))"
    ),
    like_escape=r"ESCAPE '\\'",
)


def validate_field(field: Any) -> str:
    name = str(field or "").strip()
    if not name:
        raise InvalidField("Field name is required.")
    if len(name) > MAX_FIELD_LENGTH:
        raise InvalidField("Field name is too long.")
    if _UNSAFE_FIELD.search(name):
        raise InvalidField(f"Field name contains unsupported characters: {name!r}")
    return name


def json_path(field: str) -> str:
    return '$."' + validate_field(field) + '"'


def escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _filter_values(values: Any) -> List[str]:
    if values is None:
        return []
    if isinstance(values, (str, int, float)):
        values = [values]
    out = []
    for v in values:
        if v is None:
            continue
        out.append(str(v))
    return out


def clean_filters(filters: Optional[Mapping[str, Any]]) -> Dict[str, List[str]]:
    """
    Drops blank keys and empty value lists, validates field names and
    coerces every value to a string.
    """
    cleaned: Dict[str, List[str]] = {}
    if not filters or not isinstance(filters, Mapping):
        return cleaned
    for key, values in filters.items():
        if not str(key or "").strip():
            continue
        vals = _filter_values(values)
        if not vals:
            continue
        cleaned[validate_field(key)] = vals
    return cleaned


def build_where(
    search: str = "",
    filters: Optional[Mapping[str, Any]] = None,
    dialect: Dialect = SQLITE,
    exclude: Iterable[str] = (),
) -> Tuple[str, List[Any]]:
    """
    Returns (where_sql, params). where_sql is "" when there is nothing to
    filter on, otherwise it starts with "WHERE ".
    """
    where: List[str] = []
    params: List[Any] = []

    term = (search or "").strip()
    if term:
        like = f"%{escape_like(term.lower())}%"
        ph, esc = dialect.placeholder, dialect.like_escape
        where.append(f"(LOWER(data) LIKE {ph} {esc} OR LOWER({RECEIVED_AT}) LIKE {ph} {esc})")
        params.extend([like, like])

    skip = set(exclude)
    for field, values in clean_filters(filters).items():
        if field in skip:
            continue
        if field == RECEIVED_AT:
            where.append(f"{RECEIVED_AT} IN ({dialect.placeholders(len(values))})")
            params.extend(values)
            continue
        sql, bound = dialect.member_filter(field, values)
        where.append(sql)
        params.extend(bound)

    where_sql = ("WHERE " + " AND ".join(where)) if where else ""
    return where_sql, params
