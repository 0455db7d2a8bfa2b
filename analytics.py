# analytics.py - SurveyDesk
# Dashboard aggregates computed over already-fetched survey records.

from __future__ import annotations

import re
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional

import fields
from branches import branch_of, canonical_branch, normalize_arabic

_LIST_SEPARATORS = re.compile(r"[,،;\n]")


def _answer(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v).strip() for v in value if str(v).strip())
    return str(value).strip()


def _split_multi(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        parts = [str(v) for v in value]
    else:
        parts = _LIST_SEPARATORS.split(str(value))
    return [p.strip() for p in parts if p and p.strip()]


def _branch_label(record: Mapping[str, Any]) -> str:
    raw = branch_of(record)
    if not raw:
        return ""
    return canonical_branch(raw) or raw


def _same_branch(a: str, b: str) -> bool:
    return normalize_arabic(a) == normalize_arabic(b)


def frequency(records: Iterable[Mapping[str, Any]], key: str) -> Dict[str, int]:
    counts: Counter = Counter()
    for r in records:
        val = _answer(r.get(key))
        if val:
            counts[val] += 1
    return dict(counts.most_common())


def multi_frequency(records: Iterable[Mapping[str, Any]], key: str) -> Dict[str, int]:
    counts: Counter = Counter()
    for r in records:
        # a record counts at most once per bucket
        for val in set(_split_multi(r.get(key))):
            counts[val] += 1
    return dict(counts.most_common())


def branch_distribution(records: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    counts: Counter = Counter()
    for r in records:
        label = _branch_label(r)
        if label:
            counts[label] += 1
    return dict(counts.most_common())


def never_satisfied_by_branch(records: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    target = normalize_arabic(fields.NEVER_SATISFIED)
    counts: Counter = Counter()
    for r in records:
        if normalize_arabic(r.get(fields.SATISFACTION)) != target:
            continue
        counts[_branch_label(r) or "غير محدد"] += 1
    return dict(counts.most_common())


def daily_timeline(records: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    counts: Counter = Counter()
    for r in records:
        day = str(r.get("receivedAt") or "")[:10]
        if len(day) == 10:
            counts[day] += 1
    return [{"date": day, "count": counts[day]} for day in sorted(counts)]


def summarize(records: Iterable[Mapping[str, Any]], branch: Optional[str] = None) -> Dict[str, Any]:
    """
    Chart data for the dashboard. When `branch` is given, only records whose
    (canonical) branch matches it are counted.
    """
    rows = list(records)
    wanted = (branch or "").strip()
    if wanted:
        wanted = canonical_branch(wanted) or wanted
        rows = [r for r in rows if _same_branch(_branch_label(r), wanted)]

    return {
        "total": len(rows),
        "branch": wanted or None,
        "fields": {name: frequency(rows, key) for name, key in fields.SINGLE_CHOICE.items()},
        "violations": multi_frequency(rows, fields.VIOLATION_REASONS),
        "branches": branch_distribution(rows),
        "neverSatisfiedByBranch": never_satisfied_by_branch(rows),
        "timeline": daily_timeline(rows),
    }
