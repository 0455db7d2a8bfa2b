# branches.py - SurveyDesk
# Free-text branch names -> canonical city names (batch maintenance pass).

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

import fields
from db import KINDS, SurveyStore

logger = logging.getLogger(__name__)

_LETTER_MAP = str.maketrans(
    {
        "أ": "ا",
        "إ": "ا",
        "آ": "ا",
        "ٱ": "ا",
        "ى": "ي",
        "ة": "ه",
        "ؤ": "و",
        "ئ": "ي",
    }
)
# tashkeel + superscript alef + tatweel
_DIACRITICS = re.compile(r"[\u064b-\u065f\u0670\u0640]")
# \w keeps Arabic letters and digits of every script
_PUNCT = re.compile(r"[^\w\s]|_")
_SPACES = re.compile(r"\s+")
_DIGITS = re.compile(r"[0-9\u0660-\u0669\u06f0-\u06f9]")


def normalize_arabic(text: Any) -> str:
    if text is None:
        return ""
    if isinstance(text, (list, tuple)):
        text = " ".join(str(t) for t in text)
    out = str(text).translate(_LETTER_MAP)
    out = _DIACRITICS.sub("", out)
    out = _PUNCT.sub(" ", out.lower())
    return _SPACES.sub(" ", out).strip()


# Priority order matters: the first list with a hit wins. A canonical name must
# never contain a keyword of a list ranked above its own.
CANONICAL_BRANCHES: List[Tuple[str, Tuple[str, ...]]] = [
    (
        "إدلب",
        (
            "ادلب",
            "idlib",
            "idleb",
            "جسر الشغور",
            "الشغور",
            "سرمدا",
            "معره مصرين",
            "اريحا",
            "الدانا",
            "سلقين",
            "حارم",
            "كفرتخاريم",
            "معره النعمان",
            "خان شيخون",
            "سراقب",
            "اطمه",
        ),
    ),
    (
        "حلب",
        ("حلب", "aleppo", "halab", "اعزاز", "عفرين", "الباب", "منبج", "جرابلس", "الاتارب", "السفيره"),
    ),
    (
        "حماة",
        ("حماه", "hama", "سلميه", "مصياف", "محرده", "السقيلبيه", "صوران"),
    ),
    (
        "حمص",
        ("حمص", "homs", "تلكلخ", "الرستن", "تلبيسه", "القصير", "تدمر"),
    ),
    (
        "دمشق",
        ("دمشق", "الشام", "damascus", "جرمانا", "دوما", "داريا", "المزه", "صحنايا", "قدسيا"),
    ),
    (
        "اللاذقية",
        ("لاذقيه", "latakia", "lattakia", "جبله", "القرداحه", "الحفه"),
    ),
    (
        "طرطوس",
        ("طرطوس", "tartus", "tartous", "بانياس", "صافيتا", "الدريكيش"),
    ),
    (
        "دير الزور",
        ("دير الزور", "ديرالزور", "الزور", "deir ez", "deir ezzor", "deir al zour", "الميادين", "البوكمال"),
    ),
]

CANONICAL_NAMES = [name for name, _ in CANONICAL_BRANCHES]
FALLBACK_DIGITS_BRANCH = "إدلب"


def canonical_branch(value: Any) -> Optional[str]:
    """
    Maps a free-text branch name to one of CANONICAL_NAMES, or None when no
    keyword matches.

    Values carrying a digit (Latin or Arabic-Indic) fall back to Idlib: branch
    entries that are bare station numbers have so far been Idlib stations.
    That rule is a heuristic, not a confirmed business rule.
    """
    norm = normalize_arabic(value)
    if not norm:
        return None
    for name, keywords in CANONICAL_BRANCHES:
        for kw in keywords:
            if kw in norm:
                return name
    if _DIGITS.search(norm):
        return FALLBACK_DIGITS_BRANCH
    return None


def _blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple)):
        return not any(str(v).strip() for v in value)
    return not str(value).strip()


def find_branch_key(payload: Mapping[str, Any]) -> Optional[str]:
    if not payload:
        return None
    if fields.BRANCH in payload and not _blank(payload.get(fields.BRANCH)):
        return fields.BRANCH
    for key, value in payload.items():
        if key == fields.BRANCH or _blank(value):
            continue
        norm_key = normalize_arabic(key)
        if any(hint in norm_key for hint in fields.BRANCH_KEY_HINTS):
            return key
    return None


def branch_of(payload: Mapping[str, Any]) -> str:
    key = find_branch_key(payload)
    if not key:
        return ""
    value = payload.get(key)
    if isinstance(value, (list, tuple)):
        value = " ".join(str(v) for v in value)
    return str(value).strip()


def normalize_payload(payload: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Returns a rewritten copy of the payload when its branch value is not yet
    canonical, else None.
    """
    key = find_branch_key(payload)
    if not key:
        return None
    current = payload.get(key)
    canonical = canonical_branch(current)
    if not canonical or canonical == current:
        return None
    out = dict(payload)
    out[key] = canonical
    return out


def normalize_branches(store: SurveyStore) -> int:
    """
    Rewrites the branch field of every stored record to its canonical city
    name. Returns the number of rows changed.

    Rows are updated one by one; an interrupted run can simply be re-run.
    Records written concurrently may be skipped.
    """
    changed = 0
    for kind in KINDS:
        kind_changed = 0
        for record in store.iter_records(kind):
            record_id = record.get("id")
            payload = {k: v for k, v in record.items() if k not in ("id", "receivedAt")}
            updated = normalize_payload(payload)
            if updated is None:
                continue
            if store.update_payload(kind, record_id, updated):
                kind_changed += 1
        logger.info("Branch normalization: %s %s record(s) updated", kind_changed, kind)
        changed += kind_changed
    return changed
