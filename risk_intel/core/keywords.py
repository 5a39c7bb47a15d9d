from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable

import yaml

from risk_intel.utils.clock import parse_iso


DATA_DIR = Path(__file__).resolve().parents[1] / "data"
KEYWORDS_FILE = DATA_DIR / "keywords.yaml"

KEYWORD_CATEGORIES = ("cybersecurity", "regulatory", "market", "operational", "strategic")
EVENT_CATEGORIES = ("cybersecurity", "regulatory", "market", "environmental", "operational", "other")

FILTER_NO_KEYWORDS = "no_keywords"
FILTER_TOO_OLD = "too_old"


class KeywordConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class KeywordDictionaries:
    category_patterns: tuple[tuple[str, re.Pattern[str]], ...]
    keywords: dict[str, tuple[str, ...]]
    short_keyword_max_len: int = 3
    critical_keywords: tuple[str, ...] = ()
    source_tiers: tuple[tuple[int, tuple[str, ...]], ...] = ()
    default_source_score: int = 3


@dataclass(frozen=True)
class KeywordSet:
    """Effective keywords for one organization and one run."""

    by_category: dict[str, tuple[str, ...]]
    short_keyword_max_len: int = 3

    def all_keywords(self) -> list[str]:
        seen: set[str] = set()
        out: list[str] = []
        for words in self.by_category.values():
            for w in words:
                if w not in seen:
                    seen.add(w)
                    out.append(w)
        return out


@dataclass
class ClassifiedItem:
    title: str
    summary: str
    source_name: str
    source_url: str
    published_at: str
    category: str
    matched_keywords: list[str] = field(default_factory=list)
    filter_reason: str = ""

    def to_event_fields(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "summary": self.summary,
            "source_name": self.source_name,
            "source_url": self.source_url,
            "published_at": self.published_at,
            "category": self.category,
            "matched_keywords": list(self.matched_keywords),
        }


def _parse_dictionaries(obj: Any, path: Path) -> KeywordDictionaries:
    if not isinstance(obj, dict):
        raise KeywordConfigError(f"invalid keyword file: {path}")
    patterns: list[tuple[str, re.Pattern[str]]] = []
    for row in obj.get("category_patterns") or []:
        cat = str((row or {}).get("category") or "").strip()
        pat = str((row or {}).get("pattern") or "").strip()
        if cat not in EVENT_CATEGORIES or not pat:
            raise KeywordConfigError(f"bad category pattern in {path}: {row!r}")
        try:
            patterns.append((cat, re.compile(pat, re.IGNORECASE)))
        except re.error as e:
            raise KeywordConfigError(f"bad regex for {cat}: {e}") from e
    raw_kw = obj.get("keywords") or {}
    if not isinstance(raw_kw, dict):
        raise KeywordConfigError(f"keywords must be a mapping: {path}")
    keywords: dict[str, tuple[str, ...]] = {}
    for cat in KEYWORD_CATEGORIES:
        words = [str(w).strip().lower() for w in (raw_kw.get(cat) or []) if str(w).strip()]
        keywords[cat] = tuple(dict.fromkeys(words))
    try:
        short_len = int(obj.get("short_keyword_max_len", 3))
    except (TypeError, ValueError):
        short_len = 3
    scoring = obj.get("relevance_scoring") or {}
    if not isinstance(scoring, dict):
        raise KeywordConfigError(f"relevance_scoring must be a mapping: {path}")
    critical = tuple(
        dict.fromkeys(str(w).strip().lower() for w in (scoring.get("critical_keywords") or []) if str(w).strip())
    )
    tiers: list[tuple[int, tuple[str, ...]]] = []
    for tier in scoring.get("source_tiers") or []:
        try:
            points = int((tier or {}).get("score"))
        except (TypeError, ValueError) as e:
            raise KeywordConfigError(f"bad source tier in {path}: {tier!r}") from e
        names = tuple(str(n).strip().lower() for n in ((tier or {}).get("names") or []) if str(n).strip())
        tiers.append((points, names))
    try:
        default_source = int(scoring.get("default_source_score", 3))
    except (TypeError, ValueError):
        default_source = 3
    return KeywordDictionaries(tuple(patterns), keywords, short_len, critical, tuple(tiers), default_source)


@lru_cache(maxsize=8)
def _load_cached(path_str: str) -> KeywordDictionaries:
    path = Path(path_str)
    return _parse_dictionaries(yaml.safe_load(path.read_text(encoding="utf-8")), path)


def load_keyword_dictionaries(path: Path | None = None) -> KeywordDictionaries:
    return _load_cached(str(path or KEYWORDS_FILE))


def build_keyword_set(dictionaries: KeywordDictionaries, rows: Iterable[dict[str, Any]] = ()) -> KeywordSet:
    """
    Defaults from the YAML corpus, plus stored keyword rows in order: an active row
    adds its keyword to the category, an inactive row removes it.
    """
    by_cat: dict[str, list[str]] = {cat: list(words) for cat, words in dictionaries.keywords.items()}
    for row in rows:
        cat = str(row.get("category") or "").strip().lower()
        kw = str(row.get("keyword") or "").strip().lower()
        if cat not in by_cat or not kw:
            continue
        if bool(row.get("active", True)):
            if kw not in by_cat[cat]:
                by_cat[cat].append(kw)
        elif kw in by_cat[cat]:
            by_cat[cat].remove(kw)
    return KeywordSet({cat: tuple(words) for cat, words in by_cat.items()}, dictionaries.short_keyword_max_len)


def classify(title: str, description: str, dictionaries: KeywordDictionaries | None = None) -> str:
    d = dictionaries or load_keyword_dictionaries()
    text = f"{title or ''} {description or ''}"
    for cat, pattern in d.category_patterns:
        if pattern.search(text):
            return cat
    return "other"


@lru_cache(maxsize=4096)
def _keyword_regex(keyword: str, whole_word: bool) -> re.Pattern[str]:
    body = re.escape(keyword)
    if whole_word:
        return re.compile(rf"(?<![a-z0-9]){body}(?![a-z0-9])")
    return re.compile(body)


def keyword_in_text(keyword: str, text_lower: str, short_keyword_max_len: int = 3) -> bool:
    kw = keyword.strip().lower()
    if not kw:
        return False
    whole = len(kw.strip("-")) <= short_keyword_max_len
    return _keyword_regex(kw, whole).search(text_lower) is not None


def match_categories(text: str, keyword_set: KeywordSet) -> dict[str, list[str]]:
    """Every category with at least one keyword in `text`, with all of its hits."""
    low = str(text or "").lower()
    out: dict[str, list[str]] = {}
    for cat, words in keyword_set.by_category.items():
        hits = [w for w in words if keyword_in_text(w, low, keyword_set.short_keyword_max_len)]
        if hits:
            out[cat] = hits
    return out


def pre_filter(title: str, description: str, category: str, keyword_set: KeywordSet) -> tuple[bool, list[str]]:
    low = f"{title or ''} {description or ''} {category or ''}".lower()
    matched = [
        kw for kw in keyword_set.all_keywords() if keyword_in_text(kw, low, keyword_set.short_keyword_max_len)
    ]
    return (bool(matched), matched)


@dataclass(frozen=True)
class RelevanceScore:
    score: int
    reasons: tuple[str, ...] = ()
    critical_keyword: str = ""

    def passes(self, min_score: float) -> bool:
        return bool(self.critical_keyword) or self.score >= min_score


def source_score(source_name: str, dictionaries: KeywordDictionaries) -> int:
    name = str(source_name or "").strip().lower()
    if not name:
        return 0
    for points, names in dictionaries.source_tiers:
        if any(n in name for n in names):
            return points
    return dictionaries.default_source_score


def score_relevance(
    event: dict[str, Any],
    keyword_set: KeywordSet,
    dictionaries: KeywordDictionaries,
    *,
    now: datetime,
) -> RelevanceScore:
    """
    Points-based relevance of a stored event, used to decide whether it is worth
    analyzing at all. Keyword hits give 10 each (max 50), matched keyword
    categories 15 each (max 45), recency up to 10 and the source tier 3 to 10.
    Any critical keyword scores 100 outright.
    """
    text = f"{event.get('title') or ''} {event.get('summary') or ''}".lower()
    short_len = keyword_set.short_keyword_max_len
    for kw in dictionaries.critical_keywords:
        if keyword_in_text(kw, text, short_len):
            return RelevanceScore(100, (f"critical keyword: {kw}",), critical_keyword=kw)

    score = 0
    reasons: list[str] = []
    matched = [kw for kw in keyword_set.all_keywords() if keyword_in_text(kw, text, short_len)]
    if matched:
        score += min(len(matched) * 10, 50)
        reasons.append(f"keywords ({len(matched)}): {', '.join(matched[:3])}")
    categories = match_categories(text, keyword_set)
    if categories:
        score += min(len(categories) * 15, 45)
        reasons.append(f"categories: {', '.join(categories)}")
    published = parse_iso(event.get("published_at"))
    if published is not None:
        hours = (now - published).total_seconds() / 3600
        if hours < 24:
            score += 10
            reasons.append("published within 24h")
        elif hours < 72:
            score += 5
            reasons.append("published within 72h")
    points = source_score(str(event.get("source_name") or ""), dictionaries)
    if points:
        score += points
        reasons.append(f"source +{points}")
    return RelevanceScore(score, tuple(reasons))


def is_too_old(published_at: str | datetime | None, lookback_days: int, now: datetime) -> bool:
    if isinstance(published_at, datetime):
        dt = published_at
    else:
        dt = parse_iso(published_at)
    if dt is None:
        return False
    return dt < now - timedelta(days=max(0, int(lookback_days)))


def classify_item(
    item: dict[str, Any],
    *,
    source_name: str,
    keyword_set: KeywordSet,
    lookback_days: int,
    now: datetime,
    dictionaries: KeywordDictionaries | None = None,
) -> ClassifiedItem:
    """Categorize one fetched item and attach the reason it should not be stored, if any."""
    title = str(item.get("title") or "Untitled")
    summary = str(item.get("description") or "")
    published_at = str(item.get("published_at") or "")
    category = classify(title, summary, dictionaries)
    out = ClassifiedItem(
        title=title,
        summary=summary,
        source_name=source_name,
        source_url=str(item.get("link") or ""),
        published_at=published_at,
        category=category,
    )
    if is_too_old(published_at, lookback_days, now):
        out.filter_reason = FILTER_TOO_OLD
        return out
    keep, matched = pre_filter(title, summary, category, keyword_set)
    out.matched_keywords = matched
    if not keep:
        out.filter_reason = FILTER_NO_KEYWORDS
    return out
