from __future__ import annotations

import calendar
import html
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import feedparser

from risk_intel.errors import FEED_001_FETCH_FAILED, FEED_002_MALFORMED, FeedFetchError
from risk_intel.utils.clock import to_iso, utc_now


USER_AGENT = "RiskIntel/1.0 (Risk Intelligence Monitor)"
TITLE_MAX_CHARS = 500
DESCRIPTION_MAX_CHARS = 2000

logger = logging.getLogger("risk_intel.fetcher")


@dataclass
class FeedFetchResult:
    source: dict[str, Any]
    items: list[dict[str, str]] = field(default_factory=list)
    ok: bool = False
    http_status: int | None = None
    error_type: str = ""
    error_message: str = ""
    duration_ms: int = 0

    @property
    def status(self) -> str:
        return "success" if self.ok else "failed"


def strip_html(value: str) -> str:
    text = re.sub(r"<[^>]+>", " ", str(value or ""))
    text = html.unescape(text)
    return re.sub(r"\s+", " ", text).strip()


def _cap(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit].rstrip()


def _read_url(
    url: str,
    *,
    timeout: float,
    retries: int,
    deadline: float | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> tuple[bytes, int]:
    """
    GET with a short backoff between attempts. Raises FeedFetchError with a classified error_type.

    `deadline` (a `clock()` value) bounds all attempts together: each attempt gets
    at most the time left, and no retry starts once the backoff would overrun it.
    """
    attempt = 0
    last: FeedFetchError | None = None
    while attempt <= max(0, retries):
        per_call = float(timeout)
        if deadline is not None and attempt > 0:
            per_call = min(per_call, deadline - clock())
            if per_call <= 0:
                break
        attempt += 1
        req = Request(url, headers={"User-Agent": USER_AGENT, "Accept": "application/rss+xml, application/xml, */*"})
        try:
            with urlopen(req, timeout=per_call) as r:
                status = int(getattr(r, "status", 200) or 200)
                if status < 200 or status >= 300:
                    raise FeedFetchError(
                        FEED_001_FETCH_FAILED, f"HTTP {status}", error_type="http_error", http_status=status
                    )
                return r.read(), status
        except FeedFetchError as e:
            last = e
        except HTTPError as e:
            code = int(getattr(e, "code", 0) or 0)
            last = FeedFetchError(FEED_001_FETCH_FAILED, f"HTTPError: {code} {e}", error_type="http_error",
                                  http_status=code or None)
            if code in (401, 403, 404, 410):
                break
        except TimeoutError as e:
            last = FeedFetchError(FEED_001_FETCH_FAILED, f"TimeoutError: {e}", error_type="timeout")
        except URLError as e:
            msg = str(getattr(e, "reason", e))
            if "Name or service not known" in msg or "nodename nor servname provided" in msg:
                etype = "dns_error"
            elif "timed out" in msg.lower():
                etype = "timeout"
            else:
                etype = "network_error"
            last = FeedFetchError(FEED_001_FETCH_FAILED, f"URLError: {msg}", error_type=etype)
        except OSError as e:
            last = FeedFetchError(FEED_001_FETCH_FAILED, f"{type(e).__name__}: {e}", error_type="network_error")
        if attempt <= retries:
            backoff = min(1.5, 0.25 * (2 ** (attempt - 1)))
            if deadline is not None and clock() + backoff >= deadline:
                break
            time.sleep(backoff)
    if last is None:
        raise FeedFetchError(FEED_001_FETCH_FAILED, f"no attempt within {timeout}s", error_type="timeout")
    raise last


def _entry_datetime(entry: Any) -> datetime | None:
    for key in ("published_parsed", "updated_parsed"):
        st = entry.get(key) if hasattr(entry, "get") else getattr(entry, key, None)
        if st:
            try:
                return datetime.fromtimestamp(calendar.timegm(st), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError):
                continue
    return None


def _entry_content(entry: Any) -> str:
    content = entry.get("content") if hasattr(entry, "get") else None
    if isinstance(content, list):
        for part in content:
            value = part.get("value") if isinstance(part, dict) else getattr(part, "value", "")
            if value:
                return str(value)
    return ""


def normalize_entry(entry: Any, now: datetime) -> dict[str, str] | None:
    """
    One feed entry as `{title, description, link, published_at}`; None when the entry
    has no link or guid to key it by.
    """
    get = entry.get if hasattr(entry, "get") else (lambda k, d=None: getattr(entry, k, d))
    link = str(get("link") or get("id") or "").strip()
    if not link:
        return None
    title = strip_html(str(get("title") or "")) or "Untitled"
    description = strip_html(str(get("summary") or get("description") or ""))
    if not description:
        description = strip_html(_entry_content(entry)) or title
    published = _entry_datetime(entry) or now
    return {
        "title": _cap(title, TITLE_MAX_CHARS),
        "description": _cap(description, DESCRIPTION_MAX_CHARS),
        "link": link,
        "published_at": to_iso(published),
    }


def parse_feed_bytes(data: bytes, *, limit: int, now: datetime) -> list[dict[str, str]]:
    feed = feedparser.parse(data)
    entries = list(getattr(feed, "entries", []) or [])
    if getattr(feed, "bozo", False) and not entries:
        exc = getattr(feed, "bozo_exception", None)
        raise FeedFetchError(FEED_002_MALFORMED, f"{type(exc).__name__}: {exc}" if exc else "",
                             error_type="malformed_feed")
    dated = [(_entry_datetime(e), i, e) for i, e in enumerate(entries)]
    # newest first; undated entries keep feed order after the dated ones
    dated.sort(key=lambda x: (x[0] is None, -(x[0].timestamp() if x[0] else 0), x[1]))
    out: list[dict[str, str]] = []
    for _, _, e in dated:
        row = normalize_entry(e, now)
        if row is None:
            continue
        out.append(row)
        if len(out) >= max(1, limit):
            break
    return out


def fetch_feed(
    source: dict[str, Any],
    *,
    limit: int = 10,
    timeout_seconds: int = 10,
    retries: int = 1,
    now: datetime | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> FeedFetchResult:
    """
    Fetch and parse one source. Never raises for source-level problems.

    `timeout_seconds` is the budget for the whole source, retries included.
    """
    t0 = clock()
    res = FeedFetchResult(source=source)
    url = str(source.get("url") or "").strip()
    try:
        if not url.startswith(("http://", "https://")):
            raise FeedFetchError(FEED_001_FETCH_FAILED, f"unsupported url: {url!r}", error_type="invalid_url")
        data, status = _read_url(
            url, timeout=timeout_seconds, retries=retries, deadline=t0 + timeout_seconds, clock=clock
        )
        res.http_status = status
        res.items = parse_feed_bytes(data, limit=limit, now=now or utc_now())
        res.ok = True
    except FeedFetchError as e:
        res.error_type = e.error_type
        res.error_message = str(e)
        res.http_status = e.http_status if e.http_status is not None else res.http_status
        logger.warning("feed fetch failed source=%s type=%s err=%s", source.get("name"), e.error_type, e)
    res.duration_ms = int((clock() - t0) * 1000)
    return res


def fetch_all(
    sources: list[dict[str, Any]],
    *,
    max_workers: int = 4,
    limit: int = 10,
    timeout_seconds: int = 10,
    retries: int = 1,
    now: datetime | None = None,
) -> list[FeedFetchResult]:
    """Fetch every source on a bounded pool. Results come back in `sources` order."""
    if not sources:
        return []
    results: list[FeedFetchResult | None] = [None] * len(sources)
    workers = max(1, min(int(max_workers or 1), len(sources)))
    with ThreadPoolExecutor(max_workers=workers) as ex:
        fut_map = {
            ex.submit(
                fetch_feed, src, limit=limit, timeout_seconds=timeout_seconds, retries=retries, now=now
            ): idx
            for idx, src in enumerate(sources)
        }
        for fut in as_completed(fut_map):
            idx = fut_map[fut]
            try:
                results[idx] = fut.result()
            except Exception as e:
                logger.exception("unexpected fetch failure source=%s", sources[idx].get("name"))
                results[idx] = FeedFetchResult(
                    source=sources[idx], error_type="unexpected", error_message=f"{type(e).__name__}: {e}"
                )
    return [r for r in results if r is not None]
