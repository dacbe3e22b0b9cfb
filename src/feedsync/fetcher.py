from __future__ import annotations

import logging
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import HTTPRedirectHandler, Request, build_opener

import feedparser

from .config import Config
from .models import Feed, FeedHints, FetchResult
from .scheduling import parse_cache_control
from .utils import log_event

logger = logging.getLogger("feedsync.fetcher")

PERMANENT_REDIRECT_CODES = {301, 308}
PERMANENT_CLIENT_ERRORS = {404, 410}

FETCH_OK = "ok"
FETCH_NOT_MODIFIED = "not_modified"
FETCH_REDIRECT = "redirect"
FETCH_CLIENT_ERROR = "client_error"
FETCH_ERROR = "error"


class _RecordingRedirectHandler(HTTPRedirectHandler):
    def __init__(self) -> None:
        super().__init__()
        self.hops: list[tuple[int, str]] = []

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # type: ignore[override]
        self.hops.append((code, newurl))
        return super().redirect_request(req, fp, code, msg, headers, newurl)


def fetch_feed(feed: Feed, config: Config) -> FetchResult:
    headers = {"User-Agent": config.http.user_agent}
    if feed.etag:
        headers["If-None-Match"] = feed.etag
    if feed.last_modified:
        headers["If-Modified-Since"] = feed.last_modified
    redirects = _RecordingRedirectHandler()
    opener = build_opener(redirects)
    try:
        with opener.open(Request(feed.url, headers=headers), timeout=config.http.timeout_seconds) as response:
            status = response.getcode()
            body = response.read()
            final_url = response.geturl()
            response_headers = response.headers
    except HTTPError as exc:
        return _http_error_result(exc, redirects, config)
    except URLError as exc:
        log_event(logger, logging.WARNING, "fetch_failed", feed_id=feed.id, error=exc.reason)
        return FetchResult(status=FETCH_ERROR, error=str(exc.reason))
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "fetch_failed", feed_id=feed.id, error=exc)
        return FetchResult(status=FETCH_ERROR, error=str(exc) or exc.__class__.__name__)

    redirect_url = _permanent_redirect_target(redirects.hops, final_url)
    cache_control = parse_cache_control(response_headers.get("Cache-Control"))
    etag = response_headers.get("ETag")
    last_modified = response_headers.get("Last-Modified")
    parsed = parse_feed_document(body)
    if parsed["error"]:
        log_event(
            logger, logging.WARNING, "feed_parse_failed", feed_id=feed.id, error=parsed["error"]
        )
        return FetchResult(
            status=FETCH_ERROR,
            http_status=status,
            final_url=final_url,
            cache_control=cache_control,
            error=parsed["error"],
        )
    if redirect_url and redirect_url != feed.url:
        return FetchResult(
            status=FETCH_REDIRECT,
            http_status=status,
            body=body,
            final_url=final_url,
            redirect_url=redirect_url,
            cache_control=cache_control,
            etag=etag,
            last_modified=last_modified,
            **parsed,
        )
    return FetchResult(
        status=FETCH_OK,
        http_status=status,
        body=body,
        final_url=final_url,
        cache_control=cache_control,
        etag=etag,
        last_modified=last_modified,
        **parsed,
    )


def _http_error_result(exc: HTTPError, redirects: _RecordingRedirectHandler, config: Config) -> FetchResult:
    cache_control = parse_cache_control(exc.headers.get("Cache-Control") if exc.headers else None)
    if exc.code == 304:
        return FetchResult(
            status=FETCH_NOT_MODIFIED,
            http_status=304,
            cache_control=cache_control,
            etag=exc.headers.get("ETag") if exc.headers else None,
            last_modified=exc.headers.get("Last-Modified") if exc.headers else None,
        )
    try:
        text = exc.read().decode("utf-8", errors="replace")
    except Exception:  # noqa: BLE001
        text = ""
    error = f"HTTP {exc.code}: {text[: config.http.max_error_body]}".rstrip(": ")
    return FetchResult(
        status=FETCH_CLIENT_ERROR if exc.code in PERMANENT_CLIENT_ERRORS else FETCH_ERROR,
        http_status=exc.code,
        cache_control=cache_control,
        permanent=exc.code in PERMANENT_CLIENT_ERRORS,
        error=error,
    )


def _permanent_redirect_target(hops: list[tuple[int, str]], final_url: str) -> str | None:
    if not hops:
        return None
    if all(code in PERMANENT_REDIRECT_CODES for code, _ in hops):
        return final_url
    return None


def parse_feed_document(body: bytes) -> dict[str, Any]:
    parsed = feedparser.parse(body)
    meta = parsed.feed
    hub_url = None
    self_url = None
    for link in meta.get("links", []) or []:
        rel = (link.get("rel") or "").lower()
        href = link.get("href")
        if not href:
            continue
        if rel == "hub" and hub_url is None:
            hub_url = href
        elif rel == "self" and self_url is None:
            self_url = href
    return {
        "hub_url": hub_url,
        "self_url": self_url,
        "title": meta.get("title"),
        "feed_hints": FeedHints(
            ttl_minutes=_as_int(meta.get("ttl")),
            update_period=meta.get("sy_updateperiod"),
            update_frequency=_as_int(meta.get("sy_updatefrequency")),
        ),
        "entry_count": len(parsed.entries),
        "error": _parse_error(parsed),
    }


def _as_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _parse_error(parsed: Any) -> str | None:
    # feedparser tolerates malformed but recognisable feeds; an unknown
    # format with nothing extracted is an HTML page or junk.
    if parsed.get("version") or parsed.entries:
        return None
    problem = parsed.get("bozo_exception")
    if problem is not None:
        return f"Parsing failed: {problem}"
    return "Parsing failed: not a recognized feed format"
