"""
LinkedIn adapter over the unofficial Voyager API (``linkedin-api``).

Authentication reuses a session cookie file written by an operator-run
login (``data/linkedin_cookies.json``); this adapter never logs in
interactively.  A missing, stale or rejected session is reported as
``AuthExpiredError`` so the job fails fast and shows up for the operator.

``linkedin-api`` is synchronous, so every call runs in
``asyncio.to_thread``.  Failures are classified from the exception text,
the only signal the library exposes.
"""

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from linkedin_api import Linkedin
from requests.cookies import RequestsCookieJar

from postflow.adapters.base import ContentResolver, PlatformAdapter
from postflow.exceptions import (
    AuthExpiredError,
    NotFoundError,
    PlatformError,
    RateLimitedError,
    RejectedError,
    TransientError,
)
from postflow.models import Platform, RawCounts

logger = logging.getLogger(__name__)

COOKIES_PATH = Path("data/linkedin_cookies.json")
COOKIE_MAX_AGE = 3600 * 24 * 7  # 7 days


# ======================================================================
# COOKIE MANAGEMENT
# ======================================================================


def load_cookies(
    path: Path = COOKIES_PATH, max_age: float = COOKIE_MAX_AGE
) -> Optional[List[Dict[str, Any]]]:
    """Load cached cookies from disk. Returns None if missing or expired."""
    if not path.exists():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        logger.warning("[LINKEDIN] Unreadable cookie file %s", path)
        return None
    saved_at = payload.get("saved_at", 0)
    if time.time() - saved_at > max_age:
        logger.info("[LINKEDIN] Cookies expired (age %.0fh)", (time.time() - saved_at) / 3600)
        return None
    cookies = payload.get("cookies", [])
    # li_at marks an authenticated session
    if not any(c.get("name") == "li_at" for c in cookies):
        return None
    return cookies


def cookie_jar(cookies: List[Dict[str, Any]]) -> RequestsCookieJar:
    jar = RequestsCookieJar()
    for c in cookies:
        jar.set(
            c["name"],
            c["value"],
            domain=c.get("domain", ".linkedin.com"),
            path=c.get("path", "/"),
        )
    return jar


# ======================================================================
# ERROR CLASSIFICATION
# ======================================================================


def classify_error(exc: Exception, fetching: bool = False) -> PlatformError:
    """Map a ``linkedin-api`` / ``requests`` exception to a platform error.

    While fetching metrics only ``NotFound`` and ``Transient`` exist; the
    collector simply tries again next interval.
    """
    text = str(exc).lower()

    if "404" in text or "not found" in text:
        if fetching:
            return NotFoundError(f"LinkedIn post not found: {exc}")
        return RejectedError(f"LinkedIn resource not found: {exc}")
    if fetching:
        return TransientError(f"LinkedIn metrics fetch failed: {exc}")

    if "429" in text or "rate limit" in text or "too many" in text:
        return RateLimitedError(f"LinkedIn rate limit hit: {exc}")
    if (
        "401" in text
        or "unauthorized" in text
        or "challenge" in text
        or "expired" in text
        or "csrf" in text
    ):
        return AuthExpiredError(f"LinkedIn session rejected: {exc}")
    if (
        "400" in text
        or "422" in text
        or "duplicate" in text
        or "policy" in text
        or "forbidden" in text
        or "403" in text
    ):
        return RejectedError(f"LinkedIn rejected the post: {exc}")
    return TransientError(f"LinkedIn request failed: {exc}")


# ======================================================================
# ADAPTER
# ======================================================================


class LinkedInAdapter(PlatformAdapter):
    """Publishes to the professional network.

    Args:
        content: Resolver for ``content_ref`` values.
        cookies_path: Session cookie cache.
        api_factory: Builds the Voyager client from a cookie jar; tests
            pass a fake.
    """

    platform = Platform.LINKEDIN

    def __init__(
        self,
        content: ContentResolver,
        cookies_path: Path = COOKIES_PATH,
        api_factory: Optional[Callable[[RequestsCookieJar], Any]] = None,
    ) -> None:
        self.content = content
        self.cookies_path = cookies_path
        self._api_factory = api_factory or (
            lambda jar: Linkedin("", "", cookies=jar, authenticate=True)
        )
        self._api: Any = None

    async def _get_api(self) -> Any:
        """Lazy-init the Voyager client from the cached session.

        Raises:
            AuthExpiredError: No usable session cookie.
        """
        if self._api is not None:
            return self._api

        cookies = load_cookies(self.cookies_path)
        if not cookies:
            raise AuthExpiredError(
                f"No valid LinkedIn session in {self.cookies_path}; re-run the login import"
            )
        jar = cookie_jar(cookies)

        try:
            self._api = await asyncio.to_thread(self._api_factory, jar)
        except Exception as exc:
            raise AuthExpiredError(f"LinkedIn API init with cookies failed: {exc}") from exc
        logger.info("[LINKEDIN] Client authenticated from cached cookies")
        return self._api

    async def submit(self, content_ref: str, idempotency_key: str) -> str:
        payload = await self.content.resolve(content_ref)
        api = await self._get_api()

        def _post() -> Any:
            if payload.media_path:
                return api.post(payload.text, media_path=payload.media_path)
            return api.post(payload.text)

        try:
            result = await asyncio.to_thread(_post)
        except Exception as exc:
            error = classify_error(exc)
            if isinstance(error, AuthExpiredError):
                # Force a fresh cookie read next time.
                self._api = None
            raise error from exc

        post_id = str(result) if result else ""
        if not post_id:
            raise TransientError("LinkedIn returned no post id")

        # Voyager offers no client-side dedup; the key only ties logs together.
        logger.info(
            "[LINKEDIN] Post published: id=%s, text_len=%d, has_image=%s, key=%s",
            post_id,
            len(payload.text),
            payload.media_path is not None,
            idempotency_key,
        )
        return post_id

    async def fetch_metrics(self, external_post_id: str) -> RawCounts:
        try:
            api = await self._get_api()
        except AuthExpiredError as exc:
            raise TransientError(str(exc)) from exc

        def _get_counts() -> RawCounts:
            reactions = api.get_post_reactions(external_post_id)
            comments = api.get_post_comments(external_post_id)
            # Voyager does not expose impressions for member posts.
            return RawCounts(
                impressions=None,
                likes=len(reactions) if reactions else 0,
                comments=len(comments) if comments else 0,
                shares=0,
            )

        try:
            counts = await asyncio.to_thread(_get_counts)
        except Exception as exc:
            raise classify_error(exc, fetching=True) from exc

        logger.debug("[LINKEDIN] Metrics for %s: %s", external_post_id, counts)
        return counts
