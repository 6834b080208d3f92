"""
Microblog adapter: X (Twitter) API v2 over ``httpx``.

Posts with ``POST /2/tweets`` and reads engagement from
``GET /2/tweets/{id}?tweet.fields=public_metrics``.  The job's
idempotency key travels in the ``Idempotency-Key`` header so a retried
submit of the same job can be deduplicated upstream.

HTTP status classification:

    429        -> RateLimitedError (wait hint from ``x-rate-limit-reset``)
    401        -> AuthExpiredError
    400/403/422 and other 4xx -> RejectedError
    5xx, timeouts, connection errors -> TransientError
    404 (metrics) -> NotFoundError
"""

import logging
import os
import time
from typing import Any, Callable, Dict, Optional

import httpx

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


def _retry_after(response: httpx.Response, now: float) -> Optional[float]:
    """Seconds until the rate-limit window resets, from response headers."""
    reset = response.headers.get("x-rate-limit-reset")
    if reset:
        try:
            return max(0.0, float(reset) - now)
        except ValueError:
            pass
    retry_after = response.headers.get("retry-after")
    if retry_after:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            return None
    return None


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("title") or body.get("errors") or body)[:200]
    return str(body)[:200]


class MicroblogAdapter(PlatformAdapter):
    """Publishes to X via API v2.

    Args:
        content: Resolver for ``content_ref`` values.
        bearer_token: User-context OAuth 2.0 token.  Falls back to the
            ``TWITTER_BEARER_TOKEN`` environment variable.
        timeout_seconds: Per-request ``httpx`` timeout.
        transport: Optional ``httpx`` transport (tests use ``MockTransport``).
        now: Wall clock in epoch seconds, for the rate-limit hint.
    """

    platform = Platform.MICROBLOG

    BASE_URL: str = "https://api.twitter.com/2"
    MAX_TEXT_LENGTH: int = 280

    def __init__(
        self,
        content: ContentResolver,
        bearer_token: Optional[str] = None,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.content = content
        self.bearer_token: str = bearer_token or os.environ.get("TWITTER_BEARER_TOKEN", "")
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._now = now

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.bearer_token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.BASE_URL,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    async def submit(self, content_ref: str, idempotency_key: str) -> str:
        if not self.bearer_token:
            raise AuthExpiredError("TWITTER_BEARER_TOKEN is not set")

        payload = await self.content.resolve(content_ref)
        text = payload.text.strip()
        if not text:
            raise RejectedError(f"Content {content_ref} is empty")
        if len(text) > self.MAX_TEXT_LENGTH:
            raise RejectedError(
                f"Content {content_ref} is {len(text)} chars; limit is {self.MAX_TEXT_LENGTH}"
            )
        if payload.media_path:
            logger.warning(
                "[MICROBLOG] Media attachments are not supported; posting text only for %s",
                content_ref,
            )

        headers = self._auth_headers()
        headers["Idempotency-Key"] = idempotency_key

        try:
            async with self._client() as client:
                response = await client.post("/tweets", json={"text": text}, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientError(f"X API timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"X API request failed: {exc}") from exc

        if response.status_code not in (200, 201):
            raise self._classify_submit(response)

        data: Dict[str, Any] = response.json().get("data") or {}
        post_id = data.get("id")
        if not post_id:
            raise TransientError("X API response carried no post id")

        logger.info("[MICROBLOG] Posted %s (text_len=%d)", post_id, len(text))
        return str(post_id)

    def _classify_submit(self, response: httpx.Response) -> PlatformError:
        status = response.status_code
        detail = _detail(response)
        if status == 429:
            return RateLimitedError(
                f"X API rate limit: {detail}",
                retry_after=_retry_after(response, self._now()),
            )
        if status == 401:
            return AuthExpiredError(f"X API rejected credentials: {detail}")
        if status >= 500:
            return TransientError(f"X API server error {status}: {detail}")
        if 400 <= status < 500:
            return RejectedError(f"X API rejected the post ({status}): {detail}")
        return TransientError(f"X API unexpected status {status}: {detail}")

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def fetch_metrics(self, external_post_id: str) -> RawCounts:
        try:
            async with self._client() as client:
                response = await client.get(
                    f"/tweets/{external_post_id}",
                    params={"tweet.fields": "public_metrics"},
                    headers=self._auth_headers(),
                )
        except httpx.HTTPError as exc:
            raise TransientError(f"X API metrics request failed: {exc}") from exc

        if response.status_code == 404:
            raise NotFoundError(f"Post {external_post_id} not found")
        if response.status_code != 200:
            raise TransientError(
                f"X API metrics error {response.status_code}: {_detail(response)}"
            )

        body = response.json()
        data = body.get("data")
        if not data:
            # Deleted posts come back as 200 with only an ``errors`` array.
            raise NotFoundError(f"Post {external_post_id} not found: {body.get('errors')}")

        metrics = data.get("public_metrics") or {}
        counts = RawCounts(
            impressions=metrics.get("impression_count"),
            likes=int(metrics.get("like_count", 0)),
            comments=int(metrics.get("reply_count", 0)),
            shares=int(metrics.get("retweet_count", 0)) + int(metrics.get("quote_count", 0)),
            clicks=None,
        )
        logger.debug("[MICROBLOG] Metrics for %s: %s", external_post_id, counts)
        return counts
