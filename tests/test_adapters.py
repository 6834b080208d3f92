"""Tests for platform adapters and content resolution.

Validates:
- idempotency_key is stable per job and distinct across jobs
- AdapterRegistry lookup and UnsupportedPlatformError
- MicroblogAdapter status classification, Idempotency-Key header, rate-limit hint
- MicroblogAdapter metrics mapping and NotFound handling
- LinkedIn error classification and cookie-based session handling
- StaticContentResolver / SupabaseContentResolver
"""

import json
import time
from unittest.mock import MagicMock

import httpx
import pytest

from postflow.adapters.base import AdapterRegistry, StaticContentResolver, idempotency_key
from postflow.adapters.content import SupabaseContentResolver
from postflow.adapters.linkedin import LinkedInAdapter, classify_error, load_cookies
from postflow.adapters.microblog import MicroblogAdapter
from postflow.exceptions import (
    AuthExpiredError,
    NotFoundError,
    RateLimitedError,
    RejectedError,
    TransientError,
    UnsupportedPlatformError,
)
from postflow.models import ErrorKind, Platform


# =============================================================================
# Helpers
# =============================================================================


@pytest.fixture
def content():
    resolver = StaticContentResolver()
    resolver.add("draft-1", "Shipping the new scheduler today.")
    resolver.add("draft-long", "x" * 281)
    resolver.add("draft-blank", "   ")
    resolver.add("draft-media", "With a chart", media_path="charts/q2.png")
    return resolver


def microblog(content, handler, **kwargs):
    return MicroblogAdapter(
        content,
        bearer_token="test-token",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


# =============================================================================
# Base
# =============================================================================


class TestIdempotencyKey:
    def test_stable_for_same_job(self):
        assert idempotency_key("job-1") == idempotency_key("job-1")

    def test_distinct_for_different_jobs(self):
        assert idempotency_key("job-1") != idempotency_key("job-2")

    def test_fixed_length_hex(self):
        key = idempotency_key("job-1")
        assert len(key) == 32
        int(key, 16)


class TestAdapterRegistry:
    def test_get_registered(self, registry, microblog_adapter):
        assert registry.get(Platform.MICROBLOG) is microblog_adapter
        assert Platform.LINKEDIN in registry

    def test_get_unregistered_raises(self, microblog_adapter):
        registry = AdapterRegistry([microblog_adapter])
        assert Platform.LINKEDIN not in registry
        with pytest.raises(UnsupportedPlatformError):
            registry.get(Platform.LINKEDIN)

    def test_platforms(self, registry):
        assert set(registry.platforms()) == {Platform.MICROBLOG, Platform.LINKEDIN}

    @pytest.mark.asyncio
    async def test_static_resolver_unknown_ref_is_rejected(self, content):
        with pytest.raises(RejectedError):
            await content.resolve("missing")


# =============================================================================
# Microblog submit
# =============================================================================


class TestMicroblogSubmit:
    @pytest.mark.asyncio
    async def test_success_returns_post_id_and_sends_key(self, content):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("Idempotency-Key")
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"data": {"id": "1800", "text": "..."}})

        adapter = microblog(content, handler)
        post_id = await adapter.submit("draft-1", "key-abc")

        assert post_id == "1800"
        assert seen["path"] == "/2/tweets"
        assert seen["key"] == "key-abc"
        assert seen["auth"] == "Bearer test-token"
        assert seen["body"] == {"text": "Shipping the new scheduler today."}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error_cls",
        [
            (401, AuthExpiredError),
            (400, RejectedError),
            (403, RejectedError),
            (422, RejectedError),
            (500, TransientError),
            (503, TransientError),
        ],
    )
    async def test_status_classification(self, content, status, error_cls):
        adapter = microblog(content, lambda r: httpx.Response(status, json={"detail": "nope"}))
        with pytest.raises(error_cls):
            await adapter.submit("draft-1", "k")

    @pytest.mark.asyncio
    async def test_rate_limit_carries_reset_hint(self, content):
        def handler(request):
            return httpx.Response(
                429, headers={"x-rate-limit-reset": "1000900"}, json={"title": "Too Many Requests"}
            )

        adapter = microblog(content, handler, now=lambda: 1000000.0)
        with pytest.raises(RateLimitedError) as exc_info:
            await adapter.submit("draft-1", "k")
        assert exc_info.value.retry_after == 900.0
        assert exc_info.value.kind == ErrorKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_rate_limit_falls_back_to_retry_after(self, content):
        adapter = microblog(
            content, lambda r: httpx.Response(429, headers={"retry-after": "45"}, text="slow down")
        )
        with pytest.raises(RateLimitedError) as exc_info:
            await adapter.submit("draft-1", "k")
        assert exc_info.value.retry_after == 45.0

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, content):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientError):
            await microblog(content, handler).submit("draft-1", "k")

    @pytest.mark.asyncio
    async def test_missing_post_id_is_transient(self, content):
        adapter = microblog(content, lambda r: httpx.Response(200, json={"data": {}}))
        with pytest.raises(TransientError):
            await adapter.submit("draft-1", "k")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ref", ["draft-long", "draft-blank", "missing"])
    async def test_unpublishable_content_is_rejected_before_request(self, content, ref):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(201, json={"data": {"id": "1"}})

        with pytest.raises(RejectedError):
            await microblog(content, handler).submit(ref, "k")
        assert calls == []

    @pytest.mark.asyncio
    async def test_no_token_is_auth_expired(self, content):
        adapter = MicroblogAdapter(content, bearer_token="")
        with pytest.raises(AuthExpiredError):
            await adapter.submit("draft-1", "k")

    @pytest.mark.asyncio
    async def test_media_is_dropped_with_text_posted(self, content):
        adapter = microblog(content, lambda r: httpx.Response(201, json={"data": {"id": "9"}}))
        assert await adapter.submit("draft-media", "k") == "9"


# =============================================================================
# Microblog metrics
# =============================================================================


class TestMicroblogMetrics:
    @pytest.mark.asyncio
    async def test_public_metrics_mapping(self, content):
        def handler(request):
            assert request.url.params["tweet.fields"] == "public_metrics"
            return httpx.Response(
                200,
                json={
                    "data": {
                        "id": "1800",
                        "public_metrics": {
                            "impression_count": 2000,
                            "like_count": 40,
                            "reply_count": 5,
                            "retweet_count": 3,
                            "quote_count": 2,
                        },
                    }
                },
            )

        counts = await microblog(content, handler).fetch_metrics("1800")

        assert counts.impressions == 2000
        assert counts.likes == 40
        assert counts.comments == 5
        assert counts.shares == 5
        assert counts.engagement_rate == pytest.approx(50 / 2000)

    @pytest.mark.asyncio
    async def test_404_is_not_found(self, content):
        with pytest.raises(NotFoundError):
            await microblog(content, lambda r: httpx.Response(404)).fetch_metrics("1")

    @pytest.mark.asyncio
    async def test_deleted_post_is_not_found(self, content):
        body = {"errors": [{"title": "Not Found Error"}]}
        with pytest.raises(NotFoundError):
            await microblog(content, lambda r: httpx.Response(200, json=body)).fetch_metrics("1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 401])
    async def test_other_failures_are_transient(self, content, status):
        with pytest.raises(TransientError):
            await microblog(content, lambda r: httpx.Response(status)).fetch_metrics("1")


# =============================================================================
# LinkedIn
# =============================================================================


class TestLinkedInClassification:
    @pytest.mark.parametrize(
        "message,error_cls",
        [
            ("429 Too Many Requests", RateLimitedError),
            ("rate limit exceeded", RateLimitedError),
            ("401 Unauthorized", AuthExpiredError),
            ("CHALLENGE required", AuthExpiredError),
            ("CSRF check failed", AuthExpiredError),
            ("400 Bad Request", RejectedError),
            ("duplicate content", RejectedError),
            ("403 Forbidden", RejectedError),
            ("404 Not Found", RejectedError),
            ("Connection reset by peer", TransientError),
            ("post moderated", TransientError),
        ],
    )
    def test_submit_classification(self, message, error_cls):
        assert isinstance(classify_error(Exception(message)), error_cls)

    @pytest.mark.parametrize(
        "message,error_cls",
        [
            ("404 Not Found", NotFoundError),
            ("429 Too Many Requests", TransientError),
            ("401 Unauthorized", TransientError),
        ],
    )
    def test_fetch_classification(self, message, error_cls):
        assert isinstance(classify_error(Exception(message), fetching=True), error_cls)


class FakeVoyager:
    def __init__(self, post_result="urn:li:share:1", post_error=None):
        self.post_result = post_result
        self.post_error = post_error
        self.posts = []

    def post(self, text, media_path=None):
        self.posts.append((text, media_path))
        if self.post_error:
            raise self.post_error
        return self.post_result

    def get_post_reactions(self, urn):
        return [{"id": 1}, {"id": 2}, {"id": 3}]

    def get_post_comments(self, urn):
        return [{"id": 1}]


def write_cookies(path, saved_at=None, names=("li_at", "JSESSIONID")):
    payload = {
        "saved_at": saved_at if saved_at is not None else time.time(),
        "cookies": [{"name": n, "value": f"v-{n}"} for n in names],
    }
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


class TestLinkedInAdapter:
    def test_load_cookies_missing_file(self, tmp_path):
        assert load_cookies(tmp_path / "none.json") is None

    def test_load_cookies_expired(self, tmp_path):
        path = write_cookies(tmp_path / "c.json", saved_at=time.time() - 10 * 86400)
        assert load_cookies(path) is None

    def test_load_cookies_without_session_cookie(self, tmp_path):
        path = write_cookies(tmp_path / "c.json", names=("JSESSIONID",))
        assert load_cookies(path) is None

    @pytest.mark.asyncio
    async def test_submit_posts_with_media(self, tmp_path, content):
        api = FakeVoyager()
        adapter = LinkedInAdapter(
            content, cookies_path=write_cookies(tmp_path / "c.json"), api_factory=lambda jar: api
        )

        post_id = await adapter.submit("draft-media", "k")

        assert post_id == "urn:li:share:1"
        assert api.posts == [("With a chart", "charts/q2.png")]

    @pytest.mark.asyncio
    async def test_submit_without_session_is_auth_expired(self, tmp_path, content):
        adapter = LinkedInAdapter(
            content, cookies_path=tmp_path / "none.json", api_factory=lambda jar: FakeVoyager()
        )
        with pytest.raises(AuthExpiredError):
            await adapter.submit("draft-1", "k")

    @pytest.mark.asyncio
    async def test_auth_failure_drops_cached_client(self, tmp_path, content):
        api = FakeVoyager(post_error=Exception("401 Unauthorized"))
        adapter = LinkedInAdapter(
            content, cookies_path=write_cookies(tmp_path / "c.json"), api_factory=lambda jar: api
        )

        with pytest.raises(AuthExpiredError):
            await adapter.submit("draft-1", "k")
        assert adapter._api is None

    @pytest.mark.asyncio
    async def test_empty_result_is_transient(self, tmp_path, content):
        api = FakeVoyager(post_result=None)
        adapter = LinkedInAdapter(
            content, cookies_path=write_cookies(tmp_path / "c.json"), api_factory=lambda jar: api
        )
        with pytest.raises(TransientError):
            await adapter.submit("draft-1", "k")

    @pytest.mark.asyncio
    async def test_fetch_metrics_counts_reactions_and_comments(self, tmp_path, content):
        adapter = LinkedInAdapter(
            content,
            cookies_path=write_cookies(tmp_path / "c.json"),
            api_factory=lambda jar: FakeVoyager(),
        )

        counts = await adapter.fetch_metrics("urn:li:share:1")

        assert counts.likes == 3
        assert counts.comments == 1
        assert counts.impressions is None
        assert counts.engagement_rate is None


# =============================================================================
# Supabase content resolver
# =============================================================================


class TestSupabaseContentResolver:
    @pytest.mark.asyncio
    async def test_resolves_full_text_and_visual(self, mock_supabase_client):
        mock_supabase_client.builder.execute.return_value = MagicMock(
            data=[{"id": "d1", "full_text": "Hello", "body": "short", "visual_path": "img.png"}]
        )
        payload = await SupabaseContentResolver(mock_supabase_client).resolve("d1")

        assert payload.text == "Hello"
        assert payload.media_path == "img.png"
        mock_supabase_client.table.assert_called_with("drafts")
        mock_supabase_client.builder.eq.assert_called_with("id", "d1")

    @pytest.mark.asyncio
    async def test_falls_back_to_body(self, mock_supabase_client):
        mock_supabase_client.builder.execute.return_value = MagicMock(
            data=[{"id": "d1", "full_text": None, "body": "Body text", "visual_path": None}]
        )
        payload = await SupabaseContentResolver(mock_supabase_client).resolve("d1")
        assert payload.text == "Body text"
        assert payload.media_path is None

    @pytest.mark.asyncio
    async def test_missing_draft_is_rejected(self, mock_supabase_client):
        with pytest.raises(RejectedError):
            await SupabaseContentResolver(mock_supabase_client).resolve("nope")

    @pytest.mark.asyncio
    async def test_http_error_is_transient(self, mock_supabase_client):
        mock_supabase_client.builder.execute.side_effect = httpx.ConnectError("down")
        with pytest.raises(TransientError):
            await SupabaseContentResolver(mock_supabase_client).resolve("d1")
