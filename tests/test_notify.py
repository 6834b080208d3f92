"""Tests for the Telegram notifier."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from postflow.models import ErrorKind, JobError, JobRecord, JobState, Platform
from postflow.notify import TelegramNotifier, _truncate


@pytest.fixture
def bot():
    mock = MagicMock()
    mock.send_message = AsyncMock()
    return mock


@pytest.fixture
def notifier(bot):
    return TelegramNotifier("token", "42", bot=bot)


class TestConstruction:
    @pytest.mark.parametrize("token,chat", [("", "42"), ("token", "")])
    def test_requires_credentials(self, token, chat):
        with pytest.raises(ValueError):
            TelegramNotifier(token, chat, bot=MagicMock())

    def test_from_env_without_credentials_is_none(self):
        assert TelegramNotifier.from_env() is None


class TestSend:
    @pytest.mark.asyncio
    async def test_send_markdown(self, notifier, bot):
        assert await notifier.send("hello") is True
        bot.send_message.assert_awaited_once_with(chat_id="42", text="hello", parse_mode="Markdown")

    @pytest.mark.asyncio
    async def test_send_failure_returns_false(self, notifier, bot):
        bot.send_message.side_effect = RuntimeError("network down")
        assert await notifier.send("hello") is False

    def test_truncate(self):
        assert _truncate("short") == "short"
        long = _truncate("x" * 5000)
        assert len(long) <= 4096
        assert long.endswith("(truncated)")


class TestAlerts:
    @pytest.mark.asyncio
    async def test_job_failed_message(self, notifier, bot):
        job = JobRecord(
            id="job-9",
            content_ref="d",
            platform=Platform.MICROBLOG,
            due_at=datetime(2025, 6, 15, tzinfo=timezone.utc),
            predicted_score=50,
            state=JobState.FAILED,
            attempt_count=1,
            last_error=JobError(ErrorKind.REJECTED, "duplicate status"),
        )

        await notifier.job_failed(job)

        text = bot.send_message.await_args.kwargs["text"]
        assert "job-9" in text
        assert "microblog" in text
        assert "rejected" in text
        assert "duplicate status" in text

    @pytest.mark.asyncio
    async def test_unreconciled_lists_jobs(self, notifier, bot):
        await notifier.jobs_unreconciled([f"j{i}" for i in range(25)])

        text = bot.send_message.await_args.kwargs["text"]
        assert text.startswith("*25 published job(s)")
        assert "`j19`" in text
        assert "`j20`" not in text
        assert "5 more" in text

    @pytest.mark.asyncio
    async def test_unreconciled_empty_sends_nothing(self, notifier, bot):
        assert await notifier.jobs_unreconciled([]) is True
        bot.send_message.assert_not_awaited()
