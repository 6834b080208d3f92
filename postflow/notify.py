"""
Operator alerts over Telegram.

``TelegramNotifier`` pushes a message to a single chat when a job ends in
``failed`` or when published jobs are given up on by reconciliation.  It
never starts long-polling and never raises: a failed send is logged and
the pipeline carries on.
"""

import logging
import os
from typing import Any, List, Optional

from telegram import Bot

from postflow.models import JobRecord

logger = logging.getLogger(__name__)

_MAX_MESSAGE_LENGTH = 4096


def _truncate(text: str, max_length: int = _MAX_MESSAGE_LENGTH) -> str:
    """Truncate *text* to fit within Telegram's message size limit."""
    if len(text) <= max_length:
        return text
    return text[: max_length - 20] + "\n...(truncated)"


class TelegramNotifier:
    """
    Lightweight Telegram notification sender.

    Args:
        bot_token: Telegram Bot API token (from BotFather).
        chat_id: Target chat / group / channel ID.
        bot: Pre-built ``telegram.Bot`` (tests inject a mock).

    Usage::

        notifier = TelegramNotifier.from_env()
        if notifier:
            await notifier.send("Dispatch loop started.")
    """

    def __init__(self, bot_token: str, chat_id: str, bot: Optional[Any] = None) -> None:
        if not bot_token:
            raise ValueError("TelegramNotifier requires a non-empty bot_token")
        if not chat_id:
            raise ValueError("TelegramNotifier requires a non-empty chat_id")

        self._chat_id: str = chat_id
        self._bot: Any = bot if bot is not None else Bot(token=bot_token)

    @classmethod
    def from_env(cls) -> Optional["TelegramNotifier"]:
        """Build from ``TELEGRAM_BOT_TOKEN`` / ``TELEGRAM_CHAT_ID``, or ``None``."""
        token = os.environ.get("TELEGRAM_BOT_TOKEN")
        chat_id = os.environ.get("TELEGRAM_CHAT_ID")
        if not token or not chat_id:
            logger.info("[TELEGRAM] Credentials not set; alerts disabled")
            return None
        return cls(token, chat_id)

    async def send(self, message: str) -> bool:
        """Send a Markdown message; returns ``False`` if delivery failed."""
        try:
            await self._bot.send_message(
                chat_id=self._chat_id,
                text=_truncate(message),
                parse_mode="Markdown",
            )
        except Exception:
            logger.exception(
                "[TELEGRAM] Failed to send message to chat_id=%s",
                self._chat_id,
            )
            return False
        return True

    async def job_failed(self, job: JobRecord) -> bool:
        error = job.last_error
        lines = [
            "*Publish job failed*",
            f"Job: `{job.id}`",
            f"Platform: {job.platform.value}",
            f"Attempts: {job.attempt_count}",
        ]
        if error is not None:
            lines.append(f"Error ({error.kind.value}): {error.message}")
        return await self.send("\n".join(lines))

    async def jobs_unreconciled(self, job_ids: List[str]) -> bool:
        if not job_ids:
            return True
        listed = "\n".join(f"- `{job_id}`" for job_id in job_ids[:20])
        more = f"\n...and {len(job_ids) - 20} more" if len(job_ids) > 20 else ""
        return await self.send(
            f"*{len(job_ids)} published job(s) received no metrics*\n{listed}{more}"
        )


__all__ = ["TelegramNotifier"]
