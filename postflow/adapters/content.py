"""Content resolution against the ``drafts`` table."""

import logging
from typing import Optional

import httpx

from postflow.adapters.base import ContentResolver
from postflow.exceptions import RejectedError, TransientError
from postflow.models import ContentPayload

logger = logging.getLogger(__name__)


class SupabaseContentResolver(ContentResolver):
    """Resolves ``content_ref`` as a draft id.

    The publishable text is ``full_text`` (falling back to ``body``);
    ``visual_path`` is attached as media when present.

    Args:
        client: Async Supabase client (``SupabaseJobStore.client``).
        table: Table holding the drafts.
    """

    def __init__(self, client: "AsyncClient", table: str = "drafts") -> None:  # noqa: F821
        self.client = client
        self.table = table

    async def resolve(self, content_ref: str) -> ContentPayload:
        try:
            result = await (
                self.client.table(self.table)
                .select("id, full_text, body, visual_path")
                .eq("id", content_ref)
                .execute()
            )
        except httpx.HTTPError as exc:
            raise TransientError(f"Draft lookup failed for {content_ref}: {exc}") from exc

        if not result.data:
            raise RejectedError(f"Draft not found: {content_ref}")

        row = result.data[0]
        text: Optional[str] = row.get("full_text") or row.get("body")
        if not text or not text.strip():
            raise RejectedError(f"Draft {content_ref} has no text")

        logger.debug("[CONTENT] Resolved draft %s (text_len=%d)", content_ref, len(text))
        return ContentPayload(text=text, media_path=row.get("visual_path"))
