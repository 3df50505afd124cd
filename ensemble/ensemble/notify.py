"""Outbound events for the push-notification transport."""

import logging
from pathlib import Path
from typing import Any

import aiofiles

from .models import utcnow

logger = logging.getLogger(__name__)

MESSAGE_DELIVERED = "message_delivered"
AI_REPLY = "ai_reply"


class Notifier:
    """Fire-and-forget event sink. The base implementation only logs."""

    async def emit(self, event: str, agent_id: str, payload: dict[str, Any]) -> None:
        logger.info(f"Event {event} for agent {agent_id} ({len(str(payload.get('content', '')))} chars)")


class TranscriptNotifier(Notifier):
    """Logs events and appends a human-readable line per event to a markdown file."""

    def __init__(self, path: str):
        self.path = Path(path)

    async def emit(self, event: str, agent_id: str, payload: dict[str, Any]) -> None:
        await super().emit(event, agent_id, payload)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        sender = payload.get("sender_id", "?")
        entry = (
            f"---\n**[{utcnow().isoformat()}]** `{event}` `{sender}` → `{agent_id}`\n\n"
            f"{payload.get('content', '')}"
        )
        async with aiofiles.open(self.path, "a") as f:
            await f.write(entry + "\n\n")
