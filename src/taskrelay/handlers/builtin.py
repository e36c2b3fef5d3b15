"""Built-in demo handlers: email, text reversal, and a sentiment stub."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from taskrelay.config.constants import REVERSE_TEXT_TASK, SEND_EMAIL_TASK, SENTIMENT_TASK
from taskrelay.handlers.base import TaskHandler
from taskrelay.handlers.registry import HandlerRegistry

logger = logging.getLogger("taskrelay.handlers.builtin")


class _SimulatedHandler(TaskHandler):
    """Handler that pretends to do work for ``latency`` seconds."""

    def __init__(self, latency: float = 0.5) -> None:
        self.latency = latency

    async def _work(self) -> None:
        if self.latency > 0:
            await asyncio.sleep(self.latency)


class SendEmailHandler(_SimulatedHandler):
    """Fails for any recipient containing ``fail`` to exercise retries."""

    name = SEND_EMAIL_TASK
    payload_fields = ("recipient", "subject", "body")

    async def execute(self, payload: dict[str, Any]) -> str:
        recipient = str(payload.get("recipient") or "")
        logger.info("Sending email to %s", recipient)
        await self._work()
        if "fail" in recipient:
            raise RuntimeError("Simulated email failure")
        return f"Email successfully sent to {recipient}"


class ReverseTextHandler(_SimulatedHandler):
    name = REVERSE_TEXT_TASK
    payload_fields = ("text",)

    async def execute(self, payload: dict[str, Any]) -> str:
        text = str(payload.get("text") or "")
        logger.info("Reversing text: %r", text)
        await self._work()
        return text[::-1]


class FakeSentimentHandler(_SimulatedHandler):
    """``positive`` if the text mentions "good", else ``negative``."""

    name = SENTIMENT_TASK
    payload_fields = ("text",)

    async def execute(self, payload: dict[str, Any]) -> str:
        text = str(payload.get("text") or "")
        logger.info("Analyzing sentiment for: %r", text)
        await self._work()
        return "positive" if "good" in text.lower() else "negative"


def default_registry(latency: float = 0.5) -> HandlerRegistry:
    """Registry with the three built-in handlers."""
    return HandlerRegistry(
        [
            SendEmailHandler(latency),
            ReverseTextHandler(latency),
            FakeSentimentHandler(latency),
        ]
    )
