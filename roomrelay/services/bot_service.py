"""Bot service entrypoint that delegates routing to MessageRouter."""

from __future__ import annotations

from typing import Any

from roomrelay.schemas.intent import InboundIntent
from roomrelay.services.message_router import MessageRouter


class BotService:
    """Thin facade that forwards inbound intents to MessageRouter."""

    def __init__(self, message_router: MessageRouter) -> None:
        self.message_router = message_router

    async def handle_intent(self, intent: InboundIntent) -> None:
        """Receive one structured intent and route it."""
        await self.message_router.route_message(intent)

    async def handle_payload(self, payload: dict[str, Any]) -> None:
        """Compatibility adapter for raw dict payloads using the wire field names."""
        await self.handle_intent(InboundIntent.model_validate(payload))
