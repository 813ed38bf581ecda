"""Webhook endpoint for intents produced by the transport adapter."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from roomrelay.schemas.intent import InboundIntent, IntentAccepted
from roomrelay.services.bot_service import BotService

router = APIRouter()


def get_bot_service(request: Request) -> BotService:
    return request.app.state.runtime.bot_service


@router.post("/webhook/intents", response_model=IntentAccepted)
async def receive_intent(
    intent: InboundIntent,
    bot_service: BotService = Depends(get_bot_service),
) -> IntentAccepted:
    """Route one structured inbound intent through the conversation engine."""
    await bot_service.handle_intent(intent)
    return IntentAccepted()
