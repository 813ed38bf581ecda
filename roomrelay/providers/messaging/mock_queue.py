"""Mock delivery queue implementation."""

import logging

from roomrelay.interfaces.delivery_queue import DeliveryQueue
from roomrelay.schemas.outbound import Envelope

logger = logging.getLogger(__name__)


class MockDeliveryQueue(DeliveryQueue):
    """Log-only backend for local runs without a broker."""

    async def publish(self, envelope: Envelope) -> None:
        logger.info(
            "[MockDelivery] -> %s | chat=%s | key=%s | text=%r",
            envelope.routing_key,
            envelope.body.chat_id,
            envelope.idempotency_key,
            envelope.body.text,
        )
