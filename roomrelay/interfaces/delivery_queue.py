"""Interface contract for delivery queue backends."""

from abc import ABC, abstractmethod

from roomrelay.schemas.outbound import Envelope


class DeliveryQueue(ABC):
    """Defines how one envelope reaches the sender process."""

    @abstractmethod
    async def publish(self, envelope: Envelope) -> None:
        """Publish one envelope to the broker."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release broker resources."""
