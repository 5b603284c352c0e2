"""Queue boundary between trigger monitors and engine registries."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..models import FiringRequest

DeliveryT = TypeVar("DeliveryT")


class BaseTransport(Generic[DeliveryT], metaclass=abc.ABCMeta):
    """Carries firing requests per topic, one topic per organization.

    Consumers receive ``(delivery, request)`` pairs in publish order and
    must ``ack`` each delivery once the request has been handled, or
    ``nack`` it to have it delivered again ahead of newer requests.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: FiringRequest) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[DeliveryT, FiringRequest]]:
        """Yield deliveries until ``lifespan`` seconds pass (forever if None)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: DeliveryT) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def nack(self, raw_message: DeliveryT, requeue: bool = True) -> None:
        raise NotImplementedError
