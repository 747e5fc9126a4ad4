"""Kafka transport: patient messages as records on a Kafka topic."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Union

from aiokafka import AIOKafkaProducer

from ..contracts import OutboundMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)


class KafkaTransport(BaseTransport):
    """Publishes each outbound message keyed by run id.

    Keying by run keeps every message of one run on one partition, so a
    consumer sees them in the order the run sent them.
    """

    def __init__(
        self,
        brokers: Iterable[str] | str = "localhost:9092",
        client_id: str = "journeyflow",
        acks: Union[int, str] = "all",
    ) -> None:
        self.brokers: List[str] = [brokers] if isinstance(brokers, str) else list(brokers)
        self.client_id = client_id
        self.acks = acks
        self._producer: Optional[AIOKafkaProducer] = None

    async def connect(self) -> None:
        if self._producer is None:
            producer = AIOKafkaProducer(
                bootstrap_servers=self.brokers,
                client_id=self.client_id,
                acks=self.acks,
            )
            await producer.start()
            self._producer = producer
            logger.debug(f"Kafka producer connected to {','.join(self.brokers)}")

    async def disconnect(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def publish(self, topic: str, message: OutboundMessage) -> None:
        await self.connect()
        await self._producer.send_and_wait(
            topic,
            value=message.to_json().encode(),
            key=message.run_id.encode(),
            headers=[("message_id", message.message_id.encode())],
        )
