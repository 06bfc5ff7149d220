"""
Control surface used by the connection layer.

Maps connection events and inbound control messages onto registry
operations. The shared ring buffer is never modified from here: a clear
request only resets the requesting consumer's view.
"""

import logging

from pydantic import ValidationError

from config import INVALID_CONTROL_ERROR
from models import ClearedMessage, ControlRequest, ErrorMessage
from relay.consumer import Consumer
from relay.registry import SessionRegistry
from relay.session import DeviceSession

logger = logging.getLogger(__name__)


class ControlSurface:
    def __init__(self, registry: SessionRegistry):
        self.registry = registry

    async def on_connect(self, device_id: str, consumer: Consumer) -> DeviceSession:
        """Attach; raises SpawnFailed when the log tool cannot be started."""
        return await self.registry.attach(device_id, consumer)

    async def on_disconnect(self, consumer: Consumer) -> None:
        consumer.close()
        await self.registry.detach(consumer.device_id, consumer)

    def on_clear(self, consumer: Consumer) -> None:
        consumer.reset_view()
        consumer.offer(ClearedMessage().model_dump_json(), force=True)
        logger.debug(f"Consumer {consumer.consumer_id} cleared its view of {consumer.device_id}")

    async def on_message(self, consumer: Consumer, text: str) -> bool:
        """
        Handle one inbound control message.

        Returns False when the consumer asked to detach, True otherwise.
        Malformed messages are answered with an error to that consumer only.
        """
        try:
            request = ControlRequest.model_validate_json(text)
        except ValidationError as e:
            logger.debug(f"Bad control message from {consumer.consumer_id}: {e.errors()}")
            consumer.offer(ErrorMessage(message=INVALID_CONTROL_ERROR).model_dump_json(), force=True)
            return True

        if request.type == "clear":
            self.on_clear(consumer)
            return True

        await self.on_disconnect(consumer)
        return False
