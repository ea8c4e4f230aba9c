# chatsync/infra/servicebus_consumer.py
import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from azure.servicebus import ServiceBusMessage, TransportType
from azure.servicebus.aio import ServiceBusClient

from chatsync.infra.realtime import SubscriptionRegistry
from chatsync.models.change_event import ChangeEvent

logger = logging.getLogger(__name__)

# ====== env ======
SB_CONN_STR = os.getenv("AZURE_SERVICE_BUS_CONNECTION_STRING")
SB_TOPIC = os.getenv("AZURE_SERVICE_BUS_TOPIC_NAME", "row-changes")
SB_SUBSCRIPTION = os.getenv("AZURE_SERVICE_BUS_SUBSCRIPTION_NAME", "chatsync")

RECONNECT_BACKOFF = 5  # segundos


class ChangeFeed:
    """
    Feed de cambios por fila sobre un topic de Azure Service Bus.
      - publish(): cada insert/update del backend publica un ChangeEvent.
      - consume(): recibe del topic y despacha a las suscripciones locales.
    Sin connection string, publish() despacha directo al registry.
    """

    def __init__(self, registry: SubscriptionRegistry, conn_str: Optional[str] = None):
        self.registry = registry
        self.conn_str = conn_str if conn_str is not None else SB_CONN_STR
        self._client: Optional[ServiceBusClient] = None
        self._status = {
            "startedAt": None,
            "lastMessageAt": None,
            "lastError": None,
            "topic": SB_TOPIC,
            "subscription": SB_SUBSCRIPTION,
            "hasConnectionString": bool(self.conn_str),
        }

    @property
    def configured(self) -> bool:
        return bool(self.conn_str and SB_TOPIC and SB_SUBSCRIPTION)

    def status(self) -> dict:
        return dict(self._status)

    def _get_client(self) -> ServiceBusClient:
        if self._client is None:
            self._client = ServiceBusClient.from_connection_string(
                self.conn_str,
                transport_type=TransportType.AmqpOverWebsocket,  # 443
            )
        return self._client

    async def publish(self, change: ChangeEvent):
        if not self.configured:
            self.registry.dispatch(change)
            return

        async with self._get_client().get_topic_sender(topic_name=SB_TOPIC) as sender:
            await sender.send_messages(ServiceBusMessage(change.model_dump_json()))

    async def consume(self):
        """
        Consumer asíncrono del topic:
          - confirma (complete) sólo si el mensaje se pudo despachar.
          - reconecta con backoff si se cae.
        """
        if not self.configured:
            logger.warning("[consumer] Falta configuración de Service Bus. No se consumirá el feed.")
            return

        self._status["startedAt"] = datetime.now(timezone.utc).isoformat()

        while True:
            try:
                logger.info("[consumer] Conectando a Service Bus (topic: %s/%s)", SB_TOPIC, SB_SUBSCRIPTION)
                receiver = self._get_client().get_subscription_receiver(
                    topic_name=SB_TOPIC,
                    subscription_name=SB_SUBSCRIPTION,
                    max_wait_time=20,
                )
                async with receiver:
                    logger.info("[consumer] Escuchando %s/%s", SB_TOPIC, SB_SUBSCRIPTION)
                    while True:
                        messages = await receiver.receive_messages(
                            max_message_count=10,
                            max_wait_time=10,
                        )
                        if not messages:
                            await asyncio.sleep(0.5)
                            continue

                        for msg in messages:
                            try:
                                body_bytes = b"".join(part for part in msg.body)
                                change = ChangeEvent(**json.loads(body_bytes.decode("utf-8")))
                                matched = self.registry.dispatch(change)
                                logger.debug("[consumer] %s %s -> %d suscripciones",
                                             change.event, change.table, matched)

                                await receiver.complete_message(msg)
                                self._status["lastMessageAt"] = datetime.now(timezone.utc).isoformat()
                            except Exception as e:
                                # no completar => reintenta (o DLQ por MaxDeliveryCount)
                                self._status["lastError"] = str(e)
                                logger.error("[consumer] Error procesando mensaje: %s", e)

                await asyncio.sleep(1)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._status["lastError"] = str(e)
                logger.warning("[consumer] Error de conexión, reintento en %ss -> %s", RECONNECT_BACKOFF, e)
                await asyncio.sleep(RECONNECT_BACKOFF)

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None
