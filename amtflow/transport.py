"""AMQP transport and the queue topology behind a flow."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import pika

RETRY_HEADER = "retry-count"
MAX_RETRIES = 2
RETRY_DELAY_MS = 15000
CONTENT_TYPE = "application/json"
PERSISTENT = 2


class TransportError(Exception):
    """Raised when talking to the message broker fails."""


@dataclass
class Delivery:
    """A message received from a queue, acknowledged through its channel."""

    body: bytes
    delivery_tag: int
    channel: Any = field(repr=False, compare=False)
    headers: dict[str, Any] = field(default_factory=dict)
    content_type: str | None = None

    def ack(self) -> None:
        """Acknowledge this message."""
        self.channel.basic_ack(delivery_tag=self.delivery_tag, multiple=False)

    def nack(self, requeue: bool) -> None:
        """Reject this message, optionally putting it back on the queue."""
        self.channel.basic_nack(delivery_tag=self.delivery_tag, multiple=False, requeue=requeue)


class MQTransport:
    """A broker connection together with one channel on it."""

    def __init__(self, connection: Any, channel: Any) -> None:
        self.connection = connection
        self.channel = channel

    @classmethod
    def connect(cls, dsn: str) -> MQTransport:
        """Open a connection and a channel to the broker at ``dsn``."""
        try:
            connection = pika.BlockingConnection(pika.URLParameters(dsn))
        except Exception as exc:
            raise TransportError(f"error during the connecting: {exc}") from exc
        try:
            channel = connection.channel()
        except Exception as exc:
            raise TransportError(f"error during the creating channel: {exc}") from exc
        return cls(connection, channel)

    def close(self) -> None:
        """Close the channel and the connection; closing twice does nothing."""
        errors: list[str] = []
        if self.channel is not None:
            try:
                self.channel.close()
            except Exception as exc:
                errors.append(str(exc))
            self.channel = None
        if self.connection is not None:
            try:
                self.connection.close()
            except Exception as exc:
                errors.append(str(exc))
            self.connection = None
        if errors:
            raise TransportError("\n".join(errors))

    def __enter__(self) -> MQTransport:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


@contextmanager
def _step(what: str) -> Iterator[None]:
    try:
        yield
    except Exception as exc:
        raise TransportError(f"error in AMTConn func: {what}: {exc}") from exc


class AMTConn:
    """A named queue with its retry queue and dead-letter queue."""

    def __init__(self, transport: MQTransport, name: str, prefetch_count: int) -> None:
        self.transport = transport
        self.exchange_name = f"Exchange_{name}"
        self.queue_name = f"Queue_{name}"
        self._declare_topology(prefetch_count)

    @property
    def _channel(self) -> Any:
        channel = self.transport.channel
        if channel is None:
            raise TransportError("transport is closed")
        return channel

    def _declare_topology(self, prefetch_count: int) -> None:
        channel = self._channel
        exchange = self.exchange_name
        dlx = f"{exchange}_DLX"
        queue = self.queue_name
        dlq = f"{queue}_DLQ"
        retry_queue = f"{queue}_retry"

        with _step("Main exchange declare"):
            channel.exchange_declare(
                exchange=exchange, exchange_type="direct", durable=True, auto_delete=False, internal=False
            )
        with _step("DLX exchange declare"):
            channel.exchange_declare(
                exchange=dlx, exchange_type="direct", durable=True, auto_delete=False, internal=False
            )
        with _step("DLQ queue declare"):
            channel.queue_declare(queue=dlq, durable=True, exclusive=False, auto_delete=False)
        with _step("DLQ queue bind"):
            channel.queue_bind(queue=dlq, exchange=dlx, routing_key=f"{dlq}_key")

        retry_args = {
            "x-dead-letter-exchange": exchange,
            "x-dead-letter-routing-key": f"{queue}_retry_key",
            "x-message-ttl": RETRY_DELAY_MS,
        }
        with _step("Retry queue declare"):
            channel.queue_declare(
                queue=retry_queue, durable=True, exclusive=False, auto_delete=False, arguments=retry_args
            )
        with _step("Retry queue bind"):
            channel.queue_bind(queue=retry_queue, exchange=exchange, routing_key=f"{queue}_retry_key")

        main_args = {
            "x-dead-letter-exchange": dlx,
            "x-dead-letter-routing-key": f"{dlq}_key",
        }
        with _step("Main queue declare"):
            channel.queue_declare(queue=queue, durable=True, exclusive=False, auto_delete=False, arguments=main_args)
        with _step("Main queue bind"):
            channel.queue_bind(queue=queue, exchange=exchange, routing_key=f"{queue}_key")

        with _step("Channel QoS setting"):
            channel.basic_qos(prefetch_size=0, prefetch_count=prefetch_count, global_qos=False)

    def publish(self, msg: bytes) -> None:
        """Publish a persistent JSON message to the main queue."""
        self._channel.basic_publish(
            exchange=self.exchange_name,
            routing_key=f"{self.queue_name}_key",
            body=msg,
            properties=pika.BasicProperties(
                delivery_mode=PERSISTENT,
                content_type=CONTENT_TYPE,
                headers={RETRY_HEADER: 0},
            ),
            mandatory=False,
        )

    def consume(self) -> Iterator[Delivery]:
        """Start consuming the main queue with manual acknowledgement."""
        channel = self._channel
        try:
            stream = channel.consume(self.queue_name, auto_ack=False)
        except Exception as exc:
            raise TransportError(f"error during consuming message: {exc}") from exc
        return self._deliveries(channel, stream)

    @staticmethod
    def _deliveries(channel: Any, stream: Iterable[Any]) -> Iterator[Delivery]:
        for method, properties, body in stream:
            if method is None:
                continue
            yield Delivery(
                body=body,
                delivery_tag=method.delivery_tag,
                channel=channel,
                headers=dict(getattr(properties, "headers", None) or {}),
                content_type=getattr(properties, "content_type", None),
            )

    def retry(self, delivery: Delivery) -> None:
        """Send a failed message to the retry queue, or dead-letter it.

        Messages without a valid retry counter, or retried too often, are
        rejected so that they end up in the dead-letter queue.
        """
        headers = delivery.headers
        retries = headers.get(RETRY_HEADER)
        if not isinstance(retries, int) or isinstance(retries, bool):
            headers[RETRY_HEADER] = -1
            delivery.nack(False)
            return
        if retries > MAX_RETRIES:
            delivery.nack(False)
            return
        headers[RETRY_HEADER] = retries + 1
        try:
            self._channel.basic_publish(
                exchange=self.exchange_name,
                routing_key=f"{self.queue_name}_retry_key",
                body=delivery.body,
                properties=pika.BasicProperties(
                    delivery_mode=PERSISTENT,
                    content_type=delivery.content_type,
                    headers=headers,
                ),
                mandatory=False,
            )
        except Exception as exc:
            headers[RETRY_HEADER] = -2
            delivery.nack(False)
            raise TransportError(f"error during publishing to retry queue: {exc}") from exc
        delivery.ack()

    def close(self) -> None:
        """Close the underlying transport."""
        self.transport.close()