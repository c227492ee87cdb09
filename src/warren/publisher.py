"""Publish messages: broadcast, fire-and-forget, and remote calls."""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import uuid
from typing import Any, Callable, Dict, Optional

from . import json
from .broker.base import CallTimeout, Exchange
from .handler import to_body


log = logging.getLogger(__name__)


class RawCodec:
    """Bodies go out as bytes and replies come back as bytes."""

    def encode(self, payload) -> bytes:
        return to_body(payload)

    def decode(self, body: bytes):
        return body


class JsonCodec:
    """ Bodies go out as JSON documents; replies are JSON documents of the
        form ``{"result": value}`` and decode to *value*. A reply that is
        not valid JSON raises :class:`warren.json.DecodeError`.
    """

    def encode(self, payload) -> bytes:
        return json.dumps(payload)

    def decode(self, body: bytes):
        return json.loads(body)["result"]


RAW = RawCodec()
JSON = JsonCodec()


def default_id() -> str:
    return uuid.uuid4().hex


class Publisher:
    """ Sends messages on a channel of its own. *id_generator* is a
        zero-argument callable returning a fresh string for every
        correlation id and consumer tag; *codec* encodes outgoing payloads
        and decodes call replies.
    """

    def __init__(
        self,
        connection,
        id_generator: Optional[Callable[[], str]] = None,
        codec=RAW,
    ):
        self.connection = connection
        self.channel = connection.create_channel()
        self.codec = codec
        self.id_generator = id_generator or default_id

        self._exchange = self.channel.default_exchange
        self._reply_queue = self.channel.queue("", exclusive=True)
        self._topics: Dict[str, Exchange] = {}
        self._call_lock = threading.Lock()

    @property
    def reply_queue(self) -> str:
        return self._reply_queue.name

    def notify(self, topic_exchange: str, routing_key: str, payload) -> None:
        """Broadcast *payload* on a topic exchange."""

        # No lock: two threads racing on a miss both declare the same
        # exchange, which the broker treats as a no-op.

        exchange = self._topics.get(topic_exchange)
        if exchange is None:
            exchange = self.channel.topic(topic_exchange)
            self._topics[topic_exchange] = exchange

        exchange.publish(self.codec.encode(payload), routing_key=routing_key)

    def cast(self, queue_name: str, payload) -> None:
        """Send *payload* to a queue without waiting for anything."""
        self._exchange.publish(self.codec.encode(payload), routing_key=queue_name)

    def call(self, queue_name: str, payload, timeout: float = 10) -> Any:
        """ Send *payload* to a queue and wait up to *timeout* seconds for
            the reply, which is returned decoded. Raises
            :class:`warren.broker.CallTimeout` if no reply arrives in time.

            Calls on the same publisher are made one at a time; every call
            shares the publisher's reply queue.
        """

        with self._call_lock:
            body = self._call(queue_name, self.codec.encode(payload), timeout)

        return self.codec.decode(body)

    def _call(self, queue_name: str, body: bytes, timeout: float) -> bytes:

        correlation_id = self.id_generator()
        consumer_tag = self.id_generator()
        reply: concurrent.futures.Future = concurrent.futures.Future()

        def on_reply(delivery_info, properties, payload):
            if properties.correlation_id != correlation_id:
                log.debug("discarding reply for %s", properties.correlation_id)
                return

            # The consumer is detached from the reply queue before the caller
            # wakes up, so the next call cannot share the queue with it.

            if not delivery_info.consumer.cancel():
                return

            reply.set_result(payload)

        self._exchange.publish(
            body,
            routing_key=queue_name,
            reply_to=self._reply_queue.name,
            correlation_id=correlation_id,
        )

        self._reply_queue.subscribe(on_reply, block=False, consumer_tag=consumer_tag)

        try:
            return reply.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            self.channel.cancel(consumer_tag)
            raise CallTimeout(
                f"call to {queue_name!r}: no reply in {timeout} sec"
            ) from None


class JsonPublisher(Publisher):
    """ A :class:`Publisher` speaking JSON: payloads are encoded on the way
        out and :meth:`call` returns the ``result`` field of the reply.
    """

    def __init__(self, connection, id_generator=None):
        super().__init__(connection, id_generator=id_generator, codec=JSON)
