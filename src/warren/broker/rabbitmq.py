"""RabbitMQ implementation of the broker contract, built on pika."""

from __future__ import annotations

import atexit
import concurrent.futures
import logging
import threading
import uuid
import weakref
from typing import Optional

import pika
import pika.exceptions

from .. import config
from . import base
from .base import BrokerConnectionError, Consumer, DeliveryInfo, Properties


log = logging.getLogger(__name__)

_channels: "weakref.WeakSet[Channel]" = weakref.WeakSet()


class Exchange(base.Exchange):

    def publish(
        self,
        payload: bytes,
        routing_key: str,
        reply_to: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        properties = pika.BasicProperties(
            reply_to=reply_to,
            correlation_id=correlation_id,
        )
        self.channel._call(
            lambda: self.channel._channel.basic_publish(
                exchange=self.name,
                routing_key=routing_key or "",
                properties=properties,
                body=payload,
            )
        )


class Queue(base.Queue):

    def bind(self, exchange: base.Exchange, routing_key: Optional[str]) -> None:
        self.channel._call(
            lambda: self.channel._channel.queue_bind(
                queue=self.name,
                exchange=exchange.name,
                routing_key=routing_key,
            )
        )

    def subscribe(
        self,
        callback: base.Callback,
        ack: bool = False,
        block: bool = False,
        consumer_tag: Optional[str] = None,
    ) -> Consumer:
        channel = self.channel

        # The tag is settled before basic_consume so that the Consumer
        # exists by the time the first delivery arrives.

        tag = consumer_tag or "warren." + uuid.uuid4().hex
        consumer = Consumer(channel, tag, callback)
        channel._remember(consumer)

        def on_message(_ch, method, properties, body: bytes) -> None:
            channel._dispatch(consumer, method, properties, body)

        channel._call(
            lambda: channel._channel.basic_consume(
                queue=self.name,
                on_message_callback=on_message,
                auto_ack=not ack,
                consumer_tag=tag,
            )
        )

        if block:
            consumer.wait()

        return consumer


class Channel(base.Channel):
    """ One pika BlockingConnection plus its channel, driven by a dedicated
        daemon thread. pika connections are not thread safe: every
        operation requested from another thread is handed to the
        connection thread with ``add_callback_threadsafe`` and the caller
        waits on a future for its result.

        Deliveries are handed to a thread pool sized to the prefetch count,
        so slow handlers never stall the connection thread.
    """

    timeout = 30

    def __init__(self, parameters: pika.ConnectionParameters):
        super().__init__()

        self.parameters = parameters
        self.shutdown = False
        self.workers = concurrent.futures.ThreadPoolExecutor(max_workers=1)

        self._connection = None
        self._channel = None
        self._error: Optional[BaseException] = None
        self._ready = threading.Event()
        self._default = Exchange(self, "")

        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        self._ready.wait(timeout=self.timeout)

        if self._error is not None or self._channel is None:
            raise BrokerConnectionError(
                f"not connected to AMQP broker at "
                f"{parameters.host}:{parameters.port}: {self._error}"
            )

        _channels.add(self)

    # --- broker contract ---

    def prefetch(self, count: int) -> None:
        count = int(count)
        if count < 1:
            raise ValueError("prefetch count must be positive")

        self._call(lambda: self._channel.basic_qos(prefetch_count=count))

        old = self.workers
        self.workers = concurrent.futures.ThreadPoolExecutor(max_workers=count)
        old.shutdown(wait=False)

    def queue(self, name: str, durable: bool = False, exclusive: bool = False) -> Queue:
        result = self._call(
            lambda: self._channel.queue_declare(
                queue=name, durable=durable, exclusive=exclusive
            )
        )
        return Queue(self, result.method.queue)

    def direct(self, name: str) -> Exchange:
        return self._exchange(name, "direct")

    def topic(self, name: str) -> Exchange:
        return self._exchange(name, "topic")

    @property
    def default_exchange(self) -> Exchange:
        return self._default

    def acknowledge(self, delivery_tag: int) -> None:
        self._call(lambda: self._channel.basic_ack(delivery_tag=delivery_tag))

    def close(self) -> None:
        if self.shutdown:
            return

        # The connection thread notices the flag within one polling interval
        # and closes the connection itself.

        self.shutdown = True
        if threading.current_thread() is not self._thread:
            self._thread.join(timeout=self.timeout)

        self.workers.shutdown(wait=False)

    @property
    def is_open(self) -> bool:
        return self._connection is not None and self._connection.is_open

    # --- internal ---

    def _exchange(self, name: str, exchange_type: str) -> Exchange:
        self._call(
            lambda: self._channel.exchange_declare(
                exchange=name, exchange_type=exchange_type
            )
        )
        return Exchange(self, name)

    def _basic_cancel(self, consumer_tag: str) -> None:
        if not self.is_open:
            return
        self._call(lambda: self._channel.basic_cancel(consumer_tag))

    def _call(self, method):
        """ Run *method* on the connection thread and return its result,
            re-raising whatever it raised.
        """

        if threading.current_thread() is self._thread:
            return method()

        if not self.is_open:
            raise BrokerConnectionError("AMQP connection is closed")

        future = concurrent.futures.Future()

        def invoke():
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = method()
            except Exception as e:
                future.set_exception(e)
            else:
                future.set_result(result)

        self._connection.add_callback_threadsafe(invoke)

        try:
            return future.result(timeout=self.timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise BrokerConnectionError(
                f"AMQP connection thread did not respond in {self.timeout} sec"
            )

    def _dispatch(self, consumer: Consumer, method, properties, body: bytes) -> None:
        """ Called on the connection thread for every delivery; translate
            the pika structures and hand the work to the thread pool.
        """

        info = DeliveryInfo(
            delivery_tag=method.delivery_tag,
            routing_key=method.routing_key,
            exchange=method.exchange,
            consumer_tag=method.consumer_tag,
            consumer=consumer,
            redelivered=bool(method.redelivered),
        )
        props = Properties(
            correlation_id=properties.correlation_id,
            reply_to=properties.reply_to,
            content_type=properties.content_type,
            headers=dict(properties.headers or {}),
        )

        self.workers.submit(self._deliver, consumer, info, props, body)

    def _deliver(self, consumer: Consumer, info, props, body: bytes) -> None:
        if consumer.cancelled:
            return

        try:
            consumer.callback(info, props, body)
        except Exception:
            log.exception("unhandled error in consumer %s", consumer.tag)

    def _run(self) -> None:
        try:
            self._connection = pika.BlockingConnection(self.parameters)
            self._channel = self._connection.channel()
        except pika.exceptions.AMQPError as e:
            self._error = e
            self._ready.set()
            return

        self._ready.set()

        try:
            while not self.shutdown and self._connection.is_open:
                self._connection.process_data_events(time_limit=1)
        except pika.exceptions.AMQPError:
            if not self.shutdown:
                log.exception("AMQP connection lost")
            return

        if self._connection.is_open:
            try:
                self._connection.close()
            except pika.exceptions.AMQPError:
                log.debug("error closing AMQP connection", exc_info=True)


class Connection(base.Connection):
    """ Hands out :class:`Channel` instances, each with its own socket and
        connection thread, all sharing the same connection *parameters*.
    """

    def __init__(self, parameters: Optional[pika.ConnectionParameters] = None):
        if parameters is None:
            parameters = config.parameters()

        self.parameters = parameters
        self.channels = []

    def create_channel(self) -> Channel:
        channel = Channel(self.parameters)
        self.channels.append(channel)
        return channel

    def close(self) -> None:
        for channel in self.channels:
            channel.close()
        self.channels = []


def _cleanup() -> None:
    for channel in list(_channels):
        try:
            channel.close()
        except Exception:
            pass


atexit.register(_cleanup)
