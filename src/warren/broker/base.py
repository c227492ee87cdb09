"""Broker interface.

This is the (small) contract that broker implementations should follow.
Handlers, workers and publishers only ever talk to these classes, so the
dispatch core stays independent of the client library underneath.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional


# Broker agnostic exceptions

class BrokerError(Exception):
    """Base class for all broker-layer errors."""


class BrokerConnectionError(BrokerError):
    """The broker connection could not be established or has gone away."""


class CallTimeout(BrokerError, TimeoutError):
    """A remote call did not receive a correlated reply in time."""


@dataclass(frozen=True)
class Properties:
    """Message properties relevant to dispatch and correlation."""

    correlation_id: Optional[str] = None
    reply_to: Optional[str] = None
    content_type: Optional[str] = None
    headers: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryInfo:
    """Delivery metadata handed to every subscriber callback."""

    delivery_tag: int
    routing_key: str = ""
    exchange: str = ""
    consumer_tag: str = ""
    consumer: Optional["Consumer"] = None
    redelivered: bool = False


Callback = Callable[[DeliveryInfo, Properties, bytes], None]


class Consumer:
    """ One active subscription on a :class:`Queue`. Cancelling is safe to
        repeat, and safe to race: only the first call reaches the broker.
    """

    def __init__(self, channel: "Channel", tag: str, callback: Callback):

        self.channel = channel
        self.tag = tag
        self.callback = callback
        self._lock = threading.Lock()
        self._cancelled = threading.Event()


    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


    def cancel(self) -> bool:
        """ Stop this consumer. Returns True if this call did the cancelling,
            False if the consumer was already cancelled.
        """

        with self._lock:
            if self._cancelled.is_set():
                return False
            self._cancelled.set()

        self.channel._basic_cancel(self.tag)
        self.channel._forget(self.tag)
        return True


    def wait(self, timeout: Optional[float] = None) -> bool:
        """ Block until this consumer is cancelled, or *timeout* expires.
        """

        return self._cancelled.wait(timeout)


class Exchange(ABC):
    """A publish-capable exchange."""

    def __init__(self, channel: "Channel", name: str):
        self.channel = channel
        self.name = name

    @abstractmethod
    def publish(
        self,
        payload: bytes,
        routing_key: str,
        reply_to: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Publish *payload* with the given routing metadata."""


class Queue(ABC):
    """A declared queue."""

    def __init__(self, channel: "Channel", name: str):
        self.channel = channel
        self.name = name

    @abstractmethod
    def bind(self, exchange: Exchange, routing_key: Optional[str]) -> None:
        """Bind this queue to *exchange* with *routing_key*."""

    @abstractmethod
    def subscribe(
        self,
        callback: Callback,
        ack: bool = False,
        block: bool = False,
        consumer_tag: Optional[str] = None,
    ) -> Consumer:
        """ Start consuming. With *ack* the subscriber must acknowledge each
            delivery through :meth:`Channel.acknowledge`; without it
            deliveries are acknowledged on receipt. With *block* the call
            returns only once the consumer is cancelled.
        """


class Channel(ABC):
    """Minimal contract for a broker channel."""

    def __init__(self):
        self.consumers: Dict[str, Consumer] = {}
        self._consumers_lock = threading.Lock()

    @abstractmethod
    def prefetch(self, count: int) -> None:
        """Bound the number of unacknowledged deliveries on this channel."""

    @abstractmethod
    def queue(self, name: str, durable: bool = False, exclusive: bool = False) -> Queue:
        """Declare a queue; an empty *name* asks the broker to pick one."""

    @abstractmethod
    def direct(self, name: str) -> Exchange:
        """Declare a direct exchange."""

    @abstractmethod
    def topic(self, name: str) -> Exchange:
        """Declare a topic exchange."""

    @property
    @abstractmethod
    def default_exchange(self) -> Exchange:
        """The nameless exchange that routes by queue name."""

    @abstractmethod
    def acknowledge(self, delivery_tag: int) -> None:
        """Acknowledge one delivery."""

    @abstractmethod
    def close(self) -> None:
        """Tear down the channel."""

    @abstractmethod
    def _basic_cancel(self, consumer_tag: str) -> None:
        """Tell the broker to stop delivering to *consumer_tag*."""

    def cancel(self, consumer_tag: str) -> bool:
        """ Cancel the consumer registered under *consumer_tag*. Unknown
            or already cancelled tags are ignored.
        """

        with self._consumers_lock:
            consumer = self.consumers.get(consumer_tag)

        if consumer is None:
            return False

        return consumer.cancel()

    def _remember(self, consumer: Consumer) -> None:
        with self._consumers_lock:
            self.consumers[consumer.tag] = consumer

    def _forget(self, consumer_tag: str) -> None:
        with self._consumers_lock:
            self.consumers.pop(consumer_tag, None)


class Connection(ABC):
    """A broker connection that hands out channels."""

    @abstractmethod
    def create_channel(self) -> Channel:
        """Open a new channel."""

    @abstractmethod
    def close(self) -> None:
        """Close the connection and every channel opened from it."""
