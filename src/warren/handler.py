""" Message handlers and the registry that collects them.

    A :class:`Handler` ties a :class:`Route` to a terminal callback and an
    ordered list of filters. The :class:`Registry` is built once, at process
    startup, and handed to a :class:`warren.worker.Worker`; the worker takes a
    snapshot of the registered handlers when it starts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, NamedTuple, Optional, Sequence, Tuple

from . import filters as _filters


@dataclass(frozen=True)
class Route:
    """ Where a handler listens: the queue it consumes from, and the
        exchange + routing key binding that feeds that queue. An empty
        *exchange_name* means the default exchange, which routes by queue
        name and needs no binding. A queue name is always required.
    """

    exchange_name: str
    routing_key: Optional[str]
    queue_name: str

    def __post_init__(self):
        if not self.queue_name:
            raise ValueError("a route requires a queue name")


def route(queue_name: str, exchange: str = "", routing_key: Optional[str] = None) -> Route:
    """ Build a :class:`Route`. Without an *exchange* the routing key is the
        queue name, the way the default exchange routes.
    """

    if exchange == "" and routing_key is None:
        routing_key = queue_name

    return Route(exchange, routing_key, queue_name)


@dataclass
class Message:
    """ One delivery in flight. The *payload* may be replaced by filters as
        the message travels down the chain; *context* is scratch space for
        filters to pass resources downstream. Each delivery gets its own
        instance.
    """

    delivery_info: Any
    properties: Any
    payload: Any
    route: Route
    context: Dict[str, Any] = field(default_factory=dict)


class Env(NamedTuple):
    """What every filter and handler of a worker shares."""

    channel: Any
    logger: Any


class _DirectExchange:

    def declare(self, channel, name):
        return channel.direct(name)

    def __repr__(self):
        return "DIRECT"


class _TopicExchange:

    def declare(self, channel, name):
        return channel.topic(name)

    def __repr__(self):
        return "TOPIC"


DIRECT = _DirectExchange()
TOPIC = _TopicExchange()


class Handler:
    """ Binds *route* to *callback*, wrapped by *filters* in order. The
        *exchange* strategy, :data:`DIRECT` or :data:`TOPIC`, decides what
        kind of exchange the queue is bound to.
    """

    def __init__(
        self,
        route: Route,
        callback: Callable,
        filters: Sequence = (),
        exchange=DIRECT,
    ):
        self.route = route
        self.callback = callback
        self.filters: Tuple = tuple(filters)
        self.exchange_kind = exchange
        self._chain = _filters.compose(self.filters, callback)

    def __repr__(self):
        return "%s(%r, %r)" % (self.__class__.__name__, self.route, self.exchange_kind)

    def exchange(self, env):
        return self.exchange_kind.declare(env.channel, self.route.exchange_name)

    def queue(self, env):
        """ Declare the durable queue for this handler, and bind it if the
            route names an exchange.
        """

        queue = env.channel.queue(self.route.queue_name, durable=True)

        if self.route.exchange_name != "":
            queue.bind(self.exchange(env), self.route.routing_key)

        return queue

    def __call__(self, env, message):
        return self._chain(env, message)


def DirectHandler(route, callback, filters=()):
    return Handler(route, callback, filters, exchange=DIRECT)


def TopicHandler(route, callback, filters=()):
    return Handler(route, callback, filters, exchange=TOPIC)


class RpcHandler(Handler):
    """ A direct handler whose result is sent back to the caller. The reply
        is always published, even when a filter ended the chain without a
        result, so that the caller is never left waiting for its timeout.
    """

    def __call__(self, env, message):
        response = super().__call__(env, message)
        self.reply(env, message, response)
        return response

    def reply(self, env, original, response):
        properties = original.properties
        env.channel.default_exchange.publish(
            to_body(response),
            routing_key=properties.reply_to,
            correlation_id=properties.correlation_id,
        )


def to_body(value) -> bytes:
    """Turn a handler result into a message body."""

    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    return str(value).encode("utf-8")


class Registry:
    """ The set of handlers a worker serves. Register handlers directly::

            registry.handle_cast(route("jobs"), handler=run_job)

        or as a decorator::

            @registry.handle_call(route("math.add"))
            def add(env, message):
                ...

        Filters named in :meth:`default_filters` wrap every handler
        registered afterwards, outside of any handler-specific filters.
    """

    def __init__(self):
        self._handlers = []
        self._defaults: Tuple = ()

    def __len__(self):
        return len(self._handlers)

    def __iter__(self):
        return iter(self.handlers)

    @property
    def handlers(self) -> Tuple[Handler, ...]:
        return tuple(self._handlers)

    def default_filters(self, *filters) -> None:
        self._defaults = tuple(filters)

    def handle_event(self, route: Route, filters: Sequence = (), handler: Optional[Callable] = None):
        """Consume from a queue bound to a topic exchange."""
        return self._register(Handler, TOPIC, route, filters, handler)

    def handle_cast(self, route: Route, filters: Sequence = (), handler: Optional[Callable] = None):
        """Consume from a queue bound to a direct exchange."""
        return self._register(Handler, DIRECT, route, filters, handler)

    def handle_call(self, route: Route, filters: Sequence = (), handler: Optional[Callable] = None):
        """Answer remote calls arriving on a queue."""
        return self._register(RpcHandler, DIRECT, route, filters, handler)

    def _register(self, cls, exchange, route, filters, handler):

        # Duplicates are dropped, keeping the first (outermost) position.

        combined = []
        for step in self._defaults + tuple(filters):
            if step not in combined:
                combined.append(step)

        def register(callback):
            self._handlers.append(cls(route, callback, combined, exchange=exchange))
            return callback

        if handler is None:
            return register

        register(handler)
        return self._handlers[-1]
