""" Python implementation of warren: declare message handlers for a
    RabbitMQ broker, wrap them in chains of filters, and publish messages
    to them, including remote calls that wait for a correlated reply.
"""

# Utility components.

from . import json
from . import config

# The broker contract and its RabbitMQ implementation.

from . import broker
from .broker import connect, BrokerError, BrokerConnectionError, CallTimeout

# Primary public-facing interfaces.

from . import filters
from .filters import (
    call_next,
    compose,
    Filter,
    JsonFilter,
    DropFailedFilter,
    ErrorReportFilter,
    PooledResourceFilter,
    RetryFilter,
)

from .handler import (
    Route,
    route,
    Message,
    Env,
    Handler,
    DirectHandler,
    TopicHandler,
    RpcHandler,
    Registry,
    DIRECT,
    TOPIC,
)

from .worker import Worker
from .publisher import Publisher, JsonPublisher

# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
