"""Broker layer: the contract the dispatch core relies on, and the
RabbitMQ implementation of it."""

from .base import (
    BrokerError,
    BrokerConnectionError,
    CallTimeout,
    DeliveryInfo,
    Properties,
)


def connect(parameters=None):
    """ Return a RabbitMQ :class:`Connection`. If *parameters* is not
        supplied the broker location is taken from the environment; see
        :func:`warren.config.parameters`.
    """

    from . import rabbitmq
    return rabbitmq.Connection(parameters)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
