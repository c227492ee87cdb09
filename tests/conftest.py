import itertools
import logging
import pytest

import fakebroker
import warren


@pytest.fixture
def broker():
    return fakebroker.Broker()


@pytest.fixture
def connection(broker):
    return fakebroker.Connection(broker)


@pytest.fixture
def logger():
    return logging.getLogger('warren.tests')


@pytest.fixture
def env(connection, logger):
    return warren.Env(connection.create_channel(), logger)


@pytest.fixture
def ids():
    """ A predictable id generator: id-1, id-2, ...
    """

    counter = itertools.count(1)
    return lambda: 'id-%d' % (next(counter))


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
