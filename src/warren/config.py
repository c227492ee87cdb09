""" Broker connection settings. The location of the broker, and the
    credentials used to reach it, are taken from the environment:

    ======================== ===========
    Variable                 Default
    ======================== ===========
    WARREN_AMQP_HOST         localhost
    WARREN_AMQP_PORT         5672
    WARREN_AMQP_VHOST        /
    WARREN_AMQP_USER         guest
    WARREN_AMQP_PASSWORD     guest
    WARREN_AMQP_HEARTBEAT    600
    ======================== ===========
"""

import os

import pika


defaults = dict()
defaults['host'] = 'localhost'
defaults['port'] = '5672'
defaults['vhost'] = '/'
defaults['user'] = 'guest'
defaults['password'] = 'guest'
defaults['heartbeat'] = '600'


def setting(name, environ=None):
    """ Return the string value of the setting *name*, one of the keys in
        :data:`defaults`. *environ* defaults to :data:`os.environ`.
    """

    if environ is None:
        environ = os.environ

    variable = 'WARREN_AMQP_' + name.upper()

    try:
        return environ[variable]
    except KeyError:
        pass

    return defaults[name]


def parameters(environ=None, **overrides):
    """ Build the :class:`pika.ConnectionParameters` for the broker. Any
        keyword arguments are passed through to pika and take precedence
        over the environment.
    """

    try:
        port = int(setting('port', environ))
        heartbeat = int(setting('heartbeat', environ))
    except ValueError as e:
        raise ValueError('invalid AMQP setting: ' + str(e))

    credentials = pika.PlainCredentials(
        setting('user', environ), setting('password', environ))

    arguments = dict()
    arguments['host'] = setting('host', environ)
    arguments['port'] = port
    arguments['virtual_host'] = setting('vhost', environ)
    arguments['credentials'] = credentials
    arguments['heartbeat'] = heartbeat
    arguments['blocked_connection_timeout'] = 300
    arguments.update(overrides)

    return pika.ConnectionParameters(**arguments)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
