import logging
import threading

from .handler import Env, Message


class Worker:
    """ The :class:`Worker` consumes messages for every handler in a
        :class:`warren.handler.Registry`. All of its handlers share a single
        broker channel; the *concurrency* argument sets the prefetch limit of
        that channel, which is the most deliveries that will be in progress,
        and unacknowledged, at any one time.

        A delivery is acknowledged once its handler chain returns. A chain
        that raises is logged at CRITICAL level and the delivery is left
        unacknowledged, for the broker to redeliver according to its own
        policy; the worker itself keeps running.
    """

    def __init__(self, connection, registry, concurrency=1, logger=None):

        if logger is None:
            logger = logging.getLogger(__name__)

        self.registry = registry
        self.concurrency = int(concurrency)
        self.running = False
        self._handlers = ()
        self._lock = threading.Lock()

        channel = connection.create_channel()
        channel.prefetch(self.concurrency)
        self.env = Env(channel, logger)


    @property
    def handlers(self):
        """ The handlers this worker is serving; empty until :func:`start`
            is called.
        """

        return self._handlers


    def start(self):
        """ Declare and bind every handler's queue, then subscribe to each.
            Deliveries are processed in the background; this method returns
            once all subscriptions are in place. If any subscription fails
            the ones already made are cancelled, the error is raised, and
            the worker may be started again.
        """

        with self._lock:
            if self.running:
                raise RuntimeError('worker already started')

            handlers = self.registry.handlers
            consumers = list()

            try:
                for handler in handlers:
                    queue = handler.queue(self.env)
                    consumer = queue.subscribe(self._receiver(handler), ack=True, block=False)
                    consumers.append(consumer)
                    self.env.logger.debug('Consuming %s for %r', queue.name, handler)
            except Exception:
                for consumer in consumers:
                    consumer.cancel()
                raise

            self._handlers = handlers
            self.running = True


    def _receiver(self, handler):

        def receive(delivery_info, properties, payload):
            message = Message(delivery_info, properties, payload, handler.route)
            self.dispatch(handler, message)

        return receive


    def dispatch(self, handler, message):
        """ Run *handler* on *message* and acknowledge it. Errors are logged,
            never raised.
        """

        env = self.env

        try:
            handler(env, message)
            env.channel.acknowledge(message.delivery_info.delivery_tag)
        except Exception as e:
            env.logger.critical('Worker blocked: %s, %s:',
                                e.__class__.__name__, e, exc_info=True)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
