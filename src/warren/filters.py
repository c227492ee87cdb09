""" Filters are the cross-cutting steps wrapped around every message
    handler: payload parsing, error reporting, retries, and so on.

    A filter is any callable taking ``(env, message, remainder)``, where
    *remainder* is the rest of the chain; the last element of the chain is
    always the terminal handler, which takes only ``(env, message)``. To
    continue, a filter invokes :func:`call_next` with the remainder and
    typically returns its result. A filter that returns without calling
    :func:`call_next` ends the chain early; whatever it returns becomes the
    result of the chain, with None meaning "no response".
"""

import contextlib
import math
import re
import time
from abc import ABC, abstractmethod

from . import json


def call_next(env, message, remainder):
    """ Invoke the head of *remainder*. The terminal handler is the only
        element invoked without a remainder of its own.
    """

    head, *rest = remainder

    if rest:
        return head(env, message, rest)
    else:
        return head(env, message)


def compose(filters, callback):
    """ Return a single callable ``run(env, message)`` that invokes each of
        *filters* in order, outermost first, ending with *callback*.
    """

    chain = tuple(filters) + (callback,)

    def run(env, message):
        return call_next(env, message, chain)

    return run


class Filter(ABC):
    """ Base class for filters with configuration. Stateless filters can
        just as well be plain functions.
    """

    @abstractmethod
    def __call__(self, env, message, remainder):
        """ Do the filter's work around ``call_next(env, message, remainder)``.
        """

    def __repr__(self):
        return self.__class__.__name__ + '()'



class JsonFilter(Filter):
    """ Decode the message payload from JSON before continuing, and encode
        the chain's result as ``{"result": ...}``. A payload that is not
        valid JSON is logged and dropped; nothing downstream runs.
    """

    def __call__(self, env, message, remainder):

        try:
            message.payload = json.loads(message.payload)
        except json.DecodeError:
            env.logger.error('Ignoring invalid JSON: %r', message.payload)
            return None

        result = call_next(env, message, remainder)
        return json.dumps({'result': result})



class DropFailedFilter(Filter):
    """ Swallow any error raised downstream. The failure is logged and the
        chain completes with no result, which means the delivery will be
        acknowledged.
    """

    def __call__(self, env, message, remainder):

        try:
            return call_next(env, message, remainder)
        except Exception as e:
            env.logger.info('Ignoring failed payload: %r', message.payload)
            env.logger.debug('%s: %s', e.__class__.__name__, e, exc_info=True)

        return None



class ErrorReportFilter(Filter):
    """ Forward any error raised downstream to an error reporting service,
        then re-raise it. The *reporter* is any object with a
        ``notify(exception, parameters=...)`` method.
    """

    def __init__(self, reporter):
        self.reporter = reporter


    def __call__(self, env, message, remainder):

        try:
            return call_next(env, message, remainder)
        except Exception as e:
            self.reporter.notify(e, parameters=self.parameters(message))
            raise


    @staticmethod
    def parameters(message):
        """ The message metadata attached to every report.
        """

        route = message.route
        delivery_info = message.delivery_info

        parameters = dict()
        parameters['payload'] = message.payload
        parameters['queue'] = route.queue_name
        parameters['exchange_name'] = route.exchange_name
        parameters['routing_key'] = getattr(delivery_info, 'routing_key', None)
        parameters['matched_routing_key'] = route.routing_key
        return parameters



class PooledResourceFilter(Filter):
    """ Hold a pooled resource, such as a database connection, for the
        duration of the chain. *acquire* is a zero-argument callable that
        returns a context manager; the managed resource is available to
        downstream steps as ``message.context[key]``.

        Pools signal exhaustion by raising after a wait; when acquiring the
        resource raises one of *retry_on* the acquisition is attempted again,
        up to *retries* more times, before the error propagates. Errors raised
        further down the chain are never retried here. For example, with
        SQLAlchemy::

            PooledResourceFilter(engine.connect,
                                 retry_on=sqlalchemy.exc.TimeoutError)
    """

    def __init__(self, acquire, retry_on=TimeoutError, retries=5, key='connection'):
        self.acquire = acquire
        self.retry_on = retry_on
        self.retries = int(retries)
        self.key = key


    def __call__(self, env, message, remainder):

        attempt = 0

        while True:
            with contextlib.ExitStack() as stack:
                try:
                    resource = stack.enter_context(self.acquire())
                except self.retry_on:
                    attempt += 1
                    if attempt > self.retries:
                        raise
                    env.logger.warning('Pool timeout, retrying (%d/%d)',
                                       attempt, self.retries)
                    continue

                message.context[self.key] = resource
                try:
                    return call_next(env, message, remainder)
                finally:
                    message.context.pop(self.key, None)



def log_backoff(attempt):
    """ A gentle backoff: log2 of the attempt number, in seconds. The first
        retry happens immediately.
    """

    return math.log2(attempt)



class RetryFilter(Filter):
    """ Retry the rest of the chain when it raises *exception* with a message
        matching the regular expression *message_matches*. After *times*
        retries the error is re-raised; errors that do not match are
        re-raised immediately.

        If *backoff* is supplied it is called with the retry number (starting
        at 1) and the filter sleeps for the returned number of seconds before
        retrying. See :func:`log_backoff`.
    """

    def __init__(self, times, exception=Exception, message_matches='.*', backoff=None):
        self.times = int(times)
        self.exception = exception
        self.message_matches = re.compile(message_matches)
        self.backoff = backoff


    def __repr__(self):
        return 'RetryFilter(%d, exception=%r)' % (self.times, self.exception)


    def __call__(self, env, message, remainder):

        attempt = 0

        while True:
            try:
                return call_next(env, message, remainder)
            except self.exception as e:
                if attempt >= self.times:
                    raise
                if self.message_matches.search(str(e)) is None:
                    raise

                attempt += 1
                env.logger.warning('Retrying after %s: %s (%d/%d)',
                                   e.__class__.__name__, e, attempt, self.times)

                if self.backoff is not None:
                    delay = self.backoff(attempt)
                    if delay > 0:
                        time.sleep(delay)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
