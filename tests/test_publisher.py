import itertools
import threading
import time
import pytest

import warren


def responder(connection, queue_name, answer, correlation=None):
    """ Consume *queue_name* and reply to every request with *answer*,
        echoing the correlation id unless *correlation* overrides it.
    """

    channel = connection.create_channel()
    queue = channel.queue(queue_name)
    requests = list()

    def reply(delivery_info, properties, payload):
        requests.append((payload, properties))
        if answer is None:
            return
        correlation_id = properties.correlation_id if correlation is None else correlation
        channel.default_exchange.publish(
            answer, routing_key=properties.reply_to, correlation_id=correlation_id)

    queue.subscribe(reply)
    return requests


def test_cast_uses_default_exchange(connection, broker):
    publisher = warren.Publisher(connection)
    publisher.cast('jobs', 'payload')

    published = broker.published[-1]
    assert published.exchange == ''
    assert published.routing_key == 'jobs'
    assert published.payload == b'payload'
    assert published.reply_to is None


def test_notify_declares_each_topic_once(connection, broker, monkeypatch):
    publisher = warren.Publisher(connection)
    declared = list()

    original = publisher.channel.topic

    def topic(name):
        declared.append(name)
        return original(name)

    monkeypatch.setattr(publisher.channel, 'topic', topic)

    assert publisher.notify('events', 'user.created', 'a') is None
    publisher.notify('events', 'user.deleted', 'b')
    publisher.notify('metrics', 'cpu', 'c')

    assert declared == ['events', 'metrics']
    assert broker.exchanges == {'events': 'topic', 'metrics': 'topic'}
    assert [(p.exchange, p.routing_key) for p in broker.published] == [
        ('events', 'user.created'),
        ('events', 'user.deleted'),
        ('metrics', 'cpu'),
    ]


def test_reply_queue_is_exclusive(connection, broker):
    publisher = warren.Publisher(connection)
    state = broker.queues[publisher.reply_queue]
    assert state.exclusive


def test_call_returns_reply(connection, ids):
    requests = responder(connection, 'svc', b'pong')
    publisher = warren.Publisher(connection, id_generator=ids)

    assert publisher.call('svc', 'ping', timeout=1) == b'pong'

    payload, properties = requests[0]
    assert payload == b'ping'
    assert properties.correlation_id == 'id-1'
    assert properties.reply_to == publisher.reply_queue

    # The reply consumer, tagged with the second id, is gone.
    assert publisher.channel.consumers == {}
    assert publisher.channel.cancelled == ['id-2']


def test_call_ignores_other_correlation_ids(connection, broker, ids):
    responder(connection, 'svc', None)
    publisher = warren.Publisher(connection, id_generator=ids)
    exchange = publisher.channel.default_exchange

    # A stale reply is waiting in the reply queue before the call begins.
    exchange.publish(b'stale', routing_key=publisher.reply_queue, correlation_id='old')

    def answer():
        time.sleep(0.05)
        exchange.publish(b'fresh', routing_key=publisher.reply_queue, correlation_id='id-1')

    thread = threading.Thread(target=answer)
    thread.start()

    assert publisher.call('svc', 'ping', timeout=2) == b'fresh'
    thread.join()


def test_call_times_out(connection, broker, ids):
    requests = responder(connection, 'svc', None)
    publisher = warren.Publisher(connection, id_generator=ids)

    begin = time.time()

    with pytest.raises(warren.CallTimeout):
        publisher.call('svc', 'ping', timeout=0.2)

    elapsed = time.time() - begin

    assert len(requests) == 1
    assert elapsed >= 0.2
    assert elapsed < 2

    assert publisher.channel.cancelled == ['id-2']
    assert publisher.channel.consumers == {}
    assert broker.queues[publisher.reply_queue].consumers == []

    # A late reply finds no consumer.
    exchange = publisher.channel.default_exchange
    exchange.publish(b'late', routing_key=publisher.reply_queue, correlation_id='id-1')
    assert broker.queues[publisher.reply_queue].pending[-1].payload == b'late'


def test_call_timeout_is_a_timeout_error(connection):
    responder(connection, 'svc', None)
    publisher = warren.Publisher(connection)

    with pytest.raises(TimeoutError):
        publisher.call('svc', 'ping', timeout=0.01)


def test_back_to_back_calls_with_slow_cancel(connection, monkeypatch):
    """ The reply consumer of one call must be gone from the reply queue
        before that call returns; otherwise the next call's reply can land
        on the stale consumer and be thrown away.
    """

    channel = connection.create_channel()
    queue = channel.queue('svc')
    count = itertools.count(1)

    def reply_later(delivery_info, properties, payload):
        body = b'pong-%d' % (next(count))

        def send():
            time.sleep(0.02)
            channel.default_exchange.publish(
                body, routing_key=properties.reply_to,
                correlation_id=properties.correlation_id)

        threading.Thread(target=send).start()

    queue.subscribe(reply_later)

    publisher = warren.Publisher(connection)
    basic_cancel = publisher.channel._basic_cancel

    def slow_cancel(consumer_tag):
        time.sleep(0.1)
        basic_cancel(consumer_tag)

    monkeypatch.setattr(publisher.channel, '_basic_cancel', slow_cancel)

    assert publisher.call('svc', 'one', timeout=0.5) == b'pong-1'
    assert publisher.call('svc', 'two', timeout=0.5) == b'pong-2'


def test_calls_use_fresh_ids(connection, ids):
    requests = responder(connection, 'svc', b'pong')
    publisher = warren.Publisher(connection, id_generator=ids)

    publisher.call('svc', 'one', timeout=1)
    publisher.call('svc', 'two', timeout=1)

    assert [p.correlation_id for _, p in requests] == ['id-1', 'id-3']


def test_cancel_is_idempotent(connection):
    publisher = warren.Publisher(connection)
    channel = publisher.channel
    consumer = channel.queue('q').subscribe(lambda *args: None, consumer_tag='tag')

    assert consumer.cancel() is True
    assert consumer.cancel() is False
    assert channel.cancel('tag') is False
    assert channel.cancel('unknown') is False
    assert channel.cancelled == ['tag']


def test_json_publisher_encodes(connection, broker):
    publisher = warren.JsonPublisher(connection)
    publisher.cast('jobs', {'id': 7})
    publisher.notify('events', 'job.done', [1, 2])

    assert warren.json.loads(broker.published[0].payload) == {'id': 7}
    assert warren.json.loads(broker.published[1].payload) == [1, 2]


def test_json_call_returns_result(connection):
    requests = responder(connection, 'svc', b'{"result": 42}')
    publisher = warren.JsonPublisher(connection)

    assert publisher.call('svc', {'question': 'everything'}, timeout=1) == 42
    assert warren.json.loads(requests[0][0]) == {'question': 'everything'}


def test_json_call_invalid_reply(connection):
    responder(connection, 'svc', b'this is not json')
    publisher = warren.JsonPublisher(connection)

    with pytest.raises(warren.json.DecodeError):
        publisher.call('svc', 1, timeout=1)


def test_json_call_missing_result(connection):
    responder(connection, 'svc', b'{"error": "nope"}')
    publisher = warren.JsonPublisher(connection)

    with pytest.raises(KeyError):
        publisher.call('svc', 1, timeout=1)


# vim: set expandtab tabstop=8 softtabstop=4 shiftwidth=4 autoindent:
