"""Tests for the Redis-backed broker adapter."""

import json
import threading
import time
from unittest.mock import patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from message_hub.infra.broker import (
    ORIGIN_QUEUE_HEADER,
    BrokerAdapter,
    ConnectionState,
    retry_delay_ms,
    topic_matches,
)
from message_hub.infra.errors import BrokerConnectionError, PublishError, TopologyError
from message_hub.models.queue import (
    Binding,
    Exchange,
    ExchangeKind,
    ExchangeNames,
    HandlerResult,
    Queue,
    QueueMessage,
    QueueNames,
    default_topology,
)
from tests.fakes import new_redis, outage


WORK_QUEUE = QueueNames.MESSAGE_PROCESSING


def _message(max_attempts=3, **data):
    return QueueMessage.create("message.process", data or {"messageId": "m1"}, max_attempts=max_attempts)


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _drive_until_settled(broker, consumer, clock, max_rounds=20):
    """Deliver, then advance time and relay retries until the work queue is idle."""
    results = []
    for _ in range(max_rounds):
        result = consumer.poll_once()
        if result is not None:
            results.append(result)
            continue
        info = broker.inspect(broker.retry_queue)
        if info.delayed_count == 0 and info.message_count == 0:
            break
        clock.advance(30)
        broker.run_retry_relay_once()
    return results


class TestRetryDelay:
    """Test the backoff schedule."""

    def test_exponential_with_cap(self):
        assert [retry_delay_ms(n) for n in range(1, 7)] == [2000, 4000, 8000, 16000, 30000, 30000]


class TestTopicMatching:
    """Test AMQP topic wildcard semantics."""

    @pytest.mark.parametrize("pattern,key,expected", [
        ("message.received", "message.received", True),
        ("message.received", "message.sent", False),
        ("webhook.*", "webhook.sent", True),
        ("webhook.*", "webhook.sent.ok", False),
        ("webhook.*", "webhook", False),
        ("webhook.#", "webhook", True),
        ("webhook.#", "webhook.a.b.c", True),
        ("#", "anything.at.all", True),
        ("*.received", "message.received", True),
        ("a.#.z", "a.z", True),
        ("a.#.z", "a.b.c.z", True),
        ("a.#.z", "a.b.c", False),
    ])
    def test_topic_matches(self, pattern, key, expected):
        assert topic_matches(pattern, key) is expected


class TestTopology:
    """Test topology declaration."""

    def test_declare_is_idempotent(self, broker, fake_redis):
        exchanges = fake_redis.hgetall("broker:exchanges")
        queues = fake_redis.hgetall("broker:queues")
        broker.declare_topology(*default_topology().as_args())
        assert fake_redis.hgetall("broker:exchanges") == exchanges
        assert fake_redis.hgetall("broker:queues") == queues
        assert len(fake_redis.smembers("broker:bindings:message.events")) == 1

    def test_default_topology_is_declared(self, broker):
        for name in QueueNames.all():
            assert broker.inspect(name).message_count == 0

    def test_queue_durability_mismatch(self, broker):
        with pytest.raises(TopologyError):
            broker.declare_topology(queues=[Queue(WORK_QUEUE, durable=False)])

    def test_exchange_kind_mismatch(self, broker):
        with pytest.raises(TopologyError):
            broker.declare_topology(exchanges=[Exchange(ExchangeNames.MESSAGE_EVENTS, ExchangeKind.DIRECT)])

    def test_binding_requires_declared_exchange(self, broker):
        with pytest.raises(TopologyError):
            broker.declare_topology(bindings=[Binding("missing.exchange", WORK_QUEUE, "x")])

    def test_retry_and_dead_letter_queues_always_declared(self, fake_redis, clock):
        adapter = BrokerAdapter("redis://fake", client_factory=lambda url: fake_redis, clock=clock, auto_reconnect=False)
        adapter.connect()
        adapter.declare_topology(queues=[Queue("custom")])
        assert adapter.inspect(QueueNames.MESSAGE_RETRY).message_count == 0
        assert adapter.inspect(QueueNames.MESSAGE_DLQ).message_count == 0


class TestPublish:
    """Test publishing and routing."""

    def test_publish_to_queue(self, broker):
        assert broker.publish(WORK_QUEUE, None, _message()) is True
        assert broker.inspect(WORK_QUEUE).message_count == 1

    def test_wire_envelope(self, broker, fake_redis):
        message = _message()
        broker.publish(WORK_QUEUE, None, message)
        frame = json.loads(fake_redis.lrange(f"broker:queue:{WORK_QUEUE}", 0, 0)[0])
        assert frame["body"]["id"] == message.id
        assert frame["body"]["type"] == "message.process"
        assert frame["body"]["attempts"] == 0
        assert frame["body"]["maxAttempts"] == 3
        assert frame["properties"]["persistent"] is True

    def test_publish_to_topic_exchange(self, broker):
        assert broker.publish(ExchangeNames.MESSAGE_EVENTS, "message.received", _message()) is True
        assert broker.inspect(WORK_QUEUE).message_count == 1

    def test_wildcard_binding(self, broker):
        assert broker.publish(ExchangeNames.WEBHOOK_EVENTS, "webhook.delivered", _message()) is True
        assert broker.inspect(QueueNames.WEBHOOK_DELIVERY).message_count == 1

    def test_direct_exchange_requires_exact_key(self, broker):
        assert broker.publish(ExchangeNames.MESSAGE_ROUTING, "route", _message()) is True
        assert broker.publish(ExchangeNames.MESSAGE_ROUTING, "route.other", _message()) is False
        assert broker.inspect(QueueNames.MESSAGE_ROUTING).message_count == 1

    def test_unroutable_returns_false(self, broker):
        assert broker.publish(ExchangeNames.WEBHOOK_EVENTS, "webhook.a.b", _message()) is False
        assert broker.inspect(QueueNames.WEBHOOK_DELIVERY).message_count == 0

    def test_unknown_destination(self, broker):
        with pytest.raises(PublishError):
            broker.publish("no.such.queue", None, _message())
        with pytest.raises(PublishError):
            broker.publish("no.such.exchange", "key", _message())

    def test_requires_connection(self, fake_redis, clock):
        adapter = BrokerAdapter("redis://fake", client_factory=lambda url: fake_redis, clock=clock, auto_reconnect=False)
        with pytest.raises(PublishError):
            adapter.publish(WORK_QUEUE, None, _message())

    def test_priority_jumps_the_line(self, broker):
        first = _message()
        urgent = _message()
        broker.publish(WORK_QUEUE, None, first)
        broker.publish(WORK_QUEUE, None, urgent, priority=5)
        assert [m.id for m in broker.peek(WORK_QUEUE)] == [urgent.id, first.id]

    def test_delayed_publish(self, broker, clock):
        broker.publish(WORK_QUEUE, None, _message(), delay_ms=1500)
        info = broker.inspect(WORK_QUEUE)
        assert (info.message_count, info.delayed_count) == (0, 1)

        clock.advance(1.0)
        assert broker.pump_delayed() == 0

        clock.advance(0.5)
        assert broker.pump_delayed() == 1
        info = broker.inspect(WORK_QUEUE)
        assert (info.message_count, info.delayed_count) == (1, 0)

    def test_competing_pumps_move_each_frame_once(self, broker, fake_redis, clock):
        other = BrokerAdapter("redis://fake", client_factory=lambda url: fake_redis, clock=clock, auto_reconnect=False)
        other.connect()
        other.declare_topology(*default_topology().as_args())
        broker.publish(WORK_QUEUE, None, _message(), delay_ms=1000)
        clock.advance(1)

        assert broker.pump_delayed() == 1
        assert other.pump_delayed() == 0
        assert fake_redis.llen(f"broker:queue:{WORK_QUEUE}") == 1
        assert fake_redis.zcard(f"broker:delayed:{WORK_QUEUE}") == 0

    def test_failed_delayed_move_keeps_the_frame(self, broker, fake_redis, clock):
        broker.publish(WORK_QUEUE, None, _message(), delay_ms=1000)
        clock.advance(1)

        lost = RedisConnectionError("Connection reset by peer")
        with patch.object(fake_redis, "evalsha", side_effect=lost), pytest.raises(BrokerConnectionError):
            broker.pump_delayed()
        assert fake_redis.zcard(f"broker:delayed:{WORK_QUEUE}") == 1
        assert fake_redis.llen(f"broker:queue:{WORK_QUEUE}") == 0

        broker.connect()
        assert broker.pump_delayed() == 1
        assert fake_redis.zcard(f"broker:delayed:{WORK_QUEUE}") == 0
        assert fake_redis.llen(f"broker:queue:{WORK_QUEUE}") == 1

    def test_connection_loss_raises_publish_error(self, broker, fake_redis):
        with outage(fake_redis), pytest.raises(PublishError):
            broker.publish(WORK_QUEUE, None, _message())
        assert broker.state == ConnectionState.DISCONNECTED


class TestConsume:
    """Test delivery, acknowledgement, retry and dead-lettering."""

    def test_ack_removes_message(self, broker, fake_redis):
        broker.publish(WORK_QUEUE, None, _message())
        received = []
        tag = broker.consume(WORK_QUEUE, lambda m, d: received.append(m) or HandlerResult.ACK, start=False)
        consumer = broker.get_consumer(tag)

        assert consumer.poll_once() == HandlerResult.ACK
        assert len(received) == 1
        assert broker.inspect(WORK_QUEUE).message_count == 0
        assert fake_redis.llen(consumer.unacked_key) == 0

    def test_fifo_order(self, broker):
        ids = []
        for _ in range(3):
            message = _message()
            ids.append(message.id)
            broker.publish(WORK_QUEUE, None, message)
        seen = []
        tag = broker.consume(WORK_QUEUE, lambda m, d: seen.append(m.id) or True, start=False)
        consumer = broker.get_consumer(tag)
        while consumer.poll_once() is not None:
            pass
        assert seen == ids

    def test_failure_goes_to_retry_queue_with_backoff(self, broker):
        message = _message()
        broker.publish(WORK_QUEUE, None, message)
        tag = broker.consume(WORK_QUEUE, lambda m, d: HandlerResult.RETRY, start=False)

        assert broker.get_consumer(tag).poll_once() == HandlerResult.RETRY

        # Not redelivered in place
        assert broker.inspect(WORK_QUEUE).message_count == 0
        retry = broker.inspect(QueueNames.MESSAGE_RETRY)
        assert retry.delayed_count == 1

    def test_redelivery_waits_for_backoff(self, broker, clock):
        broker.publish(WORK_QUEUE, None, _message())
        tag = broker.consume(WORK_QUEUE, lambda m, d: HandlerResult.RETRY, start=False)
        broker.get_consumer(tag).poll_once()

        clock.advance(1.5)
        assert broker.run_retry_relay_once() == 0
        assert broker.inspect(WORK_QUEUE).message_count == 0

        clock.advance(0.5)
        assert broker.run_retry_relay_once() == 1
        redelivered = broker.peek(WORK_QUEUE)
        assert len(redelivered) == 1
        assert redelivered[0].attempts == 1

    def test_strictly_increasing_delays_then_dlq(self, broker, fake_redis, clock):
        message = _message(max_attempts=6)
        broker.publish(WORK_QUEUE, None, message)
        tag = broker.consume(WORK_QUEUE, lambda m, d: HandlerResult.RETRY, start=False)
        consumer = broker.get_consumer(tag)

        delays = []
        for _ in range(5):
            consumer.poll_once()
            raw = fake_redis.zrangebyscore(f"broker:delayed:{QueueNames.MESSAGE_RETRY}", "-inf", "+inf")
            delays.append(json.loads(raw[0])["body"]["delay"])
            clock.advance(30)
            assert broker.run_retry_relay_once() == 1

        assert delays == [2000, 4000, 8000, 16000, 30000]

        # Sixth failure exhausts the attempts
        consumer.poll_once()
        dead = broker.peek(QueueNames.MESSAGE_DLQ)
        assert len(dead) == 1
        assert dead[0].id == message.id
        assert dead[0].attempts == 6
        assert dead[0].error == "Handler requested retry"
        assert dead[0].failed_at is not None
        assert broker.inspect(WORK_QUEUE).message_count == 0
        assert broker.inspect(QueueNames.MESSAGE_RETRY).delayed_count == 0

    def test_dead_letter_carries_origin_queue(self, broker, fake_redis):
        broker.publish(WORK_QUEUE, None, _message(max_attempts=1))
        tag = broker.consume(WORK_QUEUE, lambda m, d: HandlerResult.RETRY, start=False)
        broker.get_consumer(tag).poll_once()

        frame = json.loads(fake_redis.lrange(f"broker:queue:{QueueNames.MESSAGE_DLQ}", 0, -1)[0])
        assert frame["headers"][ORIGIN_QUEUE_HEADER] == WORK_QUEUE

    def test_fail_fail_succeed_has_no_dlq_entry(self, broker, clock):
        """A handler that throws twice then succeeds is acked on the third delivery."""
        calls = []

        def handler(message, delivery):
            calls.append(message.attempts)
            if len(calls) < 3:
                raise RuntimeError("downstream unavailable")
            return HandlerResult.ACK

        broker.publish(WORK_QUEUE, None, _message(max_attempts=3))
        tag = broker.consume(WORK_QUEUE, handler, start=False)

        results = _drive_until_settled(broker, broker.get_consumer(tag), clock)

        assert results == [HandlerResult.RETRY, HandlerResult.RETRY, HandlerResult.ACK]
        assert calls == [0, 1, 2]
        assert broker.inspect(QueueNames.MESSAGE_DLQ).message_count == 0
        assert broker.inspect(WORK_QUEUE).message_count == 0

    def test_exception_text_is_recorded(self, broker, clock):
        def handler(message, delivery):
            raise ValueError("bad payload")

        broker.publish(WORK_QUEUE, None, _message(max_attempts=1))
        tag = broker.consume(WORK_QUEUE, handler, start=False)
        broker.get_consumer(tag).poll_once()

        assert broker.peek(QueueNames.MESSAGE_DLQ)[0].error == "bad payload"

    def test_reject_dead_letters_immediately(self, broker):
        broker.publish(WORK_QUEUE, None, _message(max_attempts=5))
        tag = broker.consume(WORK_QUEUE, lambda m, d: HandlerResult.REJECT, start=False)

        assert broker.get_consumer(tag).poll_once() == HandlerResult.REJECT
        dead = broker.peek(QueueNames.MESSAGE_DLQ)
        assert len(dead) == 1
        assert dead[0].attempts == 0
        assert broker.inspect(QueueNames.MESSAGE_RETRY).delayed_count == 0

    def test_non_result_return_is_retried(self, broker):
        broker.publish(WORK_QUEUE, None, _message())
        tag = broker.consume(WORK_QUEUE, lambda m, d: None, start=False)
        assert broker.get_consumer(tag).poll_once() == HandlerResult.RETRY

    def test_malformed_body_is_dead_lettered(self, broker, fake_redis):
        fake_redis.lpush(f"broker:queue:{WORK_QUEUE}", "not json")
        handler_calls = []
        tag = broker.consume(WORK_QUEUE, lambda m, d: handler_calls.append(m), start=False)

        assert broker.get_consumer(tag).poll_once() == HandlerResult.REJECT
        assert handler_calls == []
        assert broker.inspect(QueueNames.MESSAGE_DLQ).message_count == 1
        assert broker.inspect(WORK_QUEUE).message_count == 0

    def test_consume_undeclared_queue(self, broker):
        with pytest.raises(TopologyError):
            broker.consume("no.such.queue", lambda m, d: True, start=False)


class TestPrefetch:
    """Test the in-flight bound of background consumers."""

    def test_in_flight_never_exceeds_prefetch(self, broker, fake_redis):
        release = threading.Event()
        lock = threading.Lock()
        state = {"in_flight": 0, "max_in_flight": 0, "done": 0}

        def handler(message, delivery):
            with lock:
                state["in_flight"] += 1
                state["max_in_flight"] = max(state["max_in_flight"], state["in_flight"])
            release.wait(5)
            with lock:
                state["in_flight"] -= 1
                state["done"] += 1
            return HandlerResult.ACK

        for _ in range(5):
            broker.publish(WORK_QUEUE, None, _message())

        tag = broker.consume(WORK_QUEUE, handler, prefetch=2)
        consumer = broker.get_consumer(tag)
        try:
            assert _wait_for(lambda: state["in_flight"] == 2)
            time.sleep(0.2)
            assert fake_redis.llen(consumer.unacked_key) == 2
            assert broker.inspect(WORK_QUEUE).message_count == 3
            assert broker.inspect(WORK_QUEUE).consumer_count == 1

            release.set()
            assert _wait_for(lambda: state["done"] == 5)
        finally:
            release.set()
            broker.cancel(tag)

        assert state["max_in_flight"] == 2
        assert broker.inspect(WORK_QUEUE).message_count == 0
        assert broker.inspect(WORK_QUEUE).consumer_count == 0


class TestRecovery:
    """Test requeueing of deliveries held by consumers."""

    def test_cancel_requeues_unhandled_deliveries(self, broker, fake_redis):
        broker.publish(WORK_QUEUE, None, _message())
        tag = broker.consume(WORK_QUEUE, lambda m, d: True, start=False)
        consumer = broker.get_consumer(tag)
        consumer.fetch()
        assert broker.inspect(WORK_QUEUE).message_count == 0

        broker.cancel(tag)
        assert broker.inspect(WORK_QUEUE).message_count == 1
        assert broker.get_consumer(tag) is None

    def test_consume_recovers_deliveries_of_dead_consumers(self, broker, fake_redis):
        message = _message()
        broker.publish(WORK_QUEUE, None, message)
        # A consumer in another process took it and died without a heartbeat
        fake_redis.sadd(f"broker:consumers:{WORK_QUEUE}", "dead-tag")
        fake_redis.lmove(f"broker:queue:{WORK_QUEUE}", f"broker:unacked:{WORK_QUEUE}:dead-tag", src="RIGHT", dest="LEFT")

        broker.consume(WORK_QUEUE, lambda m, d: True, start=False)

        assert [m.id for m in broker.peek(WORK_QUEUE)] == [message.id]
        assert "dead-tag" not in fake_redis.smembers(f"broker:consumers:{WORK_QUEUE}")

    def test_live_consumers_are_not_recovered(self, broker, fake_redis):
        broker.publish(WORK_QUEUE, None, _message())
        fake_redis.sadd(f"broker:consumers:{WORK_QUEUE}", "live-tag")
        fake_redis.set("broker:heartbeat:live-tag", "1", ex=30)
        fake_redis.lmove(f"broker:queue:{WORK_QUEUE}", f"broker:unacked:{WORK_QUEUE}:live-tag", src="RIGHT", dest="LEFT")

        assert broker.recover_unacked(WORK_QUEUE) == 0
        assert broker.inspect(WORK_QUEUE).message_count == 0


class TestOperations:
    """Test purge, inspect and health."""

    def test_purge_counts_ready_and_delayed(self, broker):
        broker.publish(WORK_QUEUE, None, _message())
        broker.publish(WORK_QUEUE, None, _message())
        broker.publish(WORK_QUEUE, None, _message(), delay_ms=5000)

        assert broker.purge(WORK_QUEUE) == 3
        info = broker.inspect(WORK_QUEUE)
        assert (info.message_count, info.delayed_count) == (0, 0)

    def test_inspect_unknown_queue(self, broker):
        with pytest.raises(TopologyError):
            broker.inspect("no.such.queue")

    def test_health_check(self, broker, fake_redis):
        assert broker.health_check() is True
        with outage(fake_redis):
            assert broker.health_check() is False
        assert broker.state == ConnectionState.DISCONNECTED

    def test_close(self, broker, fake_redis):
        with patch.object(fake_redis, "close", wraps=fake_redis.close) as close:
            broker.close()
        assert broker.state == ConnectionState.DISCONNECTED
        close.assert_called_once()
        assert broker.health_check() is False


class TestReconnect:
    """Test the reconnect loop."""

    def _adapter(self, factory, sleeps, max_attempts=3):
        return BrokerAdapter(
            "redis://fake",
            client_factory=factory,
            reconnect_delay_ms=100,
            max_reconnect_attempts=max_attempts,
            sleep=sleeps.append,
            auto_reconnect=False,
        )

    def test_connect_failure(self):
        down = new_redis()
        adapter = self._adapter(lambda url: down, [])
        with outage(down), pytest.raises(BrokerConnectionError):
            adapter.connect()
        assert adapter.state == ConnectionState.DISCONNECTED

    def test_linear_backoff_then_give_up(self):
        sleeps = []
        client = new_redis()
        adapter = self._adapter(lambda url: client, sleeps)
        adapter.connect()
        adapter.declare_topology(*default_topology().as_args())

        with outage(client):
            assert adapter.health_check() is False

            assert adapter.reconnect() is False
            assert sleeps == [0.1, 0.2, 0.3]
            assert adapter.health_check() is False
            with pytest.raises(PublishError):
                adapter.publish(WORK_QUEUE, None, _message())

    def test_reconnect_redeclares_topology(self):
        """A restarted broker that lost its topology gets it back before use."""
        sleeps = []
        original = new_redis()
        restarted = new_redis()
        current = {"client": original}

        def sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 2:
                current["client"] = restarted

        adapter = self._adapter(lambda url: current["client"], [])
        adapter._sleep = sleep
        adapter.connect()
        adapter.declare_topology(*default_topology().as_args())

        with outage(original):
            adapter.health_check()
            assert adapter.reconnect() is True

        assert sleeps == [0.1, 0.2]
        assert adapter.state == ConnectionState.CONNECTED
        assert adapter.reconnect_attempts == 0
        assert restarted.hget("broker:queues", WORK_QUEUE) is not None
        assert restarted.smembers("broker:bindings:message.events")
        assert adapter.publish(ExchangeNames.MESSAGE_EVENTS, "message.received", _message()) is True

    def test_manual_connect_after_giving_up_restores_the_retry_budget(self):
        sleeps = []
        client = new_redis()
        adapter = self._adapter(lambda url: client, sleeps)
        adapter.connect()
        adapter.declare_topology(*default_topology().as_args())

        with outage(client):
            adapter.health_check()
            assert adapter.reconnect() is False
        assert adapter.reconnect_attempts == 3

        adapter.connect()
        assert adapter.reconnect_attempts == 0

        down = outage(client)
        down.start()
        assert adapter.health_check() is False

        def sleep(seconds):
            sleeps.append(seconds)
            down.stop()

        sleeps.clear()
        adapter._sleep = sleep
        assert adapter.reconnect() is True
        assert sleeps == [0.1]
        assert adapter.publish(WORK_QUEUE, None, _message()) is True

    def test_deliveries_stay_paused_until_topology_is_redeclared(self):
        client = new_redis()
        adapter = self._adapter(lambda url: client, [])
        adapter.connect()
        adapter.declare_topology(*default_topology().as_args())
        with outage(client):
            adapter.health_check()
        assert adapter.accepting_deliveries is False

        seen = []
        def redeclare():
            seen.append((adapter.is_connected, adapter.accepting_deliveries))

        with patch.object(adapter, "_redeclare_topology", side_effect=redeclare):
            assert adapter.reconnect() is True

        assert seen == [(True, False)]
        assert adapter.accepting_deliveries is True
