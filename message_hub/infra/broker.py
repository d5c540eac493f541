"""
Broker adapter with AMQP-style topology on top of Redis.

Layout of the keys under ``key_prefix``:

- ``exchanges`` / ``queues``: hashes of declared topology (name -> JSON params)
- ``bindings:<exchange>``: set of JSON ``[queue, routing_key]`` pairs
- ``queue:<name>``: ready list; producers push left, consumers move from the right
- ``unacked:<queue>:<consumer_tag>``: deliveries held by one consumer
- ``delayed:<queue>``: sorted set of frames scored by due time (ms)
- ``consumers:<queue>`` + ``heartbeat:<consumer_tag>``: live consumer registry

Each list element is a JSON frame ``{"headers", "properties", "body"}`` where
``body`` is the QueueMessage wire envelope.
"""

import json
import logging
import os
import socket
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from message_hub.infra.errors import BrokerConnectionError, PublishError, TopologyError
from message_hub.infra.logging import log_queue_error, log_queue_job
from message_hub.infra.metrics import (
    broker_connection_state,
    broker_reconnect_attempts_total,
    queue_dead_lettered_total,
    queue_deliveries_total,
    queue_handler_duration,
    queue_messages_published_total,
)
from message_hub.models.queue import (
    Binding,
    Exchange,
    ExchangeKind,
    HandlerResult,
    Queue,
    QueueInfo,
    QueueMessage,
    QueueNames,
)

logger = logging.getLogger(__name__)

RETRY_BASE_DELAY_MS = 1000
RETRY_MAX_DELAY_MS = 30000

ORIGIN_QUEUE_HEADER = "x-origin-queue"
ERROR_HEADER = "x-error"
DELAY_HEADER = "x-delay"

HEARTBEAT_TTL_SECONDS = 30
HEARTBEAT_INTERVAL_SECONDS = 5

_CONNECTION_ERRORS = (RedisConnectionError, RedisTimeoutError)

# Only the pump that wins the ZREM pushes the frame
_MOVE_DUE_SCRIPT = """
if redis.call("ZREM", KEYS[1], ARGV[1]) == 1 then
    redis.call("LPUSH", KEYS[2], ARGV[1])
    return 1
end
return 0
"""


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


_STATE_GAUGE = {
    ConnectionState.DISCONNECTED: 0,
    ConnectionState.CONNECTING: 1,
    ConnectionState.CONNECTED: 2,
}


def retry_delay_ms(attempts: int) -> int:
    """Backoff before redelivery once a message has failed ``attempts`` times."""
    return min(RETRY_BASE_DELAY_MS * (2 ** attempts), RETRY_MAX_DELAY_MS)


def topic_matches(pattern: str, routing_key: str) -> bool:
    """AMQP topic matching: ``*`` is exactly one word, ``#`` is zero or more."""
    def _match(p: List[str], k: List[str]) -> bool:
        if not p:
            return not k
        head = p[0]
        if head == "#":
            return any(_match(p[1:], k[i:]) for i in range(len(k) + 1))
        if not k:
            return False
        if head == "*" or head == k[0]:
            return _match(p[1:], k[1:])
        return False

    return _match(pattern.split("."), routing_key.split("."))


def _default_client_factory(url: str) -> redis.Redis:
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=5,
        health_check_interval=30,
    )


@dataclass
class Delivery:
    """One message handed to a consumer."""
    queue: str
    raw: str  # exact frame held in the unacked list
    consumer_tag: str
    headers: Dict[str, Any] = field(default_factory=dict)
    message: Optional[QueueMessage] = None
    error: Optional[str] = None  # set when the frame could not be decoded

    @property
    def unacked_key_suffix(self) -> str:
        return f"{self.queue}:{self.consumer_tag}"


Handler = Callable[[QueueMessage, Delivery], Union[HandlerResult, bool]]


class Consumer:
    """
    A registered consumer on one queue.

    At most ``prefetch`` deliveries are held unacknowledged at any time; the
    background loop blocks on a semaphore before fetching the next one.
    """

    def __init__(self, broker: "BrokerAdapter", queue: str, handler: Optional[Handler], prefetch: int, consumer_tag: str):
        self.broker = broker
        self.queue = queue
        self.handler = handler
        self.prefetch = max(1, prefetch)
        self.consumer_tag = consumer_tag
        self._slots = threading.BoundedSemaphore(self.prefetch)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._last_heartbeat = 0.0

    @property
    def unacked_key(self) -> str:
        return self.broker._key("unacked", self.queue, self.consumer_tag)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def heartbeat(self, force: bool = False) -> None:
        now = time.monotonic()
        if force or now - self._last_heartbeat >= HEARTBEAT_INTERVAL_SECONDS:
            self.broker._call(
                lambda c: c.set(self.broker._key("heartbeat", self.consumer_tag), "1", ex=HEARTBEAT_TTL_SECONDS)
            )
            self._last_heartbeat = now

    def fetch(self, timeout: float = 0) -> Optional[Delivery]:
        """Move the oldest ready message into this consumer's unacked list."""
        ready_key = self.broker._key("queue", self.queue)
        if timeout > 0:
            raw = self.broker._call(
                lambda c: c.blmove(ready_key, self.unacked_key, timeout, src="RIGHT", dest="LEFT")
            )
        else:
            raw = self.broker._call(lambda c: c.lmove(ready_key, self.unacked_key, src="RIGHT", dest="LEFT"))
        if raw is None:
            return None
        return self.broker._decode(self.queue, raw, self.consumer_tag)

    def handle(self, delivery: Delivery) -> HandlerResult:
        return self.broker._dispatch(delivery, self.handler)

    def poll_once(self) -> Optional[HandlerResult]:
        """Fetch and handle a single delivery synchronously."""
        delivery = self.fetch()
        if delivery is None:
            return None
        return self.handle(delivery)

    def start(self) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=self.prefetch,
            thread_name_prefix=f"consumer-{self.queue}",
        )
        self._thread = threading.Thread(target=self._run, name=f"consumer-{self.consumer_tag}", daemon=True)
        self._thread.start()
        logger.info(
            f"Started consuming from queue: {self.queue}",
            extra={"queue": self.queue, "consumer_tag": self.consumer_tag, "prefetch": self.prefetch},
        )

    def stop(self, timeout: float = 10) -> int:
        """Stop fetching, wait for in-flight handlers and requeue anything left."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        if self._executor:
            self._executor.shutdown(wait=True)
        try:
            return self.broker._requeue_list(self.unacked_key, self.queue)
        except BrokerConnectionError:
            logger.warning(
                "Could not requeue unacked deliveries on stop",
                extra={"queue": self.queue, "consumer_tag": self.consumer_tag},
            )
            return 0

    def _run(self) -> None:
        while not self._stop.is_set():
            if not self.broker.accepting_deliveries:
                self._stop.wait(0.5)
                continue

            if not self._slots.acquire(timeout=0.5):
                continue

            try:
                self.heartbeat()
                delivery = self.fetch(timeout=1)
            except BrokerConnectionError:
                self._slots.release()
                self._stop.wait(0.5)
                continue
            except Exception as e:
                self._slots.release()
                logger.error(f"Consumer fetch error on {self.queue}: {e}", exc_info=True)
                self._stop.wait(1)
                continue

            if delivery is None:
                self._slots.release()
                continue

            self._executor.submit(self._handle_and_release, delivery)

    def _handle_and_release(self, delivery: Delivery) -> None:
        try:
            self.handle(delivery)
        except Exception as e:
            # Broker-side failure while acking or republishing; the delivery
            # stays in the unacked list and is requeued on stop/recovery.
            logger.error(
                f"Failed to settle delivery on {self.queue}: {e}",
                extra={"queue": self.queue, "consumer_tag": self.consumer_tag},
                exc_info=True,
            )
        finally:
            self._slots.release()


class BrokerAdapter:
    """
    Durable at-least-once transport with retry and dead-lettering.

    Has no knowledge of message content beyond the QueueMessage envelope.
    """

    def __init__(
        self,
        url: str,
        key_prefix: str = "broker:",
        prefetch: int = 10,
        reconnect_delay_ms: int = 5000,
        max_reconnect_attempts: int = 10,
        retry_queue: str = QueueNames.MESSAGE_RETRY,
        dead_letter_queue: str = QueueNames.MESSAGE_DLQ,
        client_factory: Callable[[str], Any] = _default_client_factory,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        auto_reconnect: bool = True,
    ):
        self.url = url
        self.key_prefix = key_prefix
        self.prefetch = prefetch
        self.reconnect_delay_ms = reconnect_delay_ms
        self.max_reconnect_attempts = max_reconnect_attempts
        self.retry_queue = retry_queue
        self.dead_letter_queue = dead_letter_queue
        self.auto_reconnect = auto_reconnect
        self._client_factory = client_factory
        self._clock = clock
        self._sleep = sleep

        self._client = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.RLock()
        self._closing = False
        self._gave_up = False
        self._reconnect_attempts = 0
        self._reconnect_thread: Optional[threading.Thread] = None
        self._resuming = False
        self._move_due = None

        # Process-local view of declared topology
        self._exchanges: Dict[str, Exchange] = {}
        self._queues: Dict[str, Queue] = {}
        self._declarations: List[Tuple[List[Exchange], List[Queue], List[Binding]]] = []

        self._consumers: Dict[str, Consumer] = {}
        self._instance_id = f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"

        self._relay: Optional[Consumer] = None
        self._relay_thread: Optional[threading.Thread] = None
        self._relay_stop = threading.Event()

        broker_connection_state.set(_STATE_GAUGE[self._state])

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def accepting_deliveries(self) -> bool:
        """Connected and not in the middle of re-declaring topology after a reconnect."""
        return self.is_connected and not self._resuming

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        broker_connection_state.set(_STATE_GAUGE[state])

    def connect(self) -> None:
        """
        Open the broker connection. Raises BrokerConnectionError on failure.

        Also re-arms automatic reconnection after an earlier give-up.
        """
        self._open()
        with self._lock:
            self._reconnect_attempts = 0
            self._gave_up = False

    def _open(self) -> None:
        with self._lock:
            if self._state == ConnectionState.CONNECTED:
                return
            self._closing = False
            self._set_state(ConnectionState.CONNECTING)
            try:
                client = self._client_factory(self.url)
                client.ping()
            except (RedisError, OSError) as e:
                self._set_state(ConnectionState.DISCONNECTED)
                raise BrokerConnectionError(f"Failed to connect to broker: {e}") from e
            self._client = client
            self._move_due = client.register_script(_MOVE_DUE_SCRIPT)
            self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to broker", extra={"prefetch": self.prefetch, "key_prefix": self.key_prefix})

    def _handle_connection_error(self, error: Exception) -> None:
        with self._lock:
            if self._closing:
                return
            if self._state == ConnectionState.CONNECTED:
                logger.error("Broker connection error", extra={"error": str(error)})
                self._set_state(ConnectionState.DISCONNECTED)
            if not self.auto_reconnect or self._gave_up:
                return
            if self._reconnect_thread and self._reconnect_thread.is_alive():
                return
            self._reconnect_thread = threading.Thread(target=self.reconnect, name="broker-reconnect", daemon=True)
            self._reconnect_thread.start()

    def reconnect(self) -> bool:
        """
        Reconnect with linear backoff (``delay * attempt``).

        Re-declares every topology declared so far before returning True.
        Gives up after ``max_reconnect_attempts`` and stays unhealthy.
        """
        while self._reconnect_attempts < self.max_reconnect_attempts:
            if self._closing:
                return False
            self._reconnect_attempts += 1
            broker_reconnect_attempts_total.inc()
            delay = self.reconnect_delay_ms * self._reconnect_attempts / 1000.0
            logger.info(
                f"Attempting to reconnect to broker "
                f"(attempt {self._reconnect_attempts}/{self.max_reconnect_attempts})",
                extra={"delay_seconds": delay},
            )
            self._sleep(delay)
            # Consumers stay paused until topology is back
            self._resuming = True
            try:
                self._open()
                self._redeclare_topology()
            except (BrokerConnectionError, TopologyError, RedisError) as e:
                with self._lock:
                    self._set_state(ConnectionState.DISCONNECTED)
                logger.error("Reconnection failed", extra={"error": str(e)})
                continue
            finally:
                self._resuming = False

            self._reconnect_attempts = 0
            logger.info("Successfully reconnected to broker")
            return True

        self._gave_up = True
        logger.error("Max reconnection attempts reached, giving up")
        return False

    def health_check(self) -> bool:
        if self._state != ConnectionState.CONNECTED or self._client is None:
            return False
        try:
            return bool(self._client.ping())
        except RedisError as e:
            self._handle_connection_error(e)
            return False

    def close(self) -> None:
        with self._lock:
            self._closing = True
        self.stop_retry_relay()
        for tag in list(self._consumers):
            self.cancel(tag)
        try:
            if self._client is not None:
                self._client.close()
        except RedisError as e:
            logger.error("Error closing broker connection", extra={"error": str(e)})
        finally:
            self._client = None
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Broker adapter closed")

    def _call(self, operation: Callable[[Any], Any]) -> Any:
        """Run a Redis operation, converting connection loss into the reconnect path."""
        client = self._client
        if self._state != ConnectionState.CONNECTED or client is None:
            raise BrokerConnectionError("Broker not connected")
        try:
            return operation(client)
        except _CONNECTION_ERRORS as e:
            self._handle_connection_error(e)
            raise BrokerConnectionError(f"Broker connection lost: {e}") from e

    def _key(self, *parts: str) -> str:
        return self.key_prefix + ":".join(parts)

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def declare_topology(
        self,
        exchanges: Iterable[Exchange] = (),
        queues: Iterable[Queue] = (),
        bindings: Iterable[Binding] = (),
    ) -> None:
        """
        Idempotently declare exchanges, queues and bindings.

        The retry and dead-letter queues are always declared. Redeclaring an
        existing name with different parameters raises TopologyError.
        """
        exchanges = list(exchanges)
        queues = list(queues)
        bindings = list(bindings)
        declared_names = {q.name for q in queues}
        for internal in (self.retry_queue, self.dead_letter_queue):
            if internal not in declared_names:
                queues.append(Queue(internal))

        with self._lock:
            for exchange in exchanges:
                self._declare_entity(
                    "exchanges", exchange.name,
                    {"kind": ExchangeKind(exchange.kind).value, "durable": exchange.durable},
                )
                self._exchanges[exchange.name] = exchange

            for queue in queues:
                self._declare_entity("queues", queue.name, {"durable": queue.durable})
                self._queues[queue.name] = queue

            for binding in bindings:
                if not self._exchange_declared(binding.exchange):
                    raise TopologyError(f"Cannot bind to undeclared exchange '{binding.exchange}'")
                if not self._queue_declared(binding.queue):
                    raise TopologyError(f"Cannot bind undeclared queue '{binding.queue}'")
                member = json.dumps([binding.queue, binding.routing_key])
                self._call(lambda c: c.sadd(self._key("bindings", binding.exchange), member))

            if (exchanges, queues, bindings) not in self._declarations:
                self._declarations.append((exchanges, queues, bindings))

        logger.info(
            "Queues and exchanges set up successfully",
            extra={"exchanges": len(exchanges), "queues": len(queues), "bindings": len(bindings)},
        )

    def _declare_entity(self, registry: str, name: str, params: Dict[str, Any]) -> None:
        key = self._key(registry)
        encoded = json.dumps(params, sort_keys=True)
        created = self._call(lambda c: c.hsetnx(key, name, encoded))
        if created:
            return
        existing = self._call(lambda c: c.hget(key, name))
        if existing is not None and json.loads(existing) != params:
            raise TopologyError(
                f"{registry[:-1].capitalize()} '{name}' already declared with incompatible parameters",
                context={"existing": json.loads(existing), "requested": params},
            )

    def _redeclare_topology(self) -> None:
        for exchanges, queues, bindings in list(self._declarations):
            self.declare_topology(exchanges, queues, bindings)

    def _queue_declared(self, name: str) -> bool:
        if name in self._queues:
            return True
        raw = self._call(lambda c: c.hget(self._key("queues"), name))
        if raw is None:
            return False
        self._queues[name] = Queue(name, durable=json.loads(raw).get("durable", True))
        return True

    def _exchange_declared(self, name: str) -> bool:
        if name in self._exchanges:
            return True
        raw = self._call(lambda c: c.hget(self._key("exchanges"), name))
        if raw is None:
            return False
        params = json.loads(raw)
        self._exchanges[name] = Exchange(name, ExchangeKind(params["kind"]), params.get("durable", True))
        return True

    def _route(self, exchange: Exchange, routing_key: str) -> List[str]:
        members = self._call(lambda c: c.smembers(self._key("bindings", exchange.name)))
        targets = set()
        for member in members:
            queue, pattern = json.loads(member)
            if exchange.kind == ExchangeKind.DIRECT:
                matched = pattern == routing_key
            else:
                matched = topic_matches(pattern, routing_key)
            if matched:
                targets.add(queue)
        return sorted(targets)

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    def publish(
        self,
        destination: str,
        routing_key: Optional[str],
        message: QueueMessage,
        priority: Optional[int] = None,
        delay_ms: Optional[int] = None,
        headers: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Publish a message.

        With ``routing_key=None`` the destination is a queue; otherwise it is
        an exchange and the routing key is matched against its bindings.

        Returns False when an exchange has no matching binding (unroutable).
        Raises PublishError when not connected or the destination is unknown.
        """
        if not self.is_connected:
            log_queue_error(message.id, message.type, PublishError("Broker not connected"), destination=destination)
            raise PublishError("Broker not connected", context={"destination": destination})

        try:
            if routing_key is None:
                if not self._queue_declared(destination):
                    raise PublishError(f"Unknown queue '{destination}'", context={"destination": destination})
                targets = [destination]
            else:
                if not self._exchange_declared(destination):
                    raise PublishError(f"Unknown exchange '{destination}'", context={"destination": destination})
                targets = self._route(self._exchanges[destination], routing_key)
                if not targets:
                    logger.warning(
                        "Unroutable message dropped",
                        extra={"exchange": destination, "routing_key": routing_key, "job_id": message.id},
                    )
                    return False

            frame_headers = dict(headers or {})
            if delay_ms:
                frame_headers[DELAY_HEADER] = delay_ms
            for queue in targets:
                self._enqueue(queue, self._frame(message, priority, frame_headers), priority, delay_ms)
        except BrokerConnectionError as e:
            log_queue_error(message.id, message.type, e, destination=destination)
            raise PublishError(f"Failed to publish message: {e}", context={"destination": destination}) from e

        for queue in targets:
            queue_messages_published_total.labels(queue=queue).inc()
        log_queue_job(
            message.id, message.type, "published",
            destination=destination, routing_key=routing_key, queues=targets, delay_ms=delay_ms,
        )
        return True

    def _frame(self, message: QueueMessage, priority: Optional[int], headers: Dict[str, Any]) -> str:
        return json.dumps({
            "headers": headers,
            "properties": {
                "messageId": message.id,
                "deliveryId": uuid.uuid4().hex,
                "type": message.type,
                "timestamp": int(self._clock() * 1000),
                "priority": priority or 0,
                "persistent": True,
            },
            "body": message.to_wire(),
        })

    def _enqueue(self, queue: str, frame: str, priority: Optional[int] = None, delay_ms: Optional[int] = None) -> None:
        if delay_ms and delay_ms > 0:
            due = int(self._clock() * 1000) + int(delay_ms)
            self._call(lambda c: c.zadd(self._key("delayed", queue), {frame: due}))
        elif priority and priority > 0:
            # Consumers take from the right, so this jumps the line
            self._call(lambda c: c.rpush(self._key("queue", queue), frame))
        else:
            self._call(lambda c: c.lpush(self._key("queue", queue), frame))

    def pump_delayed(self) -> int:
        """Move delayed frames whose due time has passed onto their queues."""
        now_ms = int(self._clock() * 1000)
        moved = 0
        for queue in list(self._queues):
            delayed_key = self._key("delayed", queue)
            due = self._call(lambda c: c.zrangebyscore(delayed_key, "-inf", now_ms))
            ready_key = self._key("queue", queue)
            for frame in due:
                if self._call(lambda c: self._move_due(keys=[delayed_key, ready_key], args=[frame], client=c)):
                    moved += 1
        return moved

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def consume(self, queue: str, handler: Handler, prefetch: Optional[int] = None, start: bool = True) -> str:
        """
        Register ``handler`` for deliveries from ``queue`` and return its consumer tag.

        The handler returns a HandlerResult (or a bool: True=ACK, False=RETRY).
        A handler that raises is treated as RETRY. With ``start=False`` no
        background thread runs and deliveries are driven by ``poll_once()``.
        """
        if not self.is_connected:
            raise BrokerConnectionError("Broker not connected")
        if not self._queue_declared(queue):
            raise TopologyError(f"Cannot consume from undeclared queue '{queue}'")

        self.recover_unacked(queue)

        consumer_tag = f"{self._instance_id}-{uuid.uuid4().hex[:8]}"
        consumer = Consumer(self, queue, handler, prefetch or self.prefetch, consumer_tag)
        self._call(lambda c: c.sadd(self._key("consumers", queue), consumer_tag))
        consumer.heartbeat(force=True)
        self._consumers[consumer_tag] = consumer
        if start:
            consumer.start()
        return consumer_tag

    def get_consumer(self, consumer_tag: str) -> Optional[Consumer]:
        return self._consumers.get(consumer_tag)

    def cancel(self, consumer_tag: str) -> None:
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is None:
            return
        requeued = consumer.stop()
        try:
            self._call(lambda c: c.srem(self._key("consumers", consumer.queue), consumer_tag))
            self._call(lambda c: c.delete(self._key("heartbeat", consumer_tag)))
        except BrokerConnectionError:
            pass
        logger.info(
            f"Stopped consuming from queue: {consumer.queue}",
            extra={"queue": consumer.queue, "consumer_tag": consumer_tag, "requeued": requeued},
        )

    def recover_unacked(self, queue: str) -> int:
        """Requeue deliveries held by consumers whose heartbeat has expired."""
        recovered = 0
        tags = self._call(lambda c: c.smembers(self._key("consumers", queue)))
        for tag in tags:
            if tag in self._consumers:
                continue
            if self._call(lambda c: c.exists(self._key("heartbeat", tag))):
                continue
            recovered += self._requeue_list(self._key("unacked", queue, tag), queue)
            self._call(lambda c: c.srem(self._key("consumers", queue), tag))
        if recovered:
            logger.warning(f"Recovered {recovered} unacked deliveries", extra={"queue": queue})
        return recovered

    def _requeue_list(self, source_key: str, queue: str) -> int:
        moved = 0
        ready_key = self._key("queue", queue)
        while self._call(lambda c: c.lmove(source_key, ready_key, src="LEFT", dest="RIGHT")) is not None:
            moved += 1
        return moved

    def _decode(self, queue: str, raw: str, consumer_tag: str) -> Delivery:
        try:
            frame = json.loads(raw)
            headers = frame.get("headers") or {}
            message = QueueMessage.from_wire(frame["body"])
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            return Delivery(queue=queue, raw=raw, consumer_tag=consumer_tag, error=f"Malformed message: {e}")
        return Delivery(queue=queue, raw=raw, consumer_tag=consumer_tag, headers=headers, message=message)

    def _dispatch(self, delivery: Delivery, handler: Optional[Handler]) -> HandlerResult:
        if delivery.message is None:
            self._dead_letter(delivery, delivery.error or "Malformed message")
            self.nack(delivery)
            return HandlerResult.REJECT

        message = delivery.message
        log_queue_job(message.id, message.type, "processing_started", queue=delivery.queue, attempts=message.attempts)

        error = None
        started = time.time()
        try:
            result = handler(message, delivery)
        except Exception as e:
            logger.error(
                "Error processing queue message",
                extra={"queue": delivery.queue, "job_id": message.id, "error": str(e)},
                exc_info=True,
            )
            result = HandlerResult.RETRY
            error = str(e)
        finally:
            queue_handler_duration.labels(queue=delivery.queue).observe(time.time() - started)

        if isinstance(result, bool):
            result = HandlerResult.ACK if result else HandlerResult.RETRY
        elif not isinstance(result, HandlerResult):
            logger.warning(
                "Handler returned a non-result value; treating as retry",
                extra={"queue": delivery.queue, "job_id": message.id, "returned": repr(result)},
            )
            error = f"Handler returned {result!r}"
            result = HandlerResult.RETRY

        if result == HandlerResult.ACK:
            self.ack(delivery)
            queue_deliveries_total.labels(queue=delivery.queue, outcome="ack").inc()
            log_queue_job(message.id, message.type, "processing_completed", queue=delivery.queue)
        elif result == HandlerResult.RETRY:
            self._handle_failure(delivery, error or "Handler requested retry")
        else:
            self._dead_letter(delivery, error or "Rejected by handler")
            self.nack(delivery)
        return result

    def _handle_failure(self, delivery: Delivery, error: str) -> None:
        """Retry protocol: backoff through the retry queue or dead-letter."""
        message = delivery.message
        failed = message.model_copy(update={"attempts": message.attempts + 1})

        if not failed.exhausted:
            delay = retry_delay_ms(failed.attempts)
            failed = failed.model_copy(update={"delay_ms": delay})
            self.publish(
                self.retry_queue, None, failed,
                delay_ms=delay,
                headers={ORIGIN_QUEUE_HEADER: delivery.queue, ERROR_HEADER: error},
            )
            queue_deliveries_total.labels(queue=delivery.queue, outcome="retry").inc()
            log_queue_job(message.id, message.type, "retrying", attempt=failed.attempts, delay=delay)
        else:
            self._dead_letter(delivery, error, failed)

        # Never requeue in place; the copy above is the only live one
        self.nack(delivery)

    def _dead_letter(self, delivery: Delivery, error: str, message: Optional[QueueMessage] = None) -> None:
        message = message or delivery.message
        headers = {ORIGIN_QUEUE_HEADER: delivery.queue, ERROR_HEADER: error}
        if message is None:
            frame = json.dumps({"headers": headers, "properties": {"timestamp": int(self._clock() * 1000)}, "body": delivery.raw})
            self._enqueue(self.dead_letter_queue, frame)
            logger.error("Malformed message moved to DLQ", extra={"queue": delivery.queue, "error": error})
        else:
            failed_at = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            dead = message.model_copy(update={"error": error, "failed_at": failed_at})
            self.publish(self.dead_letter_queue, None, dead, headers=headers)
            log_queue_job(message.id, message.type, "moved_to_dlq", attempts=dead.attempts, queue=delivery.queue)
        queue_deliveries_total.labels(queue=delivery.queue, outcome="dead_letter").inc()
        queue_dead_lettered_total.labels(queue=delivery.queue).inc()

    def ack(self, delivery: Delivery) -> None:
        self._call(lambda c: c.lrem(self._key("unacked", delivery.unacked_key_suffix), 1, delivery.raw))

    def nack(self, delivery: Delivery, requeue: bool = False) -> None:
        unacked_key = self._key("unacked", delivery.unacked_key_suffix)
        if requeue:
            def _requeue(c):
                pipe = c.pipeline(transaction=True)
                pipe.lrem(unacked_key, 1, delivery.raw)
                pipe.rpush(self._key("queue", delivery.queue), delivery.raw)
                return pipe.execute()
            self._call(_requeue)
        else:
            self._call(lambda c: c.lrem(unacked_key, 1, delivery.raw))

    # ------------------------------------------------------------------
    # Retry relay: moves due retries back to the queue they failed on
    # ------------------------------------------------------------------

    def run_retry_relay_once(self, batch_size: int = 100) -> int:
        """Pump due delayed messages, then relay the retry queue. Returns relayed count."""
        self.pump_delayed()
        if self._relay is None:
            self._relay = Consumer(self, self.retry_queue, None, 1, f"{self._instance_id}-retry-relay")
        self._relay.heartbeat()

        relayed = 0
        for _ in range(batch_size):
            delivery = self._relay.fetch()
            if delivery is None:
                break
            origin = delivery.headers.get(ORIGIN_QUEUE_HEADER)
            if delivery.message is None or not origin:
                self._dead_letter(delivery, delivery.error or "Retry message without origin queue")
                self.nack(delivery)
                continue
            try:
                self.publish(origin, None, delivery.message)
            except PublishError as e:
                log_queue_error(delivery.message.id, delivery.message.type, e, origin=origin)
                if self.is_connected:
                    self._dead_letter(delivery, str(e))
                    self.nack(delivery)
                # otherwise the frame stays unacked and is recovered later
                continue
            self.ack(delivery)
            relayed += 1
        return relayed

    def start_retry_relay(self, poll_interval_ms: int = 500) -> None:
        if self._relay_thread and self._relay_thread.is_alive():
            return
        self._relay_stop.clear()
        self._relay_thread = threading.Thread(
            target=self._relay_loop, args=(poll_interval_ms / 1000.0,), name="retry-relay", daemon=True
        )
        self._relay_thread.start()
        logger.info("Retry relay started", extra={"poll_interval_ms": poll_interval_ms})

    def stop_retry_relay(self, timeout: float = 10) -> None:
        self._relay_stop.set()
        if self._relay_thread:
            self._relay_thread.join(timeout=timeout)
            self._relay_thread = None
        if self._relay is not None and self.is_connected:
            try:
                self._requeue_list(self._relay.unacked_key, self.retry_queue)
            except BrokerConnectionError:
                pass

    def _relay_loop(self, interval: float) -> None:
        while not self._relay_stop.is_set():
            if self.accepting_deliveries:
                try:
                    self.run_retry_relay_once()
                except BrokerConnectionError:
                    pass
                except Exception as e:
                    logger.error(f"Retry relay error: {e}", exc_info=True)
            self._relay_stop.wait(interval)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def purge(self, queue: str) -> int:
        """Delete every ready and delayed message on ``queue``. Returns the count."""
        if not self._queue_declared(queue):
            raise TopologyError(f"Unknown queue '{queue}'")

        def _purge(c):
            pipe = c.pipeline(transaction=True)
            pipe.llen(self._key("queue", queue))
            pipe.zcard(self._key("delayed", queue))
            pipe.delete(self._key("queue", queue))
            pipe.delete(self._key("delayed", queue))
            return pipe.execute()

        ready, delayed, _, _ = self._call(_purge)
        logger.info(f"Purged queue: {queue}", extra={"queue": queue, "purged": ready + delayed})
        return ready + delayed

    def inspect(self, queue: str) -> QueueInfo:
        if not self._queue_declared(queue):
            raise TopologyError(f"Unknown queue '{queue}'")
        message_count = self._call(lambda c: c.llen(self._key("queue", queue)))
        delayed_count = self._call(lambda c: c.zcard(self._key("delayed", queue)))
        tags = self._call(lambda c: c.smembers(self._key("consumers", queue)))
        consumer_count = sum(
            1 for tag in tags
            if tag in self._consumers or self._call(lambda c: c.exists(self._key("heartbeat", tag)))
        )
        return QueueInfo(
            queue=queue,
            message_count=int(message_count),
            consumer_count=consumer_count,
            delayed_count=int(delayed_count),
        )

    def peek(self, queue: str, limit: int = 10) -> List[QueueMessage]:
        """Return up to ``limit`` ready messages in delivery order without consuming them."""
        raws = self._call(lambda c: c.lrange(self._key("queue", queue), -limit, -1))
        messages = []
        for raw in reversed(raws):
            delivery = self._decode(queue, raw, "peek")
            if delivery.message is not None:
                messages.append(delivery.message)
        return messages
