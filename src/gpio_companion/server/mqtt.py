"""
MQTT Session Management.

This module is responsible for:
- Owning the broker session and its state machine
  (DISCONNECTED -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTED ...).
- Subscribing to the board topic (the board identifier) after every connect.
- Reconnecting forever after a connection loss, with bounded exponential
  backoff and jitter.
- Handing inbound messages to the worker channel without blocking.
- Publishing outbound events from any thread through a bounded queue.
- Announcing board presence on the status topic (retained, with Last Will).
"""
import asyncio
import logging
import random
from typing import Callable, Optional

from aiomqtt import Client as MQTTClient, MqttError, ProtocolVersion, Will

from gpio_companion.server.errors import BrokerConnectionError, PublishError
from gpio_companion.server.identity import BoardIdentity
from gpio_companion.server.models import (
    BrokerEndpoint,
    ConnectionState,
    ConnectOptions,
    MQTTMessage,
    SystemStatus,
    SystemStatusPayload,
)

logger = logging.getLogger(__name__)

InboundHandler = Callable[[str, bytes], None]

MAX_BACKOFF_EXPONENT = 32


class ConnectionManager:
    config: dict
    board_identity: BoardIdentity
    on_message: InboundHandler
    endpoint: BrokerEndpoint
    client_id: str
    options: ConnectOptions
    initial_delay: float
    max_delay: float
    jitter: float
    status_topic_template: str
    _main_task: Optional[asyncio.Task]
    _outbound_queue: Optional[asyncio.Queue]
    _loop: Optional[asyncio.AbstractEventLoop]
    _client: Optional[MQTTClient]

    """
    Manages the lifecycle of the single broker session for this board.
    Only this class changes the connection state.
    """
    def __init__(self, config: dict, board_identity: BoardIdentity, on_message: InboundHandler):
        self.config = config
        self.board_identity = board_identity
        self.on_message = on_message

        mqtt_conf = self.config.get('mqtt', {})
        self.endpoint = BrokerEndpoint(
            host=mqtt_conf.get('host', 'localhost'),
            port=int(mqtt_conf.get('port', 1883)),
        )
        self.client_id = mqtt_conf.get('client_id', 'AndroidThingSubscribingClient')
        self.options = ConnectOptions(
            clean_session=bool(mqtt_conf.get('clean_session', True)),
            auto_reconnect=bool(mqtt_conf.get('auto_reconnect', True)),
            qos=int(mqtt_conf.get('qos', 2)),
            keepalive=int(mqtt_conf.get('keepalive', 60)),
        )

        reconnect_conf = self.config.get('reconnect', {})
        self.initial_delay = float(reconnect_conf.get('initial_delay', 0.5))
        self.max_delay = max(self.initial_delay, float(reconnect_conf.get('max_delay', 30.0)))
        self.jitter = max(0.0, min(1.0, float(reconnect_conf.get('jitter', 0.5))))

        self.status_topic_template = self.config.get('status_topic', '{board_id}_status')
        self.outbound_queue_size = int(self.config.get('outbound_queue_size', 100))

        # Internal state
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = asyncio.Lock()
        self._attempt = 0
        self._main_task = None
        self._outbound_queue = None
        self._loop = None
        self._client = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def topic(self) -> str:
        """The one topic this board subscribes to: its identifier."""
        return self.board_identity.get_or_create()

    @property
    def status_topic(self) -> str:
        return self.status_topic_template.format(board_id=self.topic)

    def _set_state(self, new_state: ConnectionState):
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.info(f"MQTT state transition: {old_state.name} -> {new_state.name}")

    async def start(self):
        """
        Connects with the configured endpoint, client id and options.
        """
        await self.connect(self.endpoint, self.client_id, self.options)

    async def connect(self, endpoint: BrokerEndpoint, client_id: str, options: ConnectOptions):
        """
        Launches the session task in the background.

        Only one session task runs at a time; calling connect() while one is
        in flight is logged and ignored.
        """
        if self._main_task is not None and not self._main_task.done():
            logger.warning("A broker connection is already in flight; ignoring connect().")
            return

        self.endpoint = endpoint
        self.client_id = client_id
        self.options = options
        self._loop = asyncio.get_running_loop()
        self._outbound_queue = asyncio.Queue(maxsize=self.outbound_queue_size)
        self._attempt = 0

        logger.info(f"Starting MQTT session, connecting to {endpoint} as {client_id}...")
        self._set_state(ConnectionState.CONNECTING)
        self._main_task = asyncio.create_task(self._main_loop())

    async def stop(self):
        """
        Announces offline status, then cancels the session task, which
        releases the broker session.
        """
        if self._main_task:
            logger.info("Stopping MQTT session...")
            await self._publish_status(SystemStatus.OFFLINE)
            self._main_task.cancel()
            try:
                await self._main_task
            except asyncio.CancelledError:
                logger.info("MQTT session stopped gracefully.")
            except Exception as e:
                logger.error(f"Error during MQTT stop: {e}")
            self._main_task = None
        self._set_state(ConnectionState.DISCONNECTED)

    def next_backoff_delay(self) -> float:
        """
        Delay before the next reconnect attempt: doubles per failed attempt
        up to max_delay, spread by +/- jitter.
        """
        # 2 ** _attempt overflows float after ~1024 failures.
        exponent = min(self._attempt, MAX_BACKOFF_EXPONENT)
        delay = min(self.initial_delay * (2 ** exponent), self.max_delay)
        self._attempt += 1
        if self.jitter > 0.0:
            spread = delay * self.jitter
            delay = random.uniform(max(0.0, delay - spread), min(self.max_delay, delay + spread))
        return delay

    async def _main_loop(self):
        """
        The persistent connection loop. Every pass opens a fresh session and
        re-subscribes; it only ends on cancellation, or on connection loss
        when automatic reconnect is disabled.
        """
        while True:
            try:
                await self._run_session()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e if isinstance(e, MqttError) else BrokerConnectionError(str(e))
                if not self.options.auto_reconnect:
                    logger.error(f"MQTT connection lost: {error}. Automatic reconnect is disabled.")
                    self._set_state(ConnectionState.DISCONNECTED)
                    return

                self._set_state(ConnectionState.RECONNECTING)
                delay = self.next_backoff_delay()
                logger.error(f"MQTT connection lost: {error}. Retrying in {delay:.1f}s (attempt {self._attempt})...")
                await asyncio.sleep(delay)

    async def _run_session(self):
        board_id = self.topic
        last_will = Will(
            topic=self.status_topic,
            payload=SystemStatusPayload(board=board_id, status=SystemStatus.OFFLINE).to_bytes(),
            qos=1,
            retain=True,
        )

        # The connection is ONLY valid inside this block. __aenter__ returns
        # once the broker has acknowledged the connection.
        async with MQTTClient(self.endpoint.host,
                              self.endpoint.port,
                              identifier=self.client_id,
                              protocol=ProtocolVersion.V311,
                              clean_session=self.options.clean_session,
                              keepalive=self.options.keepalive,
                              will=last_will) as client:
            async with self._state_lock:
                self._client = client
                self._set_state(ConnectionState.CONNECTED)
                await client.subscribe(board_id, qos=self.options.qos)
                self._attempt = 0
            logger.info(f"Connected to {self.endpoint} as {self.client_id}, listening on '{board_id}'")

            try:
                await self._publish_status(SystemStatus.ONLINE)
                await self._run_loops(client)
            finally:
                self._client = None

    async def _run_loops(self, client: MQTTClient):
        """Runs the message and publisher loops until either one fails."""
        message_task = asyncio.create_task(self._message_loop(client))
        publisher_task = asyncio.create_task(self._publisher_loop(client))
        try:
            done, _ = await asyncio.wait({message_task, publisher_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (message_task, publisher_task):
                task.cancel()
            await asyncio.gather(message_task, publisher_task, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        raise MqttError("Message stream ended unexpectedly")

    async def _message_loop(self, client: MQTTClient):
        """Hands every inbound message to the worker channel."""
        async for message in client.messages:
            topic = message.topic.value
            payload = message.payload
            if isinstance(payload, str):
                payload = payload.encode("utf-8")
            elif not isinstance(payload, (bytes, bytearray)):
                payload = b"" if payload is None else str(payload).encode("utf-8")
            try:
                self.on_message(topic, bytes(payload))
            except Exception as e:
                logger.error(f"Error handing off message on '{topic}': {e}")

    async def _publisher_loop(self, client: MQTTClient):
        """The background worker that pushes queued events to the broker."""
        while True:
            message: MQTTMessage = await self._outbound_queue.get()
            try:
                await client.publish(**message.to_aiomqtt_args())
                logger.debug(f"Published {len(message.payload)} bytes to '{message.topic}'")
            except MqttError as e:
                logger.error(f"Publish to '{message.topic}' failed, event lost: {e}")
            finally:
                self._outbound_queue.task_done()

    async def _publish_status(self, status: SystemStatus):
        client = self._client
        if client is None:
            return
        payload = SystemStatusPayload(board=self.topic, status=status)
        try:
            await client.publish(self.status_topic, payload=payload.to_bytes(), qos=1, retain=True)
            logger.info(f"Board status: {status.value}")
        except MqttError as e:
            logger.warning(f"Could not publish status '{status.value}': {e}")

    def publish(self, topic: str, payload: bytes):
        """
        Fire-and-forget publish, safe to call from any thread.

        The message is queued and sent by the publisher loop once a session
        is up. Failures are logged, never raised.
        """
        message = MQTTMessage(topic=topic, payload=payload, qos=self.options.qos)
        try:
            self._submit(message)
        except PublishError as e:
            logger.error(f"Dropping outbound message: {e}")

    def _submit(self, message: MQTTMessage):
        loop = self._loop
        if loop is None or self._outbound_queue is None or loop.is_closed():
            raise PublishError(f"session not started, cannot publish to '{message.topic}'")

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            self._enqueue(message)
        else:
            loop.call_soon_threadsafe(self._enqueue, message)

    def _enqueue(self, message: MQTTMessage):
        try:
            self._outbound_queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.error(f"Outbound queue full, dropping message for '{message.topic}'")
