"""
MQTT Client Connection for companion applications.

This module provides:
- A wrapper around `paho-mqtt` connecting to the same broker as the board.
- Publishing encoded pin commands on the board's topic.
- Subscribing to the board's event topic and fanning decoded events out to
  registered listeners.
"""
import logging
import threading
import uuid
from typing import Callable, List, Optional

import paho.mqtt.client as mqtt

from gpio_companion.server import codec
from gpio_companion.server.errors import BrokerConnectionError, DecodeError
from gpio_companion.server.models import Action, Direction, PinCommand, PinProperty

logger = logging.getLogger(__name__)

EventListener = Callable[[PinCommand], None]


class CompanionClient:
    board_id: str
    host: str
    port: int
    qos: int
    event_topic: str
    _listeners: List[EventListener]

    """
    Sends pin commands to one board and receives its pin events.
    """
    def __init__(self, board_id: str, host: str = "iot.eclipse.org", port: int = 1883,
                 client_id: Optional[str] = None, qos: int = 2,
                 event_topic_template: str = "{board_id}_events"):
        self.board_id = board_id
        self.host = host
        self.port = port
        self.qos = qos
        self.event_topic = event_topic_template.format(board_id=board_id)
        self._listeners = []
        self._listeners_lock = threading.Lock()
        self._connected = threading.Event()

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id or f"companion-{uuid.uuid4().hex[:8]}",
            clean_session=True
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    def connect(self, timeout: float = 5.0):
        """Connects, starts the network thread and waits for the CONNACK."""
        logger.info(f"Connecting to {self.host}:{self.port} for board {self.board_id}")
        self._client.connect(self.host, self.port)
        self._client.loop_start()
        if not self._connected.wait(timeout):
            self._client.loop_stop()
            raise BrokerConnectionError(f"No CONNACK from {self.host}:{self.port} within {timeout}s")

    def disconnect(self):
        self._client.disconnect()
        self._client.loop_stop()
        self._connected.clear()

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *exc_info):
        self.disconnect()

    def add_listener(self, listener: EventListener):
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: EventListener):
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def send(self, command: PinCommand):
        """Publishes a pin command on the board topic."""
        info = self._client.publish(self.board_id, codec.encode(command), qos=self.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"Failed to send {command.action.value} for '{command.name}': {mqtt.error_string(info.rc)}")
        else:
            logger.debug(f"Sent {command.action.value} for '{command.name}'")

    def register_pin(self, name: str, direction: Direction, value: Optional[str] = None):
        self.send(PinCommand(name=name, direction=direction, property=PinProperty.PIN_STATE,
                             value=value, action=Action.REGISTER))

    def set_pin(self, name: str, value: str):
        self.send(PinCommand(name=name, direction=Direction.OUT, property=PinProperty.PIN_STATE,
                             value=value, action=Action.EVENT))

    def request_state(self, name: str):
        """Asks the board to report the current level of an input pin."""
        self.send(PinCommand(name=name, direction=Direction.IN, property=PinProperty.PIN_STATE,
                             action=Action.EVENT))

    # --- paho callbacks (network thread) ---

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.error(f"Connection refused: {reason_code}")
            return
        client.subscribe(self.event_topic, qos=self.qos)
        self._connected.set()
        logger.info(f"Connected, listening for events on '{self.event_topic}'")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self._connected.clear()
        logger.info(f"Disconnected: {reason_code}")

    def _on_message(self, client, userdata, message):
        try:
            event = codec.decode(message.payload)
        except DecodeError as e:
            logger.warning(f"Ignoring malformed event on '{message.topic}': {e}")
            return

        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed: {e}")
