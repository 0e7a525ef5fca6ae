"""
Command Dispatcher.

Routes every inbound message on the board's topic to the pin lifecycle:
- Drops messages addressed to any other topic (many boards share a broker).
- Decodes the payload; malformed input is logged and dropped, never echoed.
- REGISTER -> PinManager.register_pin, EVENT -> PinManager.handle_event,
  anything else is logged and dropped.
- Publishes the event a pin hands back (input levels) to the event topic.

The dispatcher holds no pin state of its own.
"""
import logging
import threading
from typing import Callable, Optional, Protocol

from gpio_companion.server import codec
from gpio_companion.server.errors import DecodeError, PinError, UnsupportedAction
from gpio_companion.server.identity import BoardIdentity
from gpio_companion.server.models import Action, PinCommand

logger = logging.getLogger(__name__)

Publisher = Callable[[str, bytes], None]


class PinLifecycle(Protocol):
    """What the dispatcher needs from the pin collaborator."""

    def register_pin(self, command: PinCommand) -> None: ...

    def handle_event(self, command: PinCommand) -> Optional[PinCommand]: ...

    def close_all_pins(self) -> None: ...


class CommandDispatcher:
    board_identity: BoardIdentity
    pins: PinLifecycle
    publish: Publisher
    event_topic_template: str

    def __init__(self, board_identity: BoardIdentity, pins: PinLifecycle, publish: Publisher,
                 event_topic_template: str = "{board_id}_events"):
        self.board_identity = board_identity
        self.pins = pins
        self.publish = publish
        self.event_topic_template = event_topic_template
        self._closed = threading.Event()

    @property
    def event_topic(self) -> str:
        return self.event_topic_template.format(board_id=self.board_identity.get_or_create())

    def on_message(self, topic: str, payload: bytes):
        """
        Handles one inbound message. Never raises for bad input or pin failures.
        """
        if topic != self.board_identity.get_or_create():
            return

        if self._closed.is_set():
            logger.debug(f"Dispatcher closed, dropping message on '{topic}'")
            return

        try:
            command = codec.decode(payload)
        except DecodeError as e:
            logger.warning(f"Dropping malformed message on '{topic}': {e}")
            return

        logger.debug(f"Received {command.action.value} for pin '{command.name}'")
        try:
            self._route(command)
        except UnsupportedAction as e:
            logger.info(f"Message not supported: {e}")
        except PinError as e:
            logger.error(f"Pin operation failed: {e}")

    def _route(self, command: PinCommand):
        if command.action == Action.REGISTER:
            self.pins.register_pin(command)
        elif command.action == Action.EVENT:
            reply = self.pins.handle_event(command)
            if reply is not None:
                self.publish_event(reply)
        else:
            raise UnsupportedAction(f"action {command.action.value} for pin '{command.name}'")

    def publish_event(self, event: PinCommand):
        """Encodes a pin event and hands it to the publisher. Safe from any thread."""
        if self._closed.is_set():
            return
        self.publish(self.event_topic, codec.encode(event))

    def close(self):
        """Makes the dispatcher inert; later messages and events are dropped."""
        self._closed.set()
        logger.info("Command dispatcher closed.")
