"""
Remote GPIO Pin Stubs.

`gpiozero`-like classes that drive a board's pins through a
`CompanionClient`. Creating a stub registers the pin on the board.
"""
import logging
from typing import Callable, Optional

from gpio_companion.client.connection import CompanionClient
from gpio_companion.server.models import Direction, PinCommand, PinValue

logger = logging.getLogger(__name__)


class RemoteOutputPin:
    def __init__(self, client: CompanionClient, name: str, initial_value: bool = False):
        self.client = client
        self.name = name
        self._value = initial_value
        client.register_pin(name, Direction.OUT, PinValue.HIGH if initial_value else PinValue.LOW)

    @property
    def value(self) -> bool:
        """The last level requested; the board does not echo output writes."""
        return self._value

    def on(self):
        self.client.set_pin(self.name, PinValue.HIGH)
        self._value = True

    def off(self):
        self.client.set_pin(self.name, PinValue.LOW)
        self._value = False

    def toggle(self):
        if self._value:
            self.off()
        else:
            self.on()


class RemoteInputPin:
    when_changed: Optional[Callable[[bool], None]]

    """
    Mirrors an input pin. `value` follows the events the board publishes;
    it is None until the first one arrives.
    """
    def __init__(self, client: CompanionClient, name: str):
        self.client = client
        self.name = name
        self.when_changed = None
        self._value: Optional[bool] = None
        client.add_listener(self._on_event)
        client.register_pin(name, Direction.IN)

    @property
    def value(self) -> Optional[bool]:
        return self._value

    def read(self):
        """Asks the board for the current level; `value` updates when it replies."""
        self.client.request_state(self.name)

    def close(self):
        self.client.remove_listener(self._on_event)

    def _on_event(self, event: PinCommand):
        if event.name != self.name or event.value is None:
            return
        new_value = event.value.upper() == PinValue.HIGH
        changed = new_value != self._value
        self._value = new_value
        logger.debug(f"Remote pin '{self.name}' is {event.value}")
        if changed and self.when_changed is not None:
            self.when_changed(new_value)
