"""
Hardware Management: the pin lifecycle.

This module contains the `PinManager` class, which owns every physical pin
the bridge has opened. It is responsible for:
- Opening `gpiozero` devices when a REGISTER command arrives
  (DigitalOutputDevice for OUT pins, DigitalInputDevice for IN pins).
- Applying EVENT commands to registered pins, or reporting an input's level.
- Reporting input edges back out through the `publish_event` callback.
- Closing every pin on teardown.

The registry is written only from the BridgeWorker thread. gpiozero edge
callbacks run on gpiozero's own threads and only read from it.
"""
import logging
import re
from typing import Callable, Optional

from gpiozero import Device, DigitalInputDevice, DigitalOutputDevice, GPIOZeroError

from gpio_companion.server.errors import PinError, UnregisteredPin
from gpio_companion.server.models import Action, Direction, PinCommand, PinProperty, PinValue

logger = logging.getLogger(__name__)

_GPIO_NAME = re.compile(r"^(?:GPIO|BCM)_?(\d+)$", re.IGNORECASE)


def pin_spec(name: str) -> str:
    """
    Maps a companion-app pin name to a gpiozero pin spec.

    "GPIO_17", "GPIO17", "BCM17" and "17" all become "GPIO17"; anything else
    (e.g. "BOARD11") is handed to gpiozero unchanged.
    """
    name = name.strip()
    if name.isdigit():
        return f"GPIO{int(name)}"
    match = _GPIO_NAME.match(name)
    if match:
        return f"GPIO{int(match.group(1))}"
    return name


def _level(active: bool) -> str:
    return PinValue.HIGH if active else PinValue.LOW


class PinManager:
    pins: dict[str, Device]  # pin name -> open gpiozero device
    directions: dict[str, Direction]
    publish_event: Optional[Callable[[PinCommand], None]]

    """
    Opens, drives, reads and closes GPIO pins on behalf of the dispatcher.
    """
    def __init__(self, publish_event: Optional[Callable[[PinCommand], None]] = None, pin_factory=None):
        self.pins = {}
        self.directions = {}
        self.publish_event = publish_event
        self._pin_factory = pin_factory

    def register_pin(self, command: PinCommand):
        """
        Opens a pin according to the command's direction.

        Registering a pin again with the same direction does nothing, so a
        redelivered REGISTER is harmless. A different direction closes the
        old device and reopens the pin.
        """
        if command.direction is None:
            raise PinError(f"Cannot register pin '{command.name}' without a direction")

        current = self.directions.get(command.name)
        if current == command.direction:
            logger.debug(f"Pin '{command.name}' already registered as {current.value}, ignoring")
            return
        if current is not None:
            logger.info(f"Re-registering pin '{command.name}' from {current.value} to {command.direction.value}")
            self._close_pin(command.name)

        spec = pin_spec(command.name)
        try:
            if command.direction == Direction.OUT:
                initial = (command.value or "").upper() == PinValue.HIGH
                device = DigitalOutputDevice(spec, initial_value=initial, pin_factory=self._pin_factory)
            else:
                device = DigitalInputDevice(spec, pin_factory=self._pin_factory)
                device.when_activated = self._edge_callback(command.name)
                device.when_deactivated = self._edge_callback(command.name)
        except (GPIOZeroError, ValueError) as e:
            raise PinError(f"Failed to open pin '{command.name}' ({spec}): {e}") from e

        self.pins[command.name] = device
        self.directions[command.name] = command.direction
        logger.info(f"Registered pin '{command.name}' ({spec}) as {command.direction.value}")

    def handle_event(self, command: PinCommand) -> Optional[PinCommand]:
        """
        Applies an EVENT to a registered pin.

        OUT pins are driven HIGH or LOW and nothing is returned. IN pins are
        read and an EVENT command carrying the current level is returned for
        publication.
        """
        device = self.pins.get(command.name)
        if device is None:
            raise UnregisteredPin(f"Pin '{command.name}' has not been registered")

        prop = command.property or PinProperty.PIN_STATE
        if prop != PinProperty.PIN_STATE:
            raise PinError(f"Property {prop.value} is not supported on pin '{command.name}'")

        direction = self.directions[command.name]
        if direction == Direction.IN:
            return self._state_event(command.name, device)

        value = (command.value or "").upper()
        try:
            if value == PinValue.HIGH:
                device.on()
            elif value == PinValue.LOW:
                device.off()
            else:
                raise PinError(f"Unsupported value '{command.value}' for output pin '{command.name}'")
        except GPIOZeroError as e:
            raise PinError(f"Failed to write pin '{command.name}': {e}") from e
        logger.debug(f"Pin '{command.name}' set {value}")
        return None

    def close_all_pins(self):
        """Closes every registered pin. Errors are logged; the rest still close."""
        for name in list(self.pins):
            self._close_pin(name)
        logger.info("All GPIO pins closed.")

    def _close_pin(self, name: str):
        device = self.pins.pop(name, None)
        self.directions.pop(name, None)
        if device is None:
            return
        try:
            device.close()
            logger.debug(f"Closed pin '{name}'")
        except Exception as e:
            logger.error(f"Error closing pin '{name}': {e}")

    def _state_event(self, name: str, device: Device) -> PinCommand:
        return PinCommand(
            name=name,
            direction=Direction.IN,
            property=PinProperty.PIN_STATE,
            value=_level(bool(device.is_active)),
            action=Action.EVENT,
        )

    def _edge_callback(self, name: str) -> Callable[[], None]:
        # gpiozero inspects the callback signature; a zero-arg closure is never handed the device.
        def callback():
            self._on_input_change(name)
        return callback

    def _on_input_change(self, name: str):
        """
        gpiozero edge callback for input pins. Runs on a gpiozero thread.
        """
        device = self.pins.get(name)
        if device is None or self.publish_event is None:
            return
        event = self._state_event(name, device)
        try:
            self.publish_event(event)
            logger.debug(f"Input change on '{name}': {event.value}")
        except Exception as e:
            logger.error(f"Error publishing input change for '{name}': {e}")
