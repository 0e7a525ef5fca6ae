"""
Pin Command Codec.

Turns raw MQTT payloads into `PinCommand` objects and back. The wire shape
is the one produced by the companion app's messaging library, e.g.

    {"mDirection":"OUT","mName":"GPIO_34","mProperty":"PIN_STATE","mValue":"LOW","mAction":"EVENT"}

Only field names and value types are part of the contract; field order is
not. Plain field names ("name", "direction", ...) are accepted on decode too.
"""
import json
import logging
from typing import Any, Optional

from gpio_companion.server.errors import DecodeError
from gpio_companion.server.models import Action, Direction, PinCommand, PinProperty

logger = logging.getLogger(__name__)

# field -> wire key written by encode()
WIRE_KEYS = {
    "name": "mName",
    "direction": "mDirection",
    "property": "mProperty",
    "value": "mValue",
    "action": "mAction",
}


def _field(data: dict, field_name: str) -> Any:
    wire_key = WIRE_KEYS[field_name]
    if wire_key in data:
        return data[wire_key]
    return data.get(field_name)


def _parse_enum(enum_cls, raw: Any, field_name: str):
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise DecodeError(f"Field '{field_name}' must be a string, got {type(raw).__name__}")
    try:
        return enum_cls(raw.strip().upper())
    except ValueError:
        raise DecodeError(f"Unrecognised {field_name} '{raw}'") from None


def _parse_action(raw: Any) -> Action:
    # Unknown actions must never fail decoding, so newer apps can't crash the bridge.
    if not isinstance(raw, str):
        return Action.UNKNOWN
    try:
        return Action(raw.strip().upper())
    except ValueError:
        logger.debug(f"Unrecognised action '{raw}', treating as UNKNOWN")
        return Action.UNKNOWN


def decode(payload: bytes) -> PinCommand:
    """
    Parses a raw payload into a PinCommand.

    Raises DecodeError when the payload is not a JSON object, the pin name is
    missing or empty, or direction/property/value carry invalid values.
    A missing or unrecognised action decodes as Action.UNKNOWN.
    """
    try:
        text = payload.decode("utf-8")
    except (UnicodeDecodeError, AttributeError) as e:
        raise DecodeError(f"Payload is not UTF-8 text: {e}") from e

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Payload is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise DecodeError(f"Payload must be a JSON object, got {type(data).__name__}")

    name = _field(data, "name")
    if not isinstance(name, str) or not name.strip():
        raise DecodeError("Payload is missing the pin name")

    value: Optional[Any] = _field(data, "value")
    if value is not None and not isinstance(value, str):
        raise DecodeError(f"Field 'value' must be a string, got {type(value).__name__}")

    return PinCommand(
        name=name,
        direction=_parse_enum(Direction, _field(data, "direction"), "direction"),
        property=_parse_enum(PinProperty, _field(data, "property"), "property"),
        value=value,
        action=_parse_action(_field(data, "action")),
    )


def encode(command: PinCommand) -> bytes:
    """Serializes a PinCommand into the wire shape. None fields are left out."""
    data = {}
    for field_name, wire_key in WIRE_KEYS.items():
        field_value = getattr(command, field_name)
        if field_value is None:
            continue
        if isinstance(field_value, (Direction, PinProperty, Action)):
            field_value = field_value.value
        data[wire_key] = field_value
    return json.dumps(data).encode("utf-8")
