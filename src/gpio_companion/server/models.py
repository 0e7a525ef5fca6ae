"""
Data Models for Internal Communication and MQTT Payloads.

Defines the typed pin command exchanged with companion apps, the connection
state machine states, and the envelopes used on the outbound queue.
"""
from dataclasses import dataclass, field, asdict
import json
from typing import Optional
import time

from enum import Enum


class Direction(str, Enum):
    IN = "IN"
    OUT = "OUT"


class PinProperty(str, Enum):
    PIN_STATE = "PIN_STATE"


class Action(str, Enum):
    REGISTER = "REGISTER"
    EVENT = "EVENT"
    UNKNOWN = "UNKNOWN"


class PinValue:
    """String levels used in the `value` field for PIN_STATE."""
    HIGH = "HIGH"
    LOW = "LOW"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class SystemStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


# --- The pin command (what travels on the board topic) ---

@dataclass(frozen=True, kw_only=True)
class PinCommand:
    """
    A decoded instruction for one GPIO pin.

    `action` is always present and decides how the command is dispatched;
    the other fields are optional at decode time and validated by the
    component that acts on them.
    """
    name: str
    direction: Optional[Direction] = None
    property: Optional[PinProperty] = None
    value: Optional[str] = None
    action: Action = Action.UNKNOWN


# --- Broker session settings ---

@dataclass(frozen=True)
class BrokerEndpoint:
    host: str
    port: int = 1883

    def __str__(self) -> str:
        return f"tcp://{self.host}:{self.port}"


@dataclass(frozen=True, kw_only=True)
class ConnectOptions:
    clean_session: bool = True
    auto_reconnect: bool = True
    qos: int = 2
    keepalive: int = 60


# --- Status payload (board presence) ---

@dataclass(frozen=True, kw_only=True)
class SystemStatusPayload:
    """Retained presence message published on the board's status topic."""
    board: str
    status: SystemStatus = SystemStatus.ONLINE
    timestamp: float = field(default_factory=time.time)

    def to_json(self) -> str:
        """Converts the object to a JSON string."""
        return json.dumps(asdict(self))

    def to_bytes(self) -> bytes:
        """Converts the object to UTF-8 encoded bytes for MQTT."""
        return self.to_json().encode('utf-8')


# --- The "Envelope" (The MQTT Context) ---

@dataclass(frozen=True)
class MQTTMessage:
    """
    A fully addressed outbound message, as held on the publish queue.

    Field names match `aiomqtt.Client.publish` so the envelope can be
    spread straight into it.
    """
    topic: str
    payload: bytes
    qos: int = 0
    retain: bool = False

    def to_aiomqtt_args(self) -> dict:
        """Returns dict suitable for client.publish(**args)"""
        return {
            "topic": self.topic,
            "payload": self.payload,
            "qos": self.qos,
            "retain": self.retain,
        }
