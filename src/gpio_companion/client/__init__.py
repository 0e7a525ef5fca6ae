"""
Client-side components for companion applications.
This package provides a small MQTT client and `gpiozero`-like pin stubs
that translate method calls into pin commands on a board's topic.
"""
from gpio_companion.client.connection import CompanionClient
from gpio_companion.client.devices import RemoteInputPin, RemoteOutputPin

__all__ = ["CompanionClient", "RemoteInputPin", "RemoteOutputPin"]
