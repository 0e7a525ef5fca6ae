"""
gpio_companion

This package bridges an MQTT broker and the GPIO pins of a Raspberry Pi
class board, so that companion apps (e.g. MIT App Inventor projects) can
register, drive and read pins remotely on a per-board topic.
"""
__version__ = "0.1.0"
