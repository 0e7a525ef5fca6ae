"""
Pytest Configuration and Fixtures for the gpio_companion project.

Points gpiozero at its MockFactory so tests run on any development machine,
not just a Raspberry Pi.
"""

import sys
import pytest
import logging

from gpiozero import Device
from gpiozero.pins.mock import MockFactory, MockPWMPin

# Any DigitalOutputDevice(pin)/DigitalInputDevice(pin) created by the code
# under test will now use mock pins.
# Read https://gpiozero.readthedocs.io/en/stable/api_pins.html for more details on pin factories.
_mock_factory_instance = MockFactory(pin_class=MockPWMPin)
Device.pin_factory = _mock_factory_instance


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging():
    """
    Configures the Python logging framework globally for all tests.
    Because tests bypass main.py, this ensures our logs are formatted
    and visible exactly how we want them during test runs.
    """
    formatter = logging.Formatter(fmt="%(levelname)-8s %(message)s - %(funcName)s:%(lineno)d ")
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)


@pytest.fixture(autouse=True)
def reset_mock_gpio_pins_before_each_test():
    """
    Resets the MockFactory's pins before each test to ensure a clean state.
    """
    _mock_factory_instance.reset()
    yield


@pytest.fixture
def mock_factory():
    return _mock_factory_instance


@pytest.fixture
def board_identity(tmp_path):
    from gpio_companion.server.identity import BoardIdentity
    return BoardIdentity(tmp_path / "board.yaml")
