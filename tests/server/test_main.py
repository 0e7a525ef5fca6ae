import asyncio
import signal

import pytest
from unittest.mock import patch, AsyncMock, MagicMock

from gpio_companion.server.dispatcher import CommandDispatcher
from gpio_companion.server.errors import StorageUnavailable
from gpio_companion.server.hardware import PinManager
from gpio_companion.server.main import main, main_application_runner, shutdown
from gpio_companion.server.models import Action, Direction, PinCommand, PinProperty


@pytest.fixture
def mock_config():
    """Provides a fake configuration dictionary."""
    return {
        "mqtt": {"host": "localhost", "port": 1883},
        "identity": {"path": "board.yaml", "key": "board_identifier"},
        "event_topic": "{board_id}_events",
        "inbound_queue_size": 25,
        "log_level": "DEBUG",
    }


def remove_signal_handlers():
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.remove_signal_handler(sig)


@pytest.mark.asyncio
@patch('gpio_companion.server.main.load_config')
@patch('gpio_companion.server.main.ConnectionManager')
@patch('gpio_companion.server.main.BridgeWorker')
@patch('gpio_companion.server.main.PinManager')
@patch('gpio_companion.server.main.BoardIdentity')
async def test_main_orchestrates_startup_and_wiring(
    MockBoardIdentity,
    MockPinManager,
    MockBridgeWorker,
    MockConnectionManager,
    mock_load_config,
    mock_config
):
    """
    Tests that main_application_runner resolves the identity and wires the
    dispatcher between the worker, the pins and the connection.
    """
    mock_load_config.return_value = mock_config
    mock_identity = MockBoardIdentity.return_value
    mock_identity.get_or_create.return_value = "board-123"
    mock_pins = MockPinManager.return_value
    mock_worker = MockBridgeWorker.return_value
    mock_connection = MockConnectionManager.return_value
    mock_connection.start = AsyncMock()
    mock_connection.stop = AsyncMock()

    # main_application_runner waits forever, so run it as a task
    main_task = asyncio.create_task(main_application_runner("custom.yaml"))
    await asyncio.sleep(0.1)

    try:
        mock_load_config.assert_called_once_with("custom.yaml")
        MockBoardIdentity.assert_called_once_with("board.yaml", key="board_identifier")
        mock_identity.get_or_create.assert_called()

        # The worker feeds the dispatcher, and the connection feeds the worker
        handler = MockBridgeWorker.call_args.kwargs["handler"]
        assert MockBridgeWorker.call_args.kwargs["maxsize"] == 25
        assert isinstance(handler.__self__, CommandDispatcher)
        dispatcher = handler.__self__
        assert dispatcher.pins is mock_pins
        assert mock_pins.publish_event == dispatcher.publish_event
        _, kwargs = MockConnectionManager.call_args
        assert kwargs["on_message"] == mock_worker.submit
        assert kwargs["board_identity"] is mock_identity

        # Outbound publishes from the dispatcher land on the connection
        dispatcher.publish("board-123_events", b"{}")
        mock_connection.publish.assert_called_once_with("board-123_events", b"{}")

        mock_worker.start_worker_thread.assert_called_once()
        mock_connection.start.assert_awaited_once()
    finally:
        main_task.cancel()
        try:
            await main_task
        except asyncio.CancelledError:
            pass
        remove_signal_handlers()


@pytest.mark.asyncio
@patch('gpio_companion.server.main.load_config')
@patch('gpio_companion.server.main.ConnectionManager')
@patch('gpio_companion.server.main.BoardIdentity')
async def test_missing_identity_store_is_fatal(MockBoardIdentity, MockConnectionManager, mock_load_config, mock_config):
    mock_load_config.return_value = mock_config
    MockBoardIdentity.return_value.get_or_create.side_effect = StorageUnavailable("disk gone")

    with pytest.raises(SystemExit) as exc_info:
        await main_application_runner()

    assert exc_info.value.code == 1
    MockConnectionManager.assert_not_called()


@pytest.mark.asyncio
async def test_shutdown_sequence():
    """
    Tests that the shutdown handler closes pins before releasing the session.
    """
    calls = []
    mock_loop = MagicMock()

    mock_worker = MagicMock()
    mock_worker.stop_worker_thread.side_effect = lambda: calls.append("worker")
    mock_dispatcher = MagicMock()
    mock_dispatcher.close.side_effect = lambda: calls.append("dispatcher")
    mock_pins = MagicMock()
    mock_pins.close_all_pins.side_effect = lambda: calls.append("pins")
    mock_connection = MagicMock()
    mock_connection.stop = AsyncMock(side_effect=lambda: calls.append("session"))

    await shutdown("SIGINT", mock_loop, mock_connection, mock_dispatcher, mock_pins, mock_worker)

    assert calls == ["worker", "dispatcher", "pins", "session"]
    mock_loop.stop.assert_called_once()


@pytest.mark.asyncio
async def test_shutdown_closes_open_pins_before_session_release():
    pins = PinManager()
    for name in ("GPIO_17", "GPIO_27"):
        pins.register_pin(PinCommand(name=name, direction=Direction.OUT, property=PinProperty.PIN_STATE,
                                     action=Action.REGISTER))
    devices = list(pins.pins.values())
    closed_at_release = []

    async def release_session():
        closed_at_release.extend(device.closed for device in devices)

    mock_connection = MagicMock()
    mock_connection.stop = AsyncMock(side_effect=release_session)

    await shutdown("SIGTERM", MagicMock(), mock_connection, MagicMock(), pins, MagicMock())

    assert closed_at_release == [True, True]
    mock_connection.stop.assert_awaited_once()


@patch('gpio_companion.server.main.asyncio.run')
@patch('gpio_companion.server.main.main_application_runner', new_callable=MagicMock)
def test_cli_passes_config_path(mock_runner, mock_run):
    assert main(["--config", "/etc/gpio-companion.yaml"]) == 0

    mock_runner.assert_called_once_with("/etc/gpio-companion.yaml")
    mock_run.assert_called_once_with(mock_runner.return_value)
