import pytest
import asyncio
import json
from aiomqtt import Client, ProtocolVersion

from gpio_companion.server.dispatcher import CommandDispatcher
from gpio_companion.server.hardware import PinManager
from gpio_companion.server.mqtt import ConnectionManager
from gpio_companion.server.worker import BridgeWorker

pytestmark = pytest.mark.integration


@pytest.fixture
def integration_config():
    """Config pointing to the real local Mosquitto."""
    return {
        'mqtt': {
            'host': 'localhost',
            'port': 1883,
            'client_id': 'gpio-companion-integration',
        },
        'reconnect': {'initial_delay': 0.1, 'max_delay': 1.0, 'jitter': 0.0},
    }


@pytest.mark.asyncio
async def test_board_answers_state_request_over_real_broker(integration_config, board_identity):
    """
    Integration Test:
    1. Starts the bridge (connects to localhost:1883).
    2. A test client plays the companion app on the same broker.
    3. It registers an input pin and asks for its state.
    4. Verifies the board's reply arrives on the event topic.
    """
    board_id = board_identity.get_or_create()
    pins = PinManager()
    connection = None

    def publish(topic, payload):
        connection.publish(topic, payload)

    dispatcher = CommandDispatcher(board_identity, pins, publish)
    worker = BridgeWorker(dispatcher.on_message)
    connection = ConnectionManager(config=integration_config, board_identity=board_identity, on_message=worker.submit)
    worker.start_worker_thread()
    await connection.start()
    await asyncio.sleep(0.3)

    try:
        async with Client('localhost', 1883, protocol=ProtocolVersion.V311) as app:
            await app.subscribe(dispatcher.event_topic, qos=2)
            await app.publish(board_id, json.dumps({
                "mName": "GPIO_27", "mDirection": "IN", "mProperty": "PIN_STATE", "mAction": "REGISTER"}), qos=2)
            await app.publish(board_id, json.dumps({
                "mName": "GPIO_27", "mDirection": "IN", "mProperty": "PIN_STATE", "mAction": "EVENT"}), qos=2)

            async def first_event():
                async for message in app.messages:
                    return json.loads(message.payload.decode())

            event = await asyncio.wait_for(first_event(), timeout=2.0)

        assert event["mName"] == "GPIO_27"
        assert event["mAction"] == "EVENT"
        assert event["mValue"] in ("HIGH", "LOW")
    except asyncio.TimeoutError:
        pytest.fail("Timed out waiting for the board's event.")
    finally:
        worker.stop_worker_thread()
        dispatcher.close()
        pins.close_all_pins()
        await connection.stop()
