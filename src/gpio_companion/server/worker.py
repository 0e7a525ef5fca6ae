"""
The Inbound Message Channel and its Processing Loop.

The MQTT session runs on the asyncio loop and must never block on pin I/O,
or message delivery and keepalives stall. Instead of dispatching inline it
drops every (topic, payload) pair onto a standard `queue.Queue`; a single
dedicated worker thread drains that queue in arrival order and hands each
message to the dispatcher. That thread is the only writer of the pin
registry.
"""
import logging
import queue
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


class BridgeWorker:
    handler: MessageHandler
    inbound_message_queue: queue.Queue

    _worker_thread: threading.Thread | None
    _worker_running: threading.Event

    """
    Runs `handler(topic, payload)` for every submitted message on one thread.
    """
    def __init__(self, handler: MessageHandler, maxsize: int = 100):
        self.handler = handler
        self.inbound_message_queue = queue.Queue(maxsize=maxsize)
        self._worker_thread = None
        self._worker_running = threading.Event()

    def submit(self, topic: str, payload: bytes):
        """Thread-safe, non-blocking. Called from the MQTT message loop."""
        if not self._worker_running.is_set():
            logger.debug(f"Worker not running, dropping message on '{topic}'")
            return
        try:
            self.inbound_message_queue.put_nowait((topic, payload))
        except queue.Full:
            logger.warning(f"Inbound queue full, dropping message on '{topic}'")

    def start_worker_thread(self):
        """
        Starts the dedicated worker thread if it's not already running.
        """
        if self._worker_thread is None or not self._worker_thread.is_alive():
            self._worker_running.set()
            self._worker_thread = threading.Thread(target=self._worker_loop, name="BridgeWorker", daemon=True)
            self._worker_thread.start()
            logger.info("Bridge worker thread started.")
        else:
            logger.warning("Attempted to start worker thread, but it's already running.")

    def stop_worker_thread(self, timeout: Optional[float] = 5.0):
        """
        Signals the worker thread to stop and waits for it to finish.
        Messages still queued are dropped.
        """
        if self._worker_thread and self._worker_thread.is_alive():
            self._worker_running.clear()
            try:
                self.inbound_message_queue.put_nowait(None)  # sentinel to unblock get()
            except queue.Full:
                pass  # loop re-checks the running flag after its next get()
            self._worker_thread.join(timeout)
            if self._worker_thread.is_alive():
                logger.warning("Bridge worker thread did not stop within timeout.")
            else:
                logger.info("Bridge worker thread stopped.")
        else:
            logger.warning("Attempted to stop worker thread, but it was not running.")

    def _worker_loop(self):
        """
        Pulls messages off the inbound queue and runs the handler on each.
        A failing message is logged and the loop carries on.
        """
        logger.info("Bridge worker loop has started.")

        while self._worker_running.is_set():
            try:
                # timeout so is_set() is re-checked regularly
                item = self.inbound_message_queue.get(timeout=0.1)
            except queue.Empty:
                continue

            if item is None:
                logger.info("Worker loop received shutdown signal.")
                self.inbound_message_queue.task_done()
                break

            topic, payload = item
            try:
                self.handler(topic, payload)
            except Exception as e:
                logger.error(f"Error handling message on '{topic}': {e}")
            finally:
                self.inbound_message_queue.task_done()

        dropped = self.inbound_message_queue.qsize()
        if dropped:
            logger.info(f"Dropping {dropped} unprocessed message(s).")
        logger.info("Bridge worker loop has stopped.")
