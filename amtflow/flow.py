"""Running a pool of workers over the messages of one queue."""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, NoReturn, Protocol, runtime_checkable

from .config import ConfigError, load_config
from .transport import AMTConn, Delivery, MQTransport, TransportError

_POLL_INTERVAL = 0.05
_END = object()


class NackError(Exception):
    """Raised by an application to send a message straight to the dead-letter queue."""

    def __init__(self, message: str = "invalid data, message is sent to DLQ") -> None:
        super().__init__(message)


class FlowError(Exception):
    """Raised when a flow cannot be set up or stops consuming."""


@runtime_checkable
class AppAPI(Protocol):
    """What an application provides to handle messages of a flow."""

    def process_message(self, delivery: Delivery, deadline: float) -> None:
        """Handle one message; ``deadline`` is a ``time.monotonic()`` value.

        Raise ``NackError`` to dead-letter the message, or any other
        exception to have it retried.
        """


@dataclass
class Flow:
    """A queue connection paired with the application that handles its messages."""

    mq: Any
    app: Any

    def run_consumer(self, workers: int, timeout: float | timedelta, stop: threading.Event | None = None) -> NoReturn:
        """Consume messages with at most ``workers`` handlers running at once.

        Each handler gets ``timeout`` seconds. Consuming ends, with an
        exception, when the message stream ends, when ``stop`` is set, or
        when a failed message cannot be sent for retry. The queue connection
        is closed in every case.
        """
        if workers < 1:
            raise ValueError("workers must be > 0")
        seconds = timeout.total_seconds() if isinstance(timeout, timedelta) else float(timeout)
        try:
            self._consume(workers, seconds, stop or threading.Event())
        except Exception as exc:
            try:
                self.mq.close()
            except Exception as close_exc:
                raise FlowError(f"{exc}\n{close_exc}") from exc
            raise

    def _consume(self, workers: int, timeout: float, stop: threading.Event) -> NoReturn:
        try:
            deliveries = self.mq.consume()
        except Exception as exc:
            raise FlowError(f"error during consuming message: {exc}") from exc

        inbox: queue.Queue[Any] = queue.Queue()
        failures: queue.Queue[Exception] = queue.Queue()
        slots = threading.BoundedSemaphore(workers)
        threading.Thread(target=_feed, args=(deliveries, inbox), daemon=True).start()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            while True:
                try:
                    raise failures.get_nowait()
                except queue.Empty:
                    pass
                if stop.is_set():
                    raise FlowError("msgs channel closed: consumer stopped")
                try:
                    item = inbox.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                if item is _END:
                    raise FlowError("msgs channel closed")
                slots.acquire()
                pool.submit(self._handle, item, timeout, slots, failures)

    def _handle(
        self,
        delivery: Delivery,
        timeout: float,
        slots: threading.BoundedSemaphore,
        failures: queue.Queue[Exception],
    ) -> None:
        try:
            deadline = time.monotonic() + timeout
            try:
                self.app.process_message(delivery, deadline)
            except NackError:
                delivery.nack(False)
            except Exception:
                try:
                    self.mq.retry(delivery)
                except Exception as exc:
                    failures.put(exc)
        finally:
            slots.release()


def _feed(deliveries: Iterable[Any], inbox: queue.Queue[Any]) -> None:
    try:
        for delivery in deliveries:
            inbox.put(delivery)
    except Exception:
        pass
    finally:
        inbox.put(_END)


def new_flow_with_auto_config(app: Any, file: str) -> Flow:
    """Create a flow with its own connection, configured from the environment or etcd."""
    try:
        cfg = load_config(file)
    except ConfigError as exc:
        raise FlowError(f"error during configuration: {exc}") from exc
    try:
        transport = MQTransport.connect(cfg.dsn)
    except TransportError as exc:
        raise FlowError(f"error during transport creating: {exc}") from exc
    try:
        mq = AMTConn(transport, cfg.queue_name, cfg.prefetch_count)
    except TransportError as exc:
        try:
            transport.close()
        except TransportError:
            pass
        raise FlowError(f"error during queue creating: {exc}") from exc
    return Flow(mq=mq, app=app)


def add_flow_with_auto_config(app: Any, conn: MQTransport, file: str) -> Flow:
    """Create a flow on an existing connection, configured from the environment or etcd.

    Queue names must be unique per connection.
    """
    try:
        cfg = load_config(file)
    except ConfigError as exc:
        raise FlowError(f"error during configuration: {exc}") from exc
    try:
        mq = AMTConn(conn, cfg.queue_name, cfg.prefetch_count)
    except TransportError as exc:
        raise FlowError(f"error during queue creating: {exc}") from exc
    return Flow(mq=mq, app=app)


def new_flow(app: Any, conn: MQTransport, name: str, prefetch_count: int) -> Flow:
    """Create a flow for the queue ``name`` on an existing connection."""
    if prefetch_count < 1:
        raise FlowError("prefetchCount must be > 0")
    try:
        mq = AMTConn(conn, name, prefetch_count)
    except TransportError as exc:
        raise FlowError(f"error during queue creating: {exc}") from exc
    return Flow(mq=mq, app=app)


def dial(dsn: str) -> MQTransport:
    """Open a connection to the broker at ``dsn``."""
    try:
        return MQTransport.connect(dsn)
    except TransportError as exc:
        raise FlowError(f"error during transport creating: {exc}") from exc