"""Bounded worker pool for accepted client sockets."""

from __future__ import annotations

import logging
import queue
import socket
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

ClientAddress = tuple[str, int]
ClientHandler = Callable[[socket.socket, ClientAddress], None]

_STOP = None


class ThreadPool:
    """Fixed-size pool of connection workers fed from a bounded queue."""

    def __init__(self, worker_count: int, queue_size: int, handler: ClientHandler) -> None:
        if worker_count <= 0:
            raise ValueError("worker_count must be positive")
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")

        self._handler = handler
        self._worker_count = worker_count
        self._queue: queue.Queue[tuple[socket.socket, ClientAddress] | None] = queue.Queue(
            maxsize=queue_size
        )
        self._threads: list[threading.Thread] = []
        self._stopped = threading.Event()
        self._shutdown_lock = threading.Lock()

    @property
    def worker_count(self) -> int:
        return self._worker_count

    @property
    def threads(self) -> tuple[threading.Thread, ...]:
        return tuple(self._threads)

    def start(self) -> None:
        for index in range(self._worker_count):
            worker = threading.Thread(
                target=self._worker_loop,
                name=f"content-worker-{index}",
                daemon=True,
            )
            self._threads.append(worker)
            worker.start()

    def submit(self, client_socket: socket.socket, address: ClientAddress) -> bool:
        """Queue a connection; False when the pool is stopped or the queue is full."""
        if self._stopped.is_set():
            return False
        try:
            self._queue.put_nowait((client_socket, address))
        except queue.Full:
            return False
        return True

    def shutdown(self, timeout: float = 1.0) -> None:
        with self._shutdown_lock:
            if self._stopped.is_set():
                return
            self._stopped.set()

        # Connections still queued never reach a worker.
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not None:
                item[0].close()

        for _ in self._threads:
            self._queue.put(_STOP)
        for thread in self._threads:
            thread.join(timeout=timeout)

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            client_socket, address = item
            try:
                self._handler(client_socket, address)
            except Exception:
                logger.exception("Worker failed while handling %s", address[0])
