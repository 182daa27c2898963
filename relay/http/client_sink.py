# relay/http/client_sink.py

import logging
import socket
import threading
from collections import deque
from typing import Optional

logger = logging.getLogger(__name__)

# Maximum queued chunks per listener before it is considered too slow
DEFAULT_MAX_QUEUE = 64


class SinkClosedError(ConnectionError):
    """Raised when writing to a listener that has been dropped."""


class ClientSink:
    """
    Bounded write queue in front of one listener socket.

    write() never blocks: it enqueues the chunk and a writer thread drains the
    queue with sendall() under the socket's timeout. A listener whose queue
    overflows, whose send times out, or whose socket errors is dropped: the
    sink closes and shuts the socket down, which wakes the request handler
    so it can unsubscribe.
    """

    def __init__(self, sock: socket.socket, client_id: str, max_queue: int = DEFAULT_MAX_QUEUE):
        self._sock = sock
        self.client_id = client_id
        self._max_queue = max_queue
        self._queue: deque = deque()
        self._cond = threading.Condition()
        self._closed = False
        self.close_reason: Optional[str] = None
        self._thread: Optional[threading.Thread] = None
        self.bytes_sent = 0

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def queued(self) -> int:
        with self._cond:
            return len(self._queue)

    def start(self) -> None:
        self._thread = threading.Thread(
            target=self._writer,
            daemon=True,
            name=f"ClientSink-{self.client_id[:8]}",
        )
        self._thread.start()

    def write(self, chunk: bytes) -> None:
        """
        Queue a chunk for this listener.

        Raises:
            SinkClosedError: If the listener was dropped or its queue is full
        """
        with self._cond:
            if self._closed:
                raise SinkClosedError(f"client {self.client_id} closed ({self.close_reason})")
            if len(self._queue) >= self._max_queue:
                self._close_locked("queue_full")
                raise SinkClosedError(f"client {self.client_id} too slow, queue full ({self._max_queue} chunks)")
            self._queue.append(chunk)
            self._cond.notify()

    def close(self, reason: str = "closed") -> None:
        with self._cond:
            self._close_locked(reason)

    def _close_locked(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self.close_reason = reason
        self._queue.clear()
        self._cond.notify_all()
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Already disconnected
            pass
        logger.debug(f"Closed client {self.client_id}: {reason}")

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    def _writer(self) -> None:
        while True:
            with self._cond:
                while not self._queue and not self._closed:
                    self._cond.wait()
                if self._closed:
                    return
                chunk = self._queue.popleft()

            try:
                self._sock.sendall(chunk)
            except socket.timeout:
                self.close("send_timeout")
                return
            except OSError as e:
                self.close(f"socket_error: {e}")
                return
            self.bytes_sent += len(chunk)
