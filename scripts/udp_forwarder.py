#!/usr/bin/env python3
"""
Per-client UDP forwarding through a SOCKS5 UDP association.

Each SessionForwarder owns one relay endpoint for one (client, target)
pair and runs two threads:

    client -> send_upstream() -> inbound queue -> UpstreamWriter -> relay -> target
    target -> relay -> UpstreamReader -> LocalDispatcher -> local socket -> client

The LocalDispatcher is shared by all sessions and is the only writer to
the local socket.

Idle policy: the writer counts consecutive empty waits on the inbound
queue; after idle_timeouts of them it sets the session's idle flag and
exits. The reader polls that flag whenever its own read times out and
exits once it is set. Upstream silence alone never ends a session.

Usage:
    dispatcher = LocalDispatcher(local_sock)
    dispatcher.start()
    session = SessionForwarder.create(("10.0.0.5", 4000), "8.8.8.8:53",
                                      "127.0.0.1:1080", dispatcher)
    session.send_upstream(query)
"""

import errno
import logging
import queue
import socket
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from relay_config import IDLE_TIMEOUTS, RECV_BUFFER_SIZE, TIMEOUT, RelayConfig
from socks5_udp import RelayEndpoint, bind_relay_endpoint, format_address, parse_address

logger = logging.getLogger(__name__)

Address = Tuple[str, int]
Binder = Callable[[str, str], RelayEndpoint]

# PySocks reports datagrams from unexpected peers as EAGAIN ("Packet filtered")
_TRANSIENT_READ_ERRNOS = (errno.EAGAIN, errno.EWOULDBLOCK)

_STOP = object()


class QueueClosed(Exception):
    """The consuming thread has exited; nothing more will be forwarded"""
    pass


class SessionCreationError(Exception):
    """A session could not be started (relay association failed)"""
    pass


@dataclass(frozen=True)
class OutboundItem:
    """A reply waiting to be written to a local client."""
    client_address: Address
    payload: bytes


class LocalDispatcher:
    """Process-wide writer of upstream replies to the local socket.

    One thread drains the outbound queue and calls sendto() on the local
    socket, so the socket never has concurrent writers. A send failure
    stops the dispatcher; later submit() calls raise QueueClosed.

    With maxsize > 0 the queue is bounded and the oldest reply is
    dropped when it is full.
    """

    def __init__(self, local_socket, maxsize: int = 0):
        self._socket = local_socket
        self._maxsize = maxsize
        self._queue: "queue.Queue" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._thread: Optional[threading.Thread] = None
        self.sent = 0
        self.dropped = 0

    def start(self) -> None:
        with self._lock:
            if self._thread is not None:
                raise RuntimeError("dispatcher already started")
            self._thread = threading.Thread(target=self.run, name="udp-dispatcher", daemon=True)
        self._thread.start()

    def submit(self, client_address: Address, payload: bytes) -> None:
        """Queue payload for delivery to client_address."""
        with self._lock:
            if self._closed:
                raise QueueClosed("local dispatcher is closed")
            if self._maxsize and self._queue.qsize() >= self._maxsize:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass
            self._queue.put(OutboundItem(client_address, payload))

    def run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            try:
                self._socket.sendto(item.payload, item.client_address)
            except OSError:
                logger.exception(
                    f"Failed to forward response from upstream server to client {format_address(item.client_address)}"
                )
                self._close()
                break
            self.sent += 1
            logger.debug(f"remote => {format_address(item.client_address)} ({len(item.payload)} bytes)")

    def _close(self) -> bool:
        with self._lock:
            was_open = not self._closed
            self._closed = True
        return was_open

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop accepting replies and wait for the queued ones to be written."""
        if self._close():
            self._queue.put(_STOP)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def closed(self) -> bool:
        return self._closed


class UpstreamReader:
    """Relay -> dispatcher pump for one session."""

    def __init__(
        self,
        endpoint: RelayEndpoint,
        client_address: Address,
        dispatcher: LocalDispatcher,
        idle_flag: threading.Event,
        timeout: float = TIMEOUT,
        bufsize: int = RECV_BUFFER_SIZE
    ):
        self._endpoint = endpoint
        self._client_address = client_address
        self._dispatcher = dispatcher
        self._idle_flag = idle_flag
        self._timeout = timeout
        self._bufsize = bufsize
        self.received = 0

    def run(self) -> None:
        client = format_address(self._client_address)
        self._endpoint.set_read_deadline(self._timeout)

        while True:
            try:
                payload, _ = self._endpoint.recv_from(self._bufsize)
            except socket.timeout:
                if self._idle_flag.is_set():
                    logger.debug(f"Reader for {client} observed idle flag, exiting")
                    return
                continue
            except NotImplementedError:
                # PySocks does not reassemble fragmented datagrams (FRAG != 0)
                logger.warning(f"Dropped fragmented datagram from relay for client {client}")
                continue
            except OSError as e:
                if e.errno in _TRANSIENT_READ_ERRNOS:
                    if self._idle_flag.is_set():
                        return
                    continue
                logger.exception(f"Failed to read from relay for client {client}")
                return

            try:
                self._dispatcher.submit(self._client_address, bytes(payload))
            except QueueClosed:
                logger.error(f"Failed to queue response from upstream server for {client}: dispatcher closed")
                return
            self.received += 1


class UpstreamWriter:
    """Inbound queue -> relay pump for one session; owns the idle policy."""

    def __init__(
        self,
        endpoint: RelayEndpoint,
        inbound: "queue.Queue",
        remote_target: Address,
        client_address: Address,
        idle_flag: threading.Event,
        timeout: float = TIMEOUT,
        idle_timeouts: int = IDLE_TIMEOUTS
    ):
        self._endpoint = endpoint
        self._inbound = inbound
        self._remote_target = remote_target
        self._client_address = client_address
        self._idle_flag = idle_flag
        self._timeout = timeout
        self._idle_timeouts = idle_timeouts
        self.timeouts = 0
        self.forwarded = 0

    def run(self) -> None:
        client = format_address(self._client_address)

        while True:
            try:
                payload = self._inbound.get(timeout=self._timeout)
            except queue.Empty:
                self.timeouts += 1
                if self.timeouts >= self._idle_timeouts:
                    self._idle_flag.set()
                    logger.info(
                        f"UDP session {client} idle for {self.timeouts * self._timeout:g}s, shutting down"
                    )
                    return
                continue

            try:
                self._endpoint.send_to(payload, self._remote_target)
            except OSError:
                logger.exception(f"Failed to forward packet from client {client} to upstream server")
                # let the reader hit the broken endpoint instead of polling forever
                self._endpoint.close()
                return
            self.timeouts = 0
            self.forwarded += 1
            logger.debug(f"{client} => {format_address(self._remote_target)} ({len(payload)} bytes)")


class SessionForwarder:
    """Relay state and worker threads for one (client, remote target) pair.

    Build with SessionForwarder.create(); the constructor does not start
    anything.
    """

    def __init__(
        self,
        client_address: Address,
        remote_target: str,
        endpoint: RelayEndpoint,
        dispatcher: LocalDispatcher,
        config: RelayConfig
    ):
        self.client_address = client_address
        self.remote_target = remote_target
        self.config = config
        self.idle_flag = threading.Event()
        self.terminated = threading.Event()

        self._endpoint = endpoint
        self._inbound: "queue.Queue" = queue.Queue()
        self._inbound_lock = threading.Lock()
        self._inbound_closed = False
        self._running = 0
        self._state_lock = threading.Lock()

        self.reader = UpstreamReader(
            endpoint,
            client_address,
            dispatcher,
            self.idle_flag,
            timeout=config.timeout,
            bufsize=config.recv_buffer_size
        )
        self.writer = UpstreamWriter(
            endpoint.clone_handle(),
            self._inbound,
            parse_address(remote_target),
            client_address,
            self.idle_flag,
            timeout=config.timeout,
            idle_timeouts=config.idle_timeouts
        )
        self._threads = []

    @classmethod
    def create(
        cls,
        client_address: Address,
        remote_target: str,
        proxy_address: str,
        dispatcher: LocalDispatcher,
        config: Optional[RelayConfig] = None,
        binder: Optional[Binder] = None
    ) -> "SessionForwarder":
        """Associate a relay endpoint through the proxy and start both pumps.

        Raises:
            SessionCreationError: invalid target or the proxy refused the
                association; no thread has been started
        """
        config = config or RelayConfig()
        binder = binder or bind_relay_endpoint

        try:
            parse_address(remote_target)
        except ValueError as e:
            raise SessionCreationError(f"Invalid remote target {remote_target!r}: {e}") from e

        try:
            endpoint = binder(proxy_address, config.local_bind_address)
        except OSError as e:
            raise SessionCreationError(f"Can't create SOCKS5 datagram endpoint via {proxy_address}: {e}") from e

        try:
            session = cls(client_address, remote_target, endpoint, dispatcher, config)
            session._start()
        except Exception:
            endpoint.close()
            raise
        logger.info(f"New UDP session: {format_address(client_address)} -> {remote_target}")
        return session

    def _start(self) -> None:
        client = format_address(self.client_address)
        self._threads = [
            threading.Thread(target=self._run_reader, name=f"udp-reader-{client}", daemon=True),
            threading.Thread(target=self._run_writer, name=f"udp-writer-{client}", daemon=True),
        ]
        self._running = len(self._threads)
        for t in self._threads:
            t.start()

    def _run_reader(self) -> None:
        try:
            self.reader.run()
        finally:
            self._thread_exited()

    def _run_writer(self) -> None:
        try:
            self.writer.run()
        finally:
            with self._inbound_lock:
                self._inbound_closed = True
            self._thread_exited()

    def _thread_exited(self) -> None:
        with self._state_lock:
            self._running -= 1
            last = self._running == 0
        if last:
            self._endpoint.close()
            self.terminated.set()
            logger.info(f"UDP session terminated: {format_address(self.client_address)} -> {self.remote_target}")

    def send_upstream(self, payload: bytes) -> None:
        """Queue a client payload for the remote target.

        Raises:
            QueueClosed: the writer has exited, the session is dead
        """
        with self._inbound_lock:
            if self._inbound_closed:
                raise QueueClosed(f"session {format_address(self.client_address)} is closed")
            self._inbound.put(payload)

    @property
    def idle(self) -> bool:
        return self.idle_flag.is_set()

    @property
    def accepting(self) -> bool:
        """Whether send_upstream() will still queue payloads."""
        return not self._inbound_closed

    def is_alive(self) -> bool:
        return not self.terminated.is_set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for both threads to exit; returns True once terminated."""
        return self.terminated.wait(timeout)

    def __repr__(self) -> str:
        state = "terminated" if self.terminated.is_set() else ("draining" if self.idle else "active")
        return f"SessionForwarder({format_address(self.client_address)} -> {self.remote_target}, {state})"
