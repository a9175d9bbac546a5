"""
Federation Connection

One outbound session to a federated TAK server:
1. TCP connect, TLS handshake for ssl peers (CA to verify the peer, client certificate for mutual TLS)
2. Streaming auth message when the peer has a username
3. Sender thread draining a bounded outbound queue in FIFO order
4. Receive thread reading whatever the peer sends, used to detect silent peers and closed sockets
5. Heartbeat thread writing TAK pings

A session never reconnects itself. When anything fails it closes, records why, and the supervisor's worker decides
when to try again.
"""

import os
import queue
import socket
import ssl
import tempfile
import threading
import time
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from ots_federation.extensions import logger
from ots_federation.federation.cot import create_auth_message, create_ping_cot
from ots_federation.federation.credential_store import StoredBlob
from ots_federation.federation.errors import PeerConnectionError
from ots_federation.federation.snapshot import PeerSnapshot


class PeerCounters:
    """
    Delivery counts accumulated since the last flush to the registry.

    Sender threads and the router add to them, only the supervisor drains them, so the database columns have a single
    writer.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sent = 0
        self._failed = 0

    def record_sent(self, count: int = 1):
        with self._lock:
            self._sent += count

    def record_failed(self, count: int = 1):
        with self._lock:
            self._failed += count

    def drain(self) -> tuple:
        with self._lock:
            sent, failed = self._sent, self._failed
            self._sent = self._failed = 0
        return sent, failed


def _pem_certificates(blob: StoredBlob, p12_password: Optional[bytes]) -> bytes:
    if blob.is_pkcs12:
        key, certificate, additional = pkcs12.load_key_and_certificates(blob.data, p12_password)
        certificates = ([certificate] if certificate else []) + list(additional or [])
        return b"".join(c.public_bytes(serialization.Encoding.PEM) for c in certificates)
    if b"-----BEGIN" in blob.data:
        return blob.data
    return x509.load_der_x509_certificate(blob.data).public_bytes(serialization.Encoding.PEM)


def _pem_private_key(blob: StoredBlob, p12_password: Optional[bytes]) -> Optional[bytes]:
    if blob.is_pkcs12:
        key, _, _ = pkcs12.load_key_and_certificates(blob.data, p12_password)
    elif b"PRIVATE KEY-----" in blob.data:
        return blob.data
    else:
        key = serialization.load_der_private_key(blob.data, password=None)
    if key is None:
        return None
    return key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8,
                             serialization.NoEncryption())


class FederationConnection:
    def __init__(self, peer: PeerSnapshot, app_config, counters: PeerCounters):
        self.peer = peer
        self.app_config = app_config
        self.counters = counters
        self.socket: Optional[socket.socket] = None
        self.outbound = queue.Queue(maxsize=max(1, int(app_config.get("OTS_FEDERATION_QUEUE_SIZE", 1000))))

        self.connect_timeout = float(app_config.get("OTS_FEDERATION_CONNECT_TIMEOUT", 10))
        self.write_timeout = float(app_config.get("OTS_FEDERATION_WRITE_TIMEOUT", 10))
        self.heartbeat_interval = float(app_config.get("OTS_FEDERATION_HEARTBEAT_INTERVAL", 30))
        self.heartbeat_timeout = float(app_config.get("OTS_FEDERATION_HEARTBEAT_TIMEOUT", 90))
        self.join_timeout = float(app_config.get("OTS_FEDERATION_STOP_GRACE", 5))

        self.closed = threading.Event()
        self.failure: Optional[str] = None
        self.last_received = time.monotonic()
        self._write_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._threads: list[threading.Thread] = []
        self._temp_files: list[str] = []

    # Session setup

    def _build_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        context.check_hostname = bool(self.app_config.get("OTS_FEDERATION_VERIFY_HOSTNAME", True))

        p12_password = self.app_config.get("OTS_FEDERATION_P12_PASSWORD")
        p12_password = p12_password.encode("utf-8") if p12_password else None
        credentials = self.peer.credentials

        if credentials.ca:
            context.load_verify_locations(cadata=_pem_certificates(credentials.ca, p12_password).decode("ascii"))
            logger.debug(f"Loaded CA certificate for {self.peer.name}")

        if credentials.client_cert:
            certificate_pem = _pem_certificates(credentials.client_cert, p12_password)
            key_pem = None
            if credentials.client_key:
                key_pem = _pem_private_key(credentials.client_key, p12_password)
            elif credentials.client_cert.is_pkcs12 or b"PRIVATE KEY-----" in credentials.client_cert.data:
                key_pem = _pem_private_key(credentials.client_cert, p12_password)

            if key_pem:
                # load_cert_chain only reads files
                fd, chain_file = tempfile.mkstemp(suffix='.pem')
                self._temp_files.append(chain_file)
                os.chmod(chain_file, 0o600)
                with os.fdopen(fd, "wb") as f:
                    f.write(certificate_pem + b"\n" + key_pem)
                context.load_cert_chain(certfile=chain_file)
                self._cleanup_temp_files()
                logger.debug(f"Loaded client certificate for {self.peer.name}")
            else:
                logger.warning(f"{self.peer.name} has a client certificate but no private key, "
                               f"connecting without mutual TLS")

        return context

    def connect(self):
        """
        Open the session and start its threads.

        Raises:
            PeerConnectionError: TCP connect, TLS handshake, certificate loading or the auth write failed
        """
        logger.info(f"Connecting to federation server: {self.peer.name} "
                    f"({self.peer.address}:{self.peer.port}) via {self.peer.protocol.upper()}")

        raw_socket = None
        try:
            raw_socket = socket.create_connection((self.peer.address, self.peer.port), timeout=self.connect_timeout)
            with self._state_lock:
                self.socket = raw_socket
            if self.closed.is_set():
                raise PeerConnectionError("Connection aborted")

            raw_socket.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

            if self.peer.use_tls:
                context = self._build_ssl_context()
                wrapped = context.wrap_socket(raw_socket, server_hostname=self.peer.address)
                with self._state_lock:
                    self.socket = wrapped

            self.socket.settimeout(self.write_timeout)

            if self.peer.username:
                self._write(create_auth_message(self.peer.username, self.peer.credentials.password,
                                                self.app_config.get("OTS_NODE_ID", "")))

        except PeerConnectionError:
            self._close_socket()
            self._cleanup_temp_files()
            raise
        except ssl.SSLError as e:
            self._close_socket()
            self._cleanup_temp_files()
            raise PeerConnectionError(f"TLS handshake with {self.peer.address}:{self.peer.port} failed: {e}") from e
        except (OSError, ValueError) as e:
            self._close_socket()
            self._cleanup_temp_files()
            raise PeerConnectionError(f"Failed to connect to {self.peer.address}:{self.peer.port}: {e}") from e

        self.last_received = time.monotonic()
        logger.info(f"Successfully connected to federation server: {self.peer.name}")
        self.start_threads()

    def start_threads(self):
        """Start background threads for sending, receiving, and heartbeat"""
        for target, name in ((self._send_loop, "send"), (self._receive_loop, "receive"),
                             (self._heartbeat_loop, "heartbeat")):
            thread = threading.Thread(target=target, daemon=True, name=f"Federation-{self.peer.id}-{name}")
            self._threads.append(thread)
            thread.start()

    # Session state

    def fail(self, cause: str):
        """Mark the session dead. The first cause wins"""
        with self._state_lock:
            if self.failure is None and not self.closed.is_set():
                self.failure = cause
                logger.warning(f"Federation session to {self.peer.name} failed: {cause}")
        self.closed.set()
        self._shutdown_socket()

    def abort(self):
        """Called from other threads to interrupt connect, handshake or a running session"""
        self.closed.set()
        self._shutdown_socket()

    def wait_closed(self) -> Optional[str]:
        self.closed.wait()
        return self.failure

    def offer(self, payload: bytes) -> bool:
        """Queue a payload without blocking. False means the queue is full or the session is gone"""
        if self.closed.is_set():
            return False
        try:
            self.outbound.put_nowait(payload)
            return True
        except queue.Full:
            return False

    def disconnect(self):
        """Close the session, wait for its threads, and count anything still queued as failed"""
        logger.info(f"Disconnecting from federation server: {self.peer.name}")
        self.closed.set()
        self._close_socket()

        for thread in self._threads:
            if thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout=self.join_timeout)

        dropped = 0
        while True:
            try:
                self.outbound.get_nowait()
                dropped += 1
            except queue.Empty:
                break
        if dropped:
            self.counters.record_failed(dropped)
            logger.warning(f"Dropped {dropped} queued messages for {self.peer.name}")

        self._cleanup_temp_files()

    def _shutdown_socket(self):
        with self._state_lock:
            sock = self.socket
        if sock:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                # Not connected yet or already closed
                pass

    def _close_socket(self):
        self._shutdown_socket()
        with self._state_lock:
            sock, self.socket = self.socket, None
        if sock:
            try:
                sock.close()
            except OSError as e:
                logger.error(f"Error closing socket: {e}")

    def _cleanup_temp_files(self):
        for temp_file in self._temp_files:
            if os.path.exists(temp_file):
                try:
                    os.remove(temp_file)
                    logger.debug(f"Removed temporary file: {temp_file}")
                except OSError as e:
                    logger.error(f"Failed to remove temporary file {temp_file}: {e}")
        self._temp_files = []

    # Threads

    def _write(self, data: bytes):
        with self._write_lock:
            sock = self.socket
            if sock is None:
                raise OSError("Socket is closed")
            sock.sendall(data)

    def _send_loop(self):
        logger.info(f"Starting send loop for federation server: {self.peer.name}")

        while not self.closed.is_set():
            try:
                payload = self.outbound.get(timeout=0.5)
            except queue.Empty:
                continue

            try:
                self._write(payload)
                self.counters.record_sent()
            except OSError as e:
                self.counters.record_failed()
                self.fail(f"Write to {self.peer.address}:{self.peer.port} failed: {e}")
                break

        logger.info(f"Send loop stopped for federation server: {self.peer.name}")

    def _receive_loop(self):
        """Reads and discards inbound bytes. Inbound federation traffic is not processed on outbound sessions"""
        logger.info(f"Starting receive loop for federation server: {self.peer.name}")

        while not self.closed.is_set():
            sock = self.socket
            if sock is None:
                break
            try:
                data = sock.recv(8192)
                if not data:
                    self.fail(f"Connection closed by {self.peer.name}")
                    break
                self.last_received = time.monotonic()
            except socket.timeout:
                continue
            except (OSError, ValueError) as e:
                self.fail(f"Error receiving from {self.peer.name}: {e}")
                break

        logger.info(f"Receive loop stopped for federation server: {self.peer.name}")

    def _heartbeat_loop(self):
        logger.info(f"Starting heartbeat loop for federation server: {self.peer.name}")

        node_id = self.app_config.get("OTS_NODE_ID", self.peer.name)
        version = self.app_config.get("OTS_VERSION", "1.0.0")
        interval = max(self.heartbeat_interval, 0.1)

        while not self.closed.is_set():
            silent_for = time.monotonic() - self.last_received
            if self.heartbeat_timeout > 0 and silent_for > self.heartbeat_timeout:
                self.fail(f"Heartbeat timeout: nothing received from {self.peer.name} for {silent_for:.0f}s")
                break

            try:
                self._write(create_ping_cot(node_id, interval, version))
                logger.debug(f"Sent heartbeat to {self.peer.name}")
            except OSError as e:
                self.fail(f"Heartbeat to {self.peer.name} failed: {e}")
                break

            self.closed.wait(min(interval, self.heartbeat_timeout) if self.heartbeat_timeout > 0 else interval)

        logger.info(f"Heartbeat loop stopped for federation server: {self.peer.name}")
