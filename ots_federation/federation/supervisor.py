"""
Connection Supervisor

Keeps exactly one worker thread per enabled federation peer, keyed by peer id. A reconciliation thread compares the
registry with the running workers every OTS_FEDERATION_RECONCILE_INTERVAL seconds (or sooner when woken by the
Control API) and only starts or stops workers. All network I/O happens in the workers.

connection_status transitions:

    disconnected -> connecting -> connected -> error -> connecting -> ...
    connecting | connected | error -> disconnected    (disable or delete)
"""

import threading
import time
from typing import Optional

from ots_federation.extensions import logger, socketio
from ots_federation.federation.backoff import ExponentialBackoff
from ots_federation.federation.connection import FederationConnection, PeerCounters
from ots_federation.federation.errors import FederationError, PeerConnectionError
from ots_federation.federation.peer_registry import PeerRegistry
from ots_federation.federation.snapshot import PeerSnapshot
from ots_federation.functions import utcnow
from ots_federation.models.Federation import Federation


class PeerWorker:
    """Connect, hold the session, back off, repeat. Runs until stop() for one peer"""

    def __init__(self, supervisor, peer: PeerSnapshot):
        self.supervisor = supervisor
        self.peer_id = peer.id
        self.snapshot = peer
        self.fingerprint = peer.session_fingerprint()
        self.counters = PeerCounters()
        config = supervisor.app.config
        self.backoff = ExponentialBackoff(base=float(config.get("OTS_FEDERATION_BACKOFF_BASE", 5)),
                                          cap=float(config.get("OTS_FEDERATION_BACKOFF_CAP", 300)))
        self.connection: Optional[FederationConnection] = None
        self.connected = False
        self.attempts = 0

        self._stop = threading.Event()
        self._report_lock = threading.Lock()
        self._thread = threading.Thread(target=self.run, daemon=True, name=f"FederationWorker-{peer.id}")

    def start(self):
        self._thread.start()

    def stop(self):
        # Once this returns the worker never writes status again
        with self._report_lock:
            self._stop.set()
        connection = self.connection
        if connection:
            connection.abort()

    def join(self, timeout: float) -> bool:
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        return not self._thread.is_alive()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def update_snapshot(self, peer: PeerSnapshot):
        """Swap in new routing settings without touching the session"""
        self.snapshot = peer

    def offer(self, payload: bytes) -> bool:
        connection = self.connection
        if not self.connected or connection is None:
            return False
        return connection.offer(payload)

    def _report(self, status: str, **fields):
        with self._report_lock:
            if self._stop.is_set():
                return
            self.supervisor.report_status(self.peer_id, status, **fields)

    def run(self):
        logger.info(f"Starting federation worker for {self.snapshot.name}")

        while not self._stop.is_set():
            peer = self.snapshot
            self.attempts += 1
            self._report(Federation.STATUS_CONNECTING)

            connection = FederationConnection(peer, self.supervisor.app.config, self.counters)
            self.connection = connection
            try:
                if self._stop.is_set():
                    break
                connection.connect()
                if self._stop.is_set():
                    break

                self.backoff.reset()
                self.connected = True
                self._report(Federation.STATUS_CONNECTED, last_connected=utcnow(), last_error=None)
                cause = connection.wait_closed() or "Connection closed"
            except PeerConnectionError as e:
                cause = str(e)
            except Exception as e:
                logger.error(f"Unexpected error in federation worker for {peer.name}: {e}", exc_info=True)
                cause = f"Unexpected error: {e}"
            finally:
                self.connected = False
                connection.disconnect()
                self.connection = None

            if self._stop.is_set():
                break

            delay = self.backoff.next_delay()
            self._report(Federation.STATUS_ERROR, last_error=cause)
            logger.warning(f"Connection to {peer.name} failed ({cause}), retrying in {delay:.1f}s")
            self._stop.wait(delay)

        logger.info(f"Federation worker stopped for {self.snapshot.name}")


class ConnectionSupervisor:
    def __init__(self, app, registry: PeerRegistry):
        self.app = app
        self.registry = registry
        self.running = False
        self.reconcile_interval = float(app.config.get("OTS_FEDERATION_RECONCILE_INTERVAL", 5))
        self.stop_grace = float(app.config.get("OTS_FEDERATION_STOP_GRACE", 5))
        self.last_reconcile: Optional[float] = None

        self._workers: dict[int, PeerWorker] = {}
        self._lock = threading.RLock()
        self._wake = threading.Event()
        self._monitor_thread: Optional[threading.Thread] = None

    def start(self):
        if not self.app.config.get("OTS_ENABLE_FEDERATION", True):
            logger.info("Federation is disabled")
            return

        logger.info("Starting Federation Supervisor")
        # Statuses left over from a previous run describe sockets that no longer exist
        self.registry.reset_statuses()
        self.running = True
        self._monitor_thread = threading.Thread(target=self._reconcile_loop, daemon=True,
                                                name="FederationSupervisor")
        self._monitor_thread.start()

    def stop(self):
        logger.info("Stopping Federation Supervisor")
        self.running = False
        self._wake.set()

        # A reconcile pass already in flight must finish before the workers are collected
        if self._monitor_thread and self._monitor_thread.is_alive():
            self._monitor_thread.join(timeout=self.stop_grace * 2)
            if self._monitor_thread.is_alive():
                logger.warning(f"Federation reconcile loop did not stop within {self.stop_grace * 2}s")

        with self._lock:
            peer_ids = list(self._workers.keys())
        for peer_id in peer_ids:
            self.disconnect(peer_id)
        logger.info("Federation Supervisor stopped")

    def wake(self):
        """Ask for a reconciliation pass now instead of at the next interval"""
        self._wake.set()

    def _reconcile_loop(self):
        logger.info("Starting federation reconcile loop")

        while self.running:
            try:
                self.reconcile_all()
                self.flush_counters()
            except Exception as e:
                logger.error(f"Error in federation reconcile loop: {e}", exc_info=True)

            self._wake.wait(self.reconcile_interval)
            self._wake.clear()

        logger.info("Federation reconcile loop stopped")

    def reconcile_all(self):
        peers = self.registry.snapshots()
        known = set()
        for peer in peers:
            known.add(peer.id)
            self.reconcile(peer)

        for peer_id in list(self._workers.keys()):
            if peer_id not in known:
                logger.info(f"Federation {peer_id} was deleted, stopping its connection")
                self.disconnect(peer_id, record_status=False)

        self.last_reconcile = time.monotonic()

    def reconcile(self, peer: PeerSnapshot):
        """Bring the running worker for one peer in line with its desired state. Returns without doing network I/O"""
        with self._lock:
            worker = self._workers.get(peer.id)

            if not peer.enabled:
                if worker:
                    logger.info(f"Federation {peer.name} was disabled")
                    self.disconnect(peer.id)
                return

            if worker and worker.fingerprint != peer.session_fingerprint():
                logger.info(f"Configuration of {peer.name} changed, re-establishing the session")
                self.disconnect(peer.id, record_status=False)
                worker = None

            if worker:
                worker.update_snapshot(peer)
            else:
                self.connect(peer)

    def connect(self, peer: PeerSnapshot) -> Optional[PeerWorker]:
        """
        Start the worker that connects to the peer and keeps retrying with backoff while it is enabled.

        The first attempt happens on the worker thread, so this returns immediately. Returns None once the supervisor
        has been stopped.
        """
        with self._lock:
            if not self.running:
                logger.debug(f"Federation Supervisor is stopped, not connecting to {peer.name}")
                return None

            existing = self._workers.get(peer.id)
            if existing and not existing.stopped:
                return existing

            worker = PeerWorker(self, peer)
            self._workers[peer.id] = worker
            worker.start()
            return worker

    def disconnect(self, peer_id: int, record_status: bool = True):
        """Stop the peer's worker and close its session. Safe to call for peers without a worker"""
        with self._lock:
            worker = self._workers.pop(peer_id, None)

        if worker:
            worker.stop()
            if not worker.join(self.stop_grace):
                logger.warning(f"Federation worker {peer_id} did not stop within {self.stop_grace}s")
            self._flush_worker_counters(peer_id, worker)

        if record_status or worker is None:
            self.report_status(peer_id, Federation.STATUS_DISCONNECTED)

    def workers(self) -> list:
        with self._lock:
            return list(self._workers.values())

    def get_worker(self, peer_id: int) -> Optional[PeerWorker]:
        with self._lock:
            return self._workers.get(peer_id)

    def report_status(self, peer_id: int, status: str, **fields):
        try:
            federation = self.registry.set_status(peer_id, status, **fields)
        except FederationError as e:
            logger.error(f"Failed to update federation {peer_id} status to {status}: {e}")
            return

        if federation:
            try:
                socketio.emit('federation_status', federation, namespace='/socket.io')
            except Exception as e:
                logger.debug(f"Failed to emit federation status: {e}")

    def _flush_worker_counters(self, peer_id: int, worker: PeerWorker):
        sent, failed = worker.counters.drain()
        if sent or failed:
            try:
                self.registry.add_counters(peer_id, sent, failed)
            except FederationError as e:
                logger.error(f"Failed to save message counters for federation {peer_id}: {e}")
                worker.counters.record_sent(sent)
                worker.counters.record_failed(failed)

    def flush_counters(self):
        for worker in self.workers():
            self._flush_worker_counters(worker.peer_id, worker)

    def test_connection(self, peer: PeerSnapshot) -> float:
        """
        One connection attempt outside the worker, used by the connection test endpoint. Status is not touched.

        Returns:
            Seconds taken to establish the session

        Raises:
            PeerConnectionError
        """
        connection = FederationConnection(peer, self.app.config, PeerCounters())
        start_time = time.monotonic()
        try:
            connection.connect()
            return time.monotonic() - start_time
        finally:
            connection.disconnect()
