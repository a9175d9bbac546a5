from dataclasses import dataclass
from typing import Optional

from ots_federation.extensions import logger
from ots_federation.models.Federation import Federation


@dataclass(frozen=True)
class FederationEvent:
    data_type: str
    payload: bytes
    uid: Optional[str] = None


class MessageRouter:
    """
    Fans outbound events out to every connected peer that accepts the event's data type.

    publish() only enqueues. Each peer's sender thread writes its own queue in FIFO order, so a slow peer never delays
    the others. A full queue rejects the newest event and counts it as failed for that peer.
    """

    def __init__(self, supervisor):
        self.supervisor = supervisor

    def publish(self, event: FederationEvent) -> int:
        """Returns how many peers accepted the event. Never raises"""
        if event.data_type not in Federation.DATA_TYPES:
            logger.warning(f"Dropping federation event with unknown data type {event.data_type}")
            return 0

        payload = event.payload.encode("utf-8") if isinstance(event.payload, str) else event.payload

        accepted = 0
        for worker in self.supervisor.workers():
            try:
                if not worker.connected or not worker.snapshot.accepts(event.data_type):
                    continue

                if worker.offer(payload):
                    accepted += 1
                else:
                    worker.counters.record_failed()
                    logger.debug(f"Queue for {worker.snapshot.name} is full, dropped {event.data_type} event")
            except Exception as e:
                logger.error(f"Failed to route {event.data_type} event to federation {worker.peer_id}: {e}",
                             exc_info=True)
                worker.counters.record_failed()

        return accepted
