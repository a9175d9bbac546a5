import hashlib
from dataclasses import dataclass, field
from typing import Optional

from ots_federation.federation.credential_store import PeerCredentials
from ots_federation.models.Federation import Federation


@dataclass(frozen=True)
class PeerSnapshot:
    """
    Immutable copy of a peer's desired state, read from the registry in one transaction.

    Connection workers only ever see snapshots, never live ORM rows, so a request changing the row cannot race with a
    worker that is halfway through a handshake.
    """
    id: int
    name: str
    address: str
    port: int
    protocol: str
    enabled: bool
    username: Optional[str] = None
    push_data_types: frozenset = field(default_factory=frozenset)
    credentials: PeerCredentials = field(default_factory=PeerCredentials, repr=False)

    @classmethod
    def from_model(cls, federation: Federation, credentials: PeerCredentials):
        return cls(id=federation.id,
                   name=federation.name,
                   address=federation.address,
                   port=federation.port,
                   protocol=federation.protocol,
                   enabled=federation.enabled,
                   username=federation.username,
                   push_data_types=frozenset(federation.get_push_data_types()),
                   credentials=credentials)

    @property
    def use_tls(self) -> bool:
        return self.protocol == Federation.PROTOCOL_SSL

    def session_fingerprint(self) -> str:
        """
        Everything a live session depends on. When this changes the session is torn down and re-established.

        push_data_types and name are not part of it: routing reads them from the current snapshot.
        """
        digest = hashlib.sha256()
        for part in (self.protocol, self.address, str(self.port), self.username or "",
                     self.credentials.fingerprint()):
            digest.update(part.encode("utf-8") + b"\0")
        return digest.hexdigest()

    def accepts(self, data_type: str) -> bool:
        return data_type in self.push_data_types
