import json
import datetime
from dataclasses import dataclass
from typing import Optional

from ots_federation.extensions import db
from ots_federation.functions import utcnow
from sqlalchemy import Integer, String, Boolean, DateTime, TEXT
from sqlalchemy.orm import Mapped, mapped_column


@dataclass
class Federation(db.Model):
    """
    An outbound federation peer.

    Configuration columns are written by the Control API. connection_status, last_connected, last_error and the
    message counters belong to the connection supervisor and message router and are never set from a request.
    Passwords and certificates live in the CredentialStore, not in this table.
    """
    __tablename__ = "federations"

    PROTOCOL_TCP = "tcp"
    PROTOCOL_SSL = "ssl"
    PROTOCOLS = (PROTOCOL_TCP, PROTOCOL_SSL)

    DATA_TYPE_COT = "cot"
    DATA_TYPE_CHAT = "chat"
    DATA_TYPE_MISSIONS = "missions"
    DATA_TYPE_DATAPACKAGES = "datapackages"
    DATA_TYPE_VIDEO = "video"
    DATA_TYPES = (DATA_TYPE_COT, DATA_TYPE_CHAT, DATA_TYPE_MISSIONS, DATA_TYPE_DATAPACKAGES, DATA_TYPE_VIDEO)

    STATUS_DISCONNECTED = "disconnected"
    STATUS_CONNECTING = "connecting"
    STATUS_CONNECTED = "connected"
    STATUS_ERROR = "error"
    STATUSES = (STATUS_DISCONNECTED, STATUS_CONNECTING, STATUS_CONNECTED, STATUS_ERROR)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str] = mapped_column(String(255), nullable=False)  # IP or hostname
    port: Mapped[int] = mapped_column(Integer, nullable=False, default=8089)
    protocol: Mapped[str] = mapped_column(String(10), nullable=False, default=PROTOCOL_SSL)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    username: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # JSON array, e.g. ["cot", "chat"]
    push_data_types: Mapped[str] = mapped_column(TEXT, nullable=False, default='["cot"]')

    connection_status: Mapped[str] = mapped_column(String(50), nullable=False, default=STATUS_DISCONNECTED)
    last_connected: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    messages_sent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    messages_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    notes: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=utcnow,
                                                          onupdate=utcnow, nullable=False)

    def get_push_data_types(self) -> list:
        try:
            data_types = json.loads(self.push_data_types)
        except (json.JSONDecodeError, TypeError):
            return []
        return [data_type for data_type in data_types if data_type in self.DATA_TYPES]

    def set_push_data_types(self, data_types):
        # Stored in the canonical order so equal sets serialize identically
        self.push_data_types = json.dumps([data_type for data_type in self.DATA_TYPES if data_type in set(data_types)])

    def serialize(self):
        return {
            'id': self.id,
            'name': self.name,
            'address': self.address,
            'port': self.port,
            'protocol': self.protocol,
            'enabled': self.enabled,
            'username': self.username,
            'push_data_types': self.get_push_data_types(),
            'connection_status': self.connection_status,
            'last_connected': self.last_connected.isoformat() if self.last_connected else None,
            'last_error': self.last_error,
            'messages_sent': self.messages_sent,
            'messages_failed': self.messages_failed,
            'notes': self.notes,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Federation {self.name} ({self.protocol}://{self.address}:{self.port})>"
