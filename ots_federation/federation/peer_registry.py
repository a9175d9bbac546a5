"""
Peer Registry

Durable peer definitions in the federations table plus the credential store that holds their secrets. The Control API
calls the configuration methods from inside its request context. The connection supervisor calls the status and
counter methods from its own threads, and those push their own app context.

Only the supervisor side ever writes connection_status, last_connected, last_error, messages_sent or messages_failed.
"""

import threading
from typing import Optional

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.datastructures import MultiDict

from ots_federation.extensions import db, logger
from ots_federation.federation.credential_store import CredentialStore
from ots_federation.federation.errors import ValidationError, NotFoundError, StorageError, FederationError
from ots_federation.federation.snapshot import PeerSnapshot
from ots_federation.forms.federation_form import FederationForm
from ots_federation.functions import utcnow
from ots_federation.models.Federation import Federation

_UNSET = object()

CONFIG_FIELDS = ('name', 'address', 'port', 'protocol', 'enabled', 'username', 'password', 'notes', 'push_data_types')

CREATE_DEFAULTS = {
    'port': 8089,
    'protocol': Federation.PROTOCOL_SSL,
    'enabled': True,
    'push_data_types': [Federation.DATA_TYPE_COT],
}


class PeerRegistry:
    def __init__(self, app, credential_store: CredentialStore):
        self.app = app
        self.credential_store = credential_store
        self._locks = {}
        self._locks_lock = threading.Lock()

    def _peer_lock(self, peer_id: int) -> threading.Lock:
        with self._locks_lock:
            return self._locks.setdefault(peer_id, threading.Lock())

    def _drop_peer_lock(self, peer_id: int):
        with self._locks_lock:
            self._locks.pop(peer_id, None)

    # Control API side

    def serialize(self, federation: Federation) -> dict:
        peer = federation.serialize()
        peer.update(self.credential_store.presence(federation.id))
        return peer

    def list(self, page: int = 1, per_page: int = 10) -> dict:
        try:
            pagination = db.paginate(select(Federation).order_by(Federation.id), page=page, per_page=per_page,
                                     error_out=False)
        except SQLAlchemyError as e:
            logger.error(f"Failed to list federations: {e}", exc_info=True)
            raise StorageError(f"Failed to list federations: {e}") from e

        return {
            'results': [self.serialize(federation) for federation in pagination.items],
            'num_pages': pagination.pages,
            'total_pages': pagination.pages,
            'current_page': pagination.page,
            'per_page': pagination.per_page,
        }

    def get(self, peer_id: int) -> Federation:
        try:
            federation = db.session.get(Federation, peer_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load federation {peer_id}: {e}") from e

        if not federation:
            raise NotFoundError(f"Federation {peer_id} not found")
        return federation

    def _get_for_update(self, peer_id: int) -> Federation:
        # Row lock on databases that support SELECT ... FOR UPDATE, the per-peer lock covers the rest
        query = (select(Federation).where(Federation.id == peer_id).with_for_update()
                 .execution_options(populate_existing=True))
        try:
            federation = db.session.execute(query).scalar_one_or_none()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise StorageError(f"Failed to load federation {peer_id}: {e}") from e

        if not federation:
            db.session.rollback()
            raise NotFoundError(f"Federation {peer_id} not found")
        return federation

    @staticmethod
    def _current_values(federation: Federation) -> dict:
        return {
            'name': federation.name,
            'address': federation.address,
            'port': federation.port,
            'protocol': federation.protocol,
            'enabled': federation.enabled,
            'username': federation.username,
            'notes': federation.notes,
            'push_data_types': federation.get_push_data_types(),
        }

    @staticmethod
    def validate(current: dict, spec) -> dict:
        """
        Merge a peer definition onto the current values and validate the result with FederationForm.

        Keys that are absent or null keep their current value. Status and counter keys are ignored.

        Raises:
            ValidationError: With a field -> messages dict
        """
        if not isinstance(spec, dict):
            raise ValidationError("No data provided")

        merged = dict(current)
        for field in CONFIG_FIELDS:
            if spec.get(field) is not None:
                merged[field] = spec[field]

        data_types = merged.get('push_data_types') or []
        if isinstance(data_types, str):
            data_types = [data_types]
        if not isinstance(data_types, (list, tuple, set)):
            raise ValidationError("push_data_types must be a list",
                                  {'push_data_types': ["Must be a list of data types."]})

        formdata = MultiDict()
        for field in CONFIG_FIELDS:
            if field == 'push_data_types':
                for data_type in data_types:
                    formdata.add(field, str(data_type))
            elif merged.get(field) is not None:
                formdata.add(field, str(merged[field]))

        form = FederationForm(formdata=formdata, meta={'csrf': False})
        if not form.validate():
            details = "; ".join(f"{field}: {' '.join(messages)}" for field, messages in form.errors.items())
            raise ValidationError(f"Invalid federation: {details}", form.errors)

        return {
            'name': form.name.data.strip(),
            'address': form.address.data.strip(),
            'port': form.port.data,
            'protocol': form.protocol.data,
            'enabled': form.enabled.data,
            'username': form.username.data or None,
            'password': form.password.data or None,
            'notes': form.notes.data or None,
            'push_data_types': [str(data_type) for data_type in data_types],
        }

    @staticmethod
    def _apply(federation: Federation, values: dict):
        federation.name = values['name']
        federation.address = values['address']
        federation.port = values['port']
        federation.protocol = values['protocol']
        federation.enabled = values['enabled']
        federation.username = values['username']
        federation.notes = values['notes']
        federation.set_push_data_types(values['push_data_types'])

    def create(self, spec) -> Federation:
        values = self.validate(CREATE_DEFAULTS, spec)

        federation = Federation()
        self._apply(federation, values)
        federation.connection_status = Federation.STATUS_DISCONNECTED

        peer_id = None
        try:
            db.session.add(federation)
            db.session.flush()
            peer_id = federation.id
            if values['password']:
                self.credential_store.save_password(peer_id, values['password'])
            db.session.commit()
        except (SQLAlchemyError, StorageError) as e:
            db.session.rollback()
            if peer_id is not None:
                self.credential_store.delete(peer_id)
            logger.error(f"Failed to create federation {values['name']}: {e}", exc_info=True)
            if isinstance(e, StorageError):
                raise
            raise StorageError(f"Failed to create federation: {e}") from e

        logger.info(f"Created federation {federation.name} ({federation.protocol}://"
                    f"{federation.address}:{federation.port})")
        return federation

    def update(self, peer_id: int, spec) -> Federation:
        """
        Apply changes to an existing peer. Concurrent updates of the same peer run one after the other and each sees
        the values the previous one committed. An empty or absent password keeps the stored one.
        """
        with self._peer_lock(peer_id):
            federation = self._get_for_update(peer_id)
            try:
                values = self.validate(self._current_values(federation), spec)
            except ValidationError:
                db.session.rollback()
                raise

            old_password = _UNSET
            try:
                self._apply(federation, values)
                if values['password']:
                    old_password = self.credential_store.load(peer_id).password
                    self.credential_store.save_password(peer_id, values['password'])
                db.session.commit()
            except (SQLAlchemyError, StorageError) as e:
                db.session.rollback()
                if old_password is not _UNSET:
                    self.credential_store.save_password(peer_id, old_password)
                logger.error(f"Failed to update federation {peer_id}: {e}", exc_info=True)
                if isinstance(e, StorageError):
                    raise
                raise StorageError(f"Failed to update federation: {e}") from e

            logger.info(f"Updated federation {federation.name}")
            return federation

    def delete(self, peer_id: int):
        with self._peer_lock(peer_id):
            federation = self._get_for_update(peer_id)
            name = federation.name
            try:
                db.session.delete(federation)
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"Failed to delete federation {peer_id}: {e}", exc_info=True)
                raise StorageError(f"Failed to delete federation: {e}") from e

            self.credential_store.delete(peer_id)

        self._drop_peer_lock(peer_id)
        logger.info(f"Deleted federation {name}")

    def toggle(self, peer_id: int) -> bool:
        with self._peer_lock(peer_id):
            federation = self._get_for_update(peer_id)
            federation.enabled = not federation.enabled
            try:
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f"Failed to toggle federation {peer_id}: {e}", exc_info=True)
                raise StorageError(f"Failed to toggle federation: {e}") from e

            logger.info(f"Federation {federation.name} {'enabled' if federation.enabled else 'disabled'}")
            return federation.enabled

    def upload_cert(self, peer_id: int, cert_type: str, filename: str, data: bytes) -> Federation:
        """Store a certificate in one slot. The supervisor notices the new material on its next pass"""
        with self._peer_lock(peer_id):
            federation = self._get_for_update(peer_id)
            try:
                self.credential_store.save_certificate(peer_id, cert_type, filename, data)
            except FederationError:
                db.session.rollback()
                raise

            federation.updated_at = utcnow()
            try:
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                raise StorageError(f"Failed to update federation: {e}") from e

            logger.info(f"Uploaded {cert_type} for federation {federation.name}")
            return federation

    def status_counts(self) -> dict:
        counts = {status: 0 for status in Federation.STATUSES}
        try:
            rows = db.session.execute(select(Federation.connection_status, func.count(Federation.id))
                                      .group_by(Federation.connection_status)).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to count federations: {e}") from e

        for status, count in rows:
            counts[status] = count
        return counts

    def count_enabled(self) -> int:
        try:
            return db.session.scalar(select(func.count(Federation.id)).where(Federation.enabled.is_(True)))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to count federations: {e}") from e

    # Connection supervisor side

    def snapshots(self):
        with self.app.app_context():
            try:
                federations = db.session.execute(select(Federation).order_by(Federation.id)).scalars().all()
                return [PeerSnapshot.from_model(federation, self.credential_store.load(federation.id))
                        for federation in federations]
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to read federations: {e}") from e

    def set_status(self, peer_id: int, status: str, last_connected=_UNSET, last_error=_UNSET) -> Optional[dict]:
        """Record a status transition. Returns the serialized peer, or None when it no longer exists"""
        values = {'connection_status': status, 'updated_at': Federation.updated_at}
        if last_connected is not _UNSET:
            values['last_connected'] = last_connected
        if last_error is not _UNSET:
            values['last_error'] = last_error

        with self.app.app_context():
            try:
                result = db.session.execute(update(Federation).where(Federation.id == peer_id).values(**values))
                db.session.commit()
                if not result.rowcount:
                    return None
                federation = db.session.get(Federation, peer_id)
                return self.serialize(federation) if federation else None
            except SQLAlchemyError as e:
                db.session.rollback()
                raise StorageError(f"Failed to update status of federation {peer_id}: {e}") from e

    def add_counters(self, peer_id: int, sent: int, failed: int):
        with self.app.app_context():
            try:
                db.session.execute(update(Federation).where(Federation.id == peer_id).values(
                    messages_sent=Federation.messages_sent + sent,
                    messages_failed=Federation.messages_failed + failed,
                    updated_at=Federation.updated_at))
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                raise StorageError(f"Failed to update counters of federation {peer_id}: {e}") from e

    def reset_statuses(self):
        with self.app.app_context():
            try:
                db.session.execute(update(Federation)
                                   .where(Federation.connection_status != Federation.STATUS_DISCONNECTED)
                                   .values(connection_status=Federation.STATUS_DISCONNECTED,
                                           updated_at=Federation.updated_at))
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                raise StorageError(f"Failed to reset federation statuses: {e}") from e
