"""
Credential Store

Holds the write-only secrets of each federation peer on disk:

    <OTS_FEDERATION_CREDENTIALS_FOLDER>/<peer id>/password
    <OTS_FEDERATION_CREDENTIALS_FOLDER>/<peer id>/ca.pem
    <OTS_FEDERATION_CREDENTIALS_FOLDER>/<peer id>/client_cert.p12
    <OTS_FEDERATION_CREDENTIALS_FOLDER>/<peer id>/client_key.key

Each certificate slot holds at most one file. The API only ever sees presence flags, the connection supervisor reads
the blobs through load().
"""

import hashlib
import os
import shutil
import tempfile
from dataclasses import dataclass
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from ots_federation.extensions import logger
from ots_federation.federation.errors import ValidationError, StorageError

CERT_TYPE_CA = "ca"
CERT_TYPE_CLIENT_CERT = "client_cert"
CERT_TYPE_CLIENT_KEY = "client_key"
CERT_TYPES = (CERT_TYPE_CA, CERT_TYPE_CLIENT_CERT, CERT_TYPE_CLIENT_KEY)

PKCS12_EXTENSIONS = ("p12", "pfx")
PASSWORD_FILE = "password"


@dataclass(frozen=True)
class StoredBlob:
    extension: str
    data: bytes

    @property
    def is_pkcs12(self) -> bool:
        return self.extension in PKCS12_EXTENSIONS


@dataclass(frozen=True)
class PeerCredentials:
    password: Optional[str] = None
    ca: Optional[StoredBlob] = None
    client_cert: Optional[StoredBlob] = None
    client_key: Optional[StoredBlob] = None

    def fingerprint(self) -> str:
        """Digest of every secret, used to notice that a running session was started with stale material"""
        digest = hashlib.sha256()
        digest.update((self.password or "").encode("utf-8") + b"\0")
        for blob in (self.ca, self.client_cert, self.client_key):
            if blob:
                digest.update(blob.extension.encode("utf-8") + b":" + hashlib.sha256(blob.data).digest())
            digest.update(b"\0")
        return digest.hexdigest()


class CredentialStore:
    def __init__(self, root: str, allowed_extensions=None, p12_password: Optional[str] = None):
        self.root = root
        self.allowed_extensions = [e.strip().lower().lstrip(".") for e in
                                   (allowed_extensions or ("pem", "crt", "key", "cer", "p12", "pfx"))]
        self.p12_password = p12_password

    @classmethod
    def from_config(cls, config):
        return cls(config.get("OTS_FEDERATION_CREDENTIALS_FOLDER"),
                   allowed_extensions=config.get("ALLOWED_CERT_EXTENSIONS"),
                   p12_password=config.get("OTS_FEDERATION_P12_PASSWORD"))

    def _peer_folder(self, peer_id: int) -> str:
        return os.path.join(self.root, str(int(peer_id)))

    def _slot_files(self, peer_id: int, cert_type: str) -> list:
        folder = self._peer_folder(peer_id)
        if not os.path.isdir(folder):
            return []
        return [os.path.join(folder, f) for f in os.listdir(folder)
                if os.path.splitext(f)[0] == cert_type and f != PASSWORD_FILE]

    def _write(self, peer_id: int, filename: str, data: bytes):
        folder = self._peer_folder(peer_id)
        try:
            os.makedirs(folder, mode=0o700, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=folder, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.chmod(temp_path, 0o600)
                os.replace(temp_path, os.path.join(folder, filename))
            except BaseException:
                if os.path.exists(temp_path):
                    os.remove(temp_path)
                raise
        except OSError as e:
            logger.error(f"Failed to write {filename} for federation {peer_id}: {e}", exc_info=True)
            raise StorageError(f"Failed to store {filename}: {e}") from e

    def validate_certificate(self, cert_type: str, filename: str, data: bytes) -> str:
        """
        Check an uploaded certificate file and return its normalized extension.

        Raises:
            ValidationError: Unknown slot, unsupported extension, or contents that don't match the slot
        """
        if cert_type not in CERT_TYPES:
            raise ValidationError(f"Invalid cert_type. Must be one of {', '.join(CERT_TYPES)}",
                                  {"cert_type": ["Not a valid choice."]})

        # Stored as <cert_type>.<extension>, so only the extension of the uploaded name is used
        _, extension = os.path.splitext(os.path.basename(filename or ""))
        extension = extension.lower().lstrip(".")
        if not extension or extension not in self.allowed_extensions:
            raise ValidationError(f"Invalid file type. Allowed extensions: {', '.join(self.allowed_extensions)}",
                                  {"file": ["Unsupported file extension."]})

        if not data:
            raise ValidationError("The certificate file is empty", {"file": ["File is empty."]})

        if extension in PKCS12_EXTENSIONS:
            self._check_pkcs12(cert_type, data)
        else:
            self._check_pem_or_der(cert_type, data)

        return extension

    def _check_pkcs12(self, cert_type: str, data: bytes):
        password = self.p12_password.encode("utf-8") if self.p12_password else None
        try:
            key, certificate, additional = pkcs12.load_key_and_certificates(data, password)
        except ValueError as e:
            raise ValidationError(f"Unable to open the PKCS#12 file: {e}", {"file": ["Invalid PKCS#12 file."]})

        if cert_type == CERT_TYPE_CLIENT_KEY and key is None:
            raise ValidationError("The PKCS#12 file does not contain a private key", {"file": ["No private key."]})
        if cert_type != CERT_TYPE_CLIENT_KEY and certificate is None and not additional:
            raise ValidationError("The PKCS#12 file does not contain a certificate", {"file": ["No certificate."]})

    def _check_pem_or_der(self, cert_type: str, data: bytes):
        if b"-----BEGIN" in data:
            if cert_type == CERT_TYPE_CLIENT_KEY:
                if b"PRIVATE KEY-----" not in data:
                    raise ValidationError("The file does not contain a PEM private key", {"file": ["No private key."]})
                return
            try:
                x509.load_pem_x509_certificates(data)
            except ValueError as e:
                raise ValidationError(f"Invalid PEM certificate: {e}", {"file": ["Invalid certificate."]})
            return

        try:
            if cert_type == CERT_TYPE_CLIENT_KEY:
                serialization.load_der_private_key(data, password=None)
            else:
                x509.load_der_x509_certificate(data)
        except (ValueError, TypeError) as e:
            raise ValidationError(f"The file is neither PEM nor DER encoded: {e}", {"file": ["Unreadable file."]})

    def save_certificate(self, peer_id: int, cert_type: str, filename: str, data: bytes):
        """Validate and store a certificate, replacing whatever the slot held before"""
        extension = self.validate_certificate(cert_type, filename, data)

        stale = [f for f in self._slot_files(peer_id, cert_type)
                 if os.path.basename(f) != f"{cert_type}.{extension}"]
        self._write(peer_id, f"{cert_type}.{extension}", data)
        for path in stale:
            try:
                os.remove(path)
            except OSError as e:
                raise StorageError(f"Failed to replace the existing {cert_type}: {e}") from e

        logger.info(f"Stored {cert_type} ({extension}) for federation {peer_id}")

    def save_password(self, peer_id: int, password: Optional[str]):
        if password:
            self._write(peer_id, PASSWORD_FILE, password.encode("utf-8"))
        else:
            path = os.path.join(self._peer_folder(peer_id), PASSWORD_FILE)
            try:
                if os.path.exists(path):
                    os.remove(path)
            except OSError as e:
                raise StorageError(f"Failed to remove password: {e}") from e

    def presence(self, peer_id: int) -> dict:
        return {
            "has_ca_cert": bool(self._slot_files(peer_id, CERT_TYPE_CA)),
            "has_client_cert": bool(self._slot_files(peer_id, CERT_TYPE_CLIENT_CERT)),
            "has_client_key": bool(self._slot_files(peer_id, CERT_TYPE_CLIENT_KEY)),
            "has_password": os.path.exists(os.path.join(self._peer_folder(peer_id), PASSWORD_FILE)),
        }

    def _read_slot(self, peer_id: int, cert_type: str) -> Optional[StoredBlob]:
        files = self._slot_files(peer_id, cert_type)
        if not files:
            return None
        path = files[0]
        with open(path, "rb") as f:
            return StoredBlob(os.path.splitext(path)[1].lstrip("."), f.read())

    def load(self, peer_id: int) -> PeerCredentials:
        try:
            password = None
            password_path = os.path.join(self._peer_folder(peer_id), PASSWORD_FILE)
            if os.path.exists(password_path):
                with open(password_path, "r", encoding="utf-8") as f:
                    password = f.read()

            return PeerCredentials(password=password,
                                   ca=self._read_slot(peer_id, CERT_TYPE_CA),
                                   client_cert=self._read_slot(peer_id, CERT_TYPE_CLIENT_CERT),
                                   client_key=self._read_slot(peer_id, CERT_TYPE_CLIENT_KEY))
        except OSError as e:
            raise StorageError(f"Failed to read credentials for federation {peer_id}: {e}") from e

    def delete(self, peer_id: int):
        try:
            shutil.rmtree(self._peer_folder(peer_id), ignore_errors=False)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to delete credentials for federation {peer_id}: {e}") from e
        logger.debug(f"Deleted credentials for federation {peer_id}")
