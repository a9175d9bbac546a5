class FederationError(Exception):
    """Base class for errors raised by the federation manager"""
    status_code = 500


class ValidationError(FederationError):
    """A peer definition, certificate type or certificate file was rejected. Nothing was persisted."""
    status_code = 400

    def __init__(self, message: str, errors: dict = None):
        super().__init__(message)
        self.errors = errors or {}


class NotFoundError(FederationError):
    status_code = 404


class StorageError(FederationError):
    """The registry database or the credential store failed to persist a change"""
    status_code = 500


class PeerConnectionError(FederationError):
    """
    A connect, TLS handshake, authentication or write failure on a peer session.

    Never returned to API callers. The supervisor records it as connection_status=error and last_error.
    """
