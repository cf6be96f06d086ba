# panel/errors.py


class PanelError(Exception):
    pass


class SamplingFailed(PanelError):
    """The field sampler (external service or driver) could not produce statistics."""


class DocumentStoreError(PanelError):
    """A data operation against the external document store failed."""


class PermissionDenied(PanelError):
    pass


class AccessDenied(PanelError):
    """
    Base for every "the link cannot be used" failure.

    Callers outside the backend only ever see this class, with one message for
    all subclasses. The subclass is kept for audit logging.
    """
    public_message = "The shared link is invalid or has expired"

    def __init__(self, reason: str = ""):
        super().__init__(reason or self.public_message)
        self.reason = reason


class LinkExpired(AccessDenied):
    pass


class LinkRevoked(AccessDenied):
    pass


class LinkNotFound(AccessDenied):
    pass


class DuplicateField(PanelError):
    pass


class FieldNotFound(PanelError):
    pass


class ProtectedField(PanelError):
    pass


class NotFound(PanelError):
    pass


class ConflictOrIOError(PanelError):
    """Persisting a schema lost a concurrent update race or the write failed."""
