"""
Error types raised by the document store, and the process-wide
permission-error signal used by the developer overlay.
"""
from blinker import Namespace

_signals = Namespace()

# Sent with the PermissionDeniedError as sender.
permission_error = _signals.signal('permission-error')


class StoreError(Exception):
    """Base class for document store failures."""


class DocumentExistsError(StoreError):
    def __init__(self, path):
        super().__init__(f"Document already exists: {path}")
        self.path = path


class PermissionDeniedError(StoreError):
    """
    A write rejected by the store's access rules. Carries the request context
    so a debugging overlay can show what was attempted.
    """

    def __init__(self, path, operation, request_resource_data=None):
        self.path = path
        self.operation = operation
        self.request_resource_data = request_resource_data
        super().__init__(
            f"Missing or insufficient permissions: the following request was denied: "
            f"{operation} on {path}"
        )

    def to_dict(self):
        context = {'path': self.path, 'operation': self.operation}
        if self.request_resource_data is not None:
            context['requestResourceData'] = self.request_resource_data
        return context


class InvalidReceiptError(ValueError):
    pass


class AIServiceError(RuntimeError):
    """The generative-AI backend is not configured or returned nothing usable."""


def emit_permission_error(error):
    permission_error.send(error)
