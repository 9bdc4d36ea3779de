from __future__ import annotations


class DeliveryError(ValueError):
    pass


class DeliveryNotFound(DeliveryError):
    pass


class DeliveryValidationError(DeliveryError):
    pass


class DeliveryEditForbidden(DeliveryError):
    pass


class InventorySyncError(RuntimeError):
    """Failure while pushing inventory to the e-commerce platform.

    ``kind`` is one of ``rate_limited``, ``sync_in_progress`` or ``other`` and
    only drives user-facing messaging.
    """

    def __init__(self, message: str, *, kind: str = 'other', status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
