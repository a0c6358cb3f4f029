from __future__ import annotations


class AppError(Exception):
    pass


class BusinessError(AppError):
    pass


class ValidationError(BusinessError):
    pass


class RecordInConflictError(BusinessError):
    """El registro tiene un conflicto sin resolver y no admite ediciones locales."""

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(f"{entity_type}:{entity_id} tiene un conflicto pendiente de resolver.")
        self.entity_type = entity_type
        self.entity_id = entity_id


class ResourceLockedError(BusinessError):
    """Otro usuario mantiene un bloqueo vigente sobre el recurso."""

    def __init__(self, resource_id: str, locked_by: str | None, locked_at: str | None = None) -> None:
        super().__init__(f"{resource_id} está siendo editado por {locked_by or 'otro usuario'}.")
        self.resource_id = resource_id
        self.locked_by = locked_by
        self.locked_at = locked_at


class InfraError(AppError):
    pass


class PersistenceError(InfraError):
    pass


class ExternalServiceError(InfraError):
    pass


class RemoteStoreError(ExternalServiceError):
    pass


class TransientExternalError(ExternalServiceError):
    pass


class RemoteUnavailableError(TransientExternalError):
    pass
