"""Service-level exceptions.

Validation and not-found errors are surfaced to the caller as rejections;
integrity errors abort an operation before anything is left committed.
"""


class ServiceError(Exception):
    """Base class for errors raised by the service layer."""


class ValidationError(ServiceError):
    """Bad input — empty file, oversized file, slug/SKU collision, type mismatch."""


class IntegrityError(ServiceError):
    """Byte-length mismatch after read or after persist."""


class NotFoundError(ServiceError):
    """Operation on an id that does not exist."""

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} with ID {entity_id} not found")
