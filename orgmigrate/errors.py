"""Exception hierarchy for migration runs."""

from typing import Optional


class MigrationError(Exception):
    """Base class for all migration errors."""


class CommandInitializationError(MigrationError):
    """Structural problem found while building the run; fatal before execution."""


class MalformedQueryError(CommandInitializationError):
    """A declared query could not be parsed."""

    def __init__(self, object_name: str, query: str, reason: str):
        self.object_name = object_name
        self.query = query
        super().__init__(f"{object_name}: malformed query '{query}': {reason}")


class ExternalIdNotFoundError(CommandInitializationError):
    """The external id field does not exist in the object metadata."""

    def __init__(self, object_name: str, external_id: str):
        self.object_name = object_name
        self.external_id = external_id
        super().__init__(f"{object_name}: external id field '{external_id}' was not found in metadata")


class MissingFieldsError(CommandInitializationError):
    """A declared query has no usable field left after describe."""

    def __init__(self, object_name: str):
        self.object_name = object_name
        super().__init__(f"{object_name}: no fields left to process")


class MetadataError(MigrationError):
    """Object metadata could not be retrieved."""


class DataServiceError(MigrationError):
    """A query or CRUD call against a data service failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class UserAbortError(MigrationError):
    """The user declined to continue at a confirmation prompt."""


class ValidateOnlyExit(MigrationError):
    """Validate-only run finished; nothing more to execute."""
