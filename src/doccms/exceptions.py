"""Error taxonomy for doccms.

- ConfigurationError: startup problems; must stop the process before it serves
- UnsafeFilterError, DocumentCountError, ...: fatal, no recovery path
- HookException: raised by hooks to interrupt persistence; recoverable only
  through catchException hooks. Plugins subclass it and check the subclass
  before reacting.
"""


class CMSError(Exception):
    """Base class for all doccms errors."""


class ConfigurationError(CMSError):
    """Invalid schema, hook or plugin configuration detected at startup."""


class SchemaNotFoundError(CMSError):
    """An operation referenced a schema that is not configured."""

    def __init__(self, schema: str):
        super().__init__(f"Schema '{schema}' is not configured")
        self.schema = schema


class DocumentNotFoundError(CMSError):
    """No document exists for the given identifier."""

    def __init__(self, schema: str, id: str):
        super().__init__(f"Document '{id}' not found in '{schema}'")
        self.schema = schema
        self.id = id


class DuplicateDocumentError(CMSError):
    """A document with the same identifier already exists."""


class DocumentCountError(CMSError):
    """Persistence returned an unexpected number of documents."""


class UnsafeFilterError(CMSError):
    """A bulk operation was refused because its filter could match everything."""


class OperationNotFoundError(CMSError):
    """No handler is registered for a (schema, operationType, action) triple."""

    def __init__(self, schema: str, operation_type: str, action: str):
        super().__init__(
            f"No operation '{operation_type}.{action}' registered for schema '{schema}'"
        )
        self.schema = schema
        self.operation_type = operation_type
        self.action = action


class HookResultError(CMSError):
    """A hook returned a value that is not valid at its hook point."""


class EmptyRecoveryError(CMSError):
    """An exception was cleared by exception hooks but no result was supplied."""


class HookException(CMSError):
    """Interrupts the normal CRUD path and requests recovery.

    Raise a subclass from a hook; catchException hooks recognise their own
    subclass with isinstance() and may clear it and supply a replacement
    result.
    """
