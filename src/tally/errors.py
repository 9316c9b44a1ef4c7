class TallyError(Exception):
    """Base class for every error raised by tally."""


class ConfigValidationError(TallyError):
    """Raised when configuration validation fails."""


class UnsupportedFormat(TallyError):
    pass


class FileTooLarge(TallyError):
    pass


class InvalidState(TallyError):
    """An import or invoice is not in a state that allows the operation."""


class ImportNotFound(TallyError):
    pass


class TransactionNotFound(TallyError):
    pass


class InvoiceNotFound(TallyError):
    pass


class ImportProcessingError(TallyError):
    """The statement file could not be read during the preview pass."""


class StoreError(TallyError):
    """A store rejected a write."""


class TransactionRejected(StoreError):
    pass


class InvalidAmount(TallyError, ValueError):
    pass
