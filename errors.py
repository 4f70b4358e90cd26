class LedgerError(Exception):
    """Base class for every failure the ledger reports to its callers."""

    kind = 'ledger_error'

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class NotFound(LedgerError):
    kind = 'not_found'


class Forbidden(LedgerError):
    kind = 'forbidden'


class InvalidInput(LedgerError):
    kind = 'invalid_input'


class InvalidPayer(InvalidInput):
    """The requested payer is not a current member of the group."""


class Conflict(LedgerError):
    kind = 'conflict'


class StoreFailure(LedgerError):
    kind = 'store_failure'
