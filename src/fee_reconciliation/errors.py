"""Exception types raised by the reconciliation core."""


class ReconciliationError(Exception):
    """Base class for reconciliation errors."""


class StatementInputError(ReconciliationError, ValueError):
    """A statement file could not be accepted as a whole."""


class UnsupportedFileTypeError(StatementInputError):
    """The statement file extension is not one of .csv, .md or .pdf."""

    def __init__(self, file_name: str):
        self.file_name = file_name
        super().__init__(f"Unsupported statement file type: {file_name}")


class StatementReadError(StatementInputError):
    """The statement bytes could not be turned into text."""


class NotFoundError(ReconciliationError, LookupError):
    """A referenced record does not exist."""

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class InvalidStateTransition(ReconciliationError):
    """A record was asked to move to a state it cannot reach."""

    def __init__(self, kind: str, current: str, target: str):
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {kind} from {current} to {target}")
