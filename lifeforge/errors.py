from __future__ import annotations


class LifeForgeError(Exception):
    """Base for every error raised by the tracker."""


class ValidationError(LifeForgeError):
    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class NotFoundError(LifeForgeError):
    def __init__(self, kind: str, item_id: str) -> None:
        super().__init__(f"{kind} {item_id} not found")
        self.kind = kind
        self.item_id = item_id


class AuthError(LifeForgeError):
    pass


class PersistenceError(LifeForgeError):
    code = "PERSISTENCE"


class NoRowsError(PersistenceError):
    code = "NO_ROWS"


class SyncError(LifeForgeError):
    """A remote write failed after the local state already changed."""

    def __init__(self, table: str, op: str, row_id: str, cause: Exception) -> None:
        super().__init__(f"sync {op} {table}/{row_id} failed: {cause}")
        self.table = table
        self.op = op
        self.row_id = row_id
        self.cause = cause
