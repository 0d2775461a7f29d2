from __future__ import annotations


class ReconciliationError(Exception):
    pass


class NotFound(ReconciliationError, LookupError):
    pass


class ConfigurationError(ReconciliationError):
    pass


class RetrievalUnavailable(ReconciliationError):
    pass


class InvalidTransition(ReconciliationError):
    def __init__(self, *, inbox_id: int, action: str, status: str, reason: str | None = None) -> None:
        self.inbox_id = inbox_id
        self.action = action
        self.status = status
        super().__init__(reason or f"Cannot {action} inbox item {inbox_id} while it is '{status}'")


class MatchConflict(ReconciliationError):
    def __init__(self, *, transaction_id: int, holder_inbox_id: int | None) -> None:
        self.transaction_id = transaction_id
        self.holder_inbox_id = holder_inbox_id
        holder = f"inbox item {holder_inbox_id}" if holder_inbox_id is not None else "another inbox item"
        super().__init__(f"Transaction {transaction_id} is already matched to {holder}")
