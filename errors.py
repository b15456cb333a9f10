from typing import Optional


class LedgerError(Exception):
    code = "ledger_error"


class ValidationError(LedgerError, ValueError):
    code = "validation_error"


class InvalidTransfer(ValidationError):
    code = "invalid_transfer"


class NotFoundError(LedgerError, LookupError):
    code = "not_found"


class ConflictError(LedgerError):
    code = "conflict"


class ConsistencyError(LedgerError):
    code = "consistency_error"


class OrphanedTransferLeg(ConsistencyError):
    code = "orphaned_transfer_leg"

    def __init__(self, transfer_id: str, transaction_id: Optional[int] = None) -> None:
        self.transfer_id = transfer_id
        self.transaction_id = transaction_id
        super().__init__(
            f"Transfer {transfer_id} has no sibling leg for transaction {transaction_id}"
        )
