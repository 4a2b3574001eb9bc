"""Rejections raised by the product ledger.

Every failure leaves the ledger untouched. ``kind`` is the machine-checkable
class, ``reason`` the text shown to the operator.
"""


class LedgerError(Exception):
    kind = "ledger_error"
    status_code = 400

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> dict:
        return {"kind": self.kind, "reason": self.reason, "scope": None}


class NotAuthorized(LedgerError):
    """Caller lacks the role or ownership the operation needs.

    ``scope`` is one of farmer, shipper, receiver, metadata or owner.
    """
    kind = "not_authorized"
    status_code = 403

    def __init__(self, scope: str):
        super().__init__(f"Not authorized: {scope}")
        self.scope = scope

    def to_dict(self) -> dict:
        return {"kind": self.kind, "reason": self.reason, "scope": self.scope}


class NotFound(LedgerError):
    kind = "not_found"
    status_code = 404

    def __init__(self, reason: str = "Product does not exist"):
        super().__init__(reason)


class AlreadyExists(LedgerError):
    kind = "already_exists"
    status_code = 409

    def __init__(self, reason: str = "Product already exists"):
        super().__init__(reason)


class InvalidArgument(LedgerError):
    kind = "invalid_argument"
    status_code = 400


class WrongState(LedgerError):
    kind = "wrong_state"
    status_code = 409
