class TradeRejected(ValueError):
    """A request that cannot be executed as asked.

    Raised by validation, balance reconciliation and lot-size checks. The
    HTTP layer renders it as ``{"error": message, **payload}`` with
    ``status_code``.
    """

    def __init__(self, message: str, status_code: int = 400, **payload):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def to_dict(self) -> dict:
        return {"error": self.message, **self.payload}


class TradeSkipped(Exception):
    """Nothing to do for this account (already at target, no balance, ...)."""


class CredentialsMissing(TradeRejected):
    def __init__(self, message: str = "API Key and Secret Key are required"):
        super().__init__(message, 400)
