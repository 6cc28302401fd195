"""Domain errors raised by the repositories and lifecycle services.

They are plain exceptions so the background processors can catch them per
item; the HTTP layer maps them onto status codes.
"""


class BillingError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InsufficientFunds(BillingError):
    status_code = 402

    def __init__(self, owner_id: str, required: int, available: int):
        super().__init__(f"Insufficient balance for {owner_id}: need {required}, have {available}")
        self.owner_id = owner_id
        self.required = required
        self.available = available


class WalletNotFound(BillingError):
    status_code = 404


class CancellationNotFound(BillingError):
    status_code = 404


class CancellationAlreadyPending(BillingError):
    status_code = 409

    def __init__(self, resource_id: str, request_id: int | None = None):
        super().__init__(f"Resource {resource_id} already has a pending cancellation request")
        self.resource_id = resource_id
        self.request_id = request_id


class CancellationNotRevocable(BillingError):
    status_code = 409
