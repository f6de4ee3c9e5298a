"""Exception taxonomy shared by services and the HTTP layer

Every error carries the HTTP status the API layer renders it with and a
message that is safe to show to the actor who triggered it.
"""


class ShopError(Exception):
    """Base class for errors reported back to the initiating actor"""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# Input validation - no state change
class InvalidInput(ShopError):
    status_code = 400


class InvalidAmount(InvalidInput):
    pass


class InvalidPlan(InvalidInput):
    pass


# Authorization - generic denial, no state change
class NotAuthorized(ShopError):
    status_code = 403

    def __init__(self, message: str = "You are not allowed to do that."):
        super().__init__(message)


class NotFound(ShopError):
    status_code = 404


# Precondition / state errors - specific reason, no partial mutation
class PreconditionFailed(ShopError):
    status_code = 409


class PlanUnavailable(PreconditionFailed):
    pass


class PurchaseDenied(PreconditionFailed):
    pass


class AmountTooSmall(PreconditionFailed):
    pass


class TicketNotOpen(PreconditionFailed):
    pass


class PurchaseNotRefundable(PreconditionFailed):
    pass


class RefundWindowExpired(PurchaseNotRefundable):
    pass


class RequestAlreadyDecided(PreconditionFailed):
    pass


class InvalidTransition(PreconditionFailed):
    pass


class CooldownActive(ShopError):
    status_code = 429


# External dependency failures
class ExternalServiceError(ShopError):
    status_code = 502


class CheckoutCreationFailed(ExternalServiceError):
    pass


class RefundExecutionFailed(ExternalServiceError):
    pass


class SubscriptionServiceError(ExternalServiceError):
    pass


class ChatPlatformError(ExternalServiceError):
    pass


# Integrity - webhook authenticity
class WebhookVerificationError(ShopError):
    status_code = 400
