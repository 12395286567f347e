class DomainException(Exception):
    pass


class ValidationFailed(DomainException):
    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Validation failed: {', '.join(errors)}")


class NotFound(DomainException):
    pass


class CheckoutNotFound(NotFound):
    pass


class OrderNotFound(NotFound):
    pass


class PaymentNotFound(NotFound):
    pass


class ConfirmationNotFound(NotFound):
    pass


class InventoryNotFound(NotFound):
    pass


class InvalidState(DomainException):
    pass


class NotPending(InvalidState):
    pass


class AlreadyConfirmed(InvalidState):
    pass


class CheckoutConflict(InvalidState):
    """Checkout status changed underneath the caller."""


class InsufficientStock(DomainException):
    def __init__(self, product_id: str, available: int, required: int):
        self.product_id = product_id
        self.available = available
        self.required = required
        super().__init__(
            f"Insufficient stock for product {product_id}. Available: {available}, required: {required}"
        )


class GenerationExhausted(DomainException):
    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Could not generate a unique order number after {attempts} attempts")


class Unauthorized(DomainException):
    pass
