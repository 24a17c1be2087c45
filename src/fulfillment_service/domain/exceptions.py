class DomainError(Exception):
    """Base exception for domain errors."""


class ValidationError(DomainError):
    """Raised when input is malformed before it reaches the core."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class ResourceNotFoundError(DomainError):
    """Raised when a referenced order, payment or product does not exist."""

    def __init__(self, resource: str, resource_id: object) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} {resource_id} not found")


class BusinessRuleViolation(DomainError):
    """Raised when an operation is well-formed but not allowed."""


class InvalidTransitionError(BusinessRuleViolation):
    """Raised when a state machine is asked to follow an edge it does not have."""

    def __init__(self, entity: str, current: str, attempted: str) -> None:
        self.entity = entity
        self.current = current
        self.attempted = attempted
        super().__init__(f"Invalid {entity} status transition from {current} to {attempted}")


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a reservation cannot be satisfied."""

    def __init__(self, product_id: int, requested: int, available: int | None = None) -> None:
        self.product_id = product_id
        self.requested = requested
        self.available = available
        detail = f"requested {requested}"
        if available is not None:
            detail += f", available {available}"
        super().__init__(f"Insufficient stock for product {product_id}: {detail}")


class ProductUnavailableError(BusinessRuleViolation):
    """Raised when an inactive product is ordered."""

    def __init__(self, product_id: int) -> None:
        self.product_id = product_id
        super().__init__(f"Product {product_id} is not available for purchase")


class RefundRejectedError(BusinessRuleViolation):
    """Raised when a refund amount is not acceptable for the payment."""

    def __init__(self, payment_ref: str, amount: object, reason: str) -> None:
        self.payment_ref = payment_ref
        self.amount = amount
        self.reason = reason
        super().__init__(f"Refund of {amount} rejected for payment {payment_ref}: {reason}")


class DuplicatePaymentError(BusinessRuleViolation):
    """Raised when an order already has a payment."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Payment already exists for order {order_id}")


class ConcurrencyConflictError(DomainError):
    """Raised when a revision or status check fails at write time."""

    def __init__(self, entity: str, entity_id: object) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"Concurrent modification of {entity} {entity_id}")


class GatewayError(DomainError):
    """Raised when the payment gateway is unreachable, slow or rejects the call."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Payment gateway error: {reason}")


class EventPublishFailure(DomainError):
    """Raised inside the notifier when a broker send fails. Never leaves the notifier."""

    def __init__(self, topic: str, key: str, reason: str) -> None:
        self.topic = topic
        self.key = key
        self.reason = reason
        super().__init__(f"Failed to publish to {topic} (key {key}): {reason}")
