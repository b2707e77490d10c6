"""Domain-specific exceptions

Every exception carries a machine-readable ``code``; the family a class
belongs to decides how the API reports it.
"""


class DomainException(Exception):
    """Base exception for domain layer"""

    code: str = "DOMAIN_ERROR"
    kind: str = "domain"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


# Families


class ValidationError(DomainException):
    """Malformed input, rejected before any state change"""

    code = "VALIDATION_ERROR"
    kind = "validation"


class InvariantViolation(DomainException):
    """A business rule would be broken; the operation is aborted as a whole"""

    code = "INVARIANT_VIOLATION"
    kind = "invariant"


class ConflictError(DomainException):
    """Repeated or concurrent attempt at a one-shot transition"""

    code = "CONFLICT"
    kind = "conflict"


class NotFoundError(DomainException):
    """Referenced entity does not exist"""

    code = "NOT_FOUND"
    kind = "not_found"

    def __init__(self, entity_type: str, entity_id):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class PermissionDenied(DomainException):
    """Acting user lacks the capability the operation requires"""

    code = "PERMISSION_DENIED"
    kind = "permission"

    def __init__(self, actor_id: str, capability: str):
        self.actor_id = actor_id
        self.capability = capability
        super().__init__(f"Actor {actor_id} lacks capability {capability}")


class BlobStoreError(DomainException):
    """Blob store returned an error or is unavailable"""

    code = "BLOB_STORE_UNAVAILABLE"
    kind = "upstream"


# Invariant violations


class InsufficientCredit(InvariantViolation):
    code = "INSUFFICIENT_CREDIT"

    def __init__(self, requested, available):
        self.requested = requested
        self.available = available
        super().__init__(f"Requested {requested} exceeds available credit {available}")


class OverpaymentRejected(InvariantViolation):
    code = "OVERPAYMENT_REJECTED"

    def __init__(self, amount, payable):
        self.amount = amount
        self.payable = payable
        super().__init__(f"Payment {amount} exceeds outstanding amount {payable}")


class RestoreExceedsLimit(InvariantViolation):
    code = "RESTORE_EXCEEDS_LIMIT"

    def __init__(self, amount, principal_owed):
        self.amount = amount
        self.principal_owed = principal_owed
        super().__init__(
            f"Restoring {amount} would exceed the approved limit (principal owed is {principal_owed})"
        )


class OverReceipt(InvariantViolation):
    code = "OVER_RECEIPT"

    def __init__(self, product_id: int, received: int, shipped: int):
        self.product_id = product_id
        self.received = received
        self.shipped = shipped
        super().__init__(f"Received {received} of product {product_id} but only {shipped} were shipped")


class InsufficientStock(InvariantViolation):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(f"Product {product_id}: requested {requested}, only {available} in stock")


class ReturnQuantityExceeded(InvariantViolation):
    code = "RETURN_QUANTITY_EXCEEDED"

    def __init__(self, item_id: int, returned: int, sold: int):
        self.item_id = item_id
        self.returned = returned
        self.sold = sold
        super().__init__(f"Sale item {item_id}: returning {returned} but only {sold} were sold")


class AccountNotActive(InvariantViolation):
    code = "ACCOUNT_NOT_ACTIVE"


# Conflicts


class AlreadyDecided(ConflictError):
    code = "ALREADY_DECIDED"

    def __init__(self, entity_type: str, entity_id, state: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.state = state
        super().__init__(f"{entity_type} {entity_id} is {state} and can no longer be decided")


class AlreadyReconciled(ConflictError):
    code = "ALREADY_RECONCILED"


class DuplicateReturn(ConflictError):
    code = "DUPLICATE_RETURN"

    def __init__(self, sale_id: int):
        self.sale_id = sale_id
        super().__init__(f"Sale {sale_id} already has a return")


class ActiveAccountExists(ConflictError):
    code = "ACTIVE_ACCOUNT_EXISTS"

    def __init__(self, customer_id: str):
        self.customer_id = customer_id
        super().__init__(f"Customer {customer_id} already has an active credit account")


class ConcurrentModification(ConflictError):
    """Optimistic version check or unique constraint lost a race"""

    code = "CONCURRENT_MODIFICATION"


class InvalidTransition(ConflictError):
    code = "INVALID_TRANSITION"

    def __init__(self, entity_type: str, entity_id, from_state: str, to_state: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"{entity_type} {entity_id} cannot move from {from_state} to {to_state}")
