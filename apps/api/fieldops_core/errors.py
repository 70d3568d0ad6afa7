"""
Inventory error hierarchy.

Every domain failure carries a machine-readable code, a human message and a
details dict. The category decides how the HTTP layer renders it:

    InventoryError
    ├── InventoryValidationError      (validation, 400)
    │   └── LedgerValidationError
    ├── NotFoundError                 (not_found, 404)
    │   ├── ItemNotFoundError
    │   ├── BatchNotFoundError
    │   ├── InstanceNotFoundError
    │   ├── CrewNotFoundError
    │   └── OrderNotFoundError
    ├── InventoryConflictError        (conflict, 409)
    │   ├── DuplicateCodeError
    │   ├── DuplicateBatchCodeError
    │   ├── DuplicateUniqueIdError
    │   ├── AmbiguousInstanceError
    │   ├── InsufficientStockError
    │   ├── InvalidTransitionError
    │   ├── InstanceNotInStockError
    │   ├── BatchStateError
    │   ├── InactiveCrewError
    │   ├── IdempotencyConflictError
    │   └── LedgerImmutableError
    ├── DependencyError               (dependency, 409)
    │   ├── HasDependentBatchesError
    │   ├── BatchInUseError
    │   └── ItemInUseError
    └── UnauthorizedActorError        (unauthorized, 403)
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class InventoryError(Exception):
    category: str = "validation"
    default_code: str = "INVENTORY_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# VALIDATION
# =============================================================================

class InventoryValidationError(InventoryError):
    category = "validation"
    default_code = "VALIDATION_ERROR"


class LedgerValidationError(InventoryValidationError):
    """Malformed history entry: missing item, unknown type or non-numeric delta."""
    default_code = "LEDGER_INVALID_ENTRY"


# =============================================================================
# NOT FOUND
# =============================================================================

class NotFoundError(InventoryError):
    category = "not_found"
    default_code = "NOT_FOUND"


class ItemNotFoundError(NotFoundError):
    default_code = "ITEM_NOT_FOUND"

    def __init__(self, item_id: int):
        super().__init__(f"Inventory item {item_id} not found", details={"item_id": item_id})


class BatchNotFoundError(NotFoundError):
    default_code = "BATCH_NOT_FOUND"

    def __init__(self, batch_code: str):
        super().__init__(f"Batch {batch_code} not found", details={"batch_code": batch_code})


class InstanceNotFoundError(NotFoundError):
    default_code = "INSTANCE_NOT_FOUND"

    def __init__(self, unique_id: str):
        super().__init__(f"Equipment instance {unique_id} not found", details={"unique_id": unique_id})


class CrewNotFoundError(NotFoundError):
    default_code = "CREW_NOT_FOUND"

    def __init__(self, crew_id: int):
        super().__init__(f"Crew {crew_id} not found", details={"crew_id": crew_id})


class OrderNotFoundError(NotFoundError):
    default_code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: int):
        super().__init__(f"Work order {order_id} not found", details={"order_id": order_id})


# =============================================================================
# CONFLICTS
# =============================================================================

class InventoryConflictError(InventoryError):
    category = "conflict"
    default_code = "CONFLICT"


class DuplicateCodeError(InventoryConflictError):
    default_code = "DUPLICATE_ITEM_CODE"

    def __init__(self, code: str):
        super().__init__(f"Item code {code} already exists", details={"item_code": code})


class DuplicateBatchCodeError(InventoryConflictError):
    default_code = "DUPLICATE_BATCH_CODE"

    def __init__(self, batch_code: str):
        super().__init__(f"Batch code {batch_code} already exists", details={"batch_code": batch_code})


class DuplicateUniqueIdError(InventoryConflictError):
    default_code = "DUPLICATE_INSTANCE_ID"

    def __init__(self, identifiers: list[str]):
        super().__init__(
            f"Identifiers already in use: {', '.join(identifiers)}",
            details={"identifiers": identifiers},
        )


class AmbiguousInstanceError(InventoryConflictError):
    default_code = "AMBIGUOUS_INSTANCE"

    def __init__(self, query: str, unique_ids: list[str]):
        super().__init__(
            f"Identifier {query} matches more than one instance",
            details={"query": query, "unique_ids": unique_ids},
        )


class InsufficientStockError(InventoryConflictError):
    default_code = "INSUFFICIENT_STOCK"

    def __init__(self, item_code: str, requested, available, where: str = "warehouse"):
        super().__init__(
            f"Insufficient stock for {item_code} ({where}): requested={float(requested):.3f} available={float(available):.3f}",
            details={
                "item_code": item_code,
                "requested": float(requested),
                "available": float(available),
                "location": where,
            },
        )


class InvalidTransitionError(InventoryConflictError):
    default_code = "INVALID_TRANSITION"

    def __init__(self, unique_id: str, from_status: str, to_status: str):
        super().__init__(
            f"Instance {unique_id} cannot move from {from_status} to {to_status}",
            details={"unique_id": unique_id, "from": from_status, "to": to_status},
        )


class InstanceNotInStockError(InventoryConflictError):
    default_code = "INSTANCE_NOT_IN_STOCK"

    def __init__(self, unique_id: str, status: str):
        super().__init__(
            f"Instance {unique_id} is {status}, only in-stock instances can be removed",
            details={"unique_id": unique_id, "status": status},
        )


class BatchStateError(InventoryConflictError):
    """Batch exists but is not where, or not as full as, the movement needs."""
    default_code = "BATCH_STATE"


class InactiveCrewError(InventoryConflictError):
    default_code = "CREW_INACTIVE"

    def __init__(self, crew_id: int):
        super().__init__(f"Crew {crew_id} is not active", details={"crew_id": crew_id})


class IdempotencyConflictError(InventoryConflictError):
    default_code = "IDEMPOTENCY_KEY_REUSED"


class LedgerImmutableError(InventoryConflictError):
    default_code = "LEDGER_APPEND_ONLY"


# =============================================================================
# DEPENDENCIES
# =============================================================================

class DependencyError(InventoryError):
    category = "dependency"
    default_code = "DEPENDENCY"


class HasDependentBatchesError(DependencyError):
    default_code = "ITEM_HAS_BATCHES"

    def __init__(self, item_id: int, batch_codes: list[str]):
        super().__init__(
            f"Item {item_id} still has batches: {', '.join(batch_codes)}",
            details={"item_id": item_id, "batch_codes": batch_codes},
        )


class BatchInUseError(DependencyError):
    default_code = "BATCH_IN_USE"


class ItemInUseError(DependencyError):
    default_code = "ITEM_IN_USE"


# =============================================================================
# AUTHORIZATION
# =============================================================================

class UnauthorizedActorError(InventoryError):
    category = "unauthorized"
    default_code = "ACTOR_NOT_AUTHORIZED"


STATUS_BY_CATEGORY = {
    "validation": 400,
    "not_found": 404,
    "conflict": 409,
    "dependency": 409,
    "unauthorized": 403,
}


def http_status_for(exc: InventoryError) -> int:
    return STATUS_BY_CATEGORY.get(exc.category, 400)
