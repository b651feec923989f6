"""
Typed failures of the inventory ledger and fulfilment core.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer answers with, plus structured attributes so callers never have to
parse messages. Only ``Contention`` is retryable.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class LedgerError(Exception):
    code: str = "LEDGER_ERROR"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str, **data: Any):
        super().__init__(message)
        self.message = message
        self.data = data

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"error": self.code, "detail": self.message}
        for k, v in self.data.items():
            body[k] = str(v) if isinstance(v, Decimal) else v
        return body


class InvalidRequest(LedgerError):
    code = "INVALID_REQUEST"
    status_code = 422


class NotFound(LedgerError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found: {entity_id}", entity=entity, entity_id=entity_id)


class InvalidState(LedgerError):
    """Illegal status transition."""

    code = "INVALID_STATE"
    status_code = 409

    def __init__(self, entity: str, entity_id: Any, status: str, action: str):
        super().__init__(
            f"{entity} {entity_id} is {status}; cannot {action}",
            entity=entity,
            entity_id=entity_id,
            status=status,
            action=action,
        )


class InsufficientStock(LedgerError):
    code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, warehouse_id: str, sku_id: str, requested: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient stock for sku {sku_id} at warehouse {warehouse_id}: "
            f"requested {requested}, available {available}",
            warehouse_id=warehouse_id,
            sku_id=sku_id,
            requested=requested,
            available=available,
        )


class InsufficientLotQuantity(LedgerError):
    code = "INSUFFICIENT_LOT_QUANTITY"
    status_code = 409

    def __init__(self, lot_id: int, requested: Decimal, available: Decimal):
        super().__init__(
            f"Lot {lot_id} has {available} available, {requested} requested",
            lot_id=lot_id,
            requested=requested,
            available=available,
        )


class OverReplenishment(LedgerError):
    code = "OVER_REPLENISHMENT"
    status_code = 409

    def __init__(self, lot_id: int, qty: Decimal, qty_available: Decimal, qty_received: Decimal):
        super().__init__(
            f"Crediting {qty} to lot {lot_id} would exceed its received quantity "
            f"({qty_available} + {qty} > {qty_received})",
            lot_id=lot_id,
            qty=qty,
            qty_available=qty_available,
            qty_received=qty_received,
        )


class InvalidDispatchQuantity(LedgerError):
    code = "INVALID_DISPATCH_QUANTITY"
    status_code = 422

    def __init__(self, item_id: int, qty: Decimal):
        super().__init__(f"Dispatch quantity must be > 0 (item {item_id}, qty {qty})", item_id=item_id, qty=qty)


class OverReceipt(LedgerError):
    code = "OVER_RECEIPT"
    status_code = 409

    def __init__(self, item_id: int, qty: Decimal, outstanding: Decimal):
        super().__init__(
            f"Receipt of {qty} exceeds outstanding {outstanding} (item {item_id})",
            item_id=item_id,
            qty=qty,
            outstanding=outstanding,
        )


class DuplicateOperation(LedgerError):
    code = "DUPLICATE_OPERATION"
    status_code = 409

    def __init__(self, operation: str, key: str):
        super().__init__(f"Operation {operation} already performed for key {key}", operation=operation, key=key)


class AlreadyAllocated(LedgerError):
    code = "ALREADY_ALLOCATED"
    status_code = 409

    def __init__(self, order_id: int, allocation_id: int):
        super().__init__(
            f"Order {order_id} already has active allocation {allocation_id}",
            order_id=order_id,
            allocation_id=allocation_id,
        )


class PartiallyConsumed(LedgerError):
    code = "PARTIALLY_CONSUMED"
    status_code = 409

    def __init__(self, allocation_id: int):
        super().__init__(
            f"Allocation {allocation_id} has consumed lots; void the invoice first",
            allocation_id=allocation_id,
        )


class NothingToInvoice(LedgerError):
    code = "NOTHING_TO_INVOICE"
    status_code = 409

    def __init__(self, order_ids: list[int]):
        super().__init__(f"Nothing left to invoice for orders {order_ids}", order_ids=order_ids)


class Contention(LedgerError):
    """Lock wait timed out or the transaction was chosen as a serialization victim."""

    code = "CONTENTION"
    status_code = 503
    retryable = True
