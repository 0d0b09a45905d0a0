"""Domain errors raised by the inventory ledger and catalog helpers."""


class StoreError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ProductNotFoundError(StoreError):
    status_code = 404

    def __init__(self, product_id):
        super().__init__(f"Product not found: {product_id}")
        self.product_id = product_id


class InvalidOperationError(StoreError):
    status_code = 400


class InsufficientStockError(StoreError):
    status_code = 400

    def __init__(self, product_id, available: int, requested: int):
        super().__init__(f"Insufficient stock: {available} available, {requested} requested")
        self.product_id = product_id
        self.available = available
        self.requested = requested


class DataIntegrityError(StoreError):
    """Ledger replay disagrees with stored stock. Needs manual reconciliation."""

    status_code = 409


class StoreTimeoutError(StoreError):
    status_code = 503


class StockConflictError(StoreError):
    """Stock kept changing underneath an operation; nothing was written."""

    status_code = 409
