"""
Inventory ledger.

Every change to a product's stock goes through `InventoryLedger.apply_operation`,
which writes exactly one append-only record to the "inventoryrecord" collection
and updates the product's quantity/in_stock as one unit. Replaying a product's
records in sequence order reproduces its stored quantity.

Mutations of one product are serialized by an in-process lock and, across
processes, by a compare-and-swap on (quantity, stock_version).
"""
import logging
import threading
import weakref
from typing import List, Optional

import pymongo
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import MONGO_TRANSACTIONS, STORE_TIMEOUT_SECONDS, sort_spec, to_str_id, utcnow
from errors import (
    DataIntegrityError,
    InsufficientStockError,
    InvalidOperationError,
    ProductNotFoundError,
    StockConflictError,
    StoreTimeoutError,
)
from schemas import OPERATION_TYPES, InventoryRecord

logger = logging.getLogger(__name__)

RECORDS = "inventoryrecord"
PRODUCTS = "product"
USERS = "user"

RECORD_SORT_FIELDS = ("created_at", "operation_type", "quantity", "current_stock", "previous_stock")

# Entries vanish once no caller holds the lock.
_locks = weakref.WeakValueDictionary()
_locks_guard = threading.Lock()


def product_lock(product_id) -> threading.Lock:
    key = str(product_id)
    with _locks_guard:
        lock = _locks.get(key)
        if lock is None:
            lock = _locks[key] = threading.Lock()
        return lock


def to_object_id(product_id) -> ObjectId:
    if isinstance(product_id, ObjectId):
        return product_id
    try:
        return ObjectId(product_id)
    except (InvalidId, TypeError):
        raise ProductNotFoundError(product_id)


def validate_delta(operation_type: str, delta) -> None:
    if operation_type not in OPERATION_TYPES:
        raise InvalidOperationError(f"Unknown operation type: {operation_type}")
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise InvalidOperationError("Quantity must be an integer")
    if operation_type == "adjust":
        if delta < 0:
            raise InvalidOperationError("New stock must be zero or more")
    elif delta <= 0:
        raise InvalidOperationError("Quantity must be greater than zero")


def next_stock(operation_type: str, previous: int, delta: int, product_id=None) -> int:
    """Stock level after applying `delta`; adjust takes the new absolute value."""
    validate_delta(operation_type, delta)
    if operation_type == "add":
        return previous + delta
    if operation_type == "remove":
        if delta > previous:
            raise InsufficientStockError(product_id, previous, delta)
        return previous - delta
    return delta


def replay(records) -> int:
    """
    Fold records (oldest first) starting from an empty stock. Raises
    DataIntegrityError at the first record that does not continue the chain.
    """
    running = 0
    for record in records:
        record_id = record.get("id") or record.get("_id")
        if record["previous_stock"] != running:
            raise DataIntegrityError(
                f"Ledger chain broken at record {record_id}: "
                f"expected previous stock {running}, found {record['previous_stock']}"
            )
        if record["previous_stock"] + record["quantity"] != record["current_stock"]:
            raise DataIntegrityError(
                f"Ledger record {record_id} is inconsistent: "
                f"{record['previous_stock']} + {record['quantity']} != {record['current_stock']}"
            )
        running = record["current_stock"]
    return running


class InventoryLedger:
    def __init__(self, database, timeout: float = STORE_TIMEOUT_SECONDS,
                 use_transactions: bool = MONGO_TRANSACTIONS, max_attempts: int = 10):
        self.database = database
        self.timeout = timeout
        self.use_transactions = use_transactions
        self.max_attempts = max_attempts

    @property
    def products(self):
        return self.database[PRODUCTS]

    @property
    def records(self):
        return self.database[RECORDS]

    # Store access

    def _read(self, fn):
        # Reads have no side effects, so one retry after a timeout is safe.
        for attempt in (1, 2):
            try:
                with pymongo.timeout(self.timeout):
                    return fn()
            except PyMongoError as e:
                if not e.timeout:
                    raise
                if attempt == 2:
                    raise StoreTimeoutError("Inventory store timed out") from e
                logger.warning("Inventory store read timed out, retrying once: %s", e)

    def _write(self, fn):
        # A stock write is never retried: it may already have been applied.
        try:
            with pymongo.timeout(self.timeout):
                return fn()
        except PyMongoError as e:
            if e.timeout:
                raise StoreTimeoutError("Inventory store timed out; the operation was not retried") from e
            raise

    # Mutations

    def apply_operation(self, product_id, operation_type: str, delta, operator_id, note: Optional[str] = None) -> dict:
        validate_delta(operation_type, delta)
        oid = to_object_id(product_id)

        with product_lock(oid):
            for _ in range(self.max_attempts):
                snapshot = self._read(lambda: self.products.find_one(
                    {"_id": oid}, {"quantity": 1, "stock_version": 1}
                ))
                if not snapshot:
                    raise ProductNotFoundError(product_id)

                previous = int(snapshot.get("quantity") or 0)
                version = int(snapshot.get("stock_version") or 0)
                try:
                    current = next_stock(operation_type, previous, delta, product_id)
                except InsufficientStockError:
                    logger.info("Rejected %s of %s for product %s: only %s in stock",
                                operation_type, delta, oid, previous)
                    raise

                record = InventoryRecord(
                    product=str(oid),
                    operation_type=operation_type,
                    quantity=current - previous,
                    previous_stock=previous,
                    current_stock=current,
                    note=note.strip() if note else None,
                    operator=str(operator_id),
                    sequence=version + 1,
                ).model_dump()
                record["_id"] = ObjectId()
                record["created_at"] = utcnow()

                if self._commit(oid, snapshot, record):
                    logger.info("Applied %s on product %s: %s -> %s (seq %s, operator %s)",
                                operation_type, oid, previous, current, record["sequence"], operator_id)
                    return to_str_id(record)
                logger.info("Stock of product %s changed concurrently, re-reading", oid)

        raise StockConflictError(f"Stock of product {product_id} is changing too fast, try again")

    def add_stock(self, product_id, quantity, operator_id, note=None) -> dict:
        return self.apply_operation(product_id, "add", quantity, operator_id, note)

    def remove_stock(self, product_id, quantity, operator_id, note=None) -> dict:
        return self.apply_operation(product_id, "remove", quantity, operator_id, note)

    def adjust_stock(self, product_id, new_stock, operator_id, note=None) -> dict:
        return self.apply_operation(product_id, "adjust", new_stock, operator_id, note)

    def _commit(self, oid: ObjectId, snapshot: dict, record: dict) -> bool:
        """Write the product change and its record together; False if the CAS lost."""
        current = record["current_stock"]
        match = {
            "_id": oid,
            "quantity": snapshot.get("quantity"),
            "stock_version": snapshot.get("stock_version"),
        }
        update = {"$set": {
            "quantity": current,
            "in_stock": current > 0,
            "stock_version": record["sequence"],
            "updated_at": record["created_at"],
        }}

        if self.use_transactions:
            try:
                return self._write(lambda: self._commit_in_transaction(match, update, record))
            except StoreTimeoutError:
                # The commit may have gone through before the timeout.
                if self._record_written(oid, record):
                    return True
                raise
            except DuplicateKeyError as e:
                raise DataIntegrityError(
                    f"Ledger of product {oid} already holds a record with sequence {record['sequence']}"
                ) from e

        result = self._write(lambda: self.products.update_one(match, update))
        if result.matched_count == 0:
            return False
        try:
            self._write(lambda: self.records.insert_one(record))
        except (PyMongoError, StoreTimeoutError) as e:
            # A timed-out insert may still have landed.
            if self._record_written(oid, record):
                logger.warning("Ledger write for product %s reported %r but the record is stored", oid, e)
                return True
            self._revert(oid, snapshot, record)
            if isinstance(e, DuplicateKeyError):
                raise DataIntegrityError(
                    f"Ledger of product {oid} already holds a record with sequence {record['sequence']}"
                ) from e
            raise
        return True

    def _record_written(self, oid: ObjectId, record: dict) -> bool:
        try:
            return self._read(lambda: self.records.find_one({"_id": record["_id"]}, {"_id": 1})) is not None
        except (PyMongoError, StoreTimeoutError):
            logger.critical("Cannot tell whether ledger record %s of product %s was stored; product shows %s",
                            record["_id"], oid, record["current_stock"])
            raise

    def _commit_in_transaction(self, match: dict, update: dict, record: dict) -> bool:
        with self.database.client.start_session() as session:
            with session.start_transaction():
                result = self.products.update_one(match, update, session=session)
                if result.matched_count == 0:
                    session.abort_transaction()
                    return False
                self.records.insert_one(record, session=session)
        return True

    def _revert(self, oid: ObjectId, snapshot: dict, record: dict) -> None:
        previous = record["previous_stock"]
        try:
            result = self.products.update_one(
                {"_id": oid, "stock_version": record["sequence"], "quantity": record["current_stock"]},
                {"$set": {
                    "quantity": previous,
                    "in_stock": previous > 0,
                    "stock_version": snapshot.get("stock_version") or 0,
                }},
            )
            reverted = result.matched_count == 1
        except PyMongoError:
            logger.exception("Reverting product %s after a failed ledger write raised", oid)
            reverted = False
        if not reverted:
            logger.critical("Product %s quantity is %s but no ledger record was written; reconcile manually",
                            oid, record["current_stock"])
            raise DataIntegrityError(f"Product {oid} stock changed without a ledger record")
        logger.warning("Ledger write for product %s failed; stock reverted to %s", oid, previous)

    # Queries

    def get_history(self, product_id, page: int = 1, limit: int = 100) -> List[dict]:
        oid = to_object_id(product_id)
        if not self._read(lambda: self.products.find_one({"_id": oid}, {"_id": 1})):
            raise ProductNotFoundError(product_id)
        skip = (max(page, 1) - 1) * limit
        docs = self._read(lambda: list(
            self.records.find({"product": str(oid)})
            .sort([("created_at", DESCENDING), ("sequence", DESCENDING)])
            .skip(skip)
            .limit(limit)
        ))
        return self._populate(docs)

    def list_records(self, filters: Optional[dict] = None, page: int = 1, limit: int = 100,
                     sort: Optional[str] = None) -> List[dict]:
        order = sort_spec(sort, RECORD_SORT_FIELDS, [("created_at", DESCENDING), ("sequence", DESCENDING)])
        skip = (max(page, 1) - 1) * limit
        docs = self._read(lambda: list(
            self.records.find(filters or {}).sort(order).skip(skip).limit(limit)
        ))
        return self._populate(docs)

    def get_record(self, record_id) -> Optional[dict]:
        try:
            oid = ObjectId(record_id)
        except (InvalidId, TypeError):
            return None
        doc = self._read(lambda: self.records.find_one({"_id": oid}))
        if not doc:
            return None
        return self._populate([doc])[0]

    def verify_consistency(self, product_id) -> dict:
        oid = to_object_id(product_id)
        product = self._read(lambda: self.products.find_one({"_id": oid}, {"quantity": 1}))
        if not product:
            raise ProductNotFoundError(product_id)
        docs = self._read(lambda: list(
            self.records.find({"product": str(oid)}).sort("sequence", ASCENDING)
        ))
        stored = int(product.get("quantity") or 0)
        try:
            replayed = replay(docs)
        except DataIntegrityError as e:
            logger.error("Ledger of product %s failed replay: %s", oid, e)
            raise
        if replayed != stored:
            logger.error("Product %s stores quantity %s but its ledger replays to %s", oid, stored, replayed)
            raise DataIntegrityError(
                f"Product {oid} stores quantity {stored} but its ledger replays to {replayed}"
            )
        return {"product_id": str(oid), "stored_quantity": stored, "replayed_quantity": replayed, "records": len(docs)}

    def _populate(self, docs: List[dict]) -> List[dict]:
        """Attach product summary and operator name to each record (read-time join)."""
        product_ids = {d["product"] for d in docs if ObjectId.is_valid(d.get("product"))}
        operator_ids = {d["operator"] for d in docs if ObjectId.is_valid(d.get("operator"))}

        products = {}
        if product_ids:
            for p in self._read(lambda: list(self.products.find(
                {"_id": {"$in": [ObjectId(i) for i in product_ids]}},
                {"name": 1, "category": 1, "price": 1},
            ))):
                products[str(p["_id"])] = to_str_id(p)
        operators = {}
        if operator_ids:
            for u in self._read(lambda: list(self.database[USERS].find(
                {"_id": {"$in": [ObjectId(i) for i in operator_ids]}},
                {"name": 1},
            ))):
                operators[str(u["_id"])] = to_str_id(u)

        out = []
        for d in docs:
            item = to_str_id(d)
            item["product"] = products.get(d["product"], {"id": d["product"]})
            item["operator"] = operators.get(d["operator"], {"id": d["operator"]})
            out.append(item)
        return out
