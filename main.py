import logging
import os
import re
from typing import List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import create_access_token, get_current_user, get_password_hash, require_admin, verify_password
from database import create_document, ensure_indexes, get_db, sort_spec, to_str_id, utcnow
from errors import StoreError
from images import HostContext, EnvironmentInfo, detect_environment, resolve_image_url
from inventory import InventoryLedger
from orders import cancel_order, place_order, update_order_status
from ratings import effective_price, refresh_review_stats
from schemas import (
    PRODUCT_CATEGORIES,
    ContactInfo,
    OperationType,
    OrderStatus,
    PaymentMethod,
    Product,
    ProductCategory,
    Review,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
IMAGE_BASE_PATH = os.getenv("IMAGE_BASE_PATH")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Coffee Shop API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.on_event("startup")
def create_indexes():
    db = get_db()
    if db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; data routes will answer 500")
        return
    ensure_indexes(db)


# Utility functions
def require_db(db=Depends(get_db)):
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def get_ledger(db=Depends(require_db)) -> InventoryLedger:
    return InventoryLedger(db)


def parse_id(value: str, what: str = "Product") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise HTTPException(status_code=404, detail=f"{what} not found")


def product_out(doc: dict) -> dict:
    out = to_str_id(doc)
    out["actual_price"] = effective_price(out.get("price", 0), out.get("discount"))
    return out


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8)


class UserOut(BaseModel):
    id: str
    name: str
    email: EmailStr
    role: str


# Routes
@app.get("/")
def root():
    return {"message": "Coffee Shop API is running"}


@app.get("/test")
def test_database(db=Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Configured"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"

    return response


# Auth endpoints
@app.post("/auth/register", response_model=UserOut)
def register(payload: UserCreate, db=Depends(require_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")

    doc = {
        "name": payload.name.strip(),
        "email": email,
        "password_hash": get_password_hash(payload.password),
        "role": "customer",
    }
    uid = create_document("user", doc, database=db)
    return {"id": uid, "name": doc["name"], "email": doc["email"], "role": doc["role"]}


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(require_db)):
    user = db["user"].find_one({"email": form_data.username.lower()})
    if not user or not verify_password(form_data.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Incorrect email or password")

    access_token = create_access_token({"sub": str(user["_id"])})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/auth/me", response_model=UserOut)
def me(user=Depends(get_current_user)):
    return {"id": str(user["_id"]), "name": user.get("name", ""), "email": user["email"], "role": user.get("role", "customer")}


# Product models
class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    category: ProductCategory
    images: List[str] = []
    main_image: str
    quantity: int = Field(0, ge=0)
    featured: bool = False
    discount: Optional[float] = Field(None, ge=0, le=100)


class ProductUpdate(BaseModel):
    # Stock moves only through /inventory.
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    category: Optional[ProductCategory] = None
    images: Optional[List[str]] = None
    main_image: Optional[str] = None
    featured: Optional[bool] = None
    discount: Optional[float] = Field(None, ge=0, le=100)


class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1)


PRODUCT_SORT_FIELDS = ("price", "name", "created_at", "average_rating")


# Product endpoints
@app.get("/products")
def list_products(
    category: Optional[str] = None,
    featured: Optional[bool] = None,
    in_stock: Optional[bool] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    search: Optional[str] = None,
    sort: Optional[str] = None,
    page: int = 1,
    limit: int = 100,
    db=Depends(require_db),
):
    filter_q = {}
    if category:
        filter_q["category"] = category
    if featured is not None:
        filter_q["featured"] = featured
    if in_stock is not None:
        filter_q["in_stock"] = in_stock
    if min_price is not None or max_price is not None:
        filter_q["price"] = {}
        if min_price is not None:
            filter_q["price"]["$gte"] = min_price
        if max_price is not None:
            filter_q["price"]["$lte"] = max_price
    if search:
        filter_q["$or"] = [
            {"name": {"$regex": re.escape(search), "$options": "i"}},
            {"description": {"$regex": re.escape(search), "$options": "i"}},
        ]

    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    order = sort_spec(sort, PRODUCT_SORT_FIELDS, [("created_at", -1)])
    total = db["product"].count_documents(filter_q)
    items = list(db["product"].find(filter_q).sort(order).skip((page - 1) * limit).limit(limit))
    return {
        "results": len(items),
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": -(-total // limit),
        "products": [product_out(it) for it in items],
    }


@app.get("/products/category/{category}")
def products_by_category(category: str, db=Depends(require_db)):
    if category not in PRODUCT_CATEGORIES:
        raise HTTPException(status_code=400, detail="Invalid product category")
    items = list(db["product"].find({"category": category}))
    return [product_out(it) for it in items]


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(require_db)):
    doc = db["product"].find_one({"_id": parse_id(product_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return product_out(doc)


@app.post("/products", status_code=201)
def create_product(payload: ProductIn, admin=Depends(require_admin), db=Depends(require_db)):
    if db["product"].find_one({"name": payload.name}):
        raise HTTPException(status_code=400, detail="Product name already exists")

    # Starts empty; the initial quantity is booked through the ledger.
    data = payload.model_dump(exclude={"quantity"})
    product = Product(**data, quantity=0, in_stock=False)
    try:
        pid = create_document("product", product, database=db)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Product name already exists")

    if payload.quantity > 0:
        try:
            InventoryLedger(db).adjust_stock(pid, payload.quantity, admin["_id"], note="Initial stock")
        except (StoreError, PyMongoError):
            logger.warning("Booking initial stock of %s failed; removing the new product", payload.name)
            db["product"].delete_one({"_id": ObjectId(pid)})
            raise
    return product_out(db["product"].find_one({"_id": ObjectId(pid)}))


@app.patch("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, admin=Depends(require_admin), db=Depends(require_db)):
    oid = parse_id(product_id)
    changes = payload.model_dump(exclude_unset=True)
    if "name" in changes and db["product"].find_one({"name": changes["name"], "_id": {"$ne": oid}}):
        raise HTTPException(status_code=400, detail="Product name already exists")
    changes["updated_at"] = utcnow()

    result = db["product"].update_one({"_id": oid}, {"$set": changes})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return product_out(db["product"].find_one({"_id": oid}))


@app.delete("/products/{product_id}")
def delete_product(product_id: str, admin=Depends(require_admin), db=Depends(require_db)):
    # The product's ledger is kept as audit history.
    result = db["product"].delete_one({"_id": parse_id(product_id)})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"status": "removed"}


@app.post("/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, payload: ReviewIn, user=Depends(get_current_user), db=Depends(require_db)):
    oid = parse_id(product_id)
    comment = payload.comment.strip()
    if not comment:
        raise HTTPException(status_code=400, detail="Review comment cannot be empty")

    review = Review(user=str(user["_id"]), rating=payload.rating, comment=comment, created_at=utcnow())
    product = db["product"].find_one_and_update(
        {"_id": oid},
        {"$push": {"reviews": review.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")

    return product_out(refresh_review_stats(db["product"], oid, product))


# Inventory models
class StockChangeIn(BaseModel):
    quantity: int
    note: Optional[str] = None


class StockAdjustIn(BaseModel):
    new_stock: int
    note: Optional[str] = None


# Inventory endpoints (admin only)
@app.get("/inventory", dependencies=[Depends(require_admin)])
def list_inventory_records(
    operation_type: Optional[OperationType] = None,
    product: Optional[str] = None,
    operator: Optional[str] = None,
    sort: Optional[str] = None,
    page: int = 1,
    limit: int = 100,
    ledger: InventoryLedger = Depends(get_ledger),
):
    filters = {}
    if operation_type:
        filters["operation_type"] = operation_type
    if product:
        filters["product"] = product
    if operator:
        filters["operator"] = operator
    records = ledger.list_records(filters, page=page, limit=min(max(limit, 1), 100), sort=sort)
    return {"results": len(records), "records": records}


@app.get("/inventory/product/{product_id}", dependencies=[Depends(require_admin)])
def product_inventory_history(product_id: str, page: int = 1, limit: int = 100,
                              ledger: InventoryLedger = Depends(get_ledger)):
    records = ledger.get_history(product_id, page=page, limit=min(max(limit, 1), 100))
    return {"results": len(records), "records": records}


@app.get("/inventory/product/{product_id}/verify", dependencies=[Depends(require_admin)])
def verify_product_inventory(product_id: str, ledger: InventoryLedger = Depends(get_ledger)):
    return ledger.verify_consistency(product_id)


@app.post("/inventory/product/{product_id}/add", status_code=201)
def add_inventory(product_id: str, payload: StockChangeIn, admin=Depends(require_admin),
                  ledger: InventoryLedger = Depends(get_ledger)):
    record = ledger.add_stock(product_id, payload.quantity, admin["_id"], payload.note)
    return {"record": record}


@app.post("/inventory/product/{product_id}/remove", status_code=201)
def remove_inventory(product_id: str, payload: StockChangeIn, admin=Depends(require_admin),
                     ledger: InventoryLedger = Depends(get_ledger)):
    record = ledger.remove_stock(product_id, payload.quantity, admin["_id"], payload.note)
    return {"record": record}


@app.post("/inventory/product/{product_id}/adjust", status_code=201)
def adjust_inventory(product_id: str, payload: StockAdjustIn, admin=Depends(require_admin),
                     ledger: InventoryLedger = Depends(get_ledger)):
    record = ledger.adjust_stock(product_id, payload.new_stock, admin["_id"], payload.note)
    return {"record": record}


@app.get("/inventory/{record_id}", dependencies=[Depends(require_admin)])
def get_inventory_record(record_id: str, ledger: InventoryLedger = Depends(get_ledger)):
    record = ledger.get_record(record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Inventory record not found")
    return record


# Order models
class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderIn(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    payment_method: PaymentMethod
    contact_info: ContactInfo
    note: Optional[str] = None


class OrderStatusIn(BaseModel):
    status: OrderStatus


def load_order(order_id: str, user: dict, db) -> dict:
    order = db["order"].find_one({"_id": parse_id(order_id, "Order")})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order["user"] != str(user["_id"]) and user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Not your order")
    return order


# Order endpoints
@app.post("/orders", status_code=201)
def create_order(payload: OrderIn, user=Depends(get_current_user), db=Depends(require_db),
                 ledger: InventoryLedger = Depends(get_ledger)):
    order = place_order(
        db,
        user["_id"],
        [(item.product_id, item.quantity) for item in payload.items],
        payload.payment_method,
        payload.contact_info,
        note=payload.note,
        ledger=ledger,
    )
    return to_str_id(order)


@app.get("/orders/my-orders")
def my_orders(user=Depends(get_current_user), db=Depends(require_db)):
    items = list(db["order"].find({"user": str(user["_id"])}).sort("created_at", -1))
    return {"results": len(items), "orders": [to_str_id(it) for it in items]}


@app.get("/orders", dependencies=[Depends(require_admin)])
def list_orders(status: Optional[OrderStatus] = None, page: int = 1, limit: int = 100, db=Depends(require_db)):
    filter_q = {"status": status} if status else {}
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    total = db["order"].count_documents(filter_q)
    items = list(db["order"].find(filter_q).sort("created_at", -1).skip((page - 1) * limit).limit(limit))
    return {"results": len(items), "total": total, "page": page, "orders": [to_str_id(it) for it in items]}


@app.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), db=Depends(require_db)):
    return to_str_id(load_order(order_id, user, db))


@app.patch("/orders/{order_id}/cancel")
def cancel_order_route(order_id: str, user=Depends(get_current_user), db=Depends(require_db),
                       ledger: InventoryLedger = Depends(get_ledger)):
    order = load_order(order_id, user, db)
    return to_str_id(cancel_order(db, order, user["_id"], ledger))


@app.patch("/orders/{order_id}/status")
def update_order_status_route(order_id: str, payload: OrderStatusIn, admin=Depends(require_admin),
                              db=Depends(require_db), ledger: InventoryLedger = Depends(get_ledger)):
    order = load_order(order_id, admin, db)
    return to_str_id(update_order_status(db, order, payload.status, admin["_id"], ledger))


# Image endpoints
@app.get("/images/resolve")
def resolve_image(path: str, hostname: Optional[str] = None, pathname: str = "/"):
    host = HostContext(hostname=hostname, pathname=pathname, base_path=IMAGE_BASE_PATH)
    return {"url": resolve_image_url(path, host)}


@app.get("/images/environment", response_model=EnvironmentInfo)
def image_environment(hostname: Optional[str] = None):
    return detect_environment(HostContext(hostname=hostname))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
