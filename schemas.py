"""
Database Schemas for the coffee shop

Each Pydantic model corresponds to a MongoDB collection. Collection name is the
lowercase class name. Reviews are embedded in their product.
"""
from datetime import datetime
from typing import Optional, List, Literal
from pydantic import BaseModel, Field, EmailStr

PRODUCT_CATEGORIES = ("coffee", "tea", "dessert", "snack", "merchandise")
OPERATION_TYPES = ("add", "remove", "adjust")

ProductCategory = Literal["coffee", "tea", "dessert", "snack", "merchandise"]
OperationType = Literal["add", "remove", "adjust"]


class User(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of the password")
    role: Literal["customer", "admin"] = "customer"


class Review(BaseModel):
    user: str = Field(..., description="User id of the author")
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1)
    created_at: Optional[datetime] = None


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    category: ProductCategory
    images: List[str] = Field(default_factory=list)
    main_image: str
    in_stock: bool = False
    quantity: int = Field(0, ge=0)
    featured: bool = False
    discount: Optional[float] = Field(None, ge=0, le=100)
    reviews: List[Review] = Field(default_factory=list)
    average_rating: float = Field(0, ge=0, le=5)
    ratings_count: int = 0
    stock_version: int = 0


class InventoryRecord(BaseModel):
    """
    Collection: "inventoryrecord"
    One append-only entry per stock-changing operation. `quantity` is signed:
    +delta for add, -delta for remove, new - previous for adjust.
    """
    product: str
    operation_type: OperationType
    quantity: int
    previous_stock: int = Field(..., ge=0)
    current_stock: int = Field(..., ge=0)
    note: Optional[str] = None
    operator: str
    sequence: int = Field(..., ge=1)


ORDER_STATUSES = ("pending", "paid", "processing", "shipped", "completed", "cancelled", "refunded")
CANCELLABLE_STATUSES = ("pending", "paid")

OrderStatus = Literal["pending", "paid", "processing", "shipped", "completed", "cancelled", "refunded"]
PaymentMethod = Literal["credit_card", "wechat", "alipay", "cash"]


class OrderItem(BaseModel):
    product: str = Field(..., description="Product id")
    name: str = Field(..., description="Snapshot of product name at order time")
    price: float = Field(..., ge=0, description="Unit price after discount at order time")
    quantity: int = Field(..., ge=1)


class ContactInfo(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    address: Optional[str] = None


class Order(BaseModel):
    """
    Collection: "order"
    Placing an order removes its items' stock through the inventory ledger;
    cancelling it books the stock back.
    """
    order_number: str
    user: str
    items: List[OrderItem] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    payment_method: PaymentMethod
    contact_info: ContactInfo
    note: Optional[str] = None
    cancelled_at: Optional[datetime] = None
