"""
Storefront API Schemas

Pydantic models validating request bodies before they reach the services,
and the response shapes built from ORM rows (`from_attributes`).

Money fields are integers in minor currency units (cents).
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from models import (
    AddressType,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ProductStatus,
    ShippingMethod,
    ShippingStatus,
    UserRole,
)


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

class UserCreate(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=255)
    role: UserRole = UserRole.customer
    phone: Optional[str] = Field(None, max_length=20)


class UserUpdate(BaseModel):
    email: Optional[EmailStr] = None
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    role: Optional[UserRole] = None
    phone: Optional[str] = Field(None, max_length=20)


class UserOut(ORMModel):
    id: uuid.UUID
    email: str
    name: str
    role: UserRole
    phone: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PreferencesUpdate(BaseModel):
    theme: Optional[str] = Field(None, description="light | dark | system", max_length=10)
    language: Optional[str] = Field(None, max_length=10)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    email_notifications: Optional[bool] = None
    sms_notifications: Optional[bool] = None
    push_notifications: Optional[bool] = None
    stock_alerts: Optional[bool] = None
    price_alerts: Optional[bool] = None


class PreferencesOut(ORMModel):
    user_id: uuid.UUID
    theme: str
    language: str
    currency: str
    email_notifications: bool
    sms_notifications: bool
    push_notifications: bool
    stock_alerts: bool
    price_alerts: bool
    updated_at: datetime


class AddressCreate(BaseModel):
    type: AddressType
    street: str = Field(..., max_length=255)
    city: str = Field(..., max_length=100)
    state: str = Field(..., max_length=100)
    country: str = Field(..., max_length=100)
    postal_code: str = Field(..., max_length=20)
    is_default: bool = False


class AddressUpdate(BaseModel):
    type: Optional[AddressType] = None
    street: Optional[str] = Field(None, max_length=255)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    country: Optional[str] = Field(None, max_length=100)
    postal_code: Optional[str] = Field(None, max_length=20)
    is_default: Optional[bool] = None


class AddressOut(ORMModel):
    id: uuid.UUID
    user_id: uuid.UUID
    type: AddressType
    street: str
    city: str
    state: str
    country: str
    postal_code: str
    is_default: bool
    created_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    parent_id: Optional[uuid.UUID] = None
    image_url: Optional[str] = Field(None, max_length=255)
    display_order: int = 0
    is_active: bool = True


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    parent_id: Optional[uuid.UUID] = None
    image_url: Optional[str] = Field(None, max_length=255)
    display_order: Optional[int] = None
    is_active: Optional[bool] = None


class CategoryOut(ORMModel):
    id: uuid.UUID
    name: str
    description: Optional[str] = None
    parent_id: Optional[uuid.UUID] = None
    image_url: Optional[str] = None
    display_order: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


class CategoryNode(CategoryOut):
    children: List["CategoryNode"] = []


CategoryNode.model_rebuild()


class ImageCreate(BaseModel):
    url: str = Field(..., max_length=255)
    display_order: int = 0


class ImageOut(ORMModel):
    id: uuid.UUID
    url: str
    display_order: int


class VariantCreate(BaseModel):
    name: str = Field(..., max_length=255)
    price: int = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    attributes: Dict[str, Any] = Field(default_factory=dict, description="e.g., {'size':'M','color':'Red'}")


class VariantUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    price: Optional[int] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    attributes: Optional[Dict[str, Any]] = None


class VariantOut(ORMModel):
    id: uuid.UUID
    product_id: uuid.UUID
    name: str
    price: int
    stock: int
    attributes: Dict[str, Any]
    updated_at: datetime


class SpecificationIn(BaseModel):
    value: str


class SpecificationOut(ORMModel):
    key: str
    value: str


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str
    price: int = Field(..., ge=0, description="Price in cents")
    discount_price: Optional[int] = Field(None, ge=0)
    category_id: uuid.UUID
    stock: int = Field(0, ge=0)
    status: ProductStatus = ProductStatus.active
    images: List[ImageCreate] = []
    variants: List[VariantCreate] = []
    specifications: Dict[str, str] = {}


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    discount_price: Optional[int] = Field(None, ge=0)
    category_id: Optional[uuid.UUID] = None
    stock: Optional[int] = Field(None, ge=0)
    status: Optional[ProductStatus] = None


class ProductOut(ORMModel):
    id: uuid.UUID
    name: str
    description: str
    price: int
    discount_price: Optional[int] = None
    category_id: uuid.UUID
    stock: int
    rating: float
    status: str
    images: List[ImageOut] = []
    variants: List[VariantOut] = []
    specifications: List[SpecificationOut] = []
    created_at: datetime
    updated_at: datetime


class ProductPage(BaseModel):
    items: List[ProductOut]
    total: int
    page: int
    limit: int


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------

class CartItemCreate(BaseModel):
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity: int = Field(1, ge=1)


class CartItemUpdate(BaseModel):
    quantity: int = Field(..., ge=1)


class CartItemOut(ORMModel):
    id: uuid.UUID
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    quantity: int
    unit_price: int
    line_total: int
    added_at: datetime
    updated_at: datetime


class Totals(BaseModel):
    subtotal: int
    tax: int
    shipping: int
    total: int


class CartOut(ORMModel):
    id: uuid.UUID
    user_id: uuid.UUID
    items: List[CartItemOut] = []
    totals: Totals
    updated_at: datetime


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class CheckoutIn(BaseModel):
    shipping_address_id: Optional[uuid.UUID] = None
    billing_address_id: Optional[uuid.UUID] = None
    shipping_method: ShippingMethod = ShippingMethod.standard
    payment_method: PaymentMethod


class OrderItemOut(ORMModel):
    id: uuid.UUID
    product_id: uuid.UUID
    variant_id: Optional[uuid.UUID] = None
    name: str
    price: int
    quantity: int
    line_total: int


class PaymentOut(ORMModel):
    id: uuid.UUID
    amount: int
    status: PaymentStatus
    method: PaymentMethod
    transaction_id: Optional[str] = None
    updated_at: datetime


class ShippingOut(ORMModel):
    id: uuid.UUID
    method: ShippingMethod
    status: ShippingStatus
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    cost: int
    updated_at: datetime


class OrderOut(ORMModel):
    id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    status: OrderStatus
    shipping_address_id: Optional[uuid.UUID] = None
    billing_address_id: Optional[uuid.UUID] = None
    shipping_address_snapshot: Dict[str, Any]
    billing_address_snapshot: Dict[str, Any]
    subtotal: int
    tax: int
    shipping_cost: int
    total: int
    items: List[OrderItemOut] = []
    payment: Optional[PaymentOut] = None
    shipping: Optional[ShippingOut] = None
    created_at: datetime
    updated_at: datetime


class OrderStatusIn(BaseModel):
    status: OrderStatus


class PaymentUpdate(BaseModel):
    status: PaymentStatus
    transaction_id: Optional[str] = Field(None, max_length=255)


class ShippingUpdate(BaseModel):
    status: Optional[ShippingStatus] = None
    tracking_number: Optional[str] = Field(None, max_length=255)
    estimated_delivery: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Reviews & wishlists
# ---------------------------------------------------------------------------

class ReviewCreate(BaseModel):
    user_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    images: List[str] = []


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = None


class ReviewOut(ORMModel):
    id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    product_id: uuid.UUID
    rating: int
    comment: Optional[str] = None
    images: List[ImageOut] = []
    created_at: datetime
    updated_at: datetime


class WishlistCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    is_public: bool = False


class WishlistUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    is_public: Optional[bool] = None


class WishlistItemIn(BaseModel):
    product_id: uuid.UUID


class WishlistItemOut(ORMModel):
    id: uuid.UUID
    product_id: uuid.UUID
    added_at: datetime


class WishlistOut(ORMModel):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    is_public: bool
    items: List[WishlistItemOut] = []
    created_at: datetime
    updated_at: datetime
