from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class Address(BaseModel):
    name: str
    email: Optional[EmailStr] = None
    address: str = ""
    city: str = ""
    state: str = ""
    postcode: str = ""
    country: str = "Australia"


class OrderItemIn(BaseModel):
    product_id: Optional[int] = None
    product_name: str = Field(min_length=1, max_length=255)
    product_sku: Optional[str] = None
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    weight: Optional[Decimal] = Field(default=None, ge=0)
    variant_data: Optional[dict] = None
    custom_options: Optional[dict] = None
    notes: Optional[str] = None


class OrderItemUpdate(BaseModel):
    quantity: Optional[int] = Field(default=None, ge=1)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    tax_amount: Optional[Decimal] = Field(default=None, ge=0)
    weight: Optional[Decimal] = Field(default=None, ge=0)
    notes: Optional[str] = None


class OrderCreate(BaseModel):
    order_number: Optional[str] = None
    user_id: Optional[int] = None
    guest_email: Optional[EmailStr] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    subtotal: Decimal = Field(default=Decimal("0"), ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    shipping_amount: Decimal = Field(default=Decimal("0"), ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    coupon_code: Optional[str] = None
    coupon_discount: Decimal = Field(default=Decimal("0"), ge=0)
    total_amount: Optional[Decimal] = Field(default=None, ge=0)
    payment_method: Optional[str] = None
    shipping_method: Optional[str] = None
    billing_address: Address
    shipping_address: Address
    customer_notes: Optional[str] = None
    items: List[OrderItemIn] = Field(default_factory=list)


class OrderUpdate(BaseModel):
    tax_amount: Optional[Decimal] = Field(default=None, ge=0)
    shipping_amount: Optional[Decimal] = Field(default=None, ge=0)
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    coupon_code: Optional[str] = None
    coupon_discount: Optional[Decimal] = Field(default=None, ge=0)
    shipping_method: Optional[str] = None
    shipping_tracking_number: Optional[str] = None
    shipping_carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    customer_notes: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str
    notes: Optional[str] = None


class ItemRefundRequest(BaseModel):
    quantity: int = Field(ge=0)
    amount: Decimal = Field(ge=0)
    reason: Optional[str] = Field(default=None, max_length=500)


class OrderItemOut(BaseModel):
    id: int
    order_id: int
    product_id: Optional[int]
    product_name: str
    product_sku: Optional[str]
    quantity: int
    unit_price: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_price: Decimal
    weight: Optional[Decimal]
    status: str
    refunded_quantity: int
    refunded_amount: Decimal
    refunded_at: Optional[datetime]
    refunded_reason: Optional[str]
    remaining_quantity: int
    remaining_amount: Decimal

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    order_number: str
    user_id: Optional[int]
    guest_email: Optional[str]
    status: str
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    discount_amount: Decimal
    coupon_code: Optional[str]
    coupon_discount: Decimal
    total_amount: Decimal
    refunded_amount: Decimal
    payment_status: str
    payment_method: Optional[str]
    payment_transaction_id: Optional[str]
    shipping_method: Optional[str]
    shipping_tracking_number: Optional[str]
    shipping_carrier: Optional[str]
    billing_address: dict
    shipping_address: dict
    customer_notes: Optional[str]
    admin_notes: Optional[str]
    items_count: int
    weight_total: Decimal
    shipped_at: Optional[datetime]
    delivered_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancelled_reason: Optional[str]
    refunded_at: Optional[datetime]
    refunded_reason: Optional[str]
    created_at: datetime
    items: List[OrderItemOut]

    class Config:
        from_attributes = True
