import re
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def check_coupon_rules(discount_type: str, discount_value: float, valid_from: datetime, valid_until: datetime):
    if _as_utc(valid_until) < _as_utc(valid_from):
        raise ValueError("validUntil must not be before validFrom")
    if discount_type == "percentage" and discount_value > 100:
        raise ValueError("Percentage discounts cannot exceed 100")


OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]


class Product(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    price: float = Field(ge=0)
    originalPrice: Optional[float] = None
    images: List[str] = []
    category: str = ""
    stockQuantity: int = Field(default=0, ge=0)
    inStock: bool = False
    featured: bool = False

    @model_validator(mode="after")
    def derive_in_stock(self):
        self.inStock = self.stockQuantity > 0
        return self


class CartLine(BaseModel):
    productId: str
    quantity: int = Field(ge=1)
    product: Product


class Coupon(BaseModel):
    id: Optional[str] = None
    code: str
    title: str = ""
    description: str = ""
    discountType: Literal["percentage", "fixed"]
    discountValue: float = Field(ge=0)
    minOrderAmount: Optional[float] = None
    maxDiscountAmount: Optional[float] = None
    validFrom: datetime
    validUntil: datetime
    isActive: bool = True
    usageLimit: Optional[int] = None
    usedCount: int = 0
    applicableCategories: Optional[List[str]] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("validFrom", "validUntil")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)


class CouponValidation(BaseModel):
    valid: bool
    reason: Optional[str] = None
    message: str = ""


class CouponResult(BaseModel):
    success: bool
    reason: Optional[str] = None
    discount: float = 0
    message: str


class CheckoutTotals(BaseModel):
    subtotal: float
    discount: float
    shipping: float
    total: float
    itemCount: int
    couponCode: Optional[str] = None


class ShippingAddress(BaseModel):
    name: str
    email: str
    phone: str
    addressLine1: str
    addressLine2: Optional[str] = None
    city: str
    state: str
    pincode: str

    @field_validator("name", "addressLine1", "city", "state")
    @classmethod
    def required(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("This field is required")
        return v.strip()

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        if not re.search(r"\S+@\S+\.\S+", v):
            raise ValueError("Please enter a valid email address")
        return v.strip()

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v: str) -> str:
        digits = re.sub(r"\D", "", v)
        if len(digits) != 10:
            raise ValueError("Please enter a valid 10-digit phone number")
        return digits

    @field_validator("pincode")
    @classmethod
    def check_pincode(cls, v: str) -> str:
        if not re.fullmatch(r"\d{6}", v.strip()):
            raise ValueError("Please enter a valid 6-digit PIN code")
        return v.strip()


class OrderLine(BaseModel):
    productId: str
    name: str
    category: str
    quantity: int
    price: float


class OrderPayload(BaseModel):
    userId: str
    items: List[OrderLine]
    subtotal: float
    discount: float
    shipping: float
    total: float
    status: OrderStatus = "pending"
    shippingAddress: ShippingAddress
    paymentMethod: Literal["razorpay", "cod"]
    paymentId: Optional[str] = None
    couponCode: Optional[str] = None
    createdAt: datetime


# Request / response bodies

class CartResponse(BaseModel):
    sessionId: str
    items: List[CartLine]
    itemCount: int
    subtotal: float


class AddToCartRequest(BaseModel):
    productId: str
    quantity: int = Field(default=1, ge=1)


class UpdateQuantityRequest(BaseModel):
    quantity: int


class CouponCreate(BaseModel):
    code: str
    title: str = ""
    description: str = ""
    discountType: Literal["percentage", "fixed"]
    discountValue: float = Field(gt=0)
    minOrderAmount: Optional[float] = None
    maxDiscountAmount: Optional[float] = None
    validFrom: datetime
    validUntil: datetime
    isActive: bool = True
    usageLimit: Optional[int] = None
    applicableCategories: Optional[List[str]] = None

    @model_validator(mode="after")
    def check_rules(self):
        check_coupon_rules(self.discountType, self.discountValue, self.validFrom, self.validUntil)
        return self


class CouponUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    discountType: Optional[Literal["percentage", "fixed"]] = None
    discountValue: Optional[float] = Field(default=None, gt=0)
    minOrderAmount: Optional[float] = None
    maxDiscountAmount: Optional[float] = None
    validFrom: Optional[datetime] = None
    validUntil: Optional[datetime] = None
    isActive: Optional[bool] = None
    usageLimit: Optional[int] = None
    applicableCategories: Optional[List[str]] = None


class CouponResponse(BaseModel):
    message: str


class CouponValidateRequest(BaseModel):
    sessionId: str
    code: str


class CouponValidateResponse(BaseModel):
    valid: bool
    discount: Optional[float] = 0
    newTotal: Optional[float] = 0
    message: str


class ApplyCouponRequest(BaseModel):
    code: str


class ApplyCouponResponse(BaseModel):
    success: bool
    message: str
    totals: CheckoutTotals


class PaymentOrderResponse(BaseModel):
    razorpayOrderId: str
    amount: int
    currency: str
    keyId: str
    storeName: str


class PlaceOrderRequest(BaseModel):
    userId: str
    shippingAddress: ShippingAddress
    paymentMethod: Literal["razorpay", "cod"]
    razorpayOrderId: Optional[str] = None
    razorpayPaymentId: Optional[str] = None
    razorpaySignature: Optional[str] = None


class OrderResponse(BaseModel):
    orderId: str
    totals: CheckoutTotals
    stockUpdated: bool
    message: str


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
