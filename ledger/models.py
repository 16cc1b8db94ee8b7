from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator


SERIES_UNLOCK = "SERIES_UNLOCK"


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_series(series_name: Optional[str]) -> Optional[str]:
    if series_name is None:
        return None
    series_name = series_name.strip()
    return series_name or None


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


class CreateCourseRequest(BaseModel):
    title: str
    price: Decimal = Field(default=Decimal("0.00"), ge=0)
    series_name: Optional[str] = Field(default=None, description="Courses sharing a series name form one series")
    series_part: int = Field(default=1, ge=1)
    is_published: bool = False

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "title": "Paint Correction - Part 2",
            "price": 49.00,
            "series_name": "Paint Correction",
            "series_part": 2,
            "is_published": True
        }
    })

    @field_validator("series_name")
    @classmethod
    def _strip_series(cls, value: Optional[str]) -> Optional[str]:
        return normalize_series(value)


class CreateChapterRequest(BaseModel):
    title: str
    order_index: int = Field(..., ge=0)
    is_unlocked_by_default: bool = True


class CheckoutRequest(BaseModel):
    course_id: UUID
    customer_email: str
    customer_name: str
    customer_phone: Optional[str] = None

    @field_validator("customer_email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)


class ConfirmPaymentRequest(BaseModel):
    payment_method: str = Field(default="CARD", description="Real payment method tag")
    transaction_id: Optional[str] = None


class CreateAccountRequest(BaseModel):
    email: str
    display_name: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)


class Course(BaseModel):
    id: UUID
    title: str
    price: Decimal
    is_published: bool
    series_name: Optional[str] = None
    series_part: int = 1
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Chapter(BaseModel):
    id: UUID
    course_id: UUID
    title: str
    order_index: int
    is_unlocked_by_default: bool = True

    model_config = ConfigDict(from_attributes=True)


class Account(BaseModel):
    id: UUID
    email: str
    display_name: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    id: UUID
    customer_email: str
    course_id: UUID
    customer_name: str
    customer_phone: Optional[str] = None
    price_paid: Decimal
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_series_unlock(self) -> bool:
        return self.payment_method == SERIES_UNLOCK

    def can_confirm(self) -> bool:
        return self.payment_status == PaymentStatus.PENDING

    def can_refund(self) -> bool:
        return self.payment_status == PaymentStatus.PAID


class ChapterAccess(BaseModel):
    account_id: UUID
    chapter_id: UUID
    is_unlocked: bool
    unlocked_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CustomerLedgerResponse(BaseModel):
    customer_email: str
    entries: list[LedgerEntry]
    total_count: int


class AccountResponse(BaseModel):
    account: Account
    chapters_unlocked: int
    message: str


class SeriesAccessStatus(BaseModel):
    series_name: str
    total_courses: int
    granted_courses: int
    unlocked_by_series: int
    missing_course_ids: list[UUID] = Field(default_factory=list)


class CustomerSeriesStatus(BaseModel):
    customer_email: str
    customer_name: Optional[str] = None
    series: list[SeriesAccessStatus]


class SeriesUnlockStats(BaseModel):
    series_name: str
    total_unlocks: int


class SeriesStatusReport(BaseModel):
    total_customers: int
    total_series_unlocks: int
    customers: list[CustomerSeriesStatus]
    series_stats: list[SeriesUnlockStats]
