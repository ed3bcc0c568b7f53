from datetime import date
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Generic, List, Optional, TypeVar

from librarian.models import (
    CopyStatus,
    LoanStatus,
    MemberStatus,
    MembershipType,
    PaymentMethod,
    PaymentType,
)

T = TypeVar("T")


class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int


# Books
class BookBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    author: str = Field(..., min_length=1, max_length=255)
    isbn: str = Field(..., min_length=1, max_length=20)
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    category: Optional[str] = None
    language: Optional[str] = None
    description: Optional[str] = None


class BookCreate(BookBase):
    copies: int = Field(1, ge=1, le=500)
    rack_number: Optional[str] = None
    shelf_number: Optional[str] = None


class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    author: Optional[str] = Field(None, min_length=1, max_length=255)
    isbn: Optional[str] = Field(None, min_length=1, max_length=20)
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    category: Optional[str] = None
    language: Optional[str] = None
    description: Optional[str] = None


class BookSchema(BookBase):
    id: int
    total_copies: int = 0
    available_copies: int = 0

    class Config:
        from_attributes = True


class BookCreated(BaseModel):
    book_id: int
    copies_created: int


# Racks
class RackBase(BaseModel):
    rack_number: str = Field(..., min_length=1, max_length=10)
    location: Optional[str] = None
    capacity: int = Field(100, ge=1)
    shelves: int = Field(5, ge=1)


class RackCreate(RackBase):
    pass


class RackUpdate(BaseModel):
    rack_number: Optional[str] = Field(None, min_length=1, max_length=10)
    location: Optional[str] = None
    capacity: Optional[int] = Field(None, ge=1)
    shelves: Optional[int] = Field(None, ge=1)


class RackSchema(RackBase):
    id: int
    total_copies: int = 0
    available_copies: int = 0
    issued_copies: int = 0

    class Config:
        from_attributes = True


class RackUtilization(BaseModel):
    rack_number: str
    location: Optional[str] = None
    capacity: int
    current_copies: int
    utilization_percentage: float
    available_copies: int
    issued_copies: int


# Copies
class CopyCreate(BaseModel):
    book_id: int
    rack_number: Optional[str] = None
    shelf_number: Optional[str] = None
    status: CopyStatus = CopyStatus.AVAILABLE


class CopyUpdate(BaseModel):
    rack_number: Optional[str] = None
    shelf_number: Optional[str] = None
    status: Optional[CopyStatus] = None


class CopySchema(BaseModel):
    id: int
    book_id: int
    rack_number: Optional[str] = None
    shelf_number: Optional[str] = None
    status: CopyStatus
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    rack_location: Optional[str] = None

    class Config:
        from_attributes = True


# Members
class MemberBase(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=255)
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    date_of_birth: Optional[date] = None
    membership_type: MembershipType = MembershipType.STANDARD
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    notes: Optional[str] = None


class MemberCreate(MemberBase):
    pass


class MemberUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[str] = Field(None, min_length=3, max_length=255)
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    date_of_birth: Optional[date] = None
    membership_type: Optional[MembershipType] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[MemberStatus] = None


class MemberSchema(MemberBase):
    id: int
    status: MemberStatus
    join_date: date
    last_activity: Optional[date] = None
    books_issued: int = 0
    books_overdue: int = 0
    total_fines: Decimal = Decimal("0")

    class Config:
        from_attributes = True


class MemberStats(BaseModel):
    total_members: int
    active_members: int
    suspended_members: int
    inactive_members: int
    total_fines: Decimal


# Loans
class LoanCreate(BaseModel):
    copy_id: int
    member_id: int
    # issue_date + LIBRARIAN_DEFAULT_LOAN_DAYS when omitted
    due_date: Optional[date] = None
    issue_date: Optional[date] = None
    notes: Optional[str] = None


class LoanReturn(BaseModel):
    # computed from the due date when omitted
    fine_amount: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    notes: Optional[str] = None


class LoanUpdate(BaseModel):
    fine_amount: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    notes: Optional[str] = None
    status: Optional[LoanStatus] = None


class LoanSchema(BaseModel):
    id: int
    copy_id: int
    member_id: int
    issue_date: date
    due_date: date
    return_date: Optional[date] = None
    status: LoanStatus
    fine_amount: Decimal
    notes: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    rack_number: Optional[str] = None
    shelf_number: Optional[str] = None
    days_overdue: Optional[int] = None

    class Config:
        from_attributes = True


class LoanCreated(BaseModel):
    loan_id: int


class LoanStats(BaseModel):
    total: int
    active: int
    returned: int
    overdue: int
    total_fines: Decimal
    issued_today: int
    returned_today: int


# Payments
class PaymentCreate(BaseModel):
    member_id: int
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    payment_type: PaymentType
    payment_method: PaymentMethod
    notes: Optional[str] = None


class PaymentSchema(BaseModel):
    id: int
    member_id: int
    amount: Decimal
    payment_date: date
    payment_type: PaymentType
    payment_method: PaymentMethod
    notes: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None

    class Config:
        from_attributes = True


class MemberPaymentStatus(BaseModel):
    member: MemberSchema
    payment_history: List[PaymentSchema]
    total_paid: Decimal
    outstanding_fines: Decimal
    last_payment: Optional[PaymentSchema] = None


# Detail views
class BookDetail(BaseModel):
    book: BookSchema
    copies: List[CopySchema]


class RackDetail(BaseModel):
    rack: RackSchema
    copies: List[CopySchema]


class CopyDetail(BaseModel):
    copy_: CopySchema = Field(..., alias="copy")
    current_loan: Optional[LoanSchema] = None

    class Config:
        populate_by_name = True


class MemberDetail(BaseModel):
    member: MemberSchema
    loans: List[LoanSchema]
    payments: List[PaymentSchema]
