import enum
from datetime import date, datetime

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Date,
    DateTime,
    Numeric,
    Enum,
    ForeignKey,
    Index,
    CheckConstraint,
    and_,
    or_,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class CopyStatus(str, enum.Enum):
    AVAILABLE = "available"
    ISSUED = "issued"
    DAMAGED = "damaged"
    LOST = "lost"


class LoanStatus(str, enum.Enum):
    ISSUED = "issued"
    RETURNED = "returned"
    OVERDUE = "overdue"
    LOST = "lost"


class MemberStatus(str, enum.Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    SUSPENDED = "Suspended"


class MembershipType(str, enum.Enum):
    STANDARD = "standard"
    PREMIUM = "premium"
    STUDENT = "student"
    SENIOR = "senior"


class PaymentType(str, enum.Enum):
    FINE = "fine"
    MEMBERSHIP = "membership"
    OTHER = "other"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    ONLINE = "online"
    CHECK = "check"


# Loan states that still hold the copy.
OPEN_LOAN_STATUSES = (LoanStatus.ISSUED, LoanStatus.OVERDUE)


def _enum_column(enum_cls, **kwargs):
    return Column(
        Enum(
            enum_cls,
            values_callable=lambda members: [m.value for m in members],
            native_enum=False,
            validate_strings=True,
            length=20,
        ),
        **kwargs,
    )


class Book(Base):
    __tablename__ = "books"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=False)
    isbn = Column(String(20), unique=True, nullable=False, index=True)
    publisher = Column(String(255), nullable=True)
    publication_year = Column(Integer, nullable=True)
    category = Column(String(100), nullable=True)
    language = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    copies = relationship(
        "Copy",
        back_populates="book",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Copy.id",
    )


class Rack(Base):
    __tablename__ = "racks"

    id = Column(Integer, primary_key=True, index=True)
    rack_number = Column(String(10), unique=True, nullable=False, index=True)
    location = Column(String(255), nullable=True)
    capacity = Column(Integer, nullable=False, default=100)
    shelves = Column(Integer, nullable=False, default=5)
    created_at = Column(DateTime, default=datetime.utcnow)

    copies = relationship("Copy", back_populates="rack", order_by="Copy.id")

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_rack_capacity_positive"),
        CheckConstraint("shelves > 0", name="ck_rack_shelves_positive"),
    )


class Copy(Base):
    __tablename__ = "copies"

    id = Column(Integer, primary_key=True, index=True)
    book_id = Column(
        Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True
    )
    rack_number = Column(
        String(10),
        ForeignKey("racks.rack_number", ondelete="SET NULL", onupdate="CASCADE"),
        nullable=True,
        index=True,
    )
    shelf_number = Column(String(10), nullable=True)
    status = _enum_column(CopyStatus, nullable=False, default=CopyStatus.AVAILABLE)
    created_at = Column(DateTime, default=datetime.utcnow)

    book = relationship("Book", back_populates="copies")
    rack = relationship("Rack", back_populates="copies")
    loans = relationship(
        "Loan",
        back_populates="copy",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Loan.id",
    )


class Member(Base):
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)
    phone = Column(String(20), nullable=True)
    address = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(100), nullable=True)
    zip_code = Column(String(10), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    membership_type = _enum_column(
        MembershipType, nullable=False, default=MembershipType.STANDARD
    )
    emergency_contact_name = Column(String(255), nullable=True)
    emergency_contact_phone = Column(String(20), nullable=True)
    notes = Column(Text, nullable=True)
    status = _enum_column(MemberStatus, nullable=False, default=MemberStatus.ACTIVE)
    join_date = Column(Date, nullable=False, default=date.today)
    last_activity = Column(Date, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    loans = relationship(
        "Loan",
        back_populates="member",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Loan.issue_date.desc()",
    )
    payments = relationship(
        "Payment",
        back_populates="member",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Payment.payment_date.desc()",
    )


class Loan(Base):
    __tablename__ = "loans"

    id = Column(Integer, primary_key=True, index=True)
    copy_id = Column(
        Integer, ForeignKey("copies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    member_id = Column(
        Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True
    )
    issue_date = Column(Date, nullable=False, default=date.today)
    due_date = Column(Date, nullable=False)
    return_date = Column(Date, nullable=True)
    status = _enum_column(LoanStatus, nullable=False, default=LoanStatus.ISSUED)
    fine_amount = Column(Numeric(10, 2), nullable=False, default=0)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    copy = relationship("Copy", back_populates="loans")
    member = relationship("Member", back_populates="loans")

    def days_overdue(self, today: date) -> int:
        if self.status not in OPEN_LOAN_STATUSES:
            return 0
        return max((today - self.due_date).days, 0)

    __table_args__ = (
        CheckConstraint("fine_amount >= 0", name="ck_loan_fine_not_negative"),
        # at most one open loan per copy
        Index(
            "uq_loans_open_copy",
            "copy_id",
            unique=True,
            sqlite_where=text("status IN ('issued', 'overdue')"),
            postgresql_where=text("status IN ('issued', 'overdue')"),
        ),
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(
        Integer, ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount = Column(Numeric(10, 2), nullable=False)
    payment_date = Column(Date, nullable=False, default=date.today)
    payment_type = _enum_column(PaymentType, nullable=False)
    payment_method = _enum_column(PaymentMethod, nullable=False)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    member = relationship("Member", back_populates="payments")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
    )


def overdue_clause(today: date):
    """Open loans past their due date, or flagged overdue by a librarian."""
    return or_(
        Loan.status == LoanStatus.OVERDUE,
        and_(Loan.status == LoanStatus.ISSUED, Loan.due_date < today),
    )
