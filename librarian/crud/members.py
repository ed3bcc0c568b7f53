import logging
from datetime import date
from typing import Optional
from sqlalchemy import case, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from exceptions.exceptions import Conflict, DatabaseError, ReferenceNotFound
from librarian import models, schemas
from librarian.crud.common import (
    as_dict,
    loan_view,
    money,
    paginate,
    payment_view,
    require_fields,
)
from librarian.models import (
    LoanStatus,
    MemberStatus,
    MembershipType,
    OPEN_LOAN_STATUSES,
    overdue_clause,
)
from librarian.storage import atomic

logger = logging.getLogger(__name__)


def _member_aggregates(db: Session, today: date):
    """Members joined with loan aggregates, recomputed on every call.

    ``total_fines`` only sums loans that are still open; fines recorded on
    returned loans are treated as settled at return time.
    """
    return (
        db.query(
            models.Member,
            func.count(case((models.Loan.status == LoanStatus.ISSUED, 1))).label(
                "books_issued"
            ),
            func.count(case((overdue_clause(today), 1))).label("books_overdue"),
            func.coalesce(
                func.sum(
                    case(
                        (
                            models.Loan.status.in_(OPEN_LOAN_STATUSES),
                            models.Loan.fine_amount,
                        ),
                        else_=0,
                    )
                ),
                0,
            ).label("total_fines"),
        )
        .outerjoin(models.Loan, models.Loan.member_id == models.Member.id)
        .group_by(models.Member.id)
    )


def _member_row(member, issued, overdue, fines) -> dict:
    return {
        **as_dict(member),
        "books_issued": issued,
        "books_overdue": overdue,
        "total_fines": money(fines),
    }


def get_member_record(db: Session, member_id: int) -> models.Member:
    member = db.get(models.Member, member_id)
    if member is None:
        raise ReferenceNotFound("Member", member_id)
    return member


def member_summary(db: Session, member_id: int) -> dict:
    try:
        row = (
            _member_aggregates(db, date.today())
            .filter(models.Member.id == member_id)
            .first()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch member", str(e))
    if row is None:
        raise ReferenceNotFound("Member", member_id)
    return _member_row(*row)


def list_members(
    db: Session,
    search: Optional[str] = None,
    status: Optional[MemberStatus] = None,
    membership_type: Optional[MembershipType] = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    conditions = []
    if search:
        conditions.append(
            or_(
                models.Member.first_name.ilike(f"%{search}%"),
                models.Member.last_name.ilike(f"%{search}%"),
                models.Member.email.ilike(f"%{search}%"),
                models.Member.phone.ilike(f"%{search}%"),
            )
        )
    if status is not None:
        conditions.append(models.Member.status == status)
    if membership_type is not None:
        conditions.append(models.Member.membership_type == membership_type)

    try:
        total = db.query(func.count(models.Member.id)).filter(*conditions).scalar()
        query = (
            _member_aggregates(db, date.today())
            .filter(*conditions)
            .order_by(models.Member.last_name, models.Member.first_name)
        )
        rows = paginate(query, page, limit).all()
    except SQLAlchemyError as e:
        raise DatabaseError("list members", str(e))
    return {"items": [_member_row(*row) for row in rows], "total": total}


def get_member(db: Session, member_id: int) -> dict:
    summary = member_summary(db, member_id)
    loans = (
        db.query(models.Loan)
        .options(
            selectinload(models.Loan.copy).selectinload(models.Copy.book),
            selectinload(models.Loan.member),
        )
        .filter(models.Loan.member_id == member_id)
        .order_by(models.Loan.issue_date.desc(), models.Loan.id.desc())
        .all()
    )
    payments = (
        db.query(models.Payment)
        .filter(models.Payment.member_id == member_id)
        .order_by(models.Payment.payment_date.desc(), models.Payment.id.desc())
        .all()
    )
    return {
        "member": summary,
        "loans": [loan_view(loan) for loan in loans],
        "payments": [payment_view(p) for p in payments],
    }


def email_in_use(db: Session, email: str, member_id: Optional[int] = None) -> bool:
    query = db.query(models.Member.id).filter(models.Member.email == email)
    if member_id is not None:
        query = query.filter(models.Member.id != member_id)
    return query.first() is not None


def create_member(db: Session, item: schemas.MemberCreate) -> models.Member:
    require_fields(item, "first_name", "last_name", "email")
    if email_in_use(db, item.email):
        raise Conflict("Member with this email already exists")

    member = models.Member(**item.model_dump(), status=MemberStatus.ACTIVE)
    with atomic(db, "create member"):
        db.add(member)
        try:
            db.flush()
        except IntegrityError:
            raise Conflict("Member with this email already exists")
    db.refresh(member)
    logger.info(f"Registered member {member.id} <{member.email}>")
    return member


def update_member(
    db: Session, member_id: int, item: schemas.MemberUpdate
) -> models.Member:
    member = get_member_record(db, member_id)
    changes = item.model_dump(exclude_unset=True)
    if changes.get("email") and email_in_use(db, changes["email"], member_id):
        raise Conflict("Another member with this email already exists")

    required = ("first_name", "last_name", "email", "membership_type", "status")
    with atomic(db, "update member"):
        for field, value in changes.items():
            if value is None and field in required:
                continue
            setattr(member, field, value)
        try:
            db.flush()
        except IntegrityError:
            raise Conflict("Another member with this email already exists")
    db.refresh(member)
    logger.info(f"Updated member {member_id}: {sorted(changes)}")
    return member


def delete_member(db: Session, member_id: int):
    member = get_member_record(db, member_id)
    open_loans = (
        db.query(func.count(models.Loan.id))
        .filter(
            models.Loan.member_id == member_id,
            models.Loan.status.in_(OPEN_LOAN_STATUSES),
        )
        .scalar()
    )
    if open_loans:
        raise Conflict("Cannot delete member with active loans")
    with atomic(db, "delete member"):
        db.delete(member)
    logger.info(f"Deleted member {member_id}")
    return True


def member_stats(db: Session) -> dict:
    counts = db.query(
        func.count(models.Member.id),
        func.count(case((models.Member.status == MemberStatus.ACTIVE, 1))),
        func.count(case((models.Member.status == MemberStatus.SUSPENDED, 1))),
        func.count(case((models.Member.status == MemberStatus.INACTIVE, 1))),
    ).one()
    fines = (
        db.query(func.coalesce(func.sum(models.Loan.fine_amount), 0))
        .filter(models.Loan.status.in_(OPEN_LOAN_STATUSES))
        .scalar()
    )
    total, active, suspended, inactive = counts
    return {
        "total_members": total,
        "active_members": active,
        "suspended_members": suspended,
        "inactive_members": inactive,
        "total_fines": money(fines),
    }
