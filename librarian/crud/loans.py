"""Loan ledger: the issue / return lifecycle of physical copies.

Every operation that touches more than one row runs inside
``storage.atomic`` so the copy status and the loan record always move
together. Availability is claimed with a conditional UPDATE rather than a
read followed by a write, which keeps two concurrent issues of the same
copy from both succeeding.
"""
import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional
from sqlalchemy import case, func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from exceptions.exceptions import (
    Conflict,
    DatabaseError,
    PreconditionFailed,
    ReferenceNotFound,
    ValidationError,
)
from librarian import models, schemas
from librarian.config import settings
from librarian.crud.common import loan_view, money, paginate
from librarian.crud.members import get_member_record
from librarian.models import (
    CopyStatus,
    LoanStatus,
    MemberStatus,
    OPEN_LOAN_STATUSES,
    overdue_clause,
)
from librarian.storage import atomic

logger = logging.getLogger(__name__)

# Status corrections allowed through update_loan. Closing a loan as
# returned only happens through return_loan.
STATUS_TRANSITIONS = {
    LoanStatus.ISSUED: {LoanStatus.OVERDUE, LoanStatus.LOST},
    LoanStatus.OVERDUE: {LoanStatus.ISSUED, LoanStatus.LOST},
    LoanStatus.RETURNED: set(),
    LoanStatus.LOST: set(),
}


def calculate_fine(
    due_date: date, returned_on: date, rate: Optional[Decimal] = None
) -> Decimal:
    rate = settings.fine_per_day if rate is None else Decimal(str(rate))
    days_late = max((returned_on - due_date).days, 0)
    return money(days_late * rate)


def _with_relations(db: Session):
    return db.query(models.Loan).options(
        selectinload(models.Loan.member),
        selectinload(models.Loan.copy).selectinload(models.Copy.book),
    )


def _loan_row(loan: models.Loan, today: date) -> dict:
    return {**loan_view(loan), "days_overdue": loan.days_overdue(today)}


def get_loan_record(db: Session, loan_id: int) -> models.Loan:
    loan = db.get(models.Loan, loan_id)
    if loan is None:
        raise ReferenceNotFound("Loan", loan_id)
    return loan


def get_loan(db: Session, loan_id: int) -> dict:
    loan = _with_relations(db).filter(models.Loan.id == loan_id).first()
    if loan is None:
        raise ReferenceNotFound("Loan", loan_id)
    return _loan_row(loan, date.today())


def issue_loan(db: Session, item: schemas.LoanCreate) -> models.Loan:
    """Lend an available copy to an active member.

    Preconditions are checked in order: the copy exists and is available,
    then the member exists and is active. The copy is claimed with
    ``UPDATE ... WHERE status = 'available'``; if another request won the
    copy in between, the row count is zero and the issue is rejected.
    """
    today = date.today()
    issue_date = item.issue_date or today
    if issue_date > today:
        raise ValidationError("Issue date cannot be in the future")
    due_date = item.due_date or issue_date + timedelta(days=settings.default_loan_days)
    if due_date < issue_date:
        raise ValidationError("Due date cannot be before the issue date")

    copy = db.get(models.Copy, item.copy_id)
    if copy is None:
        raise ReferenceNotFound("Copy", item.copy_id)
    if copy.status != CopyStatus.AVAILABLE:
        logger.warning(f"Rejected issue of copy {item.copy_id}: {copy.status.value}")
        raise PreconditionFailed(f"Copy {item.copy_id} is not available")

    member = get_member_record(db, item.member_id)
    if member.status != MemberStatus.ACTIVE:
        logger.warning(f"Rejected issue to member {member.id}: {member.status.value}")
        raise PreconditionFailed(f"Member {member.id} is not active")

    with atomic(db, "issue loan"):
        claimed = db.execute(
            update(models.Copy)
            .where(
                models.Copy.id == item.copy_id,
                models.Copy.status == CopyStatus.AVAILABLE,
            )
            .values(status=CopyStatus.ISSUED)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            logger.warning(f"Copy {item.copy_id} was claimed by a concurrent issue")
            raise PreconditionFailed(f"Copy {item.copy_id} is not available")

        loan = models.Loan(
            copy_id=item.copy_id,
            member_id=member.id,
            issue_date=issue_date,
            due_date=due_date,
            status=LoanStatus.ISSUED,
            fine_amount=Decimal("0"),
            notes=item.notes,
        )
        db.add(loan)
        member.last_activity = today
        try:
            db.flush()
        except IntegrityError:
            raise PreconditionFailed(f"Copy {item.copy_id} is not available")

    db.refresh(loan)
    logger.info(
        f"Issued copy {loan.copy_id} to member {loan.member_id} as loan {loan.id}"
    )
    return loan


def return_loan(
    db: Session, loan_id: int, item: Optional[schemas.LoanReturn] = None
) -> models.Loan:
    """Close an open loan and put its copy back on the shelf.

    A caller-supplied fine is recorded as given; without one the fine is
    computed from the due date at the configured daily rate.
    """
    item = item or schemas.LoanReturn()
    loan = db.get(models.Loan, loan_id)
    if loan is None or loan.status not in OPEN_LOAN_STATUSES:
        raise ReferenceNotFound("Active loan", loan_id)

    today = date.today()
    if item.fine_amount is not None:
        fine = money(item.fine_amount)
    else:
        fine = calculate_fine(loan.due_date, today)
    if fine < 0:
        raise ValidationError("Fine amount cannot be negative")

    values = {
        "status": LoanStatus.RETURNED,
        "return_date": today,
        "fine_amount": fine,
    }
    if item.notes is not None:
        values["notes"] = item.notes

    copy_id, member_id = loan.copy_id, loan.member_id
    with atomic(db, "return loan"):
        closed = db.execute(
            update(models.Loan)
            .where(
                models.Loan.id == loan_id,
                models.Loan.status.in_(OPEN_LOAN_STATUSES),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if closed.rowcount != 1:
            raise ReferenceNotFound("Active loan", loan_id)
        db.execute(
            update(models.Copy)
            .where(models.Copy.id == copy_id)
            .values(status=CopyStatus.AVAILABLE)
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(models.Member)
            .where(models.Member.id == member_id)
            .values(last_activity=today)
            .execution_options(synchronize_session=False)
        )

    db.refresh(loan)
    logger.info(f"Returned loan {loan_id} (copy {copy_id}), fine {fine}")
    return loan


def update_loan(db: Session, loan_id: int, item: schemas.LoanUpdate) -> models.Loan:
    """Administrative correction of fine, notes or status.

    Status changes follow STATUS_TRANSITIONS. Marking a loan lost closes
    it with today's return date and marks its copy lost, so the copy is
    never left ``issued`` without an open loan behind it.
    """
    changes = item.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("No fields to update")
    for field in ("status", "fine_amount"):
        if field in changes and changes[field] is None:
            raise ValidationError(f"Field '{field}' cannot be null")
    loan = get_loan_record(db, loan_id)
    current = loan.status

    new_status = changes.get("status")
    if new_status == current:
        new_status = None
    if new_status is not None:
        if new_status == LoanStatus.RETURNED:
            raise Conflict("Use the return operation to close a loan")
        if new_status not in STATUS_TRANSITIONS[current]:
            raise Conflict(
                f"Cannot change loan status from {current.value} "
                f"to {new_status.value}"
            )

    values = {}
    if new_status is not None:
        values["status"] = new_status
        if new_status == LoanStatus.LOST:
            values["return_date"] = date.today()
    if "fine_amount" in changes:
        values["fine_amount"] = money(changes["fine_amount"])
    if "notes" in changes:
        values["notes"] = changes["notes"]

    copy_id = loan.copy_id
    if not values:
        return loan
    with atomic(db, "update loan"):
        # the status read above may be stale if a return committed since
        corrected = db.execute(
            update(models.Loan)
            .where(models.Loan.id == loan_id, models.Loan.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if corrected.rowcount != 1:
            raise Conflict(f"Loan {loan_id} was changed by another request")
        if new_status == LoanStatus.LOST:
            lost = db.execute(
                update(models.Copy)
                .where(
                    models.Copy.id == copy_id,
                    models.Copy.status == CopyStatus.ISSUED,
                )
                .values(status=CopyStatus.LOST)
                .execution_options(synchronize_session=False)
            )
            if lost.rowcount != 1:
                raise Conflict(f"Copy {copy_id} is not on loan")

    db.refresh(loan)
    logger.info(f"Corrected loan {loan_id}: {sorted(changes)}")
    return loan


def list_loans(
    db: Session,
    status: Optional[LoanStatus] = None,
    member_id: Optional[int] = None,
    overdue_only: bool = False,
    page: int = 1,
    limit: int = 10,
) -> dict:
    today = date.today()
    conditions = []
    if status is not None:
        conditions.append(models.Loan.status == status)
    if member_id is not None:
        conditions.append(models.Loan.member_id == member_id)
    if overdue_only:
        conditions.append(overdue_clause(today))

    try:
        total = db.query(func.count(models.Loan.id)).filter(*conditions).scalar()
        query = (
            _with_relations(db)
            .filter(*conditions)
            .order_by(models.Loan.issue_date.desc(), models.Loan.id.desc())
        )
        loans = paginate(query, page, limit).all()
    except SQLAlchemyError as e:
        raise DatabaseError("list loans", str(e))
    return {"items": [_loan_row(loan, today) for loan in loans], "total": total}


def list_overdue(db: Session) -> List[dict]:
    today = date.today()
    loans = (
        _with_relations(db)
        .filter(overdue_clause(today))
        .order_by(models.Loan.due_date, models.Loan.id)
        .all()
    )
    return [_loan_row(loan, today) for loan in loans]


def loan_stats(db: Session) -> dict:
    today = date.today()
    try:
        row = db.query(
            func.count(models.Loan.id),
            func.count(case((models.Loan.status.in_(OPEN_LOAN_STATUSES), 1))),
            func.count(case((models.Loan.status == LoanStatus.RETURNED, 1))),
            func.count(case((overdue_clause(today), 1))),
            func.coalesce(func.sum(models.Loan.fine_amount), 0),
            func.count(case((models.Loan.issue_date == today, 1))),
            func.count(case((models.Loan.return_date == today, 1))),
        ).one()
    except SQLAlchemyError as e:
        raise DatabaseError("loan stats", str(e))
    total, active, returned, overdue, fines, issued_today, returned_today = row
    return {
        "total": total,
        "active": active,
        "returned": returned,
        "overdue": overdue,
        "total_fines": money(fines),
        "issued_today": issued_today,
        "returned_today": returned_today,
    }
