import logging
from datetime import date
from typing import Optional
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from exceptions.exceptions import DatabaseError, ReferenceNotFound, ValidationError
from librarian import models, schemas
from librarian.crud.common import money, paginate, payment_view
from librarian.crud.members import get_member_record, member_summary
from librarian.models import PaymentType
from librarian.storage import atomic

logger = logging.getLogger(__name__)


def record_payment(db: Session, item: schemas.PaymentCreate) -> models.Payment:
    """Append a payment to a member's history. Payments are never edited."""
    member = get_member_record(db, item.member_id)
    today = date.today()
    payment = models.Payment(
        member_id=member.id,
        amount=money(item.amount),
        payment_date=today,
        payment_type=item.payment_type,
        payment_method=item.payment_method,
        notes=item.notes,
    )
    with atomic(db, "record payment"):
        db.add(payment)
        member.last_activity = today
        try:
            db.flush()
        except IntegrityError:
            raise ValidationError("Payment amount must be positive")
    db.refresh(payment)
    logger.info(
        f"Recorded {payment.payment_type.value} payment {payment.id} of "
        f"{payment.amount} for member {member.id}"
    )
    return payment


def list_payments(
    db: Session,
    member_id: Optional[int] = None,
    payment_type: Optional[PaymentType] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from cannot be after date_to")

    conditions = []
    if member_id is not None:
        conditions.append(models.Payment.member_id == member_id)
    if payment_type is not None:
        conditions.append(models.Payment.payment_type == payment_type)
    if date_from is not None:
        conditions.append(models.Payment.payment_date >= date_from)
    if date_to is not None:
        conditions.append(models.Payment.payment_date <= date_to)

    try:
        total = db.query(func.count(models.Payment.id)).filter(*conditions).scalar()
        query = (
            db.query(models.Payment)
            .options(selectinload(models.Payment.member))
            .filter(*conditions)
            .order_by(models.Payment.payment_date.desc(), models.Payment.id.desc())
        )
        payments = paginate(query, page, limit).all()
    except SQLAlchemyError as e:
        raise DatabaseError("list payments", str(e))
    return {"items": [payment_view(p) for p in payments], "total": total}


def get_payment(db: Session, payment_id: int) -> dict:
    payment = db.get(models.Payment, payment_id)
    if payment is None:
        raise ReferenceNotFound("Payment", payment_id)
    return payment_view(payment)


def member_payment_status(db: Session, member_id: int) -> dict:
    summary = member_summary(db, member_id)
    history = (
        db.query(models.Payment)
        .options(selectinload(models.Payment.member))
        .filter(models.Payment.member_id == member_id)
        .order_by(models.Payment.payment_date.desc(), models.Payment.id.desc())
        .all()
    )
    rows = [payment_view(p) for p in history]
    return {
        "member": summary,
        "payment_history": rows,
        "total_paid": money(sum((p.amount for p in history), 0)),
        "outstanding_fines": summary["total_fines"],
        "last_payment": rows[0] if rows else None,
    }
