import logging
from typing import List, Optional
from sqlalchemy import delete, func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from exceptions.exceptions import (
    Conflict,
    DatabaseError,
    ReferenceNotFound,
    ValidationError,
)
from librarian import models, schemas
from librarian.crud.books import get_book_record
from librarian.crud.common import copy_view, loan_view, paginate
from librarian.crud.racks import get_rack_by_number
from librarian.models import CopyStatus, OPEN_LOAN_STATUSES
from librarian.storage import atomic

logger = logging.getLogger(__name__)


def get_copy_record(db: Session, copy_id: int) -> models.Copy:
    copy = db.get(models.Copy, copy_id)
    if copy is None:
        raise ReferenceNotFound("Copy", copy_id)
    return copy


def open_loan_for(db: Session, copy_id: int) -> Optional[models.Loan]:
    return (
        db.query(models.Loan)
        .filter(
            models.Loan.copy_id == copy_id,
            models.Loan.status.in_(OPEN_LOAN_STATUSES),
        )
        .first()
    )


def _reject_issued_status(status: Optional[CopyStatus]):
    if status == CopyStatus.ISSUED:
        raise ValidationError("Copy status 'issued' is set only by issuing a loan")


def list_copies(
    db: Session,
    book_id: Optional[int] = None,
    status: Optional[CopyStatus] = None,
    rack_number: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    conditions = []
    if book_id is not None:
        conditions.append(models.Copy.book_id == book_id)
    if status is not None:
        conditions.append(models.Copy.status == status)
    if rack_number:
        conditions.append(models.Copy.rack_number == rack_number)

    try:
        total = db.query(func.count(models.Copy.id)).filter(*conditions).scalar()
        query = (
            db.query(models.Copy)
            .join(models.Book, models.Copy.book_id == models.Book.id)
            .options(selectinload(models.Copy.book), selectinload(models.Copy.rack))
            .filter(*conditions)
            .order_by(
                models.Book.title,
                models.Copy.rack_number,
                models.Copy.shelf_number,
                models.Copy.id,
            )
        )
        copies = paginate(query, page, limit).all()
    except SQLAlchemyError as e:
        raise DatabaseError("list copies", str(e))
    return {"items": [copy_view(c) for c in copies], "total": total}


def get_copy(db: Session, copy_id: int) -> dict:
    copy = get_copy_record(db, copy_id)
    loan = open_loan_for(db, copy_id)
    return {
        "copy": copy_view(copy),
        "current_loan": loan_view(loan) if loan is not None else None,
    }


def create_copy(db: Session, item: schemas.CopyCreate) -> models.Copy:
    _reject_issued_status(item.status)
    get_book_record(db, item.book_id)
    if item.rack_number:
        get_rack_by_number(db, item.rack_number)

    copy = models.Copy(
        book_id=item.book_id,
        rack_number=item.rack_number or None,
        shelf_number=item.shelf_number or None,
        status=item.status,
    )
    with atomic(db, "create copy"):
        db.add(copy)
    db.refresh(copy)
    logger.info(f"Added copy {copy.id} of book {copy.book_id}")
    return copy


def update_copy(db: Session, copy_id: int, item: schemas.CopyUpdate) -> models.Copy:
    """Maintenance edit of shelving and condition.

    Moving a copy between racks is always allowed. Its status may not be
    touched while a loan holds it: only returning that loan frees it.
    """
    copy = get_copy_record(db, copy_id)
    changes = item.model_dump(exclude_unset=True)
    if changes.get("rack_number"):
        get_rack_by_number(db, changes["rack_number"])

    new_status = changes.get("status")
    if new_status is not None:
        _reject_issued_status(new_status)
        if copy.status == CopyStatus.ISSUED or open_loan_for(db, copy_id):
            raise Conflict("Cannot change status of currently issued copy")

    values = {
        field: value or None for field, value in changes.items() if field != "status"
    }
    if new_status is not None:
        values["status"] = new_status

    if values:
        statement = update(models.Copy).where(models.Copy.id == copy_id)
        if new_status is not None:
            # an issue may have claimed the copy since the check above
            statement = statement.where(models.Copy.status != CopyStatus.ISSUED)
        with atomic(db, "update copy"):
            written = db.execute(
                statement.values(**values).execution_options(
                    synchronize_session=False
                )
            )
            if written.rowcount != 1:
                raise Conflict("Cannot change status of currently issued copy")
    db.refresh(copy)
    logger.info(f"Updated copy {copy_id}: {sorted(changes)}")
    return copy


def delete_copy(db: Session, copy_id: int):
    copy = get_copy_record(db, copy_id)
    if copy.status == CopyStatus.ISSUED or open_loan_for(db, copy_id):
        raise Conflict("Cannot delete currently issued copy")
    with atomic(db, "delete copy"):
        deleted = db.execute(
            delete(models.Copy)
            .where(
                models.Copy.id == copy_id,
                models.Copy.status != CopyStatus.ISSUED,
            )
            .execution_options(synchronize_session=False)
        )
        if deleted.rowcount != 1:
            raise Conflict("Cannot delete currently issued copy")
        db.expunge(copy)
    logger.info(f"Deleted copy {copy_id}")
    return True


def available_copies(db: Session, book_id: int) -> List[dict]:
    copies = (
        db.query(models.Copy)
        .options(selectinload(models.Copy.book), selectinload(models.Copy.rack))
        .filter(
            models.Copy.book_id == book_id,
            models.Copy.status == CopyStatus.AVAILABLE,
        )
        .order_by(models.Copy.rack_number, models.Copy.shelf_number, models.Copy.id)
        .all()
    )
    return [copy_view(c) for c in copies]
