import logging
from typing import List, Optional
from sqlalchemy import case, delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from exceptions.exceptions import Conflict, DatabaseError, ReferenceNotFound
from librarian import models, schemas
from librarian.crud.common import as_dict, copy_view, paginate, require_fields
from librarian.crud.racks import get_rack_by_number
from librarian.models import CopyStatus, OPEN_LOAN_STATUSES
from librarian.storage import atomic

logger = logging.getLogger(__name__)


def _book_counts(db: Session):
    return (
        db.query(
            models.Book,
            func.count(models.Copy.id).label("total_copies"),
            func.count(case((models.Copy.status == CopyStatus.AVAILABLE, 1))).label(
                "available_copies"
            ),
        )
        .outerjoin(models.Copy, models.Copy.book_id == models.Book.id)
        .group_by(models.Book.id)
    )


def _book_row(book, total, available) -> dict:
    return {**as_dict(book), "total_copies": total, "available_copies": available}


def _book_filters(
    search: Optional[str], category: Optional[str], language: Optional[str]
) -> list:
    conditions = []
    if search:
        conditions.append(
            or_(
                models.Book.title.ilike(f"%{search}%"),
                models.Book.author.ilike(f"%{search}%"),
                models.Book.isbn.ilike(f"%{search}%"),
            )
        )
    if category:
        conditions.append(models.Book.category == category)
    if language:
        conditions.append(models.Book.language == language)
    return conditions


def list_books(
    db: Session,
    search: Optional[str] = None,
    category: Optional[str] = None,
    language: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> dict:
    conditions = _book_filters(search, category, language)
    try:
        total = db.query(func.count(models.Book.id)).filter(*conditions).scalar()
        rows = paginate(
            _book_counts(db).filter(*conditions).order_by(models.Book.title),
            page,
            limit,
        ).all()
    except SQLAlchemyError as e:
        raise DatabaseError("list books", str(e))
    return {"items": [_book_row(*row) for row in rows], "total": total}


def get_book_record(db: Session, book_id: int) -> models.Book:
    book = db.get(models.Book, book_id)
    if book is None:
        raise ReferenceNotFound("Book", book_id)
    return book


def get_book(db: Session, book_id: int) -> dict:
    try:
        row = _book_counts(db).filter(models.Book.id == book_id).first()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch book", str(e))
    if row is None:
        raise ReferenceNotFound("Book", book_id)
    copies = (
        db.query(models.Copy)
        .options(selectinload(models.Copy.rack))
        .filter(models.Copy.book_id == book_id)
        .order_by(models.Copy.rack_number, models.Copy.shelf_number, models.Copy.id)
        .all()
    )
    return {"book": _book_row(*row), "copies": [copy_view(c) for c in copies]}


def isbn_in_use(db: Session, isbn: str, book_id: Optional[int] = None) -> bool:
    query = db.query(models.Book.id).filter(models.Book.isbn == isbn)
    if book_id is not None:
        query = query.filter(models.Book.id != book_id)
    return query.first() is not None


def open_loan_count(db: Session, book_id: int) -> int:
    return (
        db.query(func.count(models.Loan.id))
        .join(models.Copy, models.Loan.copy_id == models.Copy.id)
        .filter(
            models.Copy.book_id == book_id,
            models.Loan.status.in_(OPEN_LOAN_STATUSES),
        )
        .scalar()
    )


def create_book(db: Session, item: schemas.BookCreate) -> models.Book:
    """Catalog a book together with its initial copies.

    The book row and all of its copies are written in one transaction, so
    a failure on any copy leaves no partial catalog entry behind.
    """
    require_fields(item, "title", "author", "isbn")
    if isbn_in_use(db, item.isbn):
        raise Conflict("Book with this ISBN already exists")
    if item.rack_number:
        get_rack_by_number(db, item.rack_number)

    book = models.Book(
        **item.model_dump(exclude={"copies", "rack_number", "shelf_number"})
    )
    book.copies = [
        models.Copy(
            rack_number=item.rack_number or None,
            shelf_number=item.shelf_number or None,
            status=CopyStatus.AVAILABLE,
        )
        for _ in range(item.copies)
    ]
    with atomic(db, "create book"):
        db.add(book)
        try:
            db.flush()
        except IntegrityError:
            raise Conflict("Book with this ISBN already exists")
    db.refresh(book)
    logger.info(f"Created book {book.id} '{book.title}' with {item.copies} copies")
    return book


def update_book(db: Session, book_id: int, item: schemas.BookUpdate) -> models.Book:
    book = get_book_record(db, book_id)
    changes = item.model_dump(exclude_unset=True)
    if changes.get("isbn") and isbn_in_use(db, changes["isbn"], book_id):
        raise Conflict("Another book with this ISBN already exists")

    with atomic(db, "update book"):
        for field, value in changes.items():
            if value is None and field in ("title", "author", "isbn"):
                continue
            setattr(book, field, value)
        try:
            db.flush()
        except IntegrityError:
            raise Conflict("Another book with this ISBN already exists")
    db.refresh(book)
    logger.info(f"Updated book {book_id}: {sorted(changes)}")
    return book


def delete_book(db: Session, book_id: int):
    """Delete a book, its copies and their closed loan history.

    The delete itself re-checks that no copy is issued, so an issue that
    commits after the open-loan count still blocks it.
    """
    book = get_book_record(db, book_id)
    if open_loan_count(db, book_id):
        raise Conflict("Cannot delete book with issued copies")

    held = (
        select(models.Copy.id)
        .where(
            models.Copy.book_id == book_id,
            models.Copy.status == CopyStatus.ISSUED,
        )
        .exists()
    )
    with atomic(db, "delete book"):
        # hold the book's copies until commit
        db.query(models.Copy.id).filter(
            models.Copy.book_id == book_id
        ).with_for_update().all()
        deleted = db.execute(
            delete(models.Book)
            .where(models.Book.id == book_id, ~held)
            .execution_options(synchronize_session=False)
        )
        if deleted.rowcount != 1:
            raise Conflict("Cannot delete book with issued copies")
        db.expunge(book)
    logger.info(f"Deleted book {book_id}")
    return True


def list_categories(db: Session) -> List[str]:
    rows = (
        db.query(models.Book.category)
        .filter(models.Book.category.isnot(None))
        .distinct()
        .order_by(models.Book.category)
        .all()
    )
    return [category for (category,) in rows]


def list_languages(db: Session) -> List[str]:
    rows = (
        db.query(models.Book.language)
        .filter(models.Book.language.isnot(None))
        .distinct()
        .order_by(models.Book.language)
        .all()
    )
    return [language for (language,) in rows]
