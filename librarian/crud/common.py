from decimal import Decimal
from sqlalchemy.orm import Query

from exceptions.exceptions import ValidationError


def as_dict(obj) -> dict:
    return {c.name: getattr(obj, c.name) for c in obj.__table__.columns}


def money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


def paginate(query: Query, page: int, limit: int) -> Query:
    return query.offset((page - 1) * limit).limit(limit)


def require_fields(item, *names: str):
    """Reject blank strings that the schema lets through as present."""
    missing = [n for n in names if not str(getattr(item, n, "") or "").strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def copy_view(copy) -> dict:
    """Flatten a copy with the catalog and shelving fields listings show."""
    row = as_dict(copy)
    row["title"] = copy.book.title if copy.book else None
    row["author"] = copy.book.author if copy.book else None
    row["isbn"] = copy.book.isbn if copy.book else None
    row["rack_location"] = copy.rack.location if copy.rack else None
    return row


def loan_view(loan) -> dict:
    row = as_dict(loan)
    member, copy = loan.member, loan.copy
    if member is not None:
        row.update(
            first_name=member.first_name,
            last_name=member.last_name,
            email=member.email,
        )
    if copy is not None:
        row.update(rack_number=copy.rack_number, shelf_number=copy.shelf_number)
        if copy.book is not None:
            row.update(
                title=copy.book.title, author=copy.book.author, isbn=copy.book.isbn
            )
    return row


def payment_view(payment) -> dict:
    row = as_dict(payment)
    if payment.member is not None:
        row.update(
            first_name=payment.member.first_name,
            last_name=payment.member.last_name,
            email=payment.member.email,
        )
    return row
