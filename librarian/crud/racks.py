import logging
from typing import List, Optional
from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from exceptions.exceptions import Conflict, DatabaseError, ReferenceNotFound
from librarian import models, schemas
from librarian.crud.common import as_dict, copy_view, require_fields
from librarian.models import CopyStatus
from librarian.storage import atomic

logger = logging.getLogger(__name__)


def _rack_counts(db: Session):
    return (
        db.query(
            models.Rack,
            func.count(models.Copy.id).label("total_copies"),
            func.count(case((models.Copy.status == CopyStatus.AVAILABLE, 1))).label(
                "available_copies"
            ),
            func.count(case((models.Copy.status == CopyStatus.ISSUED, 1))).label(
                "issued_copies"
            ),
        )
        .outerjoin(models.Copy, models.Copy.rack_number == models.Rack.rack_number)
        .group_by(models.Rack.id)
    )


def _rack_row(rack, total, available, issued) -> dict:
    return {
        **as_dict(rack),
        "total_copies": total,
        "available_copies": available,
        "issued_copies": issued,
    }


def get_rack_by_number(db: Session, rack_number: str) -> models.Rack:
    try:
        rack = (
            db.query(models.Rack)
            .filter(models.Rack.rack_number == rack_number)
            .first()
        )
    except SQLAlchemyError as e:
        raise DatabaseError("fetch rack", str(e))
    if rack is None:
        raise ReferenceNotFound("Rack", rack_number)
    return rack


def _get_rack(db: Session, rack_id: int) -> models.Rack:
    rack = db.get(models.Rack, rack_id)
    if rack is None:
        raise ReferenceNotFound("Rack", rack_id)
    return rack


def list_racks(db: Session) -> List[dict]:
    try:
        rows = _rack_counts(db).order_by(models.Rack.rack_number).all()
    except SQLAlchemyError as e:
        raise DatabaseError("list racks", str(e))
    return [_rack_row(*row) for row in rows]


def get_rack(db: Session, rack_id: int) -> dict:
    try:
        row = _rack_counts(db).filter(models.Rack.id == rack_id).first()
    except SQLAlchemyError as e:
        raise DatabaseError("fetch rack", str(e))
    if row is None:
        raise ReferenceNotFound("Rack", rack_id)
    rack = row[0]
    copies = copies_on_shelf(db, rack.rack_number)
    return {"rack": _rack_row(*row), "copies": copies}


def rack_number_in_use(
    db: Session, rack_number: str, rack_id: Optional[int] = None
) -> bool:
    query = db.query(models.Rack.id).filter(models.Rack.rack_number == rack_number)
    if rack_id is not None:
        query = query.filter(models.Rack.id != rack_id)
    return query.first() is not None


def create_rack(db: Session, item: schemas.RackCreate) -> models.Rack:
    require_fields(item, "rack_number")
    if rack_number_in_use(db, item.rack_number):
        raise Conflict("Rack with this number already exists")

    rack = models.Rack(**item.model_dump())
    with atomic(db, "create rack"):
        db.add(rack)
        try:
            db.flush()
        except IntegrityError:
            raise Conflict("Rack with this number already exists")
    db.refresh(rack)
    logger.info(f"Created rack {rack.rack_number} (id {rack.id})")
    return rack


def update_rack(db: Session, rack_id: int, item: schemas.RackUpdate) -> models.Rack:
    rack = _get_rack(db, rack_id)
    changes = item.model_dump(exclude_unset=True)
    new_number = changes.get("rack_number")
    if new_number is not None and new_number != rack.rack_number:
        if rack_number_in_use(db, new_number, rack_id):
            raise Conflict("Another rack with this number already exists")

    with atomic(db, "update rack"):
        for field, value in changes.items():
            if value is None and field != "location":
                continue
            setattr(rack, field, value)
        try:
            db.flush()
        except IntegrityError:
            raise Conflict("Another rack with this number already exists")
    db.refresh(rack)
    logger.info(f"Updated rack {rack.id}: {sorted(changes)}")
    return rack


def delete_rack(db: Session, rack_id: int):
    rack = _get_rack(db, rack_id)
    in_use = (
        db.query(func.count(models.Copy.id))
        .filter(models.Copy.rack_number == rack.rack_number)
        .scalar()
    )
    if in_use:
        raise Conflict("Cannot delete rack that contains copies")
    with atomic(db, "delete rack"):
        db.delete(rack)
    logger.info(f"Deleted rack {rack_id}")
    return True


def rack_utilization(db: Session) -> List[dict]:
    stats = []
    for rack, total, available, issued in _rack_counts(db).all():
        stats.append(
            {
                "rack_number": rack.rack_number,
                "location": rack.location,
                "capacity": rack.capacity,
                "current_copies": total,
                "utilization_percentage": round(total / rack.capacity * 100, 2),
                "available_copies": available,
                "issued_copies": issued,
            }
        )
    return sorted(stats, key=lambda s: s["utilization_percentage"], reverse=True)


def copies_on_shelf(
    db: Session, rack_number: str, shelf_number: Optional[str] = None
) -> List[dict]:
    query = (
        db.query(models.Copy)
        .options(selectinload(models.Copy.book), selectinload(models.Copy.rack))
        .filter(models.Copy.rack_number == rack_number)
    )
    if shelf_number is not None:
        query = query.filter(models.Copy.shelf_number == shelf_number)
    copies = query.order_by(models.Copy.shelf_number, models.Copy.id).all()
    return [copy_view(c) for c in copies]
