import pytest
from datetime import date, timedelta
from sqlalchemy.orm import Session

from exceptions.exceptions import Conflict, ReferenceNotFound, ValidationError
from librarian.crud.copies import (
    available_copies,
    create_copy,
    delete_copy,
    get_copy,
    list_copies,
    update_copy,
)
from librarian.crud.loans import issue_loan, return_loan
from librarian.models import Copy, CopyStatus, Loan
from librarian.schemas import CopyCreate, CopyUpdate, LoanCreate


def _lend(db, copy, member):
    return issue_loan(
        db,
        LoanCreate(
            copy_id=copy.id,
            member_id=member.id,
            due_date=date.today() + timedelta(days=14),
        ),
    )


def test_create_copy(db_session: Session, test_book, test_rack):
    copy = create_copy(
        db_session, CopyCreate(book_id=test_book.id, rack_number="A1", shelf_number="4")
    )
    assert copy.status == CopyStatus.AVAILABLE
    assert copy.rack_number == "A1"
    assert len(test_book.copies) == 3


def test_create_copy_unknown_references(db_session: Session, test_book):
    with pytest.raises(ReferenceNotFound):
        create_copy(db_session, CopyCreate(book_id=9999))
    with pytest.raises(ReferenceNotFound):
        create_copy(db_session, CopyCreate(book_id=test_book.id, rack_number="Q7"))
    assert db_session.query(Copy).count() == 2


def test_create_copy_cannot_start_issued(db_session: Session, test_book):
    with pytest.raises(ValidationError):
        create_copy(
            db_session, CopyCreate(book_id=test_book.id, status=CopyStatus.ISSUED)
        )


def test_list_copies(db_session: Session, test_book, test_member):
    first, _ = test_book.copies
    _lend(db_session, first, test_member)

    assert list_copies(db_session)["total"] == 2
    issued = list_copies(db_session, status=CopyStatus.ISSUED)
    assert [c["id"] for c in issued["items"]] == [first.id]
    assert issued["items"][0]["title"] == test_book.title
    assert list_copies(db_session, book_id=test_book.id, rack_number="A1")["total"] == 2
    assert list_copies(db_session, rack_number="B1")["total"] == 0


def test_get_copy_shows_current_loan(db_session: Session, test_copy, test_member):
    assert get_copy(db_session, test_copy.id)["current_loan"] is None

    loan = _lend(db_session, test_copy, test_member)
    detail = get_copy(db_session, test_copy.id)

    assert detail["copy"]["status"] == CopyStatus.ISSUED
    assert detail["current_loan"]["id"] == loan.id
    assert detail["current_loan"]["email"] == test_member.email


def test_move_issued_copy(db_session: Session, test_copy, test_member):
    _lend(db_session, test_copy, test_member)

    copy = update_copy(db_session, test_copy.id, CopyUpdate(shelf_number="3"))

    assert copy.shelf_number == "3"
    assert copy.status == CopyStatus.ISSUED


def test_status_change_on_issued_copy(db_session: Session, test_copy, test_member):
    _lend(db_session, test_copy, test_member)

    with pytest.raises(Conflict):
        update_copy(db_session, test_copy.id, CopyUpdate(status=CopyStatus.AVAILABLE))
    with pytest.raises(Conflict):
        update_copy(db_session, test_copy.id, CopyUpdate(status=CopyStatus.DAMAGED))
    assert test_copy.status == CopyStatus.ISSUED


def test_maintenance_status_change(db_session: Session, test_copy):
    copy = update_copy(db_session, test_copy.id, CopyUpdate(status=CopyStatus.DAMAGED))
    assert copy.status == CopyStatus.DAMAGED

    with pytest.raises(ValidationError):
        update_copy(db_session, test_copy.id, CopyUpdate(status=CopyStatus.ISSUED))

    copy = update_copy(db_session, test_copy.id, CopyUpdate(status=CopyStatus.AVAILABLE))
    assert copy.status == CopyStatus.AVAILABLE


def test_clear_shelving(db_session: Session, test_copy):
    copy = update_copy(db_session, test_copy.id, CopyUpdate(rack_number="", shelf_number=None))
    assert copy.rack_number is None
    assert copy.shelf_number is None


def test_delete_copy(db_session: Session, test_copy, test_member):
    loan = _lend(db_session, test_copy, test_member)
    with pytest.raises(Conflict):
        delete_copy(db_session, test_copy.id)

    return_loan(db_session, loan.id)
    copy_id = test_copy.id
    assert delete_copy(db_session, copy_id)
    assert db_session.get(Copy, copy_id) is None
    assert db_session.query(Loan).count() == 0


def test_copy_issued_after_check_keeps_its_status(
    db_session: Session, session_factory, test_copy, test_member, monkeypatch
):
    stale = session_factory()
    try:
        assert stale.get(Copy, test_copy.id).status == CopyStatus.AVAILABLE
        loan = _lend(db_session, test_copy, test_member)
        monkeypatch.setattr("librarian.crud.copies.open_loan_for", lambda db, copy_id: None)

        with pytest.raises(Conflict):
            update_copy(stale, test_copy.id, CopyUpdate(status=CopyStatus.DAMAGED))
    finally:
        stale.close()

    db_session.refresh(test_copy)
    assert test_copy.status == CopyStatus.ISSUED
    assert db_session.get(Loan, loan.id).return_date is None


def test_copy_issued_after_check_is_not_deleted(
    db_session: Session, session_factory, test_copy, test_member, monkeypatch
):
    stale = session_factory()
    try:
        assert stale.get(Copy, test_copy.id).status == CopyStatus.AVAILABLE
        loan = _lend(db_session, test_copy, test_member)
        monkeypatch.setattr("librarian.crud.copies.open_loan_for", lambda db, copy_id: None)

        with pytest.raises(Conflict):
            delete_copy(stale, test_copy.id)
    finally:
        stale.close()

    db_session.refresh(test_copy)
    assert test_copy.status == CopyStatus.ISSUED
    assert db_session.get(Loan, loan.id).return_date is None


def test_available_copies(db_session: Session, test_book, test_member):
    first, second = test_book.copies
    _lend(db_session, first, test_member)

    available = available_copies(db_session, test_book.id)

    assert [c["id"] for c in available] == [second.id]
    assert available[0]["rack_location"] is not None
