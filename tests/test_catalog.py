import pytest
from datetime import date, timedelta
from sqlalchemy.orm import Session

from exceptions.exceptions import Conflict, ReferenceNotFound, ValidationError
from librarian.crud.books import (
    create_book,
    delete_book,
    get_book,
    list_books,
    list_categories,
    list_languages,
    update_book,
)
from librarian.crud.loans import issue_loan, return_loan
from librarian.crud.racks import (
    copies_on_shelf,
    create_rack,
    delete_rack,
    get_rack,
    list_racks,
    rack_utilization,
    update_rack,
)
from librarian.models import Book, Copy, Loan
from librarian.schemas import (
    BookCreate,
    BookUpdate,
    LoanCreate,
    RackCreate,
    RackUpdate,
)


def _book(isbn, title="Arrow of God", category="Fiction", language="English", **kw):
    return BookCreate(
        title=title,
        author="Chinua Achebe",
        isbn=isbn,
        category=category,
        language=language,
        **kw,
    )


def test_create_book_with_copies(db_session: Session, test_rack):
    book = create_book(
        db_session, _book("9780385014809", copies=3, rack_number="A1", shelf_number="2")
    )

    assert len(book.copies) == 3
    assert {c.shelf_number for c in book.copies} == {"2"}
    detail = get_book(db_session, book.id)
    assert detail["book"]["total_copies"] == 3
    assert detail["book"]["available_copies"] == 3
    assert len(detail["copies"]) == 3
    assert detail["copies"][0]["rack_location"] == test_rack.location


def test_create_book_duplicate_isbn(db_session: Session, test_book):
    with pytest.raises(Conflict):
        create_book(db_session, _book(test_book.isbn))
    assert db_session.query(Book).count() == 1


def test_create_book_unknown_rack(db_session: Session):
    with pytest.raises(ReferenceNotFound):
        create_book(db_session, _book("9780385014809", rack_number="Z9"))
    assert db_session.query(Book).count() == 0
    assert db_session.query(Copy).count() == 0


def test_create_book_blank_title(db_session: Session):
    with pytest.raises(ValidationError):
        create_book(db_session, _book("9780385014809", title="   "))


def test_list_books_filters_and_counts(db_session: Session, test_book, test_member):
    create_book(db_session, _book("9780141186887", title="No Longer at Ease", language="Igbo"))
    create_book(db_session, _book("9780060935467", title="Poetry", category="Poetry"))
    issue_loan(
        db_session,
        LoanCreate(
            copy_id=test_book.copies[0].id,
            member_id=test_member.id,
            due_date=date.today() + timedelta(days=7),
        ),
    )

    everything = list_books(db_session)
    assert everything["total"] == 3
    assert [b["title"] for b in everything["items"]] == [
        "No Longer at Ease",
        "Poetry",
        "Things Fall Apart",
    ]
    tfa = everything["items"][2]
    assert tfa["total_copies"] == 2
    assert tfa["available_copies"] == 1

    assert list_books(db_session, search="things")["total"] == 1
    assert list_books(db_session, search="978006")["total"] == 1
    assert list_books(db_session, category="Poetry")["total"] == 1
    assert list_books(db_session, language="Igbo")["total"] == 1
    assert len(list_books(db_session, page=2, limit=2)["items"]) == 1


def test_categories_and_languages(db_session: Session, test_book):
    create_book(db_session, _book("9780060935467", category="Poetry", language="French"))
    create_book(db_session, _book("9780141186887", category=None, language=None))

    assert list_categories(db_session) == ["Fiction", "Poetry"]
    assert list_languages(db_session) == ["English", "French"]


def test_update_book(db_session: Session, test_book):
    book = update_book(
        db_session, test_book.id, BookUpdate(category="Classics", description=None)
    )
    assert book.category == "Classics"
    assert book.description is None
    assert book.title == "Things Fall Apart"


def test_update_book_isbn_clash(db_session: Session, test_book):
    other = create_book(db_session, _book("9780141186887"))
    with pytest.raises(Conflict):
        update_book(db_session, other.id, BookUpdate(isbn=test_book.isbn))


def test_isbn_taken_after_check(db_session: Session, test_book, monkeypatch):
    other = create_book(db_session, _book("9780141186887"))
    monkeypatch.setattr("librarian.crud.books.isbn_in_use", lambda *args: False)

    with pytest.raises(Conflict):
        update_book(db_session, other.id, BookUpdate(isbn=test_book.isbn))

    db_session.refresh(other)
    assert other.isbn == "9780141186887"


def test_delete_book_with_issued_copy(db_session: Session, test_book, test_member):
    loan = issue_loan(
        db_session,
        LoanCreate(
            copy_id=test_book.copies[0].id,
            member_id=test_member.id,
            due_date=date.today() + timedelta(days=7),
        ),
    )
    with pytest.raises(Conflict):
        delete_book(db_session, test_book.id)

    return_loan(db_session, loan.id)
    assert delete_book(db_session, test_book.id)
    assert db_session.query(Copy).count() == 0
    assert db_session.query(Loan).count() == 0


def test_book_issued_after_check_is_not_deleted(
    db_session: Session, test_book, test_member, monkeypatch
):
    monkeypatch.setattr("librarian.crud.books.open_loan_count", lambda db, book_id: 0)
    loan = issue_loan(
        db_session,
        LoanCreate(
            copy_id=test_book.copies[0].id,
            member_id=test_member.id,
            due_date=date.today() + timedelta(days=7),
        ),
    )

    with pytest.raises(Conflict):
        delete_book(db_session, test_book.id)

    assert db_session.get(Book, test_book.id) is not None
    assert db_session.query(Copy).count() == 2
    assert db_session.get(Loan, loan.id).return_date is None


def test_get_missing_book(db_session: Session):
    with pytest.raises(ReferenceNotFound):
        get_book(db_session, 12345)


def test_rack_crud(db_session: Session, test_rack):
    rack = create_rack(db_session, RackCreate(rack_number="B1", location="Annex"))
    assert rack.capacity == 100

    with pytest.raises(Conflict):
        create_rack(db_session, RackCreate(rack_number="B1"))
    with pytest.raises(Conflict):
        update_rack(db_session, rack.id, RackUpdate(rack_number="A1"))

    rack = update_rack(db_session, rack.id, RackUpdate(capacity=40, location=None))
    assert rack.capacity == 40
    assert rack.location is None

    assert [r["rack_number"] for r in list_racks(db_session)] == ["A1", "B1"]
    assert delete_rack(db_session, rack.id)
    with pytest.raises(ReferenceNotFound):
        get_rack(db_session, rack.id)


def test_delete_rack_in_use(db_session: Session, test_book, test_rack):
    with pytest.raises(Conflict):
        delete_rack(db_session, test_rack.id)


def test_rack_number_taken_after_check(db_session: Session, test_rack, monkeypatch):
    rack = create_rack(db_session, RackCreate(rack_number="B1"))
    monkeypatch.setattr("librarian.crud.racks.rack_number_in_use", lambda *args: False)

    with pytest.raises(Conflict):
        update_rack(db_session, rack.id, RackUpdate(rack_number="A1"))

    db_session.refresh(rack)
    assert rack.rack_number == "B1"


def test_renaming_rack_moves_its_copies(db_session: Session, test_book, test_rack):
    update_rack(db_session, test_rack.id, RackUpdate(rack_number="A9"))

    assert {c.rack_number for c in test_book.copies} == {"A9"}


def test_rack_detail_and_shelves(db_session: Session, test_book, test_rack):
    create_book(
        db_session, _book("9780141186887", rack_number="A1", shelf_number="3", copies=1)
    )

    detail = get_rack(db_session, test_rack.id)
    assert detail["rack"]["total_copies"] == 3
    assert detail["rack"]["available_copies"] == 3
    assert detail["rack"]["issued_copies"] == 0
    assert len(detail["copies"]) == 3

    shelf = copies_on_shelf(db_session, "A1", "3")
    assert [c["isbn"] for c in shelf] == ["9780141186887"]


def test_rack_utilization(db_session: Session, test_book, test_rack):
    create_rack(db_session, RackCreate(rack_number="C1", capacity=10))

    stats = rack_utilization(db_session)

    assert [s["rack_number"] for s in stats] == ["A1", "C1"]
    assert stats[0]["current_copies"] == 2
    assert stats[0]["utilization_percentage"] == 4.0
    assert stats[1]["utilization_percentage"] == 0.0
