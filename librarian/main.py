from contextlib import asynccontextmanager
from datetime import date
import logging
from typing import List, Optional
from fastapi import Depends, FastAPI, HTTPException, Query, Security, status
from fastapi.security import APIKeyHeader
from sqlalchemy import text
from sqlalchemy.orm import Session

from exceptions.exceptions import add_exception_handlers
from librarian.config import settings
from librarian.crud import books, copies, loans, members, payments, racks
from librarian.models import (
    CopyStatus,
    LoanStatus,
    MemberStatus,
    MembershipType,
    PaymentType,
)
from librarian.schemas import (
    BookCreate,
    BookCreated,
    BookDetail,
    BookSchema,
    BookUpdate,
    CopyCreate,
    CopyDetail,
    CopySchema,
    CopyUpdate,
    LoanCreate,
    LoanCreated,
    LoanReturn,
    LoanSchema,
    LoanStats,
    LoanUpdate,
    MemberCreate,
    MemberDetail,
    MemberPaymentStatus,
    MemberSchema,
    MemberStats,
    MemberUpdate,
    Page,
    PaymentCreate,
    PaymentSchema,
    RackCreate,
    RackDetail,
    RackSchema,
    RackUpdate,
    RackUtilization,
)
from librarian.storage import SessionLocal, init_db

# Set up logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    if not app.state.testing:
        logger.info("Creating database tables")
        init_db()
    yield


app = FastAPI(
    title="Librarian API",
    lifespan=lifespan,
    description="Catalog, membership and circulation endpoints for a lending library",
    version="1.0.0",
)

add_exception_handlers(app)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def require_api_key(api_key: Optional[str] = Security(api_key_header)):
    """Guard for catalog and membership maintenance endpoints."""
    if api_key and api_key == settings.api_key:
        return api_key
    logger.warning("Rejected request with a missing or invalid API key")
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Could not validate credentials",
    )


def page_params(
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
):
    return {"page": page, "limit": limit}


def _page(result: dict, paging: dict) -> dict:
    return {**result, **paging}


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok", "timestamp": date.today().isoformat()}


# Books
@app.get("/books", response_model=Page[BookSchema])
def list_books(
    search: Optional[str] = None,
    category: Optional[str] = None,
    language: Optional[str] = None,
    paging: dict = Depends(page_params),
    db: Session = Depends(get_db),
):
    result = books.list_books(db, search, category, language, **paging)
    return _page(result, paging)


@app.get("/books/categories", response_model=List[str])
def list_categories(db: Session = Depends(get_db)):
    return books.list_categories(db)


@app.get("/books/languages", response_model=List[str])
def list_languages(db: Session = Depends(get_db)):
    return books.list_languages(db)


@app.get("/books/{book_id}", response_model=BookDetail)
def read_book(book_id: int, db: Session = Depends(get_db)):
    return books.get_book(db, book_id)


@app.post(
    "/books",
    response_model=BookCreated,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
def add_book(book: BookCreate, db: Session = Depends(get_db)):
    logger.info(f"Received request to add book: {book.title}")
    new_book = books.create_book(db, book)
    return {"book_id": new_book.id, "copies_created": book.copies}


@app.put(
    "/books/{book_id}",
    response_model=BookSchema,
    dependencies=[Depends(require_api_key)],
)
def modify_book(book_id: int, book_update: BookUpdate, db: Session = Depends(get_db)):
    books.update_book(db, book_id, book_update)
    return books.get_book(db, book_id)["book"]


@app.delete("/books/{book_id}", dependencies=[Depends(require_api_key)])
def remove_book(book_id: int, db: Session = Depends(get_db)):
    books.delete_book(db, book_id)
    return {"message": "Book deleted successfully"}


# Racks
@app.get("/racks", response_model=List[RackSchema])
def list_racks(db: Session = Depends(get_db)):
    return racks.list_racks(db)


@app.get("/racks/stats", response_model=List[RackUtilization])
def rack_stats(db: Session = Depends(get_db)):
    return racks.rack_utilization(db)


@app.get(
    "/racks/{rack_number}/shelves/{shelf_number}/copies",
    response_model=List[CopySchema],
)
def shelf_copies(rack_number: str, shelf_number: str, db: Session = Depends(get_db)):
    racks.get_rack_by_number(db, rack_number)
    return racks.copies_on_shelf(db, rack_number, shelf_number)


@app.get("/racks/{rack_id}", response_model=RackDetail)
def read_rack(rack_id: int, db: Session = Depends(get_db)):
    return racks.get_rack(db, rack_id)


@app.post(
    "/racks",
    response_model=RackSchema,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
def add_rack(rack: RackCreate, db: Session = Depends(get_db)):
    new_rack = racks.create_rack(db, rack)
    return racks.get_rack(db, new_rack.id)["rack"]


@app.put(
    "/racks/{rack_id}",
    response_model=RackSchema,
    dependencies=[Depends(require_api_key)],
)
def modify_rack(rack_id: int, rack_update: RackUpdate, db: Session = Depends(get_db)):
    racks.update_rack(db, rack_id, rack_update)
    return racks.get_rack(db, rack_id)["rack"]


@app.delete("/racks/{rack_id}", dependencies=[Depends(require_api_key)])
def remove_rack(rack_id: int, db: Session = Depends(get_db)):
    racks.delete_rack(db, rack_id)
    return {"message": "Rack deleted successfully"}


# Copies
@app.get("/copies", response_model=Page[CopySchema])
def list_copies(
    book_id: Optional[int] = None,
    copy_status: Optional[CopyStatus] = Query(None, alias="status"),
    rack_number: Optional[str] = None,
    paging: dict = Depends(page_params),
    db: Session = Depends(get_db),
):
    result = copies.list_copies(db, book_id, copy_status, rack_number, **paging)
    return _page(result, paging)


@app.get("/copies/book/{book_id}/available", response_model=List[CopySchema])
def available_copies(book_id: int, db: Session = Depends(get_db)):
    books.get_book_record(db, book_id)
    return copies.available_copies(db, book_id)


@app.get("/copies/{copy_id}", response_model=CopyDetail)
def read_copy(copy_id: int, db: Session = Depends(get_db)):
    return copies.get_copy(db, copy_id)


@app.post(
    "/copies",
    response_model=CopySchema,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
def add_copy(copy_in: CopyCreate, db: Session = Depends(get_db)):
    new_copy = copies.create_copy(db, copy_in)
    return copies.get_copy(db, new_copy.id)["copy"]


@app.put(
    "/copies/{copy_id}",
    response_model=CopySchema,
    dependencies=[Depends(require_api_key)],
)
def modify_copy(copy_id: int, copy_update: CopyUpdate, db: Session = Depends(get_db)):
    copies.update_copy(db, copy_id, copy_update)
    return copies.get_copy(db, copy_id)["copy"]


@app.delete("/copies/{copy_id}", dependencies=[Depends(require_api_key)])
def remove_copy(copy_id: int, db: Session = Depends(get_db)):
    copies.delete_copy(db, copy_id)
    return {"message": "Copy deleted successfully"}


# Members
@app.get("/members", response_model=Page[MemberSchema])
def list_members(
    search: Optional[str] = None,
    member_status: Optional[MemberStatus] = Query(None, alias="status"),
    membership_type: Optional[MembershipType] = None,
    paging: dict = Depends(page_params),
    db: Session = Depends(get_db),
):
    result = members.list_members(db, search, member_status, membership_type, **paging)
    return _page(result, paging)


@app.get("/members/stats", response_model=MemberStats)
def member_stats(db: Session = Depends(get_db)):
    return members.member_stats(db)


@app.get("/members/{member_id}", response_model=MemberDetail)
def read_member(member_id: int, db: Session = Depends(get_db)):
    return members.get_member(db, member_id)


@app.post(
    "/members",
    response_model=MemberSchema,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
def add_member(member: MemberCreate, db: Session = Depends(get_db)):
    new_member = members.create_member(db, member)
    return members.member_summary(db, new_member.id)


@app.put(
    "/members/{member_id}",
    response_model=MemberSchema,
    dependencies=[Depends(require_api_key)],
)
def modify_member(
    member_id: int, member_update: MemberUpdate, db: Session = Depends(get_db)
):
    members.update_member(db, member_id, member_update)
    return members.member_summary(db, member_id)


@app.delete("/members/{member_id}", dependencies=[Depends(require_api_key)])
def remove_member(member_id: int, db: Session = Depends(get_db)):
    members.delete_member(db, member_id)
    return {"message": "Member deleted successfully"}


# Loans
@app.get("/loans", response_model=Page[LoanSchema])
def list_loans(
    loan_status: Optional[LoanStatus] = Query(None, alias="status"),
    member_id: Optional[int] = None,
    overdue_only: bool = False,
    paging: dict = Depends(page_params),
    db: Session = Depends(get_db),
):
    result = loans.list_loans(db, loan_status, member_id, overdue_only, **paging)
    return _page(result, paging)


@app.get("/loans/overdue", response_model=List[LoanSchema])
def overdue_loans(db: Session = Depends(get_db)):
    return loans.list_overdue(db)


@app.get("/loans/stats", response_model=LoanStats)
def loan_stats(db: Session = Depends(get_db)):
    return loans.loan_stats(db)


@app.get("/loans/{loan_id}", response_model=LoanSchema)
def read_loan(loan_id: int, db: Session = Depends(get_db)):
    return loans.get_loan(db, loan_id)


@app.post(
    "/loans", response_model=LoanCreated, status_code=status.HTTP_201_CREATED
)
def issue_loan(loan: LoanCreate, db: Session = Depends(get_db)):
    logger.info(f"Issue request: copy {loan.copy_id} to member {loan.member_id}")
    new_loan = loans.issue_loan(db, loan)
    return {"loan_id": new_loan.id}


@app.post("/loans/{loan_id}/return", response_model=LoanSchema)
def return_loan(
    loan_id: int,
    loan_return: Optional[LoanReturn] = None,
    db: Session = Depends(get_db),
):
    loans.return_loan(db, loan_id, loan_return)
    return loans.get_loan(db, loan_id)


@app.put(
    "/loans/{loan_id}",
    response_model=LoanSchema,
    dependencies=[Depends(require_api_key)],
)
def modify_loan(loan_id: int, loan_update: LoanUpdate, db: Session = Depends(get_db)):
    loans.update_loan(db, loan_id, loan_update)
    return loans.get_loan(db, loan_id)


# Payments
@app.get("/payments", response_model=Page[PaymentSchema])
def list_payments(
    member_id: Optional[int] = None,
    payment_type: Optional[PaymentType] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    paging: dict = Depends(page_params),
    db: Session = Depends(get_db),
):
    result = payments.list_payments(
        db, member_id, payment_type, date_from, date_to, **paging
    )
    return _page(result, paging)


@app.get("/payments/member/{member_id}/status", response_model=MemberPaymentStatus)
def member_payment_status(member_id: int, db: Session = Depends(get_db)):
    return payments.member_payment_status(db, member_id)


@app.get("/payments/{payment_id}", response_model=PaymentSchema)
def read_payment(payment_id: int, db: Session = Depends(get_db)):
    return payments.get_payment(db, payment_id)


@app.post(
    "/payments", response_model=PaymentSchema, status_code=status.HTTP_201_CREATED
)
def record_payment(payment: PaymentCreate, db: Session = Depends(get_db)):
    new_payment = payments.record_payment(db, payment)
    return payments.get_payment(db, new_payment.id)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
