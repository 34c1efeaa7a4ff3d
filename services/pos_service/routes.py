import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Dict, Iterator, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from redis.exceptions import LockError
from sqlalchemy.orm import Session

from services.pos_service.cart import TerminalSession
from services.pos_service.cart_repository import SessionRepository
from services.pos_service.catalog import CatalogRepository, StaffDirectory
from services.pos_service.checkout import CheckoutEngine
from services.pos_service.errors import (
    CheckoutError,
    CheckoutInProgressError,
    CustomerNotFound,
    EmptyCartError,
    GatewayError,
    ItemNotFound,
    PersistenceError,
    SessionNotFound,
    StaffNotFound,
    StaffRequiredError,
    TransactionNotFound,
)
from services.pos_service.repository import TransactionRepository
from services.pos_service.schemas import (
    AddItemRequest,
    AdjustmentsRequest,
    AssignStaffRequest,
    CheckoutResponse,
    CustomerRequest,
    DailySummaryResponse,
    OpenSessionRequest,
    PaymentMethodRequest,
    ProductResponse,
    SelectStaffRequest,
    ServiceResponse,
    StaffResponse,
    TransactionResponse,
    UpdateQuantityRequest,
)
from shared.events import BUSINESS_TIMEZONE

logger = logging.getLogger(__name__)

router = APIRouter()

# Will be injected by main.py
checkout_engine: Optional[CheckoutEngine] = None
session_repository: Optional[SessionRepository] = None
session_factory = None

ERROR_STATUS = [
    ((ItemNotFound, StaffNotFound, CustomerNotFound, TransactionNotFound, SessionNotFound), status.HTTP_404_NOT_FOUND),
    ((EmptyCartError, StaffRequiredError), status.HTTP_400_BAD_REQUEST),
    ((CheckoutInProgressError,), status.HTTP_409_CONFLICT),
    ((GatewayError,), status.HTTP_502_BAD_GATEWAY),
    ((PersistenceError,), status.HTTP_503_SERVICE_UNAVAILABLE),
]


def get_engine() -> CheckoutEngine:
    return checkout_engine


def get_sessions() -> SessionRepository:
    return session_repository


def get_db() -> Iterator[Session]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def to_http_error(error: CheckoutError) -> HTTPException:
    for error_types, status_code in ERROR_STATUS:
        if isinstance(error, error_types):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


@contextmanager
def editing(sessions: SessionRepository, terminal_id: str) -> Iterator[TerminalSession]:
    """Lock the terminal session for one request and translate domain errors."""
    try:
        with sessions.edit(terminal_id) as session:
            yield session
    except CheckoutError as e:
        logger.info(f"Request rejected: {e}", extra={"terminal_id": terminal_id})
        raise to_http_error(e)
    except LockError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Terminal {terminal_id} is busy")


# ----------------------------------------------------------------------------
# Catalog
# ----------------------------------------------------------------------------

@router.get("/catalog/services", response_model=List[ServiceResponse], tags=["catalog"])
def list_services(
    branch_id: int,
    category: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """Active services offered at a branch."""
    return CatalogRepository(db).list_active_services(branch_id, category, search)


@router.get("/catalog/products", response_model=List[ProductResponse], tags=["catalog"])
def list_products(
    branch_id: int,
    category: Optional[str] = None,
    search: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """In-stock products held by a branch."""
    return CatalogRepository(db).list_available_products(branch_id, category, search)


@router.get("/catalog/categories", tags=["catalog"])
def list_categories() -> Dict[str, str]:
    return CatalogRepository.service_categories()


@router.get("/staff", response_model=List[StaffResponse], tags=["catalog"])
def list_staff(branch_id: int, db: Session = Depends(get_db)):
    return StaffDirectory(db).list_active_staff(branch_id)


# ----------------------------------------------------------------------------
# Terminal sessions and cart
# ----------------------------------------------------------------------------

@router.post(
    "/terminals/{terminal_id}/session",
    response_model=TerminalSession,
    status_code=status.HTTP_201_CREATED,
    tags=["terminal"],
)
def open_session(terminal_id: str, request: OpenSessionRequest, sessions: SessionRepository = Depends(get_sessions)):
    """Open (or resume) the terminal's session at a branch."""
    return sessions.open(terminal_id, request.branch_id)


@router.get("/terminals/{terminal_id}", response_model=TerminalSession, tags=["terminal"])
def get_session(terminal_id: str, sessions: SessionRepository = Depends(get_sessions)):
    session = sessions.get(terminal_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No open session for terminal {terminal_id}")
    return session


@router.post(
    "/terminals/{terminal_id}/cart/items",
    response_model=TerminalSession,
    status_code=status.HTTP_201_CREATED,
    tags=["cart"],
)
def add_item(
    terminal_id: str,
    request: AddItemRequest,
    engine: CheckoutEngine = Depends(get_engine),
    sessions: SessionRepository = Depends(get_sessions),
):
    """Add a service or product to the cart."""
    with editing(sessions, terminal_id) as session:
        engine.add_item(session, request.item_kind, request.item_id)
    return session


@router.put("/terminals/{terminal_id}/cart/items/{line_id}", response_model=TerminalSession, tags=["cart"])
def update_quantity(
    terminal_id: str,
    line_id: str,
    request: UpdateQuantityRequest,
    engine: CheckoutEngine = Depends(get_engine),
    sessions: SessionRepository = Depends(get_sessions),
):
    """Update a line's quantity. Quantity 0 removes the line; an absent line is left alone."""
    with editing(sessions, terminal_id) as session:
        engine.set_quantity(session, line_id, request.quantity)
    return session


@router.delete("/terminals/{terminal_id}/cart/items/{line_id}", response_model=TerminalSession, tags=["cart"])
def remove_item(
    terminal_id: str,
    line_id: str,
    engine: CheckoutEngine = Depends(get_engine),
    sessions: SessionRepository = Depends(get_sessions),
):
    with editing(sessions, terminal_id) as session:
        engine.remove_item(session, line_id)
    return session


@router.put("/terminals/{terminal_id}/cart/items/{line_id}/staff", response_model=TerminalSession, tags=["cart"])
def assign_line_staff(
    terminal_id: str,
    line_id: str,
    request: AssignStaffRequest,
    engine: CheckoutEngine = Depends(get_engine),
    sessions: SessionRepository = Depends(get_sessions),
):
    with editing(sessions, terminal_id) as session:
        engine.assign_staff_to_line(session, line_id, request.staff_id)
    return session


@router.delete("/terminals/{terminal_id}/cart", response_model=TerminalSession, tags=["cart"])
def clear_cart(
    terminal_id: str,
    engine: CheckoutEngine = Depends(get_engine),
    sessions: SessionRepository = Depends(get_sessions),
):
    with editing(sessions, terminal_id) as session:
        engine.reset_cart(session)
    return session


@router.put("/terminals/{terminal_id}/adjustments", response_model=TerminalSession, tags=["cart"])
def set_adjustments(
    terminal_id: str,
    request: AdjustmentsRequest,
    engine: CheckoutEngine = Depends(get_engine),
    sessions: SessionRepository = Depends(get_sessions),
):
    """Set discount and/or tip."""
    with editing(sessions, terminal_id) as session:
        if request.discount_amount is not None:
            engine.set_discount(session, request.discount_amount)
        if request.tip_amount is not None:
            engine.set_tip(session, request.tip_amount)
    return session


@router.put("/terminals/{terminal_id}/staff", response_model=TerminalSession, tags=["cart"])
def select_staff(
    terminal_id: str,
    request: SelectStaffRequest,
    engine: CheckoutEngine = Depends(get_engine),
    sessions: SessionRepository = Depends(get_sessions),
):
    with editing(sessions, terminal_id) as session:
        engine.select_staff(session, request.staff_id)
    return session


@router.put("/terminals/{terminal_id}/payment-method", response_model=TerminalSession, tags=["cart"])
def set_payment_method(
    terminal_id: str,
    request: PaymentMethodRequest,
    engine: CheckoutEngine = Depends(get_engine),
    sessions: SessionRepository = Depends(get_sessions),
):
    with editing(sessions, terminal_id) as session:
        engine.set_payment_method(session, request.payment_method)
    return session


@router.put("/terminals/{terminal_id}/customer", response_model=TerminalSession, tags=["cart"])
def set_customer(
    terminal_id: str,
    request: CustomerRequest,
    engine: CheckoutEngine = Depends(get_engine),
    sessions: SessionRepository = Depends(get_sessions),
):
    """Attach a registered client, or walk-in details when no client_id is given."""
    with editing(sessions, terminal_id) as session:
        if request.client_id is not None:
            engine.set_customer(session, request.client_id)
        else:
            engine.set_walk_in_customer(session, request.name, request.phone, request.email)
    return session


@router.post("/terminals/{terminal_id}/checkout", response_model=CheckoutResponse, tags=["checkout"])
def checkout(
    terminal_id: str,
    engine: CheckoutEngine = Depends(get_engine),
    sessions: SessionRepository = Depends(get_sessions),
):
    """
    Submit the cart.

    Cash comes back completed with a receipt number. M-Pesa comes back
    processing; poll GET /terminals/{terminal_id} or the transaction for the outcome.
    """
    with editing(sessions, terminal_id) as session:
        result = engine.submit_checkout(session)
    return CheckoutResponse(transaction=result, session=session)


# ----------------------------------------------------------------------------
# Transactions and reports
# ----------------------------------------------------------------------------

@router.get("/transactions/{transaction_id}", response_model=TransactionResponse, tags=["transactions"])
def get_transaction(transaction_id: str, db: Session = Depends(get_db)):
    transaction = TransactionRepository(db).find_by_id(transaction_id)
    if transaction is None:
        raise to_http_error(TransactionNotFound(f"Transaction {transaction_id} not found"))
    return TransactionResponse.model_validate(transaction)


@router.get("/reports/daily-summary", response_model=DailySummaryResponse, tags=["reports"])
def daily_summary(
    branch_id: int,
    business_date: Optional[date] = Query(default=None, description="Defaults to today in the business timezone"),
    db: Session = Depends(get_db),
):
    business_date = business_date or datetime.now(BUSINESS_TIMEZONE).date()
    return TransactionRepository(db).daily_summary(branch_id, business_date)
