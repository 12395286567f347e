from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from checkout_core.config import settings
from checkout_core.database import get_session_factory
from checkout_core.presentation.schemas import (
    AutomateRequest,
    AutomationResponse,
    BulkConfirmRequest,
    BulkConfirmResponse,
    CancelConfirmationRequest,
    CancelOrderRequest,
    ConfirmationResponse,
    ConfirmRequest,
    CreateConfirmationRequest,
    ErrorResponse,
    EvidenceRequest,
    InventoryResponse,
    OrderHistoryResponse,
    OrderResponse,
    RecordPaymentRequest,
    RejectRequest,
    StockRequest,
)
from checkout_core.application.automation import FixedIntervalRetryPolicy
from checkout_core.application.cancel_order import CancelOrderUseCase
from checkout_core.application.create_order import CompleteCheckoutUseCase, CreateOrderFromCheckoutUseCase
from checkout_core.application.get_order import GetOrderHistoryUseCase, GetOrderUseCase
from checkout_core.application.inventory import InventoryLedger, StockReservationUseCase
from checkout_core.application.order_history import OrderHistoryRecorder
from checkout_core.application.order_number import OrderNumberGenerator
from checkout_core.application.payment_confirmation import PaymentConfirmationEngine
from checkout_core.domain.exceptions import (
    DomainException,
    GenerationExhausted,
    InsufficientStock,
    InvalidState,
    NotFound,
    Unauthorized,
    ValidationFailed,
)
from checkout_core.domain.models import (
    ConfirmationStatus,
    OrderEventType,
    OwnerType,
    Requester,
    ReservationContext,
)
from checkout_core.infrastructure.http_clients import HTTPNotificationsClient
from checkout_core.infrastructure.unit_of_work import UnitOfWork

router = APIRouter()

ERROR_RESPONSES = {
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
}


def _to_http(e: DomainException) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ValidationFailed):
        return HTTPException(status_code=422, detail=e.errors)
    if isinstance(e, (InvalidState, InsufficientStock)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, Unauthorized):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, GenerationExhausted):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


# Requester identity; stands in for a real auth layer
def get_requester(
    x_user_id: Optional[str] = Header(None),
    x_session_id: Optional[str] = Header(None),
    x_admin_id: Optional[str] = Header(None),
    x_api_token: Optional[str] = Header(None),
) -> Requester:
    if x_api_token is not None:
        if not settings.API_TOKEN or x_api_token != settings.API_TOKEN:
            raise HTTPException(status_code=403, detail="Invalid API token")
        return Requester(owner_id="api_token", owner_type=OwnerType.API_TOKEN)
    if x_admin_id:
        return Requester(owner_id=x_admin_id, owner_type=OwnerType.ADMIN)
    if x_user_id:
        return Requester(owner_id=x_user_id, owner_type=OwnerType.AUTHENTICATED)
    if x_session_id:
        return Requester(owner_id=x_session_id, owner_type=OwnerType.GUEST)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Requester identity is required")


def get_staff(requester: Requester = Depends(get_requester)) -> Requester:
    if not requester.is_privileged:
        raise HTTPException(status_code=403, detail="Admin or API token required")
    return requester


# Use case factories
def _ledger():
    return InventoryLedger(low_stock_threshold=settings.LOW_STOCK_THRESHOLD)


def get_complete_checkout_use_case(session_factory=Depends(get_session_factory)):
    uow = UnitOfWork(session_factory)
    create_order = CreateOrderFromCheckoutUseCase(
        OrderNumberGenerator(settings.ORDER_NUMBER_PREFIX, settings.ORDER_NUMBER_MAX_ATTEMPTS),
        _ledger(),
        OrderHistoryRecorder(),
        currency=settings.DEFAULT_CURRENCY,
    )
    return CompleteCheckoutUseCase(uow, create_order)


def get_get_order_use_case(session_factory=Depends(get_session_factory)):
    return GetOrderUseCase(UnitOfWork(session_factory))


def get_order_history_use_case(session_factory=Depends(get_session_factory)):
    return GetOrderHistoryUseCase(UnitOfWork(session_factory), OrderHistoryRecorder())


def get_cancel_order_use_case(session_factory=Depends(get_session_factory)):
    return CancelOrderUseCase(UnitOfWork(session_factory), _ledger(), OrderHistoryRecorder())


def get_stock_use_case(session_factory=Depends(get_session_factory)):
    return StockReservationUseCase(UnitOfWork(session_factory), _ledger())


def build_confirmation_engine(session_factory) -> PaymentConfirmationEngine:
    notifications = None
    if settings.NOTIFICATIONS_BASE_URL:
        notifications = HTTPNotificationsClient(settings.NOTIFICATIONS_BASE_URL, settings.API_TOKEN)
    return PaymentConfirmationEngine(
        UnitOfWork(session_factory),
        OrderHistoryRecorder(),
        notifications=notifications,
        retry_policy=FixedIntervalRetryPolicy(timedelta(seconds=settings.AUTOMATION_RETRY_SECONDS)),
    )


def get_confirmation_engine(session_factory=Depends(get_session_factory)):
    return build_confirmation_engine(session_factory)


# Checkout and orders

@router.post(
    "/checkouts/{checkout_id}/complete",
    response_model=OrderResponse,
    responses={**ERROR_RESPONSES, 503: {"model": ErrorResponse}},
    status_code=status.HTTP_201_CREATED
)
async def complete_checkout(
    checkout_id: str,
    requester: Requester = Depends(get_requester),
    use_case: CompleteCheckoutUseCase = Depends(get_complete_checkout_use_case)
):
    """Turn a checkout session into an order"""
    try:
        order = await use_case(checkout_id, requester)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise _to_http(e)


@router.get("/orders/{order_id}", response_model=OrderResponse, responses={404: {"model": ErrorResponse}})
async def get_order(
    order_id: str,
    requester: Requester = Depends(get_requester),
    use_case: GetOrderUseCase = Depends(get_get_order_use_case)
):
    try:
        order = await use_case(order_id, requester)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise _to_http(e)


@router.get("/orders/{order_id}/history", response_model=list[OrderHistoryResponse], responses=ERROR_RESPONSES)
async def get_order_history(
    order_id: str,
    event_type: Optional[OrderEventType] = None,
    requester: Requester = Depends(get_requester),
    use_case: GetOrderHistoryUseCase = Depends(get_order_history_use_case)
):
    try:
        events = await use_case(order_id, requester, event_type=event_type)
        return [OrderHistoryResponse.from_domain(event) for event in events]
    except DomainException as e:
        raise _to_http(e)


@router.post("/orders/{order_id}/cancel", response_model=OrderResponse, responses=ERROR_RESPONSES)
async def cancel_order(
    order_id: str,
    request: CancelOrderRequest,
    requester: Requester = Depends(get_requester),
    use_case: CancelOrderUseCase = Depends(get_cancel_order_use_case)
):
    try:
        order = await use_case(order_id, requester, request.reason)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise _to_http(e)


# Payments and confirmations

@router.post(
    "/payments",
    response_model=ConfirmationResponse,
    responses=ERROR_RESPONSES,
    status_code=status.HTTP_201_CREATED
)
async def record_payment(
    request: RecordPaymentRequest,
    staff: Requester = Depends(get_staff),
    engine: PaymentConfirmationEngine = Depends(get_confirmation_engine)
):
    """Record a pending payment for an order and open its confirmation"""
    try:
        confirmation = await engine.record_payment(
            request.order_id,
            request.amount,
            request.payment_method_code,
            request.confirmation_type,
            request.confirmation_method,
        )
        return ConfirmationResponse.from_domain(confirmation)
    except DomainException as e:
        raise _to_http(e)


@router.post(
    "/payments/{payment_id}/confirmation",
    response_model=ConfirmationResponse,
    responses=ERROR_RESPONSES,
    status_code=status.HTTP_201_CREATED
)
async def create_confirmation(
    payment_id: str,
    request: CreateConfirmationRequest,
    staff: Requester = Depends(get_staff),
    engine: PaymentConfirmationEngine = Depends(get_confirmation_engine)
):
    try:
        confirmation = await engine.create_payment_confirmation(
            payment_id,
            request.confirmation_type,
            request.confirmation_method,
            request.notes,
            request.evidence,
        )
        return ConfirmationResponse.from_domain(confirmation)
    except DomainException as e:
        raise _to_http(e)


@router.get("/confirmations", response_model=list[ConfirmationResponse])
async def list_confirmations(
    confirmation_status: ConfirmationStatus = ConfirmationStatus.PENDING,
    staff: Requester = Depends(get_staff),
    engine: PaymentConfirmationEngine = Depends(get_confirmation_engine)
):
    confirmations = await engine.list_by_status(confirmation_status)
    return [ConfirmationResponse.from_domain(c) for c in confirmations]


@router.get("/confirmations/stats")
async def confirmation_stats(
    staff: Requester = Depends(get_staff),
    engine: PaymentConfirmationEngine = Depends(get_confirmation_engine)
):
    return await engine.stats()


@router.get("/confirmations/retry-due", response_model=list[ConfirmationResponse])
async def confirmations_requiring_retry(
    staff: Requester = Depends(get_staff),
    engine: PaymentConfirmationEngine = Depends(get_confirmation_engine)
):
    confirmations = await engine.confirmations_requiring_retry()
    return [ConfirmationResponse.from_domain(c) for c in confirmations]


@router.post("/confirmations/bulk-confirm", response_model=BulkConfirmResponse)
async def bulk_confirm(
    request: BulkConfirmRequest,
    staff: Requester = Depends(get_staff),
    engine: PaymentConfirmationEngine = Depends(get_confirmation_engine)
):
    result = await engine.bulk_confirm(request.confirmation_ids, staff.owner_id, request.notes)
    return BulkConfirmResponse(
        success=result.success,
        confirmed=[ConfirmationResponse.from_domain(c) for c in result.confirmed],
        errors=[error.model_dump() for error in result.errors],
    )


@router.get("/confirmations/{confirmation_id}", response_model=ConfirmationResponse, responses=ERROR_RESPONSES)
async def get_confirmation(
    confirmation_id: str,
    staff: Requester = Depends(get_staff),
    engine: PaymentConfirmationEngine = Depends(get_confirmation_engine)
):
    try:
        return ConfirmationResponse.from_domain(await engine.get_confirmation(confirmation_id))
    except DomainException as e:
        raise _to_http(e)


@router.post("/confirmations/{confirmation_id}/confirm", response_model=ConfirmationResponse, responses=ERROR_RESPONSES)
async def confirm_payment(
    confirmation_id: str,
    request: ConfirmRequest,
    staff: Requester = Depends(get_staff),
    engine: PaymentConfirmationEngine = Depends(get_confirmation_engine)
):
    try:
        confirmation = await engine.confirm_manually(
            confirmation_id, staff.owner_id, request.notes, request.evidence
        )
        return ConfirmationResponse.from_domain(confirmation)
    except DomainException as e:
        raise _to_http(e)


@router.post("/confirmations/{confirmation_id}/reject", response_model=ConfirmationResponse, responses=ERROR_RESPONSES)
async def reject_payment(
    confirmation_id: str,
    request: RejectRequest,
    staff: Requester = Depends(get_staff),
    engine: PaymentConfirmationEngine = Depends(get_confirmation_engine)
):
    try:
        confirmation = await engine.reject(confirmation_id, staff.owner_id, request.reason, request.evidence)
        return ConfirmationResponse.from_domain(confirmation)
    except DomainException as e:
        raise _to_http(e)


@router.post("/confirmations/{confirmation_id}/cancel", response_model=ConfirmationResponse, responses=ERROR_RESPONSES)
async def cancel_confirmation(
    confirmation_id: str,
    request: CancelConfirmationRequest,
    staff: Requester = Depends(get_staff),
    engine: PaymentConfirmationEngine = Depends(get_confirmation_engine)
):
    try:
        confirmation = await engine.cancel(confirmation_id, staff.owner_id, request.reason)
        return ConfirmationResponse.from_domain(confirmation)
    except DomainException as e:
        raise _to_http(e)


@router.put("/confirmations/{confirmation_id}/evidence", response_model=ConfirmationResponse, responses=ERROR_RESPONSES)
async def update_evidence(
    confirmation_id: str,
    request: EvidenceRequest,
    staff: Requester = Depends(get_staff),
    engine: PaymentConfirmationEngine = Depends(get_confirmation_engine)
):
    try:
        confirmation = await engine.update_evidence(confirmation_id, request.evidence, staff.owner_id)
        return ConfirmationResponse.from_domain(confirmation)
    except DomainException as e:
        raise _to_http(e)


@router.post("/confirmations/{confirmation_id}/automate", response_model=AutomationResponse, responses=ERROR_RESPONSES)
async def automate_confirmation(
    confirmation_id: str,
    request: AutomateRequest,
    staff: Requester = Depends(get_staff),
    engine: PaymentConfirmationEngine = Depends(get_confirmation_engine)
):
    """Run automation rules against a pending confirmation"""
    try:
        outcome = await engine.process_automated(confirmation_id, request.rules)
        return AutomationResponse(
            automated=outcome.automated,
            matched_rules=outcome.matched_rules,
            notes=outcome.notes,
            next_retry_at=outcome.next_retry_at,
            confirmation=ConfirmationResponse.from_domain(outcome.confirmation),
        )
    except DomainException as e:
        raise _to_http(e)


# Inventory

@router.post("/inventory/{product_id}/reserve", response_model=InventoryResponse, responses=ERROR_RESPONSES)
async def reserve_stock(
    product_id: str,
    request: StockRequest,
    staff: Requester = Depends(get_staff),
    use_case: StockReservationUseCase = Depends(get_stock_use_case)
):
    try:
        record = await use_case.reserve(
            product_id,
            request.quantity,
            ReservationContext(
                order_id=request.order_id, owner_id=staff.owner_id,
                reason=request.reason, source=request.source,
            ),
        )
        return InventoryResponse(**record.model_dump())
    except DomainException as e:
        raise _to_http(e)


@router.post("/inventory/{product_id}/release", response_model=InventoryResponse, responses=ERROR_RESPONSES)
async def release_stock(
    product_id: str,
    request: StockRequest,
    staff: Requester = Depends(get_staff),
    use_case: StockReservationUseCase = Depends(get_stock_use_case)
):
    try:
        record = await use_case.release(
            product_id,
            request.quantity,
            ReservationContext(
                order_id=request.order_id, owner_id=staff.owner_id,
                reason=request.reason, source=request.source,
            ),
        )
        return InventoryResponse(**record.model_dump())
    except DomainException as e:
        raise _to_http(e)


@router.post("/inventory/{product_id}/complete", response_model=InventoryResponse, responses=ERROR_RESPONSES)
async def complete_stock(
    product_id: str,
    request: StockRequest,
    staff: Requester = Depends(get_staff),
    use_case: StockReservationUseCase = Depends(get_stock_use_case)
):
    try:
        record = await use_case.complete(
            product_id,
            request.quantity,
            ReservationContext(
                order_id=request.order_id, owner_id=staff.owner_id,
                reason=request.reason, source=request.source,
            ),
        )
        return InventoryResponse(**record.model_dump())
    except DomainException as e:
        raise _to_http(e)
