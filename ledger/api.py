from functools import lru_cache
from typing import Optional
from uuid import UUID
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware

from reconciliation import ReconciliationResult

from .config import Settings, configure_logging, get_settings
from .models import (
    AccountResponse, Chapter, CheckoutRequest, ConfirmPaymentRequest, CreateAccountRequest,
    CreateChapterRequest, CreateCourseRequest, CustomerLedgerResponse, LedgerEntry, SeriesStatusReport,
)
from .service import (
    PlatformService, LedgerServiceError, EntryNotFoundError, CourseNotFoundError,
    AccountExistsError, AlreadyPurchasedError, InvalidStateTransitionError,
    CourseResponse, PaymentResponse,
)

settings = get_settings()
configure_logging(settings.LOG_LEVEL)

app = FastAPI(
    title=settings.APP_NAME,
    description="Course ledger with series entitlement reconciliation",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache()
def get_service() -> PlatformService:
    return PlatformService.from_settings(get_settings())


def _not_found(e: LedgerServiceError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "series-entitlements"}


@app.post("/courses", response_model=CourseResponse, status_code=status.HTTP_201_CREATED, tags=["Courses"])
def create_course(request: CreateCourseRequest, service: PlatformService = Depends(get_service)) -> CourseResponse:
    return service.create_course(request)


@app.post("/courses/{course_id}/publish", response_model=CourseResponse, tags=["Courses"])
def publish_course(course_id: UUID, service: PlatformService = Depends(get_service)) -> CourseResponse:
    try:
        return service.publish_course(course_id)
    except CourseNotFoundError as e:
        raise _not_found(e)


@app.post("/courses/{course_id}/chapters", response_model=Chapter, status_code=status.HTTP_201_CREATED, tags=["Courses"])
def add_chapter(course_id: UUID, request: CreateChapterRequest, service: PlatformService = Depends(get_service)) -> Chapter:
    try:
        return service.add_chapter(course_id, request)
    except CourseNotFoundError as e:
        raise _not_found(e)
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.post("/checkout", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Ledger"])
def checkout(request: CheckoutRequest, service: PlatformService = Depends(get_service)) -> LedgerEntry:
    try:
        return service.checkout(request)
    except CourseNotFoundError as e:
        raise _not_found(e)
    except AlreadyPurchasedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/ledger/{entry_id}/confirm", response_model=PaymentResponse, tags=["Ledger"])
def confirm_payment(
    entry_id: UUID,
    request: ConfirmPaymentRequest,
    background_tasks: BackgroundTasks,
    service: PlatformService = Depends(get_service),
    app_settings: Settings = Depends(get_settings),
) -> PaymentResponse:
    try:
        response = service.confirm_payment(
            entry_id, request, run_reconciliation=not app_settings.RUN_MODE_A_IN_BACKGROUND
        )
    except EntryNotFoundError as e:
        raise _not_found(e)
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if app_settings.RUN_MODE_A_IN_BACKGROUND:
        background_tasks.add_task(
            service.scheduler.on_payment_confirmed, response.entry.customer_email, response.entry.course_id
        )
    return response


def _transition(action, entry_id: UUID) -> LedgerEntry:
    try:
        return action(entry_id)
    except EntryNotFoundError as e:
        raise _not_found(e)
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/ledger/{entry_id}/fail", response_model=LedgerEntry, tags=["Ledger"])
def fail_payment(entry_id: UUID, service: PlatformService = Depends(get_service)) -> LedgerEntry:
    return _transition(service.fail_payment, entry_id)


@app.post("/ledger/{entry_id}/cancel", response_model=LedgerEntry, tags=["Ledger"])
def cancel_checkout(entry_id: UUID, service: PlatformService = Depends(get_service)) -> LedgerEntry:
    return _transition(service.cancel_checkout, entry_id)


@app.post("/ledger/{entry_id}/refund", response_model=LedgerEntry, tags=["Ledger"])
def refund_payment(entry_id: UUID, service: PlatformService = Depends(get_service)) -> LedgerEntry:
    return _transition(service.refund, entry_id)


@app.get("/ledger/{entry_id}", response_model=LedgerEntry, tags=["Ledger"])
def get_entry(entry_id: UUID, service: PlatformService = Depends(get_service)) -> LedgerEntry:
    try:
        return service.get_entry(entry_id)
    except EntryNotFoundError as e:
        raise _not_found(e)


@app.get("/customers/{customer_email}/ledger", response_model=CustomerLedgerResponse, tags=["Customers"])
def get_customer_ledger(customer_email: str, service: PlatformService = Depends(get_service)) -> CustomerLedgerResponse:
    return service.get_customer_ledger(customer_email)


@app.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED, tags=["Customers"])
def create_account(request: CreateAccountRequest, service: PlatformService = Depends(get_service)) -> AccountResponse:
    try:
        return service.create_account(request)
    except AccountExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@app.post("/admin/series-unlock/comprehensive-check", response_model=ReconciliationResult, tags=["Admin"])
def comprehensive_check(service: PlatformService = Depends(get_service)) -> ReconciliationResult:
    return service.run_comprehensive_check()


@app.get("/admin/series-unlock/status", response_model=SeriesStatusReport, tags=["Admin"])
def series_unlock_status(
    customer_email: Optional[str] = None, service: PlatformService = Depends(get_service)
) -> SeriesStatusReport:
    return service.series_status(customer_email)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
