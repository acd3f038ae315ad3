from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from moderation.models import BlockedAffiliateCode, BlockUserRequest, FlagUserRequest, ModerationStatus, SuspiciousUser, UnblockUserRequest
from moderation.service import ModerationService
from payouts.models import (
    AdminActionRequest, AdminNotesRequest, CancelPayoutRequest, CreatePayoutRequest,
    MarkPaidRequest, PayoutRequest, PayoutStatus, RejectPayoutRequest,
)
from payouts.service import PayoutService
from redemptions.models import (
    RedeemCustomRequest, RedeemDiscountRequest, RedemptionResponse, TuitionDiscount, TuitionRedemption,
)
from redemptions.service import RedemptionService

from .config import Settings, get_settings
from .errors import (
    DiscountInactiveError, InsufficientBalanceError, InvalidAmountError, InvalidPayoutDetailsError,
    InvalidReasonError, InvalidStateTransitionError, InvalidStatsPeriodError, InvariantViolationError,
    LedgerServiceError, NotAuthorizedError, NotFoundError, UniversityNotEligibleError, UniversityNotFoundError,
    UserBlockedError,
)
from .logging_setup import configure_logging
from .models import (
    AccountBalance, AccountRef, CoinTransaction, CoinTransactionType, CreditRequest,
    LedgerHistoryResponse, RewardsAdminStats, University, UniversityRewardsAccount, UniversityRewardsStats,
    UserCreditAccount,
)
from .service import LedgerService
from .stats import DEFAULT_STATS_PERIOD, RewardsStatsService
from .storage import InMemoryStorage

# most specific first; the first isinstance match wins
ERROR_STATUS_CODES = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (NotAuthorizedError, status.HTTP_403_FORBIDDEN),
    (UserBlockedError, status.HTTP_403_FORBIDDEN),
    (InsufficientBalanceError, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (DiscountInactiveError, status.HTTP_409_CONFLICT),
    (InvalidAmountError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidPayoutDetailsError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidReasonError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidStatsPeriodError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (UniversityNotEligibleError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvariantViolationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_code_for(error: LedgerServiceError) -> int:
    for error_class, code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return code
    return status.HTTP_400_BAD_REQUEST


class RewardServices:
    """The services behind one app instance, all sharing one storage."""

    def __init__(self, storage: InMemoryStorage, settings: Settings):
        self.storage = storage
        self.settings = settings
        self.ledger = LedgerService(storage)
        self.moderation = ModerationService(storage)
        self.redemptions = RedemptionService(storage, self.ledger, self.moderation, settings)
        self.payouts = PayoutService(storage, self.ledger, self.moderation, settings)
        self.stats = RewardsStatsService(storage)

    def page(self, limit: Optional[int], offset: int) -> tuple[int, int]:
        limit = limit or self.settings.default_page_size
        return min(limit, self.settings.max_page_size), offset


def get_services(request: Request) -> RewardServices:
    return request.app.state.services


async def ledger_error_handler(request: Request, exc: LedgerServiceError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.critical("Request failed with ledger invariant violation", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "code": exc.code})


router = APIRouter()


@router.get("/health", tags=["System"])
def health_check(request: Request):
    settings = request.app.state.settings
    return {"status": "healthy", "service": settings.service_name, "environment": settings.environment}


# -- students ---------------------------------------------------------------

@router.get("/users/{user_id}/balance", response_model=AccountBalance, tags=["Users"])
def get_user_balance(user_id: UUID, services: RewardServices = Depends(get_services)) -> AccountBalance:
    return services.ledger.get_balance(AccountRef.user(user_id))


@router.get("/users/{user_id}/account", response_model=UserCreditAccount, tags=["Users"])
def get_user_account(user_id: UUID, services: RewardServices = Depends(get_services)) -> UserCreditAccount:
    return services.ledger.get_or_create_user_account(user_id)


@router.get("/users/{user_id}/transactions", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_transactions(
    user_id: UUID,
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    services: RewardServices = Depends(get_services),
) -> LedgerHistoryResponse:
    return services.ledger.get_ledger_history(AccountRef.user(user_id), *services.page(limit, offset))


@router.post(
    "/users/{user_id}/credits",
    response_model=CoinTransaction,
    status_code=status.HTTP_201_CREATED,
    tags=["Users"],
)
def credit_user(user_id: UUID, request: CreditRequest, services: RewardServices = Depends(get_services)) -> CoinTransaction:
    return services.ledger.credit(
        AccountRef.user(user_id),
        request.amount,
        CoinTransactionType.EARNED,
        description=request.description,
        reference_type=request.reference_type,
        reference_id=request.reference_id,
    )


@router.get("/users/{user_id}/redemptions", response_model=list[TuitionRedemption], tags=["Users"])
def get_user_redemptions(user_id: UUID, services: RewardServices = Depends(get_services)) -> list[TuitionRedemption]:
    return services.redemptions.list_redemptions(user_id=user_id)


# -- universities -----------------------------------------------------------

@router.get("/universities", response_model=list[University], tags=["Universities"])
def list_universities(search: Optional[str] = None, services: RewardServices = Depends(get_services)) -> list[University]:
    return services.redemptions.list_eligible_universities(search)


@router.get("/universities/{university_id}/balance", response_model=AccountBalance, tags=["Universities"])
def get_university_balance(university_id: UUID, services: RewardServices = Depends(get_services)) -> AccountBalance:
    return services.payouts.get_available_balance(university_id)


@router.get("/universities/{university_id}/account", response_model=UniversityRewardsAccount, tags=["Universities"])
def get_university_account(
    university_id: UUID, services: RewardServices = Depends(get_services)
) -> UniversityRewardsAccount:
    if services.storage.catalog.get_university(university_id) is None:
        raise UniversityNotFoundError(f"University {university_id} not found")
    return services.ledger.get_or_create_university_account(university_id)


@router.get("/universities/{university_id}/stats", response_model=UniversityRewardsStats, tags=["Universities"])
def get_university_stats(
    university_id: UUID, services: RewardServices = Depends(get_services)
) -> UniversityRewardsStats:
    return services.stats.get_university_stats(university_id)


@router.get("/universities/{university_id}/transactions", response_model=LedgerHistoryResponse, tags=["Universities"])
def get_university_transactions(
    university_id: UUID,
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    services: RewardServices = Depends(get_services),
) -> LedgerHistoryResponse:
    return services.ledger.get_ledger_history(AccountRef.university(university_id), *services.page(limit, offset))


@router.get("/universities/{university_id}/redemptions", response_model=list[TuitionRedemption], tags=["Universities"])
def get_university_redemptions(
    university_id: UUID, services: RewardServices = Depends(get_services)
) -> list[TuitionRedemption]:
    return services.redemptions.list_redemptions(university_id=university_id)


@router.get("/universities/{university_id}/payouts", response_model=list[PayoutRequest], tags=["Universities"])
def get_university_payouts(
    university_id: UUID,
    status_filter: Optional[PayoutStatus] = Query(None, alias="status"),
    services: RewardServices = Depends(get_services),
) -> list[PayoutRequest]:
    return services.payouts.list_payout_requests(university_id=university_id, status=status_filter)


# -- redemptions ------------------------------------------------------------

@router.get("/discounts", response_model=list[TuitionDiscount], tags=["Redemptions"])
def list_discounts(services: RewardServices = Depends(get_services)) -> list[TuitionDiscount]:
    return services.redemptions.list_active_discounts()


@router.post(
    "/redemptions",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Redemptions"],
)
def redeem_discount(request: RedeemDiscountRequest, services: RewardServices = Depends(get_services)) -> RedemptionResponse:
    return services.redemptions.redeem_catalog_discount(request.user_id, request.university_id, request.discount_id)


@router.post(
    "/redemptions/custom",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Redemptions"],
)
def redeem_custom(request: RedeemCustomRequest, services: RewardServices = Depends(get_services)) -> RedemptionResponse:
    return services.redemptions.redeem_custom_discount(request.user_id, request.university_id, request.coins_amount)


@router.get("/redemptions/{redemption_id}", response_model=TuitionRedemption, tags=["Redemptions"])
def get_redemption(redemption_id: UUID, services: RewardServices = Depends(get_services)) -> TuitionRedemption:
    return services.redemptions.get_redemption(redemption_id)


@router.post("/redemptions/{redemption_id}/expire", response_model=TuitionRedemption, tags=["Redemptions"])
def expire_redemption(redemption_id: UUID, services: RewardServices = Depends(get_services)) -> TuitionRedemption:
    return services.redemptions.expire_redemption(redemption_id)


# -- payouts ----------------------------------------------------------------

@router.post("/payouts", response_model=PayoutRequest, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def create_payout(request: CreatePayoutRequest, services: RewardServices = Depends(get_services)) -> PayoutRequest:
    return services.payouts.request_payout(
        request.university_id,
        request.requested_by,
        request.amount_coins,
        request.payout_method,
        request.payout_details,
    )


@router.get("/payouts", response_model=list[PayoutRequest], tags=["Payouts"])
def list_payouts(
    university_id: Optional[UUID] = None,
    status_filter: Optional[PayoutStatus] = Query(None, alias="status"),
    services: RewardServices = Depends(get_services),
) -> list[PayoutRequest]:
    return services.payouts.list_payout_requests(university_id=university_id, status=status_filter)


@router.get("/payouts/{request_id}", response_model=PayoutRequest, tags=["Payouts"])
def get_payout(request_id: UUID, services: RewardServices = Depends(get_services)) -> PayoutRequest:
    return services.payouts.get_payout_request(request_id)


@router.post("/payouts/{request_id}/cancel", response_model=PayoutRequest, tags=["Payouts"])
def cancel_payout(
    request_id: UUID, request: CancelPayoutRequest, services: RewardServices = Depends(get_services)
) -> PayoutRequest:
    return services.payouts.cancel_payout(request_id, request.requester)


@router.post("/payouts/{request_id}/approve", response_model=PayoutRequest, tags=["Payouts"])
def approve_payout(
    request_id: UUID, request: AdminActionRequest, services: RewardServices = Depends(get_services)
) -> PayoutRequest:
    return services.payouts.admin_approve(request_id, request.admin_id)


@router.post("/payouts/{request_id}/mark-paid", response_model=PayoutRequest, tags=["Payouts"])
def mark_payout_paid(
    request_id: UUID, request: MarkPaidRequest, services: RewardServices = Depends(get_services)
) -> PayoutRequest:
    return services.payouts.admin_mark_paid(request_id, request.admin_id, request.payment_reference)


@router.post("/payouts/{request_id}/reject", response_model=PayoutRequest, tags=["Payouts"])
def reject_payout(
    request_id: UUID, request: RejectPayoutRequest, services: RewardServices = Depends(get_services)
) -> PayoutRequest:
    return services.payouts.admin_reject(request_id, request.admin_id, request.reason)


@router.post("/payouts/{request_id}/notes", response_model=PayoutRequest, tags=["Payouts"])
def add_payout_notes(
    request_id: UUID, request: AdminNotesRequest, services: RewardServices = Depends(get_services)
) -> PayoutRequest:
    return services.payouts.admin_add_notes(request_id, request.admin_id, request.notes)


# -- admin ------------------------------------------------------------------

@router.get("/admin/stats", response_model=RewardsAdminStats, tags=["Admin"])
def get_admin_stats(
    period: str = Query(DEFAULT_STATS_PERIOD, alias="range"),
    services: RewardServices = Depends(get_services),
) -> RewardsAdminStats:
    return services.stats.get_admin_stats(period)


# -- moderation -------------------------------------------------------------

@router.get("/moderation/suspicious-users", response_model=list[SuspiciousUser], tags=["Moderation"])
def list_suspicious_users(
    status_filter: Optional[ModerationStatus] = Query(None, alias="status"),
    services: RewardServices = Depends(get_services),
) -> list[SuspiciousUser]:
    return services.moderation.list_suspicious_users(status_filter)


@router.get("/moderation/blocked-codes", response_model=list[BlockedAffiliateCode], tags=["Moderation"])
def list_blocked_codes(services: RewardServices = Depends(get_services)) -> list[BlockedAffiliateCode]:
    return services.moderation.list_blocked_codes()


@router.post("/moderation/users/{user_id}/flag", response_model=SuspiciousUser, tags=["Moderation"])
def flag_user(user_id: UUID, request: FlagUserRequest, services: RewardServices = Depends(get_services)) -> SuspiciousUser:
    return services.moderation.flag_suspicious_user(user_id, request.flags, request.affiliate_code)


@router.post("/moderation/users/{user_id}/block", response_model=SuspiciousUser, tags=["Moderation"])
def block_user(user_id: UUID, request: BlockUserRequest, services: RewardServices = Depends(get_services)) -> SuspiciousUser:
    return services.moderation.block(user_id, request.admin_id, request.reason, request.affiliate_code)


@router.post("/moderation/users/{user_id}/unblock", response_model=SuspiciousUser, tags=["Moderation"])
def unblock_user(
    user_id: UUID, request: UnblockUserRequest, services: RewardServices = Depends(get_services)
) -> SuspiciousUser:
    return services.moderation.unblock(user_id, request.admin_id)


def create_app(settings: Optional[Settings] = None, storage: Optional[InMemoryStorage] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(
        service_name=settings.service_name,
        environment=settings.environment,
        level=settings.log_level,
        json_output=settings.log_json,
    )

    app = FastAPI(
        title="Matricula Rewards API",
        description="Coin ledger, tuition redemptions and university payouts for Matricula Rewards",
        version=settings.version,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.settings = settings
    app.state.services = RewardServices(storage or InMemoryStorage(seed=settings.seed_data), settings)
    app.add_exception_handler(LedgerServiceError, ledger_error_handler)
    app.include_router(router)

    logger.info("Rewards API ready", environment=settings.environment, version=settings.version)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
