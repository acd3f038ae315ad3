"""
University payout requests.

    pending ──approve──▶ approved ──mark_paid──▶ paid
       │
       ├──reject──▶ rejected
       └──cancel──▶ cancelled

Coins are reserved when a request is created (pending and approved requests
count against the university's available balance) and only leave the rewards
account when an admin marks the request paid.
"""

from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional, Union
from uuid import UUID, uuid4

from loguru import logger
from pydantic import BaseModel, ValidationError

from ledger.config import Settings, get_settings
from ledger.errors import (
    InsufficientBalanceError,
    InvalidPayoutDetailsError,
    InvalidReasonError,
    InvalidStateTransitionError,
    NotAuthorizedError,
    PayoutRequestNotFoundError,
    UniversityNotFoundError,
)
from ledger.models import AccountBalance, AccountRef
from ledger.service import LedgerService, validate_coin_amount
from ledger.storage import InMemoryStorage, utc_now
from moderation.service import ModerationService

from .models import (
    InvoiceStatus,
    PayoutDetails,
    PayoutInvoice,
    PayoutMethod,
    PayoutRequest,
    PayoutStatus,
    payout_details_adapter,
)


def parse_payout_details(method: Union[PayoutMethod, str], details: Union[BaseModel, dict, None]) -> PayoutDetails:
    try:
        method = PayoutMethod(method)
    except ValueError:
        raise InvalidPayoutDetailsError(f"Unsupported payout method: {method!r}")

    data = details.model_dump() if isinstance(details, BaseModel) else dict(details or {})
    data.setdefault("method", method.value)
    if data["method"] != method.value:
        raise InvalidPayoutDetailsError(
            f"Payout details are for '{data['method']}' but the request uses '{method.value}'"
        )

    try:
        return payout_details_adapter.validate_python(data)
    except ValidationError as exc:
        problems = "; ".join(err["msg"] for err in exc.errors())
        raise InvalidPayoutDetailsError(f"Invalid {method.value} payout details: {problems}") from exc


class PayoutService:
    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        ledger: Optional[LedgerService] = None,
        moderation: Optional[ModerationService] = None,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.ledger = ledger or LedgerService(self.storage)
        self.moderation = moderation or ModerationService(self.storage)
        self.settings = settings or get_settings()

    # -- university side ---------------------------------------------------

    def request_payout(
        self,
        university_id: UUID,
        requester: UUID,
        amount_coins: int,
        method: Union[PayoutMethod, str],
        details: Union[BaseModel, dict, None],
    ) -> PayoutRequest:
        university = self.storage.catalog.get_university(university_id)
        if university is None:
            raise UniversityNotFoundError(f"University {university_id} not found")
        if not university.is_staff(requester):
            raise NotAuthorizedError(f"User {requester} cannot request payouts for {university.name}")
        self.moderation.ensure_not_blocked(requester)

        amount = validate_coin_amount(amount_coins)
        payout_details = parse_payout_details(method, details)

        school = AccountRef.university(university_id)
        request_id = uuid4()
        with self.storage.transaction(school.lock_key):
            account = self.storage.accounts.get_university(university_id)
            balance = account.balance_coins if account else 0
            reserved = self.storage.payouts.reserved_coins(university_id)
            available = balance - reserved
            if amount > available:
                logger.warning(
                    "Payout request rejected for insufficient balance",
                    university_id=str(university_id), balance=balance, reserved=reserved, requested=amount,
                )
                raise InsufficientBalanceError(available=max(available, 0), requested=amount)

            now = utc_now()
            amount_usd = Decimal(amount)
            self.storage.payouts.insert_request({
                "id": request_id,
                "university_id": university_id,
                "requested_by": requester,
                "amount_coins": amount,
                "amount_usd": amount_usd,
                "payout_method": PayoutMethod(payout_details.method),
                "payout_details": payout_details.model_dump(),
                "payout_details_preview": payout_details.preview(),
                "status": PayoutStatus.PENDING,
                "created_at": now,
                "updated_at": now,
            })
            invoice = self.storage.payouts.insert_invoice({
                "id": uuid4(),
                "payout_request_id": request_id,
                "invoice_number": self._next_invoice_number(),
                "issued_at": now,
                "total_usd": amount_usd,
                "status": InvoiceStatus.ISSUED,
                "finalized_at": None,
                "voided_at": None,
            })

        logger.info(
            "Payout requested",
            request_id=str(request_id),
            university_id=str(university_id),
            amount_coins=amount,
            method=payout_details.method,
            invoice_number=invoice["invoice_number"],
        )
        return self.get_payout_request(request_id)

    def cancel_payout(self, request_id: UUID, requester: UUID) -> PayoutRequest:
        with self._locked(request_id) as request:
            university = self.storage.catalog.get_university(request.university_id)
            is_staff = university is not None and university.is_staff(requester)
            if requester != request.requested_by and not is_staff:
                raise NotAuthorizedError(f"User {requester} cannot cancel payout request {request_id}")
            self._require(request, PayoutStatus.PENDING, "cancel")

            now = utc_now()
            self.storage.payouts.update_request(
                request_id, status=PayoutStatus.CANCELLED, cancelled_by=requester, cancelled_at=now, updated_at=now,
            )
            self._void_invoice(request_id, now)

        logger.info("Payout request cancelled", request_id=str(request_id), requester=str(requester))
        return self.get_payout_request(request_id)

    # -- admin side --------------------------------------------------------

    def admin_approve(self, request_id: UUID, admin_id: UUID) -> PayoutRequest:
        with self._locked(request_id) as request:
            self._require(request, PayoutStatus.PENDING, "approve")
            now = utc_now()
            self.storage.payouts.update_request(
                request_id, status=PayoutStatus.APPROVED,
                approved_by=admin_id, approved_at=now, reviewed_by=admin_id, updated_at=now,
            )
            self.storage.audit.record("approve_payout", "payout_request", request_id, admin_id)

        logger.info("Payout request approved", request_id=str(request_id), admin_id=str(admin_id))
        return self.get_payout_request(request_id)

    def admin_mark_paid(
        self,
        request_id: UUID,
        admin_id: UUID,
        payment_reference: Optional[str] = None,
    ) -> PayoutRequest:
        with self._locked(request_id) as request:
            self._require(request, PayoutStatus.APPROVED, "mark as paid")
            invoice = self.storage.payouts.get_invoice(request_id)
            self.ledger.debit(
                AccountRef.university(request.university_id),
                request.amount_coins,
                description=f"Payout {invoice['invoice_number']} via {request.payout_method.value}",
                reference_type="payout_request",
                reference_id=request_id,
            )

            now = utc_now()
            self.storage.payouts.update_request(
                request_id,
                status=PayoutStatus.PAID,
                paid_by=admin_id,
                paid_at=now,
                payment_reference=payment_reference,
                admin_notes=f"Payment reference: {payment_reference}" if payment_reference else request.admin_notes,
                updated_at=now,
            )
            self.storage.payouts.update_invoice(request_id, status=InvoiceStatus.FINALIZED, finalized_at=now)
            self.storage.audit.record(
                "mark_payout_paid", "payout_request", request_id, admin_id,
                payment_reference=payment_reference, amount_coins=request.amount_coins,
            )

        logger.info(
            "Payout request paid",
            request_id=str(request_id),
            admin_id=str(admin_id),
            amount_coins=request.amount_coins,
            payment_reference=payment_reference,
        )
        return self.get_payout_request(request_id)

    def admin_reject(self, request_id: UUID, admin_id: UUID, reason: str) -> PayoutRequest:
        if not reason or not reason.strip():
            raise InvalidReasonError("A reason is required to reject a payout request")
        reason = reason.strip()

        with self._locked(request_id) as request:
            self._require(request, PayoutStatus.PENDING, "reject")
            now = utc_now()
            self.storage.payouts.update_request(
                request_id, status=PayoutStatus.REJECTED,
                reviewed_by=admin_id, review_reason=reason, admin_notes=reason, updated_at=now,
            )
            self._void_invoice(request_id, now)
            self.storage.audit.record("reject_payout", "payout_request", request_id, admin_id, reason=reason)

        logger.info("Payout request rejected", request_id=str(request_id), admin_id=str(admin_id))
        return self.get_payout_request(request_id)

    def admin_add_notes(self, request_id: UUID, admin_id: UUID, notes: str) -> PayoutRequest:
        with self._locked(request_id):
            self.storage.payouts.update_request(request_id, admin_notes=notes, updated_at=utc_now())
            self.storage.audit.record("add_payout_notes", "payout_request", request_id, admin_id, notes=notes)
        return self.get_payout_request(request_id)

    # -- reads -------------------------------------------------------------

    def get_payout_request(self, request_id: UUID) -> PayoutRequest:
        row = self.storage.payouts.get_request(request_id)
        if not row:
            raise PayoutRequestNotFoundError(f"Payout request {request_id} not found")
        invoice = self.storage.payouts.get_invoice(request_id)
        return PayoutRequest(**row, invoice=PayoutInvoice(**invoice) if invoice else None)

    def get_invoice(self, request_id: UUID) -> PayoutInvoice:
        return self.get_payout_request(request_id).invoice

    def list_payout_requests(
        self,
        university_id: Optional[UUID] = None,
        status: Optional[PayoutStatus] = None,
    ) -> list[PayoutRequest]:
        """Newest first."""
        rows = self.storage.payouts.list_requests(university_id=university_id, status=status)
        return [self.get_payout_request(row["id"]) for row in reversed(rows)]

    def get_available_balance(self, university_id: UUID) -> AccountBalance:
        return self.ledger.get_balance(AccountRef.university(university_id))

    # -- helpers -----------------------------------------------------------

    @contextmanager
    def _locked(self, request_id: UUID) -> Iterator[PayoutRequest]:
        """Hold the request's lock and its university's lock for one unit of work.

        Yields the request as re-read under those locks, so state checks see
        the latest status.
        """
        university_id = self.get_payout_request(request_id).university_id
        with self.storage.transaction(f"payout:{request_id}", AccountRef.university(university_id).lock_key):
            yield self.get_payout_request(request_id)

    @staticmethod
    def _require(request: PayoutRequest, expected: PayoutStatus, action: str) -> None:
        if request.status != expected:
            logger.warning(
                "Invalid payout state transition",
                request_id=str(request.id), status=request.status.value, action=action,
            )
            raise InvalidStateTransitionError(
                f"Cannot {action} payout request in {request.status.value} state"
            )

    def _void_invoice(self, request_id: UUID, when) -> None:
        if self.storage.payouts.get_invoice(request_id):
            self.storage.payouts.update_invoice(request_id, status=InvoiceStatus.VOIDED, voided_at=when)

    def _next_invoice_number(self) -> str:
        date_part = utc_now().strftime("%Y%m%d")
        while True:
            number = f"{self.settings.invoice_prefix}-{date_part}-{uuid4().hex[:6].upper()}"
            if not self.storage.payouts.invoice_number_exists(number):
                return number


