from .models import InvoiceStatus, PayoutInvoice, PayoutMethod, PayoutRequest, PayoutStatus
from .service import PayoutService, parse_payout_details

__all__ = [
    "InvoiceStatus",
    "PayoutInvoice",
    "PayoutMethod",
    "PayoutRequest",
    "PayoutStatus",
    "PayoutService",
    "parse_payout_details",
]
