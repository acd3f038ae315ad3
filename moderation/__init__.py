from .models import BlockedAffiliateCode, ModerationStatus, SuspiciousUser
from .service import ModerationService

__all__ = [
    "BlockedAffiliateCode",
    "ModerationStatus",
    "SuspiciousUser",
    "ModerationService",
]
