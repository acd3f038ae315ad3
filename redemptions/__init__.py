"""
Tuition discount redemptions: students spend coins, universities receive them.
"""

from .models import RedemptionStatus, TuitionDiscount, TuitionRedemption
from .service import RedemptionService

__all__ = [
    "RedemptionStatus",
    "TuitionDiscount",
    "TuitionRedemption",
    "RedemptionService",
]
