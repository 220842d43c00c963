"""Read-only revenue figures derived from the transaction ledger."""
from dataclasses import dataclass
from decimal import Decimal

from models.transaction import TransactionStatus
from services.errors import ValidationError

ALL_PRODUCTS = "ALL"


@dataclass
class SettlementSummary:
    completed_count: int
    pending_count: int
    gross_revenue: Decimal
    platform_revenue: Decimal
    mentor_payouts: Decimal
    pending_revenue: Decimal
    pending_platform_revenue: Decimal
    pending_mentor_payouts: Decimal

    def to_dict(self):
        return {
            "completedCount": self.completed_count,
            "pendingCount": self.pending_count,
            "grossRevenue": str(self.gross_revenue),
            "platformRevenue": str(self.platform_revenue),
            "tutorPayouts": str(self.mentor_payouts),
            "pendingRevenue": str(self.pending_revenue),
            "pendingPlatformRevenue": str(self.pending_platform_revenue),
            "pendingTutorPayouts": str(self.pending_mentor_payouts),
        }


class SettlementReporter:
    def __init__(self, repository, product_type="MENTORSHIP"):
        self.repository = repository
        self.product_type = product_type

    def summarize(self, start=None, end=None, product_type=None, mentor_id=None) -> SettlementSummary:
        if start is not None and end is not None and end <= start:
            raise ValidationError("end must be after start", details={"start": str(start), "end": str(end)})

        product = product_type or self.product_type
        if product == ALL_PRODUCTS:
            product = None

        filters = dict(start=start, end=end, product_type=product, provider_id=mentor_id)
        completed = self.repository.summarize_transactions(TransactionStatus.COMPLETED, **filters)
        pending = self.repository.summarize_transactions(TransactionStatus.PENDING, **filters)

        return SettlementSummary(
            completed_count=completed.count,
            pending_count=pending.count,
            gross_revenue=completed.amount,
            platform_revenue=completed.platform_share,
            mentor_payouts=completed.provider_share,
            pending_revenue=pending.amount,
            pending_platform_revenue=pending.platform_share,
            pending_mentor_payouts=pending.provider_share,
        )

    def mentor_earnings(self, mentor_id, start=None, end=None) -> SettlementSummary:
        return self.summarize(start=start, end=end, mentor_id=mentor_id)
