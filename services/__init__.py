from .errors import (
    BookingError, ValidationError, ForbiddenError, NotFoundError, StateConflictError, GatewayError,
)
from .pricing import compute_price, split_revenue, PACKAGE_OFFERS
from .booking import Actor, BookingService
from .approval import ApprovalWorkflow
from .payments import PaymentOrchestrator
from .settlement import SettlementReporter
