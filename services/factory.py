"""Wires the engine components together from the Flask config."""
from dataclasses import dataclass

from flask import current_app, g

from services.approval import ApprovalWorkflow
from services.booking import BookingService
from services.gateways import build_gateway
from services.notifications import NotificationPublisher, InAppNotificationDispatcher, EmailNotificationDispatcher
from services.payments import PaymentOrchestrator
from services.repository import SqlAlchemyBookingRepository
from services.settlement import SettlementReporter


@dataclass
class BookingEngine:
    repository: object
    publisher: object
    bookings: BookingService
    approvals: ApprovalWorkflow
    settlement: SettlementReporter
    gateway_factory: object
    payments_config: dict

    _payments: PaymentOrchestrator = None

    @property
    def payments(self) -> PaymentOrchestrator:
        # the gateway is only built when a payment call needs it
        if self._payments is None:
            cfg = self.payments_config
            self._payments = PaymentOrchestrator(
                repository=self.repository,
                gateway=self.gateway_factory(),
                publisher=self.publisher,
                callback_url=cfg["callback_url"],
                currency=cfg["currency"],
                platform_share_percent=cfg["platform_share_percent"],
                payment_window_minutes=cfg["payment_window_minutes"],
                clock=self.bookings.clock,
            )
        return self._payments


def build_engine(config, repository=None, gateway=None, publisher=None, clock=None) -> BookingEngine:
    repository = repository or SqlAlchemyBookingRepository()
    if publisher is None:
        dispatchers = [InAppNotificationDispatcher()]
        if config.get("SMTP_HOST"):
            dispatchers.append(EmailNotificationDispatcher(repository))
        publisher = NotificationPublisher(dispatchers)

    extra = {"clock": clock} if clock else {}
    bookings = BookingService(
        repository,
        publisher,
        default_hourly_rate=config.get("DEFAULT_HOURLY_RATE", 15000),
        approval_window_hours=config.get("APPROVAL_WINDOW_HOURS", 72),
        platform_share_percent=config.get("PLATFORM_SHARE_PERCENT", 30),
        enforce_approval_deadline=config.get("ENFORCE_APPROVAL_DEADLINE", False),
        **extra,
    )
    return BookingEngine(
        repository=repository,
        publisher=publisher,
        bookings=bookings,
        approvals=ApprovalWorkflow(bookings),
        settlement=SettlementReporter(repository),
        gateway_factory=(lambda: gateway) if gateway is not None else (lambda: build_gateway(config)),
        payments_config={
            "callback_url": config.get("PAYMENT_CALLBACK_URL"),
            "currency": config.get("CURRENCY", "NGN"),
            "platform_share_percent": config.get("PLATFORM_SHARE_PERCENT", 30),
            "payment_window_minutes": config.get("PAYMENT_WINDOW_MINUTES"),
        },
    )


def get_engine() -> BookingEngine:
    """Per-request engine; a gateway registered in app.extensions takes precedence."""
    engine = getattr(g, "booking_engine", None)
    if engine is None:
        engine = build_engine(
            current_app.config,
            gateway=current_app.extensions.get("payment_gateway"),
        )
        g.booking_engine = engine
    return engine
