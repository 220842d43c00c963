"""Mentorship pricing: duration clamp, package discounts and the revenue split."""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

from services.errors import ValidationError

MIN_DURATION_MINUTES = 30
MAX_DURATION_MINUTES = 180

CENT = Decimal("0.01")
DEFAULT_PLATFORM_SHARE_PERCENT = Decimal("30")

NO_PACKAGE = "NONE"


@dataclass(frozen=True)
class PackageOffer:
    code: str
    sessions: int
    discount_percent: Decimal
    label: str


PACKAGE_OFFERS = {
    "STARTER_3": PackageOffer("STARTER_3", 3, Decimal("10"), "Starter Pack (3)"),
    "GROWTH_5": PackageOffer("GROWTH_5", 5, Decimal("18"), "Growth Pack (5)"),
}


@dataclass(frozen=True)
class PriceQuote:
    total_amount: Decimal
    sessions_count: int
    discount_percent: Decimal
    platform_share: Decimal
    provider_share: Decimal
    duration_minutes: int
    package_code: str
    label: str

    def to_dict(self):
        return {
            "total_amount": str(self.total_amount),
            "sessions_count": self.sessions_count,
            "discount_percent": str(self.discount_percent),
            "platform_share": str(self.platform_share),
            "provider_share": str(self.provider_share),
            "duration_minutes": self.duration_minutes,
            "package_code": self.package_code,
            "label": self.label,
        }


def _to_decimal(value, field):
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", details={"field": field})
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number", details={"field": field})
    return amount


def round_money(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_duration(duration_minutes: int) -> int:
    return max(MIN_DURATION_MINUTES, min(MAX_DURATION_MINUTES, int(duration_minutes)))


def get_package(package_code):
    if package_code is not None and not isinstance(package_code, str):
        raise ValidationError("Unknown package", details={"field": "package_code", "package_code": package_code})
    code = (package_code or NO_PACKAGE).strip().upper()
    if code == NO_PACKAGE:
        return None
    offer = PACKAGE_OFFERS.get(code)
    if offer is None:
        raise ValidationError("Unknown package", details={"field": "package_code", "package_code": package_code})
    return offer


def split_revenue(total_amount, platform_share_percent=DEFAULT_PLATFORM_SHARE_PERCENT):
    """
    Returns (platform_share, provider_share).

    Each share is rounded half-up to the cent on its own, so the two may add up
    to one cent more than ``total_amount`` (e.g. 0.05 -> 0.02 + 0.04). They are
    never less than the total.
    """
    total = _to_decimal(total_amount, "total_amount")
    platform_pct = _to_decimal(platform_share_percent, "platform_share_percent")
    provider_pct = Decimal("100") - platform_pct

    platform_share = round_money(total * platform_pct / Decimal("100"))
    provider_share = round_money(total * provider_pct / Decimal("100"))
    return platform_share, provider_share


def compute_price(hourly_rate, duration_minutes, package_code=NO_PACKAGE,
                  platform_share_percent=DEFAULT_PLATFORM_SHARE_PERCENT) -> PriceQuote:
    rate = _to_decimal(hourly_rate, "hourly_rate")
    if rate <= 0:
        raise ValidationError("Hourly rate must be positive", details={"hourly_rate": str(hourly_rate)})

    try:
        raw_duration = int(duration_minutes)
    except (TypeError, ValueError):
        raise ValidationError("Duration must be a whole number of minutes",
                              details={"duration_minutes": duration_minutes})
    if raw_duration <= 0:
        raise ValidationError("Duration must be positive", details={"duration_minutes": raw_duration})

    duration = clamp_duration(raw_duration)
    offer = get_package(package_code)

    sessions_count = offer.sessions if offer else 1
    discount_percent = offer.discount_percent if offer else Decimal("0")

    base_price = rate * duration / Decimal("60")
    total = round_money(base_price * sessions_count * (Decimal("100") - discount_percent) / Decimal("100"))
    platform_share, provider_share = split_revenue(total, platform_share_percent)

    return PriceQuote(
        total_amount=total,
        sessions_count=sessions_count,
        discount_percent=discount_percent,
        platform_share=platform_share,
        provider_share=provider_share,
        duration_minutes=duration,
        package_code=offer.code if offer else NO_PACKAGE,
        label=offer.label if offer else "One-off",
    )


def to_minor_units(amount) -> int:
    """Decimal price -> integer amount in the gateway's smallest unit."""
    return int((_to_decimal(amount, "amount") * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
