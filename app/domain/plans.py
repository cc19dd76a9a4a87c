"""Plan tiers and resolution of a payment event to a plan.

Pure domain logic, no DB access. Resolution consults signals in priority
order and only falls through when a signal is absent or not a known paid plan:

1. ``metadata["plan_type"]`` (set by us when the checkout was created)
2. ``external_reference`` formatted ``<plan>_<user identifier>``
3. The paid amount against known price bands (last resort)
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import StrEnum
from typing import Any

import structlog

from app.core.exceptions import PlanResolutionError

logger = structlog.get_logger(__name__)


class PlanType(StrEnum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"


PAID_PLANS: frozenset[PlanType] = frozenset({PlanType.STARTER, PlanType.PRO})

# Catalogue prices in BRL
PLAN_PRICES: dict[PlanType, Decimal] = {
    PlanType.FREE: Decimal("0"),
    PlanType.STARTER: Decimal("49.90"),
    PlanType.PRO: Decimal("149.90"),
}

# Preapproval references are prefixed: "subscription_<plan>_<user>"
SUBSCRIPTION_REFERENCE_PREFIX = "subscription_"


@dataclass(frozen=True)
class PriceBand:
    """Inclusive amount range that identifies a plan."""

    plan: PlanType
    low: Decimal
    high: Decimal

    def matches(self, amount: Decimal) -> bool:
        return self.low <= amount <= self.high


# Checked in order; the higher tier first so overlapping promotions never under-match Pro
PRICE_BANDS: tuple[PriceBand, ...] = (
    PriceBand(PlanType.PRO, Decimal("144.90"), Decimal("154.90")),
    PriceBand(PlanType.STARTER, Decimal("44.90"), Decimal("54.90")),
    PriceBand(PlanType.STARTER, Decimal("0.50"), Decimal("1.50")),  # legacy R$ 1,00 test price
)

# Amount outside every band with no other signal
DEFAULT_BAND_FALLBACK = PlanType.STARTER


def parse_plan(value: Any) -> PlanType | None:
    """Return the paid plan named by ``value``, or None if it is not one."""
    if not isinstance(value, str):
        return None
    try:
        plan = PlanType(value.strip().lower())
    except ValueError:
        return None
    return plan if plan in PAID_PLANS else None


def parse_external_reference(reference: str | None) -> tuple[PlanType | None, str | None]:
    """Split ``<plan>_<user identifier>`` into its parts.

    The user identifier is everything after the first ``_`` and may itself
    contain underscores. A ``subscription_`` prefix is stripped first.

    Returns:
        (plan, user_ref); plan is None when the prefix is not a paid plan,
        user_ref is None when there is nothing after the plan.
    """
    if not reference:
        return None, None

    ref = reference.strip()
    if ref.startswith(SUBSCRIPTION_REFERENCE_PREFIX):
        ref = ref[len(SUBSCRIPTION_REFERENCE_PREFIX):]

    head, sep, rest = ref.partition("_")
    plan = parse_plan(head)
    if plan is None:
        return None, None
    return plan, (rest or None) if sep else None


def _to_decimal(amount: Any) -> Decimal | None:
    if amount is None or isinstance(amount, bool):
        return None
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return None
    return value if value.is_finite() else None


class PlanResolver:
    """Maps an ambiguous payment event to a concrete subscription tier."""

    def __init__(self, price_bands: tuple[PriceBand, ...] = PRICE_BANDS):
        self.price_bands = price_bands

    def identify_plan(
        self,
        metadata: dict | None,
        external_reference: str | None,
        amount: Any = None,
    ) -> PlanType:
        """Resolve the plan a payment event refers to.

        Raises:
            PlanResolutionError: When no signal is present at all. A paid tier is
                never granted by default without evidence of a payment.
        """
        plan = parse_plan((metadata or {}).get("plan_type"))
        if plan is not None:
            logger.info("plan_identified", source="metadata", plan=plan.value)
            return plan

        plan, _ = parse_external_reference(external_reference)
        if plan is not None:
            logger.info("plan_identified", source="external_reference", plan=plan.value, reference=external_reference)
            return plan

        value = _to_decimal(amount)
        if value is None:
            raise PlanResolutionError(
                f"No plan signal in event (metadata={metadata!r}, external_reference={external_reference!r}, amount={amount!r})"
            )

        logger.warning("plan_identified_by_amount_fallback", amount=str(value))
        for band in self.price_bands:
            if band.matches(value):
                return band.plan

        logger.warning("plan_amount_matches_no_band", amount=str(value), fallback=DEFAULT_BAND_FALLBACK.value)
        return DEFAULT_BAND_FALLBACK
