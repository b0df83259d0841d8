"""
Catalogue des plans: source unique de vérité pour les prix et minutes.
Utilisé à la fois par la création du paiement et par la réconciliation des webhooks.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from billing.errors import UnknownPlanError

# module billing.plans.catalog

CATEGORY_TRIAL = "trial"
CATEGORY_SUBSCRIPTION = "subscription"
CATEGORY_ADDON = "addon"
CATEGORY_MINUTES = "minutes"


@dataclass(frozen=True)
class PlanConfig:
    plan_id: str
    display_name: str
    amount_minor_units: int
    minutes_granted: int
    category: str
    plan_type: str
    period: str
    description: str
    features: Tuple[str, ...] = field(default_factory=tuple)
    featured: bool = False
    sales_assisted: bool = False

    @property
    def amount_major_units(self) -> float:
        return self.amount_minor_units / 100

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "id": self.plan_id,
            "name": self.display_name,
            "price": self.amount_major_units,
            "amountCents": self.amount_minor_units,
            "period": self.period,
            "description": self.description,
            "minutes": self.minutes_granted,
            "plan_type": self.plan_type,
            "category": self.category,
            "features": list(self.features),
            "featured": self.featured,
            "salesAssisted": self.sales_assisted,
        }


_PLANS = (
    PlanConfig(
        plan_id="trial",
        display_name="Trial",
        amount_minor_units=2500,
        minutes_granted=100,
        category=CATEGORY_TRIAL,
        plan_type="trial",
        period="100 mins",
        description="Perfect trial package to test our AI phone assistance with generous minutes.",
        features=("100 minutes included", "Basic voice assistant", "Simple dashboard", "Email support", "Great for testing"),
    ),
    PlanConfig(
        plan_id="starter",
        display_name="Starter",
        amount_minor_units=29900,
        minutes_granted=250,
        category=CATEGORY_SUBSCRIPTION,
        plan_type="starter",
        period="Per Month",
        description="Perfect for small restaurants getting started with AI phone assistance.",
        features=("250+ calls per month", "1 Twilio number", "1 Voice assistant", "1 Dashboard", "Customer SMS notify", "24/7 Support"),
    ),
    PlanConfig(
        plan_id="professional",
        display_name="Professional",
        amount_minor_units=46900,
        minutes_granted=450,
        category=CATEGORY_SUBSCRIPTION,
        plan_type="professional",
        period="Per Month",
        description="Ideal for busy restaurants with high call volumes and premium requirements.",
        features=("450+ calls per month", "1 Twilio number", "1 Voice assistant", "1 Dashboard", "Customer SMS notify", "24/7 Support"),
        featured=True,
    ),
    PlanConfig(
        plan_id="enterprise",
        display_name="Enterprise",
        amount_minor_units=49900,
        minutes_granted=900,
        category=CATEGORY_SUBSCRIPTION,
        plan_type="enterprise",
        period="Per Month",
        description="Complete solution for restaurant chains and high-volume establishments.",
        features=("900+ calls per month", "1 Twilio number", "1 Voice assistant", "1 Dashboard", "Customer SMS notify", "24/7 Support"),
        sales_assisted=True,
    ),
    PlanConfig(
        plan_id="ai-voice",
        display_name="AI Voice",
        amount_minor_units=2500,
        minutes_granted=0,
        category=CATEGORY_ADDON,
        plan_type="ai-voice",
        period="Per Month",
        description="Variety of Male/Female Voices",
        features=("Multiple voice options", "Male & Female voices", "Natural speech patterns", "Custom voice training"),
    ),
    PlanConfig(
        plan_id="minutes_100",
        display_name="100 Minutes",
        amount_minor_units=4000,
        minutes_granted=100,
        category=CATEGORY_MINUTES,
        plan_type="minutes",
        period="One-time",
        description="100 Minutes Top-up",
        features=("100 additional minutes", "Never expires", "Instant activation", "Perfect for small needs"),
    ),
    PlanConfig(
        plan_id="minutes_250",
        display_name="250 Minutes",
        amount_minor_units=7500,
        minutes_granted=250,
        category=CATEGORY_MINUTES,
        plan_type="minutes",
        period="One-time",
        description="250 Minutes Top-up",
        features=("250 additional minutes", "Never expires", "Instant activation", "Great value"),
    ),
    PlanConfig(
        plan_id="minutes_500",
        display_name="500 Minutes",
        amount_minor_units=14000,
        minutes_granted=500,
        category=CATEGORY_MINUTES,
        plan_type="minutes",
        period="One-time",
        description="500 Minutes Top-up",
        features=("500 additional minutes", "Never expires", "Instant activation", "Best for heavy usage"),
    ),
    PlanConfig(
        plan_id="minutes_1000",
        display_name="1000 Minutes",
        amount_minor_units=26000,
        minutes_granted=1000,
        category=CATEGORY_MINUTES,
        plan_type="minutes",
        period="One-time",
        description="1000 Minutes Top-up",
        features=("1000 additional minutes", "Never expires", "Instant activation", "Maximum value"),
    ),
)

PLAN_CATALOG: Dict[str, PlanConfig] = {p.plan_id: p for p in _PLANS}

MAIN_PLAN_IDS = ("trial", "starter", "professional", "enterprise")


def resolve_plan(plan_id: str) -> PlanConfig:
    """
    Retourne la configuration du plan.
    - Soulève UnknownPlanError si l'identifiant n'est pas au catalogue.
    """
    plan = PLAN_CATALOG.get(str(plan_id or "").strip())
    if plan is None:
        raise UnknownPlanError(str(plan_id))
    return plan


def all_plans() -> List[PlanConfig]:
    return list(PLAN_CATALOG.values())


def main_plans() -> List[PlanConfig]:
    return [p for p in all_plans() if p.plan_id in MAIN_PLAN_IDS]


def addon_plans() -> List[PlanConfig]:
    return [p for p in all_plans() if p.category in (CATEGORY_MINUTES, CATEGORY_ADDON)]


def is_subscription_plan(plan_id: str) -> bool:
    plan = PLAN_CATALOG.get(plan_id)
    return bool(plan) and plan.category in (CATEGORY_SUBSCRIPTION, CATEGORY_ADDON)

