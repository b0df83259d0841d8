from typing import Any, Dict

from fastapi import APIRouter

from billing.plans.catalog import addon_plans, main_plans, resolve_plan

router = APIRouter(prefix="/api/stripe/plans", tags=["Plans API"])


# module billing.plans.views
@router.get("")
def list_plans() -> Dict[str, Any]:
    """
    Catalogue public: plans principaux et compléments (add-on, packs de minutes).
    Les montants sont ceux utilisés lors de la création du paiement.
    """
    return {
        "plans": [p.to_public_dict() for p in main_plans()],
        "addons": [p.to_public_dict() for p in addon_plans()],
    }


@router.get("/{plan_id}")
def get_plan(plan_id: str) -> Dict[str, Any]:
    # UnknownPlanError -> 400 via les handlers d'exceptions
    return resolve_plan(plan_id).to_public_dict()
