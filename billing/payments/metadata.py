"""
Métadonnées Stripe d'un achat (userId, planId, userEmail) et extraction des
identifiants de référence depuis les objets Stripe (payment intent, checkout session).
"""
from typing import Any, Dict, Optional, Tuple

from billing.plans.catalog import PlanConfig

# module billing.payments.metadata

META_USER_ID = "userId"
META_PLAN_ID = "planId"
META_USER_EMAIL = "userEmail"


def make_metadata(user_id: str, plan: PlanConfig, user_email: Optional[str] = None) -> Dict[str, str]:
    """
    Construit les métadonnées attachées au payment intent.
    Stripe n'accepte que des chaînes: les valeurs vides sont omises.
    """
    meta = {
        META_USER_ID: str(user_id),
        META_PLAN_ID: plan.plan_id,
        "planType": plan.plan_type,
        "minutes": str(plan.minutes_granted),
    }
    if user_email:
        meta[META_USER_EMAIL] = str(user_email)
    return meta


def extract_metadata(meta: Optional[Dict[str, Any]]) -> Tuple[Optional[str], Optional[str]]:
    """
    Extrait (user_id, plan_id) des métadonnées d'un objet Stripe.
    Tolérant: clés camelCase ou snake_case, (None, None) si absentes.
    """
    meta = meta if isinstance(meta, dict) else {}
    user_id = meta.get(META_USER_ID) or meta.get("user_id")
    plan_id = meta.get(META_PLAN_ID) or meta.get("plan_id")
    return (str(user_id) if user_id else None, str(plan_id) if plan_id else None)


def clean_metadata(obj: Dict[str, Any]) -> Dict[str, str]:
    meta = (obj or {}).get("metadata") or {} if isinstance(obj, dict) else {}
    return {str(k): str(v) for k, v in meta.items() if v is not None}


def payment_intent_of(obj: Dict[str, Any]) -> Optional[str]:
    """
    Identifiant du payment intent référencé par l'objet.
    - payment intent: son propre id
    - checkout session: champ payment_intent (chaîne ou objet développé)
    """
    if not isinstance(obj, dict):
        return None
    if obj.get("object") == "payment_intent":
        return obj.get("id")
    pi = obj.get("payment_intent")
    if isinstance(pi, dict):
        return pi.get("id")
    return str(pi) if pi else None


def reference_ids_of(obj: Dict[str, Any]) -> Tuple[str, ...]:
    """Identifiants sous lesquels une session d'achat peut être indexée (id objet d'abord)."""
    refs = []
    obj_id = (obj or {}).get("id") if isinstance(obj, dict) else None
    if obj_id:
        refs.append(str(obj_id))
    pi = payment_intent_of(obj)
    if pi and pi not in refs:
        refs.append(pi)
    return tuple(refs)
