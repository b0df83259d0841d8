# billing.config
from pathlib import Path
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=True)

"""
Configuration centrale du service de paiement.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets Stripe et l'URL du backend de référence
- Expose les réglages du cycle de vie des sessions d'achat (TTL, balayage, relances)
- Choisit le stockage des sessions (mémoire locale ou Redis)
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _env_int(name: str, default: int) -> int:
    raw = _clean_env(os.getenv(name) or "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default

def _env_float(name: str, default: float) -> float:
    raw = _clean_env(os.getenv(name) or "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default

# Stripe: clés publiques/privées et secret webhook
STRIPE_SECRET_KEY = _clean_env(os.getenv("STRIPE_SECRET_KEY") or "")
STRIPE_PUBLISHABLE_KEY = _clean_env(
    os.getenv("STRIPE_PUBLISHABLE_KEY") or os.getenv("NEXT_PUBLIC_STRIPE_PUBLISHABLE_KEY") or ""
)
STRIPE_WEBHOOK_SECRET = _clean_env(os.getenv("STRIPE_WEBHOOK_SECRET") or "")
PAYMENT_CURRENCY = _clean_env(os.getenv("PAYMENT_CURRENCY") or "usd").lower()

# Backend de référence: crédite les minutes / active le plan après paiement
BACKEND_API_URL = _clean_env(os.getenv("BACKEND_API_URL") or "http://localhost:5000").rstrip("/")
CONFIRM_PAYMENT_PATH = _clean_env(os.getenv("CONFIRM_PAYMENT_PATH") or "/api/stripe/confirm-payment")
BACKEND_TIMEOUT_SECONDS = _env_float("BACKEND_TIMEOUT_SECONDS", 10.0)

# Pages de retour du checkout hébergé Stripe
APP_URL = _clean_env(os.getenv("APP_URL") or os.getenv("NEXT_PUBLIC_APP_URL") or "http://localhost:3000").rstrip("/")
CHECKOUT_SUCCESS_URL = f"{APP_URL}/dashboard?success=true&session_id={{CHECKOUT_SESSION_ID}}"
CHECKOUT_CANCEL_URL = f"{APP_URL}/dashboard?canceled=true"

# Sessions d'achat: TTL fixe, balayage périodique, relances de confirmation
PURCHASE_SESSION_TTL_MINUTES = _env_int("PURCHASE_SESSION_TTL_MINUTES", 15)
SESSION_SWEEP_INTERVAL_SECONDS = _env_int("SESSION_SWEEP_INTERVAL_SECONDS", 5 * 60)
CONFIRMATION_RETRY_INTERVAL_SECONDS = _env_int("CONFIRMATION_RETRY_INTERVAL_SECONDS", 5 * 60)
CONFIRMATION_MAX_ATTEMPTS = _env_int("CONFIRMATION_MAX_ATTEMPTS", 5)
# Bail d'une confirmation en cours: au-delà, une autre instance peut la reprendre
CONFIRMATION_CLAIM_TIMEOUT_SECONDS = _env_int("CONFIRMATION_CLAIM_TIMEOUT_SECONDS", 120)
# Fenêtre de la clé d'idempotence Stripe (secondes)
IDEMPOTENCY_WINDOW_SECONDS = _env_int("IDEMPOTENCY_WINDOW_SECONDS", 60)

# Stockage des sessions: "memory" (un seul process) ou "redis" (multi-instances)
SESSION_STORE_BACKEND = _clean_env(os.getenv("SESSION_STORE_BACKEND") or "memory").lower()
SESSION_REDIS_URL = _clean_env(os.getenv("SESSION_REDIS_URL") or "redis://127.0.0.1:6379/1")
SESSION_REDIS_PREFIX = _clean_env(os.getenv("SESSION_REDIS_PREFIX") or "purchase")

# Plans « sur devis »: redirection vers l'équipe commerciale
SALES_CONTACT_EMAIL = _clean_env(os.getenv("SALES_CONTACT_EMAIL") or "info@kallin.ai")

# CORS (dev)
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]
