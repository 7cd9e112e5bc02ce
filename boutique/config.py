# boutique.config
from pathlib import Path
from decimal import Decimal
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=True)

"""
Configuration centrale de la boutique.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets/URLs (Supabase, Stripe, PayTech, NexPay)
- Paramètres du checkout: devise, frais de livraison, tolérance de montant, tentatives max
- Files de tâches et rate limiting (Redis), CORS/hosts
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _int_env(name: str, default: int) -> int:
    try:
        return int(_clean_env(os.getenv(name)) or default)
    except ValueError:
        return default

# Supabase: URL et clés (anon/service)
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or "")
SUPABASE_ANON = _clean_env(os.getenv("SUPABASE_ANON_KEY") or "")
SUPABASE_SERVICE_KEY = _clean_env(os.getenv("SUPABASE_SERVICE_KEY") or "")

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

# En-tête Strict-Transport-Security (déploiement HTTPS uniquement)
HSTS_ENABLED = (os.getenv("HSTS_ENABLED", "false").lower() == "true")

# CORS (dev)
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]

# Front: pages de retour après paiement
FRONTEND_URL = _clean_env(os.getenv("FRONTEND_URL") or "http://localhost:5173").rstrip("/")

# Checkout
CURRENCY = _clean_env(os.getenv("CURRENCY") or "XOF").upper()
DEFAULT_SHIPPING_FEE = Decimal(_clean_env(os.getenv("DEFAULT_SHIPPING_FEE")) or "2000")
AMOUNT_TOLERANCE = Decimal(_clean_env(os.getenv("AMOUNT_TOLERANCE")) or "1")
MAX_PAYMENT_ATTEMPTS = _int_env("MAX_PAYMENT_ATTEMPTS", 3)
ORDER_NUMBER_MAX_TRIES = _int_env("ORDER_NUMBER_MAX_TRIES", 5)

# Appels fournisseurs: délais bornés (secondes)
PROVIDER_TIMEOUT_SECONDS = _int_env("PROVIDER_TIMEOUT_SECONDS", 20)
PROVIDER_STATUS_TIMEOUT_SECONDS = _int_env("PROVIDER_STATUS_TIMEOUT_SECONDS", 25)

# Stripe (carte bancaire): clé privée et secret webhook
STRIPE_SECRET_KEY = _clean_env(os.getenv("STRIPE_SECRET_KEY") or "")
STRIPE_WEBHOOK_SECRET = _clean_env(os.getenv("STRIPE_WEBHOOK_SECRET") or "")

# PayTech (agrégateur Wave / Orange Money)
PAYTECH_API_URL = _clean_env(os.getenv("PAYTECH_API_URL") or "https://paytech.sn/api").rstrip("/")
PAYTECH_API_KEY = _clean_env(os.getenv("PAYTECH_API_KEY") or "")
PAYTECH_API_SECRET = _clean_env(os.getenv("PAYTECH_API_SECRET") or "")
PAYTECH_ENV = _clean_env(os.getenv("PAYTECH_ENV") or "test")
PAYTECH_IPN_URL = _clean_env(os.getenv("PAYTECH_IPN_URL") or "")

# NexPay (agrégateur Wave / Orange Money, long polling)
NEXPAY_API_URL = _clean_env(os.getenv("NEXPAY_API_URL") or "").rstrip("/")
NEXPAY_WRITE_KEY = _clean_env(os.getenv("NEXPAY_WRITE_KEY") or "")
NEXPAY_READ_KEY = _clean_env(os.getenv("NEXPAY_READ_KEY") or "")
NEXPAY_PROJECT_ID = _clean_env(os.getenv("NEXPAY_PROJECT_ID") or "")
NEXPAY_WEBHOOK_SECRET = _clean_env(os.getenv("NEXPAY_WEBHOOK_SECRET") or "")

# Agrégateur utilisé pour chaque méthode push ("paytech" | "nexpay")
WAVE_GATEWAY = _clean_env(os.getenv("WAVE_GATEWAY") or "paytech").lower()
ORANGE_MONEY_GATEWAY = _clean_env(os.getenv("ORANGE_MONEY_GATEWAY") or "paytech").lower()

# File de tâches post-confirmation (facture, email, panier)
TASK_QUEUE_REDIS_URL = _clean_env(os.getenv("TASK_QUEUE_REDIS_URL") or "redis://127.0.0.1:6379/1")
TASK_QUEUE_KEY = _clean_env(os.getenv("TASK_QUEUE_KEY") or "boutique:tasks")
