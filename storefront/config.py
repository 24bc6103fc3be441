# storefront.config
from decimal import Decimal
from pathlib import Path
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=False)

"""
Configuration centrale du service storefront.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets/URLs (Supabase, Stripe, bKash, Nagad)
- Expose la politique tarifaire (taxe, livraison) et les bornes de retry
- Fournit les URLs de redirection après paiement (FRONTEND_URL)
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _decimal_env(name: str, default: str) -> Decimal:
    return Decimal(_clean_env(os.getenv(name)) or default)

def _int_env(name: str, default: int) -> int:
    raw = _clean_env(os.getenv(name))
    return int(raw) if raw else default

def _pem_env(name: str) -> str:
    # Les clés PEM sont souvent collées sur une ligne avec des "\n" littéraux
    return _clean_env(os.getenv(name)).replace("\\n", "\n")

# Supabase: URL et clés (anon/service)
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or "")
SUPABASE_ANON = _clean_env(os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_KEY") or "")
SUPABASE_SERVICE_KEY = _clean_env(os.getenv("SUPABASE_SERVICE_KEY") or "")

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

# Backend de persistance des commandes: "supabase" (prod) ou "memory" (dev/tests)
ORDER_STORE = _clean_env(os.getenv("ORDER_STORE") or "supabase").lower()

# Sécurité / CORS
COOKIE_SECURE = (os.getenv("COOKIE_SECURE", "false").lower() == "true")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h.strip()]

# URLs publiques: API (callbacks wallets) et front (redirections post-paiement)
BASE_URL = _clean_env(os.getenv("BASE_URL") or "http://localhost:8000").rstrip("/")
FRONTEND_URL = _clean_env(os.getenv("FRONTEND_URL") or "http://localhost:3000").rstrip("/")

# Stripe: clé secrète, secret webhook et retries réseau (même clé d'idempotence)
STRIPE_SECRET_KEY = _clean_env(os.getenv("STRIPE_SECRET_KEY") or "")
STRIPE_WEBHOOK_SECRET = _clean_env(os.getenv("STRIPE_WEBHOOK_SECRET") or "")
STRIPE_MAX_NETWORK_RETRIES = _int_env("STRIPE_MAX_NETWORK_RETRIES", 2)
STRIPE_WEBHOOK_TOLERANCE_SECONDS = _int_env("STRIPE_WEBHOOK_TOLERANCE_SECONDS", 300)

# bKash (checkout tokenisé)
BKASH_APP_KEY = _clean_env(os.getenv("BKASH_APP_KEY") or "")
BKASH_APP_SECRET = _clean_env(os.getenv("BKASH_APP_SECRET") or "")
BKASH_USERNAME = _clean_env(os.getenv("BKASH_USERNAME") or "")
BKASH_PASSWORD = _clean_env(os.getenv("BKASH_PASSWORD") or "")
BKASH_BASE_URL = _clean_env(os.getenv("BKASH_BASE_URL") or "https://checkout.sandbox.bka.sh/v1.2.0-beta").rstrip("/")

# Nagad
NAGAD_MERCHANT_ID = _clean_env(os.getenv("NAGAD_MERCHANT_ID") or "")
NAGAD_MERCHANT_NUMBER = _clean_env(os.getenv("NAGAD_MERCHANT_NUMBER") or "")
NAGAD_PUBLIC_KEY = _pem_env("NAGAD_PUBLIC_KEY")
NAGAD_PRIVATE_KEY = _pem_env("NAGAD_PRIVATE_KEY")
NAGAD_BASE_URL = _clean_env(os.getenv("NAGAD_BASE_URL") or "https://sandbox.mynagad.com").rstrip("/")

# Politique tarifaire (montants en unités majeures de la devise)
DEFAULT_CURRENCY = _clean_env(os.getenv("DEFAULT_CURRENCY") or "USD").upper()
TAX_RATE = _decimal_env("TAX_RATE", "0.10")
FREE_SHIPPING_THRESHOLD = _decimal_env("FREE_SHIPPING_THRESHOLD", "50")
SHIPPING_FLAT_FEE = _decimal_env("SHIPPING_FLAT_FEE", "5.99")
EXPRESS_SHIPPING_FEE = _decimal_env("EXPRESS_SHIPPING_FEE", "14.99")

# Numéros de commande: nombre maximal de tirages en cas de collision
ORDER_NUMBER_MAX_ATTEMPTS = _int_env("ORDER_NUMBER_MAX_ATTEMPTS", 5)

# Délais (secondes)
PROVIDER_TIMEOUT_SECONDS = float(_clean_env(os.getenv("PROVIDER_TIMEOUT_SECONDS")) or 15)
WEBHOOK_APPLY_TIMEOUT_SECONDS = float(_clean_env(os.getenv("WEBHOOK_APPLY_TIMEOUT_SECONDS")) or 10)
