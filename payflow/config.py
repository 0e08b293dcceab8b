import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./payflow.db")

# Frontend base URL for checkout return pages
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")
if not FRONTEND_URL.startswith("http"):
    FRONTEND_URL = f"https://{FRONTEND_URL}"

# Mercado Pago OAuth application (used to refresh tenant tokens)
MP_CLIENT_ID = os.getenv("MP_CLIENT_ID")
MP_CLIENT_SECRET = os.getenv("MP_CLIENT_SECRET")
MP_API_URL = os.getenv("MP_API_URL", "https://api.mercadopago.com")
# Public URL of our webhook endpoint, sent as notification_url on every intent
MP_WEBHOOK_URL = os.getenv("MP_WEBHOOK_URL")
MP_HTTP_TIMEOUT = float(os.getenv("MP_HTTP_TIMEOUT", "30.0"))
# Refresh tokens this many minutes before they expire
MP_TOKEN_REFRESH_BUFFER_MINUTES = int(os.getenv("MP_TOKEN_REFRESH_BUFFER_MINUTES", "30"))
# Used when a refresh response omits expires_in (Mercado Pago tokens last 180 days)
MP_DEFAULT_TOKEN_LIFETIME_SECONDS = int(os.getenv("MP_DEFAULT_TOKEN_LIFETIME_SECONDS", "15552000"))

# Fernet key for tenant OAuth tokens at rest
# Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY")
if not TOKEN_ENCRYPTION_KEY:
    import warnings

    warnings.warn(
        "TOKEN_ENCRYPTION_KEY not set! Provider tokens cannot be stored or read",
        RuntimeWarning,
        stacklevel=2,
    )

# WhatsApp relay (automation webhook that forwards to the tenant's instance)
WHATSAPP_RELAY_URL = os.getenv("WHATSAPP_RELAY_URL")
WHATSAPP_HTTP_TIMEOUT = float(os.getenv("WHATSAPP_HTTP_TIMEOUT", "10.0"))
DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "55")

# Billing defaults
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "BRL")
DEFAULT_COMMISSION_RATE = float(os.getenv("DEFAULT_COMMISSION_RATE", "0.025"))  # 2.5%
CHECKOUT_EXPIRATION_HOURS = int(os.getenv("CHECKOUT_EXPIRATION_HOURS", "24"))
BOOKING_HOLD_MINUTES = int(os.getenv("BOOKING_HOLD_MINUTES", "5"))

# Subscription lifecycle defaults (tenants may override in settings)
DEFAULT_GRACE_HOURS = int(os.getenv("DEFAULT_GRACE_HOURS", "48"))
NEAR_BLOCK_WARNING_HOURS = int(os.getenv("NEAR_BLOCK_WARNING_HOURS", "6"))
DEFAULT_CYCLE_REMINDER_DAYS = [3, 1, 0]
REMINDER_TIMEZONE = os.getenv("REMINDER_TIMEZONE", "America/Sao_Paulo")

# Shared secret for manual sweep triggers (scheduler / ops)
CRON_SECRET = os.getenv("CRON_SECRET")

# Fallback display name when a tenant has none
PLATFORM_NAME = os.getenv("PLATFORM_NAME", "PayFlow")
