"""
Application configuration - loads from environment variables.
Single source of truth for all settings.
"""
import os
from typing import List, Optional
from urllib.parse import quote_plus
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables FIRST
BASE_DIR = Path(__file__).resolve().parent.parent.parent
env_path = BASE_DIR / '.env'
load_dotenv(dotenv_path=env_path)


def _env_bool(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).strip().lower() not in ("0", "false", "no", "off")


def _env_int_list(name: str, default: str) -> List[int]:
    raw = os.getenv(name, default)
    return [int(part) for part in raw.split(",") if part.strip()]


# ────────────────────────────────────────────
# WhatsApp Configuration
# ────────────────────────────────────────────
PHONE_ID: str = os.getenv("WHATSAPP_PHONE_ID", "")
TOKEN: str = os.getenv("WHATSAPP_TOKEN", "")
TEMPLATE_LANGUAGE: str = os.getenv("WHATSAPP_TEMPLATE_LANGUAGE", "en")
GATEWAY_CLIENT_TTL_SECONDS: int = int(os.getenv("GATEWAY_CLIENT_TTL_SECONDS", "3600"))

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

# ────────────────────────────────────────────
# Tenant / Multi-tenant
# ────────────────────────────────────────────
DEFAULT_TENANT_ID: str = os.getenv("TENANT_ID") or os.getenv("DEFAULT_TENANT_ID") or "default"

# ────────────────────────────────────────────
# Database Configuration
# ────────────────────────────────────────────
DB_USER = os.getenv("DB_USER", "postgres")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_HOST = os.getenv("DB_HOST", "localhost")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "storecast_db")
DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    encoded_password = quote_plus(DB_PASSWORD)
    DATABASE_URL = f"postgresql://{DB_USER}:{encoded_password}@{DB_HOST}:{DB_PORT}/{DB_NAME}"

# ────────────────────────────────────────────
# JWT Configuration (tenant resolution)
# ────────────────────────────────────────────
JWT_SECRET_KEY: str = os.getenv("JWT_SECRET_KEY", "")
JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

if not JWT_SECRET_KEY:
    import warnings
    warnings.warn("JWT_SECRET_KEY not set!")

# ────────────────────────────────────────────
# Campaign Dispatch
# ────────────────────────────────────────────
CAMPAIGN_DEFAULT_SEND_RATE: int = int(os.getenv("CAMPAIGN_DEFAULT_SEND_RATE", "30"))
CAMPAIGN_MAX_BATCH: int = int(os.getenv("CAMPAIGN_MAX_BATCH", "50"))
CAMPAIGN_BATCH_WINDOW_SECONDS: int = int(os.getenv("CAMPAIGN_BATCH_WINDOW_SECONDS", "300"))
STALE_CLAIM_MINUTES: int = int(os.getenv("STALE_CLAIM_MINUTES", "15"))

# ────────────────────────────────────────────
# Scheduler / Tick
# ────────────────────────────────────────────
TICK_BUDGET_SECONDS: int = int(os.getenv("TICK_BUDGET_SECONDS", "270"))
SCHEDULED_CAMPAIGNS_PER_TICK: int = int(os.getenv("SCHEDULED_CAMPAIGNS_PER_TICK", "5"))
ACTIVE_CAMPAIGNS_PER_TICK: int = int(os.getenv("ACTIVE_CAMPAIGNS_PER_TICK", "3"))
SCHEDULER_ENABLED: bool = _env_bool("SCHEDULER_ENABLED", "true")
SCHEDULER_INTERVAL_SECONDS: int = int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "300"))
RECIPIENT_RETENTION_DAYS: int = int(os.getenv("RECIPIENT_RETENTION_DAYS", "60"))
EVENT_RETENTION_DAYS: int = int(os.getenv("EVENT_RETENTION_DAYS", "90"))

# ────────────────────────────────────────────
# Lifecycle Reminders
# ────────────────────────────────────────────
REMINDER_SEND_DELAY_MS: int = int(os.getenv("REMINDER_SEND_DELAY_MS", "200"))
CART_MIN_VALUE: float = float(os.getenv("CART_MIN_VALUE", "199"))
CART_MAX_REMINDERS: int = int(os.getenv("CART_MAX_REMINDERS", "3"))
CART_REMINDER_DELAYS_MINUTES: List[int] = _env_int_list("CART_REMINDER_DELAYS_MINUTES", "60,1440,2880")
