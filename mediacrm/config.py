import os
from dotenv import load_dotenv

load_dotenv()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
# CRM records (contacts, companies, clinics, outreach contacts). Campaign
# tables live in their own file, see mediacrm/campaigns/config.py.
DATA_DIR = os.getenv(
    "MEDIACRM_DATA_DIR",
    os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data"),
)
DB_PATH = os.getenv("MEDIACRM_DB_PATH", os.path.join(DATA_DIR, "crm.db"))

# ---------------------------------------------------------------------------
# Anthropic (email copy generation)
# ---------------------------------------------------------------------------
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-5-20250929")
ANTHROPIC_BASE_URL = os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com")
ANTHROPIC_VERSION = "2023-06-01"

# ---------------------------------------------------------------------------
# Resend (campaign delivery)
# ---------------------------------------------------------------------------
RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
RESEND_BASE_URL = os.getenv("RESEND_BASE_URL", "https://api.resend.com")

# ---------------------------------------------------------------------------
# Email / SMTP
# ---------------------------------------------------------------------------
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")

# ---------------------------------------------------------------------------
# Request settings
# ---------------------------------------------------------------------------
REQUEST_TIMEOUT = 30  # seconds
GENERATION_TIMEOUT = 90  # model calls can be slow
REQUEST_HEADERS = {
    "User-Agent": "MediaCRM/1.0",
}
