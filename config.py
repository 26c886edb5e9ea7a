"""Configuration management."""
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Application configuration."""

    # Database
    DB_URL = os.getenv("LIBRARY_DB_URL", "sqlite:///library_operations.db")
    LOG_PATH = os.getenv("LIBRARY_LOG_PATH", "library_operations.log")

    # Lending rules
    FINE_PER_DAY = int(os.getenv("FINE_PER_DAY", "100"))
    FINE_CURRENCY = os.getenv("FINE_CURRENCY", "Rs.")
    DEFAULT_DUE_DAYS = int(os.getenv("DEFAULT_DUE_DAYS", "14"))

    # Mail
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER = os.getenv("SMTP_USER")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", True)
    MAIL_FROM = os.getenv("MAIL_FROM")

    # Limits
    TRANSACTION_LIST_LIMIT = 100
    FINED_MEMBERS_LIMIT = 50
    HISTORY_LIMIT = 30
    AVAILABLE_BOOKS_LIMIT = 20
    BORROWED_BOOKS_LIMIT = 50
    ISBN_ATTEMPTS = 5

    # Library information for the chatbot
    LIBRARY_NAME = os.getenv("LIBRARY_NAME", "City Library - Diyathalawa")
    LIBRARY_ADDRESS = os.getenv("LIBRARY_ADDRESS", "No.123, Haputhale road, Diyathalawa")
    LIBRARY_PHONE = os.getenv("LIBRARY_PHONE", "+94 57 234 5678")
    LIBRARY_EMAIL = os.getenv("LIBRARY_EMAIL", "citylibrary@gmail.com")
    LIBRARY_HOURS = (
        "Mon - Fri: 9:00 AM - 7:00 PM",
        "Saturday: 10:00 AM - 5:00 PM",
        "Sunday & Public Holidays: Closed",
    )

    @property
    def mail_configured(self):
        """True when an SMTP host and a sender address are both set."""
        return bool(self.SMTP_HOST and self.MAIL_FROM)

    def format_money(self, amount):
        return f"{self.FINE_CURRENCY} {amount}"
