from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    DEBUG: bool = False

    # DATABASE_URL should point at Postgres in production. The SQLite default
    # keeps local runs and tests self-contained.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./dropship.db")

    # Shared secret for the scheduled entry point (sent as "Authorization:
    # Bearer <CRON_SECRET>"). When unset every cron call is rejected.
    CRON_SECRET: Optional[str] = None

    # Auction platform (Basta) management API.
    BASTA_API_KEY: Optional[str] = None
    BASTA_ACCOUNT_ID: Optional[str] = None
    BASTA_MANAGEMENT_API_URL: str = "https://management.api.basta.app/graphql"
    # Used both as the plain shared token (x-fastbid-webhook-token) and as
    # the HMAC key for x-basta-signature. A leading "whsec_" is ignored.
    BASTA_WEBHOOK_SECRET: Optional[str] = None
    BASTA_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Payment processor (Stripe).
    STRIPE_SECRET_KEY: Optional[str] = None
    STRIPE_WEBHOOK_SECRET: Optional[str] = None
    INVOICE_CURRENCY: str = "usd"

    # Supplier (CJ Dropshipping).
    CJ_API_KEY: Optional[str] = None
    CJ_API_BASE_URL: str = "https://developers.cjdropshipping.com/api2.0/v1"
    CJ_DEFAULT_LOGISTIC_NAME: str = "CJPacket"
    CJ_DEFAULT_FROM_COUNTRY: str = "CN"

    # Alerting. The webhook format is picked from the URL (Discord, Slack or a
    # generic JSON receiver); e-mail goes through Resend when configured.
    ALERT_WEBHOOK_URL: Optional[str] = None
    RESEND_API_KEY: Optional[str] = None
    RESEND_API_URL: str = "https://api.resend.com/emails"
    RESEND_FROM: str = "alerts@fastbid.app"
    ALERT_EMAIL: Optional[str] = None

    # Applied to every outbound HTTP call (platform, supplier, alerts).
    HTTP_TIMEOUT_SECONDS: float = 20.0

    # Financial circuit breakers. Amounts are integer cents; the margin floor
    # is expressed in basis points (-500 == -5.00%).
    DAILY_SPENDING_CAP_CENTS: int = 50000
    MARGIN_FLOOR_BPS: int = -500
    MARGIN_WINDOW_DAYS: int = 7
    PRICE_DRIFT_TOLERANCE_PCT: int = 20
    CJ_QUOTA_LOW_WATER: int = 100

    # Stuck-lot thresholds (minutes).
    STUCK_AUCTION_CLOSED_MINUTES: int = 30
    STUCK_PAID_MINUTES: int = 30
    STUCK_CJ_ORDERED_MINUTES: int = 120
    STUCK_ALERT_MINUTES: int = 240

    # A fulfillment claim older than this is treated as abandoned by a
    # crashed worker and may be taken over.
    FULFILLMENT_CLAIM_TTL_MINUTES: int = 15
    # A recovery run still marked running after this long no longer blocks
    # a new one.
    RECOVERY_RUN_STALE_MINUTES: int = 30

    # Optional in-process recovery loop (the cron endpoint is the primary
    # trigger in production).
    RECOVERY_LOOP_ENABLED: bool = False
    RECOVERY_INTERVAL_SECONDS: int = 600

    class Config:
        # load_dotenv() above already covers local .env files
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"

    @property
    def basta_webhook_key(self) -> Optional[str]:
        secret = self.BASTA_WEBHOOK_SECRET
        if secret and secret.startswith("whsec_"):
            return secret[len("whsec_"):]
        return secret


settings = Settings()
