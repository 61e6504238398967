import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    API_KEY: str = os.getenv("API_KEY", "")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "http://localhost:3000")

    # Remote payment service (initiate / status / verify / generate-cv)
    API_BASE_URL: str = os.getenv("API_BASE_URL", "http://localhost:5000").rstrip("/")
    HTTP_TIMEOUT_SEC: float = float(os.getenv("HTTP_TIMEOUT_SEC", "10.0"))

    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    # Single-slot durable register: one pending record per browser context
    PENDING_KEY_PREFIX: str = os.getenv("PENDING_KEY_PREFIX", "payment:pending:")

    # Gateway integration style: "redirect" (server-initiated, authoritative) or "embedded" (widget)
    GATEWAY_MODE: str = os.getenv("GATEWAY_MODE", "redirect").lower()
    GATEWAY_PUBLIC_KEY: str = os.getenv("GATEWAY_PUBLIC_KEY", "")

    # Fixed price of one CV download
    PAYMENT_AMOUNT: int = int(os.getenv("PAYMENT_AMOUNT", "50"))
    PAYMENT_CURRENCY: str = os.getenv("PAYMENT_CURRENCY", "ZMW")
    PAYMENT_METHOD: str = os.getenv("PAYMENT_METHOD", "mobile_money")
    PAYMENT_CHANNELS: str = os.getenv("PAYMENT_CHANNELS", "mobile-money")
    REFERENCE_PREFIX: str = os.getenv("REFERENCE_PREFIX", "CV")

    # Confirmation polling
    POLL_INTERVAL_SEC: float = float(os.getenv("POLL_INTERVAL_SEC", "5"))
    REDIRECT_POLL_TIMEOUT_SEC: float = float(os.getenv("REDIRECT_POLL_TIMEOUT_SEC", "300"))
    EMBEDDED_CONFIRM_TIMEOUT_SEC: float = float(os.getenv("EMBEDDED_CONFIRM_TIMEOUT_SEC", "180"))
    # Upper bound for an open widget that never reports back
    EMBEDDED_WIDGET_TIMEOUT_SEC: float = float(os.getenv("EMBEDDED_WIDGET_TIMEOUT_SEC", "600"))

    DOWNLOAD_DIR: str = os.getenv("DOWNLOAD_DIR", "downloads")

    METRICS_ENABLED: bool = os.getenv("METRICS_ENABLED", "true").lower() == "true"

    # Security & Privacy
    ENABLE_PII_REDACTION: bool = os.getenv("ENABLE_PII_REDACTION", "true").lower() == "true"
    ADMIN_RBAC_ENABLED: bool = os.getenv("ADMIN_RBAC_ENABLED", "true").lower() == "true"
    ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")

settings = Settings()
