import os


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ----- Storage -----
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./orders.db")

# ----- Collaborators (default to docker-compose service names) -----
AUTH_SERVICE_URL = os.getenv("AUTH_SERVICE_URL", "http://auth-service:3001")
RESTAURANT_SERVICE_URL = os.getenv("RESTAURANT_SERVICE_URL", "http://restaurant-service:3002")
PAYMENT_SERVICE_URL = os.getenv("PAYMENT_SERVICE_URL", "http://payment-service:8002")
NOTIFICATION_SERVICE_URL = os.getenv("NOTIFICATION_SERVICE_URL", "http://notification-service:8004")
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "5.0"))

# ----- Coordination -----
NOTIFICATION_WORKERS = int(os.getenv("NOTIFICATION_WORKERS", "4"))
ORDER_ADMIN_OVERRIDE = _flag("ORDER_ADMIN_OVERRIDE", "true")
DEFAULT_ZIP_CODE = "00000"

# ----- Payments -----
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "")
DELIVERY_FEE = float(os.getenv("DELIVERY_FEE", "3.99"))
TAX_RATE = float(os.getenv("TAX_RATE", "0.07"))
CURRENCY = os.getenv("CURRENCY", "usd")

# ----- Logging -----
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
