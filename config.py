"""
Runtime settings, read from the environment.
"""
import os

# --------- Database ---------
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "lunch_orders")

# --------- PayOS ---------
PAYOS_CLIENT_ID = os.getenv("PAYOS_CLIENT_ID", "")
PAYOS_API_KEY = os.getenv("PAYOS_API_KEY", "")
PAYOS_CHECKSUM_KEY = os.getenv("PAYOS_CHECKSUM_KEY", "")
PAYOS_API_URL = os.getenv("PAYOS_API_URL", "https://api-merchant.payos.vn")
PAYOS_TIMEOUT = float(os.getenv("PAYOS_TIMEOUT", "10"))
APP_URL = os.getenv("APP_URL", "http://localhost:3000")

# --------- Restaurant ---------
# order days are calendar days in this zone
RESTAURANT_TZ = os.getenv("RESTAURANT_TZ", "Asia/Ho_Chi_Minh")

# --------- Payment sessions ---------
PAYMENT_TTL_MINUTES = 15
POLL_INTERVAL_SECONDS = float(os.getenv("POLL_INTERVAL_SECONDS", "5"))
SETTLE_WORKER_INTERVAL_SECONDS = float(os.getenv("SETTLE_WORKER_INTERVAL_SECONDS", "15"))
# seconds to wait before each settlement retry; the last value repeats
SETTLE_RETRY_DELAYS = (30, 60, 120, 300, 600)
MIN_CHECKOUT_AMOUNT = int(os.getenv("MIN_CHECKOUT_AMOUNT", "2000"))

# --------- Server ---------
PORT = int(os.getenv("PORT", 8000))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
