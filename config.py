import os

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./storefront.db")
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("1", "true", "yes")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Store
STORE_NAME = os.getenv("STORE_NAME", "Storefront")
PRIMARY_CURRENCY = os.getenv("PRIMARY_CURRENCY", "USD")
DEFAULT_TAX_RATE = float(os.getenv("DEFAULT_TAX_RATE", "0.07"))  # 7%

# Shipping costs in minor currency units
SHIPPING_STANDARD = int(os.getenv("SHIPPING_STANDARD", "500"))
SHIPPING_EXPRESS = int(os.getenv("SHIPPING_EXPRESS", "1500"))
SHIPPING_NEXT_DAY = int(os.getenv("SHIPPING_NEXT_DAY", "2500"))

SHIPPING_STANDARD_DAYS = int(os.getenv("SHIPPING_STANDARD_DAYS", "5"))
SHIPPING_EXPRESS_DAYS = int(os.getenv("SHIPPING_EXPRESS_DAYS", "2"))
SHIPPING_NEXT_DAY_DAYS = int(os.getenv("SHIPPING_NEXT_DAY_DAYS", "1"))

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")
PORT = int(os.getenv("PORT", "8000"))
