# Runtime configuration for local development and deployment.
# IMPORTANT: Do not commit real credentials. Prefer environment variables in production.

import os


def env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


APP_NAME = os.getenv("APP_NAME", "Talim Academy")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# -------------------- DATABASE --------------------

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./talim.db")
SQL_ECHO = env_flag("SQL_ECHO")
MIGRATE_DB = env_flag("MIGRATE_DB")

# -------------------- SECURITY --------------------

SECRET_KEY = os.getenv("SECRET_KEY", "CHANGE_THIS_SECRET_LATER")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))  # 24 hours

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@talim.academy")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")
ADMIN_NAME = os.getenv("ADMIN_NAME", "Talim Admin")

cors_origins_raw = os.getenv("CORS_ORIGINS", "*")
CORS_ORIGINS = ["*"] if cors_origins_raw.strip() == "*" else [
    origin.strip() for origin in cors_origins_raw.split(",") if origin.strip()
]

# -------------------- MAIL --------------------

MAIL_USERNAME = os.getenv("MAIL_USERNAME", "")
MAIL_PASSWORD = os.getenv("MAIL_PASSWORD", "")
MAIL_FROM = os.getenv("MAIL_FROM", MAIL_USERNAME)
MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
MAIL_SERVER = os.getenv("MAIL_SERVER", "smtp.gmail.com")
MAIL_STARTTLS = env_flag("MAIL_STARTTLS", "true")
MAIL_SSL_TLS = env_flag("MAIL_SSL_TLS")

# -------------------- OTP --------------------

OTP_TTL_MINUTES = int(os.getenv("OTP_TTL_MINUTES", "5"))
OTP_MAX_ENTRIES = int(os.getenv("OTP_MAX_ENTRIES", "10000"))
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
REQUIRE_EMAIL_VERIFICATION = env_flag("REQUIRE_EMAIL_VERIFICATION", "true")

# -------------------- PAYMENTS / ENROLLMENT --------------------

# When true, approving a payment for an unknown email creates a bare user
# (no password) instead of failing with UserNotFoundError.
ALLOW_ENROLLMENT_UPSERT = env_flag("ALLOW_ENROLLMENT_UPSERT")
PROGRESS_INIT_ATTEMPTS = int(os.getenv("PROGRESS_INIT_ATTEMPTS", "3"))

# -------------------- NOTIFICATIONS --------------------

NOTIFICATION_TTL_DAYS = int(os.getenv("NOTIFICATION_TTL_DAYS", "30"))
REALTIME_REQUIRE_AUTH = env_flag("REALTIME_REQUIRE_AUTH", "true")
