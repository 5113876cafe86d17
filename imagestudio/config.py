import os

from dotenv import load_dotenv

load_dotenv()

# Price ids of the live deployment; override per environment.
DEFAULT_PRICE_ID_PRO = "price_1RtOe1R5hjXkJqtZ6BM47HkI"
DEFAULT_PRICE_ID_PRO_PLUS = "price_1RtOedR5hjXkJqtZNiUKd7bk"


def _env_list(name, default):
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-change-this")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL", "sqlite:///imagestudio.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")
    OUTPUT_FOLDER = os.getenv("OUTPUT_FOLDER", "static/outputs")
    MAX_CONTENT_LENGTH = 20 * 1024 * 1024  # 20MB max

    # --- Stripe ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_API_TIMEOUT = float(os.getenv("STRIPE_API_TIMEOUT", "10"))
    STRIPE_PRICE_ID_PRO = os.getenv("STRIPE_PRICE_ID_PRO", DEFAULT_PRICE_ID_PRO)
    STRIPE_PRICE_ID_PRO_PLUS = os.getenv("STRIPE_PRICE_ID_PRO_PLUS", DEFAULT_PRICE_ID_PRO_PLUS)

    # --- Identity provider tokens ---
    IDENTITY_JWT_SECRET = os.getenv("IDENTITY_JWT_SECRET")
    IDENTITY_JWT_ALGORITHMS = _env_list("IDENTITY_JWT_ALGORITHMS", "HS256")
    IDENTITY_JWKS_URL = os.getenv("IDENTITY_JWKS_URL")
    IDENTITY_AUDIENCE = os.getenv("IDENTITY_AUDIENCE")
    IDENTITY_ISSUER = os.getenv("IDENTITY_ISSUER")

    # --- Google GenAI ---
    GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
    IMAGE_MODEL = os.getenv("IMAGE_MODEL", "gemini-2.5-flash-image-preview")
    IMAGE_API_TIMEOUT = float(os.getenv("IMAGE_API_TIMEOUT", "60"))
