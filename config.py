import os

from dotenv import load_dotenv

load_dotenv()


def _split(value: str):
    return [v.strip() for v in value.split(",") if v.strip()]


class Config:
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_NAME = os.getenv("DATABASE_NAME", "rentaride")

    JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
    JWT_ALGORITHM = "HS256"
    JWT_EXPIRES_SECONDS = int(os.getenv("JWT_EXPIRES_SECONDS", "3600"))

    BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

    ALLOWED_ORIGINS = _split(os.getenv("ALLOWED_ORIGINS", "http://localhost:3000"))

    # Seconds before a "typing" indicator clears itself
    TYPING_TIMEOUT_SECONDS = float(os.getenv("TYPING_TIMEOUT_SECONDS", "3"))

    DEFAULT_RESET_PASSWORD = os.getenv("DEFAULT_RESET_PASSWORD", "password")

    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
    ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")

    BOOKING_LOCK_SECONDS = int(os.getenv("BOOKING_LOCK_SECONDS", "10"))

    # Object storage for car and profile images
    S3_BUCKET_NAME = os.getenv("S3_BUCKET_NAME")
    AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
    AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID")
    AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY")
    MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(5 * 1024 * 1024)))

    # Third-party vehicle data (makes / models / years)
    CAR_API_BASE_URL = os.getenv("CAR_API_BASE_URL", "https://carapi.app/api")
    CAR_API_TOKEN = os.getenv("CAR_API_TOKEN") or os.getenv("CAR_API_KEY")
    CAR_API_SECRET = os.getenv("CAR_API_SECRET")
    CAR_API_TIMEOUT = float(os.getenv("CAR_API_TIMEOUT", "10"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    PORT = int(os.getenv("PORT", "8000"))
