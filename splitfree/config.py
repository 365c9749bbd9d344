import os
from dotenv import load_dotenv

load_dotenv()


def _origins(value: str):
    # "*" stays a plain string so flask-cors treats it as a wildcard
    if value.strip() == "*":
        return "*"
    return [origin.strip() for origin in value.split(",") if origin.strip()]


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")

    # Comma separated list of allowed origins
    CORS_ORIGINS = _origins(os.environ.get("CORS_ORIGINS", "*"))

    # Database config (defaults allow local run without crashing)
    DB_HOST = os.environ.get("DB_HOST", "localhost")
    DB_PORT = int(os.environ.get("DB_PORT", 3306))
    DB_USER = os.environ.get("DB_USER", "root")
    DB_PASSWORD = os.environ.get("DB_PASSWORD", "")
    DB_NAME = os.environ.get("DB_NAME", "splitfree")
    DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", 10))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


config = Config()
