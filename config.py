import os
import logging.config

from dotenv import load_dotenv

load_dotenv()


def _flag(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    DATABASE_URL = os.getenv("DATABASE_URL")
    DATABASE_NAME = os.getenv("DATABASE_NAME")
    PORT = int(os.getenv("PORT", 8000))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Version-checked writes for verify/grant and conditional start/end
    ATOMIC_WRITES = _flag("ATOMIC_WRITES", True)
    CAS_MAX_RETRIES = int(os.getenv("CAS_MAX_RETRIES", 5))

    # Latitude-band prefetch is max_results * factor; 0 means unlimited
    NEARBY_PREFETCH_FACTOR = int(os.getenv("NEARBY_PREFETCH_FACTOR", 2))

    VERIFICATION_THRESHOLD = int(os.getenv("VERIFICATION_THRESHOLD", 3))
    POINTS_FOR_REPORTING = int(os.getenv("POINTS_FOR_REPORTING", 50))
    POINTS_FOR_VERIFYING = int(os.getenv("POINTS_FOR_VERIFYING", 10))
    STARTING_POINTS = int(os.getenv("STARTING_POINTS", 100))

    SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", 0))

    CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME", "")
    CLOUDINARY_UPLOAD_PRESET = os.getenv("CLOUDINARY_UPLOAD_PRESET", "parking-app")
    UPLOAD_TIMEOUT_SECONDS = float(os.getenv("UPLOAD_TIMEOUT_SECONDS", 15))


def setup_logging(level=None):
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "verbose": {
                "format": "{levelname} {asctime} {module} {process:d} {thread:d} {message}",
                "style": "{",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "verbose",
            },
        },
        "root": {
            "handlers": ["console"],
            "level": level or Config.LOG_LEVEL,
        },
    })
