import logging
from uuid import uuid4

from shared.config import config
from shared.errors import InvalidInputError


def setup_logging(service_name: str, log_level: str | None = None) -> logging.Logger:
    """Setup logging configuration for a service"""
    logger = logging.getLogger(service_name)
    logger.setLevel(getattr(logging, (log_level or config.get("log_level", "INFO")).upper()))

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(f"%(asctime)s - {service_name} - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def generate_id(prefix: str | None = None) -> str:
    """Generate a short random document id, optionally prefixed"""
    token = uuid4().hex[:20]
    return f"{prefix}_{token}" if prefix else token


def validate_text(text: str | None, field: str = "text", max_length: int = 2000) -> str:
    """Strip text and reject empty or oversized values"""
    cleaned = (text or "").strip()
    if not cleaned:
        raise InvalidInputError(f"{field} must not be empty")
    if len(cleaned) > max_length:
        raise InvalidInputError(f"{field} must be at most {max_length} characters")
    return cleaned


def clamp(value: int, lower: int, upper: int) -> int:
    """Clamp an integer into [lower, upper]"""
    if upper < lower:
        return lower
    return max(lower, min(upper, value))
