import logging
import sys
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("pricedrop")


SENSITIVE_KEYS = [
    "access_token", "x-shopify-access-token", "authorization", "password",
]


def mask_secret(value: Optional[str]) -> str:
    if not value:
        return "***"
    value = str(value)
    if len(value) > 8:
        return f"{value[:4]}...{value[-4:]}"
    return "***"


def sanitize_headers(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Copy of ``data`` with credential-looking keys masked for logging."""
    if not data:
        return {}

    sanitized = dict(data)
    for key in list(sanitized.keys()):
        if key.lower() in SENSITIVE_KEYS:
            sanitized[key] = mask_secret(sanitized[key])
    return sanitized
