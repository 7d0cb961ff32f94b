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

logger = logging.getLogger("dropship_pipeline")


SENSITIVE_KEYS = (
    "authorization",
    "access_token",
    "accesstoken",
    "refresh_token",
    "api_key",
    "apikey",
    "secret",
    "token",
    "signature",
)


def redact(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a shallow copy of ``data`` with credential-looking values masked.

    Used before headers or request payloads are logged or persisted (webhook
    ledger rows keep the raw body, never the auth headers).
    """

    if not data:
        return {}

    sanitized: Dict[str, Any] = {}
    for key, value in data.items():
        lk = str(key).lower()
        if any(marker in lk for marker in SENSITIVE_KEYS):
            text = str(value)
            sanitized[key] = f"{text[:4]}...{text[-4:]}" if len(text) > 8 else "***"
        else:
            sanitized[key] = value
    return sanitized
