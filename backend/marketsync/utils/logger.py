import hashlib
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("marketsync")


def token_hash(token: Optional[str]) -> Optional[str]:
    """Short, non-reversible fingerprint of a token for log lines."""
    if not token:
        return None
    return hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]


class MarketplaceConnectLogger:
    """Bounded in-memory record of OAuth exchanges with credentials masked."""

    SENSITIVE_KEYS = (
        "client_secret", "access_token", "refresh_token",
        "password", "authorization", "client_id", "code",
    )

    def __init__(self, max_logs: int = 500):
        self.logs = []
        self.max_logs = max_logs

    def log_event(
        self,
        event_type: str,
        description: str,
        request_data: Optional[Dict[str, Any]] = None,
        response_data: Optional[Dict[str, Any]] = None,
        status: str = "info",
        error: Optional[str] = None
    ):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "description": description,
            "request_data": self._mask(request_data) if request_data else None,
            "response_data": self._mask(response_data) if response_data else None,
            "status": status,
            "error": error
        }

        self.logs.append(entry)
        if len(self.logs) > self.max_logs:
            self.logs.pop(0)

        msg = f"[{event_type}] {description}"
        if error:
            logger.error(f"{msg} - Error: {error}")
        else:
            logger.info(msg)

        return entry

    def _mask(self, data: Dict[str, Any]) -> Dict[str, Any]:
        masked = dict(data)
        for key in self.SENSITIVE_KEYS:
            if key in masked and masked[key] is not None:
                value = str(masked[key])
                if len(value) > 8:
                    masked[key] = f"{value[:4]}...{value[-4:]}"
                else:
                    masked[key] = "***"
        return masked


connect_logger = MarketplaceConnectLogger()
