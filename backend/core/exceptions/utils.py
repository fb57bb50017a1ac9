from core.utils.uuid_utils import uuid7
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def get_correlation_id() -> str:
    return str(uuid7())


def format_error_response(
    message: str,
    status_code: int = 500,
    error_code: Optional[str] = None,
    correlation_id: Optional[str] = None,
    **extra
) -> Dict[str, Any]:
    """Error body returned by every exception handler."""
    body = {
        "success": False,
        "message": message,
        "error_code": error_code or f"ERR_{status_code}",
        "correlation_id": correlation_id or get_correlation_id(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    body.update(extra)
    return body
