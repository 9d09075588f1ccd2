import json
from datetime import datetime, timezone
from typing import Any, Optional

from storyflow.core.logger import logger


def log_event(
    event: str,
    item_id: Optional[str] = None,
    status: Optional[str] = None,
    error: Optional[str] = None,
    **fields: Any
) -> None:
    """
    One JSON line per pipeline outcome, easy to grep and to ship.
    Events carrying an error are logged at WARNING.
    """
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "item_id": item_id,
        "status": status,
    }
    if error:
        log_data["error"] = error[:500]
    log_data.update(fields)

    if error:
        logger.warning(json.dumps(log_data, default=str))
    else:
        logger.info(json.dumps(log_data, default=str))
