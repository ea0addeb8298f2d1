import json
import logging
from datetime import datetime, timezone
from typing import Any


def log_event(logger: logging.Logger, level: int, component: str, fn: str, **fields: Any) -> None:
    """Emit one JSON line describing a pipeline event."""
    log_data: dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "component": component,
        "fn": fn,
    }
    for key, value in fields.items():
        if isinstance(value, float):
            log_data[key] = f"{value:.2f}"
        else:
            log_data[key] = value
    logger.log(level, json.dumps(log_data, default=str))
