import json
import logging
from typing import Any


logger = logging.getLogger("uvicorn.error")


def log_ai_operation(operation: str, **fields: Any) -> None:
    """One structured line per AI operation (turn start/finish, image generation)."""
    logger.info("AI_OPERATION %s %s", operation, json.dumps(fields, default=str, sort_keys=True))
