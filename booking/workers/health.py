"""Health check files read by the container healthcheck."""

import json
import logging
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

HEALTH_DIR = Path("/tmp/health")


def update_health_check(worker_name: str, status: str, stats: dict[str, Any]) -> None:
    """
    Write /tmp/health/<worker>_health.json atomically (temp file + rename).
    """
    HEALTH_DIR.mkdir(parents=True, exist_ok=True)
    health_file = HEALTH_DIR / f"{worker_name}_health.json"
    temp_file = HEALTH_DIR / f"{worker_name}_health.{int(time.time())}.tmp"

    health_data = {
        "status": status,
        **stats,
        "last_updated": datetime.now(UTC).isoformat(),
    }

    try:
        temp_file.write_text(json.dumps(health_data, indent=2))
        temp_file.rename(health_file)
        logger.debug(f"Health check file updated: {health_file}")
    except OSError as e:
        logger.error(f"Failed to write health check file: {e}", exc_info=True)
