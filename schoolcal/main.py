from __future__ import annotations

import json
import logging
import os

import uvicorn

from schoolcal.config_manager import ConfigManager
from schoolcal.state_store import StateStore
from schoolcal.sync_engine import SyncEngine


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def configure_logging(log_level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def sync_once() -> int:
    """Run one harvest-and-push cycle; non-zero exit when anything failed."""
    configure_logging(os.getenv("SCHOOLCAL_LOG_LEVEL", "INFO"))
    config_manager = ConfigManager(os.getenv("SCHOOLCAL_CONFIG_PATH", "config.yaml"))
    state_store = StateStore(os.getenv("SCHOOLCAL_STATE_PATH", "data/state.db"))
    result = SyncEngine(config_manager, state_store).run_once(trigger="cli")
    print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
    if result.status == "error":
        return 2
    return 0 if result.counts.failed == 0 else 1


def main() -> None:
    configure_logging(os.getenv("SCHOOLCAL_LOG_LEVEL", "INFO"))
    host = os.getenv("SCHOOLCAL_HOST", "0.0.0.0")
    port = int(os.getenv("SCHOOLCAL_PORT", "8080"))
    uvicorn.run("schoolcal.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
