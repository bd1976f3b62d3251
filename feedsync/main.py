from __future__ import annotations

import logging
import os

from feedsync.config_manager import ConfigManager
from feedsync.state_store import StateStore
from feedsync.sync_engine import SyncEngine


def configure_logging(level: str = "INFO", *, force: bool = False) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        force=force,
    )


def main() -> int:
    config_path = os.getenv("FEEDSYNC_CONFIG", "config/feedsync.yaml")
    config_manager = ConfigManager(config_path)
    config = config_manager.load()
    configure_logging(config.logging.level)

    db_path = os.getenv("FEEDSYNC_DB", "") or config.storage.db_path
    engine = SyncEngine(config_manager, StateStore(db_path))
    results = engine.run_once(trigger=os.getenv("FEEDSYNC_TRIGGER", "manual"))
    failed = [result for result in results if result.status != "success"]
    for result in failed:
        logging.getLogger(__name__).error("%s: %s", result.calendar_id, result.message)
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
