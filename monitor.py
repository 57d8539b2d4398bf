# monitor.py
from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from alerts import AlertEngine
from broadcast import Broadcaster, LogBroadcaster
from config_utils import Settings, load_config
from ingest import IngestionService
from liveness import DeviceLivenessMonitor
from notify import NotificationDispatcher, OperatorChannels
from push_client import make_provider
from store import Store

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@dataclass
class Services:
    settings: Settings
    store: Store
    broadcaster: Broadcaster
    dispatcher: NotificationDispatcher
    engine: AlertEngine
    liveness: DeviceLivenessMonitor
    ingestion: IngestionService

    def close(self) -> None:
        self.liveness.stop()
        self.dispatcher.shutdown(wait=True)


def build_services(
    cfg: Optional[Dict[str, Any]] = None,
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    broadcaster: Optional[Broadcaster] = None,
    provider=None,
) -> Services:
    settings = settings or Settings.from_config(cfg)
    store = store or Store(db_url=settings.db_url)
    if settings.devices:
        n = store.sync_devices(settings.devices)
        logger.info("Synced %d device(s) from config", n)

    broadcaster = broadcaster or LogBroadcaster()
    provider = provider or make_provider(settings.push, settings.notify_max_workers)
    dispatcher = NotificationDispatcher(
        store, provider, max_workers=settings.notify_max_workers
    )
    operators = OperatorChannels(settings.channels, store=store)

    engine = AlertEngine(
        store,
        broadcaster,
        dispatcher,
        settings.thresholds,
        dashboard_url=settings.dashboard_url,
        renotify_cooldown_seconds=settings.renotify_cooldown_seconds,
        operators=operators,
    )
    liveness = DeviceLivenessMonitor(
        store,
        broadcaster,
        dispatcher,
        offline_threshold_seconds=settings.offline_threshold_seconds,
        check_interval_seconds=settings.check_interval_seconds,
        dashboard_url=settings.dashboard_url,
    )
    ingestion = IngestionService(
        store,
        engine,
        liveness,
        broadcaster,
        settings.thresholds,
        require_timestamp=settings.require_timestamp,
        auto_register_devices=settings.auto_register_devices,
    )
    return Services(
        settings=settings,
        store=store,
        broadcaster=broadcaster,
        dispatcher=dispatcher,
        engine=engine,
        liveness=liveness,
        ingestion=ingestion,
    )


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Device liveness sweep")
    parser.add_argument("--config", default="config.yml")
    parser.add_argument(
        "--loop", action="store_true", help="keep sweeping every check interval"
    )
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    settings = Settings.from_config(cfg)
    configure_logging(settings.log_level)

    services = build_services(settings=settings)
    try:
        if args.loop:
            services.liveness.run_forever()
        else:
            changes = services.liveness.sweep()
            for change in changes:
                state = "OFFLINE" if change.is_offline else "online"
                logger.info("%s -> %s", change.device_id, state)
    except KeyboardInterrupt:
        logger.info("Stopping liveness monitor")
    finally:
        services.close()


if __name__ == "__main__":
    main()
