"""Main entry point: wires the core services and runs the API server."""

from __future__ import annotations

import logging

from netguard.config import Settings, get_settings
from netguard.core.blocking import BlockingService
from netguard.core.classifier import HeuristicThreatClassifier, HttpThreatClassifier, ThreatClassifier
from netguard.core.db import AlertStore, Database, DeviceRegistry
from netguard.core.events import EventBus
from netguard.core.notify import LogNotificationSink, NotificationSink, WebhookNotificationSink
from netguard.core.probe import ProbeEngine
from netguard.core.risk import RiskEngine
from netguard.core.scanner import SubnetSweeper
from netguard.core.scheduler import ScannerConfig, ScanScheduler, SchedulerRegistry
from netguard.routers.manager import RouterManager

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def build_classifier(settings: Settings) -> ThreatClassifier:
    if settings.classifier_url:
        return HttpThreatClassifier(
            settings.classifier_url,
            api_key=settings.classifier_api_key,
            model=settings.classifier_model,
            timeout=settings.classifier_timeout,
        )
    return HeuristicThreatClassifier()


def build_sink(settings: Settings) -> NotificationSink:
    if settings.notification_webhook:
        return WebhookNotificationSink(settings.notification_webhook)
    return LogNotificationSink()


class NetGuard:
    """The process-wide service graph.

    Owns the database connection, HTTP-backed collaborators and the
    registry of per-account schedulers. Use as an async context manager.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.database = Database(settings.resolved_db_path)
        self.registry = DeviceRegistry(self.database)
        self.alerts = AlertStore(self.database)
        self.bus = EventBus()
        self.probe = ProbeEngine(settings)
        self.router_manager = RouterManager(timeout=settings.router_timeout)
        self.classifier = build_classifier(settings)
        self.risk_engine = RiskEngine(self.classifier, settings.classifier_timeout)
        self.sink = build_sink(settings)
        self.sweeper = SubnetSweeper(settings, self.probe)
        self.blocking = BlockingService(
            self.registry, self.alerts, self.router_manager, settings.routers,
            sink=self.sink, bus=self.bus,
        )
        self.schedulers = SchedulerRegistry(self.create_scheduler)

    def create_scheduler(self, config: ScannerConfig) -> ScanScheduler:
        return ScanScheduler(
            config,
            registry=self.registry,
            alerts=self.alerts,
            router_manager=self.router_manager,
            risk_engine=self.risk_engine,
            sweeper=self.sweeper,
            sink=self.sink if config.enable_notifications else None,
            bus=self.bus,
        )

    def scanner_config(self, account_id: int | None = None) -> ScannerConfig:
        config = ScannerConfig.from_settings(self.settings)
        if account_id is not None:
            config = config.model_copy(update={"account_id": account_id})
        return config

    async def start(self) -> None:
        await self.database.initialize()

    async def close(self) -> None:
        await self.schedulers.stop_all()
        for client in (self.classifier, self.sink):
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        await self.database.close()

    async def __aenter__(self) -> NetGuard:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


async def run_server(
    host: str = "127.0.0.1",
    port: int = 8565,
    with_scan: bool = False,
) -> None:
    """Start the API server, optionally with background scanning."""
    import uvicorn

    from netguard.api.server import create_app

    settings = get_settings(api_host=host, api_port=port)
    setup_logging(settings.log_level)

    async with NetGuard(settings) as services:
        if with_scan:
            await services.schedulers.start(services.scanner_config())

        app = create_app(services)
        config = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level=settings.log_level.lower(),
        )
        await uvicorn.Server(config).serve()
