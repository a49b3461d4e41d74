"""Process entry points: the long-running agent and the one-shot ``sync`` command."""

import argparse
import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import Optional, Set

from aiohttp import web, web_runner

from .config.manager import ConfigManager
from .config.settings import AppSettings, get_settings
from .core.sync_engine import SyncEngine, SyncResult
from .database import init_database, close_database
from .database.service import DatabaseService
from .scheduler.sync_scheduler import SyncScheduler
from .utils.logging import setup_logging, get_logger


class DocSyncApp:
    """Long-running sync agent: scheduler plus a local status server."""

    def __init__(self, settings: Optional[AppSettings] = None, config_file: Optional[str] = None):
        self.settings = settings or get_settings()
        self.config_file = config_file or self.settings.config_file
        self.logger = get_logger("DocSync")
        self.running = False
        self.started_at: Optional[datetime] = None
        self.web_app: Optional[web.Application] = None
        self.web_runner: Optional[web_runner.AppRunner] = None
        self.db_service: Optional[DatabaseService] = None
        self.config_manager: Optional[ConfigManager] = None
        self.engine: Optional[SyncEngine] = None
        self.scheduler: Optional[SyncScheduler] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._stop_requested: Optional[asyncio.Event] = None

    def setup_components(self):
        """Open the tracking store, mirror the config file into it and build the engine."""
        init_database(self.settings.database.url, create_tables=True)
        self.db_service = DatabaseService()

        self.config_manager = ConfigManager(
            database_service=self.db_service,
            config_file=self.config_file
        )
        self.config_manager.load_config()
        # Without a config file the folders already in the store stay authoritative
        if self.config_manager.config_source:
            try:
                self.config_manager.sync_to_database()
            except Exception as e:
                self.logger.warning("Could not mirror agent config into the store", error=str(e))

        self.engine = SyncEngine(database_service=self.db_service, settings=self.settings)

    async def startup(self):
        self.logger.info(
            "Starting DocSync",
            version=self.settings.version,
            environment=self.settings.environment
        )

        self.setup_components()

        if self.settings.scheduling.enabled:
            self.scheduler = SyncScheduler(
                engine=self.engine,
                config_manager=self.config_manager,
                misfire_grace_seconds=self.settings.scheduling.misfire_grace_seconds
            )
            await self.scheduler.start()

        await self._setup_web_server()

        self.running = True
        self.started_at = datetime.now(timezone.utc)
        self.logger.info("DocSync started")

    async def shutdown(self):
        self.logger.info("Shutting down DocSync")
        self.running = False

        if self.scheduler:
            try:
                await self.scheduler.stop(wait=False)
            except Exception as e:
                self.logger.warning("Failed to stop scheduler", error=str(e))

        await self._stop_web_server()

        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

        try:
            close_database()
        except Exception as e:
            self.logger.warning("Failed to close tracking store", error=str(e))

        self.logger.info("DocSync stopped")

    def request_stop(self):
        """Ask ``run`` to shut down; safe to call from a signal handler."""
        self.running = False
        if self._stop_requested is not None:
            self._stop_requested.set()

    async def run(self):
        """Start up, then block until ``request_stop`` is called or the task is cancelled."""
        self._stop_requested = asyncio.Event()
        await self.startup()

        try:
            await self._stop_requested.wait()
        except asyncio.CancelledError:
            self.logger.info("Run loop cancelled")
        finally:
            await self.shutdown()

    def create_web_app(self) -> web.Application:
        """Build the status server routes."""
        app = web.Application()
        app.router.add_get('/health', self._health_handler)
        app.router.add_get('/status', self._status_handler)
        app.router.add_get('/history', self._history_handler)
        app.router.add_post('/sync', self._sync_handler)
        return app

    async def _setup_web_server(self):
        """Set up web server for health checks, status and manual triggers."""
        self.web_app = self.create_web_app()

        self.web_runner = web_runner.AppRunner(self.web_app)
        await self.web_runner.setup()

        host = self.settings.server.host
        port = self.settings.server.port
        site = web_runner.TCPSite(self.web_runner, host, port)
        await site.start()

        self.logger.info("Web server started", url=f"http://{host}:{port}")

    async def _stop_web_server(self):
        """Stop web server."""
        if self.web_runner:
            await self.web_runner.cleanup()
            self.web_runner = None
            self.logger.info("Web server stopped")

    async def _health_handler(self, request):
        """Health check endpoint."""
        uptime = 0.0
        if self.started_at:
            uptime = (datetime.now(timezone.utc) - self.started_at).total_seconds()

        health_data = {
            "status": "healthy" if self.running else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": self.settings.version,
            "environment": self.settings.environment,
            "uptime_seconds": round(uptime, 1)
        }

        status_code = 200 if self.running else 503
        return web.json_response(health_data, status=status_code)

    async def _status_handler(self, request):
        """Current sync status snapshot."""
        status_data = {
            "application": {
                "name": self.settings.name,
                "version": self.settings.version,
                "environment": self.settings.environment,
                "running": self.running,
                "timestamp": datetime.now(timezone.utc).isoformat()
            },
            "sync": self.engine.get_status().to_dict() if self.engine else None,
            "scheduler": self.scheduler.get_status() if self.scheduler else None,
            "files": self.db_service.get_file_stats() if self.db_service else {}
        }

        return web.json_response(status_data)

    async def _history_handler(self, request):
        """Recent local run history."""
        try:
            limit = int(request.query.get("limit", "20"))
        except ValueError:
            return web.json_response({"error": "limit must be an integer"}, status=400)

        runs = self.db_service.get_sync_history(limit) if self.db_service else []
        return web.json_response({"runs": [run.model_dump(mode="json") for run in runs]})

    async def _sync_handler(self, request):
        """Start a sync in the background."""
        if self.engine is None:
            return web.json_response({"error": "Sync engine not initialized"}, status=503)

        if self.engine.is_running():
            return web.json_response(
                {"error": "Sync already running", "status": self.engine.get_status().to_dict()},
                status=409
            )

        task = asyncio.create_task(self._run_triggered_sync("api"))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

        # lets the task take the run guard before the next request is served
        await asyncio.sleep(0)

        return web.json_response({"accepted": True, "triggered_by": "api"}, status=202)

    async def _run_triggered_sync(self, triggered_by: str) -> SyncResult:
        result = await self.engine.start_sync(triggered_by)
        if result.success:
            self.logger.info("Triggered sync completed", sync_run_id=result.sync_run_id, stats=result.stats)
        else:
            self.logger.error("Triggered sync failed", error=result.error)
        return result


def setup_signal_handlers(app: DocSyncApp):
    """Route SIGINT and SIGTERM to ``app.request_stop``."""
    loop = asyncio.get_running_loop()

    def handle(signum):
        app.logger.info("Received signal", signal=signal.Signals(signum).name)
        app.request_stop()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, handle, signum)
        except NotImplementedError:
            # Windows event loops only support signal.signal
            signal.signal(signum, lambda s, frame: loop.call_soon_threadsafe(handle, s))


async def run_once(config_file: Optional[str] = None) -> int:
    """Perform one sync and return a process exit code."""
    logger = get_logger("main")
    app = DocSyncApp(config_file=config_file)

    try:
        app.setup_components()
        result = await app.engine.start_sync("manual")
    finally:
        close_database()

    if not result.success:
        logger.error("Sync failed", error=result.error)
        return 1

    logger.info(
        "Sync finished",
        sync_run_id=result.sync_run_id,
        status=result.status.value if result.status else None,
        stats=result.stats
    )
    return 0


async def serve(config_file: Optional[str] = None):
    """Run the scheduler and status server until a signal arrives."""
    app = DocSyncApp(config_file=config_file)
    setup_signal_handlers(app)
    await app.run()


def cli(argv=None):
    """Console entry point: ``docsync [serve|sync] [--config FILE]``."""
    parser = argparse.ArgumentParser(prog="docsync", description="Sync local folders to the knowledge base")
    parser.add_argument("command", nargs="?", choices=["serve", "sync"], default="serve")
    parser.add_argument("--config", dest="config_file", help="Agent configuration file (YAML or JSON)")
    parser.add_argument("--log-level", dest="log_level", help="Override LOG_LEVEL")
    args = parser.parse_args(argv)

    setup_logging(log_level=args.log_level)

    try:
        if args.command == "sync":
            sys.exit(asyncio.run(run_once(args.config_file)))
        asyncio.run(serve(args.config_file))
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)


if __name__ == "__main__":
    cli()
