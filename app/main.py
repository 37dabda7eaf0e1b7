# app/main.py

import asyncio
import signal
import sys

from core.logging import configure_logging, get_logger
from app.containers import AppContainer
from core.config.validator import validate_startup_configuration


class StartupError(RuntimeError):
    pass


class ApplicationOrchestrator:
    """Runs the worker process: settlement workers, transfer monitor, reconciliation.

    The HTTP API is a separate process (`api.main.run`) sharing the same database.
    """

    def __init__(self, container: AppContainer = None):
        self.container = container or AppContainer()
        self.container.wire(modules=[__name__, "api.dependencies"])
        self.settings = self.container.settings()
        configure_logging(self.settings)
        self.logger = get_logger("custody_ledger.main", component="application")
        self._shutdown_event = asyncio.Event()
        self._started_services = []

    async def startup(self):
        self.logger.info("Custody ledger starting",
                         environment=self.settings.environment.value,
                         custodian=self.settings.custodian.name,
                         custodian_mode=self.settings.custodian.mode)

        if not await validate_startup_configuration(self.settings):
            raise StartupError("Configuration validation failed")

        db_manager = self.container.db_manager()
        await db_manager.init()
        try:
            await db_manager.wait_for_ready(timeout=30)
        except RuntimeError as e:
            raise StartupError(str(e)) from e

        gateway = self.container.custodian_gateway()
        if not await gateway.initialize():
            raise StartupError(f"Custodian gateway {gateway.name} failed to initialize")

        for service in self.container.lifespan_services():
            await service.start()
            self._started_services.append(service)
        self.logger.info("All services started", services=len(self._started_services))

    async def shutdown(self):
        self.logger.info("Shutting down custody ledger")
        # BaseService.stop logs its own errors and never raises
        for service in reversed(self._started_services):
            await service.stop()
        self._started_services.clear()

        for name, closer in (("custodian_gateway", self.container.custodian_gateway().shutdown),
                             ("database", self.container.db_manager().shutdown)):
            try:
                await asyncio.wait_for(closer(), timeout=10.0)
            except Exception as e:
                self.logger.error("Error releasing resource", resource=name, error=str(e))
        self.logger.info("Custody ledger shutdown complete")

    def request_shutdown(self, signum=None):
        if signum is not None:
            self.logger.info("Received shutdown signal", signal=signal.Signals(signum).name)
        self._shutdown_event.set()

    async def run(self) -> int:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, self.request_shutdown, signum)

        try:
            await self.startup()
        except StartupError as e:
            self.logger.error("Startup aborted", error=str(e))
            await self.shutdown()
            return 1

        try:
            self.logger.info("Custody ledger running. Press Ctrl+C to exit.")
            await self._shutdown_event.wait()
        finally:
            await self.shutdown()
        return 0


async def main() -> int:
    return await ApplicationOrchestrator().run()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
