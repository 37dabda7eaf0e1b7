"""
Lifecycle base for the long-running custody ledger services.
"""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.logging import get_logger


class ServiceStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class BaseService(ABC):
    """
    start/stop with status tracking plus owned background tasks.

    Subclasses implement `_start_implementation` / `_stop_implementation`
    and launch loops through `_spawn`; tasks still running at stop are
    cancelled after `_stop_implementation` returns.
    """

    def __init__(self, service_name: str):
        self.service_name = service_name
        self.logger = get_logger(f"custody_ledger.{service_name}", component=service_name)
        self.status = ServiceStatus.STOPPED
        self._started_at: Optional[float] = None
        self._shutdown_event = asyncio.Event()
        self._background_tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        if self.status != ServiceStatus.STOPPED:
            self.logger.warning("Service already started or starting", service=self.service_name)
            return

        self.status = ServiceStatus.STARTING
        self._shutdown_event = asyncio.Event()
        self.logger.info("Starting service", service=self.service_name)
        try:
            await self._start_implementation()
        except Exception as e:
            self.status = ServiceStatus.ERROR
            self.logger.error("Service failed to start", service=self.service_name, error=str(e))
            raise
        self.status = ServiceStatus.RUNNING
        self._started_at = asyncio.get_running_loop().time()
        self.logger.info("Service started", service=self.service_name)

    async def stop(self) -> None:
        """Stop the service. Errors are logged, never raised, so shutdown can continue."""
        if self.status in (ServiceStatus.STOPPED, ServiceStatus.STOPPING):
            return

        self.status = ServiceStatus.STOPPING
        self.logger.info("Stopping service", service=self.service_name)
        self._shutdown_event.set()
        try:
            await self._stop_implementation()
            await self._cancel_background_tasks()
        except Exception as e:
            self.status = ServiceStatus.ERROR
            self.logger.error("Error stopping service", service=self.service_name, error=str(e))
            return
        self.status = ServiceStatus.STOPPED
        self.logger.info("Service stopped", service=self.service_name)

    @abstractmethod
    async def _start_implementation(self) -> None:
        ...

    @abstractmethod
    async def _stop_implementation(self) -> None:
        ...

    def _spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.append(task)
        return task

    async def _cancel_background_tasks(self) -> None:
        for task in self._background_tasks:
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks = []

    async def _run_periodically(self, interval_seconds: float, job: Callable[[], Awaitable[Any]],
                                job_name: str) -> None:
        """Run `job` every `interval_seconds` until shutdown.

        A failing run is logged and the loop waits for the next tick.
        """
        while not self._shutdown_event.is_set():
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Periodic job failed", service=self.service_name, job=job_name,
                                  error=str(e), error_type=type(e).__name__)
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue

    def get_status(self) -> Dict[str, Any]:
        uptime = None
        if self._started_at is not None and self.status == ServiceStatus.RUNNING:
            uptime = asyncio.get_running_loop().time() - self._started_at
        return {
            "service_name": self.service_name,
            "status": self.status.value,
            "uptime_seconds": uptime,
        }

    def is_running(self) -> bool:
        return self.status == ServiceStatus.RUNNING
