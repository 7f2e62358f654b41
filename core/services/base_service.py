"""
Base service class for standardized service lifecycle management.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Coroutine, Dict, List
from enum import Enum

from core.logging import get_logger


class ServiceStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class BaseService(ABC):
    """Base class for the gateway's long-running services.

    Subclasses start their loops with ``_spawn``; ``stop`` sets the shutdown
    event, runs ``_stop_implementation`` and then cancels whatever spawned
    tasks are still running.
    """

    def __init__(self, service_name: str):
        self.service_name = service_name
        self.logger = get_logger(f"trade_gateway.{service_name}", component=service_name)
        self.status = ServiceStatus.STOPPED
        self._startup_time = None
        self._shutdown_event = asyncio.Event()
        self._background_tasks: List[asyncio.Task] = []

    async def start(self) -> None:
        """Start the service with standardized lifecycle"""
        if self.status != ServiceStatus.STOPPED:
            self.logger.warning("Service already started or starting", service=self.service_name)
            return

        self.status = ServiceStatus.STARTING
        self.logger.info("Starting service", service=self.service_name)

        try:
            self._shutdown_event.clear()
            await self._start_implementation()
            self.status = ServiceStatus.RUNNING
            self._startup_time = asyncio.get_running_loop().time()
            self.logger.info("Service started", service=self.service_name)
        except Exception as e:
            self.status = ServiceStatus.ERROR
            self.logger.error("Failed to start service", service=self.service_name, error=str(e))
            await self._cancel_background_tasks()
            raise

    async def stop(self) -> None:
        """Stop the service with standardized lifecycle"""
        if self.status in [ServiceStatus.STOPPED, ServiceStatus.STOPPING]:
            return

        self.status = ServiceStatus.STOPPING
        self.logger.info("Stopping service", service=self.service_name)

        try:
            self._shutdown_event.set()
            await self._stop_implementation()
            await self._cancel_background_tasks()
            self.status = ServiceStatus.STOPPED
            self.logger.info("Service stopped", service=self.service_name)
        except Exception as e:
            self.logger.error("Error stopping service", service=self.service_name, error=str(e))
            self.status = ServiceStatus.ERROR
            # Don't raise during shutdown - just log

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{self.service_name}:{name}")
        self._background_tasks.append(task)
        return task

    async def _cancel_background_tasks(self) -> None:
        tasks, self._background_tasks = self._background_tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                self.logger.error("Background task failed", service=self.service_name,
                                  task=task.get_name(), error=str(e))

    async def _shutdown_requested(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for ``stop``; True once it was called."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    @abstractmethod
    async def _start_implementation(self) -> None:
        """Service-specific start implementation"""

    async def _stop_implementation(self) -> None:
        """Service-specific stop implementation, run before spawned tasks are cancelled"""

    def get_status(self) -> Dict[str, Any]:
        """Get service status information"""
        uptime = None
        if self._startup_time and self.status == ServiceStatus.RUNNING:
            uptime = asyncio.get_running_loop().time() - self._startup_time

        return {
            "service_name": self.service_name,
            "status": self.status.value,
            "uptime_seconds": uptime,
            "background_tasks": len(self._background_tasks),
        }

    def is_running(self) -> bool:
        return self.status == ServiceStatus.RUNNING
