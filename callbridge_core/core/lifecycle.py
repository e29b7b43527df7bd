"""
Component lifecycle.

Every long-lived piece of the service (event bus, coordinator, queue manager,
matching engine, state cleanup) exposes the same ``start``/``stop``/
``is_running`` contract so the Call Manager can bring them up and down in
dependency order.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import structlog


class Component(ABC):
    """Base class for components with an explicit lifecycle."""

    @abstractmethod
    async def start(self) -> None:
        """Start the component. Calling start twice is a no-op."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the component and release its resources."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        pass


class PeriodicComponent(Component):
    """
    Component driven by a single background loop.

    Subclasses implement ``_tick``; the loop sleeps ``interval`` seconds
    between ticks, logs failures and keeps going.
    """

    def __init__(
        self,
        interval: float,
        name: str,
        run_immediately: bool = False,
    ):
        self._interval = interval
        self._name = name
        self._run_immediately = run_immediately
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._logger = structlog.get_logger(name)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        await self._on_start()
        self._task = asyncio.create_task(self._loop(), name=f"{self._name}-loop")
        self._logger.info(f"{self._name}_started", interval=self._interval)

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self._on_stop()
        self._logger.info(f"{self._name}_stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _on_start(self) -> None:
        pass

    async def _on_stop(self) -> None:
        pass

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    @abstractmethod
    async def _tick(self) -> None:
        pass

    async def _loop(self) -> None:
        first = True
        while self._running:
            try:
                if not (first and self._run_immediately):
                    await asyncio.sleep(self._interval)
                first = False
                await self._tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error(f"{self._name}_loop_error", error=str(e))


__all__ = ["Component", "PeriodicComponent"]
