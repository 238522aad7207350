"""Outbound navigation requests emitted by the capture flow."""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class NavigationRequest:
    route: str
    state: Dict[str, Any] = field(default_factory=dict)


NavigationHandler = Callable[[NavigationRequest], Awaitable[None]]


class Navigator:
    """Records navigation requests and forwards them to the UI layer."""

    def __init__(self, *, results_route: str, back_route: str, handler: Optional[NavigationHandler] = None) -> None:
        self.results_route = results_route
        self.back_route = back_route
        self.history: List[NavigationRequest] = []
        self._handler = handler

    def set_handler(self, handler: Optional[NavigationHandler]) -> None:
        self._handler = handler

    @property
    def has_handler(self) -> bool:
        return self._handler is not None

    @property
    def last(self) -> Optional[NavigationRequest]:
        return self.history[-1] if self.history else None

    async def to_results(self, analysis: Dict[str, Any], *, timestamp: str, source: str) -> None:
        await self._go(
            NavigationRequest(
                route=self.results_route,
                state={"analysisData": analysis, "timestamp": timestamp, "source": source},
            )
        )

    async def back(self) -> None:
        await self._go(NavigationRequest(route=self.back_route))

    async def _go(self, request: NavigationRequest) -> None:
        self.history.append(request)
        logger.info("Navigating to %s", request.route)
        if self._handler is None:
            return
        try:
            await self._handler(request)
        except Exception as e:
            logger.warning("Navigation handler failed for %s: %s", request.route, e)


__all__ = ["NavigationRequest", "Navigator", "NavigationHandler"]
