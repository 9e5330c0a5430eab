from __future__ import annotations

import logging
from typing import Any, Protocol

from .logging import log_event


class Notifier(Protocol):
    """Operator-facing alert channel (chat delivery lives outside this package)."""

    async def notify(self, *, event: str, message: str, details: dict[str, Any] | None = None) -> None:
        ...


class LogNotifier:
    def __init__(self, *, logger: logging.Logger) -> None:
        self._logger = logger

    async def notify(self, *, event: str, message: str, details: dict[str, Any] | None = None) -> None:
        log_event(
            self._logger,
            level="warning",
            event=f"operator_{event}",
            message=message,
            details=details or {},
        )
