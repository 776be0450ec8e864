"""Cooperative cancellation for per-pixel, per-frame and per-region loops."""

from __future__ import annotations

import threading

from .errors import AnalysisCancelledError


class CancellationToken:
    """Thread-safe flag polled by long-running analysis steps.

    The token is passed explicitly into every call that loops over pixels, frames or
    regions. Workers call :meth:`raise_if_cancelled` at each iteration boundary.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "analysis") -> None:
        if self._event.is_set():
            raise AnalysisCancelledError(f"{where} cancelled.")


def check_cancelled(token: CancellationToken | None, where: str = "analysis") -> None:
    """Poll ``token`` if one was supplied."""
    if token is not None:
        token.raise_if_cancelled(where)


__all__ = ["CancellationToken", "check_cancelled"]
