"""Per-call status holder for remote procedure calls."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class RpcController:
    """Records whether a remote call failed and why."""

    failed: bool = False
    error_text: str = ""

    def reset(self) -> None:
        """Clear any recorded failure."""
        self.failed = False
        self.error_text = ""

    def set_failed(self, reason: str) -> None:
        """Mark the call as failed with ``reason``."""
        self.failed = True
        self.error_text = reason

    def is_canceled(self) -> bool:
        """Cancellation is not supported, so a call is never canceled."""
        return False