"""
Typed exceptions raised by harness adapters and the harness registry.
"""

from __future__ import annotations

from .models import HarnessErrorCode


class HarnessError(Exception):
    """Base exception for harness failures."""

    def __init__(
        self,
        message: str,
        code: HarnessErrorCode = HarnessErrorCode.UNKNOWN,
        harness_id: str | None = None,
    ) -> None:
        self.code = code
        self.harness_id = harness_id
        super().__init__(message)


class HarnessNotFoundError(HarnessError):
    """No harness is registered under the requested id."""

    def __init__(self, harness_id: str) -> None:
        super().__init__(f"Harness '{harness_id}' is not registered", harness_id=harness_id)


class HarnessNotInstalledError(HarnessError):
    """The backend CLI could not be found on this machine."""

    def __init__(self, harness_id: str, instructions: str) -> None:
        self.instructions = instructions
        super().__init__(
            f"Harness '{harness_id}' is not installed. {instructions}",
            code=HarnessErrorCode.NOT_INSTALLED,
            harness_id=harness_id,
        )
