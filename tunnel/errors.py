# tunnel/errors.py
from __future__ import annotations


class TunnelError(Exception):
    """Base class for tunnel lifecycle failures."""


class ProvisionError(TunnelError):
    """A provisioning step failed; completed steps were compensated."""

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"{step}: {cause}")


class MissingAnnotationsError(TunnelError):
    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(
            "service missing tunnel annotations, cannot update: " + ", ".join(self.missing)
        )


class InvalidResourceAnnotation(TunnelError, ValueError):
    def __init__(self, key: str, value: str, reason: str = ""):
        self.key = key
        self.value = value
        msg = f"parsing annotation {key}={value!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
