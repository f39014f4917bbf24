# debforge/errors.py
"""
Error taxonomy for the debforge pipeline.

Every error carries an optional ``stage`` naming the pipeline stage that
failed (worker, build-deps, package, sign, rootfs, image, test) so the CLI
can report where a build aborted. Nothing here retries.
"""

from __future__ import annotations

from typing import List, Optional


class ForgeError(Exception):
    """Base class for all debforge errors."""

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        return self.message


class ConfigError(ForgeError):
    pass


class SpecError(ForgeError):
    pass


class ResolutionError(ForgeError):
    """Context, base image or image metadata lookup failed."""


class PackagingError(ForgeError):
    """Intermediate or final package build failed."""


class SigningError(ForgeError):
    pass


class InstallError(ForgeError):
    """Package installation into the target failed; carries captured diagnostics."""

    def __init__(self, message: str, stage: Optional[str] = None, diagnostics: str = ""):
        super().__init__(message, stage)
        self.diagnostics = diagnostics


class TestFailure(ForgeError):
    __test__ = False  # keep pytest from collecting this

    def __init__(self, message: str, failures: Optional[List[str]] = None, stage: Optional[str] = "test"):
        super().__init__(message, stage)
        self.failures = list(failures or [])


class EngineError(ForgeError):
    """Raised by execution engine implementations."""


class SolveError(EngineError):
    def __init__(self, message: str, diagnostics: str = "", exit_code: Optional[int] = None,
                 stage: Optional[str] = None):
        super().__init__(message, stage)
        self.diagnostics = diagnostics
        self.exit_code = exit_code


def wrap(err: Exception, message: str, cls: Optional[type] = None, stage: Optional[str] = None) -> ForgeError:
    """
    Prefix ``message`` onto ``err`` the way the pipeline reports nested failures.
    The stage of an already-staged ForgeError is kept unless one is given.
    """
    if cls is None:
        cls = type(err) if isinstance(err, ForgeError) else ForgeError
    if stage is None and isinstance(err, ForgeError):
        stage = err.stage
    wrapped = cls(f"{message}: {err}", stage=stage)
    if hasattr(err, "diagnostics") and hasattr(wrapped, "diagnostics"):
        wrapped.diagnostics = err.diagnostics
    wrapped.__cause__ = err
    return wrapped
