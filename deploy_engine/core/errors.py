# deploy_engine/core/errors.py

from typing import Optional

# -----------------------------
# Base Errors
# -----------------------------

class ApplicationError(Exception):
    """Base class for all deploy engine errors."""
    pass


# -----------------------------
# Validation / Domain Errors
# -----------------------------

class ApplicationValidationError(ApplicationError):
    """Invalid input or malformed application record."""
    pass


class InvalidStateTransition(ApplicationError):
    """Illegal state transition attempted."""
    pass


class PipelineAlreadyRunning(ApplicationError):
    """Another pipeline or command holds the application lock."""
    pass


# -----------------------------
# Persistence Errors
# -----------------------------

class ApplicationPersistenceError(ApplicationError):
    pass


class ApplicationAlreadyExists(ApplicationPersistenceError):
    pass


class ApplicationNotFound(ApplicationPersistenceError):
    pass


class ApplicationConcurrencyError(ApplicationPersistenceError):
    pass


# -----------------------------
# Pipeline Errors
# -----------------------------

class PipelineError(ApplicationError):
    """A pipeline stage failed. Fatal errors abort the run."""

    stage = "pipeline"
    fatal = True

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        if stage:
            self.stage = stage


class FetchError(PipelineError):
    stage = "fetch"


class BuildError(PipelineError):
    stage = "build"


class DescriptorParseError(PipelineError):
    stage = "descriptor"


class DescriptorWriteError(PipelineError):
    stage = "write"


class HookExecutionError(PipelineError):
    stage = "hook"


class TokenIssuanceError(PipelineError):
    stage = "token"
    fatal = False


class ProvisioningError(PipelineError):
    stage = "provision"
    fatal = False

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class ApplyError(PipelineError):
    stage = "apply"


class ApplyTimeoutError(ApplyError):
    pass


class EnvTransferApplicationError(PipelineError):
    stage = "reconcile"


class VerificationMismatch(PipelineError):
    """Apply succeeded but the application is not observed running."""

    stage = "verify"
    fatal = False


class ReconciliationParseFailure(PipelineError):
    """A descriptor could not be parsed; diff falls back to masked text."""

    stage = "reconcile"
    fatal = False
