"""
Exception taxonomy for the conformance pipeline.

Every exception maps onto exactly one FailureKind so a job report can say
why it failed without parsing messages.
"""
from typing import Optional
from .models import FailureKind


class PipelineError(Exception):
    """Base class for all pipeline failures"""
    failure_kind: FailureKind = FailureKind.STEP_FAILURE

    def __init__(self, message: str, component: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.component = component


class InfrastructureFailure(PipelineError):
    """Topology, gateway or harness could not be brought up"""
    failure_kind = FailureKind.INFRASTRUCTURE


class HarnessBuildError(InfrastructureFailure):
    """The instrumented fuzz harness failed to build"""


class ConnectivityFailure(InfrastructureFailure):
    """The gateway could not relay traffic into the topology"""
    failure_kind = FailureKind.CONNECTIVITY


class ConformanceFailure(PipelineError):
    """One or more conformance cases failed"""
    failure_kind = FailureKind.CONFORMANCE

    def __init__(self, message: str, failed_cases=None, component: Optional[str] = None):
        super().__init__(message, component)
        self.failed_cases = list(failed_cases or [])


class CrashFound(PipelineError):
    """A fuzz target produced a crashing input"""
    failure_kind = FailureKind.CRASH_FOUND

    def __init__(self, message: str, targets=None, component: Optional[str] = None):
        super().__init__(message, component)
        self.targets = list(targets or [])


class PolicyViolation(PipelineError):
    """Dependency or license policy gate rejected the build"""
    failure_kind = FailureKind.POLICY_VIOLATION


class StepFailure(PipelineError):
    """A plain command step exited non-zero"""
    failure_kind = FailureKind.STEP_FAILURE


class JobCancelled(PipelineError):
    """Job was cancelled by timeout or external abort"""
    failure_kind = FailureKind.CANCELLED


class ConfigurationError(PipelineError, ValueError):
    """Invalid run settings or pipeline definition"""
    failure_kind = FailureKind.INFRASTRUCTURE


class CacheError(PipelineError):
    """Cache store could not be read or written"""
    failure_kind = FailureKind.INFRASTRUCTURE


class CacheCorruptError(CacheError):
    """Stored cache payload does not match its recorded checksum"""


def failure_kind_for(exc: BaseException) -> FailureKind:
    """Map any exception onto a FailureKind"""
    if isinstance(exc, PipelineError):
        return exc.failure_kind
    return FailureKind.INFRASTRUCTURE
