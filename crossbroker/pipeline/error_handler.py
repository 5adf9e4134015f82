"""
Error Handler - Centralized error recording, retry and recovery

Provides retry logic with exponential backoff for flaky infrastructure
(container startup, controller probing), error categorization for the run
report, and cleanup procedures for failed jobs.
"""
import logging
import random
import time
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Severity levels for errors"""
    LOW = "low"  # Non-critical, can continue
    MEDIUM = "medium"  # Degraded operation
    HIGH = "high"  # Critical, job fails
    FATAL = "fatal"  # Unrecoverable, must abort


class ErrorCategory(Enum):
    """Categories of errors for targeted handling"""
    TOPOLOGY_PROVISIONING = "topology_provisioning"
    CONTROLLER_DISCOVERY = "controller_discovery"
    GATEWAY = "gateway"
    CONFORMANCE = "conformance"
    FUZZING = "fuzzing"
    CACHE = "cache"
    NOTIFICATION = "notification"
    RESOURCE_CLEANUP = "resource_cleanup"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    CONFIGURATION = "configuration"
    COMMAND = "command"


@dataclass
class ErrorContext:
    """Context information for an error"""
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    exception: Optional[Exception] = None
    component: Optional[str] = None
    job_name: Optional[str] = None
    topology_id: Optional[str] = None
    node_id: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class RetryConfig:
    """Configuration for retry behavior"""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True


class ErrorHandler:
    """
    Centralized error handling and recovery for pipeline jobs.

    Provides:
    - Retry logic with exponential backoff
    - Error categorization and severity assessment
    - Recovery decisions per category (degrade or fail)
    - Cleanup of topologies and gateways after a failed job
    """

    def __init__(self):
        self.error_history: List[ErrorContext] = []
        self.recovery_strategies: Dict[ErrorCategory, Callable] = {}
        self._register_default_strategies()

    def _register_default_strategies(self):
        self.recovery_strategies[ErrorCategory.TOPOLOGY_PROVISIONING] = self._recover_topology_provisioning
        self.recovery_strategies[ErrorCategory.CONTROLLER_DISCOVERY] = self._recover_controller_discovery
        self.recovery_strategies[ErrorCategory.CACHE] = self._recover_cache
        self.recovery_strategies[ErrorCategory.NOTIFICATION] = self._recover_notification

    def handle_error(self, error_context: ErrorContext) -> bool:
        """Record an error and return whether the caller may continue"""
        self._log_error(error_context)
        self.error_history.append(error_context)

        if error_context.severity == ErrorSeverity.FATAL:
            logger.error(f"Fatal error encountered: {error_context.message}")
            return False

        if error_context.category in self.recovery_strategies:
            try:
                recovery_func = self.recovery_strategies[error_context.category]
                return recovery_func(error_context)
            except Exception as e:
                logger.error(f"Recovery strategy failed: {e}")
                return False

        logger.warning(f"No recovery strategy for {error_context.category}")
        return error_context.severity == ErrorSeverity.LOW

    def retry_with_backoff(
        self,
        operation: Callable,
        config: RetryConfig,
        error_category: ErrorCategory,
        operation_name: str = "operation",
        **kwargs
    ) -> Tuple[bool, Any]:
        """Execute an operation with retry logic and exponential backoff"""
        last_exception = None
        delay = config.initial_delay

        for attempt in range(config.max_attempts):
            try:
                logger.debug(f"Executing {operation_name} (attempt {attempt + 1}/{config.max_attempts})")
                result = operation(**kwargs)
                if attempt > 0:
                    logger.info(f"{operation_name} succeeded on attempt {attempt + 1}")
                return True, result

            except Exception as e:
                last_exception = e
                logger.warning(f"{operation_name} failed on attempt {attempt + 1}: {e}")

                self.error_history.append(ErrorContext(
                    category=error_category,
                    severity=ErrorSeverity.MEDIUM if attempt < config.max_attempts - 1 else ErrorSeverity.HIGH,
                    message=f"{operation_name} failed: {e}",
                    exception=e,
                    metadata={'attempt': attempt + 1, 'max_attempts': config.max_attempts}
                ))

                if attempt < config.max_attempts - 1:
                    backoff_delay = min(
                        delay * (config.exponential_base ** attempt),
                        config.max_delay
                    )
                    if config.jitter:
                        backoff_delay *= (0.5 + random.random())

                    logger.info(f"Retrying in {backoff_delay:.2f} seconds...")
                    time.sleep(backoff_delay)

        logger.error(f"{operation_name} failed after {config.max_attempts} attempts")
        self.error_history.append(ErrorContext(
            category=error_category,
            severity=ErrorSeverity.HIGH,
            message=f"{operation_name} failed after all retry attempts",
            exception=last_exception,
            metadata={'attempts': config.max_attempts}
        ))

        return False, None

    def _recover_topology_provisioning(self, error_context: ErrorContext) -> bool:
        # Partial topologies are torn down by the provisioner; the job cannot continue
        logger.info("Topology provisioning failed, job aborts before any test executes")
        return False

    def _recover_controller_discovery(self, error_context: ErrorContext) -> bool:
        # Selection still works with a placeholder entry point
        logger.warning("Controller unknown, continuing with placeholder entry point")
        return error_context.severity in [ErrorSeverity.LOW, ErrorSeverity.MEDIUM]

    def _recover_cache(self, error_context: ErrorContext) -> bool:
        logger.warning("Cache unavailable, continuing with cold state")
        return True

    def _recover_notification(self, error_context: ErrorContext) -> bool:
        logger.warning("Notification delivery failed, pipeline outcome unaffected")
        return True

    def cleanup_resources(self, topology=None, provisioner=None, gateway=None) -> bool:
        """Stop the gateway and tear down the topology of a finished or failed job"""
        logger.info("Starting job resource cleanup")
        cleanup_success = True

        if gateway is not None:
            try:
                gateway.stop()
            except Exception as e:
                logger.error(f"Failed to stop gateway: {e}")
                cleanup_success = False

        if provisioner is not None and topology is not None:
            try:
                provisioner.teardown(topology)
            except Exception as e:
                logger.error(f"Failed to tear down topology {topology.topology_id}: {e}")
                self.error_history.append(ErrorContext(
                    category=ErrorCategory.RESOURCE_CLEANUP,
                    severity=ErrorSeverity.MEDIUM,
                    message=f"Teardown failed: {e}",
                    exception=e,
                    topology_id=topology.topology_id,
                ))
                cleanup_success = False

        if cleanup_success:
            logger.info("Cleanup completed successfully")
        else:
            logger.warning("Cleanup completed with errors")
        return cleanup_success

    def _log_error(self, error_context: ErrorContext):
        """Log error with appropriate level based on severity"""
        log_message = f"[{error_context.category.value}] {error_context.message}"

        if error_context.component:
            log_message = f"[{error_context.component}] {log_message}"
        if error_context.job_name:
            log_message += f" (job: {error_context.job_name})"
        if error_context.topology_id:
            log_message += f" (topology: {error_context.topology_id})"
        if error_context.node_id is not None:
            log_message += f" (node: {error_context.node_id})"

        if error_context.severity == ErrorSeverity.FATAL:
            logger.critical(log_message)
        elif error_context.severity == ErrorSeverity.HIGH:
            logger.error(log_message)
        elif error_context.severity == ErrorSeverity.MEDIUM:
            logger.warning(log_message)
        else:
            logger.info(log_message)

    def get_error_summary(self) -> Dict[str, Any]:
        """Counts by category, severity and job plus the ten most recent errors"""
        by_job = Counter(e.job_name for e in self.error_history if e.job_name)
        return {
            'total_errors': len(self.error_history),
            'by_category': dict(Counter(e.category.value for e in self.error_history)),
            'by_severity': dict(Counter(e.severity.value for e in self.error_history)),
            'by_job': dict(by_job),
            'recent_errors': [
                {'category': e.category.value, 'severity': e.severity.value,
                 'job': e.job_name, 'message': e.message}
                for e in self.error_history[-10:]
            ]
        }

    def clear_history(self):
        self.error_history.clear()
        logger.info("Error history cleared")
