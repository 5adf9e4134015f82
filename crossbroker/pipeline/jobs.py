"""
Job runners - command, conformance and fuzz jobs of a pipeline run

Every runner executes inside a CancellationScope, wraps its body in the
job's cache scope and stores its artifacts under artifacts/<run id>/<job>/
on every exit path.
"""
import logging
import os
import re
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional
from ..cache.archive import pack_paths
from ..cache.cache import BuildCache, CacheScope, CacheSpec, KeyContext, cache_scope
from ..config import RunSettings
from ..conformance.executor import ConformanceExecutor, SuiteSpec
from ..errors import (
    ConformanceFailure, ConnectivityFailure, CrashFound, InfrastructureFailure,
    JobCancelled, PipelineError, PolicyViolation, StepFailure, failure_kind_for
)
from ..fuzzing.campaign import FuzzCampaignDriver
from ..fuzzing.harness import CargoFuzzHarness
from ..gateway.relay import NetworkGateway
from ..interfaces import ICacheStore, IFuzzHarness
from ..models import (
    BackendVariant, CampaignResult, FailureKind, JobReport, JobStatus, SuiteKind, TopologyConfig
)
from ..notify.slack import FailureNotifier
from ..topology.provisioner import TopologyProvisioner
from ..topology.selector import TargetSelector
from .definition import JobDef, StepDef
from .error_handler import ErrorCategory, ErrorContext, ErrorHandler, ErrorSeverity
from .log_buffer import JobLogBuffer

logger = logging.getLogger(__name__)

# Output lines kept in the job log when a step fails
FAILURE_TAIL_LINES = 20


class CancellationScope:
    """Cooperative cancellation for one job: an event plus the subprocesses to kill"""

    def __init__(self, name: str):
        self.name = name
        self.event = threading.Event()
        self.reason: Optional[str] = None
        self._processes = set()
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.event.is_set()

    def register_process(self, process) -> None:
        with self._lock:
            self._processes.add(process)
        if self.cancelled:
            self._kill(process)

    def unregister_process(self, process) -> None:
        with self._lock:
            self._processes.discard(process)

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self.event.is_set():
                return
            self.reason = reason
            self.event.set()
            processes = list(self._processes)
            callbacks = list(self._callbacks)
        logger.warning(f"Cancelling job {self.name}: {reason}")
        for process in processes:
            self._kill(process)
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancellation callback of {self.name} failed: {e}")

    def check(self) -> None:
        if self.cancelled:
            raise JobCancelled(f"Job {self.name} {self.reason}", component="pipeline")

    @staticmethod
    def _kill(process) -> None:
        try:
            process.kill()
        except OSError as e:
            logger.debug(f"Could not kill process {getattr(process, 'pid', '?')}: {e}")


@dataclass
class JobContext:
    """Everything a runner needs from the engine"""
    run_id: str
    job: JobDef
    workflow: str
    workdir: Path
    artifact_root: Path
    store: Optional[ICacheStore] = None
    caches: Dict[str, CacheSpec] = field(default_factory=dict)
    notifier: Optional[FailureNotifier] = None
    provisioner: Optional[TopologyProvisioner] = None
    error_handler: Optional[ErrorHandler] = None
    branch: str = "main"
    epoch: int = field(default_factory=lambda: int(time.time()))
    base_env: Dict[str, str] = field(default_factory=lambda: dict(os.environ))
    log: Optional[JobLogBuffer] = None
    scope: Optional[CancellationScope] = None

    def __post_init__(self):
        self.workdir = Path(self.workdir)
        self.artifact_root = Path(self.artifact_root)
        if self.log is None:
            self.log = JobLogBuffer(self.job.name)
        if self.scope is None:
            self.scope = CancellationScope(self.job.name)
        if self.error_handler is None:
            self.error_handler = ErrorHandler()

    @property
    def artifact_dir(self) -> Path:
        return self.artifact_root / self.run_id / self.job.name

    @property
    def job_workdir(self) -> Path:
        return self.workdir / self.job.working_directory

    def key_context(self) -> KeyContext:
        return KeyContext(root=self.job_workdir, branch=self.branch, epoch=self.epoch)

    def build_caches(self) -> List[BuildCache]:
        if not self.job.caches:
            return []
        if self.store is None:
            raise InfrastructureFailure(f"Job {self.job.name} uses caches but no cache store is configured",
                                        component="cache")
        return [BuildCache(self.caches[name], self.store, self.key_context()) for name in self.job.caches]

    def env(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        env = dict(self.base_env)
        env.update(self.job.env)
        env.update(extra or {})
        return env


def _slug(text: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", text).strip("-").lower() or "step"


class JobRunner:
    """Base runner: status bookkeeping, artifact storage, cache reporting"""

    error_category = ErrorCategory.COMMAND

    def __init__(self, context: JobContext):
        self.context = context
        self.job = context.job
        self.log = context.log
        self.scope = context.scope

    def execute(self, report: JobReport) -> None:
        raise NotImplementedError

    def run(self) -> JobReport:
        report = JobReport(job_name=self.job.name, status=JobStatus.RUNNING, start_time=time.time())
        self.log.info(f"Starting {self.job.type} job {self.job.name}")
        try:
            self.execute(report)
            self.scope.check()
            report.status = JobStatus.PASSED
            self.log.info(f"Job {self.job.name} passed")
        except Exception as e:
            if isinstance(e, JobCancelled) or self.scope.cancelled:
                report.status = JobStatus.CANCELLED
                report.failure_kind = FailureKind.CANCELLED
                report.message = f"cancelled: {self.scope.reason or e}"
            else:
                report.status = JobStatus.FAILED
                report.failure_kind = failure_kind_for(e)
                report.message = str(e)
            if not isinstance(e, PipelineError):
                logger.exception(f"Unexpected error in job {self.job.name}")
            self.log.error(f"Job {self.job.name} {report.status.value} ({report.failure_kind.value}): {e}")
            self.context.error_handler.handle_error(ErrorContext(
                category=self.error_category,
                severity=ErrorSeverity.HIGH,
                message=str(e),
                exception=e,
                component=getattr(e, 'component', None),
                job_name=self.job.name,
            ))
        finally:
            self.store_artifacts(report)
            report.end_time = time.time()
        return report

    def store_artifacts(self, report: JobReport) -> None:
        """Copy or archive the job's declared artifacts into the run's artifact directory"""
        for artifact in self.job.artifacts:
            source = self.context.job_workdir / artifact.path
            if not source.exists():
                self.log.warning(f"Artifact {artifact.path} not found, skipping")
                continue
            self.context.artifact_dir.mkdir(parents=True, exist_ok=True)
            try:
                if artifact.archive:
                    name = artifact.name or f"{Path(artifact.path).name}.tar.gz"
                    destination = self.context.artifact_dir / name
                    destination.write_bytes(pack_paths(self.context.job_workdir, [artifact.path]))
                else:
                    destination = self.context.artifact_dir / (artifact.name or Path(artifact.path).name)
                    if source.is_dir():
                        shutil.copytree(source, destination, dirs_exist_ok=True)
                    else:
                        shutil.copy2(source, destination)
            except OSError as e:
                message = f"Could not store artifact {artifact.path}: {e}"
                self.log.warning(message)
                report.warnings.append(message)
                continue
            report.artifacts.append(str(destination))
            self.log.info(f"Stored artifact {destination}")

    def record_caches(self, report: JobReport, scope: Optional[CacheScope]) -> None:
        if scope is None:
            return
        report.details['caches'] = {
            name: {
                'hit_key': restore.hit_key,
                'tier': restore.tier,
                'exact_hit': restore.exact_hit,
                'skipped_entries': list(restore.skipped_entries),
                'saved_key': scope.saved[name].key if name in scope.saved else None,
            }
            for name, restore in scope.restores.items()
        }
        report.warnings.extend(scope.warnings)

    def run_step(self, index: int, step: StepDef) -> int:
        """Run one shell step, writing its output to the job's log directory"""
        log_dir = self.context.artifact_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"{index + 1:02d}-{_slug(step.name)}.log"
        self.log.info(f"Step '{step.name}': {step.run}")

        start = time.time()
        process = subprocess.Popen(
            step.run, shell=True, cwd=str(self.context.job_workdir), env=self.context.env(step.env),
            stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True,
        )
        self.scope.register_process(process)
        try:
            output, _ = process.communicate(timeout=step.timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            output, _ = process.communicate()
            output = (output or "") + f"\nstep timed out after {step.timeout}s\n"
        finally:
            self.scope.unregister_process(process)
        output = output or ""
        log_file.write_text(output)

        exit_code = process.returncode
        self.log.info(f"Step '{step.name}' exited {exit_code} after {time.time() - start:.1f}s")
        if exit_code != 0:
            for line in output.strip().splitlines()[-FAILURE_TAIL_LINES:]:
                self.log.info(f"  | {line}")
        return exit_code


_STEP_FAILURES = {
    FailureKind.POLICY_VIOLATION: PolicyViolation,
    FailureKind.INFRASTRUCTURE: InfrastructureFailure,
}


class CommandJob(JobRunner):
    """A list of shell steps wrapped by the job's caches"""

    def execute(self, report: JobReport) -> None:
        scope = None
        try:
            with cache_scope(self.context.build_caches()) as scope:
                for index, step in enumerate(self.job.steps):
                    self.scope.check()
                    if step.skip_on_cache_hit and scope.exact_hit(step.skip_on_cache_hit):
                        self.log.info(f"Step '{step.name}' skipped: exact hit on cache {step.skip_on_cache_hit}")
                        report.details.setdefault('skipped_steps', []).append(step.name)
                        continue
                    exit_code = self.run_step(index, step)
                    self.scope.check()
                    if exit_code != 0:
                        error_class = _STEP_FAILURES.get(self.job.failure_kind, StepFailure)
                        raise error_class(f"Step '{step.name}' exited with {exit_code}", component=self.job.name)
        finally:
            self.record_caches(report, scope)


class ConformanceJob(JobRunner):
    """
    Runs the conformance suites against a dedicated topology.

    Options: backend, nodes, memory, cpus, image, ready_timeout, integration,
    gateway, placeholder, entry_points, verbosity, feature_flags, features and
    suites. With integration disabled no topology is started and only the
    unit cases run.
    """

    error_category = ErrorCategory.CONFORMANCE

    def __init__(self, context: JobContext):
        super().__init__(context)
        self.options = self.job.options
        self.integration = bool(self.options.get('integration', True))

    def topology_config(self) -> TopologyConfig:
        config = TopologyConfig(
            variant=BackendVariant(self.options['backend']),
            num_nodes=int(self.options.get('nodes', 3)),
        )
        for name in ('memory', 'image', 'zookeeper_image', 'sasl_username', 'sasl_password'):
            if name in self.options:
                setattr(config, name, self.options[name])
        if 'cpus' in self.options:
            config.cpus = float(self.options['cpus'])
        if 'ready_timeout' in self.options:
            config.ready_timeout = float(self.options['ready_timeout'])
        return config

    def suites(self) -> Optional[List[SuiteSpec]]:
        configured = self.options.get('suites')
        if not configured:
            return None
        return [SuiteSpec(SuiteKind(suite['kind']), suite['command'], suite.get('timeout'))
                for suite in configured]

    def executor(self) -> ConformanceExecutor:
        return ConformanceExecutor(
            workdir=str(self.context.job_workdir),
            suites=self.suites(),
            features=self.options.get('features', '--all-features'),
            log_dir=str(self.context.artifact_dir / "suites"),
            base_env=self.context.env(),
            scope=self.scope,
        )

    def execute(self, report: JobReport) -> None:
        scope = None
        try:
            with cache_scope(self.context.build_caches()) as scope:
                if self.integration:
                    self._run_against_topology(report)
                else:
                    settings = RunSettings(
                        integration_enabled=False,
                        verbosity=self.options.get('verbosity', 'info'),
                        feature_flags=set(self.options.get('feature_flags') or []),
                    )
                    self._run_suites(report, settings, gateway=None)
        finally:
            self.record_caches(report, scope)

    def _run_against_topology(self, report: JobReport) -> None:
        provisioner = self.context.provisioner
        if provisioner is None:
            raise InfrastructureFailure("No topology provisioner available", component="pipeline")
        config = self.topology_config()

        topology = None
        gateway = None
        try:
            topology = provisioner.provision(config, cancel_event=self.scope.event)
            report.details['topology'] = topology.topology_id
            self.log.info(f"Topology {topology.topology_id}: {len(topology.nodes)} {config.variant.value} nodes")
            self.scope.check()

            if self.options.get('gateway', True):
                gateway = NetworkGateway(routes=provisioner.gateway_routes(topology))
                topology.proxy_address = gateway.start()
                self.scope.add_callback(gateway.stop)
                self.log.info(f"Gateway relaying on {topology.proxy_address}")

            controller = provisioner.controller_id(topology)
            selector = TargetSelector(
                use_placeholder=bool(self.options.get('placeholder', True)),
                entry_points=int(self.options.get('entry_points', 1)),
                feature_flags=set(self.options.get('feature_flags') or []),
            )
            target = selector.select(topology, controller)
            report.details['controller_id'] = controller
            report.details['connect'] = list(target.addresses)
            self.log.info(f"Entry points {target.addresses}, controller is node {controller}")

            settings = RunSettings.from_target(
                target, config.variant,
                verbosity=self.options.get('verbosity', 'info'),
                resource_prefix=f"{self.context.run_id}-{self.job.name}",
            )
            self._run_suites(report, settings, gateway)
        finally:
            if gateway is not None:
                report.details['gateway'] = gateway.failure_summary()
            self.context.error_handler.cleanup_resources(
                topology=topology, provisioner=provisioner if topology is not None else None, gateway=gateway,
            )

    def _run_suites(self, report: JobReport, settings: RunSettings, gateway: Optional[NetworkGateway]) -> None:
        result = self.executor().run(settings)
        self.scope.check()
        report.details['suites'] = {
            suite.kind.value: {'exit_code': suite.exit_code, 'failed': suite.failed_cases,
                               'cases': len(suite.cases), 'log': suite.log_file}
            for suite in result.suites
        }
        for suite in result.suites:
            if suite.log_file:
                report.artifacts.append(suite.log_file)
        if result.success:
            self.log.info(f"All {len(result.cases)} conformance cases passed")
            return

        failed = result.failed_cases
        if gateway is not None and gateway.relay_failures:
            destinations = sorted({failure.destination for failure in gateway.relay_failures})
            raise ConnectivityFailure(
                f"{len(failed)} cases failed while the gateway could not reach {destinations}",
                component="gateway",
            )
        raise ConformanceFailure(f"{len(failed)} conformance cases failed: {failed[:10]}",
                                 failed_cases=failed, component=self.job.name)


class FuzzJob(JobRunner):
    """
    One bounded fuzz campaign between a fuzz-state restore and save.

    The notification goes out after the caches are saved, once per campaign,
    and only when the campaign failed.
    """

    error_category = ErrorCategory.FUZZING

    def __init__(self, context: JobContext, harness: Optional[IFuzzHarness] = None):
        super().__init__(context)
        self.options = self.job.options
        self.harness = harness or CargoFuzzHarness(
            project_dir=str(context.job_workdir),
            fuzz_dir=self.options.get('fuzz_dir', 'fuzz'),
            toolchain=self.options.get('toolchain', '+nightly'),
            max_total_time=self.options.get('max_total_time'),
            build_timeout=self.options.get('build_timeout'),
            log_dir=str(context.artifact_dir / "fuzz-logs"),
            scope=context.scope,
        )
        self.result: Optional[CampaignResult] = None

    def execute(self, report: JobReport) -> None:
        driver = FuzzCampaignDriver(self.harness, budget=int(self.options.get('budget', 100000)),
                                    cancel_event=self.scope.event)
        scope = None
        try:
            with cache_scope(self.context.build_caches()) as scope:
                targets = None
                wanted = self.options.get('targets')
                if wanted:
                    targets = [t for t in self.harness.discover_targets() if t.name in wanted]
                self.result = driver.run_campaign(targets)
                self._store_campaign(report)
                self.scope.check()
                self._raise_for_campaign()
        except JobCancelled:
            raise
        except Exception as e:
            if self.options.get('notify', True):
                self._notify(e)
            raise
        finally:
            self.record_caches(report, scope)

    def _store_campaign(self, report: JobReport) -> None:
        result = self.result
        report.details['campaign'] = {
            'id': result.campaign_id,
            'targets': {
                t.target: {
                    'status': t.status.value,
                    'iterations': t.iterations_run,
                    'budget': t.budget,
                    'corpus_before': t.corpus_before,
                    'corpus_added': len(t.corpus_delta),
                    'crash_artifacts': [p.name for p in t.crash_artifacts],
                    'error': t.error_message,
                }
                for t in result.targets
            },
        }
        for target in result.targets:
            for kind, paths in (('crashes', target.crash_artifacts), ('corpus', target.corpus_delta)):
                if not paths:
                    continue
                destination = self.context.artifact_dir / kind / target.target
                destination.mkdir(parents=True, exist_ok=True)
                for path in paths:
                    try:
                        shutil.copy2(path, destination / path.name)
                    except OSError as e:
                        report.warnings.append(f"Could not store {path}: {e}")
                        continue
                    if kind == 'crashes':
                        report.artifacts.append(str(destination / path.name))
                if kind == 'corpus':
                    report.artifacts.append(str(destination))

    def _raise_for_campaign(self) -> None:
        result = self.result
        if result.crashed_targets:
            raise CrashFound(f"Crashes found in {result.crashed_targets}", targets=result.crashed_targets,
                             component="fuzzing")
        if result.errored_targets:
            raise InfrastructureFailure(f"Fuzz targets did not complete: {result.errored_targets}",
                                        component="fuzzing")

    def _notify(self, error: Exception) -> None:
        notifier = self.context.notifier
        if notifier is None:
            return
        result = self.result
        scope_key = f"{self.context.run_id}/{self.job.name}/{result.campaign_id if result else 'build'}"
        fields = {
            'Job': self.job.name,
            'Workflow': self.context.workflow,
            'Branch': self.context.branch,
            'Run': self.context.run_id,
            'Failure': failure_kind_for(error).value,
            'Crashed targets': ", ".join(result.crashed_targets) if result else None,
            'Errored targets': ", ".join(result.errored_targets) if result else None,
        }
        delivered = notifier.notify_once(scope_key, f"Job failed: {self.job.name}", fields)
        if not delivered:
            self.context.error_handler.handle_error(ErrorContext(
                category=ErrorCategory.NOTIFICATION,
                severity=ErrorSeverity.LOW,
                message=f"Failure notification for {self.job.name} not delivered",
                job_name=self.job.name,
            ))


JOB_RUNNERS = {
    'command': CommandJob,
    'conformance': ConformanceJob,
    'fuzz': FuzzJob,
}


def runner_for(context: JobContext) -> JobRunner:
    try:
        runner_class = JOB_RUNNERS[context.job.type]
    except KeyError:
        raise InfrastructureFailure(f"Unknown job type '{context.job.type}'", component="pipeline")
    return runner_class(context)
