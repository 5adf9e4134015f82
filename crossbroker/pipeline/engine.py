"""
Pipeline Engine - runs a workflow's job DAG on a thread pool

A job is submitted once every job it requires has passed. Jobs behind a
failed, skipped or cancelled requirement are skipped, and no failure ever
cancels a sibling. Job logs are buffered and flushed in dependency order.
"""
import logging
import os
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, List, Optional
from ..cache.store import open_store
from ..errors import ConfigurationError, failure_kind_for
from ..interfaces import ICacheStore
from ..models import FailureKind, JobReport, JobStatus, PipelineReport
from ..notify.slack import FailureNotifier, sink_from_config
from ..topology.provisioner import TopologyProvisioner
from .definition import PipelineDefinition, WorkflowDef
from .error_handler import ErrorHandler
from .job_logger import PipelineLogger
from .jobs import JobContext, JobRunner, runner_for

logger = logging.getLogger(__name__)

_BLOCKING = (JobStatus.FAILED, JobStatus.SKIPPED, JobStatus.CANCELLED)


class PipelineEngine:
    """Schedules the jobs of one workflow and aggregates their reports"""

    def __init__(self, definition: PipelineDefinition, workdir: str = ".",
                 artifact_root: str = "artifacts", log_dir: str = ".crossbroker/logs",
                 branch: str = "main", max_workers: int = 4,
                 store: Optional[ICacheStore] = None, notifier: Optional[FailureNotifier] = None,
                 provisioner: Optional[TopologyProvisioner] = None,
                 runner_factory: Callable[[JobContext], JobRunner] = runner_for,
                 poll_interval: float = 0.2):
        if max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        self.definition = definition
        self.workdir = Path(workdir)
        self.artifact_root = Path(artifact_root)
        self.branch = branch
        self.max_workers = max_workers
        self.store = store
        self.notifier = notifier
        self.provisioner = provisioner
        self.runner_factory = runner_factory
        self.poll_interval = poll_interval
        self.error_handler = ErrorHandler()
        self.pipeline_logger = PipelineLogger(log_dir)
        self.interrupted = False
        self._cancelled = threading.Event()
        self._active: Dict[str, JobContext] = {}
        self._lock = threading.Lock()

    def _store(self) -> Optional[ICacheStore]:
        if self.store is None and self.definition.caches:
            self.store = open_store(self.definition.store)
        return self.store

    def _notifier(self) -> FailureNotifier:
        if self.notifier is None:
            self.notifier = FailureNotifier(sink_from_config(self.definition.notifications))
        return self.notifier

    def _provisioner(self) -> Optional[TopologyProvisioner]:
        needs_topology = any(job.type == 'conformance' and job.options.get('integration', True)
                             for job in self.definition.jobs.values())
        if self.provisioner is None and needs_topology:
            self.provisioner = TopologyProvisioner(error_handler=self.error_handler)
        return self.provisioner

    @staticmethod
    def select_jobs(workflow: WorkflowDef, only_jobs: Optional[List[str]] = None) -> List[str]:
        """Workflow jobs in dependency order, limited to only_jobs and what they require"""
        order = workflow.topological_order()
        if not only_jobs:
            return order
        unknown = [name for name in only_jobs if name not in workflow.jobs]
        if unknown:
            raise ConfigurationError(f"Jobs {unknown} are not part of workflow {workflow.name}")
        wanted = set()
        pending = list(only_jobs)
        while pending:
            name = pending.pop()
            if name not in wanted:
                wanted.add(name)
                pending.extend(workflow.jobs[name])
        return [name for name in order if name in wanted]

    def cancel(self, reason: str = "pipeline cancelled") -> None:
        """Cancel every running job and keep queued jobs from starting"""
        self._cancelled.set()
        with self._lock:
            contexts = list(self._active.values())
        for context in contexts:
            context.scope.cancel(reason)

    def run(self, workflow_name: Optional[str] = None, only_jobs: Optional[List[str]] = None) -> PipelineReport:
        workflow = self.definition.workflow(workflow_name)
        order = self.select_jobs(workflow, only_jobs)
        run_id = f"run-{time.strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:6]}"
        epoch = int(time.time())

        reports = {name: JobReport(job_name=name) for name in order}
        report = PipelineReport(run_id=run_id, workflow=workflow.name, jobs=reports, start_time=time.time())
        self.pipeline_logger.log_run_start(run_id, workflow.name, order, self.branch)
        logger.info(f"Running workflow '{workflow.name}' ({workflow.trigger}) as {run_id}: {order}")

        store = self._store()
        notifier = self._notifier()
        provisioner = self._provisioner()
        contexts: Dict[str, JobContext] = {}
        futures = {}
        deadlines: Dict[str, float] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="job") as pool:
            while True:
                for name in order:
                    job_report = reports[name]
                    if job_report.status != JobStatus.PENDING:
                        continue
                    requires = workflow.jobs[name]
                    blocked = [r for r in requires if r in reports and reports[r].status in _BLOCKING]
                    if blocked:
                        job_report.status = JobStatus.SKIPPED
                        job_report.message = f"blocked by {', '.join(blocked)}"
                        logger.info(f"Job {name} skipped: requirement {blocked} did not pass")
                        continue
                    if self._cancelled.is_set():
                        job_report.status = JobStatus.CANCELLED
                        job_report.failure_kind = FailureKind.CANCELLED
                        job_report.message = "pipeline cancelled before the job started"
                        continue
                    if all(r not in reports or reports[r].status == JobStatus.PASSED for r in requires):
                        context = JobContext(
                            run_id=run_id,
                            job=self.definition.jobs[name],
                            workflow=workflow.name,
                            workdir=self.workdir,
                            artifact_root=self.artifact_root,
                            store=store,
                            caches=self.definition.caches,
                            notifier=notifier,
                            provisioner=provisioner,
                            error_handler=self.error_handler,
                            branch=self.branch,
                            epoch=epoch,
                            base_env=dict(os.environ),
                        )
                        contexts[name] = context
                        job_report.status = JobStatus.RUNNING
                        job_report.start_time = time.time()
                        with self._lock:
                            self._active[name] = context
                        self.pipeline_logger.log_job_start(run_id, name)
                        futures[pool.submit(self._run_job, context)] = name
                        timeout = self.definition.jobs[name].timeout
                        if timeout:
                            deadlines[name] = time.time() + timeout

                if not futures:
                    break

                try:
                    done, _ = wait(list(futures), timeout=self.poll_interval, return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    logger.warning("Interrupted, cancelling running jobs")
                    self.interrupted = True
                    self.cancel("interrupted")
                    continue

                for future in done:
                    name = futures.pop(future)
                    reports[name] = future.result()
                    deadlines.pop(name, None)
                    with self._lock:
                        self._active.pop(name, None)
                    self.pipeline_logger.log_job_result(run_id, reports[name])
                    logger.info(f"Job {name} finished: {reports[name].status.value}")

                now = time.time()
                for name, deadline in list(deadlines.items()):
                    if now >= deadline:
                        timeout = self.definition.jobs[name].timeout
                        contexts[name].scope.cancel(f"timed out after {timeout}s")
                        deadlines.pop(name)

        # Flush job logs in declaration order so parallel output never interleaves
        logger.info("")
        logger.info("Job Logs")
        for name in order:
            if name in contexts:
                contexts[name].log.flush()

        if provisioner is not None:
            provisioner.teardown_all()

        report.end_time = time.time()
        self.pipeline_logger.log_run_completion(report, self.error_handler.get_error_summary())
        self.pipeline_logger.generate_report(report)
        logger.info(f"Workflow '{workflow.name}' {'passed' if report.success else 'failed'}: "
                    f"{report.failures_by_kind() or 'no failures'}")
        return report

    def _run_job(self, context: JobContext) -> JobReport:
        try:
            runner = self.runner_factory(context)
            return runner.run()
        except Exception as e:
            logger.exception(f"Job {context.job.name} could not be started")
            return JobReport(
                job_name=context.job.name,
                status=JobStatus.FAILED,
                failure_kind=failure_kind_for(e),
                start_time=time.time(),
                end_time=time.time(),
                message=str(e),
            )
