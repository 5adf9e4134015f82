"""
Pipeline Logger - JSON run logs and text summary reports
"""
import json
import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from ..models import JobReport, JobStatus, PipelineReport

logger = logging.getLogger()


class PipelineLogger:
    """
    Thread-safe run logging with one JSON document per pipeline run.
    Records job starts, job outcomes, errors and the final aggregate.
    """

    def __init__(self, log_dir: str = ".crossbroker/logs"):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.run_logs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def log_run_start(self, run_id: str, workflow: str, jobs: List[str], branch: str = "") -> None:
        with self._lock:
            self.run_logs[run_id] = {
                'run_id': run_id,
                'workflow': workflow,
                'branch': branch,
                'start_time': time.time(),
                'start_timestamp': datetime.now().isoformat(),
                'planned_jobs': list(jobs),
                'jobs': {},
                'errors': [],
                'status': 'running',
            }
            self._write_log_to_disk(run_id)
        logger.info(f"Run {run_id}: workflow '{workflow}' with {len(jobs)} jobs")

    def log_job_start(self, run_id: str, job_name: str) -> None:
        with self._lock:
            if run_id not in self.run_logs:
                logger.warning(f"No active run {run_id} to log job start to")
                return
            self.run_logs[run_id]['jobs'][job_name] = {
                'status': JobStatus.RUNNING.value,
                'start_timestamp': datetime.now().isoformat(),
            }
            self._write_log_to_disk(run_id)

    def log_job_result(self, run_id: str, report: JobReport) -> None:
        with self._lock:
            if run_id not in self.run_logs:
                logger.warning(f"No active run {run_id} to log job result to")
                return
            self.run_logs[run_id]['jobs'][report.job_name] = self._serialize_job(report)
            self._write_log_to_disk(run_id)

    def log_error(self, run_id: str, message: str, job_name: Optional[str] = None) -> None:
        with self._lock:
            if run_id not in self.run_logs:
                return
            self.run_logs[run_id]['errors'].append({
                'timestamp': time.time(),
                'job': job_name,
                'message': message,
            })
            self._write_log_to_disk(run_id)
        logger.error(f"Logged error: {message}")

    def log_run_completion(self, report: PipelineReport, error_summary: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            if report.run_id not in self.run_logs:
                logger.warning(f"No log found for run {report.run_id}")
                return
            end_time = report.end_time or time.time()
            self.run_logs[report.run_id].update({
                'end_time': end_time,
                'end_timestamp': datetime.fromtimestamp(end_time).isoformat(),
                'duration': end_time - report.start_time,
                'success': report.success,
                'exit_code': report.exit_code,
                'failures_by_kind': report.failures_by_kind(),
                'error_summary': error_summary,
                'status': 'completed' if report.success else 'failed',
            })
            for name, job in report.jobs.items():
                self.run_logs[report.run_id]['jobs'][name] = self._serialize_job(job)
            self._write_log_to_disk(report.run_id)

        logger.info(f"Completed run {report.run_id} - {'SUCCESS' if report.success else 'FAILED'}")

    def generate_report(self, report: PipelineReport) -> str:
        """Human-readable summary of one run, also written next to the JSON log"""
        end_time = report.end_time or time.time()
        counts: Dict[str, int] = {}
        for job in report.jobs.values():
            counts[job.status.value] = counts.get(job.status.value, 0) + 1

        lines = [
            "=" * 80,
            f"CROSSBROKER PIPELINE REPORT - {report.workflow}",
            "=" * 80,
            "",
            f"Run:        {report.run_id}",
            f"Result:     {'PASS' if report.success else 'FAIL'} (exit {report.exit_code})",
            f"Duration:   {end_time - report.start_time:.2f}s",
            f"Jobs:       " + ", ".join(f"{count} {status}" for status, count in sorted(counts.items())),
            "",
            "=" * 80,
            "JOB DETAILS",
            "=" * 80,
            "",
        ]

        for name, job in report.jobs.items():
            lines.append(f"{job.status.value.upper():9} | {name} ({job.duration:.2f}s)")
            if job.failure_kind is not None:
                lines.append(f"          Failure: {job.failure_kind.value}")
            if job.message:
                lines.append(f"          {job.message}")
            for warning in job.warnings:
                lines.append(f"          Warning: {warning}")
            for artifact in job.artifacts:
                lines.append(f"          Artifact: {artifact}")
            lines.append("")

        failures = report.failures_by_kind()
        if failures:
            lines.append("FAILURES BY KIND")
            for kind, jobs in sorted(failures.items()):
                lines.append(f"  {kind}: {', '.join(jobs)}")
            lines.append("")

        lines.append("=" * 80)
        text = "\n".join(lines)

        report_file = self.log_dir / f"report_{report.run_id}.txt"
        report_file.write_text(text)
        logger.info(f"Generated report: {report_file}")
        return text

    @staticmethod
    def _serialize_job(report: JobReport) -> Dict[str, Any]:
        return {
            'status': report.status.value,
            'failure_kind': report.failure_kind.value if report.failure_kind else None,
            'start_time': report.start_time,
            'end_time': report.end_time,
            'duration': report.duration,
            'message': report.message,
            'details': report.details,
            'artifacts': list(report.artifacts),
            'warnings': list(report.warnings),
        }

    def _write_log_to_disk(self, run_id: str) -> None:
        log_file = self.log_dir / f"{run_id}.json"
        try:
            with open(log_file, 'w') as f:
                json.dump(self.run_logs[run_id], f, indent=2, default=str)
        except (OSError, TypeError) as e:
            logger.error(f"Failed to write log to disk: {e}")

    def get_run_log(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self.run_logs.get(run_id)
