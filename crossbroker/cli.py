#!/usr/bin/env python3
"""
Command-line interface for crossbroker
Provides commands for running pipeline workflows, validating pipeline files,
inspecting cache stores and printing the current run settings.
"""
import sys
import argparse
import json
import yaml
import traceback
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict
from urllib.parse import urlparse
from . import __version__
from .errors import ConfigurationError, PipelineError
from .main import CrossBroker
from .models import JobReport, JobStatus, PipelineReport
from .pipeline.definition import PipelineLoader


def store_config_from_uri(uri: str) -> Dict[str, Any]:
    """valkey://host:port/namespace selects a Valkey store, anything else is a local directory"""
    if uri.startswith('valkey://'):
        parsed = urlparse(uri)
        config = {'type': 'valkey', 'host': parsed.hostname or '127.0.0.1', 'port': parsed.port or 6379}
        namespace = parsed.path.strip('/')
        if namespace:
            config['namespace'] = namespace
        return config
    return {'type': 'local', 'path': uri}


class CrossBrokerCLI:
    """Command-line interface for crossbroker"""

    def run_pipeline(self, args) -> int:
        """Run one workflow of a pipeline file"""
        self._print_header(f"Pipeline: {args.pipeline}")

        try:
            app = CrossBroker.from_file(
                args.pipeline,
                workdir=args.workdir,
                artifact_root=args.artifacts,
                log_dir=args.log_dir,
                branch=args.branch,
                max_workers=args.max_workers,
            )
        except ConfigurationError as e:
            print(f"Error: {e}")
            print(f"\nTry validating your pipeline file first: crossbroker validate {args.pipeline}")
            return 1

        report = app.run_workflow(args.workflow, args.job or None)

        if args.verbose:
            self._print_detailed_report(report)
        else:
            self._print_summary_report(report)

        if args.output:
            self._save_report(report, args.output, args.format)

        if app.engine.interrupted:
            print("\n\ncrossbroker run was interrupted by user")
            return 130
        return report.exit_code

    def validate_pipeline(self, args) -> int:
        """Validate a pipeline definition file"""
        self._print_header(f"Validating pipeline: {args.pipeline}")

        try:
            definition = PipelineLoader.load_from_file(args.pipeline)
        except ConfigurationError as e:
            print(f"Error: Validation failed: {e}")
            return 1

        print("Pipeline file loaded successfully")
        print(f"Caches: {', '.join(sorted(definition.caches)) or 'none'}")
        print(f"Jobs: {len(definition.jobs)}")
        for workflow in definition.workflows.values():
            trigger = workflow.trigger if not workflow.cron else f"{workflow.trigger} ({workflow.cron})"
            print(f"Workflow {workflow.name}: {trigger}")
            if args.verbose:
                for name in workflow.topological_order():
                    requires = workflow.jobs[name]
                    job = definition.jobs[name]
                    suffix = f" <- {', '.join(requires)}" if requires else ""
                    print(f"  {job.type:12} {name}{suffix}")

        print("\nPipeline definition is valid!")
        return 0

    def list_cache(self, args) -> int:
        """List entries of a cache store, most recent first"""
        entries = CrossBroker.list_cache(store_config_from_uri(args.store), args.prefix)
        if not entries:
            print(f"No cache entries{f' matching {args.prefix}' if args.prefix else ''}")
            return 0
        for entry in entries:
            created = datetime.fromtimestamp(entry.created_at).isoformat(timespec='seconds')
            print(f"{created}  {entry.size:>12}  {entry.sha256[:12]}  {entry.key}")
        return 0

    def show_target(self, args) -> int:
        """Print the run settings derived from the environment"""
        settings = CrossBroker.current_settings()
        if args.format == 'env':
            for name, value in sorted(settings.to_env().items()):
                print(f"{name}={value}")
            return 0
        data = {
            'connect': settings.connect_addresses,
            'sasl_connect': settings.sasl_address,
            'proxy': settings.proxy_address,
            'auth_mode': settings.auth_mode.value,
            'integration': settings.integration_enabled,
            'backend': settings.backend.value if settings.backend else None,
            'verbosity': settings.verbosity,
            'feature_flags': sorted(settings.feature_flags),
        }
        if args.format == 'json':
            print(json.dumps(data, indent=2))
        else:
            print(yaml.dump(data, default_flow_style=False), end="")
        return 0

    def _print_header(self, title: str):
        """Print formatted header"""
        print()
        print("=" * 80)
        print(title)
        print("=" * 80)
        print()

    def _print_summary_report(self, report: PipelineReport):
        status = "PASSED" if report.success else "FAILED"
        duration = (report.end_time or report.start_time) - report.start_time

        print(f"\nRun: {report.run_id}")
        print(f"Workflow: {report.workflow}")
        print(f"Status: {status}")
        print(f"Duration: {duration:.2f}s")
        for name, job in report.jobs.items():
            kind = f" ({job.failure_kind.value})" if job.failure_kind else ""
            print(f"  {job.status.value.upper():9} {name}{kind}")

        failures = report.failures_by_kind()
        if failures:
            print("\nFailures by kind:")
            for kind, jobs in sorted(failures.items()):
                print(f"  {kind}: {', '.join(jobs)}")

    def _print_detailed_report(self, report: PipelineReport):
        """Print the summary plus messages, warnings and artifacts of every job"""
        self._print_summary_report(report)

        print("\nJob Details:")
        for name, job in report.jobs.items():
            print(f"  {name}: {job.status.value} in {job.duration:.2f}s")
            if job.message:
                print(f"    → {job.message}")
            for warning in job.warnings:
                print(f"    Warning: {warning}")
            for artifact in job.artifacts:
                print(f"    Artifact: {artifact}")

    def _save_report(self, report: PipelineReport, output_path: str, format: str):
        """Save the pipeline report to file"""
        try:
            output = Path(output_path)
            output.parent.mkdir(parents=True, exist_ok=True)

            data = self._report_to_dict(report)
            with open(output, 'w') as f:
                if format == 'json':
                    json.dump(data, f, indent=2, default=str)
                elif format == 'yaml':
                    yaml.safe_dump(json.loads(json.dumps(data, default=str)), f, default_flow_style=False)

            print(f"\nReport saved to {output_path}")

        except (OSError, TypeError, yaml.YAMLError) as e:
            print(f"\nFailed to save report: {e}")

    def _report_to_dict(self, report: PipelineReport) -> Dict[str, Any]:
        return {
            'run_id': report.run_id,
            'workflow': report.workflow,
            'timestamp': datetime.now().isoformat(),
            'success': report.success,
            'exit_code': report.exit_code,
            'duration': (report.end_time or report.start_time) - report.start_time,
            'failures_by_kind': report.failures_by_kind(),
            'jobs': {name: self._job_to_dict(job) for name, job in report.jobs.items()},
        }

    def _job_to_dict(self, job: JobReport) -> Dict[str, Any]:
        return {
            'status': job.status.value,
            'failure_kind': job.failure_kind.value if job.failure_kind else None,
            'duration': job.duration,
            'message': job.message,
            'details': job.details,
            'artifacts': list(job.artifacts),
            'warnings': list(job.warnings),
            'skipped': job.status == JobStatus.SKIPPED,
        }


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI"""
    parser = argparse.ArgumentParser(
        prog='crossbroker',
        description='crossbroker - Cross-backend protocol conformance and fuzz-regression pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the ci workflow
  crossbroker run examples/pipeline.yaml --workflow ci

  # Run a single job and whatever it requires
  crossbroker run examples/pipeline.yaml --workflow ci --job test-kafka

  # Run the scheduled fuzz workflow and save the report
  crossbroker run examples/pipeline.yaml --workflow fuzz --output report.json

  # Validate a pipeline file
  crossbroker validate examples/pipeline.yaml

  # List fuzz-state entries of a cache store
  crossbroker cache list .crossbroker-cache --prefix fuzz-state

  # Show the settings the conformance suites would receive
  crossbroker target --format json
        """
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'crossbroker {__version__}'
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    run_parser = subparsers.add_parser(
        'run',
        help='Run a workflow of a pipeline file'
    )
    run_parser.add_argument(
        'pipeline',
        help='Path to pipeline YAML file'
    )
    run_parser.add_argument(
        '--workflow',
        type=str,
        help='Workflow to run (required when the pipeline has more than one)'
    )
    run_parser.add_argument(
        '--job',
        action='append',
        metavar='NAME',
        help='Only run this job and its requirements (repeatable)'
    )
    run_parser.add_argument(
        '--branch',
        type=str,
        default='main',
        help='Branch name used in cache keys (default: main)'
    )
    run_parser.add_argument(
        '--workdir',
        type=str,
        default='.',
        help='Project directory the jobs run in (default: .)'
    )
    run_parser.add_argument(
        '--artifacts',
        type=str,
        default='artifacts',
        help='Artifact root directory (default: artifacts)'
    )
    run_parser.add_argument(
        '--log-dir',
        type=str,
        default='.crossbroker/logs',
        help='Directory for JSON run logs and reports (default: .crossbroker/logs)'
    )
    run_parser.add_argument(
        '--max-workers',
        type=int,
        default=4,
        help='Maximum number of jobs running in parallel (default: 4)'
    )
    run_parser.add_argument(
        '--output',
        type=str,
        help='Path to save the pipeline report'
    )
    run_parser.add_argument(
        '--format',
        choices=['json', 'yaml'],
        default='json',
        help='Output format for the report (default: json)'
    )
    run_parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )

    validate_parser = subparsers.add_parser(
        'validate',
        help='Validate a pipeline definition file'
    )
    validate_parser.add_argument(
        'pipeline',
        help='Path to pipeline YAML file'
    )
    validate_parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )

    cache_parser = subparsers.add_parser(
        'cache',
        help='Inspect a cache store'
    )
    cache_subparsers = cache_parser.add_subparsers(dest='cache_command', help='Cache command')
    list_parser = cache_subparsers.add_parser(
        'list',
        help='List cache entries, most recent first'
    )
    list_parser.add_argument(
        'store',
        help='Local store directory or valkey://host:port/namespace'
    )
    list_parser.add_argument(
        '--prefix',
        type=str,
        default='',
        help='Only list keys starting with this prefix'
    )

    target_parser = subparsers.add_parser(
        'target',
        help='Print the run settings derived from the environment'
    )
    target_parser.add_argument(
        '--format',
        choices=['env', 'json', 'yaml'],
        default='env',
        help='Output format (default: env)'
    )

    return parser


def main(argv=None):
    """Main entry point for CLI"""

    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if getattr(args, 'verbose', False) else logging.INFO,
        format='%(levelname)-5s | %(filename)s:%(lineno)-3d | %(message)s',
        handlers=[logging.StreamHandler()]
    )

    if not args.command:
        print("Error: No command specified\n")
        parser.print_help()
        print("\nCommon commands:")
        print("  crossbroker run pipeline.yaml --workflow ci     # Run a workflow")
        print("  crossbroker validate pipeline.yaml              # Validate a pipeline file")
        return 1

    cli = CrossBrokerCLI()

    try:
        if args.command == 'run':
            return cli.run_pipeline(args)
        elif args.command == 'validate':
            return cli.validate_pipeline(args)
        elif args.command == 'cache':
            if args.cache_command != 'list':
                print("Error: cache command requires a subcommand\n")
                print("Example:")
                print("  crossbroker cache list .crossbroker-cache --prefix fuzz-state")
                return 1
            return cli.list_cache(args)
        elif args.command == 'target':
            return cli.show_target(args)
    except KeyboardInterrupt:
        print("\n\ncrossbroker was interrupted by user")
        return 130
    except PipelineError as e:
        print(f"\nError: {e}")
        return 1
    except Exception as e:
        print(f"\nUnexpected error: {e}")
        if getattr(args, 'verbose', False):
            traceback.print_exc()
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
