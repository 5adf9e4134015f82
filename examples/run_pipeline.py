#!/usr/bin/env python3
"""
Example script demonstrating how to drive crossbroker from Python
"""
import sys
import argparse
import logging
from pathlib import Path

from crossbroker.main import CrossBroker
from crossbroker.pipeline.definition import PipelineLoader


def validate(pipeline_file):
    """Load a pipeline and print its workflows"""
    print("=" * 80)
    print(f"Validating {pipeline_file}")
    print("=" * 80)

    definition = PipelineLoader.load_from_file(pipeline_file)
    for workflow in definition.workflows.values():
        print(f"{workflow.name} ({workflow.trigger}): {', '.join(workflow.topological_order())}")
    return definition


def run(pipeline_file, workflow, jobs=None):
    """Run a workflow and print per-job outcomes"""
    print("=" * 80)
    print(f"Running workflow {workflow}")
    print("=" * 80)

    app = CrossBroker.from_file(pipeline_file, max_workers=2)
    report = app.run_workflow(workflow, jobs)

    print("\n" + "=" * 80)
    print("Pipeline Results")
    print("=" * 80)
    print(f"Run ID: {report.run_id}")
    print(f"Success: {report.success}")
    for name, job in report.jobs.items():
        kind = f" [{job.failure_kind.value}]" if job.failure_kind else ""
        print(f"  {name}: {job.status.value}{kind}")
    return report


def main():
    parser = argparse.ArgumentParser(description="crossbroker examples")
    parser.add_argument('--pipeline', default=str(Path(__file__).parent / "pipeline.yaml"))
    parser.add_argument('--workflow', default='ci')
    parser.add_argument('--job', action='append', help='Only run this job and its requirements')
    parser.add_argument('--validate-only', action='store_true')
    args = parser.parse_args()

    logging.basicConfig(format='%(levelname)-5s | %(filename)s:%(lineno)-3d | %(message)s', level=logging.INFO)

    validate(args.pipeline)
    if args.validate_only:
        return 0
    report = run(args.pipeline, args.workflow, args.job)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
