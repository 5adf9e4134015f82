"""
Pipeline definitions - loading and validating the YAML pipeline file

A pipeline file declares the cache store, named caches, jobs and the
workflows that group jobs into a dependency graph.
"""
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from ..errors import ConfigurationError
from ..models import BackendVariant, FailureKind
from ..cache.cache import CacheSpec

JOB_TYPES = ('command', 'conformance', 'fuzz')
TRIGGERS = ('push', 'schedule')
VERBOSITY = ('error', 'warn', 'info', 'debug', 'trace')


@dataclass
class StepDef:
    """One shell step of a job"""
    name: str
    run: str
    skip_on_cache_hit: Optional[str] = None  # cache name
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None


@dataclass
class ArtifactDef:
    """A path to store under the run's artifact directory, optionally compressed"""
    path: str
    archive: bool = False
    name: Optional[str] = None


@dataclass
class JobDef:
    name: str
    type: str
    steps: List[StepDef] = field(default_factory=list)
    caches: List[str] = field(default_factory=list)
    requires: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    artifacts: List[ArtifactDef] = field(default_factory=list)
    failure_kind: FailureKind = FailureKind.STEP_FAILURE
    working_directory: str = "."
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkflowDef:
    name: str
    trigger: str = "push"
    jobs: Dict[str, List[str]] = field(default_factory=dict)  # job -> requires
    cron: Optional[str] = None

    def topological_order(self) -> List[str]:
        """Jobs ordered so every job follows its requirements; ties keep declaration order"""
        order: List[str] = []
        remaining = list(self.jobs)
        while remaining:
            ready = [job for job in remaining if all(req in order for req in self.jobs[job])]
            if not ready:
                raise ConfigurationError(f"Workflow {self.name}: dependency cycle among {remaining}")
            order.extend(ready)
            remaining = [job for job in remaining if job not in ready]
        return order


@dataclass
class PipelineDefinition:
    store: Dict[str, Any]
    caches: Dict[str, CacheSpec]
    jobs: Dict[str, JobDef]
    workflows: Dict[str, WorkflowDef]
    notifications: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None

    def workflow(self, name: Optional[str] = None) -> WorkflowDef:
        if name is None:
            if len(self.workflows) != 1:
                raise ConfigurationError(
                    f"Pipeline has {len(self.workflows)} workflows, choose one of {sorted(self.workflows)}"
                )
            return next(iter(self.workflows.values()))
        if name not in self.workflows:
            raise ConfigurationError(f"Unknown workflow '{name}', expected one of {sorted(self.workflows)}")
        return self.workflows[name]


class PipelineValidator:
    """Validator for pipeline definitions with detailed error reporting"""

    @staticmethod
    def validate_structure(config_dict: dict) -> list:
        errors = []
        if not isinstance(config_dict, dict):
            return ["pipeline: Must be a mapping"]

        for required in ('jobs', 'workflows'):
            if required not in config_dict:
                errors.append(f"Missing required field: {required}")

        caches = config_dict.get('caches') or {}
        if not isinstance(caches, dict):
            errors.append("caches: Must be a mapping")
            caches = {}
        for name, cache in caches.items():
            errors.extend(PipelineValidator._validate_cache(name, cache))

        jobs = config_dict.get('jobs') or {}
        if not isinstance(jobs, dict):
            errors.append("jobs: Must be a mapping")
            jobs = {}
        for name, job in jobs.items():
            errors.extend(PipelineValidator._validate_job(name, job, caches))

        workflows = config_dict.get('workflows') or {}
        if not isinstance(workflows, dict):
            errors.append("workflows: Must be a mapping")
            workflows = {}
        for name, workflow in workflows.items():
            errors.extend(PipelineValidator._validate_workflow(name, workflow, jobs))

        store = config_dict.get('store') or {}
        if store.get('type', 'local') not in ('local', 'valkey'):
            errors.append(f"store.type: Must be 'local' or 'valkey', got '{store.get('type')}'")

        return errors

    @staticmethod
    def _validate_cache(name: str, cache: Any) -> list:
        errors = []
        if not isinstance(cache, dict):
            return [f"caches.{name}: Must be a mapping"]
        if 'key' not in cache:
            errors.append(f"caches.{name}: Missing required field 'key'")
        if not cache.get('paths'):
            errors.append(f"caches.{name}: Missing required field 'paths'")
        if cache.get('mode', 'overwrite') not in ('overwrite', 'append'):
            errors.append(f"caches.{name}.mode: Must be 'overwrite' or 'append'")
        if cache.get('save_when', 'always') not in ('always', 'on_success'):
            errors.append(f"caches.{name}.save_when: Must be 'always' or 'on_success'")
        return errors

    @staticmethod
    def _validate_job(name: str, job: Any, caches: dict) -> list:
        errors = []
        if not isinstance(job, dict):
            return [f"jobs.{name}: Must be a mapping"]

        job_type = job.get('type', 'command')
        if job_type not in JOB_TYPES:
            errors.append(f"jobs.{name}.type: Invalid job type '{job_type}'")

        for cache in job.get('caches') or []:
            if cache not in caches:
                errors.append(f"jobs.{name}.caches: Unknown cache '{cache}'")

        steps = job.get('steps') or []
        if job_type == 'command' and not steps:
            errors.append(f"jobs.{name}: Command jobs need at least one step")
        for i, step in enumerate(steps):
            if isinstance(step, str):
                continue
            if not isinstance(step, dict) or 'run' not in step:
                errors.append(f"jobs.{name}.steps[{i}]: Missing required field 'run'")
                continue
            skip = step.get('skip_on_cache_hit')
            if skip and skip not in (job.get('caches') or []):
                errors.append(f"jobs.{name}.steps[{i}].skip_on_cache_hit: Cache '{skip}' not used by job")

        if 'failure_kind' in job:
            if job['failure_kind'] not in [kind.value for kind in FailureKind]:
                errors.append(f"jobs.{name}.failure_kind: Invalid failure kind '{job['failure_kind']}'")

        if 'timeout' in job:
            value = job['timeout']
            if not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"jobs.{name}.timeout: Must be a positive number")

        if job_type == 'conformance':
            backend = job.get('backend')
            if backend not in [variant.value for variant in BackendVariant]:
                errors.append(f"jobs.{name}.backend: Must be one of "
                              f"{[variant.value for variant in BackendVariant]}, got '{backend}'")
            nodes = job.get('nodes', 3)
            if not isinstance(nodes, int) or nodes < 1:
                errors.append(f"jobs.{name}.nodes: Must be a positive integer")
            if job.get('verbosity', 'info') not in VERBOSITY:
                errors.append(f"jobs.{name}.verbosity: Must be one of {list(VERBOSITY)}")
            entry_points = job.get('entry_points', 1)
            if not isinstance(entry_points, int) or entry_points < 1:
                errors.append(f"jobs.{name}.entry_points: Must be a positive integer")

        if job_type == 'fuzz':
            budget = job.get('budget', 100000)
            if not isinstance(budget, int) or budget < 1:
                errors.append(f"jobs.{name}.budget: Must be a positive integer")
            max_total_time = job.get('max_total_time')
            if max_total_time is not None and (not isinstance(max_total_time, int) or max_total_time < 1):
                errors.append(f"jobs.{name}.max_total_time: Must be a positive integer")

        for i, artifact in enumerate(job.get('artifacts') or []):
            if isinstance(artifact, str):
                continue
            if not isinstance(artifact, dict) or not (artifact.get('path') or artifact.get('archive')):
                errors.append(f"jobs.{name}.artifacts[{i}]: Needs 'path' or 'archive'")

        return errors

    @staticmethod
    def _validate_workflow(name: str, workflow: Any, jobs: dict) -> list:
        errors = []
        if not isinstance(workflow, dict):
            return [f"workflows.{name}: Must be a mapping"]
        if workflow.get('trigger', 'push') not in TRIGGERS:
            errors.append(f"workflows.{name}.trigger: Must be one of {list(TRIGGERS)}")
        if workflow.get('trigger') == 'schedule' and not workflow.get('cron'):
            errors.append(f"workflows.{name}.cron: Scheduled workflows need a cron expression")

        entries = workflow.get('jobs') or []
        if not entries:
            errors.append(f"workflows.{name}.jobs: Must contain at least one job")
        names = set()
        for entry in entries:
            job_name, _ = _workflow_entry(entry)
            if job_name is None:
                errors.append(f"workflows.{name}.jobs: Invalid entry {entry!r}")
            elif job_name not in jobs:
                errors.append(f"workflows.{name}.jobs: Unknown job '{job_name}'")
            else:
                names.add(job_name)

        for entry in entries:
            job_name, requires = _workflow_entry(entry)
            if job_name not in jobs:
                continue
            job_requires = (jobs[job_name] or {}).get('requires') or [] if isinstance(jobs[job_name], dict) else []
            for requirement in list(requires) + list(job_requires):
                if requirement not in names:
                    errors.append(f"workflows.{name}: Job '{job_name}' requires '{requirement}' "
                                  f"which is not part of the workflow")
        return errors


def _workflow_entry(entry: Any):
    """Workflow job entries are `name` or `{name: {requires: [...]}}`"""
    if isinstance(entry, str):
        return entry, []
    if isinstance(entry, dict) and len(entry) == 1:
        name, options = next(iter(entry.items()))
        options = options or {}
        if isinstance(options, dict):
            return name, list(options.get('requires') or [])
    return None, []


def _build_step(i: int, step: Union[str, dict]) -> StepDef:
    if isinstance(step, str):
        return StepDef(name=f"step {i + 1}", run=step)
    return StepDef(
        name=step.get('name', f"step {i + 1}"),
        run=step['run'],
        skip_on_cache_hit=step.get('skip_on_cache_hit'),
        env={k: str(v) for k, v in (step.get('env') or {}).items()},
        timeout=step.get('timeout'),
    )


def _build_artifact(artifact: Union[str, dict]) -> ArtifactDef:
    if isinstance(artifact, str):
        return ArtifactDef(path=artifact)
    if artifact.get('archive'):
        return ArtifactDef(path=artifact['archive'], archive=True, name=artifact.get('name'))
    return ArtifactDef(path=artifact['path'], name=artifact.get('name'))


_JOB_FIELDS = ('type', 'steps', 'caches', 'requires', 'env', 'timeout', 'artifacts',
               'failure_kind', 'working_directory')


def build_definition(config_dict: dict, source: Optional[str] = None) -> PipelineDefinition:
    """Turn a validated mapping into a PipelineDefinition"""
    caches = {}
    for name, cache in (config_dict.get('caches') or {}).items():
        caches[name] = CacheSpec(
            name=name,
            key=cache['key'],
            paths=list(cache['paths']),
            restore_keys=list(cache.get('restore_keys') or []),
            mode=cache.get('mode', 'overwrite'),
            save_when=cache.get('save_when', 'always'),
        )
        caches[name].validate()

    jobs = {}
    for name, job in config_dict['jobs'].items():
        jobs[name] = JobDef(
            name=name,
            type=job.get('type', 'command'),
            steps=[_build_step(i, step) for i, step in enumerate(job.get('steps') or [])],
            caches=list(job.get('caches') or []),
            requires=list(job.get('requires') or []),
            env={k: str(v) for k, v in (job.get('env') or {}).items()},
            timeout=job.get('timeout'),
            artifacts=[_build_artifact(a) for a in job.get('artifacts') or []],
            failure_kind=FailureKind(job.get('failure_kind', FailureKind.STEP_FAILURE.value)),
            working_directory=job.get('working_directory', '.'),
            options={k: v for k, v in job.items() if k not in _JOB_FIELDS},
        )

    workflows = {}
    for name, workflow in config_dict['workflows'].items():
        entries = {}
        for entry in workflow['jobs']:
            job_name, requires = _workflow_entry(entry)
            merged = list(jobs[job_name].requires)
            for requirement in requires:
                if requirement not in merged:
                    merged.append(requirement)
            entries[job_name] = merged
        workflows[name] = WorkflowDef(
            name=name,
            trigger=workflow.get('trigger', 'push'),
            jobs=entries,
            cron=workflow.get('cron'),
        )
        workflows[name].topological_order()

    return PipelineDefinition(
        store=dict(config_dict.get('store') or {'type': 'local'}),
        caches=caches,
        jobs=jobs,
        workflows=workflows,
        notifications=dict(config_dict.get('notifications') or {}),
        source=source,
    )


class PipelineLoader:
    """Loads pipeline definitions from YAML"""

    @staticmethod
    def load_from_file(file_path: Union[str, Path]) -> PipelineDefinition:
        file_path = Path(file_path)
        if not file_path.exists():
            raise ConfigurationError(f"Pipeline file not found: {file_path}")
        return PipelineLoader.load_from_string(file_path.read_text(), source=str(file_path))

    @staticmethod
    def load_from_string(config_text: str, source: Optional[str] = None) -> PipelineDefinition:
        try:
            config_dict = yaml.safe_load(config_text)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {source or 'pipeline'}: {e}")

        errors = PipelineValidator.validate_structure(config_dict)
        if errors:
            raise ConfigurationError(
                f"Invalid pipeline {source or ''}:\n  " + "\n  ".join(errors)
            )
        return build_definition(config_dict, source)
