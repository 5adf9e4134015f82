"""
Conformance Test Executor - runs the client's suites against a target

The behavioral suite and the documentation examples run as separate
invocations. Both always run; every case outcome is reported.
"""
import logging
import os
import re
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from ..config import RunSettings
from ..interfaces import IConformanceExecutor
from ..models import CaseStatus, ConformanceResult, SuiteKind, SuiteResult
from ..utils.output_parsers import format_case_summary, parse_libtest_output

logger = logging.getLogger(__name__)

SUITE_EXIT_CASE = "<suite exit>"


@dataclass
class SuiteSpec:
    """One suite invocation; command may reference {features}"""
    kind: SuiteKind
    command: str
    timeout: Optional[float] = None

    def render(self, features: str) -> List[str]:
        return shlex.split(self.command.format(features=features))


DEFAULT_SUITES = [
    SuiteSpec(SuiteKind.BEHAVIORAL, "cargo test {features} --all-targets"),
    SuiteSpec(SuiteKind.DOCUMENTATION, "cargo test {features} --doc"),
]


class ConformanceExecutor(IConformanceExecutor):
    """Runs suite passes with the environment derived from RunSettings"""

    def __init__(self, workdir: str = ".", suites: Optional[List[SuiteSpec]] = None,
                 features: str = "--all-features", log_dir: Optional[str] = None,
                 base_env: Optional[Mapping[str, str]] = None, scope=None):
        self.workdir = workdir
        self.suites = list(suites) if suites is not None else list(DEFAULT_SUITES)
        self.features = features
        self.log_dir = Path(log_dir) if log_dir else None
        self.base_env = dict(base_env) if base_env is not None else dict(os.environ)
        self.scope = scope

    def build_env(self, settings: RunSettings) -> Dict[str, str]:
        env = dict(self.base_env)
        for name in ('KAFKA_CONNECT', 'KAFKA_SASL_CONNECT', 'SOCKS_PROXY', 'TEST_INTEGRATION',
                     'TEST_BROKER_IMPL', 'TEST_JAVA_INTEROPT', 'TEST_RESOURCE_PREFIX'):
            env.pop(name, None)
        env.update(settings.to_env())
        return env

    def run(self, settings: RunSettings) -> ConformanceResult:
        settings.validate()
        result = ConformanceResult(variant=settings.backend)
        for spec in self.suites:
            suite = self.run_suite(spec, settings)
            result.suites.append(suite)
            logger.info(f"{spec.kind.value} suite: exit {suite.exit_code}, "
                        f"{format_case_summary({k: v.value for k, v in suite.cases.items()})}")

        logger.info(f"Conformance run complete: {result.count(CaseStatus.PASSED)} passed, "
                    f"{result.count(CaseStatus.FAILED)} failed, {result.count(CaseStatus.SKIPPED)} skipped")
        return result

    def run_suite(self, spec: SuiteSpec, settings: RunSettings) -> SuiteResult:
        cmd = spec.render(self.features)
        env = self.build_env(settings)
        logger.info(f"Running {spec.kind.value} suite: {' '.join(cmd)}")

        start = time.time()
        output, exit_code = self._execute(cmd, env, spec.timeout)
        duration = time.time() - start

        log_file = None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            log_path = self.log_dir / f"{spec.kind.value}.log"
            log_path.write_text(output)
            log_file = str(log_path)

        cases = {
            f"{spec.kind.value}::{name}": CaseStatus(status)
            for name, status in parse_libtest_output(output).items()
        }
        if exit_code != 0 and not any(status == CaseStatus.FAILED for status in cases.values()):
            # Compile errors and crashes produce no case lines
            cases[f"{spec.kind.value}::{SUITE_EXIT_CASE}"] = CaseStatus.FAILED

        return SuiteResult(kind=spec.kind, cases=cases, exit_code=exit_code,
                           duration=duration, log_file=log_file)

    def _execute(self, cmd: List[str], env: Dict[str, str], timeout: Optional[float]) -> Tuple[str, int]:
        try:
            process = subprocess.Popen(
                cmd, cwd=self.workdir, env=env,
                stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True,
            )
        except OSError as e:
            logger.error(f"Could not start suite command {cmd[0]}: {e}")
            return f"failed to start {cmd[0]}: {e}\n", 127

        if self.scope is not None:
            self.scope.register_process(process)
        try:
            output, _ = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            output, _ = process.communicate()
            output = (output or "") + f"\nsuite timed out after {timeout:.0f}s\n"
            logger.error(f"Suite {' '.join(cmd)} timed out after {timeout:.0f}s")
        finally:
            if self.scope is not None:
                self.scope.unregister_process(process)
        return output or "", process.returncode


def compare_runs(first: ConformanceResult, second: ConformanceResult,
                 time_sensitive: Iterable[str] = ()) -> Dict[str, Tuple[Optional[str], Optional[str]]]:
    """
    Cases whose status differs between two runs.

    Cases matching any time_sensitive regex are excluded. A case present in
    only one run is reported with None for the other side.
    """
    patterns = [re.compile(pattern) for pattern in time_sensitive]
    first_cases, second_cases = first.cases, second.cases
    differences = {}
    for case in sorted(set(first_cases) | set(second_cases)):
        if any(pattern.search(case) for pattern in patterns):
            continue
        a, b = first_cases.get(case), second_cases.get(case)
        if a != b:
            differences[case] = (a.value if a else None, b.value if b else None)
    return differences
