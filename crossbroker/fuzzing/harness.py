"""
cargo-fuzz harness - builds and runs libFuzzer targets as subprocesses
"""
import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional
from ..errors import HarnessBuildError
from ..interfaces import IFuzzHarness
from ..models import FuzzTarget
from ..utils.output_parsers import parse_libfuzzer_stats

logger = logging.getLogger(__name__)

# Extra time granted after -max_total_time before the process is killed
KILL_GRACE_SECONDS = 30


@dataclass
class HarnessRun:
    """Raw outcome of one harness invocation"""
    target: str
    exit_code: int
    output: str
    iterations: int = 0  # last reported counter unless completed
    completed: bool = False
    timed_out: bool = False
    crash_reason: Optional[str] = None
    reported_artifacts: List[str] = field(default_factory=list)
    duration: float = 0.0


class CargoFuzzHarness(IFuzzHarness):
    """Targets live in <fuzz_dir>/fuzz_targets/*.rs with corpus and artifacts beside them"""

    def __init__(self, project_dir: str = ".", fuzz_dir: str = "fuzz", toolchain: str = "+nightly",
                 cargo: str = "cargo", max_total_time: Optional[int] = None,
                 build_timeout: Optional[float] = None, log_dir: Optional[str] = None, scope=None):
        self.project_dir = Path(project_dir)
        self.fuzz_dir = self.project_dir / fuzz_dir
        self.toolchain = toolchain
        self.cargo = cargo
        self.max_total_time = max_total_time
        self.build_timeout = build_timeout
        self.log_dir = Path(log_dir) if log_dir else None
        self.scope = scope

    def _base_cmd(self) -> List[str]:
        cmd = [self.cargo]
        if self.toolchain:
            cmd.append(self.toolchain)
        return cmd + ['fuzz']

    def build(self) -> None:
        cmd = self._base_cmd() + ['build']
        logger.info(f"Building fuzz harness: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, cwd=str(self.project_dir), capture_output=True,
                                    text=True, timeout=self.build_timeout)
        except FileNotFoundError as e:
            raise HarnessBuildError(f"Fuzz toolchain not available: {e}", component="fuzzing")
        except subprocess.TimeoutExpired:
            raise HarnessBuildError(f"Fuzz harness build timed out after {self.build_timeout}s", component="fuzzing")
        except (OSError, subprocess.SubprocessError) as e:
            raise HarnessBuildError(f"Fuzz harness build could not run: {e}", component="fuzzing")
        if result.returncode != 0:
            tail = "\n".join((result.stdout + result.stderr).strip().splitlines()[-20:])
            raise HarnessBuildError(f"Fuzz harness build failed (exit {result.returncode}):\n{tail}",
                                    component="fuzzing")
        logger.info("Fuzz harness built")

    def discover_targets(self) -> List[FuzzTarget]:
        targets = []
        for source in sorted((self.fuzz_dir / "fuzz_targets").glob("*.rs")):
            name = source.stem
            targets.append(FuzzTarget(
                name=name,
                corpus_dir=self.fuzz_dir / "corpus" / name,
                artifact_dir=self.fuzz_dir / "artifacts" / name,
            ))
        logger.info(f"Discovered {len(targets)} fuzz targets: {[t.name for t in targets]}")
        return targets

    def run(self, target: FuzzTarget, runs: int) -> HarnessRun:
        target.corpus_dir.mkdir(parents=True, exist_ok=True)
        target.artifact_dir.mkdir(parents=True, exist_ok=True)

        cmd = self._base_cmd() + ['run', target.name, '--', f"-runs={runs}"]
        timeout = None
        if self.max_total_time:
            cmd.append(f"-max_total_time={self.max_total_time}")
            timeout = self.max_total_time + KILL_GRACE_SECONDS
        logger.info(f"Fuzzing {target.name}: {' '.join(cmd)}")

        start = time.time()
        timed_out = False
        process = subprocess.Popen(cmd, cwd=str(self.project_dir), stdout=subprocess.PIPE,
                                   stderr=subprocess.STDOUT, text=True)
        if self.scope is not None:
            self.scope.register_process(process)
        try:
            output, _ = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            output, _ = process.communicate()
            timed_out = True
        finally:
            if self.scope is not None:
                self.scope.unregister_process(process)
        output = output or ""

        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            (self.log_dir / f"{target.name}.log").write_text(output)

        stats = parse_libfuzzer_stats(output)
        return HarnessRun(
            target=target.name,
            exit_code=process.returncode,
            output=output,
            iterations=stats['iterations'],
            completed=stats['completed'],
            timed_out=timed_out,
            crash_reason=stats['crash_reason'],
            reported_artifacts=stats['artifacts'],
            duration=time.time() - start,
        )
