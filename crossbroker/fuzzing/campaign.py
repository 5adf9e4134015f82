"""
Fuzz Campaign Driver - bounded, sequential fuzzing of every registered target

A crash halts only the target that produced it; the remaining targets still
run their full iteration budget. Corpus growth and crash artifacts stay in
the per-target containers so the fuzz cache can carry them forward.
"""
import logging
import time
import uuid
from pathlib import Path
from typing import List, Optional, Set
from ..interfaces import IFuzzCampaignDriver, IFuzzHarness
from ..models import CampaignResult, FuzzTarget, TargetCampaignResult, TargetStatus

logger = logging.getLogger(__name__)

ARTIFACT_PREFIXES = ("crash-", "leak-", "timeout-", "oom-")


def list_files(directory: Path) -> Set[str]:
    if not directory.exists():
        return set()
    return {str(path.relative_to(directory)) for path in directory.rglob("*") if path.is_file()}


class FuzzCampaignDriver(IFuzzCampaignDriver):
    """Runs one campaign: build once, then each target strictly one at a time"""

    def __init__(self, harness: IFuzzHarness, budget: int = 100000, cancel_event=None):
        if budget < 1:
            raise ValueError("Iteration budget must be positive")
        self.harness = harness
        self.budget = budget
        self.cancel_event = cancel_event

    def run_campaign(self, targets: Optional[List[FuzzTarget]] = None) -> CampaignResult:
        campaign_id = f"campaign-{uuid.uuid4().hex[:8]}"
        start_time = time.time()

        # HarnessBuildError propagates: nothing can run without the harness
        self.harness.build()
        targets = targets if targets is not None else self.harness.discover_targets()
        logger.info(f"Campaign {campaign_id}: {len(targets)} targets, budget {self.budget} iterations each")

        results = []
        for target in targets:
            if self.cancel_event is not None and self.cancel_event.is_set():
                logger.warning(f"Campaign {campaign_id} cancelled before {target.name}")
                break
            results.append(self.run_target(target))

        result = CampaignResult(campaign_id=campaign_id, targets=results,
                                start_time=start_time, end_time=time.time())
        if result.success:
            logger.info(f"Campaign {campaign_id} clean across {len(results)} targets")
        else:
            logger.error(f"Campaign {campaign_id} failed: crashed={result.crashed_targets}, "
                         f"errored={result.errored_targets}")
        return result

    def run_target(self, target: FuzzTarget) -> TargetCampaignResult:
        corpus_before = list_files(target.corpus_dir)
        artifacts_before = list_files(target.artifact_dir)
        start = time.time()

        try:
            run = self.harness.run(target, self.budget)
        except OSError as e:
            logger.error(f"Target {target.name} could not be run: {e}")
            return TargetCampaignResult(
                target=target.name, status=TargetStatus.ERROR, budget=self.budget,
                corpus_before=len(corpus_before), duration=time.time() - start,
                error_message=str(e),
            )

        corpus_delta = sorted(target.corpus_dir / name
                              for name in list_files(target.corpus_dir) - corpus_before)
        crash_artifacts = sorted(
            target.artifact_dir / name
            for name in list_files(target.artifact_dir) - artifacts_before
            if Path(name).name.startswith(ARTIFACT_PREFIXES)
        )

        error_message = None
        if crash_artifacts or (run.exit_code != 0 and run.crash_reason):
            status = TargetStatus.CRASHED
            logger.error(f"Target {target.name} crashed (last reported iteration {run.iterations}) "
                         f"({run.crash_reason or 'crash'}), artifacts: {[p.name for p in crash_artifacts]}")
        elif run.timed_out:
            status = TargetStatus.ERROR
            error_message = f"killed after exceeding its wall-clock limit ({run.iterations} iterations)"
        elif run.exit_code != 0:
            status = TargetStatus.ERROR
            error_message = f"harness exited with {run.exit_code} without a crash artifact"
        elif run.iterations < self.budget:
            status = TargetStatus.ERROR
            error_message = f"stopped after {run.iterations} of {self.budget} iterations"
        else:
            status = TargetStatus.CLEAN
            logger.info(f"Target {target.name} clean: {run.iterations} iterations, "
                        f"{len(corpus_delta)} new corpus entries")

        if error_message:
            logger.error(f"Target {target.name}: {error_message}")

        return TargetCampaignResult(
            target=target.name,
            status=status,
            budget=self.budget,
            iterations_run=run.iterations,
            corpus_before=len(corpus_before),
            corpus_delta=corpus_delta,
            crash_artifacts=crash_artifacts,
            duration=time.time() - start,
            error_message=error_message,
        )
