import os
import pytest
import logging
import threading
from pathlib import Path
from unittest.mock import Mock
from crossbroker.cache import CacheSpec, LocalCacheStore
from crossbroker.cache.cache import MODE_APPEND
from crossbroker.errors import HarnessBuildError
from crossbroker.fuzzing import CargoFuzzHarness, FuzzCampaignDriver, HarnessRun
from crossbroker.interfaces import IFuzzHarness
from crossbroker.models import FailureKind, FuzzTarget, JobStatus, TargetStatus
from crossbroker.notify import FailureNotifier
from crossbroker.pipeline.definition import JobDef
from crossbroker.pipeline.jobs import FuzzJob, JobContext

logging.basicConfig(format='%(levelname)-5s | %(filename)s:%(lineno)-3d | %(message)s', level=logging.INFO, force=True)

TARGETS = ["parse_frame", "protocol_reader", "record_batch"]
BUDGET = 100000


@pytest.fixture(autouse=True)
def test_separator(request):
    print(f"\n{'='*60}")
    print(f"Running: {request.node.name}")
    print(f"{'='*60}")
    yield
    print(f"{'='*60}")
    print(f"Completed: {request.node.name}")
    print(f"{'='*60}\n")


class FakeHarness(IFuzzHarness):
    """
    Simulates libFuzzer targets on disk.

    crashes maps a target to (iteration, new corpus entries) at which it
    writes a crash artifact and stops.
    """

    def __init__(self, fuzz_dir: Path, crashes=None, build_error=None, outcomes=None):
        self.fuzz_dir = Path(fuzz_dir)
        self.crashes = crashes or {}
        self.build_error = build_error
        self.outcomes = outcomes or {}
        self.builds = 0
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def build(self):
        self.builds += 1
        if self.build_error is not None:
            raise self.build_error

    def discover_targets(self):
        return [FuzzTarget(name, self.fuzz_dir / "corpus" / name, self.fuzz_dir / "artifacts" / name)
                for name in TARGETS]

    def run(self, target, runs):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.calls.append((target.name, runs))
            target.corpus_dir.mkdir(parents=True, exist_ok=True)
            target.artifact_dir.mkdir(parents=True, exist_ok=True)
            if target.name in self.outcomes:
                outcome = self.outcomes[target.name]
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome

            if target.name in self.crashes:
                iteration, new_entries = self.crashes[target.name]
                for i in range(new_entries):
                    (target.corpus_dir / f"input-{i:04d}").write_bytes(b"x%d" % i)
                (target.artifact_dir / "crash-da39a3ee").write_bytes(b"\x00\xff")
                return HarnessRun(target=target.name, exit_code=77, output="deadly signal",
                                  iterations=iteration, crash_reason="deadly signal",
                                  reported_artifacts=[str(target.artifact_dir / "crash-da39a3ee")])

            (target.corpus_dir / f"{target.name}-new").write_bytes(b"seed")
            return HarnessRun(target=target.name, exit_code=0, output="Done", iterations=runs, completed=True)
        finally:
            with self._lock:
                self.active -= 1


class TestFuzzCampaignDriver:

    def test_crash_halts_only_its_target(self, tmp_path):
        harness = FakeHarness(tmp_path / "fuzz", crashes={"parse_frame": (4000, 120)})
        result = FuzzCampaignDriver(harness, budget=BUDGET).run_campaign()

        assert harness.builds == 1
        assert harness.calls == [(name, BUDGET) for name in TARGETS]
        assert harness.max_active == 1
        assert result.crashed_targets == ["parse_frame"]
        assert not result.success

        by_name = {t.target: t for t in result.targets}
        crashed = by_name["parse_frame"]
        assert crashed.status == TargetStatus.CRASHED
        assert crashed.iterations_run == 4000
        assert len(crashed.corpus_delta) == 120
        assert [p.name for p in crashed.crash_artifacts] == ["crash-da39a3ee"]
        for name in ("protocol_reader", "record_batch"):
            assert by_name[name].status == TargetStatus.CLEAN
            assert by_name[name].iterations_run == BUDGET

    def test_clean_campaign(self, tmp_path):
        result = FuzzCampaignDriver(FakeHarness(tmp_path / "fuzz"), budget=1000).run_campaign()
        assert result.success
        assert result.campaign_id.startswith("campaign-")
        assert result.end_time >= result.start_time

    def test_corpus_delta_excludes_existing_entries(self, tmp_path):
        corpus = tmp_path / "fuzz" / "corpus" / "record_batch"
        corpus.mkdir(parents=True)
        (corpus / "old-1").write_bytes(b"a")
        (corpus / "old-2").write_bytes(b"b")

        result = FuzzCampaignDriver(FakeHarness(tmp_path / "fuzz"), budget=10).run_campaign()
        target = next(t for t in result.targets if t.target == "record_batch")
        assert target.corpus_before == 2
        assert [p.name for p in target.corpus_delta] == ["record_batch-new"]

    def test_preexisting_crash_artifacts_not_reported(self, tmp_path):
        artifacts = tmp_path / "fuzz" / "artifacts" / "protocol_reader"
        artifacts.mkdir(parents=True)
        (artifacts / "crash-old").write_bytes(b"old")

        result = FuzzCampaignDriver(FakeHarness(tmp_path / "fuzz"), budget=10).run_campaign()
        assert result.success

    @pytest.mark.parametrize("outcome,message", [
        (HarnessRun(target="record_batch", exit_code=1, output="", iterations=10), "without a crash artifact"),
        (HarnessRun(target="record_batch", exit_code=0, output="", iterations=5), "stopped after 5 of 10"),
        (HarnessRun(target="record_batch", exit_code=-9, output="", iterations=7, timed_out=True), "wall-clock"),
        (OSError("cargo not found"), "cargo not found"),
    ])
    def test_incomplete_target_is_error(self, tmp_path, outcome, message):
        harness = FakeHarness(tmp_path / "fuzz", outcomes={"record_batch": outcome})
        result = FuzzCampaignDriver(harness, budget=10).run_campaign()

        target = next(t for t in result.targets if t.target == "record_batch")
        assert target.status == TargetStatus.ERROR
        assert message in target.error_message
        assert result.errored_targets == ["record_batch"]
        assert result.crashed_targets == []

    def test_build_failure_runs_nothing(self, tmp_path):
        harness = FakeHarness(tmp_path / "fuzz", build_error=HarnessBuildError("linker failed"))
        with pytest.raises(HarnessBuildError):
            FuzzCampaignDriver(harness).run_campaign()
        assert harness.calls == []

    def test_explicit_targets(self, tmp_path):
        harness = FakeHarness(tmp_path / "fuzz")
        targets = [t for t in harness.discover_targets() if t.name == "record_batch"]
        result = FuzzCampaignDriver(harness, budget=10).run_campaign(targets)
        assert [t.target for t in result.targets] == ["record_batch"]

    def test_cancelled_campaign_stops_between_targets(self, tmp_path):
        cancel_event = threading.Event()
        cancel_event.set()
        harness = FakeHarness(tmp_path / "fuzz")
        result = FuzzCampaignDriver(harness, budget=10, cancel_event=cancel_event).run_campaign()
        assert harness.calls == []
        assert result.targets == []

    def test_budget_must_be_positive(self, tmp_path):
        with pytest.raises(ValueError):
            FuzzCampaignDriver(FakeHarness(tmp_path), budget=0)


FAKE_CARGO = """#!/bin/sh
if [ "$2" = "build" ]; then
    echo "Compiling fuzz targets"
    exit "${FAKE_BUILD_EXIT:-0}"
fi
runs=${5#-runs=}
printf '#2\\tINITED cov: 10 ft: 10 corp: 1/1b exec/s: 0 rss: 30Mb\\n'
printf '#%s\\tDONE   cov: 12 ft: 12 corp: 2/2b exec/s: 100 rss: 31Mb\\n' "$runs"
echo "Done $runs runs in 0 second(s)"
"""


class TestCargoFuzzHarness:

    @pytest.fixture
    def project(self, tmp_path):
        targets = tmp_path / "fuzz" / "fuzz_targets"
        targets.mkdir(parents=True)
        (targets / "record_batch.rs").write_text("")
        (targets / "parse_frame.rs").write_text("")
        cargo = tmp_path / "fake-cargo"
        cargo.write_text(FAKE_CARGO)
        os.chmod(cargo, 0o755)
        return tmp_path

    def test_discover_targets(self, project):
        harness = CargoFuzzHarness(project_dir=str(project))
        targets = harness.discover_targets()
        assert [t.name for t in targets] == ["parse_frame", "record_batch"]
        assert targets[0].corpus_dir == project / "fuzz" / "corpus" / "parse_frame"

    def test_build_and_run(self, project):
        harness = CargoFuzzHarness(project_dir=str(project), cargo=str(project / "fake-cargo"), toolchain="",
                                   log_dir=str(project / "logs"))
        harness.build()
        target = harness.discover_targets()[0]
        run = harness.run(target, 500)

        assert run.exit_code == 0
        assert run.iterations == 500
        assert run.completed
        assert target.corpus_dir.is_dir()
        assert (project / "logs" / "parse_frame.log").exists()

    def test_build_failure(self, project, monkeypatch):
        monkeypatch.setenv("FAKE_BUILD_EXIT", "101")
        harness = CargoFuzzHarness(project_dir=str(project), cargo=str(project / "fake-cargo"), toolchain="")
        with pytest.raises(HarnessBuildError, match="exit 101"):
            harness.build()

    def test_missing_toolchain(self, project):
        harness = CargoFuzzHarness(project_dir=str(project), cargo="crossbroker-no-cargo")
        with pytest.raises(HarnessBuildError, match="not available"):
            harness.build()

    def test_unrunnable_toolchain(self, project):
        cargo = project / "fake-cargo"
        os.chmod(cargo, 0o644)
        harness = CargoFuzzHarness(project_dir=str(project), cargo=str(cargo), toolchain="")
        with pytest.raises(HarnessBuildError, match="could not run"):
            harness.build()


class TestFuzzJob:

    @pytest.fixture
    def workdir(self, tmp_path):
        path = tmp_path / "work"
        path.mkdir()
        return path

    def make_context(self, tmp_path, workdir, notifier, store=None):
        job = JobDef(name="run-fuzz", type="fuzz", caches=["fuzz-state"], options={'budget': BUDGET})
        caches = {"fuzz-state": CacheSpec(
            name="fuzz-state", key="fuzz-state-{epoch}", restore_keys=["fuzz-state"],
            paths=["fuzz/corpus", "fuzz/artifacts"], mode=MODE_APPEND,
        )}
        return JobContext(
            run_id="run-1", job=job, workflow="fuzz", workdir=workdir,
            artifact_root=tmp_path / "artifacts",
            store=store or LocalCacheStore(str(tmp_path / "cache")),
            caches=caches, notifier=notifier, epoch=1,
        )

    def test_crash_fails_job_with_one_notification_after_save(self, tmp_path, workdir):
        store = LocalCacheStore(str(tmp_path / "cache"))
        saved_at_notification = []
        sink = Mock()
        sink.notify_failure.side_effect = lambda title, fields: saved_at_notification.append(
            [entry.key for entry in store.entries("fuzz-state")]) or True
        context = self.make_context(tmp_path, workdir, FailureNotifier(sink), store)
        harness = FakeHarness(workdir / "fuzz", crashes={"parse_frame": (4000, 120)})

        report = FuzzJob(context, harness).run()

        assert report.status == JobStatus.FAILED
        assert report.failure_kind == FailureKind.CRASH_FOUND
        assert sink.notify_failure.call_count == 1
        title, fields = sink.notify_failure.call_args.args
        assert title == "Job failed: run-fuzz"
        assert fields['Crashed targets'] == "parse_frame"
        assert saved_at_notification == [["fuzz-state-1"]]

        campaign = report.details['campaign']['targets']
        assert campaign["parse_frame"]['iterations'] == 4000
        assert campaign["parse_frame"]['corpus_added'] == 120
        assert campaign["protocol_reader"]['iterations'] == BUDGET
        crash_copy = context.artifact_dir / "crashes" / "parse_frame" / "crash-da39a3ee"
        assert crash_copy.exists()
        assert str(crash_copy) in report.artifacts
        assert len(list((context.artifact_dir / "corpus" / "parse_frame").iterdir())) == 120
        assert report.details['caches']['fuzz-state']['saved_key'] == "fuzz-state-1"

    def test_clean_campaign_passes_without_notification(self, tmp_path, workdir):
        sink = Mock()
        context = self.make_context(tmp_path, workdir, FailureNotifier(sink))
        report = FuzzJob(context, FakeHarness(workdir / "fuzz")).run()

        assert report.status == JobStatus.PASSED
        sink.notify_failure.assert_not_called()

    def test_build_failure_notifies_and_is_infrastructure(self, tmp_path, workdir):
        sink = Mock()
        sink.notify_failure.return_value = True
        notifier = FailureNotifier(sink)
        context = self.make_context(tmp_path, workdir, notifier)
        harness = FakeHarness(workdir / "fuzz", build_error=HarnessBuildError("linker failed"))

        report = FuzzJob(context, harness).run()

        assert report.status == JobStatus.FAILED
        assert report.failure_kind == FailureKind.INFRASTRUCTURE
        assert sink.notify_failure.call_count == 1

    def test_state_carried_between_campaigns(self, tmp_path, workdir):
        store = LocalCacheStore(str(tmp_path / "cache"))
        first = self.make_context(tmp_path, workdir, None, store)
        FuzzJob(first, FakeHarness(workdir / "fuzz")).run()

        fresh = tmp_path / "fresh"
        fresh.mkdir()
        second = self.make_context(tmp_path, fresh, None, store)
        second.epoch = 2
        report = FuzzJob(second, FakeHarness(fresh / "fuzz")).run()

        restored = report.details['caches']['fuzz-state']
        assert restored['hit_key'] == "fuzz-state-1"
        assert restored['saved_key'] == "fuzz-state-2"
        campaign = report.details['campaign']['targets']
        assert all(t['corpus_before'] == 1 for t in campaign.values())

    def test_unexpected_build_error_still_notifies_once(self, tmp_path, workdir):
        store = LocalCacheStore(str(tmp_path / "cache"))
        sink = Mock()
        sink.notify_failure.return_value = True
        context = self.make_context(tmp_path, workdir, FailureNotifier(sink), store)
        harness = FakeHarness(workdir / "fuzz", build_error=PermissionError("cargo is not executable"))

        report = FuzzJob(context, harness).run()

        assert report.status == JobStatus.FAILED
        assert report.failure_kind == FailureKind.INFRASTRUCTURE
        assert sink.notify_failure.call_count == 1
        _, fields = sink.notify_failure.call_args.args
        assert fields['Failure'] == "infrastructure"
        assert [entry.key for entry in store.entries("fuzz-state")] == ["fuzz-state-1"]

    def test_crash_campaign_grows_restored_corpus(self, tmp_path, workdir):
        store = LocalCacheStore(str(tmp_path / "cache"))
        seeded = workdir / "fuzz" / "corpus" / "parse_frame"
        seeded.mkdir(parents=True)
        for i in range(120):
            (seeded / f"seed-{i:03d}").write_bytes(b"s%d" % i)
        before = {path.name for path in seeded.iterdir()}

        context = self.make_context(tmp_path, workdir, None, store)
        harness = FakeHarness(workdir / "fuzz", crashes={"parse_frame": (4000, 7)})
        report = FuzzJob(context, harness).run()
        assert report.failure_kind == FailureKind.CRASH_FOUND
        assert report.details['campaign']['targets']["parse_frame"]['corpus_before'] == 120

        fresh = tmp_path / "fresh"
        fresh.mkdir()
        next_run = self.make_context(tmp_path, fresh, None, store)
        next_run.epoch = 2
        restored = next_run.build_caches()[0].restore()

        assert restored.hit_key == "fuzz-state-1"
        corpus = {path.name for path in (fresh / "fuzz" / "corpus" / "parse_frame").iterdir()}
        assert before <= corpus
        assert len(corpus) == 127
        assert (fresh / "fuzz" / "artifacts" / "parse_frame" / "crash-da39a3ee").exists()
