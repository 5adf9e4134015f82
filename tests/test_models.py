"""
Tests for core data models
"""
import pytest
from crossbroker.models import (
    BackendVariant, BrokerNode, CaseStatus, ConformanceResult, FailureKind, JobReport,
    JobStatus, Listener, ListenerKind, PipelineReport, RestoreResult, SuiteKind,
    SuiteResult, TargetCampaignResult, TargetStatus, CampaignResult, Topology, TopologyConfig
)


def make_node(node_id, port, is_seed=False):
    return BrokerNode(
        node_id=node_id,
        listeners={
            ListenerKind.PLAIN: Listener(ListenerKind.PLAIN, f"kafka-{node_id}", 9092),
            ListenerKind.EXTERNAL: Listener(ListenerKind.EXTERNAL, "127.0.0.1", port),
        },
        advertised_address=f"127.0.0.1:{port}",
        seed_peers=[],
        is_seed=is_seed,
        alias=f"kafka-{node_id}",
    )


def test_topology_config_defaults():
    """Test topology configuration defaults"""
    config = TopologyConfig(variant=BackendVariant.KAFKA)
    assert config.num_nodes == 3
    assert config.base_port == 19090
    assert config.auto_create_topics is False


def test_listener_address():
    listener = Listener(ListenerKind.EXTERNAL, "127.0.0.1", 19092)
    assert listener.address == "127.0.0.1:19092"


def test_broker_node_address_by_kind():
    node = make_node(1, 19091)
    assert node.address() == "127.0.0.1:19091"
    assert node.address(ListenerKind.PLAIN) == "kafka-1:9092"
    assert node.address(ListenerKind.SECURE) is None


def test_topology_seed_and_lookup():
    topology = Topology("cb-1", BackendVariant.KAFKA,
                        [make_node(0, 19090, is_seed=True), make_node(1, 19091), make_node(2, 19092)])
    assert topology.seed_node.node_id == 0
    assert topology.get_node(2).node_id == 2
    assert topology.get_node(7) is None
    topology.validate()


def test_topology_requires_exactly_one_seed():
    topology = Topology("cb-1", BackendVariant.REDPANDA, [make_node(0, 19090), make_node(1, 19091)])
    with pytest.raises(ValueError, match="0 seed nodes"):
        topology.validate()

    topology = Topology("cb-2", BackendVariant.REDPANDA,
                        [make_node(0, 19090, is_seed=True), make_node(1, 19091, is_seed=True)])
    with pytest.raises(ValueError, match="2 seed nodes"):
        topology.validate()


def test_topology_rejects_shared_external_address():
    topology = Topology("cb-1", BackendVariant.KAFKA,
                        [make_node(0, 19090, is_seed=True), make_node(1, 19090)])
    with pytest.raises(ValueError, match="share external address"):
        topology.validate()


def test_conformance_result_merges_suites():
    behavioral = SuiteResult(SuiteKind.BEHAVIORAL,
                             {"behavioral::a": CaseStatus.PASSED, "behavioral::b": CaseStatus.FAILED},
                             exit_code=101, duration=1.0)
    docs = SuiteResult(SuiteKind.DOCUMENTATION, {"documentation::c": CaseStatus.SKIPPED},
                       exit_code=0, duration=0.5)
    result = ConformanceResult(variant=BackendVariant.KAFKA, suites=[behavioral, docs])

    assert len(result.cases) == 3
    assert result.count(CaseStatus.PASSED) == 1
    assert result.count(CaseStatus.SKIPPED) == 1
    assert result.failed_cases == ["behavioral::b"]
    assert behavioral.failed_cases == ["behavioral::b"]
    assert not result.success


def test_campaign_result_aggregates_target_status():
    result = CampaignResult(
        campaign_id="campaign-1",
        targets=[
            TargetCampaignResult("parse_frame", TargetStatus.CRASHED, budget=100000, iterations_run=4000),
            TargetCampaignResult("protocol_reader", TargetStatus.CLEAN, budget=100000, iterations_run=100000),
            TargetCampaignResult("record_batch", TargetStatus.ERROR, budget=100000),
        ],
        start_time=0.0,
        end_time=1.0,
    )
    assert result.crashed_targets == ["parse_frame"]
    assert result.errored_targets == ["record_batch"]
    assert not result.success


def test_restore_result_cold():
    assert RestoreResult("cargo", ["cargo-cache"]).cold
    assert not RestoreResult("cargo", ["cargo-cache"], hit_key="cargo-cache-x86_64").cold


def test_job_report_duration():
    report = JobReport("fmt")
    assert report.duration == 0.0
    report.start_time, report.end_time = 10.0, 12.5
    assert report.duration == 2.5


def test_pipeline_report_success_and_failures():
    jobs = {
        "fmt": JobReport("fmt", status=JobStatus.PASSED),
        "test-kafka": JobReport("test-kafka", status=JobStatus.FAILED, failure_kind=FailureKind.CONFORMANCE),
        "cargo-deny": JobReport("cargo-deny", status=JobStatus.FAILED,
                                failure_kind=FailureKind.POLICY_VIOLATION),
        "doc": JobReport("doc", status=JobStatus.SKIPPED),
    }
    report = PipelineReport("run-1", "ci", jobs, start_time=0.0)

    assert not report.success
    assert report.exit_code == 1
    assert report.failures_by_kind() == {
        "conformance": ["test-kafka"],
        "policy_violation": ["cargo-deny"],
    }


def test_pipeline_report_all_passed():
    report = PipelineReport("run-1", "ci", {"fmt": JobReport("fmt", status=JobStatus.PASSED)}, start_time=0.0)
    assert report.success
    assert report.exit_code == 0


def test_empty_pipeline_report_is_not_success():
    assert not PipelineReport("run-1", "ci", {}, start_time=0.0).success
