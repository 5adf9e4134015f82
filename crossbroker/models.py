"""
Core data models for the cross-backend conformance pipeline
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set


class BackendVariant(Enum):
    """Broker implementation families a topology can be built from"""
    KAFKA = "kafka"
    REDPANDA = "redpanda"


class ListenerKind(Enum):
    """Listener roles exposed by a broker node"""
    PLAIN = "plain"  # Network-internal, inter-broker
    EXTERNAL = "external"  # Published on the host, plaintext
    SECURE = "secure"  # Published on the host, SASL authenticated


class AuthMode(Enum):
    NONE = "none"
    SASL_PLAIN = "sasl_plain"


@dataclass
class Listener:
    """A single listener of a broker node"""
    kind: ListenerKind
    host: str
    port: int

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class TopologyConfig:
    """Configuration for one broker topology"""
    variant: BackendVariant
    num_nodes: int = 3
    memory: str = "1G"
    cpus: float = 1.0
    base_port: int = 19090
    image: Optional[str] = None
    zookeeper_image: str = "docker.io/bitnami/zookeeper:3.7"
    sasl_username: str = "admin"
    sasl_password: str = "admin-secret"
    ready_timeout: float = 120.0
    auto_create_topics: bool = False


@dataclass
class NodePlan:
    """Plan for a broker node before its container is started"""
    node_id: int
    alias: str
    container_name: str
    plain_port: int
    external_port: int
    secure_port: Optional[int]
    rpc_port: Optional[int]
    is_seed: bool
    seed_peers: List[str] = field(default_factory=list)


@dataclass
class BrokerNode:
    """A running broker node of a topology"""
    node_id: int
    listeners: Dict[ListenerKind, Listener]
    advertised_address: str
    seed_peers: List[str]
    is_seed: bool
    alias: str = ""
    container_name: Optional[str] = None
    container_id: Optional[str] = None

    def address(self, kind: ListenerKind = ListenerKind.EXTERNAL) -> Optional[str]:
        """Address of the listener of the given kind, if the node exposes one"""
        listener = self.listeners.get(kind)
        return listener.address if listener else None


@dataclass
class Topology:
    """Set of broker nodes and their reachability for one job"""
    topology_id: str
    variant: BackendVariant
    nodes: List[BrokerNode]
    proxy_address: Optional[str] = None
    network: Optional[str] = None
    auxiliary_containers: List[str] = field(default_factory=list)
    creation_time: float = field(default_factory=time.time)

    @property
    def seed_node(self) -> BrokerNode:
        seeds = [node for node in self.nodes if node.is_seed]
        if len(seeds) != 1:
            raise ValueError(f"Topology {self.topology_id} has {len(seeds)} seed nodes, expected exactly one")
        return seeds[0]

    def get_node(self, node_id: int) -> Optional[BrokerNode]:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None

    def validate(self) -> None:
        """Check the seed and independent reachability invariants"""
        # Raises unless exactly one seed is designated
        self.seed_node
        published: Dict[str, int] = {}
        for node in self.nodes:
            external = node.address(ListenerKind.EXTERNAL)
            if not external:
                raise ValueError(f"Node {node.node_id} has no external listener")
            if external in published:
                raise ValueError(
                    f"Nodes {published[external]} and {node.node_id} share external address {external}"
                )
            published[external] = node.node_id


@dataclass
class TestTarget:
    """Connection parameters handed to the conformance suite"""
    __test__ = False

    addresses: List[str]
    auth_mode: AuthMode = AuthMode.NONE
    sasl_address: Optional[str] = None
    proxy_address: Optional[str] = None
    feature_flags: Set[str] = field(default_factory=set)
    controller_id: Optional[int] = None

    @property
    def entry_point(self) -> str:
        return self.addresses[0]


class CaseStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SuiteKind(Enum):
    """Conformance suite passes; each runs as its own invocation"""
    BEHAVIORAL = "behavioral"
    DOCUMENTATION = "documentation"


@dataclass
class SuiteResult:
    """Result of one suite pass"""
    kind: SuiteKind
    cases: Dict[str, CaseStatus]
    exit_code: int
    duration: float
    log_file: Optional[str] = None

    @property
    def failed_cases(self) -> List[str]:
        return sorted(case for case, status in self.cases.items() if status == CaseStatus.FAILED)


@dataclass
class ConformanceResult:
    """Merged outcome of all suite passes against one target"""
    variant: Optional[BackendVariant]
    suites: List[SuiteResult] = field(default_factory=list)

    @property
    def cases(self) -> Dict[str, CaseStatus]:
        merged: Dict[str, CaseStatus] = {}
        for suite in self.suites:
            merged.update(suite.cases)
        return merged

    def count(self, status: CaseStatus) -> int:
        return sum(1 for case_status in self.cases.values() if case_status == status)

    @property
    def failed_cases(self) -> List[str]:
        return sorted(case for case, status in self.cases.items() if status == CaseStatus.FAILED)

    @property
    def success(self) -> bool:
        return not self.failed_cases


@dataclass
class FuzzTarget:
    """A registered fuzz target and its persistent containers"""
    name: str
    corpus_dir: Path
    artifact_dir: Path


class TargetStatus(Enum):
    CLEAN = "clean"
    CRASHED = "crashed"
    ERROR = "error"  # Harness could not run the target to completion


@dataclass
class TargetCampaignResult:
    """Outcome of one target within a campaign"""
    target: str
    status: TargetStatus
    budget: int
    iterations_run: int = 0  # last reported iteration; exact only for clean targets
    corpus_before: int = 0
    corpus_delta: List[Path] = field(default_factory=list)
    crash_artifacts: List[Path] = field(default_factory=list)
    duration: float = 0.0
    error_message: Optional[str] = None


@dataclass
class CampaignResult:
    """Outcome of one bounded fuzzing execution across all targets"""
    campaign_id: str
    targets: List[TargetCampaignResult]
    start_time: float
    end_time: float

    @property
    def crashed_targets(self) -> List[str]:
        return [t.target for t in self.targets if t.status == TargetStatus.CRASHED]

    @property
    def errored_targets(self) -> List[str]:
        return [t.target for t in self.targets if t.status == TargetStatus.ERROR]

    @property
    def success(self) -> bool:
        return all(t.status == TargetStatus.CLEAN for t in self.targets)


@dataclass
class CacheEntry:
    """Metadata of a stored cache payload"""
    key: str
    created_at: float
    size: int
    sha256: str


@dataclass
class RestoreResult:
    """What a cache restore produced"""
    cache_name: str
    requested_keys: List[str]
    hit_key: Optional[str] = None
    tier: Optional[int] = None
    exact_hit: bool = False
    skipped_entries: List[str] = field(default_factory=list)

    @property
    def cold(self) -> bool:
        return self.hit_key is None


class FailureKind(Enum):
    """Distinguishable failure causes in the structured report"""
    INFRASTRUCTURE = "infrastructure"
    CONNECTIVITY = "connectivity"
    CONFORMANCE = "conformance"
    CRASH_FOUND = "crash_found"
    POLICY_VIOLATION = "policy_violation"
    STEP_FAILURE = "step_failure"
    CANCELLED = "cancelled"


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"  # Blocked by a failed requirement
    CANCELLED = "cancelled"


@dataclass
class JobReport:
    """Structured outcome of one job"""
    job_name: str
    status: JobStatus = JobStatus.PENDING
    failure_kind: Optional[FailureKind] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    message: Optional[str] = None
    details: Dict[str, object] = field(default_factory=dict)
    artifacts: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def duration(self) -> float:
        if self.start_time is None or self.end_time is None:
            return 0.0
        return self.end_time - self.start_time


@dataclass
class PipelineReport:
    """Aggregate outcome of one workflow run"""
    run_id: str
    workflow: str
    jobs: Dict[str, JobReport]
    start_time: float
    end_time: Optional[float] = None

    @property
    def success(self) -> bool:
        return bool(self.jobs) and all(job.status == JobStatus.PASSED for job in self.jobs.values())

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def failures_by_kind(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for name, job in self.jobs.items():
            if job.failure_kind is not None:
                grouped.setdefault(job.failure_kind.value, []).append(name)
        return grouped
