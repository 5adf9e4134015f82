"""
Base interfaces and abstract classes for all major components
"""
from abc import ABC, abstractmethod
from typing import List, Optional
from .models import (
    Topology, TopologyConfig, TestTarget, CacheEntry, FuzzTarget,
    CampaignResult, ConformanceResult
)


class ITopologyProvisioner(ABC):
    """Interface for broker topology lifecycle management"""

    @abstractmethod
    def provision(self, config: TopologyConfig) -> Topology:
        """Start an N-node topology and wait for every node to become ready"""
        pass

    @abstractmethod
    def controller_id(self, topology: Topology) -> Optional[int]:
        """Return the node id of the current controller, if it can be observed"""
        pass

    @abstractmethod
    def teardown(self, topology: Topology) -> None:
        """Remove every container and network owned by the topology"""
        pass


class IGateway(ABC):
    """Interface for the network interposition gateway"""

    @abstractmethod
    def start(self) -> str:
        """Start relaying and return the externally reachable address"""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop relaying and close all open streams"""
        pass


class IConformanceExecutor(ABC):
    """Interface for running the client conformance suites"""

    @abstractmethod
    def run(self, settings) -> ConformanceResult:
        """Run every suite pass against the configured target"""
        pass


class ICacheStore(ABC):
    """Interface for keyed blob persistence"""

    @abstractmethod
    def put(self, key: str, payload: bytes) -> CacheEntry:
        """Store payload under key, replacing any existing payload"""
        pass

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the payload stored under key, or None"""
        pass

    @abstractmethod
    def entries(self, prefix: str = "") -> List[CacheEntry]:
        """List entries whose key starts with prefix, most recent first"""
        pass

    def exists(self, key: str) -> bool:
        return any(entry.key == key for entry in self.entries(key))


class IFuzzHarness(ABC):
    """Interface for an opaque, instrumented fuzz harness"""

    @abstractmethod
    def build(self) -> None:
        """Build the instrumented harness"""
        pass

    @abstractmethod
    def discover_targets(self) -> List[FuzzTarget]:
        """List registered fuzz targets"""
        pass

    @abstractmethod
    def run(self, target: FuzzTarget, runs: int):
        """Fuzz a target for at most `runs` iterations"""
        pass


class INotificationSink(ABC):
    """Interface for best-effort failure alerts"""

    @abstractmethod
    def notify_failure(self, title: str, fields: dict) -> bool:
        """Deliver a failure notification; never raises"""
        pass


class IFuzzCampaignDriver(ABC):
    """Interface for fuzz campaign execution"""

    @abstractmethod
    def run_campaign(self, targets: Optional[List[FuzzTarget]] = None) -> CampaignResult:
        """Run every target sequentially within its iteration budget"""
        pass


class ITargetSelector(ABC):
    """Interface for choosing the entry points handed to the client"""

    @abstractmethod
    def select(self, topology: Topology, controller_id: Optional[int]) -> TestTarget:
        """Build a target whose first address is not the controller"""
        pass
