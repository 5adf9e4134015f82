"""
Topology Provisioner - plans, starts and tears down broker topologies

Each topology owns its docker network, container names and host ports so
concurrent jobs never share or collide. A topology that cannot be brought
up completely is removed before the failure is reported.
"""
import logging
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Dict, List, Optional, Set, Tuple
from ..errors import InfrastructureFailure, JobCancelled, PipelineError
from ..interfaces import ITopologyProvisioner
from ..models import BrokerNode, ListenerKind, NodePlan, Topology, TopologyConfig
from ..pipeline.error_handler import ErrorCategory, ErrorHandler, RetryConfig
from ..utils.net_utils import wait_for_port
from .backends import BrokerBackend, backend_for
from .docker import DockerClient

logger = logging.getLogger(__name__)


class PortManager:
    """Allocates host ports for published broker listeners"""

    def __init__(self, base_port: int = 19090, max_ports: int = 1000, probe: bool = True):
        self.base_port = base_port
        self.available_ports = set(range(base_port, base_port + max_ports))
        self.allocated_ports: Dict[str, Tuple[int, ...]] = {}
        self.probe = probe
        self._lock = threading.Lock()

    def _is_bindable(self, port: int) -> bool:
        if not self.probe:
            return True
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(('127.0.0.1', port))
                return True
            except OSError:
                return False

    def allocate_ports(self, owner: str, count: int = 1) -> Tuple[int, ...]:
        """Allocate `count` distinct host ports for owner"""
        with self._lock:
            ports = []
            for port in sorted(self.available_ports):
                if len(ports) == count:
                    break
                if self._is_bindable(port):
                    ports.append(port)
            if len(ports) < count:
                raise InfrastructureFailure("No available ports!", component="port_manager")

            for port in ports:
                self.available_ports.discard(port)
            self.allocated_ports[owner] = tuple(ports)

        logger.debug(f"Allocated ports for {owner}: {ports}")
        return tuple(ports)

    def release_ports(self, owner: str) -> None:
        with self._lock:
            ports = self.allocated_ports.pop(owner, None)
            if ports:
                self.available_ports.update(ports)
                logger.debug(f"Released ports for {owner}: {list(ports)}")


class TopologyProvisioner(ITopologyProvisioner):
    """Brings up N-node topologies of either backend family on docker"""

    def __init__(self, docker: Optional[DockerClient] = None, port_manager: Optional[PortManager] = None,
                 error_handler: Optional[ErrorHandler] = None, probe_retry: Optional[RetryConfig] = None,
                 poll_interval: float = 0.5):
        self.docker = docker or DockerClient()
        self.port_manager = port_manager or PortManager()
        self.error_handler = error_handler or ErrorHandler()
        self.probe_retry = probe_retry or RetryConfig(max_attempts=3, initial_delay=1.0, max_delay=5.0)
        self.poll_interval = poll_interval
        self.live_topologies: Dict[str, Topology] = {}
        self._lock = threading.Lock()

    def generate_topology_id(self) -> str:
        return f"cb-{uuid.uuid4().hex[:8]}"

    def plan_topology(self, topology_id: str, config: TopologyConfig,
                      backend: BrokerBackend) -> List[NodePlan]:
        """Allocate ports and decide the seed for every node before anything starts"""
        if config.num_nodes < 1:
            raise InfrastructureFailure(f"Topology needs at least one node, got {config.num_nodes}")
        if config.num_nodes < 3:
            logger.warning(f"Topology with {config.num_nodes} nodes cannot guarantee a non-controller entry point")

        plans = []
        try:
            for node_id in range(config.num_nodes):
                host_ports = self.port_manager.allocate_ports(
                    f"{topology_id}/{node_id}", backend.host_ports_per_node()
                )
                plan = backend.plan_node(topology_id, node_id, host_ports, backend.seed_peers(node_id))
                plans.append(plan)
                logger.info(f"{plan.alias}: {'seed' if plan.is_seed else 'member'}, "
                            f"external port {plan.external_port}"
                            + (f", secure port {plan.secure_port}" if plan.secure_port else ""))
        except InfrastructureFailure:
            for plan in plans:
                self.port_manager.release_ports(f"{topology_id}/{plan.node_id}")
            raise
        return plans

    def provision(self, config: TopologyConfig, cancel_event: Optional[threading.Event] = None) -> Topology:
        backend = backend_for(config.variant)
        topology_id = self.generate_topology_id()
        network = f"crossbroker-{topology_id}"
        logger.info(f"Provisioning {config.variant.value} topology {topology_id} with {config.num_nodes} nodes")

        started: List[str] = []
        network_created = False
        plans: List[NodePlan] = []
        try:
            plans = self.plan_topology(topology_id, config, backend)

            self.docker.create_network(network, labels=backend.labels(topology_id))
            network_created = True

            for spec in backend.auxiliary_specs(topology_id, network, config):
                self.docker.run_container(spec)
                started.append(spec.name)

            nodes = []
            for plan in plans:
                spec = backend.node_spec(plan, topology_id, network, config)
                container_id = self.docker.run_container(spec)
                started.append(spec.name)
                nodes.append(BrokerNode(
                    node_id=plan.node_id,
                    listeners=backend.listeners(plan),
                    advertised_address=backend.listeners(plan)[ListenerKind.EXTERNAL].address,
                    seed_peers=list(plan.seed_peers),
                    is_seed=plan.is_seed,
                    alias=plan.alias,
                    container_name=plan.container_name,
                    container_id=container_id,
                ))

            topology = Topology(
                topology_id=topology_id,
                variant=config.variant,
                nodes=nodes,
                network=network,
                auxiliary_containers=[name for name in started if name not in {n.container_name for n in nodes}],
            )
            topology.validate()

            deadline = time.time() + config.ready_timeout
            self.wait_for_nodes(topology, deadline, cancel_event)
            controller = self.wait_for_controller(topology, backend, deadline, cancel_event)
            logger.info(f"Topology {topology_id} ready, controller is node {controller}")

            with self._lock:
                self.live_topologies[topology_id] = topology
            return topology

        except BaseException as e:
            logger.error(f"Failed to provision topology {topology_id}: {e}")
            self._cleanup(topology_id, started, network if network_created else None, plans)
            if isinstance(e, PipelineError):
                raise
            if isinstance(e, Exception):
                raise InfrastructureFailure(f"Failed to provision topology {topology_id}: {e}",
                                            component="provisioner") from e
            raise

    def wait_for_nodes(self, topology: Topology, deadline: float,
                       cancel_event: Optional[threading.Event] = None) -> None:
        """Wait until every node keeps running and accepts connections externally"""
        logger.info(f"Waiting for all {len(topology.nodes)} nodes to be ready")
        for node in topology.nodes:
            host, port = node.listeners[ListenerKind.EXTERNAL].host, node.listeners[ListenerKind.EXTERNAL].port

            def stop_waiting(name=node.container_name):
                if cancel_event is not None and cancel_event.is_set():
                    return True
                return not self.docker.is_running(name)

            ready = wait_for_port(host, port, timeout=max(0.0, deadline - time.time()),
                                  interval=self.poll_interval, abort_check=stop_waiting)
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelled(f"Provisioning of {topology.topology_id} cancelled", component="provisioner")
            if not ready:
                tail = self.docker.logs(node.container_name, tail=20)
                raise InfrastructureFailure(
                    f"Node {node.node_id} ({node.container_name}) failed to become ready: {tail[-500:]}",
                    component="provisioner",
                )
            logger.info(f"Node {node.node_id} is accepting connections on {host}:{port}")

    def wait_for_controller(self, topology: Topology, backend: BrokerBackend, deadline: float,
                            cancel_event: Optional[threading.Event] = None) -> int:
        """Wait until every node has registered with the cluster and a controller is elected"""
        expected = {node.node_id for node in topology.nodes}
        controller = None
        members: Set[int] = set()
        while time.time() < deadline:
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelled(f"Provisioning of {topology.topology_id} cancelled", component="provisioner")
            members = self._registered_members(topology, backend)
            if expected <= members:
                controller = self._probe_controller(topology, backend)
                if controller is not None:
                    return controller
            time.sleep(self.poll_interval)

        missing = sorted(expected - members)
        if missing:
            raise InfrastructureFailure(
                f"Nodes {missing} of {topology.topology_id} never joined the cluster "
                f"(registered: {sorted(members)})",
                component="provisioner",
            )
        raise InfrastructureFailure(f"Topology {topology.topology_id} never reported a controller",
                                    component="provisioner")

    def _registered_members(self, topology: Topology, backend: BrokerBackend) -> Set[int]:
        for container, command in backend.membership_check(topology):
            result = self.docker.exec(container, command, timeout=30)
            if result.returncode != 0:
                logger.debug(f"Membership check on {container} failed: {result.stderr.strip()}")
                continue
            members = backend.parse_members(result.stdout)
            if members is not None:
                return members
        return set()

    def _probe_controller(self, topology: Topology, backend: BrokerBackend) -> Optional[int]:
        for container, command in backend.controller_probe(topology):
            result = self.docker.exec(container, command, timeout=30)
            if result.returncode != 0:
                logger.debug(f"Controller probe on {container} failed: {result.stderr.strip()}")
                continue
            controller = backend.parse_controller(result.stdout)
            if controller is not None:
                return controller
        return None

    def controller_id(self, topology: Topology) -> Optional[int]:
        backend = backend_for(topology.variant)

        def probe():
            controller = self._probe_controller(topology, backend)
            if controller is None:
                raise InfrastructureFailure(f"No controller reported by {topology.topology_id}")
            return controller

        success, controller = self.error_handler.retry_with_backoff(
            probe,
            self.probe_retry,
            ErrorCategory.CONTROLLER_DISCOVERY,
            operation_name=f"controller probe for {topology.topology_id}",
        )
        return controller if success else None

    def gateway_routes(self, topology: Topology) -> Dict[str, Tuple[str, int]]:
        """Map network-internal broker addresses to their published host addresses"""
        routes = {}
        for node in topology.nodes:
            external = node.listeners[ListenerKind.EXTERNAL]
            plain = node.listeners.get(ListenerKind.PLAIN)
            if plain is not None:
                routes[f"{node.alias}:{plain.port}"] = (external.host, external.port)
            routes[f"{node.alias}:{external.port}"] = (external.host, external.port)
            secure = node.listeners.get(ListenerKind.SECURE)
            if secure is not None:
                routes[f"{node.alias}:{secure.port}"] = (secure.host, secure.port)
        return routes

    def teardown(self, topology: Topology) -> None:
        with self._lock:
            self.live_topologies.pop(topology.topology_id, None)
        containers = [node.container_name for node in topology.nodes if node.container_name]
        containers += topology.auxiliary_containers
        plans = [f"{topology.topology_id}/{node.node_id}" for node in topology.nodes]
        logger.info(f"Tearing down topology {topology.topology_id}")
        self._remove(containers, topology.network)
        for owner in plans:
            self.port_manager.release_ports(owner)
        logger.info(f"Topology {topology.topology_id} cleaned up")

    def teardown_all(self) -> None:
        with self._lock:
            topologies = list(self.live_topologies.values())
        for topology in topologies:
            try:
                self.teardown(topology)
            except Exception as e:
                logger.error(f"Failed to tear down topology {topology.topology_id}: {e}")

    @contextmanager
    def provisioned(self, config: TopologyConfig, cancel_event: Optional[threading.Event] = None):
        topology = self.provision(config, cancel_event)
        try:
            yield topology
        finally:
            self.teardown(topology)

    def _cleanup(self, topology_id: str, started: List[str], network: Optional[str],
                 plans: List[NodePlan]) -> None:
        logger.info(f"Cleaning up partial topology {topology_id}")
        self._remove(list(reversed(started)), network)
        for plan in plans:
            self.port_manager.release_ports(f"{topology_id}/{plan.node_id}")

    def _remove(self, containers: List[str], network: Optional[str]) -> None:
        for name in containers:
            try:
                self.docker.remove_container(name)
            except Exception as e:
                logger.error(f"Failed to remove container {name}: {e}")
        if network:
            try:
                self.docker.remove_network(network)
            except Exception as e:
                logger.error(f"Failed to remove network {network}: {e}")
