"""
Broker backend families - container layout, listeners and controller probing

Each backend knows how to turn a NodePlan into a container and how to ask the
running cluster which node is the controller. The provisioner stays agnostic
of the implementation family.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Set, Tuple
from ..models import (
    BackendVariant, Listener, ListenerKind, NodePlan, Topology, TopologyConfig
)
from ..utils.output_parsers import (
    parse_rpk_brokers, parse_rpk_controller, parse_zookeeper_broker_ids, parse_zookeeper_controller
)
from .docker import ContainerSpec, OWNER_LABEL

logger = logging.getLogger(__name__)

PUBLISHED_HOST = "127.0.0.1"


class BrokerBackend(ABC):
    """Container recipe for one broker implementation family"""
    variant: BackendVariant
    default_image: str
    plain_port: int = 9092
    has_secure_listener: bool = False

    def host_ports_per_node(self) -> int:
        return 2 if self.has_secure_listener else 1

    def alias(self, node_id: int) -> str:
        return f"{self.variant.value}-{node_id}"

    def image(self, config: TopologyConfig) -> str:
        return config.image or self.default_image

    def plan_node(self, topology_id: str, node_id: int, host_ports: Tuple[int, ...],
                  seed_peers: List[str]) -> NodePlan:
        alias = self.alias(node_id)
        return NodePlan(
            node_id=node_id,
            alias=alias,
            container_name=f"{topology_id}-{alias}",
            plain_port=self.plain_port,
            external_port=host_ports[0],
            secure_port=host_ports[1] if self.has_secure_listener else None,
            rpc_port=None,
            is_seed=node_id == 0,
            seed_peers=seed_peers,
        )

    def listeners(self, plan: NodePlan) -> Dict[ListenerKind, Listener]:
        listeners = {
            ListenerKind.PLAIN: Listener(ListenerKind.PLAIN, plan.alias, plan.plain_port),
            ListenerKind.EXTERNAL: Listener(ListenerKind.EXTERNAL, PUBLISHED_HOST, plan.external_port),
        }
        if plan.secure_port is not None:
            listeners[ListenerKind.SECURE] = Listener(ListenerKind.SECURE, PUBLISHED_HOST, plan.secure_port)
        return listeners

    def labels(self, topology_id: str) -> Dict[str, str]:
        return {OWNER_LABEL: topology_id}

    @abstractmethod
    def seed_peers(self, node_id: int) -> List[str]:
        """Membership peers a node is started with"""
        pass

    @abstractmethod
    def auxiliary_specs(self, topology_id: str, network: str, config: TopologyConfig) -> List[ContainerSpec]:
        """Containers that must run before any broker starts"""
        pass

    @abstractmethod
    def node_spec(self, plan: NodePlan, topology_id: str, network: str, config: TopologyConfig) -> ContainerSpec:
        pass

    @abstractmethod
    def controller_probe(self, topology: Topology) -> List[Tuple[str, List[str]]]:
        """Candidate (container, command) pairs that report the controller"""
        pass

    @abstractmethod
    def parse_controller(self, output: str) -> Optional[int]:
        pass

    @abstractmethod
    def membership_check(self, topology: Topology) -> List[Tuple[str, List[str]]]:
        """Candidate (container, command) pairs that list the registered brokers"""
        pass

    @abstractmethod
    def parse_members(self, output: str) -> Optional[Set[int]]:
        pass


class KafkaBackend(BrokerBackend):
    """Kafka brokers coordinated through a ZooKeeper ensemble of one"""
    variant = BackendVariant.KAFKA
    default_image = "docker.io/bitnami/kafka:3.9.0"
    has_secure_listener = True
    zookeeper_alias = "zookeeper"
    zookeeper_port = 2181

    def zookeeper_container(self, topology_id: str) -> str:
        return f"{topology_id}-{self.zookeeper_alias}"

    def seed_peers(self, node_id: int) -> List[str]:
        return [f"{self.zookeeper_alias}:{self.zookeeper_port}"]

    def auxiliary_specs(self, topology_id: str, network: str, config: TopologyConfig) -> List[ContainerSpec]:
        return [ContainerSpec(
            name=self.zookeeper_container(topology_id),
            image=config.zookeeper_image,
            network=network,
            alias=self.zookeeper_alias,
            env={'ALLOW_ANONYMOUS_LOGIN': 'yes'},
            labels=self.labels(topology_id),
        )]

    def node_spec(self, plan: NodePlan, topology_id: str, network: str, config: TopologyConfig) -> ContainerSpec:
        env = {
            'KAFKA_CFG_ZOOKEEPER_CONNECT': ",".join(plan.seed_peers),
            'KAFKA_CFG_BROKER_ID': str(plan.node_id),
            'ALLOW_PLAINTEXT_LISTENER': 'yes',
            'KAFKA_CFG_LISTENER_SECURITY_PROTOCOL_MAP':
                'CLIENT:PLAINTEXT,EXTERNAL:PLAINTEXT,SECURE:SASL_PLAINTEXT',
            'KAFKA_CFG_LISTENERS':
                f"CLIENT://:{plan.plain_port},EXTERNAL://:{plan.external_port},SECURE://:{plan.secure_port}",
            'KAFKA_CFG_ADVERTISED_LISTENERS':
                f"CLIENT://{plan.alias}:{plan.plain_port},"
                f"EXTERNAL://{PUBLISHED_HOST}:{plan.external_port},"
                f"SECURE://{PUBLISHED_HOST}:{plan.secure_port}",
            'KAFKA_CFG_INTER_BROKER_LISTENER_NAME': 'CLIENT',
            'KAFKA_CFG_SASL_ENABLED_MECHANISMS': 'PLAIN',
            'KAFKA_CFG_AUTO_CREATE_TOPICS_ENABLE': str(config.auto_create_topics).lower(),
            'KAFKA_CLIENT_USERS': config.sasl_username,
            'KAFKA_CLIENT_PASSWORDS': config.sasl_password,
            'KAFKA_CLIENT_LISTENER_NAME': 'SECURE',
        }
        return ContainerSpec(
            name=plan.container_name,
            image=self.image(config),
            network=network,
            alias=plan.alias,
            env=env,
            ports=[(plan.external_port, plan.external_port), (plan.secure_port, plan.secure_port)],
            memory=config.memory,
            cpus=config.cpus,
            labels=self.labels(topology_id),
        )

    def controller_probe(self, topology: Topology) -> List[Tuple[str, List[str]]]:
        command = ['zkCli.sh', '-server', f"localhost:{self.zookeeper_port}", 'get', '/controller']
        return [(self.zookeeper_container(topology.topology_id), command)]

    def parse_controller(self, output: str) -> Optional[int]:
        return parse_zookeeper_controller(output)

    def membership_check(self, topology: Topology) -> List[Tuple[str, List[str]]]:
        command = ['zkCli.sh', '-server', f"localhost:{self.zookeeper_port}", 'ls', '/brokers/ids']
        return [(self.zookeeper_container(topology.topology_id), command)]

    def parse_members(self, output: str) -> Optional[Set[int]]:
        return parse_zookeeper_broker_ids(output)


class RedpandaBackend(BrokerBackend):
    """Redpanda brokers joining through a single seed node"""
    variant = BackendVariant.REDPANDA
    default_image = "redpandadata/redpanda:v22.2.1"
    rpc_port = 33145

    def seed_peers(self, node_id: int) -> List[str]:
        if node_id == 0:
            return []
        return [f"{self.alias(0)}:{self.rpc_port}"]

    def plan_node(self, topology_id: str, node_id: int, host_ports: Tuple[int, ...],
                  seed_peers: List[str]) -> NodePlan:
        plan = super().plan_node(topology_id, node_id, host_ports, seed_peers)
        plan.rpc_port = self.rpc_port
        return plan

    def auxiliary_specs(self, topology_id: str, network: str, config: TopologyConfig) -> List[ContainerSpec]:
        return []

    def node_spec(self, plan: NodePlan, topology_id: str, network: str, config: TopologyConfig) -> ContainerSpec:
        command = [
            'redpanda', 'start',
            '--smp', str(max(1, int(config.cpus))),
            '--memory', config.memory,
            '--reserve-memory', '0M',
            '--overprovisioned',
            '--node-id', str(plan.node_id),
            '--check=false',
            '--kafka-addr', f"PLAIN://0.0.0.0:{plan.plain_port},EXTERNAL://0.0.0.0:{plan.external_port}",
            '--advertise-kafka-addr',
            f"PLAIN://{plan.alias}:{plan.plain_port},EXTERNAL://{PUBLISHED_HOST}:{plan.external_port}",
            '--rpc-addr', f"0.0.0.0:{plan.rpc_port}",
            '--advertise-rpc-addr', f"{plan.alias}:{plan.rpc_port}",
        ]
        if plan.seed_peers:
            command += ['--seeds', ",".join(plan.seed_peers)]
        command += ['--set', f"redpanda.auto_create_topics_enabled={str(config.auto_create_topics).lower()}"]

        return ContainerSpec(
            name=plan.container_name,
            image=self.image(config),
            network=network,
            alias=plan.alias,
            ports=[(plan.external_port, plan.external_port)],
            command=command,
            cpus=config.cpus,
            labels=self.labels(topology_id),
        )

    def controller_probe(self, topology: Topology) -> List[Tuple[str, List[str]]]:
        # Any live broker can answer; try the seed first
        ordered = sorted(topology.nodes, key=lambda node: (not node.is_seed, node.node_id))
        return [
            (node.container_name, ['rpk', 'cluster', 'info', '--brokers', f"localhost:{self.plain_port}"])
            for node in ordered
        ]

    def parse_controller(self, output: str) -> Optional[int]:
        return parse_rpk_controller(output)

    def membership_check(self, topology: Topology) -> List[Tuple[str, List[str]]]:
        return self.controller_probe(topology)

    def parse_members(self, output: str) -> Optional[Set[int]]:
        brokers = parse_rpk_brokers(output)
        if not brokers:
            return None
        return {broker['node_id'] for broker in brokers}


_BACKENDS = {
    BackendVariant.KAFKA: KafkaBackend,
    BackendVariant.REDPANDA: RedpandaBackend,
}


def backend_for(variant: BackendVariant) -> BrokerBackend:
    return _BACKENDS[variant]()
