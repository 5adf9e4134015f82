"""
Topology - broker cluster provisioning and entry point selection
"""
from .provisioner import PortManager, TopologyProvisioner
from .selector import TargetSelector
from .backends import KafkaBackend, RedpandaBackend, backend_for
from .docker import DockerClient, ContainerSpec

__all__ = [
    'PortManager',
    'TopologyProvisioner',
    'TargetSelector',
    'KafkaBackend',
    'RedpandaBackend',
    'backend_for',
    'DockerClient',
    'ContainerSpec',
]
