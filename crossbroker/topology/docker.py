"""
Thin wrapper over the docker CLI used to run broker containers
"""
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from ..errors import InfrastructureFailure

logger = logging.getLogger(__name__)

OWNER_LABEL = "crossbroker.topology"


@dataclass
class ContainerSpec:
    """Everything needed to start one container"""
    name: str
    image: str
    network: str
    alias: str
    env: Dict[str, str] = field(default_factory=dict)
    ports: List[Tuple[int, int]] = field(default_factory=list)  # (host, container)
    command: List[str] = field(default_factory=list)
    memory: Optional[str] = None
    cpus: Optional[float] = None
    labels: Dict[str, str] = field(default_factory=dict)

    def to_run_args(self) -> List[str]:
        args = ['run', '-d', '--name', self.name,
                '--network', self.network, '--network-alias', self.alias,
                '--hostname', self.alias]
        for key, value in sorted(self.labels.items()):
            args += ['--label', f"{key}={value}"]
        if self.memory:
            args += ['--memory', docker_memory(self.memory)]
        if self.cpus:
            args += ['--cpus', str(self.cpus)]
        for host_port, container_port in self.ports:
            args += ['-p', f"127.0.0.1:{host_port}:{container_port}"]
        for key, value in self.env.items():
            args += ['-e', f"{key}={value}"]
        args.append(self.image)
        args += self.command
        return args


def docker_memory(memory: str) -> str:
    """Broker-style memory sizes (1G) to docker's form (1g)"""
    return memory.lower()


class DockerClient:
    """Runs docker CLI commands and raises InfrastructureFailure on errors"""

    def __init__(self, binary: str = "docker", command_timeout: float = 120.0):
        self.binary = binary
        self.command_timeout = command_timeout

    def run(self, args: List[str], check: bool = True,
            timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        cmd = [self.binary] + args
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.command_timeout,
            )
        except FileNotFoundError:
            raise InfrastructureFailure(f"Docker binary '{self.binary}' not found", component="docker")
        except subprocess.TimeoutExpired:
            raise InfrastructureFailure(f"Docker command timed out: {' '.join(args[:2])}", component="docker")

        if check and result.returncode != 0:
            raise InfrastructureFailure(
                f"Docker command failed ({' '.join(args[:2])}): {result.stderr.strip()}",
                component="docker",
            )
        return result

    def create_network(self, name: str, labels: Optional[Dict[str, str]] = None) -> None:
        args = ['network', 'create']
        for key, value in sorted((labels or {}).items()):
            args += ['--label', f"{key}={value}"]
        self.run(args + [name])
        logger.info(f"Created network {name}")

    def remove_network(self, name: str) -> None:
        result = self.run(['network', 'rm', name], check=False)
        if result.returncode != 0 and 'not found' not in result.stderr:
            logger.warning(f"Failed to remove network {name}: {result.stderr.strip()}")

    def run_container(self, spec: ContainerSpec) -> str:
        result = self.run(spec.to_run_args())
        container_id = result.stdout.strip()
        logger.info(f"Started container {spec.name} ({container_id[:12]})")
        return container_id

    def remove_container(self, name: str) -> None:
        result = self.run(['rm', '-f', '-v', name], check=False)
        if result.returncode != 0 and 'No such container' not in result.stderr:
            logger.warning(f"Failed to remove container {name}: {result.stderr.strip()}")

    def is_running(self, name: str) -> bool:
        result = self.run(['inspect', '-f', '{{.State.Running}}', name], check=False)
        return result.returncode == 0 and result.stdout.strip() == 'true'

    def exec(self, name: str, command: List[str], timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        return self.run(['exec', name] + command, check=False, timeout=timeout)

    def logs(self, name: str, tail: int = 50) -> str:
        result = self.run(['logs', '--tail', str(tail), name], check=False)
        return (result.stdout + result.stderr).strip()

    def list_owned(self, topology_id: str) -> List[str]:
        """Names of containers labelled as owned by topology_id"""
        result = self.run(
            ['ps', '-a', '--filter', f"label={OWNER_LABEL}={topology_id}", '--format', '{{.Names}}'],
            check=False,
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]
