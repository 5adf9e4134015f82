"""
Run settings - validated configuration handed to the client conformance suites

Replaces loosely typed environment variables with one object that is
validated once and exported back to the environment the suites expect.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set
from .errors import ConfigurationError
from .models import AuthMode, BackendVariant, TestTarget

logger = logging.getLogger(__name__)

ENV_CONNECT = "KAFKA_CONNECT"
ENV_SASL_CONNECT = "KAFKA_SASL_CONNECT"
ENV_PROXY = "SOCKS_PROXY"
ENV_INTEGRATION = "TEST_INTEGRATION"
ENV_BACKEND = "TEST_BROKER_IMPL"
ENV_JAVA_INTEROP = "TEST_JAVA_INTEROPT"
ENV_LOG = "RUST_LOG"
ENV_RESOURCE_PREFIX = "TEST_RESOURCE_PREFIX"

VERBOSITY_LEVELS = ("error", "warn", "info", "debug", "trace")
JAVA_INTEROP_FLAG = "java-interop"

_TRUTHY = ("1", "true", "yes", "on")


def parse_address(address: str) -> tuple:
    """Split host:port, raising ConfigurationError on malformed input"""
    if not address or ':' not in address:
        raise ConfigurationError(f"Invalid address '{address}': expected host:port")
    host, port_str = address.rsplit(':', 1)
    if not host:
        raise ConfigurationError(f"Invalid address '{address}': empty host")
    try:
        port = int(port_str)
    except ValueError:
        raise ConfigurationError(f"Invalid address '{address}': port is not a number")
    if not 0 < port < 65536:
        raise ConfigurationError(f"Invalid address '{address}': port out of range")
    return host, port


@dataclass
class RunSettings:
    """Recognized options of one conformance run"""
    connect_addresses: List[str] = field(default_factory=list)
    sasl_address: Optional[str] = None
    proxy_address: Optional[str] = None
    integration_enabled: bool = False
    backend: Optional[BackendVariant] = None
    verbosity: str = "info"
    feature_flags: Set[str] = field(default_factory=set)
    resource_prefix: Optional[str] = None

    def validate(self) -> "RunSettings":
        """Validate all options, returning self for chaining"""
        for address in self.connect_addresses:
            parse_address(address)
        if self.sasl_address:
            parse_address(self.sasl_address)
        if self.proxy_address:
            parse_address(self.proxy_address)
        if self.verbosity not in VERBOSITY_LEVELS:
            raise ConfigurationError(
                f"Invalid verbosity '{self.verbosity}', expected one of {', '.join(VERBOSITY_LEVELS)}"
            )
        if self.integration_enabled and not self.connect_addresses:
            raise ConfigurationError("Integration tests enabled but no broker connect addresses given")
        if self.integration_enabled and self.backend is None:
            raise ConfigurationError("Integration tests enabled but no backend variant selected")
        return self

    @property
    def auth_mode(self) -> AuthMode:
        return AuthMode.SASL_PLAIN if self.sasl_address else AuthMode.NONE

    @classmethod
    def from_target(cls, target: TestTarget, backend: BackendVariant,
                    integration_enabled: bool = True, verbosity: str = "info",
                    resource_prefix: Optional[str] = None) -> "RunSettings":
        """Build settings for a live target produced by the target selector"""
        return cls(
            connect_addresses=list(target.addresses),
            sasl_address=target.sasl_address,
            proxy_address=target.proxy_address,
            integration_enabled=integration_enabled,
            backend=backend,
            verbosity=verbosity,
            feature_flags=set(target.feature_flags),
            resource_prefix=resource_prefix,
        ).validate()

    @classmethod
    def from_env(cls, env: Mapping[str, str]) -> "RunSettings":
        """Read settings from environment variables"""
        connect = env.get(ENV_CONNECT, "")
        backend_name = env.get(ENV_BACKEND)
        backend = None
        if backend_name:
            try:
                backend = BackendVariant(backend_name.lower())
            except ValueError:
                raise ConfigurationError(f"Unknown backend variant '{backend_name}'")

        flags = set()
        if env.get(ENV_JAVA_INTEROP, "").lower() in _TRUTHY:
            flags.add(JAVA_INTEROP_FLAG)

        return cls(
            connect_addresses=[a.strip() for a in connect.split(',') if a.strip()],
            sasl_address=env.get(ENV_SASL_CONNECT) or None,
            proxy_address=env.get(ENV_PROXY) or None,
            integration_enabled=env.get(ENV_INTEGRATION, "").lower() in _TRUTHY,
            backend=backend,
            verbosity=env.get(ENV_LOG, "info").lower(),
            feature_flags=flags,
            resource_prefix=env.get(ENV_RESOURCE_PREFIX) or None,
        ).validate()

    def to_env(self) -> Dict[str, str]:
        """Export settings as the environment the suites read"""
        env = {
            ENV_LOG: self.verbosity,
            "RUST_BACKTRACE": "1",
        }
        if self.connect_addresses:
            env[ENV_CONNECT] = ",".join(self.connect_addresses)
        if self.sasl_address:
            env[ENV_SASL_CONNECT] = self.sasl_address
        if self.proxy_address:
            env[ENV_PROXY] = self.proxy_address
        if self.integration_enabled:
            env[ENV_INTEGRATION] = "1"
        if self.backend is not None:
            env[ENV_BACKEND] = self.backend.value
        if JAVA_INTEROP_FLAG in self.feature_flags:
            env[ENV_JAVA_INTEROP] = "1"
        if self.resource_prefix:
            env[ENV_RESOURCE_PREFIX] = self.resource_prefix
        return env
