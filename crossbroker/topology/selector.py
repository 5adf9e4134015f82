"""
Target Selector - chooses the entry points handed to the client under test

The first address is never the current controller, so the client must
discover the controller through metadata instead of getting lucky.
"""
import logging
from typing import List, Optional, Set
from ..errors import InfrastructureFailure
from ..interfaces import ITargetSelector
from ..models import AuthMode, BackendVariant, BrokerNode, ListenerKind, TestTarget, Topology

logger = logging.getLogger(__name__)

PLACEHOLDER_HOST = "invalid"


class TargetSelector(ITargetSelector):
    """
    Builds a TestTarget from a running topology.

    With placeholders enabled the list starts with an unresolvable entry so the
    client has to fall back to a later address; real entry points are taken
    from non-seed, non-controller nodes first.
    """

    def __init__(self, use_placeholder: bool = True, entry_points: int = 1,
                 feature_flags: Optional[Set[str]] = None):
        if entry_points < 1:
            raise ValueError("entry_points must be at least 1")
        self.use_placeholder = use_placeholder
        self.entry_points = entry_points
        self.feature_flags = set(feature_flags or [])

    def candidate_order(self, topology: Topology, controller_id: Optional[int]) -> List[BrokerNode]:
        """Nodes ordered by preference: non-seed non-controller, then seed, controller last"""
        def rank(node: BrokerNode):
            is_controller = controller_id is not None and node.node_id == controller_id
            return (is_controller, node.is_seed, node.node_id)
        return sorted(topology.nodes, key=rank)

    def select(self, topology: Topology, controller_id: Optional[int]) -> TestTarget:
        if not topology.nodes:
            raise InfrastructureFailure(f"Topology {topology.topology_id} has no nodes", component="selector")
        if controller_id is None and not self.use_placeholder:
            raise InfrastructureFailure(
                f"Controller of {topology.topology_id} unknown; cannot guarantee a non-controller entry point",
                component="selector",
            )
        if len(topology.nodes) < 3:
            logger.warning(f"Topology {topology.topology_id} has {len(topology.nodes)} nodes, "
                           f"entry point selection is best effort")

        ordered = self.candidate_order(topology, controller_id)
        non_controller = [node for node in ordered if node.node_id != controller_id]
        chosen = (non_controller or ordered)[:self.entry_points]

        addresses = [node.address(ListenerKind.EXTERNAL) for node in chosen]
        if self.use_placeholder:
            placeholder_port = chosen[0].listeners[ListenerKind.EXTERNAL].port
            addresses.insert(0, f"{PLACEHOLDER_HOST}:{placeholder_port}")

        sasl_address = None
        auth_mode = AuthMode.NONE
        if topology.variant == BackendVariant.KAFKA:
            sasl_address = chosen[0].address(ListenerKind.SECURE)
            if sasl_address:
                auth_mode = AuthMode.SASL_PLAIN

        target = TestTarget(
            addresses=addresses,
            auth_mode=auth_mode,
            sasl_address=sasl_address,
            proxy_address=topology.proxy_address,
            feature_flags=set(self.feature_flags),
            controller_id=controller_id,
        )
        logger.info(f"Selected entry points {addresses} for {topology.topology_id} (controller: {controller_id})")
        return target
