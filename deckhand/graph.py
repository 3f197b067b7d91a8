"""
Static model of the deployment topology and its dependency edges.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional


class NodeType(str, Enum):
    """Resource node types of the fixed topology."""
    NETWORK = "network"
    GATEWAY = "gateway"
    SUBNET = "subnet"
    ROUTE_TABLE = "route-table"
    SECURITY_GROUP = "security-group"
    IAM_ROLE = "iam-role"
    INSTANCE_PROFILE = "instance-profile"
    SECRET_PARAMETER = "secret-parameter"
    COMPUTE_INSTANCE = "compute-instance"


@dataclass(frozen=True)
class ResourceNode:
    """One node of the topology."""
    type: NodeType
    depends_on: FrozenSet[NodeType]
    billable: bool = False
    label: str = ""
    # Whether the provider can find the node by tag filter
    tag_queryable: bool = True


# Declaration order doubles as the tie-break for the topological sort
TOPOLOGY: List[ResourceNode] = [
    ResourceNode(NodeType.NETWORK, frozenset(), label="VPC"),
    ResourceNode(NodeType.GATEWAY, frozenset({NodeType.NETWORK}), label="Internet GW"),
    ResourceNode(NodeType.SUBNET, frozenset({NodeType.NETWORK}), label="Subnet"),
    ResourceNode(
        NodeType.ROUTE_TABLE,
        frozenset({NodeType.NETWORK, NodeType.SUBNET, NodeType.GATEWAY}),
        label="Route Table",
    ),
    ResourceNode(NodeType.SECURITY_GROUP, frozenset({NodeType.NETWORK}), label="Security Group"),
    ResourceNode(NodeType.IAM_ROLE, frozenset(), label="IAM Role", tag_queryable=False),
    ResourceNode(
        NodeType.INSTANCE_PROFILE,
        frozenset({NodeType.IAM_ROLE}),
        label="Instance Prof",
        tag_queryable=False,
    ),
    ResourceNode(NodeType.SECRET_PARAMETER, frozenset(), label="SSM Param", tag_queryable=False),
    ResourceNode(
        NodeType.COMPUTE_INSTANCE,
        frozenset({
            NodeType.SUBNET,
            NodeType.ROUTE_TABLE,
            NodeType.SECURITY_GROUP,
            NodeType.INSTANCE_PROFILE,
            NodeType.SECRET_PARAMETER,
        }),
        billable=True,
        label="EC2 Instance",
    ),
]

NODES: Dict[NodeType, ResourceNode] = {node.type: node for node in TOPOLOGY}

# Node types whose names derive from the project rather than from tags
PROJECT_SCOPED_TYPES: FrozenSet[NodeType] = frozenset(
    node.type for node in TOPOLOGY if not node.tag_queryable
)

TAG_QUERYABLE_TYPES: List[NodeType] = [node.type for node in TOPOLOGY if node.tag_queryable]

# Reused by every deployment of a project rather than created per deployment
SHARED_TYPES: FrozenSet[NodeType] = frozenset({NodeType.IAM_ROLE, NodeType.INSTANCE_PROFILE})


def get_node(node_type: NodeType) -> ResourceNode:
    """Return the topology entry for a node type."""
    return NODES[NodeType(node_type)]


def _topological_sort(nodes: List[ResourceNode]) -> List[NodeType]:
    """Kahn's algorithm; ready nodes are taken in declaration order."""
    remaining = {node.type: set(node.depends_on) for node in nodes}
    order: List[NodeType] = []

    while remaining:
        ready = [node.type for node in nodes if node.type in remaining and not remaining[node.type]]
        if not ready:
            raise ValueError(f"Dependency cycle among: {sorted(t.value for t in remaining)}")

        current = ready[0]
        order.append(current)
        del remaining[current]
        for deps in remaining.values():
            deps.discard(current)

    return order


def dependency_order() -> List[NodeType]:
    """
    Creation order: every node appears after all of its dependencies.

    Returns:
        Node types in creation order
    """
    return _topological_sort(TOPOLOGY)


def reverse_order(present: Optional[Iterable[NodeType]] = None) -> List[NodeType]:
    """
    Deletion order: dependents before the nodes they depend on.

    Args:
        present: Optional set of node types to restrict the order to

    Returns:
        Node types in deletion order
    """
    order = list(reversed(dependency_order()))
    if present is None:
        return order

    wanted = {NodeType(t) for t in present}
    return [t for t in order if t in wanted]
