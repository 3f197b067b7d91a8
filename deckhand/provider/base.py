"""
Provider interface consumed by the provisioner, discovery and teardown.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..graph import NodeType


@dataclass
class FoundResource:
    """A live resource returned by a tag query."""
    node_type: NodeType
    identifier: str
    tags: Dict[str, str]
    reason: Optional[str] = None  # Why we think it belongs to this deployment


@dataclass
class InstanceSpec:
    """Launch parameters for the compute node."""
    image_id: str
    instance_type: str
    subnet_id: str
    security_group_id: str
    instance_profile: str
    user_data: bytes
    tags: Dict[str, str]
    volume_size_gb: int = 20


@dataclass
class CommandResult:
    """Outcome of a command sent over the out-of-band command channel."""
    status: str  # "Success", "Failed", "TimedOut", ...
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "Success"


@dataclass
class RolePolicies:
    """Policies attached to the instance role."""
    managed: List[str] = field(default_factory=list)  # policy ARNs
    inline: Dict[str, dict] = field(default_factory=dict)  # policy name -> document


class CloudProvider(ABC):
    """
    Create/describe/delete primitives per node type.

    Implementations translate provider failures into the errors of
    `deckhand.errors`: `ResourceNotFoundError` for missing resources,
    `ResourceAlreadyExistsError` for uniquely named resources that exist,
    `TransientProviderError` for throttling and dependency lag, and
    `ProviderError` for everything else.
    """

    region: str

    # Creation

    @abstractmethod
    def create_network(self, cidr: str, tags: Dict[str, str]) -> str:
        pass

    @abstractmethod
    def create_gateway(self, network_id: str, tags: Dict[str, str]) -> str:
        """Create an internet gateway and attach it to the network."""

    @abstractmethod
    def create_subnet(self, network_id: str, cidr: str, tags: Dict[str, str]) -> str:
        pass

    @abstractmethod
    def create_route_table(self, network_id: str, subnet_id: str, gateway_id: str, tags: Dict[str, str]) -> str:
        """Create a route table with a default route to the gateway, associated with the subnet."""

    @abstractmethod
    def create_security_group(self, network_id: str, name: str, description: str, tags: Dict[str, str]) -> str:
        """Create a security group with no inbound rules."""

    @abstractmethod
    def create_role(self, name: str, tags: Dict[str, str]) -> str:
        """
        Create the instance role.

        Raises:
            ResourceAlreadyExistsError: If a role with this name exists
        """

    @abstractmethod
    def get_role(self, name: str) -> str:
        pass

    @abstractmethod
    def attach_role_policies(self, name: str, policies: RolePolicies) -> None:
        """Attach managed policies and put inline policies; safe to repeat."""

    @abstractmethod
    def create_instance_profile(self, name: str, tags: Dict[str, str]) -> str:
        """
        Raises:
            ResourceAlreadyExistsError: If a profile with this name exists
        """

    @abstractmethod
    def get_instance_profile(self, name: str) -> str:
        pass

    @abstractmethod
    def add_role_to_instance_profile(self, profile_name: str, role_name: str) -> None:
        """Add the role to the profile; a no-op when it is already there."""

    @abstractmethod
    def put_secret(self, name: str, value: str, tags: Dict[str, str]) -> str:
        """Store an encrypted secret, overwriting any previous value."""

    @abstractmethod
    def account_id(self) -> str:
        pass

    @abstractmethod
    def latest_image(self, architecture: str) -> str:
        """Resolve the latest base image id for a CPU architecture."""

    @abstractmethod
    def run_instance(self, spec: InstanceSpec) -> str:
        pass

    @abstractmethod
    def instance_state(self, instance_id: str) -> str:
        """
        Return the instance lifecycle state ("pending", "running", "terminated", ...).

        Raises:
            ResourceNotFoundError: If the instance does not exist
        """

    # Discovery

    @abstractmethod
    def find_tagged(self, node_type: NodeType, key: str, value: str) -> List[FoundResource]:
        """Find live resources of a tag-queryable type carrying tag key=value."""

    @abstractmethod
    def list_secrets(self, prefix: str, tags: Optional[Dict[str, str]] = None) -> List[str]:
        """List secret names under a path prefix, sorted, optionally only those carrying all given tags."""

    # Teardown

    @abstractmethod
    def get_tags(self, node_type: NodeType, identifier: str) -> Dict[str, str]:
        """
        Return the live tags of a resource.

        Raises:
            ResourceNotFoundError: If the resource does not exist
        """

    @abstractmethod
    def delete(self, node_type: NodeType, identifier: str) -> None:
        """
        Delete one resource, running any detach steps it needs first.

        Instance deletion only issues the terminate call; callers poll
        `instance_state` for completion.

        Raises:
            ResourceNotFoundError: If the resource is already gone
        """

    # Command channel

    @abstractmethod
    def command_channel_online(self, instance_id: str) -> bool:
        pass

    @abstractmethod
    def run_command(self, instance_id: str, commands: List[str], timeout: int = 60) -> CommandResult:
        pass
