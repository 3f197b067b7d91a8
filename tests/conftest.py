"""
Shared fixtures: an in-memory provider and a fast engine configuration.
"""

from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List

import pytest

from deckhand.config import EngineConfig
from deckhand.errors import ResourceAlreadyExistsError, ResourceNotFoundError
from deckhand.graph import NodeType
from deckhand.provider.base import CloudProvider, CommandResult, FoundResource, InstanceSpec, RolePolicies
from deckhand.retry import RetryPolicy

ID_PREFIXES = {
    NodeType.NETWORK: "vpc",
    NodeType.GATEWAY: "igw",
    NodeType.SUBNET: "subnet",
    NodeType.ROUTE_TABLE: "rtb",
    NodeType.SECURITY_GROUP: "sg",
    NodeType.COMPUTE_INSTANCE: "i",
}

T1 = datetime(2024, 1, 15, 10, 30, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 1, 16, 8, 0, 0, tzinfo=timezone.utc)


class FakeProvider(CloudProvider):
    """
    In-memory provider.

    Failures are injected per operation key ("create_subnet",
    "delete:security-group", "get_tags:iam-role", "find:network", ...) as a list of
    exceptions raised one per call.
    """

    def __init__(self, region: str = "us-east-1"):
        self.region = region
        self.resources: Dict[NodeType, Dict[str, Dict[str, str]]] = defaultdict(dict)
        self.secret_values: Dict[str, str] = {}
        self.policies: Dict[str, RolePolicies] = {}
        self.profile_roles: Dict[str, List[str]] = defaultdict(list)
        self.instance_states: Dict[str, str] = {}
        self.instance_specs: Dict[str, InstanceSpec] = {}
        self.errors: Dict[str, List[Exception]] = defaultdict(list)
        self.calls: List[tuple] = []
        self.channel_online = True
        self.bootstrap_done = True
        # Security groups the provider never reports (the network's default group)
        self.default_groups = set()
        self._counter = 0

    # Helpers

    def fail(self, key: str, *errors: Exception) -> None:
        self.errors[key].extend(errors)

    def _maybe_fail(self, key: str) -> None:
        if self.errors.get(key):
            raise self.errors[key].pop(0)

    def _new_id(self, node_type: NodeType) -> str:
        self._counter += 1
        return f"{ID_PREFIXES[node_type]}-{self._counter:08x}"

    def _add(self, node_type: NodeType, tags: Dict[str, str], identifier: str = None) -> str:
        key = f"create:{node_type.value}"
        self.calls.append((key, identifier))
        self._maybe_fail(key)
        identifier = identifier or self._new_id(node_type)
        self.resources[node_type][identifier] = dict(tags)
        return identifier

    def add_resource(self, node_type: NodeType, identifier: str, tags: Dict[str, str]) -> None:
        """Seed a resource directly (e.g. created by someone else)."""
        self.resources[NodeType(node_type)][identifier] = dict(tags)
        if node_type == NodeType.COMPUTE_INSTANCE:
            self.instance_states[identifier] = "running"

    def ids(self, node_type: NodeType) -> List[str]:
        return sorted(self.resources[node_type])

    def deleted(self) -> List[tuple]:
        return [c for c in self.calls if c[0].startswith("delete:")]

    # Creation

    def create_network(self, cidr, tags):
        return self._add(NodeType.NETWORK, tags)

    def create_gateway(self, network_id, tags):
        return self._add(NodeType.GATEWAY, tags)

    def create_subnet(self, network_id, cidr, tags):
        return self._add(NodeType.SUBNET, tags)

    def create_route_table(self, network_id, subnet_id, gateway_id, tags):
        return self._add(NodeType.ROUTE_TABLE, tags)

    def create_security_group(self, network_id, name, description, tags):
        return self._add(NodeType.SECURITY_GROUP, tags)

    def create_role(self, name, tags):
        if name in self.resources[NodeType.IAM_ROLE]:
            raise ResourceAlreadyExistsError(f"EntityAlreadyExists: Role {name} exists", code="EntityAlreadyExists")
        return self._add(NodeType.IAM_ROLE, tags, identifier=name)

    def get_role(self, name):
        if name not in self.resources[NodeType.IAM_ROLE]:
            raise ResourceNotFoundError(f"NoSuchEntity: {name}", code="NoSuchEntity")
        return name

    def attach_role_policies(self, name, policies):
        self.policies[name] = policies

    def create_instance_profile(self, name, tags):
        if name in self.resources[NodeType.INSTANCE_PROFILE]:
            raise ResourceAlreadyExistsError(f"EntityAlreadyExists: Profile {name} exists", code="EntityAlreadyExists")
        return self._add(NodeType.INSTANCE_PROFILE, tags, identifier=name)

    def get_instance_profile(self, name):
        if name not in self.resources[NodeType.INSTANCE_PROFILE]:
            raise ResourceNotFoundError(f"NoSuchEntity: {name}", code="NoSuchEntity")
        return name

    def add_role_to_instance_profile(self, profile_name, role_name):
        if role_name not in self.profile_roles[profile_name]:
            self.profile_roles[profile_name].append(role_name)

    def put_secret(self, name, value, tags):
        self.calls.append(("create:secret-parameter", name))
        self._maybe_fail("create:secret-parameter")
        self.secret_values[name] = value
        self.resources[NodeType.SECRET_PARAMETER][name] = dict(tags)
        return name

    def account_id(self):
        return "123456789012"

    def latest_image(self, architecture):
        return f"ami-al2023-{architecture}"

    def run_instance(self, spec):
        instance_id = self._add(NodeType.COMPUTE_INSTANCE, spec.tags)
        self.instance_states[instance_id] = "running"
        self.instance_specs[instance_id] = spec
        return instance_id

    def instance_state(self, instance_id):
        if instance_id not in self.instance_states:
            raise ResourceNotFoundError(f"InvalidInstanceID.NotFound: {instance_id}", code="InvalidInstanceID.NotFound")
        return self.instance_states[instance_id]

    # Discovery

    def find_tagged(self, node_type, key, value):
        self.calls.append((f"find:{node_type.value}", f"{key}={value}"))
        self._maybe_fail(f"find:{node_type.value}")
        return [
            FoundResource(node_type, identifier, dict(tags), reason=f"Tagged with {key}={value}")
            for identifier, tags in self.resources[node_type].items()
            if tags.get(key) == value and identifier not in self.default_groups
        ]

    def list_secrets(self, prefix, tags=None):
        self.calls.append(("list_secrets", prefix))
        wanted = tags or {}
        return sorted(
            name
            for name, live in self.resources[NodeType.SECRET_PARAMETER].items()
            if name.startswith(prefix) and all(live.get(k) == v for k, v in wanted.items())
        )

    # Teardown

    def get_tags(self, node_type, identifier):
        node_type = NodeType(node_type)
        self.calls.append((f"get_tags:{node_type.value}", identifier))
        self._maybe_fail(f"get_tags:{node_type.value}")
        if identifier not in self.resources[node_type]:
            raise ResourceNotFoundError(f"{node_type.value} {identifier} not found", code="NotFound")
        return dict(self.resources[node_type][identifier])

    def delete(self, node_type, identifier):
        node_type = NodeType(node_type)
        self.calls.append((f"delete:{node_type.value}", identifier))
        self._maybe_fail(f"delete:{node_type.value}")
        if identifier not in self.resources[node_type]:
            raise ResourceNotFoundError(f"{node_type.value} {identifier} not found", code="NotFound")
        del self.resources[node_type][identifier]
        if node_type == NodeType.COMPUTE_INSTANCE:
            self.instance_states[identifier] = "terminated"
        if node_type == NodeType.SECRET_PARAMETER:
            self.secret_values.pop(identifier, None)

    # Command channel

    def command_channel_online(self, instance_id):
        return self.channel_online

    def run_command(self, instance_id, commands, timeout=60):
        return CommandResult(status="Success", stdout="1\n" if self.bootstrap_done else "0\n")


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def config(tmp_path):
    return EngineConfig(
        region="us-east-1",
        home=tmp_path / ".deckhand",
        retry=RetryPolicy(max_attempts=3, initial_delay=0.0),
        poll_interval=0.0,
        instance_wait_timeout=0.0,
        bootstrap_wait_timeout=0.0,
        eni_release_delay=0.0,
    )


@pytest.fixture
def no_sleep():
    return lambda seconds: None
