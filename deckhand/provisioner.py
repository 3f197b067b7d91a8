"""
Provisioner: creates the deployment topology in dependency order.

Every node is tagged with Project/DeployId as part of its create call. The
IAM role and instance profile have deterministic names, so a re-run reuses
them instead of failing. Any creation failure aborts the run and raises a
ProvisioningError carrying the manifest as far as it got.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .bootstrap import ArtifactSpec, BootstrapPayload, build_payload, default_template
from .config import DEFAULT_REGION, EngineConfig
from .cost import estimate_cost
from .discovery import DiscoveryMode, discover
from .errors import (
    AmbiguousDeploymentError,
    ConfigurationError,
    ProviderError,
    ProvisioningError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
)
from .events import EventTypes, emit_event
from .graph import NodeType, dependency_order, get_node
from .health import HealthReport, wait_for_bootstrap
from .ids import (
    instance_profile_name,
    is_valid_project,
    new_deploy_id,
    parse_secret_key,
    resource_name,
    role_name,
    secret_name,
    secret_prefix,
    security_group_name,
)
from .manifest import DeploymentManifest, write_manifest
from .provider.base import CloudProvider, InstanceSpec, RolePolicies
from .retry import poll_until
from .tags import RESERVED_TAGS, base_tags, named_tags
from .teardown import TeardownOptions, TeardownReport, teardown

logger = logging.getLogger(__name__)

DEFAULT_VPC_CIDR = "10.50.0.0/16"
DEFAULT_SUBNET_CIDR = "10.50.0.0/24"
DEFAULT_INSTANCE_TYPE = "t4g.medium"
DEFAULT_ARCHITECTURE = "arm64"
DEFAULT_VOLUME_SIZE_GB = 20

SSM_MANAGED_POLICY = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"
SECRET_ACCESS_POLICY = "SSMParameterAccess"
MANIFEST_FILE = "manifest.json"

# Name tag suffixes of the network nodes
NAME_SUFFIXES = {
    NodeType.NETWORK: "vpc",
    NodeType.GATEWAY: "igw",
    NodeType.SUBNET: "subnet",
    NodeType.ROUTE_TABLE: "rtb",
    NodeType.SECURITY_GROUP: "sg",
}


@dataclass
class ProvisionRequest:
    """Desired topology parameters for one provisioning run."""
    project: str
    region: str = DEFAULT_REGION
    vpc_cidr: str = DEFAULT_VPC_CIDR
    subnet_cidr: str = DEFAULT_SUBNET_CIDR
    instance_type: str = DEFAULT_INSTANCE_TYPE
    image_id: Optional[str] = None
    architecture: str = DEFAULT_ARCHITECTURE
    volume_size_gb: int = DEFAULT_VOLUME_SIZE_GB
    secrets: Dict[str, str] = field(default_factory=dict)  # "category/kind" -> value
    bootstrap_template: Optional[str] = None
    bootstrap_params: Dict[str, str] = field(default_factory=dict)
    artifacts: List[ArtifactSpec] = field(default_factory=list)
    extra_tags: Dict[str, str] = field(default_factory=dict)
    inline_policies: Dict[str, dict] = field(default_factory=dict)
    cleanup_first: bool = False
    wait_bootstrap: bool = False
    dry_run: bool = False

    def validate(self) -> None:
        """
        Raises:
            ConfigurationError: If the request cannot be provisioned
        """
        if not is_valid_project(self.project):
            raise ConfigurationError(
                f"Invalid project name: {self.project!r}. Use lowercase letters, digits and hyphens"
            )

        reserved = sorted(set(self.extra_tags) & set(RESERVED_TAGS))
        if reserved:
            raise ConfigurationError(f"Tag keys {reserved} are reserved and set automatically")

        if SECRET_ACCESS_POLICY in self.inline_policies:
            raise ConfigurationError(f"Inline policy name {SECRET_ACCESS_POLICY} is reserved")

        for key in self.secrets:
            try:
                category, kind = parse_secret_key(key)
                secret_name(self.project, category, kind)
            except ValueError as e:
                raise ConfigurationError(str(e)) from e

    def secret_names(self) -> List[str]:
        return [secret_name(self.project, *parse_secret_key(key)) for key in self.secrets]


@dataclass
class PlanStep:
    node_type: NodeType
    label: str
    billable: bool
    name: Optional[str] = None  # deterministic name, when there is one


@dataclass
class ProvisionPlan:
    """What a provisioning run would create, in order."""
    project: str
    deploy_id: str
    region: str
    steps: List[PlanStep]
    cost: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project,
            "deployId": self.deploy_id,
            "region": self.region,
            "steps": [
                {"type": s.node_type.value, "label": s.label, "billable": s.billable, "name": s.name}
                for s in self.steps
            ],
            "cost": self.cost,
        }


@dataclass
class ProvisionResult:
    deploy_id: str
    plan: ProvisionPlan
    manifest: Optional[DeploymentManifest] = None
    manifest_path: Optional[Path] = None
    health: Optional[HealthReport] = None
    cleanup_report: Optional[TeardownReport] = None
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = {"deployId": self.deploy_id, "dryRun": self.dry_run, "plan": self.plan.to_dict()}
        if self.manifest is not None:
            data["manifest"] = self.manifest.to_dict()
        if self.manifest_path is not None:
            data["manifestPath"] = str(self.manifest_path)
        if self.health is not None:
            data["health"] = {
                "channelOnline": self.health.channel_online,
                "bootstrapComplete": self.health.bootstrap_complete,
                "detail": self.health.detail,
            }
        return data


def remediation_command(deploy_id: str, region: str) -> str:
    return f"deckhand teardown --deploy-id {deploy_id} --region {region} --yes"


def secret_access_policy(region: str, account_id: str, project: str) -> Dict[str, Any]:
    """Inline policy letting the instance read its own secrets."""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["ssm:GetParameter", "ssm:GetParameters", "ssm:GetParametersByPath"],
                "Resource": f"arn:aws:ssm:{region}:{account_id}:parameter/{project}/*",
            }
        ],
    }


def plan_provision(request: ProvisionRequest, now: Optional[datetime] = None) -> ProvisionPlan:
    """Creation plan for a request; no provider calls."""
    request.validate()
    deploy_id = new_deploy_id(request.project, now)

    names = {
        NodeType.SECURITY_GROUP: security_group_name(request.project),
        NodeType.IAM_ROLE: role_name(request.project),
        NodeType.INSTANCE_PROFILE: instance_profile_name(request.project),
    }

    steps = []
    for node_type in dependency_order():
        node = get_node(node_type)
        if node_type == NodeType.SECRET_PARAMETER:
            steps.extend(PlanStep(node_type, node.label, node.billable, name) for name in request.secret_names())
        else:
            steps.append(PlanStep(node_type, node.label, node.billable, names.get(node_type)))

    return ProvisionPlan(
        project=request.project,
        deploy_id=deploy_id,
        region=request.region,
        steps=steps,
        cost=estimate_cost(request.instance_type, request.volume_size_gb),
    )


def render_bootstrap(request: ProvisionRequest, deploy_id: str, config: EngineConfig) -> BootstrapPayload:
    """Render the user-data payload for the compute node."""
    substitutions = {
        "PROJECT": request.project,
        "REGION": request.region,
        "DEPLOY_ID": deploy_id,
        "SECRET_PREFIX": secret_prefix(request.project),
    }
    substitutions.update(request.bootstrap_params)
    template = request.bootstrap_template or default_template()
    return build_payload(template, substitutions, request.artifacts, retry_policy=config.retry)


class _Provisioner:
    """Holds the state of one provisioning run."""

    def __init__(
        self,
        request: ProvisionRequest,
        deploy_id: str,
        provider: CloudProvider,
        config: EngineConfig,
        payload: BootstrapPayload,
        created_at: datetime,
        sleep: Callable[[float], None],
    ):
        self.request = request
        self.deploy_id = deploy_id
        self.provider = provider
        self.config = config
        self.payload = payload
        self.sleep = sleep
        self.tags = base_tags(request.project, deploy_id, request.extra_tags)
        self.manifest = DeploymentManifest(
            project=request.project,
            deploy_id=deploy_id,
            region=request.region,
            created_at=created_at,
        )

    @property
    def project(self) -> str:
        return self.request.project

    def _id(self, node_type: NodeType) -> str:
        return self.manifest.resource_identifiers[node_type]

    def _named(self, node_type: NodeType) -> Dict[str, str]:
        return named_tags(self.tags, resource_name(self.project, NAME_SUFFIXES[node_type]))

    def _record(self, node_type: NodeType, identifier: str, reused: bool = False) -> None:
        self.manifest = self.manifest.with_resource(node_type, identifier)
        event = EventTypes.NODE_REUSED if reused else EventTypes.NODE_CREATED
        emit_event(self.config.home, self.deploy_id, event, {"type": node_type.value, "identifier": identifier})
        logger.info(f"{get_node(node_type).label}: {identifier}{' (reused)' if reused else ''}")

    def create(self, node_type: NodeType) -> None:
        handler = getattr(self, f"_create_{node_type.name.lower()}")
        handler()

    def _create_network(self) -> None:
        vpc_id = self.provider.create_network(self.request.vpc_cidr, self._named(NodeType.NETWORK))
        self._record(NodeType.NETWORK, vpc_id)

    def _create_gateway(self) -> None:
        igw_id = self.provider.create_gateway(self._id(NodeType.NETWORK), self._named(NodeType.GATEWAY))
        self._record(NodeType.GATEWAY, igw_id)

    def _create_subnet(self) -> None:
        subnet_id = self.provider.create_subnet(
            self._id(NodeType.NETWORK), self.request.subnet_cidr, self._named(NodeType.SUBNET)
        )
        self._record(NodeType.SUBNET, subnet_id)

    def _create_route_table(self) -> None:
        rtb_id = self.provider.create_route_table(
            self._id(NodeType.NETWORK),
            self._id(NodeType.SUBNET),
            self._id(NodeType.GATEWAY),
            self._named(NodeType.ROUTE_TABLE),
        )
        self._record(NodeType.ROUTE_TABLE, rtb_id)

    def _create_security_group(self) -> None:
        sg_id = self.provider.create_security_group(
            self._id(NodeType.NETWORK),
            security_group_name(self.project),
            f"{self.project} instance - no inbound access",
            self._named(NodeType.SECURITY_GROUP),
        )
        self._record(NodeType.SECURITY_GROUP, sg_id)

    def _create_iam_role(self) -> None:
        name = role_name(self.project)
        try:
            identifier = self.provider.create_role(name, self.tags)
            reused = False
        except ResourceAlreadyExistsError:
            identifier = self.provider.get_role(name)
            reused = True

        inline = {SECRET_ACCESS_POLICY: secret_access_policy(
            self.request.region, self.provider.account_id(), self.project
        )}
        inline.update(self.request.inline_policies)
        self.provider.attach_role_policies(identifier, RolePolicies(managed=[SSM_MANAGED_POLICY], inline=inline))
        self._record(NodeType.IAM_ROLE, identifier, reused=reused)

    def _create_instance_profile(self) -> None:
        name = instance_profile_name(self.project)
        try:
            identifier = self.provider.create_instance_profile(name, self.tags)
            reused = False
        except ResourceAlreadyExistsError:
            identifier = self.provider.get_instance_profile(name)
            reused = True

        self.provider.add_role_to_instance_profile(identifier, self._id(NodeType.IAM_ROLE))
        self._record(NodeType.INSTANCE_PROFILE, identifier, reused=reused)

    def _create_secret_parameter(self) -> None:
        for key, value in self.request.secrets.items():
            name = secret_name(self.project, *parse_secret_key(key))
            self.provider.put_secret(name, value, self.tags)
            self.manifest = self.manifest.with_secret(name)
            emit_event(self.config.home, self.deploy_id, EventTypes.NODE_CREATED, {
                "type": NodeType.SECRET_PARAMETER.value,
                "identifier": name,
            })
            logger.info(f"Stored secret: {name}")

    def _create_compute_instance(self) -> None:
        image_id = self.request.image_id or self.provider.latest_image(self.request.architecture)
        spec = InstanceSpec(
            image_id=image_id,
            instance_type=self.request.instance_type,
            subnet_id=self._id(NodeType.SUBNET),
            security_group_id=self._id(NodeType.SECURITY_GROUP),
            instance_profile=self._id(NodeType.INSTANCE_PROFILE),
            user_data=self.payload.data,
            tags=named_tags(self.tags, self.project),
            volume_size_gb=self.request.volume_size_gb,
        )

        def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
            logger.info(f"Instance launch attempt {attempt} failed ({error}); IAM may still be propagating, retrying in {delay}s")

        instance_id = self.config.retry.run(
            lambda: self.provider.run_instance(spec), on_retry=_on_retry, sleep=self.sleep
        )
        self._record(NodeType.COMPUTE_INSTANCE, instance_id)

        def _running() -> bool:
            try:
                return self.provider.instance_state(instance_id) == "running"
            except ResourceNotFoundError:
                # Not yet visible to describe calls
                return False

        logger.info("Waiting for instance to be running...")
        if not poll_until(
            _running,
            timeout=self.config.instance_wait_timeout,
            interval=self.config.poll_interval,
            sleep=self.sleep,
        ):
            raise ProviderError(
                f"Instance {instance_id} not running after {self.config.instance_wait_timeout}s"
            )
        emit_event(self.config.home, self.deploy_id, EventTypes.INSTANCE_RUNNING, {"instance_id": instance_id})


def _cleanup_project(request: ProvisionRequest, provider: CloudProvider, config: EngineConfig, sleep) -> Optional[TeardownReport]:
    """Tear down existing resources of the project before creating new ones."""
    logger.info(f"Cleaning up existing resources for project {request.project}...")
    try:
        result = discover(DiscoveryMode.PROJECT, request.project, provider)
    except AmbiguousDeploymentError as e:
        logger.warning(f"Skipping cleanup: {e}")
        return None

    if result.is_empty:
        logger.info("No existing resources to clean up")
        return None

    report = teardown(result, provider, TeardownOptions(auto_confirm=True), config=config, sleep=sleep)
    if not report.ok:
        logger.warning(f"Cleanup left {report.errors} errors; continuing. Remediation: {report.remediation}")
    return report


def provision(
    request: ProvisionRequest,
    provider: CloudProvider,
    config: Optional[EngineConfig] = None,
    output_path: Optional[Path] = None,
    now: Optional[datetime] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ProvisionResult:
    """
    Create every node of the topology and write the deployment manifest.

    Args:
        request: Topology parameters
        provider: Cloud provider
        config: Engine configuration
        output_path: Manifest destination (default <home>/<deployId>/manifest.json)
        now: Creation time, used for the deployId
        sleep: Sleep function (injectable for tests)

    Returns:
        ProvisionResult with the manifest, or only the plan when dry_run is set

    Raises:
        ConfigurationError: If the request is invalid
        BootstrapTemplateError: If the bootstrap payload cannot be rendered
        ProvisioningError: If a creation step fails
    """
    config = config or EngineConfig.from_env(region=request.region)
    now = now or datetime.now(timezone.utc)
    plan = plan_provision(request, now)
    deploy_id = plan.deploy_id

    if request.dry_run:
        logger.info(f"Dry run: {len(plan.steps)} nodes would be created for {deploy_id}")
        return ProvisionResult(deploy_id=deploy_id, plan=plan, dry_run=True)

    # Render before creating anything so template errors cost nothing
    payload = render_bootstrap(request, deploy_id, config)

    cleanup_report = None
    if request.cleanup_first:
        cleanup_report = _cleanup_project(request, provider, config, sleep)

    logger.info(f"🚀 Provisioning {deploy_id} in {request.region}")
    emit_event(config.home, deploy_id, EventTypes.PROVISION_START, {
        "project": request.project,
        "region": request.region,
        "instance_type": request.instance_type,
    })

    run = _Provisioner(request, deploy_id, provider, config, payload, now, sleep)
    for node_type in dependency_order():
        try:
            run.create(node_type)
        except Exception as e:
            remediation = remediation_command(deploy_id, request.region)
            label = get_node(node_type).label
            logger.error(f"Failed to create {label}: {e}")
            emit_event(config.home, deploy_id, EventTypes.PROVISION_FAILED, {
                "type": node_type.value,
                "error": str(e),
                "remediation": remediation,
            })
            raise ProvisioningError(
                f"Failed to create {label}: {e}", run.manifest, remediation, node_type=node_type.value
            ) from e

    manifest_path = Path(output_path) if output_path else config.home / deploy_id / MANIFEST_FILE
    write_manifest(run.manifest, manifest_path)
    emit_event(config.home, deploy_id, EventTypes.MANIFEST_WRITTEN, {"path": str(manifest_path)})
    logger.info(f"Manifest written to {manifest_path}")

    health = None
    if request.wait_bootstrap:
        emit_event(config.home, deploy_id, EventTypes.BOOTSTRAP_WAIT, {})
        health = wait_for_bootstrap(
            provider,
            run.manifest.resource_identifiers[NodeType.COMPUTE_INSTANCE],
            timeout=config.bootstrap_wait_timeout,
            interval=config.poll_interval,
            sleep=sleep,
        )
        if health.healthy:
            emit_event(config.home, deploy_id, EventTypes.BOOTSTRAP_OK, {})

    emit_event(config.home, deploy_id, EventTypes.COST_HINT, plan.cost)
    emit_event(config.home, deploy_id, EventTypes.PROVISION_DONE, {"manifest": str(manifest_path)})
    logger.info(f"✅ Provisioned {deploy_id}")

    return ProvisionResult(
        deploy_id=deploy_id,
        plan=plan,
        manifest=run.manifest,
        manifest_path=manifest_path,
        health=health,
        cleanup_report=cleanup_report,
    )
