"""
boto3 implementation of the provider interface (EC2, IAM, SSM, STS).
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

import boto3
from botocore.exceptions import ClientError

from ..errors import (
    ProviderError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    TransientProviderError,
)
from ..graph import NodeType
from ..retry import poll_until
from ..tags import from_provider_tags, to_provider_tags
from .base import CloudProvider, CommandResult, FoundResource, InstanceSpec, RolePolicies

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {
    "InvalidVpcID.NotFound",
    "InvalidSubnetID.NotFound",
    "InvalidGroup.NotFound",
    "InvalidInternetGatewayID.NotFound",
    "InvalidRouteTableID.NotFound",
    "InvalidInstanceID.NotFound",
    "InvalidAssociationID.NotFound",
    "NoSuchEntity",
    "ParameterNotFound",
    "InvalidResourceId",
}

ALREADY_EXISTS_CODES = {
    "EntityAlreadyExists",
    "InvalidGroup.Duplicate",
}

TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "DependencyViolation",
    "ConcurrentModification",
    "ServiceUnavailable",
    "InternalError",
}

# EC2 resource types used in TagSpecifications
EC2_RESOURCE_TYPES = {
    NodeType.NETWORK: "vpc",
    NodeType.GATEWAY: "internet-gateway",
    NodeType.SUBNET: "subnet",
    NodeType.ROUTE_TABLE: "route-table",
    NodeType.SECURITY_GROUP: "security-group",
    NodeType.COMPUTE_INSTANCE: "instance",
}

LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]

# Paginated describe operation, result key and id key per tag-queryable type
TAG_QUERIES = {
    NodeType.NETWORK: ("describe_vpcs", "Vpcs", "VpcId"),
    NodeType.GATEWAY: ("describe_internet_gateways", "InternetGateways", "InternetGatewayId"),
    NodeType.SUBNET: ("describe_subnets", "Subnets", "SubnetId"),
    NodeType.ROUTE_TABLE: ("describe_route_tables", "RouteTables", "RouteTableId"),
    NodeType.SECURITY_GROUP: ("describe_security_groups", "SecurityGroups", "GroupId"),
    NodeType.COMPUTE_INSTANCE: ("describe_instances", "Reservations", "InstanceId"),
}

IMAGE_PARAMETER = "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-{arch}"

ASSUME_ROLE_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}


def translate_client_error(e: ClientError) -> ProviderError:
    """
    Map a botocore ClientError onto the deckhand error taxonomy.

    The raw provider message is preserved in the exception text.
    """
    error = e.response.get("Error", {})
    code = error.get("Code", "Unknown")
    message = f"{code}: {error.get('Message', str(e))}"

    if code in NOT_FOUND_CODES:
        return ResourceNotFoundError(message, code=code)
    if code in ALREADY_EXISTS_CODES:
        return ResourceAlreadyExistsError(message, code=code)
    if code in TRANSIENT_CODES:
        return TransientProviderError(message, code=code)
    # Instance profile not yet visible to EC2 right after creation
    if code == "InvalidParameterValue" and "iamInstanceProfile" in message:
        return TransientProviderError(message, code=code)
    return ProviderError(message, code=code)


def _tag_specification(node_type: NodeType, tags: Dict[str, str]) -> List[Dict[str, Any]]:
    return [{"ResourceType": EC2_RESOURCE_TYPES[node_type], "Tags": to_provider_tags(tags)}]


class AwsProvider(CloudProvider):
    """CloudProvider backed by boto3 clients for a single region."""

    def __init__(self, region: str, session: Optional[boto3.session.Session] = None):
        self.region = region
        self._session = session or boto3.session.Session(region_name=region)
        self._clients: Dict[str, Any] = {}

    def _client(self, service: str):
        if service not in self._clients:
            self._clients[service] = self._session.client(service, region_name=self.region)
        return self._clients[service]

    @property
    def ec2(self):
        return self._client("ec2")

    @property
    def iam(self):
        return self._client("iam")

    @property
    def ssm(self):
        return self._client("ssm")

    def _call(self, func: Callable[..., Dict[str, Any]], **kwargs) -> Dict[str, Any]:
        """Invoke a boto3 operation, translating ClientError."""
        try:
            return func(**kwargs)
        except ClientError as e:
            raise translate_client_error(e) from e

    def _paginate(self, client, operation: str, **kwargs) -> Iterator[Dict[str, Any]]:
        """Iterate the pages of a boto3 operation, translating ClientError."""
        try:
            for page in client.get_paginator(operation).paginate(**kwargs):
                yield page
        except ClientError as e:
            raise translate_client_error(e) from e

    # Creation

    def create_network(self, cidr: str, tags: Dict[str, str]) -> str:
        response = self._call(
            self.ec2.create_vpc,
            CidrBlock=cidr,
            TagSpecifications=_tag_specification(NodeType.NETWORK, tags),
        )
        vpc_id = response["Vpc"]["VpcId"]

        self._call(self.ec2.modify_vpc_attribute, VpcId=vpc_id, EnableDnsSupport={"Value": True})
        self._call(self.ec2.modify_vpc_attribute, VpcId=vpc_id, EnableDnsHostnames={"Value": True})
        return vpc_id

    def create_gateway(self, network_id: str, tags: Dict[str, str]) -> str:
        response = self._call(
            self.ec2.create_internet_gateway,
            TagSpecifications=_tag_specification(NodeType.GATEWAY, tags),
        )
        igw_id = response["InternetGateway"]["InternetGatewayId"]
        self._call(self.ec2.attach_internet_gateway, InternetGatewayId=igw_id, VpcId=network_id)
        return igw_id

    def create_subnet(self, network_id: str, cidr: str, tags: Dict[str, str]) -> str:
        response = self._call(
            self.ec2.create_subnet,
            VpcId=network_id,
            CidrBlock=cidr,
            TagSpecifications=_tag_specification(NodeType.SUBNET, tags),
        )
        subnet_id = response["Subnet"]["SubnetId"]
        self._call(self.ec2.modify_subnet_attribute, SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True})
        return subnet_id

    def create_route_table(self, network_id: str, subnet_id: str, gateway_id: str, tags: Dict[str, str]) -> str:
        response = self._call(
            self.ec2.create_route_table,
            VpcId=network_id,
            TagSpecifications=_tag_specification(NodeType.ROUTE_TABLE, tags),
        )
        rtb_id = response["RouteTable"]["RouteTableId"]
        self._call(
            self.ec2.create_route,
            RouteTableId=rtb_id,
            DestinationCidrBlock="0.0.0.0/0",
            GatewayId=gateway_id,
        )
        self._call(self.ec2.associate_route_table, RouteTableId=rtb_id, SubnetId=subnet_id)
        return rtb_id

    def create_security_group(self, network_id: str, name: str, description: str, tags: Dict[str, str]) -> str:
        response = self._call(
            self.ec2.create_security_group,
            GroupName=name,
            Description=description,
            VpcId=network_id,
            TagSpecifications=_tag_specification(NodeType.SECURITY_GROUP, tags),
        )
        return response["GroupId"]

    def create_role(self, name: str, tags: Dict[str, str]) -> str:
        response = self._call(
            self.iam.create_role,
            RoleName=name,
            AssumeRolePolicyDocument=json.dumps(ASSUME_ROLE_POLICY),
            Tags=to_provider_tags(tags),
        )
        return response["Role"]["RoleName"]

    def get_role(self, name: str) -> str:
        return self._call(self.iam.get_role, RoleName=name)["Role"]["RoleName"]

    def attach_role_policies(self, name: str, policies: RolePolicies) -> None:
        for policy_arn in policies.managed:
            self._call(self.iam.attach_role_policy, RoleName=name, PolicyArn=policy_arn)
        for policy_name, document in policies.inline.items():
            self._call(
                self.iam.put_role_policy,
                RoleName=name,
                PolicyName=policy_name,
                PolicyDocument=json.dumps(document),
            )

    def create_instance_profile(self, name: str, tags: Dict[str, str]) -> str:
        response = self._call(
            self.iam.create_instance_profile,
            InstanceProfileName=name,
            Tags=to_provider_tags(tags),
        )
        return response["InstanceProfile"]["InstanceProfileName"]

    def get_instance_profile(self, name: str) -> str:
        response = self._call(self.iam.get_instance_profile, InstanceProfileName=name)
        return response["InstanceProfile"]["InstanceProfileName"]

    def add_role_to_instance_profile(self, profile_name: str, role_name: str) -> None:
        try:
            self.iam.add_role_to_instance_profile(InstanceProfileName=profile_name, RoleName=role_name)
        except ClientError as e:
            # A profile holds at most one role; LimitExceeded means it is already there
            if e.response["Error"]["Code"] != "LimitExceeded":
                raise translate_client_error(e) from e

    def put_secret(self, name: str, value: str, tags: Dict[str, str]) -> str:
        self._call(
            self.ssm.put_parameter,
            Name=name,
            Value=value,
            Type="SecureString",
            Overwrite=True,
        )
        # put_parameter rejects Tags together with Overwrite
        self._call(
            self.ssm.add_tags_to_resource,
            ResourceType="Parameter",
            ResourceId=name,
            Tags=to_provider_tags(tags),
        )
        return name

    def account_id(self) -> str:
        return self._call(self._client("sts").get_caller_identity)["Account"]

    def latest_image(self, architecture: str) -> str:
        response = self._call(self.ssm.get_parameter, Name=IMAGE_PARAMETER.format(arch=architecture))
        return response["Parameter"]["Value"]

    def run_instance(self, spec: InstanceSpec) -> str:
        response = self._call(
            self.ec2.run_instances,
            ImageId=spec.image_id,
            InstanceType=spec.instance_type,
            MinCount=1,
            MaxCount=1,
            SubnetId=spec.subnet_id,
            SecurityGroupIds=[spec.security_group_id],
            IamInstanceProfile={"Name": spec.instance_profile},
            UserData=spec.user_data.decode("utf-8"),
            MetadataOptions={"HttpTokens": "required", "HttpEndpoint": "enabled"},
            BlockDeviceMappings=[
                {
                    "DeviceName": "/dev/xvda",
                    "Ebs": {
                        "VolumeSize": spec.volume_size_gb,
                        "VolumeType": "gp3",
                        "Encrypted": True,
                        "DeleteOnTermination": True,
                    },
                }
            ],
            TagSpecifications=[
                {"ResourceType": "instance", "Tags": to_provider_tags(spec.tags)},
                {"ResourceType": "volume", "Tags": to_provider_tags(spec.tags)},
            ],
        )
        return response["Instances"][0]["InstanceId"]

    def _describe_instance(self, instance_id: str) -> Dict[str, Any]:
        response = self._call(self.ec2.describe_instances, InstanceIds=[instance_id])
        for reservation in response.get("Reservations", []):
            for instance in reservation.get("Instances", []):
                return instance
        raise ResourceNotFoundError(f"Instance {instance_id} not found", code="InvalidInstanceID.NotFound")

    def instance_state(self, instance_id: str) -> str:
        return self._describe_instance(instance_id)["State"]["Name"]

    # Discovery

    def find_tagged(self, node_type: NodeType, key: str, value: str) -> List[FoundResource]:
        node_type = NodeType(node_type)
        if node_type not in TAG_QUERIES:
            raise ValueError(f"{node_type.value} cannot be found by tag")

        operation, result_key, id_key = TAG_QUERIES[node_type]
        filters = [{"Name": f"tag:{key}", "Values": [value]}]
        if node_type == NodeType.COMPUTE_INSTANCE:
            filters.append({"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES})
        reason = f"Tagged with {key}={value}"

        found = []
        for page in self._paginate(self.ec2, operation, Filters=filters):
            items = page.get(result_key, [])
            if node_type == NodeType.COMPUTE_INSTANCE:
                items = [instance for reservation in items for instance in reservation.get("Instances", [])]
            for item in items:
                if node_type == NodeType.SECURITY_GROUP and item.get("GroupName") == "default":
                    continue
                found.append(FoundResource(node_type, item[id_key], from_provider_tags(item.get("Tags")), reason))

        return found

    def list_secrets(self, prefix: str, tags: Optional[Dict[str, str]] = None) -> List[str]:
        filters = [{"Key": "Name", "Option": "BeginsWith", "Values": [prefix]}]
        for key, value in sorted((tags or {}).items()):
            filters.append({"Key": f"tag:{key}", "Values": [value]})

        names = []
        for page in self._paginate(self.ssm, "describe_parameters", ParameterFilters=filters):
            names.extend(p["Name"] for p in page.get("Parameters", []))
        return sorted(names)

    # Teardown

    def get_tags(self, node_type: NodeType, identifier: str) -> Dict[str, str]:
        node_type = NodeType(node_type)

        if node_type == NodeType.NETWORK:
            items = self._call(self.ec2.describe_vpcs, VpcIds=[identifier]).get("Vpcs", [])
        elif node_type == NodeType.GATEWAY:
            items = self._call(
                self.ec2.describe_internet_gateways, InternetGatewayIds=[identifier]
            ).get("InternetGateways", [])
        elif node_type == NodeType.SUBNET:
            items = self._call(self.ec2.describe_subnets, SubnetIds=[identifier]).get("Subnets", [])
        elif node_type == NodeType.ROUTE_TABLE:
            items = self._call(self.ec2.describe_route_tables, RouteTableIds=[identifier]).get("RouteTables", [])
        elif node_type == NodeType.SECURITY_GROUP:
            items = self._call(self.ec2.describe_security_groups, GroupIds=[identifier]).get("SecurityGroups", [])
        elif node_type == NodeType.COMPUTE_INSTANCE:
            instance = self._describe_instance(identifier)
            # Terminated instances stay visible for a while but are gone for our purposes
            if instance["State"]["Name"] == "terminated":
                raise ResourceNotFoundError(f"Instance {identifier} is terminated", code="InvalidInstanceID.NotFound")
            items = [instance]
        elif node_type == NodeType.IAM_ROLE:
            return from_provider_tags(self._call(self.iam.list_role_tags, RoleName=identifier).get("Tags"))
        elif node_type == NodeType.INSTANCE_PROFILE:
            response = self._call(self.iam.list_instance_profile_tags, InstanceProfileName=identifier)
            return from_provider_tags(response.get("Tags"))
        else:
            response = self._call(
                self.ssm.list_tags_for_resource, ResourceType="Parameter", ResourceId=identifier
            )
            return from_provider_tags(response.get("TagList"))

        if not items:
            raise ResourceNotFoundError(f"{node_type.value} {identifier} not found")
        return from_provider_tags(items[0].get("Tags"))

    def delete(self, node_type: NodeType, identifier: str) -> None:
        node_type = NodeType(node_type)

        if node_type == NodeType.COMPUTE_INSTANCE:
            self._call(self.ec2.terminate_instances, InstanceIds=[identifier])
        elif node_type == NodeType.SECRET_PARAMETER:
            self._call(self.ssm.delete_parameter, Name=identifier)
        elif node_type == NodeType.INSTANCE_PROFILE:
            self._delete_instance_profile(identifier)
        elif node_type == NodeType.IAM_ROLE:
            self._delete_role(identifier)
        elif node_type == NodeType.SECURITY_GROUP:
            self._call(self.ec2.delete_security_group, GroupId=identifier)
        elif node_type == NodeType.ROUTE_TABLE:
            self._delete_route_table(identifier)
        elif node_type == NodeType.SUBNET:
            self._call(self.ec2.delete_subnet, SubnetId=identifier)
        elif node_type == NodeType.GATEWAY:
            self._delete_gateway(identifier)
        elif node_type == NodeType.NETWORK:
            self._call(self.ec2.delete_vpc, VpcId=identifier)

    def _delete_instance_profile(self, name: str) -> None:
        profile = self._call(self.iam.get_instance_profile, InstanceProfileName=name)["InstanceProfile"]
        for role in profile.get("Roles", []):
            self._call(
                self.iam.remove_role_from_instance_profile,
                InstanceProfileName=name,
                RoleName=role["RoleName"],
            )
        self._call(self.iam.delete_instance_profile, InstanceProfileName=name)

    def _delete_role(self, name: str) -> None:
        for policy_name in self._call(self.iam.list_role_policies, RoleName=name).get("PolicyNames", []):
            self._call(self.iam.delete_role_policy, RoleName=name, PolicyName=policy_name)

        attached = self._call(self.iam.list_attached_role_policies, RoleName=name).get("AttachedPolicies", [])
        for policy in attached:
            self._call(self.iam.detach_role_policy, RoleName=name, PolicyArn=policy["PolicyArn"])

        profiles = self._call(self.iam.list_instance_profiles_for_role, RoleName=name).get("InstanceProfiles", [])
        for profile in profiles:
            self._call(
                self.iam.remove_role_from_instance_profile,
                InstanceProfileName=profile["InstanceProfileName"],
                RoleName=name,
            )

        self._call(self.iam.delete_role, RoleName=name)

    def _delete_route_table(self, rtb_id: str) -> None:
        tables = self._call(self.ec2.describe_route_tables, RouteTableIds=[rtb_id]).get("RouteTables", [])
        for table in tables:
            for assoc in table.get("Associations", []):
                if assoc.get("Main"):
                    continue
                try:
                    self._call(
                        self.ec2.disassociate_route_table,
                        AssociationId=assoc["RouteTableAssociationId"],
                    )
                except ResourceNotFoundError:
                    logger.debug(f"Association {assoc['RouteTableAssociationId']} already gone")
        self._call(self.ec2.delete_route_table, RouteTableId=rtb_id)

    def _delete_gateway(self, igw_id: str) -> None:
        gateways = self._call(
            self.ec2.describe_internet_gateways, InternetGatewayIds=[igw_id]
        ).get("InternetGateways", [])
        for igw in gateways:
            for attachment in igw.get("Attachments", []):
                try:
                    self._call(
                        self.ec2.detach_internet_gateway,
                        InternetGatewayId=igw_id,
                        VpcId=attachment["VpcId"],
                    )
                except ProviderError as e:
                    if e.code != "Gateway.NotAttached":
                        raise
        self._call(self.ec2.delete_internet_gateway, InternetGatewayId=igw_id)

    # Command channel

    def command_channel_online(self, instance_id: str) -> bool:
        response = self._call(
            self.ssm.describe_instance_information,
            Filters=[{"Key": "InstanceIds", "Values": [instance_id]}],
        )
        info = response.get("InstanceInformationList", [])
        return bool(info) and info[0].get("PingStatus") == "Online"

    def run_command(self, instance_id: str, commands: List[str], timeout: int = 60) -> CommandResult:
        """
        Run shell commands on the instance over SSM and wait for the result.

        Returns:
            CommandResult; status is "TimedOut" if no terminal status arrived in time
        """
        response = self._call(
            self.ssm.send_command,
            InstanceIds=[instance_id],
            DocumentName="AWS-RunShellScript",
            Parameters={"commands": commands},
            TimeoutSeconds=max(30, min(timeout, 3600)),
        )
        command_id = response["Command"]["CommandId"]
        result = {"Status": "Pending"}

        def _finished() -> bool:
            try:
                result.update(
                    self.ssm.get_command_invocation(CommandId=command_id, InstanceId=instance_id)
                )
            except ClientError as e:
                # Invocation is not registered immediately after send_command
                if e.response["Error"]["Code"] == "InvocationDoesNotExist":
                    return False
                raise translate_client_error(e) from e
            return result["Status"] in ("Success", "Failed", "TimedOut", "Cancelled")

        if not poll_until(_finished, timeout=timeout, interval=2, sleep=time.sleep):
            return CommandResult(status="TimedOut")

        return CommandResult(
            status=result["Status"],
            stdout=result.get("StandardOutputContent", ""),
            stderr=result.get("StandardErrorContent", ""),
        )
