"""
Tests for the boto3 provider using mocked clients.
"""

import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from deckhand.errors import (
    ProviderError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    TransientProviderError,
)
from deckhand.graph import NodeType
from deckhand.provider.aws import AwsProvider, translate_client_error
from deckhand.provider.base import InstanceSpec, RolePolicies

TAGS = {"Project": "demo", "DeployId": "demo-20240115T103000Z"}
TAG_LIST = [{"Key": "Project", "Value": "demo"}, {"Key": "DeployId", "Value": "demo-20240115T103000Z"}]


def _client_error(code, message="boom", operation="Operation"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


@pytest.fixture
def clients():
    return {"ec2": MagicMock(), "iam": MagicMock(), "ssm": MagicMock(), "sts": MagicMock()}


@pytest.fixture
def aws(clients):
    session = MagicMock()
    session.client.side_effect = lambda service, region_name=None: clients[service]
    return AwsProvider("us-east-1", session=session)


class TestTranslateClientError:
    """Test error code mapping."""

    @pytest.mark.parametrize("code", ["InvalidVpcID.NotFound", "NoSuchEntity", "ParameterNotFound"])
    def test_not_found(self, code):
        """Test not-found codes."""
        assert isinstance(translate_client_error(_client_error(code)), ResourceNotFoundError)

    def test_already_exists(self):
        """Test already-exists codes."""
        assert isinstance(translate_client_error(_client_error("EntityAlreadyExists")), ResourceAlreadyExistsError)

    @pytest.mark.parametrize("code", ["DependencyViolation", "RequestLimitExceeded", "Throttling"])
    def test_transient(self, code):
        """Test retryable codes."""
        assert isinstance(translate_client_error(_client_error(code)), TransientProviderError)

    def test_instance_profile_propagation_is_transient(self):
        """Test that an instance profile not yet visible to EC2 is retryable."""
        error = translate_client_error(
            _client_error("InvalidParameterValue", "Value (demo-instance-profile) for parameter iamInstanceProfile.name is invalid")
        )

        assert isinstance(error, TransientProviderError)

    def test_other_errors(self):
        """Test that everything else is a plain provider error with the raw message."""
        error = translate_client_error(_client_error("UnauthorizedOperation", "You are not authorized"))

        assert type(error) is ProviderError
        assert error.code == "UnauthorizedOperation"
        assert str(error) == "UnauthorizedOperation: You are not authorized"


class TestCreate:
    """Test creation calls."""

    def test_create_network(self, aws, clients):
        """Test VPC creation with tags and DNS attributes."""
        clients["ec2"].create_vpc.return_value = {"Vpc": {"VpcId": "vpc-1"}}

        assert aws.create_network("10.50.0.0/16", TAGS) == "vpc-1"
        kwargs = clients["ec2"].create_vpc.call_args.kwargs
        assert kwargs["CidrBlock"] == "10.50.0.0/16"
        assert kwargs["TagSpecifications"] == [{"ResourceType": "vpc", "Tags": TAG_LIST}]
        assert clients["ec2"].modify_vpc_attribute.call_count == 2

    def test_create_gateway_attaches(self, aws, clients):
        """Test that the gateway is attached to the network."""
        clients["ec2"].create_internet_gateway.return_value = {"InternetGateway": {"InternetGatewayId": "igw-1"}}

        assert aws.create_gateway("vpc-1", TAGS) == "igw-1"
        clients["ec2"].attach_internet_gateway.assert_called_once_with(InternetGatewayId="igw-1", VpcId="vpc-1")

    def test_create_route_table(self, aws, clients):
        """Test the default route and subnet association."""
        clients["ec2"].create_route_table.return_value = {"RouteTable": {"RouteTableId": "rtb-1"}}

        assert aws.create_route_table("vpc-1", "subnet-1", "igw-1", TAGS) == "rtb-1"
        clients["ec2"].create_route.assert_called_once_with(
            RouteTableId="rtb-1", DestinationCidrBlock="0.0.0.0/0", GatewayId="igw-1"
        )
        clients["ec2"].associate_route_table.assert_called_once_with(RouteTableId="rtb-1", SubnetId="subnet-1")

    def test_create_role_exists(self, aws, clients):
        """Test that an existing role surfaces as already-exists."""
        clients["iam"].create_role.side_effect = _client_error("EntityAlreadyExists")

        with pytest.raises(ResourceAlreadyExistsError):
            aws.create_role("demo-role", TAGS)

    def test_create_role_trust_policy(self, aws, clients):
        """Test the EC2 trust policy of the role."""
        clients["iam"].create_role.return_value = {"Role": {"RoleName": "demo-role"}}

        aws.create_role("demo-role", TAGS)
        document = json.loads(clients["iam"].create_role.call_args.kwargs["AssumeRolePolicyDocument"])
        assert document["Statement"][0]["Principal"] == {"Service": "ec2.amazonaws.com"}

    def test_attach_role_policies(self, aws, clients):
        """Test managed and inline policy attachment."""
        aws.attach_role_policies("demo-role", RolePolicies(managed=["arn:managed"], inline={"Access": {"a": 1}}))

        clients["iam"].attach_role_policy.assert_called_once_with(RoleName="demo-role", PolicyArn="arn:managed")
        clients["iam"].put_role_policy.assert_called_once_with(
            RoleName="demo-role", PolicyName="Access", PolicyDocument='{"a": 1}'
        )

    def test_add_role_to_profile_already_there(self, aws, clients):
        """Test that a profile already holding the role is fine."""
        clients["iam"].add_role_to_instance_profile.side_effect = _client_error("LimitExceeded")

        aws.add_role_to_instance_profile("demo-instance-profile", "demo-role")

    def test_add_role_to_profile_other_error(self, aws, clients):
        """Test that other errors propagate."""
        clients["iam"].add_role_to_instance_profile.side_effect = _client_error("AccessDenied")

        with pytest.raises(ProviderError):
            aws.add_role_to_instance_profile("demo-instance-profile", "demo-role")

    def test_put_secret(self, aws, clients):
        """Test that secrets are stored encrypted and re-tagged."""
        assert aws.put_secret("/demo/telegram/bot_token", "123:abc", TAGS) == "/demo/telegram/bot_token"

        put = clients["ssm"].put_parameter.call_args.kwargs
        assert put["Type"] == "SecureString"
        assert put["Overwrite"] is True
        assert "Tags" not in put
        clients["ssm"].add_tags_to_resource.assert_called_once_with(
            ResourceType="Parameter", ResourceId="/demo/telegram/bot_token", Tags=TAG_LIST
        )

    def test_latest_image(self, aws, clients):
        """Test the public image parameter lookup."""
        clients["ssm"].get_parameter.return_value = {"Parameter": {"Value": "ami-123"}}

        assert aws.latest_image("arm64") == "ami-123"
        name = clients["ssm"].get_parameter.call_args.kwargs["Name"]
        assert name == "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-arm64"

    def test_run_instance(self, aws, clients):
        """Test the instance launch parameters."""
        clients["ec2"].run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}
        spec = InstanceSpec(
            image_id="ami-1",
            instance_type="t4g.medium",
            subnet_id="subnet-1",
            security_group_id="sg-1",
            instance_profile="demo-instance-profile",
            user_data=b"#!/bin/bash\necho hi\n",
            tags=TAGS,
        )

        assert aws.run_instance(spec) == "i-1"
        kwargs = clients["ec2"].run_instances.call_args.kwargs
        assert kwargs["MetadataOptions"]["HttpTokens"] == "required"
        assert kwargs["IamInstanceProfile"] == {"Name": "demo-instance-profile"}
        assert kwargs["UserData"] == "#!/bin/bash\necho hi\n"
        ebs = kwargs["BlockDeviceMappings"][0]["Ebs"]
        assert ebs["VolumeType"] == "gp3"
        assert ebs["Encrypted"] is True
        assert {s["ResourceType"] for s in kwargs["TagSpecifications"]} == {"instance", "volume"}


class TestDiscovery:
    """Test tag queries."""

    def _pages(self, client, *pages):
        paginator = MagicMock()
        paginator.paginate.return_value = list(pages)
        client.get_paginator.return_value = paginator
        return paginator

    def test_find_networks(self, aws, clients):
        """Test a network query by DeployId."""
        paginator = self._pages(clients["ec2"], {"Vpcs": [{"VpcId": "vpc-1", "Tags": TAG_LIST}]})

        found = aws.find_tagged(NodeType.NETWORK, "DeployId", "demo-20240115T103000Z")

        assert [(r.identifier, r.tags) for r in found] == [("vpc-1", TAGS)]
        clients["ec2"].get_paginator.assert_called_once_with("describe_vpcs")
        filters = paginator.paginate.call_args.kwargs["Filters"]
        assert filters == [{"Name": "tag:DeployId", "Values": ["demo-20240115T103000Z"]}]

    def test_all_pages_read(self, aws, clients):
        """Test that results spread over several pages are all returned."""
        self._pages(
            clients["ec2"],
            {"Subnets": [{"SubnetId": "subnet-1", "Tags": TAG_LIST}]},
            {"Subnets": [{"SubnetId": "subnet-2", "Tags": TAG_LIST}]},
        )

        found = aws.find_tagged(NodeType.SUBNET, "Project", "demo")

        assert [r.identifier for r in found] == ["subnet-1", "subnet-2"]

    def test_page_error_translated(self, aws, clients):
        """Test that an error while paging is a provider error."""
        paginator = MagicMock()
        paginator.paginate.side_effect = _client_error("UnauthorizedOperation", "not allowed")
        clients["ec2"].get_paginator.return_value = paginator

        with pytest.raises(ProviderError, match="UnauthorizedOperation"):
            aws.find_tagged(NodeType.GATEWAY, "Project", "demo")

    def test_default_security_group_skipped(self, aws, clients):
        """Test that a network's default group is never returned."""
        self._pages(
            clients["ec2"],
            {
                "SecurityGroups": [
                    {"GroupId": "sg-default", "GroupName": "default", "Tags": TAG_LIST},
                    {"GroupId": "sg-1", "GroupName": "demo-sg", "Tags": TAG_LIST},
                ]
            },
        )

        found = aws.find_tagged(NodeType.SECURITY_GROUP, "Project", "demo")

        assert [r.identifier for r in found] == ["sg-1"]

    def test_instances_filtered_to_live_states(self, aws, clients):
        """Test that terminated instances are excluded by the query."""
        paginator = self._pages(
            clients["ec2"],
            {"Reservations": [{"Instances": [{"InstanceId": "i-1", "Tags": TAG_LIST}]}]},
            {"Reservations": [{"Instances": [{"InstanceId": "i-2", "Tags": TAG_LIST}]}]},
        )

        found = aws.find_tagged(NodeType.COMPUTE_INSTANCE, "Project", "demo")

        assert [r.identifier for r in found] == ["i-1", "i-2"]
        filters = paginator.paginate.call_args.kwargs["Filters"]
        assert {"Name": "instance-state-name", "Values": ["pending", "running", "stopping", "stopped"]} in filters

    def test_project_scoped_types_not_queryable(self, aws):
        """Test that IAM nodes cannot be found by tag."""
        with pytest.raises(ValueError):
            aws.find_tagged(NodeType.IAM_ROLE, "Project", "demo")

    def test_list_secrets(self, aws, clients):
        """Test paginated secret listing by prefix."""
        paginator = self._pages(
            clients["ssm"],
            {"Parameters": [{"Name": "/demo/b/x"}]},
            {"Parameters": [{"Name": "/demo/a/y"}]},
        )

        assert aws.list_secrets("/demo/") == ["/demo/a/y", "/demo/b/x"]
        filters = paginator.paginate.call_args.kwargs["ParameterFilters"]
        assert filters == [{"Key": "Name", "Option": "BeginsWith", "Values": ["/demo/"]}]

    def test_list_secrets_by_tag(self, aws, clients):
        """Test that tag filters are passed to the parameter query."""
        paginator = self._pages(clients["ssm"], {"Parameters": [{"Name": "/demo/a/y"}]})

        aws.list_secrets("/demo/", {"DeployId": "demo-20240115T103000Z"})

        filters = paginator.paginate.call_args.kwargs["ParameterFilters"]
        assert {"Key": "tag:DeployId", "Values": ["demo-20240115T103000Z"]} in filters


class TestGetTags:
    """Test live tag reads."""

    def test_ec2_node(self, aws, clients):
        """Test reading tags of a subnet."""
        clients["ec2"].describe_subnets.return_value = {"Subnets": [{"SubnetId": "subnet-1", "Tags": TAG_LIST}]}

        assert aws.get_tags(NodeType.SUBNET, "subnet-1") == TAGS

    def test_ec2_node_not_found(self, aws, clients):
        """Test a deleted subnet."""
        clients["ec2"].describe_subnets.side_effect = _client_error("InvalidSubnetID.NotFound")

        with pytest.raises(ResourceNotFoundError):
            aws.get_tags(NodeType.SUBNET, "subnet-1")

    def test_terminated_instance_not_found(self, aws, clients):
        """Test that a terminated instance counts as gone."""
        clients["ec2"].describe_instances.return_value = {
            "Reservations": [{"Instances": [{"InstanceId": "i-1", "State": {"Name": "terminated"}, "Tags": TAG_LIST}]}]
        }

        with pytest.raises(ResourceNotFoundError):
            aws.get_tags(NodeType.COMPUTE_INSTANCE, "i-1")

    def test_role(self, aws, clients):
        """Test reading role tags."""
        clients["iam"].list_role_tags.return_value = {"Tags": TAG_LIST}

        assert aws.get_tags(NodeType.IAM_ROLE, "demo-role") == TAGS

    def test_secret(self, aws, clients):
        """Test reading parameter tags."""
        clients["ssm"].list_tags_for_resource.return_value = {"TagList": TAG_LIST}

        assert aws.get_tags(NodeType.SECRET_PARAMETER, "/demo/a/b") == TAGS


class TestDelete:
    """Test delete calls and their pre-steps."""

    def test_gateway_detached_first(self, aws, clients):
        """Test that the gateway is detached before deletion."""
        clients["ec2"].describe_internet_gateways.return_value = {
            "InternetGateways": [{"InternetGatewayId": "igw-1", "Attachments": [{"VpcId": "vpc-1"}]}]
        }

        aws.delete(NodeType.GATEWAY, "igw-1")

        clients["ec2"].detach_internet_gateway.assert_called_once_with(InternetGatewayId="igw-1", VpcId="vpc-1")
        clients["ec2"].delete_internet_gateway.assert_called_once_with(InternetGatewayId="igw-1")

    def test_gateway_already_detached(self, aws, clients):
        """Test that a gateway detached meanwhile is still deleted."""
        clients["ec2"].describe_internet_gateways.return_value = {
            "InternetGateways": [{"InternetGatewayId": "igw-1", "Attachments": [{"VpcId": "vpc-1"}]}]
        }
        clients["ec2"].detach_internet_gateway.side_effect = _client_error("Gateway.NotAttached")

        aws.delete(NodeType.GATEWAY, "igw-1")

        clients["ec2"].delete_internet_gateway.assert_called_once()

    def test_route_table_disassociated_first(self, aws, clients):
        """Test that only non-main associations are removed."""
        clients["ec2"].describe_route_tables.return_value = {
            "RouteTables": [{
                "RouteTableId": "rtb-1",
                "Associations": [
                    {"RouteTableAssociationId": "rtbassoc-1", "Main": False},
                    {"RouteTableAssociationId": "rtbassoc-main", "Main": True},
                ],
            }]
        }

        aws.delete(NodeType.ROUTE_TABLE, "rtb-1")

        clients["ec2"].disassociate_route_table.assert_called_once_with(AssociationId="rtbassoc-1")
        clients["ec2"].delete_route_table.assert_called_once_with(RouteTableId="rtb-1")

    def test_role_cleaned_before_delete(self, aws, clients):
        """Test that policies and profile memberships are removed first."""
        iam = clients["iam"]
        iam.list_role_policies.return_value = {"PolicyNames": ["SSMParameterAccess"]}
        iam.list_attached_role_policies.return_value = {"AttachedPolicies": [{"PolicyArn": "arn:managed"}]}
        iam.list_instance_profiles_for_role.return_value = {
            "InstanceProfiles": [{"InstanceProfileName": "demo-instance-profile"}]
        }

        aws.delete(NodeType.IAM_ROLE, "demo-role")

        iam.delete_role_policy.assert_called_once_with(RoleName="demo-role", PolicyName="SSMParameterAccess")
        iam.detach_role_policy.assert_called_once_with(RoleName="demo-role", PolicyArn="arn:managed")
        iam.remove_role_from_instance_profile.assert_called_once_with(
            InstanceProfileName="demo-instance-profile", RoleName="demo-role"
        )
        iam.delete_role.assert_called_once_with(RoleName="demo-role")

    def test_instance_profile_emptied_first(self, aws, clients):
        """Test that roles are removed from the profile before deletion."""
        clients["iam"].get_instance_profile.return_value = {
            "InstanceProfile": {"InstanceProfileName": "demo-instance-profile", "Roles": [{"RoleName": "demo-role"}]}
        }

        aws.delete(NodeType.INSTANCE_PROFILE, "demo-instance-profile")

        clients["iam"].remove_role_from_instance_profile.assert_called_once_with(
            InstanceProfileName="demo-instance-profile", RoleName="demo-role"
        )
        clients["iam"].delete_instance_profile.assert_called_once_with(InstanceProfileName="demo-instance-profile")

    def test_security_group_dependency_is_transient(self, aws, clients):
        """Test that a group still in use raises a retryable error."""
        clients["ec2"].delete_security_group.side_effect = _client_error("DependencyViolation", "resource sg-1 has a dependent object")

        with pytest.raises(TransientProviderError, match="dependent object"):
            aws.delete(NodeType.SECURITY_GROUP, "sg-1")

    def test_instance_terminated(self, aws, clients):
        """Test instance deletion."""
        aws.delete(NodeType.COMPUTE_INSTANCE, "i-1")

        clients["ec2"].terminate_instances.assert_called_once_with(InstanceIds=["i-1"])

    def test_secret_not_found(self, aws, clients):
        """Test deleting a parameter that is already gone."""
        clients["ssm"].delete_parameter.side_effect = _client_error("ParameterNotFound")

        with pytest.raises(ResourceNotFoundError):
            aws.delete(NodeType.SECRET_PARAMETER, "/demo/a/b")


class TestCommandChannel:
    """Test SSM command helpers."""

    def test_online(self, aws, clients):
        """Test the ping status check."""
        clients["ssm"].describe_instance_information.return_value = {
            "InstanceInformationList": [{"InstanceId": "i-1", "PingStatus": "Online"}]
        }

        assert aws.command_channel_online("i-1")

    def test_not_registered(self, aws, clients):
        """Test an instance unknown to the command channel."""
        clients["ssm"].describe_instance_information.return_value = {"InstanceInformationList": []}

        assert not aws.command_channel_online("i-1")

    def test_run_command(self, aws, clients):
        """Test a command that finishes on the first poll."""
        clients["ssm"].send_command.return_value = {"Command": {"CommandId": "cmd-1"}}
        clients["ssm"].get_command_invocation.return_value = {
            "Status": "Success",
            "StandardOutputContent": "1\n",
            "StandardErrorContent": "",
        }

        result = aws.run_command("i-1", ["echo 1"])

        assert result.ok
        assert result.stdout == "1\n"
        assert clients["ssm"].send_command.call_args.kwargs["DocumentName"] == "AWS-RunShellScript"
