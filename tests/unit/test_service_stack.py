"""Unit tests for ServiceStack branch resources.

Tests the load balancer and its two listeners sharing one target group, the
snapshot-restored database removal settings, the task definition and
service configuration, published lookup entries, branch/version tagging,
and input validation. Synthesizes the VPC stack alongside so cross-stack
references resolve as they do in app.py.
"""
import json

import aws_cdk as cdk
import pytest
from aws_cdk.assertions import Annotations, Capture, Match, Template

from stacks.deployment import SharedPlusBranch, compose
from stacks.registry.parameter_store import ParameterStore, UnpublishedLookupKeyError
from stacks.service.service_stack import ServiceProps, ServiceStack

TAGGED_TYPES = (
    "AWS::ElasticLoadBalancingV2::TargetGroup",
    "AWS::ElasticLoadBalancingV2::LoadBalancer",
    "AWS::RDS::DBInstance",
    "AWS::ECS::TaskDefinition",
    "AWS::ECS::Service",
)


def _tags_as_dict(tags):
    """Normalize CloudFormation tag lists and SSM tag maps to a dict."""
    if isinstance(tags, dict):
        return tags
    return {t["Key"]: t["Value"] for t in tags or []}


def synth_service_stack(settings, branch="feature-x", version="1.2.3"):
    """Synthesize the VPC stack and one branch service stack for testing."""
    app = cdk.App()
    env = cdk.Environment(account="111111111111", region="us-east-1")
    vpc_stack, service_stack = compose(app, SharedPlusBranch(branch, version), settings, env)
    template = Template.from_stack(service_stack)
    return vpc_stack, service_stack, template


def _props(**overrides):
    values = dict(
        branch="feature-x",
        version="1.2.3",
        cluster_arn="arn:aws:ecs:us-east-1:111111111111:cluster/test-cluster",
        cluster_name="test-cluster",
        app_security_group_id="sg-0123456789abcdef0",
        data_security_group_id="sg-0fedcba9876543210",
        subnet_ids=["subnet-0123456789abcdef0"],
        admin_secret_arn="arn:aws:secretsmanager:us-east-1:111111111111:secret:test/db-admin-AbCdEf",
        execution_role_arn="arn:aws:iam::111111111111:role/TaskExecutionRole",
        task_role_arn="arn:aws:iam::111111111111:role/TaskDefinitionRole",
    )
    values.update(overrides)
    return ServiceProps(**values)


def test_target_group(settings):
    """Test the target group is named after the branch and targets IPs on the service port."""
    _, _, template = synth_service_stack(settings)
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::TargetGroup", {
        "Name": "feature-x",
        "TargetType": "ip",
        "Protocol": "HTTP",
        "Port": 5000
    })


def test_load_balancer(settings):
    """Test the load balancer is internet facing and named after the branch."""
    _, _, template = synth_service_stack(settings)
    template.has_resource_properties("AWS::ElasticLoadBalancingV2::LoadBalancer", {
        "Name": "feature-x",
        "Scheme": "internet-facing",
        "IpAddressType": "ipv4"
    })


def test_listeners_share_single_target_group(settings):
    """Test both listeners forward to the one and only target group."""
    _, _, template = synth_service_stack(settings)
    target_groups = template.find_resources("AWS::ElasticLoadBalancingV2::TargetGroup")
    assert len(target_groups) == 1, f"Expected 1 target group, found {len(target_groups)}"
    target_group_id = next(iter(target_groups))

    listeners = template.find_resources("AWS::ElasticLoadBalancingV2::Listener")
    ports = sorted(res["Properties"]["Port"] for res in listeners.values())
    assert ports == [80, 5000]
    for res in listeners.values():
        actions = res["Properties"]["DefaultActions"]
        assert actions == [{"Type": "forward", "TargetGroupArn": {"Ref": target_group_id}}]


@pytest.mark.parametrize("branch", ["feature-x", "main", "release-2024"])
def test_database_is_disposable(settings, branch):
    """Test every branch database is destroyed with its stack and keeps no backups."""
    _, _, template = synth_service_stack(settings, branch=branch)
    template.has_resource("AWS::RDS::DBInstance", {
        "DeletionPolicy": "Delete",
        "UpdateReplacePolicy": "Delete",
        "Properties": {
            "DBInstanceIdentifier": f"db-{branch}",
            "DBSnapshotIdentifier": "snapshot",
            "BackupRetentionPeriod": 0,
            "DeleteAutomatedBackups": True,
            "DeletionProtection": False,
            "PubliclyAccessible": True
        }
    })


def test_database_engine(settings):
    _, _, template = synth_service_stack(settings)
    template.has_resource_properties("AWS::RDS::DBInstance", {
        "Engine": "sqlserver-ex",
        "EngineVersion": "14.00.3356.20.v1",
        "LicenseModel": "license-included",
        "DBInstanceClass": "db.t3.micro",
        "AllocatedStorage": "20",
        "Timezone": "Eastern Standard Time",
        "EnableCloudwatchLogsExports": ["error"]
    })


def test_public_database_warning(settings):
    """Test synthesis warns that the branch database is publicly accessible."""
    _, service_stack, _ = synth_service_stack(settings)
    Annotations.from_stack(service_stack).has_warning(
        "*", Match.string_like_regexp("publicly accessible")
    )


def test_task_definition(settings):
    """Test the container runs the image tagged with the version and reads the password as a secret."""
    _, _, template = synth_service_stack(settings, version="2.0.1")
    capture_containers = Capture()
    template.has_resource_properties("AWS::ECS::TaskDefinition", {
        "Family": "feature-x",
        "Cpu": "256",
        "Memory": "512",
        "RequiresCompatibilities": ["FARGATE"],
        "ContainerDefinitions": capture_containers
    })
    containers = capture_containers.as_array()
    assert len(containers) == 1
    container = containers[0]
    assert container["Name"] == "container-feature-x"
    assert ":2.0.1" in json.dumps(container["Image"])

    environment = {e["Name"]: e["Value"] for e in container["Environment"]}
    assert environment["DB_Database"] == "appdb"
    assert environment["DB_User"] == "appuser"
    assert environment["NO_COLOR"] == "true"
    assert "Fn::GetAtt" in environment["DB_Host"]

    secrets = {s["Name"]: s["ValueFrom"] for s in container["Secrets"]}
    assert "DB_Password" in secrets
    assert "DB_Password" not in environment
    assert container["PortMappings"] == [{"ContainerPort": 5000, "HostPort": 5000, "Protocol": "tcp"}]


def test_fargate_service(settings):
    """Test one replica, 100-200% rolling deployment and a circuit breaker without rollback."""
    _, _, template = synth_service_stack(settings)
    template.has_resource_properties("AWS::ECS::Service", {
        "ServiceName": "service-feature-x",
        "DesiredCount": 1,
        "LaunchType": "FARGATE",
        "DeploymentController": {"Type": "ECS"},
        "DeploymentConfiguration": {
            "MaximumPercent": 200,
            "MinimumHealthyPercent": 100,
            "DeploymentCircuitBreaker": {"Enable": True, "Rollback": False}
        },
        "NetworkConfiguration": {
            "AwsvpcConfiguration": {"AssignPublicIp": "DISABLED"}
        }
    })


def test_service_registers_with_target_group(settings):
    _, _, template = synth_service_stack(settings)
    target_group_id = next(iter(template.find_resources("AWS::ElasticLoadBalancingV2::TargetGroup")))
    template.has_resource_properties("AWS::ECS::Service", {
        "LoadBalancers": [{
            "ContainerName": "container-feature-x",
            "ContainerPort": 5000,
            "TargetGroupArn": {"Ref": target_group_id}
        }]
    })


def test_branch_outputs_published(settings):
    """Test the three branch lookup entries are published."""
    _, _, template = synth_service_stack(settings)
    names = sorted(
        res["Properties"]["Name"]
        for res in template.find_resources("AWS::SSM::Parameter").values()
    )
    assert names == ["feature-x-alb-dns-name", "feature-x-db-host", "feature-x-service-arn"]


def test_branch_resources_tagged(settings):
    """Test every branch resource carries the branch, version and App tags."""
    _, _, template = synth_service_stack(settings, branch="feature-x", version="1.2.3")
    for resource_type in TAGGED_TYPES:
        resources = template.find_resources(resource_type)
        assert resources, f"No {resource_type} found"
        for logical_id, res in resources.items():
            tags = _tags_as_dict(res["Properties"].get("Tags"))
            assert tags.get("branch") == "feature-x", f"{logical_id} missing branch tag"
            assert tags.get("version") == "1.2.3", f"{logical_id} missing version tag"
            assert tags.get("App") == "ecs-repo-branch", f"{logical_id} missing App tag"

    for res in template.find_resources("AWS::SSM::Parameter").values():
        tags = _tags_as_dict(res["Properties"].get("Tags"))
        assert tags.get("branch") == "feature-x"
        assert tags.get("version") == "1.2.3"


def test_service_stack_depends_on_vpc_stack(settings):
    vpc_stack, service_stack, _ = synth_service_stack(settings)
    assert vpc_stack in service_stack.dependencies


def test_vpc_must_be_published_first(settings):
    """Test a branch stack cannot resolve the VPC before the VPC stack published it."""
    app = cdk.App()
    env = cdk.Environment(account="111111111111", region="us-east-1")
    with pytest.raises(UnpublishedLookupKeyError):
        ServiceStack(app, "Service-feature-x-Stack",
            props=_props(),
            settings=settings,
            store=ParameterStore(),
            env=env
        )


def test_separate_invocation_resolves_vpc_by_lookup(settings):
    """Test a branch stack synthesizes alone when the ordering is guaranteed externally."""
    app = cdk.App()
    env = cdk.Environment(account="111111111111", region="us-east-1")
    stack = ServiceStack(app, "Service-feature-x-Stack",
        props=_props(),
        settings=settings,
        store=ParameterStore(fail_closed=False),
        env=env
    )
    template = Template.from_stack(stack)
    template.has_resource_properties("AWS::ECS::Service", {"ServiceName": "service-feature-x"})


@pytest.mark.parametrize("field, value", [
    ("cluster_arn", ""),
    ("app_security_group_id", ""),
    ("admin_secret_arn", ""),
    ("subnet_ids", []),
    ("subnet_ids", [""]),
    ("version", ""),
])
def test_missing_inputs_rejected_before_declaring_resources(settings, field, value):
    """Test empty inputs fail before the stack is added to the app."""
    app = cdk.App()
    env = cdk.Environment(account="111111111111", region="us-east-1")
    with pytest.raises(ValueError):
        ServiceStack(app, "Service-feature-x-Stack",
            props=_props(**{field: value}),
            settings=settings,
            store=ParameterStore(fail_closed=False),
            env=env
        )
    assert app.node.try_find_child("Service-feature-x-Stack") is None
