"""Stack composition.

Decides once, from the invocation context, whether this synthesis covers
the VPC stack alone or the VPC stack plus one branch service stack, and
wires the two together.
"""
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import aws_cdk as cdk
from aws_cdk import Tags

from stacks.config.settings import InfraSettings
from stacks.network.network_stack import NetworkStack
from stacks.registry.parameter_store import ParameterStore
from stacks.service.naming import BranchNames, validate_version
from stacks.service.service_stack import ServiceProps, ServiceStack

APP_TAG = ("App", "ecs-repo-branch")
SHARED_STACK_ID = "VpcStack"


@dataclass(frozen=True)
class SharedOnly:
    """Only the VPC stack is synthesized."""


@dataclass(frozen=True)
class SharedPlusBranch:
    """The VPC stack plus the service stack for one branch."""

    branch: str
    version: str

    def __post_init__(self):
        BranchNames.for_branch(self.branch)
        validate_version(self.version)


Deployment = Union[SharedOnly, SharedPlusBranch]


def resolve_deployment(branch: Optional[str], version: Optional[str]) -> Deployment:
    """Map the optional branch/version context values to a Deployment."""
    branch = (branch or "").strip()
    version = (version or "").strip()
    if not branch:
        return SharedOnly()
    if not version:
        raise ValueError(f"Branch '{branch}' requires a 'version' context value (the image tag)")
    return SharedPlusBranch(branch=branch, version=version)


def compose(app: cdk.App,
            deployment: Deployment,
            settings: InfraSettings,
            env: cdk.Environment,
            store: ParameterStore = None) -> Tuple[NetworkStack, Optional[ServiceStack]]:
    """Declare the stacks for deployment on app and return them."""
    store = store or ParameterStore()

    vpc_stack = NetworkStack(app, SHARED_STACK_ID,
        settings=settings,
        store=store,
        env=env,
        description="VPC Infrastructure"
    )

    service_stack = None
    if isinstance(deployment, SharedPlusBranch):
        if not env.account:
            raise ValueError(
                "A branch deployment looks up the VPC and needs a target account; "
                "set CDK_DEPLOY_ACCOUNT or CDK_DEFAULT_ACCOUNT"
            )
        names = BranchNames.for_branch(deployment.branch)
        props = ServiceProps(
            branch=deployment.branch,
            version=deployment.version,
            cluster_arn=vpc_stack.cluster.cluster_arn,
            cluster_name=vpc_stack.cluster.cluster_name,
            app_security_group_id=vpc_stack.app_security_group.security_group_id,
            data_security_group_id=vpc_stack.data_security_group.security_group_id,
            subnet_ids=[subnet.subnet_id for subnet in vpc_stack.subnets],
            admin_secret_arn=vpc_stack.admin_secret.secret_arn,
            execution_role_arn=vpc_stack.task_execution_role.role_arn,
            task_role_arn=vpc_stack.task_role.role_arn,
        )
        service_stack = ServiceStack(app, names.stack_id,
            props=props,
            settings=settings,
            store=store,
            env=env
        )
        service_stack.add_dependency(vpc_stack)
        Tags.of(service_stack).add("branch", deployment.branch)
        Tags.of(service_stack).add("version", deployment.version)

    Tags.of(app).add(*APP_TAG)
    return vpc_stack, service_stack
