#!/usr/bin/env python3
"""CDK application entrypoint.

Defines and synthesizes the infrastructure stacks:
1. VpcStack: VPC, security groups, Fargate cluster, task roles, admin secret,
   VPC endpoints; publishes the VPC id under the "vpcid" parameter.
2. Service-<branch>-Stack (only with -c branch=<name> -c version=<tag>):
   load balancer, snapshot-restored database, task definition and service.
"""

import aws_cdk as cdk
from stacks.config.settings import InfraSettings, resolve_environment
from stacks.deployment import SharedPlusBranch, compose, resolve_deployment

app = cdk.App()


env_name = app.node.try_get_context("environment") or "dev"
env_context = app.node.try_get_context(env_name)
if not env_context:
    raise ValueError(f"No context found for environment '{env_name}'. Add a '{env_name}' block to cdk.json")

settings = InfraSettings.from_context(env_context)
deployment = resolve_deployment(
    app.node.try_get_context("branch"),
    app.node.try_get_context("version")
)
env = resolve_environment()

if isinstance(deployment, SharedPlusBranch):
    print(f"Synthesizing VpcStack and branch '{deployment.branch}' at version {deployment.version} "
          f"(Account: {env.account}, Region: {env.region})")
else:
    print(f"Synthesizing VpcStack only (Account: {env.account}, Region: {env.region})")

compose(app, deployment, settings, env)

app.synth()
