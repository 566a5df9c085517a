"""Lookup store reader for deployment pipelines.

Reads the SSM parameters the stacks publish:
- shared-ready: exits non-zero until VpcStack has published "vpcid", so a
  pipeline can gate branch deployments on it
- branch-outputs: prints the database host, service ARN and load balancer
  DNS name of a deployed branch as JSON
"""

import json
import sys
from dataclasses import asdict, dataclass

import boto3
import click
from botocore.exceptions import ClientError

from stacks.registry.parameter_store import BranchKeys, LookupKey, VPC_ID


class LookupEntryNotFound(Exception):
    """Raised when a lookup key has not been published yet."""

    def __init__(self, key: LookupKey):
        super().__init__(f"Lookup entry '{key.name}' has not been published")
        self.key = key


@dataclass(frozen=True)
class BranchOutputs:
    db_host: str
    service_arn: str
    alb_dns_name: str


def read_parameter(client, key: LookupKey) -> str:
    """Return the value published under key.

    Raises:
        LookupEntryNotFound: If the parameter does not exist.
        ClientError: For any other SSM error.
    """
    try:
        response = client.get_parameter(Name=key.name)
    except ClientError as e:
        if e.response.get("Error", {}).get("Code") == "ParameterNotFound":
            raise LookupEntryNotFound(key) from e
        raise
    return response["Parameter"]["Value"]


def read_branch_outputs(client, branch: str) -> BranchOutputs:
    keys = BranchKeys.for_branch(branch)
    return BranchOutputs(
        db_host=read_parameter(client, keys.db_host),
        service_arn=read_parameter(client, keys.service_arn),
        alb_dns_name=read_parameter(client, keys.alb_dns_name),
    )


@click.group()
@click.option("--region", default=None, help="AWS region (defaults to the boto3 configuration)")
@click.pass_context
def main(ctx, region):
    """Inspect values published by the VpcStack and branch service stacks."""
    ctx.obj = boto3.client("ssm", region_name=region)


@main.command("shared-ready")
@click.pass_obj
def shared_ready(client):
    """Exit 0 once the VPC id is published, 1 otherwise."""
    try:
        vpc_id = read_parameter(client, VPC_ID)
    except LookupEntryNotFound as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    click.echo(vpc_id)


@main.command("branch-outputs")
@click.argument("branch")
@click.pass_obj
def branch_outputs(client, branch):
    """Print the published outputs of BRANCH as JSON."""
    try:
        outputs = read_branch_outputs(client, branch)
    except LookupEntryNotFound as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    click.echo(json.dumps(asdict(outputs), indent=2))


if __name__ == "__main__":
    main()
