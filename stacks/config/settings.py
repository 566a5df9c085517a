"""Deployment settings module.

Loads the per-environment context block from cdk.json into a single
validated structure. Every literal the stacks need (address ranges, the
container repository, database identifiers, sizing) lives here so synthesis
can be rejected while any of them is still a placeholder.
"""
import ipaddress
import os
import re
from dataclasses import dataclass, fields

import aws_cdk as cdk

DEFAULT_REGION = "us-east-1"

PLACEHOLDER_MARKERS = (
    "ACCOUNT-ID",
    "ECR-REPO-NAME",
    "DB-NAME",
    "DB-ADMIN",
    "REPLACE-ME",
    "999.999.999.999",
)

ECR_REPOSITORY_ARN = re.compile(
    r"^arn:aws[a-z-]*:ecr:[a-z0-9-]+:\d{12}:repository/[a-z0-9][a-z0-9._/-]*$"
)


@dataclass(frozen=True)
class InfraSettings:
    """Configuration shared by the VPC stack and every service stack."""

    vpc_cidr: str
    max_azs: int
    trusted_cidr: str
    build_cidr: str
    repository_arn: str
    cluster_name: str
    admin_secret_name: str
    admin_username: str
    snapshot_identifier: str
    database_name: str
    database_user: str
    sql_server_version: str
    sql_server_major_version: str
    db_instance_type: str
    db_allocated_storage: int
    db_timezone: str
    service_port: int
    database_port: int
    task_cpu: int
    task_memory_mib: int

    @classmethod
    def from_context(cls, values: dict) -> "InfraSettings":
        """Build settings from a cdk.json context block and validate them."""
        if not isinstance(values, dict):
            raise ValueError("Environment context must be a mapping of setting names to values")

        missing = [f.name for f in fields(cls) if values.get(f.name) in (None, "")]
        if missing:
            raise ValueError(f"Missing required settings: {', '.join(missing)}")

        kwargs = {}
        for f in fields(cls):
            raw = values[f.name]
            if f.type in (int, "int"):
                try:
                    kwargs[f.name] = int(raw)
                except (TypeError, ValueError) as e:
                    raise ValueError(f"Setting '{f.name}' must be an integer, got {raw!r}") from e
            else:
                kwargs[f.name] = str(raw).strip()

        settings = cls(**kwargs)
        settings.validate()
        return settings

    def validate(self) -> None:
        """Reject empty values, placeholders and malformed network literals."""
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, str):
                if not value:
                    raise ValueError(f"Setting '{f.name}' must not be empty")
                marker = next((m for m in PLACEHOLDER_MARKERS if m in value), None)
                if marker:
                    raise ValueError(f"Setting '{f.name}' still contains placeholder '{marker}'")
            elif value <= 0:
                raise ValueError(f"Setting '{f.name}' must be positive, got {value}")

        for name in ("vpc_cidr", "trusted_cidr", "build_cidr"):
            cidr = getattr(self, name)
            try:
                ipaddress.ip_network(cidr)
            except ValueError as e:
                raise ValueError(f"Invalid CIDR block for '{name}': {cidr}") from e

        if not ECR_REPOSITORY_ARN.match(self.repository_arn):
            raise ValueError(f"Invalid ECR repository ARN: {self.repository_arn}")

        for name in ("service_port", "database_port"):
            port = getattr(self, name)
            if port > 65535:
                raise ValueError(f"Setting '{name}' is not a valid port: {port}")
        # the service port gets its own listener next to port 80
        if self.service_port == 80:
            raise ValueError("Setting 'service_port' must not be 80")


def resolve_environment() -> cdk.Environment:
    """Deployment target, preferring CDK_DEPLOY_* over the CLI defaults."""
    account = os.environ.get("CDK_DEPLOY_ACCOUNT") or os.environ.get("CDK_DEFAULT_ACCOUNT")
    region = (
        os.environ.get("CDK_DEPLOY_REGION")
        or os.environ.get("CDK_DEFAULT_REGION")
        or DEFAULT_REGION
    )
    return cdk.Environment(account=account, region=region)
