"""Lookup store module.

Typed registry over SSM Parameter Store used to pass identifiers between
stacks that may be synthesized in separate invocations:
- keys are LookupKey values rather than bare strings
- each key is published once (write-once, read-many)
- resolving a key that was never published fails closed by default
"""
from dataclasses import dataclass
from typing import Dict

from constructs import Construct
from aws_cdk import aws_ssm as ssm


class LookupStoreError(Exception):
    """Base class for lookup store contract violations."""


class DuplicateLookupKeyError(LookupStoreError):
    """Raised when a key is published more than once."""


class UnpublishedLookupKeyError(LookupStoreError):
    """Raised when a key is resolved before anything published it."""


@dataclass(frozen=True)
class LookupKey:
    name: str
    description: str = ""

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Lookup key name must not be empty")

    def __str__(self) -> str:
        return self.name


VPC_ID = LookupKey("vpcid", "Identifier of the shared VPC")


@dataclass(frozen=True)
class BranchKeys:
    """Keys a service stack publishes for post-deploy tooling."""

    db_host: LookupKey
    service_arn: LookupKey
    alb_dns_name: LookupKey

    @classmethod
    def for_branch(cls, branch: str) -> "BranchKeys":
        if not branch:
            raise ValueError("Branch is required to derive lookup keys")
        return cls(
            db_host=LookupKey(f"{branch}-db-host", f"Database endpoint for {branch}"),
            service_arn=LookupKey(f"{branch}-service-arn", f"ECS service ARN for {branch}"),
            alb_dns_name=LookupKey(f"{branch}-alb-dns-name", f"Load balancer DNS name for {branch}"),
        )

    def all(self):
        return (self.db_host, self.service_arn, self.alb_dns_name)


class ParameterStore:
    """Publishes and resolves LookupKeys as SSM string parameters.

    One instance is shared by every stack of an app so the ordering contract
    can be checked: with fail_closed=True, resolve() only accepts keys that
    were published through this store earlier in the same synthesis.
    """

    def __init__(self, fail_closed: bool = True) -> None:
        self.fail_closed = fail_closed
        self._published: Dict[str, ssm.StringParameter] = {}

    def is_published(self, key: LookupKey) -> bool:
        return key.name in self._published

    def publish(self, scope: Construct, key: LookupKey, value: str,
                construct_id: str = None) -> ssm.StringParameter:
        """Declare the SSM parameter holding value under key.name."""
        if self.is_published(key):
            raise DuplicateLookupKeyError(f"Lookup key '{key.name}' is already published")

        parameter = ssm.StringParameter(scope, construct_id or key.name,
            parameter_name=key.name,
            string_value=value,
            description=key.description or None,
        )
        self._published[key.name] = parameter
        return parameter

    def resolve(self, scope: Construct, key: LookupKey) -> str:
        """Resolve key at synthesis time through the SSM context provider."""
        if self.fail_closed and not self.is_published(key):
            raise UnpublishedLookupKeyError(
                f"Lookup key '{key.name}' was resolved before it was published; "
                "declare the publishing stack first"
            )
        return ssm.StringParameter.value_from_lookup(scope, key.name)
