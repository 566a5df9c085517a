"""Resource names for a branch service stack.

Every name is the branch itself or the branch behind a fixed prefix, so two
distinct valid branches can never produce the same resource name.
"""
import re
from dataclasses import dataclass

# Load balancer and target group names are limited to 32 characters.
MAX_BRANCH_LENGTH = 32

BRANCH_PATTERN = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")
VERSION_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


def validate_branch(branch: str) -> str:
    """Return branch unchanged if it can name every per-branch resource.

    DB instance identifiers are case-insensitive, so upper case is rejected
    instead of folded; folding would let "Feature" and "feature" collide.
    """
    if not branch:
        raise ValueError("Branch name is required")
    if len(branch) > MAX_BRANCH_LENGTH:
        raise ValueError(f"Branch name '{branch}' exceeds {MAX_BRANCH_LENGTH} characters")
    if not BRANCH_PATTERN.match(branch):
        raise ValueError(
            f"Invalid branch name '{branch}': use lowercase letters, digits and single hyphens"
        )
    if branch.startswith("internal-"):
        raise ValueError(f"Invalid branch name '{branch}': load balancer names cannot start with 'internal-'")
    return branch


def validate_version(version: str) -> str:
    """Return version unchanged if it is a valid container image tag."""
    if not version:
        raise ValueError("Version is required")
    if not VERSION_PATTERN.match(version):
        raise ValueError(f"Invalid version '{version}': not a valid image tag")
    return version


@dataclass(frozen=True)
class BranchNames:
    branch: str

    @classmethod
    def for_branch(cls, branch: str) -> "BranchNames":
        return cls(validate_branch(branch))

    @property
    def target_group(self) -> str:
        return self.branch

    @property
    def load_balancer(self) -> str:
        return self.branch

    @property
    def task_family(self) -> str:
        return self.branch

    @property
    def log_stream_prefix(self) -> str:
        return self.branch

    @property
    def container(self) -> str:
        return f"container-{self.branch}"

    @property
    def service(self) -> str:
        return f"service-{self.branch}"

    @property
    def db_instance(self) -> str:
        return f"db-{self.branch}"

    @property
    def stack_id(self) -> str:
        return f"Service-{self.branch}-Stack"
