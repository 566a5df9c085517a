"""Shared fixtures: a complete, valid settings context for synthesis tests."""

import pytest

from stacks.config.settings import InfraSettings

VALID_CONTEXT = {
    "vpc_cidr": "10.0.0.0/16",
    "max_azs": 2,
    "trusted_cidr": "203.0.113.10/32",
    "build_cidr": "34.228.4.208/28",
    "repository_arn": "arn:aws:ecr:us-east-1:111111111111:repository/app",
    "cluster_name": "test-cluster",
    "admin_secret_name": "test/db-admin",
    "admin_username": "userid_sa",
    "snapshot_identifier": "snapshot",
    "database_name": "appdb",
    "database_user": "appuser",
    "sql_server_version": "14.00.3356.20.v1",
    "sql_server_major_version": "14.00",
    "db_instance_type": "t3.micro",
    "db_allocated_storage": 20,
    "db_timezone": "Eastern Standard Time",
    "service_port": 5000,
    "database_port": 1433,
    "task_cpu": 256,
    "task_memory_mib": 512,
}


@pytest.fixture
def settings_context():
    """A fresh copy of the valid context block, safe to mutate."""
    return dict(VALID_CONTEXT)


@pytest.fixture
def settings(settings_context):
    return InfraSettings.from_context(settings_context)
