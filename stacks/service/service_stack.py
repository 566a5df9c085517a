"""Branch service stack module.

Deploys one branch of the application onto the shared VPC and cluster:
- Application load balancer with listeners on 80 and the service port,
  both forwarding to a single IP target group
- SQL Server instance restored from a snapshot, destroyed with the stack
  and without automated backups
- Fargate task definition running the image tagged with the version
- Fargate service attached to the target group
- Database host, service ARN and load balancer DNS name published to SSM
"""
from dataclasses import dataclass, fields
from typing import Sequence

from constructs import Construct
from aws_cdk import (
    Stack,
    Annotations,
    Duration,
    RemovalPolicy,
    aws_ec2 as ec2,
    aws_ecr as ecr,
    aws_ecs as ecs,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
    aws_rds as rds,
    aws_secretsmanager as secretsmanager,
    CfnOutput,
)

from stacks.config.settings import InfraSettings
from stacks.registry.parameter_store import BranchKeys, ParameterStore, VPC_ID
from stacks.service.naming import BranchNames, validate_version


@dataclass(frozen=True)
class ServiceProps:
    """Identifiers handed over from the VPC stack, all required."""

    branch: str
    version: str
    cluster_arn: str
    cluster_name: str
    app_security_group_id: str
    data_security_group_id: str
    subnet_ids: Sequence[str]
    admin_secret_arn: str
    execution_role_arn: str
    task_role_arn: str

    def validate(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "subnet_ids":
                if not value or any(not s for s in value):
                    raise ValueError("ServiceProps.subnet_ids must contain at least one non-empty subnet id")
            elif not value:
                raise ValueError(f"ServiceProps.{f.name} is required")
        validate_version(self.version)


class ServiceStack(Stack):
    """CDK Stack for a single branch deployment.

    The VPC is resolved through the lookup store rather than passed in, so
    this stack can be synthesized separately from the VPC stack once the
    "vpcid" parameter exists.
    """

    def __init__(self, scope: Construct, construct_id: str, *,
                 props: ServiceProps,
                 settings: InfraSettings,
                 store: ParameterStore,
                 **kwargs) -> None:
        props.validate()
        names = BranchNames.for_branch(props.branch)
        super().__init__(scope, construct_id, **kwargs)

        self.names = names
        self.props = props
        self.settings = settings
        branch = props.branch

        vpc_id = store.resolve(self, VPC_ID)
        self.vpc = ec2.Vpc.from_lookup(self, "VPC", vpc_id=vpc_id)

        self.app_security_group = ec2.SecurityGroup.from_security_group_id(
            self, "VPC-SG", props.app_security_group_id
        )
        self.data_security_group = ec2.SecurityGroup.from_security_group_id(
            self, "SQL-SG", props.data_security_group_id
        )

        self.add_load_balancer()
        self.add_database()
        self.add_task_definition()
        self.add_service()

        keys = BranchKeys.for_branch(branch)
        store.publish(self, keys.db_host, self.database.db_instance_endpoint_address)
        store.publish(self, keys.service_arn, self.service.service_arn)
        store.publish(self, keys.alb_dns_name, self.load_balancer.load_balancer_dns_name)

        CfnOutput(self, "LoadBalancerDnsName", value=self.load_balancer.load_balancer_dns_name)
        CfnOutput(self, "ServiceName", value=self.service.service_name)

    def add_load_balancer(self):
        """Internet facing ALB; port 80 and the service port share one target group."""
        port = self.settings.service_port
        self.target_group = elbv2.ApplicationTargetGroup(self, "Target Group",
            target_group_name=self.names.target_group,
            target_type=elbv2.TargetType.IP,
            protocol=elbv2.ApplicationProtocol.HTTP,
            port=port,
            vpc=self.vpc
        )
        self.load_balancer = elbv2.ApplicationLoadBalancer(self, "Load Balancer",
            vpc=self.vpc,
            internet_facing=True,
            ip_address_type=elbv2.IpAddressType.IPV4,
            load_balancer_name=self.names.load_balancer,
            security_group=self.app_security_group,
            vpc_subnets=ec2.SubnetSelection(subnets=self.vpc.public_subnets)
        )
        self.listeners = [
            elbv2.ApplicationListener(self, f"Listener {listener_port}",
                load_balancer=self.load_balancer,
                default_target_groups=[self.target_group],
                open=False,
                port=listener_port,
                protocol=elbv2.ApplicationProtocol.HTTP
            )
            for listener_port in (80, port)
        ]

    def add_database(self):
        """Snapshot restored SQL Server Express instance, disposable with the branch."""
        settings = self.settings
        self.admin_secret = secretsmanager.Secret.from_secret_complete_arn(
            self, "Admin-Secret", self.props.admin_secret_arn
        )

        self.database = rds.DatabaseInstanceFromSnapshot(self, "MS-SQL",
            snapshot_identifier=settings.snapshot_identifier,
            credentials=rds.SnapshotCredentials.from_password(
                self.admin_secret.secret_value_from_json("password")
            ),
            engine=rds.DatabaseInstanceEngine.sql_server_ex(
                version=rds.SqlServerEngineVersion.of(
                    settings.sql_server_version, settings.sql_server_major_version
                )
            ),
            instance_type=ec2.InstanceType(settings.db_instance_type),
            license_model=rds.LicenseModel.LICENSE_INCLUDED,
            allow_major_version_upgrade=False,
            auto_minor_version_upgrade=False,
            timezone=settings.db_timezone,
            allocated_storage=settings.db_allocated_storage,
            storage_type=rds.StorageType.GP2,
            vpc=self.vpc,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
            instance_identifier=self.names.db_instance,
            security_groups=[self.data_security_group],
            cloudwatch_logs_exports=["error"],
            backup_retention=Duration.days(0),
            delete_automated_backups=True,
            publicly_accessible=True,
            deletion_protection=False,
            removal_policy=RemovalPolicy.DESTROY
        )

        Annotations.of(self.database).add_warning_v2(
            "@ecs-repo-branch/service:publicDatabase",
            f"Database {self.names.db_instance} is publicly accessible; "
            "access is limited by the SQL security group only",
        )

    def add_task_definition(self):
        """Task definition for the image tagged with the version."""
        branch = self.props.branch
        settings = self.settings

        execution_role = iam.Role.from_role_arn(
            self, f"Execution Role - {branch}", self.props.execution_role_arn
        )
        task_role = iam.Role.from_role_arn(
            self, f"Definition Role - {branch}", self.props.task_role_arn
        )
        self.task_definition = ecs.FargateTaskDefinition(self, "TaskDefinition",
            family=self.names.task_family,
            cpu=settings.task_cpu,
            memory_limit_mib=settings.task_memory_mib,
            execution_role=execution_role,
            task_role=task_role
        )

        repository = ecr.Repository.from_repository_arn(self, "Repository", settings.repository_arn)
        self.container = self.task_definition.add_container(self.names.container,
            image=ecs.ContainerImage.from_ecr_repository(repository, self.props.version),
            environment={
                "DB_Host": self.database.db_instance_endpoint_address,
                "DB_Database": settings.database_name,
                "DB_User": settings.database_user,
                "NO_COLOR": "true",  # plain text application logs
            },
            secrets={
                "DB_Password": ecs.Secret.from_secrets_manager(self.admin_secret, "password"),
            },
            logging=ecs.LogDrivers.aws_logs(stream_prefix=self.names.log_stream_prefix)
        )
        self.container.add_port_mappings(
            ecs.PortMapping(
                container_port=settings.service_port,
                host_port=settings.service_port,
                protocol=ecs.Protocol.TCP
            )
        )

    def add_service(self):
        """Single replica service; circuit breaker reports failures but never rolls back."""
        branch = self.props.branch
        security_groups = [self.app_security_group, self.data_security_group]

        cluster = ecs.Cluster.from_cluster_attributes(self, f"Cluster - {branch}",
            vpc=self.vpc,
            cluster_arn=self.props.cluster_arn,
            cluster_name=self.props.cluster_name,
            security_groups=security_groups
        )
        subnets = [
            ec2.Subnet.from_subnet_id(self, f"Subnet-{i}", subnet_id)
            for i, subnet_id in enumerate(self.props.subnet_ids)
        ]

        self.service = ecs.FargateService(self, "Fargate",
            cluster=cluster,
            task_definition=self.task_definition,
            service_name=self.names.service,
            assign_public_ip=False,
            vpc_subnets=ec2.SubnetSelection(subnets=subnets),
            security_groups=security_groups,
            platform_version=ecs.FargatePlatformVersion.LATEST,
            deployment_controller=ecs.DeploymentController(type=ecs.DeploymentControllerType.ECS),
            desired_count=1,
            min_healthy_percent=100,
            max_healthy_percent=200,
            circuit_breaker=ecs.DeploymentCircuitBreaker(rollback=False)
        )
        self.service.attach_to_application_target_group(self.target_group)
