"""Network stack module.

Defines the long-lived, environment-wide infrastructure every branch
service attaches to:
- VPC with public subnets only, no NAT gateways
- Application-tier (VPC default) and data-tier security groups
- Fargate cluster plus the task execution and task roles
- Retained admin credential for the branch databases
- Interface/gateway endpoints so tasks reach AWS services privately
- The VPC id published under the "vpcid" lookup key
"""
import json
from constructs import Construct
from aws_cdk import (
    Stack,
    ArnFormat,
    RemovalPolicy,
    aws_ec2 as ec2,
    aws_ecs as ecs,
    aws_iam as iam,
    aws_secretsmanager as secretsmanager,
    CfnOutput,
)

from stacks.config.settings import InfraSettings
from stacks.registry.parameter_store import ParameterStore, VPC_ID

INTERFACE_ENDPOINTS = (
    ("ECR Docker Endpoint", ec2.InterfaceVpcEndpointAwsService.ECR_DOCKER),
    ("ECR API Endpoint", ec2.InterfaceVpcEndpointAwsService.ECR),
    ("ECS Agent Endpoint", ec2.InterfaceVpcEndpointAwsService.ECS_AGENT),
    ("ECS Telemetry Endpoint", ec2.InterfaceVpcEndpointAwsService.ECS_TELEMETRY),
    ("ECS Endpoint", ec2.InterfaceVpcEndpointAwsService.ECS),
    ("Secrets Endpoint", ec2.InterfaceVpcEndpointAwsService.SECRETS_MANAGER),
    ("SSM Endpoint", ec2.InterfaceVpcEndpointAwsService.SSM),
    ("SSM Messages Endpoint", ec2.InterfaceVpcEndpointAwsService.SSM_MESSAGES),
    ("EC2 Messages Endpoint", ec2.InterfaceVpcEndpointAwsService.EC2_MESSAGES),
    ("CloudWatch Endpoint", ec2.InterfaceVpcEndpointAwsService.CLOUDWATCH_MONITORING),
    ("CloudWatch Logs Endpoint", ec2.InterfaceVpcEndpointAwsService.CLOUDWATCH_LOGS),
)

SECRET_READ_ACTIONS = [
    "secretsmanager:GetSecretValue",
    "secretsmanager:DescribeSecret",
]


class NetworkStack(Stack):
    """CDK Stack for the shared VPC, cluster and credentials.

    Attributes consumed in-process by service stacks: cluster,
    app_security_group, data_security_group, subnets, admin_secret,
    task_execution_role, task_role.
    """

    def __init__(self, scope: Construct,
            construct_id: str,
            settings: InfraSettings,
            store: ParameterStore,
            **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.settings = settings

        self.vpc = ec2.Vpc(self, "VPC",
            ip_addresses=ec2.IpAddresses.cidr(settings.vpc_cidr),
            max_azs=settings.max_azs,
            nat_gateways=0,
            # the default group is the application tier and keeps its default rules
            restrict_default_security_group=False,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name="public",
                    subnet_type=ec2.SubnetType.PUBLIC,
                    cidr_mask=24
                )
            ],
        )
        self.subnets = self.vpc.public_subnets

        self.add_security_groups()

        # RDS credentials
        self.admin_secret = secretsmanager.Secret(self, "db-admin",
            secret_name=settings.admin_secret_name,
            removal_policy=RemovalPolicy.RETAIN,
            generate_secret_string=secretsmanager.SecretStringGenerator(
                secret_string_template=json.dumps({"username": settings.admin_username}),
                generate_string_key="password",
                exclude_punctuation=True
            )
        )

        self.add_task_roles()

        self.cluster = ecs.Cluster(self, "Fargate",
            cluster_name=settings.cluster_name,
            vpc=self.vpc,
            enable_fargate_capacity_providers=True,
            container_insights_v2=ecs.ContainerInsights.DISABLED
        )

        self.add_endpoints()

        # needed by service stacks synthesized later
        store.publish(self, VPC_ID, self.vpc.vpc_id, construct_id="VpcId")

        CfnOutput(self, "ClusterNameOutput", value=self.cluster.cluster_name)
        CfnOutput(self, "PublicSubnetIds",
            value=",".join([subnet.subnet_id for subnet in self.subnets])
        )

    def add_security_groups(self) -> None:
        """Application tier reuses the VPC default group, data tier gets its own."""
        settings = self.settings
        trusted = ec2.Peer.ipv4(settings.trusted_cidr)
        build = ec2.Peer.ipv4(settings.build_cidr)

        self.app_security_group = ec2.SecurityGroup.from_security_group_id(
            self, "webSG", self.vpc.vpc_default_security_group
        )
        self.app_security_group.add_ingress_rule(trusted, ec2.Port.tcp(80), "Trusted address", False)
        self.app_security_group.add_ingress_rule(build, ec2.Port.tcp_range(0, 65535), "Build service", False)

        self.data_security_group = ec2.SecurityGroup(self, "SQL-SG",
            security_group_name="SQL-SG",
            vpc=self.vpc,
            description="SQL Security Group",
            allow_all_outbound=True
        )
        db_port = ec2.Port.tcp(settings.database_port)
        self.data_security_group.add_ingress_rule(self.app_security_group, db_port, "Web SG", False)
        self.data_security_group.add_ingress_rule(trusted, db_port, "Trusted address", False)
        self.data_security_group.add_ingress_rule(build, ec2.Port.tcp_range(0, 65535), "Build service", False)

    def add_task_roles(self) -> None:
        """Execution role pulls images, writes logs, reads secrets and parameters."""
        execution_policy = iam.ManagedPolicy(self, "Task Execution Policy",
            managed_policy_name="TaskExecutionPolicy",
            statements=[
                iam.PolicyStatement(
                    effect=iam.Effect.ALLOW,
                    actions=[
                        "ecr:BatchCheckLayerAvailability",
                        "ecr:GetDownloadUrlForLayer",
                        "ecr:BatchGetImage"
                    ],
                    resources=[self.settings.repository_arn]
                ),
                iam.PolicyStatement(
                    effect=iam.Effect.ALLOW,
                    actions=["ecr:GetAuthorizationToken", "logs:CreateLogStream", "logs:PutLogEvents"],
                    resources=["*"]
                ),
                iam.PolicyStatement(
                    effect=iam.Effect.ALLOW,
                    actions=["ssm:GetParameter", "ssm:GetParameters", "ssm:GetParametersByPath"],
                    resources=[
                        self.format_arn(
                            service="ssm",
                            resource="parameter",
                            resource_name="*",
                            arn_format=ArnFormat.SLASH_RESOURCE_NAME
                        )
                    ]
                ),
                self._secret_read_statement(),
            ]
        )
        self.task_execution_role = iam.Role(self, "Task Execution Role",
            role_name="TaskExecutionRole",
            assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name("service-role/AmazonECSTaskExecutionRolePolicy")
            ]
        )
        execution_policy.attach_to_role(self.task_execution_role)

        task_policy = iam.ManagedPolicy(self, "Task Definition Policy",
            managed_policy_name="TaskDefinitionPolicy",
            statements=[self._secret_read_statement()]
        )
        self.task_role = iam.Role(self, "Task Definition Role",
            role_name="TaskDefinitionRole",
            assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com")
        )
        task_policy.attach_to_role(self.task_role)

    def _secret_read_statement(self) -> iam.PolicyStatement:
        return iam.PolicyStatement(
            effect=iam.Effect.ALLOW,
            actions=SECRET_READ_ACTIONS,
            resources=[self.admin_secret.secret_arn]
        )

    def add_endpoints(self) -> None:
        """Endpoints required for Fargate tasks without internet egress"""
        public_subnets = ec2.SubnetSelection(subnets=self.subnets)
        for endpoint_id, service in INTERFACE_ENDPOINTS:
            ec2.InterfaceVpcEndpoint(self, endpoint_id,
                service=service,
                vpc=self.vpc,
                subnets=public_subnets
            )

        self.vpc.add_gateway_endpoint("S3 Gateway Endpoint",
            service=ec2.GatewayVpcEndpointAwsService.S3,
            subnets=[public_subnets]
        )
