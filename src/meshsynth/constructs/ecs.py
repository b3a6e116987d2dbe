"""Container orchestration: cluster capacity, task definitions and services."""

from __future__ import annotations

from typing import Any

from meshsynth.constructs.base import IntentConstruct, ssm_image_parameter
from meshsynth.constructs.ec2 import Connectable, Network, SecurityGroup
from meshsynth.constructs.iam import InstanceProfile, Role
from meshsynth.constructs.mesh import DiscoveryService, MeshResource
from meshsynth.core.construct import CfnResource, Construct, ConstructError
from meshsynth.core.schema import (
    Capacity,
    ClusterSpec,
    ContainerSpec,
    EnvoySidecar,
    HealthCheck,
    Kind,
    NetworkMode,
    Placement,
    ProxyConfiguration,
    ServiceSpec,
    SubnetType,
    TaskDefinitionSpec,
)
from meshsynth.core.tokens import AWS_REGION, Base64, concat

ECS_OPTIMIZED_IMAGE = "/aws/service/ecs/optimized-ami/amazon-linux-2/recommended/image_id"

ENVOY_CONTAINER = "envoy"
ENVOY_LOG_PREFIX = "envoy"
ENVOY_ACCESS_POLICY = "AWSAppMeshEnvoyAccess"


def envoy_health_check(admin_port: int) -> HealthCheck:
    """Envoy reports LIVE on its admin endpoint once it has its configuration."""
    return HealthCheck(
        command=[
            "CMD-SHELL",
            f"curl -s http://localhost:{admin_port}/server_info | grep state | grep -q LIVE",
        ],
        start_period=10,
        interval=5,
        timeout=2,
        retries=3,
    )


class Cluster(Connectable, IntentConstruct):
    """ECS cluster with optional auto-scaled EC2 capacity."""

    kind = Kind.CLUSTER
    spec: ClusterSpec

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        spec = self.spec
        self.network = self.dependency(spec.network, Kind.NETWORK, Network)

        props: dict[str, Any] = {}
        if spec.name:
            props["ClusterName"] = spec.name
        self.resource = CfnResource(self, "Resource", "AWS::ECS::Cluster", props)

        if spec.capacity:
            self._add_capacity(spec.capacity)
            self.connections_from(spec.capacity.allow_from)

    def _add_capacity(self, capacity: Capacity) -> None:
        scope = Construct(self, "Capacity")
        self.security_group = SecurityGroup(
            scope,
            "InstanceSecurityGroup",
            self.network.vpc.ref,
            f"{self.stack.id}/{scope.path}/InstanceSecurityGroup",
        )

        role = Role(scope, "InstanceRole", "ec2.amazonaws.com")
        for name in capacity.managed_policies:
            role.add_managed_policy(name)
        role.add_to_policy(
            [
                "ecs:DeregisterContainerInstance",
                "ecs:RegisterContainerInstance",
                "ecs:Submit*",
            ],
            [self.resource.get_att("Arn")],
        )
        role.add_to_policy(["ecs:Poll", "ecs:StartTelemetrySession"], ["*"])
        role.add_to_policy(
            [
                "ecs:DiscoverPollEndpoint",
                "ecr:GetAuthorizationToken",
                "logs:CreateLogStream",
                "logs:PutLogEvents",
            ],
            ["*"],
        )
        profile = InstanceProfile(scope, "InstanceProfile", role)
        image = ssm_image_parameter(self.stack, ECS_OPTIMIZED_IMAGE)

        launch_config = CfnResource(
            scope,
            "LaunchConfig",
            "AWS::AutoScaling::LaunchConfiguration",
            {
                "ImageId": image.ref,
                "InstanceType": capacity.instance_type,
                "IamInstanceProfile": profile.resource.ref,
                "SecurityGroups": [self.security_group.group_id],
                "UserData": Base64(
                    concat(
                        "#!/bin/bash\necho ECS_CLUSTER=",
                        self.resource.ref,
                        " >> /etc/ecs/ecs.config",
                    )
                ),
            },
        )
        launch_config.add_depends_on(role.resource)
        if role.policy is not None:
            launch_config.add_depends_on(role.policy)

        max_capacity = capacity.max_capacity if capacity.max_capacity is not None else capacity.min_capacity
        self.auto_scaling_group = CfnResource(
            scope,
            "ASG",
            "AWS::AutoScaling::AutoScalingGroup",
            {
                "MinSize": str(capacity.min_capacity),
                "MaxSize": str(max_capacity),
                "LaunchConfigurationName": launch_config.ref,
                "Tags": [
                    {
                        "Key": "Name",
                        "PropagateAtLaunch": True,
                        "Value": f"{self.stack.id}/{scope.path}",
                    }
                ],
                "VPCZoneIdentifier": self.network.subnet_ids(SubnetType.PRIVATE),
            },
        )

    def _attribute(self, name: str) -> Any:
        if name == "Arn":
            return self.resource.get_att("Arn")
        return self.resource.ref


class TaskDefinition(IntentConstruct):
    """EC2 task definition; owns its containers, roles and log groups."""

    kind = Kind.TASK_DEFINITION
    spec: TaskDefinitionSpec

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        spec = self.spec
        self.task_role = Role(self, "TaskRole", "ecs-tasks.amazonaws.com")
        self.execution_role: Role | None = None
        self.log_groups: list[CfnResource] = []
        self.container_definitions: list[dict[str, Any]] = []
        self.port_mappings: dict[str, list[int]] = {}

        props: dict[str, Any] = {
            "ContainerDefinitions": self.container_definitions,
            "Family": self.unique_name(),
            "NetworkMode": spec.network_mode.value,
            "RequiresCompatibilities": ["EC2"],
            "TaskRoleArn": self.task_role.arn,
        }
        self.resource = CfnResource(self, "Resource", "AWS::ECS::TaskDefinition", props)

        for name in spec.managed_policies:
            self.task_role.add_managed_policy(name)
        for statement in spec.policy_statements:
            self.task_role.add_to_policy(
                statement.actions,
                self.resolver.resolve(statement.resources),
                statement.effect,
            )

        for name, container in spec.containers.items():
            self.add_container(name, container)
        if spec.envoy:
            self._add_envoy(spec.envoy)

        if spec.proxy:
            props["ProxyConfiguration"] = self._proxy_configuration(spec.proxy)

        if spec.execution_managed_policies:
            role = self._ensure_execution_role()
            for name in spec.execution_managed_policies:
                role.add_managed_policy(name)

    @property
    def network_mode(self) -> NetworkMode:
        return self.spec.network_mode

    @property
    def container_names(self) -> list[str]:
        return [d["Name"] for d in self.container_definitions]

    def container_port(self, container: str, port: int | None = None) -> int:
        ports = self.port_mappings.get(container, [])
        if not ports:
            raise ConstructError(f"Container {container} of {self.id} has no port mappings")
        if port is None:
            return ports[0]
        if port not in ports:
            raise ConstructError(f"Container {container} of {self.id} does not map port {port}")
        return port

    def _ensure_execution_role(self) -> Role:
        if self.execution_role is None:
            self.execution_role = Role(self, "ExecutionRole", "ecs-tasks.amazonaws.com")
            self.resource.properties["ExecutionRoleArn"] = self.execution_role.arn
        return self.execution_role

    def _log_configuration(self, container: str, prefix: str) -> dict[str, Any]:
        scope = self.find_child(container) or Construct(self, container)
        log_group = CfnResource(scope, "LogGroup", "AWS::Logs::LogGroup")
        log_group.add_override("UpdateReplacePolicy", "Retain")
        log_group.add_override("DeletionPolicy", "Retain")
        self.log_groups.append(log_group)
        self._ensure_execution_role().add_to_policy(
            ["logs:CreateLogStream", "logs:PutLogEvents"],
            [log_group.get_att("Arn")],
        )
        return {
            "LogDriver": "awslogs",
            "Options": {
                "awslogs-group": log_group.ref,
                "awslogs-stream-prefix": prefix,
                "awslogs-region": AWS_REGION,
            },
        }

    def add_container(self, name: str, container: ContainerSpec) -> dict[str, Any]:
        if name in self.container_names:
            raise ConstructError(f"Duplicate container {name} in {self.id}")
        definition: dict[str, Any] = {
            "Essential": container.essential,
            "Image": self.resolver.resolve(container.image),
            "Name": name,
        }
        if container.cpu is not None:
            definition["Cpu"] = container.cpu
        if container.memory_limit is not None:
            definition["Memory"] = container.memory_limit
        if container.memory_reservation is not None:
            definition["MemoryReservation"] = container.memory_reservation
        if container.environment:
            definition["Environment"] = [
                {"Name": key, "Value": self.resolver.resolve(value)}
                for key, value in container.environment.items()
            ]
        if container.port_mappings:
            host_port_same = self.network_mode != NetworkMode.BRIDGE
            definition["PortMappings"] = [
                {
                    "ContainerPort": port,
                    "HostPort": port if host_port_same else 0,
                    "Protocol": "tcp",
                }
                for port in container.port_mappings
            ]
        self.port_mappings[name] = list(container.port_mappings)
        if container.health_check:
            check = container.health_check
            rendered: dict[str, Any] = {
                "Command": list(check.command),
                "Interval": check.interval,
                "Retries": check.retries,
                "Timeout": check.timeout,
            }
            if check.start_period is not None:
                rendered["StartPeriod"] = check.start_period
            definition["HealthCheck"] = rendered
        if container.user:
            definition["User"] = container.user
        if container.depends_on:
            definition["DependsOn"] = [
                {"Condition": dep.condition, "ContainerName": dep.container}
                for dep in container.depends_on
            ]
        if container.log_prefix:
            definition["LogConfiguration"] = self._log_configuration(name, container.log_prefix)
        self.container_definitions.append(definition)
        return definition

    def _add_envoy(self, envoy: EnvoySidecar) -> None:
        mesh_resource = self.dependency(envoy.mesh_resource, None, MeshResource)

        version = envoy.version or self.settings.envoy_image_version
        image = concat(
            f"{self.settings.envoy_image_account}.dkr.ecr.",
            AWS_REGION,
            f".amazonaws.com/aws-appmesh-envoy:{version}",
        )
        virtual_node_name = concat(
            "mesh/",
            mesh_resource.mesh_name,
            f"/{mesh_resource.envoy_resource_type}/",
            mesh_resource.resource_name,
        )
        ports = self.resolver.container_ports(self.id, ENVOY_CONTAINER)
        container = ContainerSpec(
            image="",
            cpu=envoy.cpu,
            memory_reservation=envoy.memory_reservation,
            essential=True,
            port_mappings=ports,
            health_check=envoy_health_check(envoy.admin_port),
            user=envoy.user,
            log_prefix=ENVOY_LOG_PREFIX,
        )
        definition = self.add_container(ENVOY_CONTAINER, container)
        definition["Image"] = image
        definition["Environment"] = [
            {"Name": "AWS_REGION", "Value": AWS_REGION},
            {"Name": "APPMESH_VIRTUAL_NODE_NAME", "Value": virtual_node_name},
        ]

        self.task_role.add_managed_policy(ENVOY_ACCESS_POLICY)
        # Envoy exports its listener certificates from ACM and reads trusted CAs from ACM-PCA.
        if mesh_resource.certificates:
            self.task_role.add_to_policy(
                ["acm:ExportCertificate"],
                [c.arn for c in mesh_resource.certificates],
            )
        if mesh_resource.trust_authorities:
            self.task_role.add_to_policy(
                ["acm-pca:GetCertificateAuthorityCertificate"],
                mesh_resource.trust_authorities,
            )

    def _proxy_configuration(self, proxy: ProxyConfiguration) -> dict[str, Any]:
        properties: list[tuple[str, Any]] = [
            ("IgnoredUID", proxy.ignored_uid),
            ("IgnoredGID", proxy.ignored_gid),
            ("AppPorts", ",".join(str(p) for p in proxy.app_ports)),
            ("ProxyIngressPort", proxy.proxy_ingress_port),
            ("ProxyEgressPort", proxy.proxy_egress_port),
            ("EgressIgnoredPorts", ",".join(str(p) for p in proxy.egress_ignored_ports)),
            ("EgressIgnoredIPs", ",".join(proxy.egress_ignored_ips)),
        ]
        return {
            "ContainerName": proxy.container,
            "ProxyConfigurationProperties": [
                {"Name": name, "Value": str(value)}
                for name, value in properties
                if value is not None and value != ""
            ],
            "Type": "APPMESH",
        }

    def _attribute(self, name: str) -> Any:
        return self.resource.ref


class Service(Connectable, IntentConstruct):
    """EC2 service running a task definition in a cluster."""

    kind = Kind.SERVICE
    spec: ServiceSpec

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        spec = self.spec
        cluster = self.dependency(spec.cluster, Kind.CLUSTER, Cluster)
        task_definition = self.dependency(
            spec.task_definition, Kind.TASK_DEFINITION, TaskDefinition
        )
        self.cluster = cluster
        self.task_definition = task_definition
        self.load_balancers: list[dict[str, Any]] = []

        props: dict[str, Any] = {
            "Cluster": cluster.resource.ref,
            "DeploymentConfiguration": {"MaximumPercent": 200, "MinimumHealthyPercent": 50},
            "DesiredCount": spec.desired_count,
            "EnableECSManagedTags": False,
            "LaunchType": "EC2",
            "SchedulingStrategy": "REPLICA",
            "TaskDefinition": task_definition.resource.ref,
        }

        if task_definition.network_mode == NetworkMode.AWS_VPC:
            self.security_group = SecurityGroup(
                self,
                "SecurityGroup",
                cluster.network.vpc.ref,
                f"{self.stack.id}/{self.path}/SecurityGroup",
            )
            props["NetworkConfiguration"] = {
                "AwsvpcConfiguration": {
                    "AssignPublicIp": "DISABLED",
                    "SecurityGroups": [self.security_group.group_id],
                    "Subnets": cluster.network.subnet_ids(spec.subnets),
                }
            }

        if spec.placement:
            constraints = []
            for placement in spec.placement:
                if placement == Placement.DISTINCT_INSTANCES:
                    constraints.append({"Type": "distinctInstance"})
            props["PlacementConstraints"] = constraints

        if spec.discovery:
            discovery = self.dependency(spec.discovery, Kind.DISCOVERY_SERVICE, DiscoveryService)
            props["ServiceRegistries"] = [{"RegistryArn": discovery.resource.get_att("Arn")}]

        self.resource = CfnResource(self, "Service", "AWS::ECS::Service", props)
        self.connections_from(spec.allow_from)

    @property
    def default_child(self) -> CfnResource | None:
        return self.resource

    @property
    def network(self) -> Network:
        return self.cluster.network

    def attach_target_group(
        self,
        target_group: CfnResource,
        listener: CfnResource,
        container: str,
        port: int,
    ) -> None:
        """Register a container port with a load balancer target group."""
        self.load_balancers.append(
            {
                "ContainerName": container,
                "ContainerPort": port,
                "TargetGroupArn": target_group.ref,
            }
        )
        self.resource.properties["LoadBalancers"] = self.load_balancers
        self.resource.properties["HealthCheckGracePeriodSeconds"] = (
            self.spec.health_check_grace_period
        )
        self.resource.add_depends_on(listener)

    def _attribute(self, name: str) -> Any:
        if name == "Name":
            return self.resource.get_att("Name")
        return self.resource.ref
