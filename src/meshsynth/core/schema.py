"""Pydantic schemas for topology declarations."""

from __future__ import annotations

import ipaddress
import re
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

CONSTRUCT_ID = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")


def validate_construct_id(id: str) -> bool:
    """Construct ids start with a letter; no path separators."""
    return bool(CONSTRUCT_ID.match(id))


class Kind(str, Enum):
    """Kinds of intent objects, one per topology section."""

    NETWORK = "network"
    MESH = "mesh"
    NAMESPACE = "namespace"
    DISCOVERY_SERVICE = "discovery_service"
    CERTIFICATE = "certificate"
    VIRTUAL_GATEWAY = "virtual_gateway"
    VIRTUAL_NODE = "virtual_node"
    VIRTUAL_SERVICE = "virtual_service"
    GATEWAY_ROUTE = "gateway_route"
    BASTION = "bastion"
    CLUSTER = "cluster"
    TASK_DEFINITION = "task_definition"
    SERVICE = "service"
    LOAD_BALANCER = "load_balancer"
    OUTPUT = "output"


class Spec(BaseModel):
    """Base for every intent object.

    ``overrides`` are applied under ``Properties`` of the primary resource,
    ``raw_overrides`` at the resource level (e.g. ``DependsOn``).
    """

    model_config = {"extra": "forbid"}

    overrides: dict[str, Any] = Field(default_factory=dict)
    raw_overrides: dict[str, Any] = Field(default_factory=dict)


# --- Networking ---


class SubnetType(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class SubnetGroup(BaseModel):
    name: str
    type: SubnetType
    cidr_mask: int | None = Field(default=None, ge=16, le=28)


def _default_subnet_groups() -> list[SubnetGroup]:
    return [
        SubnetGroup(name="Public", type=SubnetType.PUBLIC),
        SubnetGroup(name="Private", type=SubnetType.PRIVATE),
    ]


class NetworkSpec(Spec):
    """A VPC spread over ``max_azs`` availability zones."""

    cidr: str = "10.0.0.0/16"
    max_azs: int = Field(default=2, ge=1, le=6)
    nat_gateways: int | None = Field(default=None, ge=0)
    subnets: list[SubnetGroup] = Field(default_factory=_default_subnet_groups)

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        network = ipaddress.ip_network(v)
        if network.version != 4:
            raise ValueError(f"Only IPv4 VPC ranges are supported: {v}")
        if not 16 <= network.prefixlen <= 28:
            raise ValueError(f"VPC prefix must be between /16 and /28: {v}")
        return v

    @field_validator("subnets")
    @classmethod
    def validate_subnet_names(cls, v: list[SubnetGroup]) -> list[SubnetGroup]:
        names = [g.name for g in v]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate subnet group names: {names}")
        if not v:
            raise ValueError("At least one subnet group is required")
        return v


class PortRule(BaseModel):
    """Ingress permission from another connectable construct."""

    source: str
    port: str | int = "all"

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: str | int) -> str | int:
        # Parsed fully during lowering; reject the obviously wrong here.
        if isinstance(v, int) and not 0 <= v <= 65535:
            raise ValueError(f"Port out of range: {v}")
        return v


class BastionSpec(Spec):
    network: str
    instance_type: str = "t3.nano"
    subnets: SubnetType = SubnetType.PRIVATE
    allow_from: list[PortRule] = Field(default_factory=list)


# --- Mesh ---


class MeshSpec(Spec):
    name: str | None = None
    egress_filter: Literal["DROP_ALL", "ALLOW_ALL"] = "DROP_ALL"


class NamespaceSpec(Spec):
    name: str
    description: str | None = None


class DiscoveryServiceSpec(Spec):
    namespace: str
    name: str
    description: str | None = None


class CertificateSpec(Spec):
    """ACM certificate; private-CA backed when ``authority_arn`` is set."""

    domain_name: str
    subject_alternative_names: list[str] = Field(default_factory=list)
    authority_arn: str | None = None


class TlsMode(str, Enum):
    STRICT = "STRICT"
    PERMISSIVE = "PERMISSIVE"
    DISABLED = "DISABLED"


class ListenerTls(BaseModel):
    mode: TlsMode = TlsMode.STRICT
    certificate: str


class MeshProtocol(str, Enum):
    HTTP = "http"
    HTTP2 = "http2"
    GRPC = "grpc"
    TCP = "tcp"


class MeshListener(BaseModel):
    port: int = Field(ge=1, le=65535)
    protocol: MeshProtocol = MeshProtocol.HTTP
    tls: ListenerTls | None = None


class BackendDefaults(BaseModel):
    """Client policy applied to every backend of a gateway or node."""

    trust_authorities: list[str] = Field(default_factory=list)
    enforce: bool = True
    ports: list[int] = Field(default_factory=list)


class VirtualGatewaySpec(Spec):
    mesh: str
    name: str | None = None
    listeners: list[MeshListener] = Field(default_factory=list, validate_default=True)
    backend_defaults: BackendDefaults | None = None

    @field_validator("listeners")
    @classmethod
    def require_listener(cls, v: list[MeshListener]) -> list[MeshListener]:
        if len(v) != 1:
            raise ValueError("A virtual gateway needs exactly one listener")
        return v


class VirtualNodeSpec(Spec):
    mesh: str
    name: str | None = None
    listeners: list[MeshListener] = Field(default_factory=list)
    discovery: str | None = None
    backends: list[str] = Field(default_factory=list)
    backend_defaults: BackendDefaults | None = None


class VirtualServiceSpec(Spec):
    mesh: str
    name: str | None = None
    provider: str | None = None


class GatewayRouteSpec(Spec):
    gateway: str
    name: str | None = None
    prefix: str = "/"
    target: str
    protocol: Literal["http", "http2"] = "http"

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Route prefix must start with '/': {v}")
        return v


# --- Compute ---


class Capacity(BaseModel):
    instance_type: str = "t3.small"
    min_capacity: int = Field(default=1, ge=0)
    max_capacity: int | None = None
    managed_policies: list[str] = Field(default_factory=list)
    allow_from: list[PortRule] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_bounds(self) -> Capacity:
        if self.max_capacity is not None and self.max_capacity < self.min_capacity:
            raise ValueError("max_capacity must not be below min_capacity")
        return self


class ClusterSpec(Spec):
    network: str
    name: str | None = None
    capacity: Capacity | None = None


class NetworkMode(str, Enum):
    AWS_VPC = "awsvpc"
    BRIDGE = "bridge"
    HOST = "host"


class HealthCheck(BaseModel):
    command: list[str]
    interval: int = 30
    timeout: int = 5
    retries: int = 3
    start_period: int | None = None


class ContainerDependency(BaseModel):
    container: str
    condition: Literal["START", "COMPLETE", "SUCCESS", "HEALTHY"] = "HEALTHY"


class ContainerSpec(BaseModel):
    model_config = {"extra": "forbid"}

    image: str
    cpu: int | None = None
    memory_limit: int | None = None
    memory_reservation: int | None = None
    essential: bool = True
    environment: dict[str, str] = Field(default_factory=dict)
    port_mappings: list[int] = Field(default_factory=list)
    health_check: HealthCheck | None = None
    user: str | None = None
    log_prefix: str | None = None
    depends_on: list[ContainerDependency] = Field(default_factory=list)

    @field_validator("depends_on", mode="before")
    @classmethod
    def normalize_dependencies(cls, v: Any) -> Any:
        """Allow plain container names as shorthand."""
        if isinstance(v, list):
            return [{"container": d} if isinstance(d, str) else d for d in v]
        return v


class EnvoySidecar(BaseModel):
    """Envoy proxy container wired to a virtual node or virtual gateway."""

    model_config = {"extra": "forbid"}

    virtual_node: str | None = None
    virtual_gateway: str | None = None
    version: str | None = None
    cpu: int = 1024
    memory_reservation: int = 1024
    user: str = "1337"
    admin_port: int = 9901
    port_mappings: list[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def exactly_one_target(self) -> EnvoySidecar:
        if bool(self.virtual_node) == bool(self.virtual_gateway):
            raise ValueError("Envoy sidecar needs exactly one of virtual_node or virtual_gateway")
        return self

    @property
    def mesh_resource(self) -> str:
        return self.virtual_node or self.virtual_gateway  # type: ignore[return-value]


class ProxyConfiguration(BaseModel):
    """App Mesh proxy configuration (traffic interception by the sidecar)."""

    container: str = "envoy"
    app_ports: list[int]
    proxy_ingress_port: int = 15000
    proxy_egress_port: int = 15001
    ignored_uid: int | None = 1337
    ignored_gid: int | None = None
    egress_ignored_ips: list[str] = Field(
        default_factory=lambda: ["169.254.170.2", "169.254.169.254"]
    )
    egress_ignored_ports: list[int] = Field(default_factory=list)


class PolicyStatement(BaseModel):
    actions: list[str]
    resources: list[str] = Field(default_factory=lambda: ["*"])
    effect: Literal["Allow", "Deny"] = "Allow"


class TaskDefinitionSpec(Spec):
    network_mode: NetworkMode = NetworkMode.AWS_VPC
    containers: dict[str, ContainerSpec] = Field(default_factory=dict)
    envoy: EnvoySidecar | None = None
    proxy: ProxyConfiguration | None = None
    managed_policies: list[str] = Field(default_factory=list)
    policy_statements: list[PolicyStatement] = Field(default_factory=list)
    execution_managed_policies: list[str] = Field(
        default_factory=lambda: ["service-role/AmazonECSTaskExecutionRolePolicy"]
    )

    @model_validator(mode="after")
    def check_container_names(self) -> TaskDefinitionSpec:
        if self.envoy and "envoy" in self.containers:
            raise ValueError("Container name 'envoy' is reserved for the envoy sidecar")
        if not self.containers and not self.envoy:
            raise ValueError("A task definition needs at least one container")
        return self


class Placement(str, Enum):
    DISTINCT_INSTANCES = "distinct_instances"


class ServiceSpec(Spec):
    cluster: str
    task_definition: str
    desired_count: int = Field(default=1, ge=0)
    placement: list[Placement] = Field(default_factory=list)
    subnets: SubnetType = SubnetType.PRIVATE
    discovery: str | None = None
    allow_from: list[PortRule] = Field(default_factory=list)
    health_check_grace_period: int = 60


# --- Load balancing ---


class TargetSpec(BaseModel):
    """A container of an ECS service registered with the listener's target group."""

    service: str
    container: str
    port: int | None = None


class LoadBalancerListener(BaseModel):
    id: str = "default"
    port: int | None = None
    protocol: Literal["HTTP", "HTTPS"] = "HTTPS"
    certificates: list[str] = Field(default_factory=list)
    open: bool = True
    target_protocol: Literal["HTTP", "HTTPS"] = "HTTP"
    health_check_path: str | None = None
    targets: list[TargetSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_certificates(self) -> LoadBalancerListener:
        if self.protocol == "HTTPS" and not self.certificates:
            raise ValueError(f"HTTPS listener {self.id!r} needs at least one certificate")
        if not self.targets:
            raise ValueError(f"Listener {self.id!r} needs at least one target")
        return self

    @property
    def effective_port(self) -> int:
        if self.port is not None:
            return self.port
        return 443 if self.protocol == "HTTPS" else 80


class LoadBalancerSpec(Spec):
    network: str
    internet_facing: bool = True
    listeners: list[LoadBalancerListener] = Field(default_factory=list)
    allow_from: list[PortRule] = Field(default_factory=list)

    @field_validator("listeners")
    @classmethod
    def unique_listener_ids(cls, v: list[LoadBalancerListener]) -> list[LoadBalancerListener]:
        ids = [listener.id for listener in v]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Duplicate listener ids: {ids}")
        return v


class OutputSpec(Spec):
    value: str
    description: str | None = None
    export_name: str | None = None


class EnvSchema(BaseModel):
    account: str | None = None
    region: str | None = None


# Section name -> (kind, spec model), in build order for equal dependencies.
SECTIONS: dict[str, tuple[Kind, type[Spec]]] = {
    "networks": (Kind.NETWORK, NetworkSpec),
    "meshes": (Kind.MESH, MeshSpec),
    "namespaces": (Kind.NAMESPACE, NamespaceSpec),
    "discovery_services": (Kind.DISCOVERY_SERVICE, DiscoveryServiceSpec),
    "certificates": (Kind.CERTIFICATE, CertificateSpec),
    "virtual_gateways": (Kind.VIRTUAL_GATEWAY, VirtualGatewaySpec),
    "virtual_nodes": (Kind.VIRTUAL_NODE, VirtualNodeSpec),
    "virtual_services": (Kind.VIRTUAL_SERVICE, VirtualServiceSpec),
    "gateway_routes": (Kind.GATEWAY_ROUTE, GatewayRouteSpec),
    "bastions": (Kind.BASTION, BastionSpec),
    "clusters": (Kind.CLUSTER, ClusterSpec),
    "task_definitions": (Kind.TASK_DEFINITION, TaskDefinitionSpec),
    "services": (Kind.SERVICE, ServiceSpec),
    "load_balancers": (Kind.LOAD_BALANCER, LoadBalancerSpec),
    "outputs": (Kind.OUTPUT, OutputSpec),
}


class TopologySchema(BaseModel):
    """
    Schema for a complete topology declaration.

    Each section maps construct ids to intent objects. Ids share one
    namespace across sections since they become siblings in the stack.
    """

    model_config = {"extra": "forbid"}

    stack: str = "Stack"
    description: str | None = None
    env: EnvSchema = Field(default_factory=EnvSchema)

    networks: dict[str, NetworkSpec] = Field(default_factory=dict)
    meshes: dict[str, MeshSpec] = Field(default_factory=dict)
    namespaces: dict[str, NamespaceSpec] = Field(default_factory=dict)
    discovery_services: dict[str, DiscoveryServiceSpec] = Field(default_factory=dict)
    certificates: dict[str, CertificateSpec] = Field(default_factory=dict)
    virtual_gateways: dict[str, VirtualGatewaySpec] = Field(default_factory=dict)
    virtual_nodes: dict[str, VirtualNodeSpec] = Field(default_factory=dict)
    virtual_services: dict[str, VirtualServiceSpec] = Field(default_factory=dict)
    gateway_routes: dict[str, GatewayRouteSpec] = Field(default_factory=dict)
    bastions: dict[str, BastionSpec] = Field(default_factory=dict)
    clusters: dict[str, ClusterSpec] = Field(default_factory=dict)
    task_definitions: dict[str, TaskDefinitionSpec] = Field(default_factory=dict)
    services: dict[str, ServiceSpec] = Field(default_factory=dict)
    load_balancers: dict[str, LoadBalancerSpec] = Field(default_factory=dict)
    outputs: dict[str, OutputSpec] = Field(default_factory=dict)

    @field_validator("stack")
    @classmethod
    def validate_stack_name(cls, v: str) -> str:
        if not validate_construct_id(v):
            raise ValueError(f"Invalid stack name: {v}")
        return v

    @model_validator(mode="after")
    def validate_ids(self) -> TopologySchema:
        """Ids must be well-formed; duplicates across sections are reported by the resolver."""
        for section in SECTIONS:
            for key in getattr(self, section):
                if not validate_construct_id(key):
                    raise ValueError(f"Invalid construct id in {section}: {key}")
        return self
