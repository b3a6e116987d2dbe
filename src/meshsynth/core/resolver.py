"""Reference resolution between intent objects."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Iterator

import structlog

from meshsynth.core.schema import (
    BastionSpec,
    ClusterSpec,
    DiscoveryServiceSpec,
    GatewayRouteSpec,
    Kind,
    LoadBalancerSpec,
    NetworkMode,
    ServiceSpec,
    TaskDefinitionSpec,
    VirtualGatewaySpec,
    VirtualNodeSpec,
    VirtualServiceSpec,
)
from meshsynth.core.tokens import PSEUDO_PARAMETERS, concat
from meshsynth.core.topology import Entry, Topology

if TYPE_CHECKING:
    from meshsynth.constructs.base import IntentConstruct

logger = structlog.get_logger(__name__)

HANDLE = re.compile(r"\$\{([^}]*)\}")
HANDLE_BODY = re.compile(r"^(?:(AWS::[A-Za-z]+)|([A-Za-z][A-Za-z0-9_-]*)(?:\.([A-Za-z]+))?)$")

# Attributes exposed to handles, default attribute first.
ATTRIBUTES: dict[Kind, tuple[str, ...]] = {
    Kind.NETWORK: ("VpcId", "CidrBlock"),
    Kind.MESH: ("Name", "Arn"),
    Kind.NAMESPACE: ("Id", "Name", "Arn"),
    Kind.DISCOVERY_SERVICE: ("Arn", "Id", "Name"),
    Kind.CERTIFICATE: ("Arn", "DomainName"),
    Kind.VIRTUAL_GATEWAY: ("Name", "Arn"),
    Kind.VIRTUAL_NODE: ("Name", "Arn"),
    Kind.VIRTUAL_SERVICE: ("Name", "Arn"),
    Kind.GATEWAY_ROUTE: ("Name", "Arn"),
    Kind.BASTION: ("InstanceId", "PrivateIp"),
    Kind.CLUSTER: ("Name", "Arn"),
    Kind.TASK_DEFINITION: ("Arn",),
    Kind.SERVICE: ("Name", "Arn"),
    Kind.LOAD_BALANCER: ("DNSName", "Arn"),
    Kind.OUTPUT: (),
}

# Kinds that own a security group and can appear in ``allow_from``.
CONNECTABLE = (Kind.BASTION, Kind.CLUSTER, Kind.SERVICE, Kind.LOAD_BALANCER)


class ResolutionError(Exception):
    """Raised when a reference or handle cannot be resolved."""

    pass


def parse_handle(body: str) -> tuple[str | None, str | None, str | None]:
    """
    Split the inside of ``${...}``.

    Returns (pseudo, construct_id, attribute); either pseudo or
    construct_id is set.
    """
    match = HANDLE_BODY.match(body)
    if not match:
        raise ResolutionError(f"Malformed handle: ${{{body}}}")
    return match.group(1), match.group(2), match.group(3)


def find_handles(value: Any) -> Iterator[str]:
    """Yield the body of every handle inside strings of ``value``."""
    if isinstance(value, str):
        yield from HANDLE.findall(value)
    elif isinstance(value, dict):
        for item in value.values():
            yield from find_handles(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from find_handles(item)


def entry_references(entry: Entry) -> list[tuple[str, str, tuple[Kind, ...]]]:
    """
    Direct id references of an entry.

    Returns (field, target id, accepted kinds) triples. Handles embedded in
    strings are not included; see ``handle_references``.
    """
    spec = entry.spec
    refs: list[tuple[str, str, tuple[Kind, ...]]] = []

    def add(field: str, target: str | None, *kinds: Kind) -> None:
        if target:
            refs.append((field, target, kinds))

    def add_rules(prefix: str, rules: list[Any]) -> None:
        for i, rule in enumerate(rules):
            add(f"{prefix}[{i}].source", rule.source, *CONNECTABLE)

    if isinstance(spec, DiscoveryServiceSpec):
        add("namespace", spec.namespace, Kind.NAMESPACE)
    elif isinstance(spec, (VirtualGatewaySpec, VirtualNodeSpec)):
        add("mesh", spec.mesh, Kind.MESH)
        for i, listener in enumerate(spec.listeners):
            if listener.tls:
                add(f"listeners[{i}].tls.certificate", listener.tls.certificate, Kind.CERTIFICATE)
        if isinstance(spec, VirtualNodeSpec):
            add("discovery", spec.discovery, Kind.DISCOVERY_SERVICE)
            for i, backend in enumerate(spec.backends):
                add(f"backends[{i}]", backend, Kind.VIRTUAL_SERVICE)
    elif isinstance(spec, VirtualServiceSpec):
        add("mesh", spec.mesh, Kind.MESH)
        add("provider", spec.provider, Kind.VIRTUAL_NODE)
    elif isinstance(spec, GatewayRouteSpec):
        add("gateway", spec.gateway, Kind.VIRTUAL_GATEWAY)
        add("target", spec.target, Kind.VIRTUAL_SERVICE)
    elif isinstance(spec, BastionSpec):
        add("network", spec.network, Kind.NETWORK)
        add_rules("allow_from", spec.allow_from)
    elif isinstance(spec, ClusterSpec):
        add("network", spec.network, Kind.NETWORK)
        if spec.capacity:
            add_rules("capacity.allow_from", spec.capacity.allow_from)
    elif isinstance(spec, TaskDefinitionSpec):
        if spec.envoy:
            add("envoy.virtual_node", spec.envoy.virtual_node, Kind.VIRTUAL_NODE)
            add("envoy.virtual_gateway", spec.envoy.virtual_gateway, Kind.VIRTUAL_GATEWAY)
    elif isinstance(spec, ServiceSpec):
        add("cluster", spec.cluster, Kind.CLUSTER)
        add("task_definition", spec.task_definition, Kind.TASK_DEFINITION)
        add("discovery", spec.discovery, Kind.DISCOVERY_SERVICE)
        add_rules("allow_from", spec.allow_from)
    elif isinstance(spec, LoadBalancerSpec):
        add("network", spec.network, Kind.NETWORK)
        for i, listener in enumerate(spec.listeners):
            for j, cert in enumerate(listener.certificates):
                add(f"listeners[{i}].certificates[{j}]", cert, Kind.CERTIFICATE)
            for j, target in enumerate(listener.targets):
                add(f"listeners[{i}].targets[{j}].service", target.service, Kind.SERVICE)
        add_rules("allow_from", spec.allow_from)
    return refs


def handle_references(entry: Entry) -> list[tuple[str | None, str | None, str | None]]:
    """Parsed handles found anywhere in an entry's spec."""
    parsed = []
    for body in find_handles(entry.spec.model_dump(mode="json")):
        try:
            parsed.append(parse_handle(body))
        except ResolutionError:
            parsed.append((None, None, body))
    return parsed


class ReferenceResolver:
    """
    Resolves symbolic references for a topology.

    Before the tree is built it answers structural questions (what
    depends on what, is every reference valid). While building, intent
    constructs register themselves so handles can be turned into tokens.
    """

    def __init__(self, topology: Topology) -> None:
        self._topology = topology
        self._constructs: dict[str, IntentConstruct] = {}

    @property
    def topology(self) -> Topology:
        return self._topology

    def get(self, id: str, kind: Kind | None = None) -> Entry:
        """Get an entry by id, raising if missing or of the wrong kind."""
        entry = self._topology.get(id)
        if not entry:
            raise ResolutionError(f"Construct not found: {id}")
        if kind is not None and entry.kind != kind:
            raise ResolutionError(
                f"Construct {id} is a {entry.kind.value}, expected {kind.value}"
            )
        return entry

    def dependencies(self, id: str) -> list[str]:
        """Direct dependencies (declared ids and handle targets) of an entry."""
        entry = self.get(id)
        deps: list[str] = []
        for _field, target, _kinds in entry_references(entry):
            if target not in deps:
                deps.append(target)
        for _pseudo, target, _attr in handle_references(entry):
            if target and target not in deps:
                deps.append(target)
        return deps

    def build_order(self) -> list[Entry]:
        """
        Entries sorted so every entry follows its dependencies.

        Ties keep declaration order. Unknown ids are ignored here; they are
        reported by ``validate_all``.
        """
        pending = list(self._topology)
        deps = {
            e.id: [d for d in self.dependencies(e.id) if d in self._topology]
            for e in pending
        }
        placed: set[str] = set()
        ordered: list[Entry] = []
        while pending:
            for entry in pending:
                if all(d in placed for d in deps[entry.id]):
                    ordered.append(entry)
                    placed.add(entry.id)
                    pending.remove(entry)
                    break
            else:
                cycle = ", ".join(sorted(e.id for e in pending))
                raise ResolutionError(f"Reference cycle between: {cycle}")
        return ordered

    # --- Validation ---

    def _task_definition(self, id: str) -> TaskDefinitionSpec | None:
        entry = self._topology.get(id)
        if entry and isinstance(entry.spec, TaskDefinitionSpec):
            return entry.spec
        return None

    def container_ports(self, task_definition_id: str, container: str) -> list[int]:
        """Port mappings of a container, including inferred envoy ports."""
        task = self._task_definition(task_definition_id)
        if task is None:
            return []
        if container == "envoy" and task.envoy:
            if task.envoy.port_mappings:
                return list(task.envoy.port_mappings)
            gateway = self._topology.get(task.envoy.virtual_gateway or "")
            if gateway and isinstance(gateway.spec, VirtualGatewaySpec):
                return [listener.port for listener in gateway.spec.listeners]
            return []
        spec = task.containers.get(container)
        return list(spec.port_mappings) if spec else []

    def _mesh_of(self, id: str) -> str | None:
        entry = self._topology.get(id)
        return getattr(entry.spec, "mesh", None) if entry else None

    def _network_of_service(self, id: str) -> str | None:
        entry = self._topology.get(id)
        if not entry or not isinstance(entry.spec, ServiceSpec):
            return None
        cluster = self._topology.get(entry.spec.cluster)
        if cluster and isinstance(cluster.spec, ClusterSpec):
            return cluster.spec.network
        return None

    def validate_all(self) -> list[str]:
        """
        Validate every reference in the topology.

        Returns list of error messages (empty if all valid).
        """
        errors: list[str] = []

        for entry in self._topology.duplicates:
            errors.append(f"Duplicate construct id: {entry.id} ({entry.kind.value})")

        for entry in self._topology:
            for field, target, kinds in entry_references(entry):
                found = self._topology.get(target)
                if not found:
                    errors.append(f"{entry.id}.{field}: construct not found: {target}")
                elif found.kind not in kinds:
                    expected = " or ".join(k.value for k in kinds)
                    errors.append(
                        f"{entry.id}.{field}: {target} is a {found.kind.value}, expected {expected}"
                    )

            for pseudo, target, attribute in handle_references(entry):
                if pseudo:
                    if pseudo not in PSEUDO_PARAMETERS:
                        errors.append(f"{entry.id}: unknown pseudo parameter: {pseudo}")
                    continue
                if target is None:
                    errors.append(f"{entry.id}: malformed handle: ${{{attribute}}}")
                    continue
                found = self._topology.get(target)
                if not found:
                    errors.append(f"{entry.id}: handle references unknown construct: {target}")
                elif attribute and attribute not in ATTRIBUTES[found.kind]:
                    errors.append(
                        f"{entry.id}: {found.kind.value} {target} has no attribute {attribute}"
                    )
                elif not ATTRIBUTES[found.kind]:
                    errors.append(f"{entry.id}: {target} cannot be referenced by a handle")

            errors.extend(self._validate_entry(entry))

        try:
            self.build_order()
        except ResolutionError as e:
            errors.append(str(e))

        return errors

    def _validate_entry(self, entry: Entry) -> list[str]:
        spec = entry.spec
        errors: list[str] = []

        if isinstance(spec, GatewayRouteSpec):
            gateway_mesh = self._mesh_of(spec.gateway)
            target_mesh = self._mesh_of(spec.target)
            if gateway_mesh and target_mesh and gateway_mesh != target_mesh:
                errors.append(
                    f"{entry.id}: gateway {spec.gateway} and target {spec.target} are in different meshes"
                )

        elif isinstance(spec, VirtualServiceSpec) and spec.provider:
            provider_mesh = self._mesh_of(spec.provider)
            if provider_mesh and provider_mesh != spec.mesh:
                errors.append(f"{entry.id}: provider {spec.provider} is in a different mesh")

        elif isinstance(spec, TaskDefinitionSpec):
            names = set(spec.containers)
            if spec.envoy:
                names.add("envoy")
            for name, container in spec.containers.items():
                for dep in container.depends_on:
                    if dep.container not in names:
                        errors.append(
                            f"{entry.id}.containers.{name}: depends on unknown container {dep.container}"
                        )
                    elif dep.container == name:
                        errors.append(f"{entry.id}.containers.{name}: depends on itself")
            if spec.proxy:
                if spec.proxy.container not in names:
                    errors.append(
                        f"{entry.id}.proxy: unknown container {spec.proxy.container}"
                    )
                elif spec.envoy and spec.proxy.container != "envoy":
                    errors.append(
                        f"{entry.id}.proxy: must name the envoy sidecar, not {spec.proxy.container}"
                    )
                if spec.network_mode != NetworkMode.AWS_VPC:
                    errors.append(f"{entry.id}.proxy: requires the awsvpc network mode")

        elif isinstance(spec, ServiceSpec):
            task = self._task_definition(spec.task_definition)
            if task and task.network_mode != NetworkMode.AWS_VPC:
                if spec.discovery:
                    errors.append(f"{entry.id}: service registries require an awsvpc task definition")
                if spec.allow_from:
                    errors.append(f"{entry.id}: security rules require an awsvpc task definition")

        elif isinstance(spec, LoadBalancerSpec):
            for listener in spec.listeners:
                for target in listener.targets:
                    service = self._topology.get(target.service)
                    if not service or not isinstance(service.spec, ServiceSpec):
                        continue
                    task_id = service.spec.task_definition
                    task = self._task_definition(task_id)
                    if task is None:
                        continue
                    label = f"{entry.id}.listeners.{listener.id}"
                    ports = self.container_ports(task_id, target.container)
                    if not ports:
                        errors.append(
                            f"{label}: container {target.container} of {task_id} has no port mapping"
                        )
                    elif target.port is not None and target.port not in ports:
                        errors.append(
                            f"{label}: container {target.container} does not map port {target.port}"
                        )
                    if task.network_mode != NetworkMode.AWS_VPC:
                        errors.append(f"{label}: target {target.service} must use awsvpc")
                    network = self._network_of_service(target.service)
                    if network and network != spec.network:
                        errors.append(
                            f"{label}: target {target.service} is in network {network}, not {spec.network}"
                        )

        for field, target, _kinds in entry_references(entry):
            if not field.endswith(".source"):
                continue
            source = self._topology.get(target)
            if not source:
                continue
            if isinstance(source.spec, ClusterSpec) and source.spec.capacity is None:
                errors.append(f"{entry.id}.{field}: cluster {target} has no capacity to connect")
            if isinstance(source.spec, ServiceSpec):
                task = self._task_definition(source.spec.task_definition)
                if task and task.network_mode != NetworkMode.AWS_VPC:
                    errors.append(f"{entry.id}.{field}: service {target} is not awsvpc")

        return errors

    def warnings(self) -> list[str]:
        """Non-fatal findings."""
        referenced: set[str] = set()
        for entry in self._topology:
            referenced.update(self.dependencies(entry.id))

        warnings: list[str] = []
        for entry in self._topology:
            if entry.kind in (Kind.CERTIFICATE, Kind.TASK_DEFINITION) and entry.id not in referenced:
                warnings.append(f"{entry.kind.value} {entry.id} is not referenced")
            if isinstance(entry.spec, ServiceSpec):
                cluster = self._topology.get(entry.spec.cluster)
                if cluster and isinstance(cluster.spec, ClusterSpec) and cluster.spec.capacity is None:
                    warnings.append(
                        f"service {entry.id} runs on cluster {cluster.id} which declares no capacity"
                    )
        return warnings

    # --- Build-time resolution ---

    def register(self, construct: IntentConstruct) -> None:
        self._constructs[construct.id] = construct
        logger.debug("construct_registered", id=construct.id, kind=construct.kind.value)

    def construct(self, id: str, kind: Kind | None = None) -> IntentConstruct:
        """Get a built construct by id."""
        entry = self.get(id, kind)
        built = self._constructs.get(entry.id)
        if built is None:
            raise ResolutionError(f"Construct {id} has not been built yet")
        return built

    def resolve_handle(self, body: str) -> Any:
        pseudo, target, attribute = parse_handle(body)
        if pseudo:
            if pseudo not in PSEUDO_PARAMETERS:
                raise ResolutionError(f"Unknown pseudo parameter: {pseudo}")
            return PSEUDO_PARAMETERS[pseudo]
        return self.construct(target).attribute(attribute)  # type: ignore[arg-type]

    def resolve(self, value: Any) -> Any:
        """Replace handles inside ``value`` with literals or tokens."""
        if isinstance(value, str):
            if "${" not in value:
                return value
            parts: list[Any] = []
            position = 0
            for match in HANDLE.finditer(value):
                if match.start() > position:
                    parts.append(value[position:match.start()])
                parts.append(self.resolve_handle(match.group(1)))
                position = match.end()
            if position < len(value):
                parts.append(value[position:])
            if len(parts) == 1:
                return parts[0]
            return concat(*parts)
        if isinstance(value, dict):
            return {k: self.resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v) for v in value]
        return value
