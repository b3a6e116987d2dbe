"""Tests for resolver module."""

import pytest

from meshsynth.core.resolver import (
    ReferenceResolver,
    ResolutionError,
    find_handles,
    parse_handle,
)
from meshsynth.core.schema import Kind
from meshsynth.core.tokens import AWS_REGION, Join
from meshsynth.core.topology import Topology


@pytest.fixture
def topology(mesh_data):
    return Topology.from_dict(mesh_data)


@pytest.fixture
def compute_data(mesh_data):
    """The mesh topology plus a cluster running the gateway."""
    mesh_data.update(
        {
            "bastions": {"Bastion": {"network": "Vpc"}},
            "clusters": {
                "Cluster": {
                    "network": "Vpc",
                    "capacity": {"allow_from": [{"source": "Bastion"}]},
                }
            },
            "task_definitions": {
                "GatewayTask": {"envoy": {"virtual_gateway": "Gateway"}},
            },
            "services": {
                "GatewayService": {"cluster": "Cluster", "task_definition": "GatewayTask"}
            },
        }
    )
    return mesh_data


class TestHandles:
    """Tests for handle parsing."""

    def test_parse_attribute(self):
        assert parse_handle("Mesh.Name") == (None, "Mesh", "Name")

    def test_parse_default(self):
        assert parse_handle("Mesh") == (None, "Mesh", None)

    def test_parse_pseudo(self):
        assert parse_handle("AWS::Region") == ("AWS::Region", None, None)

    def test_parse_malformed(self):
        with pytest.raises(ResolutionError):
            parse_handle("Mesh.Name.Extra")

    def test_find_handles(self):
        value = {"a": ["x-${A.B}", {"c": "${AWS::Region}"}], "d": 3}
        assert list(find_handles(value)) == ["A.B", "AWS::Region"]


class TestReferenceResolver:
    """Tests for ReferenceResolver class."""

    def test_get(self, topology):
        resolver = ReferenceResolver(topology)
        assert resolver.get("Mesh").kind == Kind.MESH
        assert resolver.get("Mesh", Kind.MESH).id == "Mesh"

    def test_get_not_found(self, topology):
        resolver = ReferenceResolver(topology)
        with pytest.raises(ResolutionError) as exc_info:
            resolver.get("nonexistent")
        assert "not found" in str(exc_info.value)

    def test_get_wrong_kind(self, topology):
        resolver = ReferenceResolver(topology)
        with pytest.raises(ResolutionError) as exc_info:
            resolver.get("Mesh", Kind.NETWORK)
        assert "expected network" in str(exc_info.value)

    def test_dependencies(self, topology):
        """Test declared references and handle targets both count."""
        resolver = ReferenceResolver(topology)
        assert resolver.dependencies("GatewayCertificate") == ["Namespace"]
        assert resolver.dependencies("Gateway") == ["Mesh", "GatewayCertificate"]
        assert resolver.dependencies("Route") == ["Gateway", "AppService"]

    def test_build_order(self, topology):
        resolver = ReferenceResolver(topology)
        order = [e.id for e in resolver.build_order()]
        for entry in topology:
            for dep in resolver.dependencies(entry.id):
                assert order.index(dep) < order.index(entry.id)

    def test_build_order_keeps_declaration_order(self):
        """Test independent entries stay in declaration order."""
        topology = Topology.from_dict(
            {"meshes": {"B": {}, "A": {}}, "namespaces": {"C": {"name": "c"}}}
        )
        order = [e.id for e in ReferenceResolver(topology).build_order()]
        assert order == ["B", "A", "C"]

    def test_validate_all_valid(self, topology):
        """Test validation passes for a valid topology."""
        resolver = ReferenceResolver(topology)
        assert resolver.validate_all() == []

    def test_validate_compute(self, compute_data):
        resolver = ReferenceResolver(Topology.from_dict(compute_data))
        assert resolver.validate_all() == []

    def test_missing_reference(self, mesh_data):
        mesh_data["virtual_services"]["AppService"]["provider"] = "Ghost"
        errors = ReferenceResolver(Topology.from_dict(mesh_data)).validate_all()
        assert errors == ["AppService.provider: construct not found: Ghost"]

    def test_wrong_kind_reference(self, mesh_data):
        mesh_data["gateway_routes"]["Route"]["target"] = "AppNode"
        errors = ReferenceResolver(Topology.from_dict(mesh_data)).validate_all()
        assert errors == ["Route.target: AppNode is a virtual_node, expected virtual_service"]

    def test_duplicate_id(self, mesh_data):
        mesh_data["bastions"] = {"Mesh": {"network": "Vpc"}}
        errors = ReferenceResolver(Topology.from_dict(mesh_data)).validate_all()
        assert "Duplicate construct id: Mesh (bastion)" in errors

    def test_unknown_handle_target(self, mesh_data):
        mesh_data["certificates"]["GatewayCertificate"]["domain_name"] = "gw.${Nowhere.Name}"
        errors = ReferenceResolver(Topology.from_dict(mesh_data)).validate_all()
        assert errors == ["GatewayCertificate: handle references unknown construct: Nowhere"]

    def test_unknown_handle_attribute(self, mesh_data):
        mesh_data["certificates"]["GatewayCertificate"]["domain_name"] = "gw.${Namespace.Colour}"
        errors = ReferenceResolver(Topology.from_dict(mesh_data)).validate_all()
        assert errors == ["GatewayCertificate: namespace Namespace has no attribute Colour"]

    def test_unknown_pseudo(self, mesh_data):
        mesh_data["certificates"]["GatewayCertificate"]["domain_name"] = "${AWS::Nope}.example.com"
        errors = ReferenceResolver(Topology.from_dict(mesh_data)).validate_all()
        assert errors == ["GatewayCertificate: unknown pseudo parameter: AWS::Nope"]

    def test_cycle(self):
        topology = Topology.from_dict(
            {
                "namespaces": {
                    "A": {"name": "${B.Name}"},
                    "B": {"name": "${A.Name}"},
                }
            }
        )
        resolver = ReferenceResolver(topology)
        with pytest.raises(ResolutionError) as exc_info:
            resolver.build_order()
        assert "cycle" in str(exc_info.value)
        assert resolver.validate_all() == ["Reference cycle between: A, B"]

    def test_route_across_meshes(self, mesh_data):
        mesh_data["meshes"]["Other"] = {}
        mesh_data["virtual_services"]["OtherService"] = {"mesh": "Other"}
        mesh_data["gateway_routes"]["Route"]["target"] = "OtherService"
        errors = ReferenceResolver(Topology.from_dict(mesh_data)).validate_all()
        assert errors == [
            "Route: gateway Gateway and target OtherService are in different meshes"
        ]

    def test_unknown_container_dependency(self, compute_data):
        compute_data["task_definitions"]["AppTask"] = {
            "containers": {"app": {"image": "nginx", "depends_on": ["sidecar"]}}
        }
        errors = ReferenceResolver(Topology.from_dict(compute_data)).validate_all()
        assert errors == ["AppTask.containers.app: depends on unknown container sidecar"]

    def test_proxy_names_other_container(self, compute_data):
        compute_data["task_definitions"]["AppTask"] = {
            "containers": {"app": {"image": "nginx", "port_mappings": [80]}},
            "envoy": {"virtual_node": "AppNode"},
            "proxy": {"container": "app", "app_ports": [80]},
        }
        errors = ReferenceResolver(Topology.from_dict(compute_data)).validate_all()
        assert errors == ["AppTask.proxy: must name the envoy sidecar, not app"]

    def test_bridge_service_with_registry(self, compute_data):
        compute_data["task_definitions"]["GatewayTask"]["network_mode"] = "bridge"
        compute_data["services"]["GatewayService"]["discovery"] = "AppDiscovery"
        errors = ReferenceResolver(Topology.from_dict(compute_data)).validate_all()
        assert errors == ["GatewayService: service registries require an awsvpc task definition"]

    def test_bridge_service_with_security_rules(self, compute_data):
        compute_data["task_definitions"]["GatewayTask"]["network_mode"] = "bridge"
        compute_data["services"]["GatewayService"]["allow_from"] = [{"source": "Bastion"}]
        errors = ReferenceResolver(Topology.from_dict(compute_data)).validate_all()
        assert errors == ["GatewayService: security rules require an awsvpc task definition"]

    def test_connection_from_cluster_without_capacity(self, compute_data):
        compute_data["clusters"]["Bare"] = {"network": "Vpc"}
        compute_data["services"]["GatewayService"]["allow_from"] = [{"source": "Bare"}]
        errors = ReferenceResolver(Topology.from_dict(compute_data)).validate_all()
        assert errors == ["GatewayService.allow_from[0].source: cluster Bare has no capacity to connect"]

    def test_load_balancer_target_without_port(self, compute_data):
        compute_data["certificates"]["Public"] = {"domain_name": "example.com"}
        compute_data["task_definitions"]["GatewayTask"]["containers"] = {
            "metrics": {"image": "exporter"}
        }
        compute_data["load_balancers"] = {
            "Lb": {
                "network": "Vpc",
                "listeners": [
                    {
                        "certificates": ["Public"],
                        "targets": [{"service": "GatewayService", "container": "metrics"}],
                    }
                ],
            }
        }
        errors = ReferenceResolver(Topology.from_dict(compute_data)).validate_all()
        assert errors == [
            "Lb.listeners.default: container metrics of GatewayTask has no port mapping"
        ]

    def test_container_ports_inferred_for_gateway_envoy(self, compute_data):
        resolver = ReferenceResolver(Topology.from_dict(compute_data))
        assert resolver.container_ports("GatewayTask", "envoy") == [8443]
        assert resolver.container_ports("GatewayTask", "app") == []

    def test_warnings(self, compute_data):
        compute_data["certificates"]["Unused"] = {"domain_name": "example.com"}
        compute_data["clusters"]["Bare"] = {"network": "Vpc"}
        compute_data["services"]["GatewayService"]["cluster"] = "Bare"
        warnings = ReferenceResolver(Topology.from_dict(compute_data)).warnings()
        assert warnings == [
            "certificate Unused is not referenced",
            "service GatewayService runs on cluster Bare which declares no capacity",
        ]

    def test_construct_not_built(self, topology):
        resolver = ReferenceResolver(topology)
        with pytest.raises(ResolutionError) as exc_info:
            resolver.construct("Mesh")
        assert "not been built" in str(exc_info.value)

    def test_resolve_without_handles(self, topology):
        resolver = ReferenceResolver(topology)
        assert resolver.resolve({"a": ["plain", 1]}) == {"a": ["plain", 1]}

    def test_resolve_pseudo(self, topology):
        resolver = ReferenceResolver(topology)
        value = resolver.resolve("${AWS::Region}.example.com")
        assert value == Join("", [AWS_REGION, ".example.com"])
