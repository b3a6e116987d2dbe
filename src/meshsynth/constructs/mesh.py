"""Service mesh, service discovery and certificates."""

from __future__ import annotations

from typing import Any

from meshsynth.constructs.base import IntentConstruct
from meshsynth.core.construct import CfnResource
from meshsynth.core.schema import (
    BackendDefaults,
    CertificateSpec,
    DiscoveryServiceSpec,
    GatewayRouteSpec,
    Kind,
    MeshListener,
    MeshSpec,
    NamespaceSpec,
    VirtualGatewaySpec,
    VirtualNodeSpec,
    VirtualServiceSpec,
)


class Mesh(IntentConstruct):
    kind = Kind.MESH
    spec: MeshSpec

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.resource = CfnResource(
            self,
            "Resource",
            "AWS::AppMesh::Mesh",
            {
                "MeshName": self.spec.name or self.unique_name(),
                "Spec": {"EgressFilter": {"Type": self.spec.egress_filter}},
            },
        )

    def _attribute(self, name: str) -> Any:
        if name == "Arn":
            return self.resource.get_att("Arn")
        return self.resource.get_att("MeshName")


class Namespace(IntentConstruct):
    """HTTP (API-only) Cloud Map namespace."""

    kind = Kind.NAMESPACE
    spec: NamespaceSpec

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        props: dict[str, Any] = {"Name": self.spec.name}
        if self.spec.description:
            props["Description"] = self.spec.description
        self.resource = CfnResource(self, "Resource", "AWS::ServiceDiscovery::HttpNamespace", props)

    @property
    def namespace_name(self) -> str:
        return self.spec.name

    def _attribute(self, name: str) -> Any:
        if name == "Name":
            return self.namespace_name
        return self.resource.get_att(name)


class DiscoveryService(IntentConstruct):
    kind = Kind.DISCOVERY_SERVICE
    spec: DiscoveryServiceSpec

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.namespace = self.dependency(self.spec.namespace, Kind.NAMESPACE, Namespace)
        props: dict[str, Any] = {
            "Name": self.spec.name,
            "NamespaceId": self.namespace.resource.get_att("Id"),
        }
        if self.spec.description:
            props["Description"] = self.spec.description
        self.resource = CfnResource(self, "Resource", "AWS::ServiceDiscovery::Service", props)

    @property
    def service_name(self) -> str:
        return self.spec.name

    def _attribute(self, name: str) -> Any:
        if name == "Name":
            return self.service_name
        return self.resource.get_att(name)


class Certificate(IntentConstruct):
    """ACM certificate, issued by a private CA or validated through DNS."""

    kind = Kind.CERTIFICATE
    spec: CertificateSpec

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        spec = self.spec
        self.domain_name = self.resolver.resolve(spec.domain_name)
        props: dict[str, Any] = {"DomainName": self.domain_name}
        if spec.subject_alternative_names:
            props["SubjectAlternativeNames"] = self.resolver.resolve(spec.subject_alternative_names)
        if spec.authority_arn:
            props["CertificateAuthorityArn"] = self.resolver.resolve(spec.authority_arn)
        else:
            props["ValidationMethod"] = "DNS"
        self.resource = CfnResource(self, "Resource", "AWS::CertificateManager::Certificate", props)

    @property
    def arn(self) -> Any:
        return self.resource.ref

    def _attribute(self, name: str) -> Any:
        if name == "DomainName":
            return self.domain_name
        return self.arn


class MeshResource(IntentConstruct):
    """Shared lowering of virtual gateway and virtual node specs."""

    spec: VirtualGatewaySpec | VirtualNodeSpec
    name_attribute = ""
    envoy_resource_type = ""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.mesh = self.dependency(self.spec.mesh, Kind.MESH, Mesh)
        self.certificates: list[Certificate] = []

    def _listener(self, listener: MeshListener) -> dict[str, Any]:
        rendered: dict[str, Any] = {
            "PortMapping": {"Port": listener.port, "Protocol": listener.protocol.value}
        }
        if listener.tls:
            certificate = self.dependency(listener.tls.certificate, Kind.CERTIFICATE, Certificate)
            if certificate not in self.certificates:
                self.certificates.append(certificate)
            rendered["TLS"] = {
                "Mode": listener.tls.mode.value,
                "Certificate": {"ACM": {"CertificateArn": certificate.arn}},
            }
        return rendered

    def _backend_defaults(self, defaults: BackendDefaults) -> dict[str, Any]:
        tls: dict[str, Any] = {
            "Validation": {
                "Trust": {
                    "ACM": {
                        "CertificateAuthorityArns": self.resolver.resolve(defaults.trust_authorities)
                    }
                }
            }
        }
        if not defaults.enforce:
            tls["Enforce"] = False
        if defaults.ports:
            tls["Ports"] = list(defaults.ports)
        return {"ClientPolicy": {"TLS": tls}}

    @property
    def trust_authorities(self) -> list[Any]:
        defaults = self.spec.backend_defaults
        if defaults is None:
            return []
        return self.resolver.resolve(defaults.trust_authorities)

    @property
    def mesh_name(self) -> Any:
        return self.mesh.attribute("Name")

    @property
    def resource_name(self) -> Any:
        return self.attribute("Name")

    def _attribute(self, name: str) -> Any:
        if name == "Arn":
            return self.resource.get_att("Arn")
        return self.resource.get_att(self.name_attribute)


class VirtualGateway(MeshResource):
    """Ingress into the mesh, run by an Envoy container outside the mesh."""

    kind = Kind.VIRTUAL_GATEWAY
    spec: VirtualGatewaySpec
    name_attribute = "VirtualGatewayName"
    envoy_resource_type = "virtualGateway"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        spec = self.spec
        body: dict[str, Any] = {"Listeners": [self._listener(l) for l in spec.listeners]}
        if spec.backend_defaults:
            body["BackendDefaults"] = self._backend_defaults(spec.backend_defaults)
        self.resource = CfnResource(
            self,
            "Resource",
            "AWS::AppMesh::VirtualGateway",
            {
                "MeshName": self.mesh_name,
                "VirtualGatewayName": spec.name or self.unique_name(),
                "Spec": body,
            },
        )


class VirtualNode(MeshResource):
    kind = Kind.VIRTUAL_NODE
    spec: VirtualNodeSpec
    name_attribute = "VirtualNodeName"
    envoy_resource_type = "virtualNode"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        spec = self.spec
        body: dict[str, Any] = {}
        if spec.listeners:
            body["Listeners"] = [self._listener(l) for l in spec.listeners]
        if spec.discovery:
            discovery = self.dependency(spec.discovery, Kind.DISCOVERY_SERVICE, DiscoveryService)
            body["ServiceDiscovery"] = {
                "AWSCloudMap": {
                    "NamespaceName": discovery.namespace.namespace_name,
                    "ServiceName": discovery.service_name,
                }
            }
        if spec.backends:
            body["Backends"] = [
                {
                    "VirtualService": {
                        "VirtualServiceName": self.resolver.construct(
                            backend, Kind.VIRTUAL_SERVICE
                        ).attribute("Name")
                    }
                }
                for backend in spec.backends
            ]
        if spec.backend_defaults:
            body["BackendDefaults"] = self._backend_defaults(spec.backend_defaults)
        self.resource = CfnResource(
            self,
            "Resource",
            "AWS::AppMesh::VirtualNode",
            {
                "MeshName": self.mesh_name,
                "VirtualNodeName": spec.name or self.unique_name(),
                "Spec": body,
            },
        )


class VirtualService(IntentConstruct):
    kind = Kind.VIRTUAL_SERVICE
    spec: VirtualServiceSpec

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        spec = self.spec
        mesh = self.resolver.construct(spec.mesh, Kind.MESH)
        body: dict[str, Any] = {}
        if spec.provider:
            node = self.resolver.construct(spec.provider, Kind.VIRTUAL_NODE)
            body["Provider"] = {"VirtualNode": {"VirtualNodeName": node.attribute("Name")}}
        self.resource = CfnResource(
            self,
            "Resource",
            "AWS::AppMesh::VirtualService",
            {
                "MeshName": mesh.attribute("Name"),
                "VirtualServiceName": spec.name or self.unique_name(),
                "Spec": body,
            },
        )

    def _attribute(self, name: str) -> Any:
        if name == "Arn":
            return self.resource.get_att("Arn")
        return self.resource.get_att("VirtualServiceName")


class GatewayRoute(IntentConstruct):
    """Routes gateway traffic matching a path prefix to a virtual service."""

    kind = Kind.GATEWAY_ROUTE
    spec: GatewayRouteSpec

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        spec = self.spec
        gateway = self.dependency(spec.gateway, Kind.VIRTUAL_GATEWAY, VirtualGateway)
        target = self.resolver.construct(spec.target, Kind.VIRTUAL_SERVICE)
        route_key = "HttpRoute" if spec.protocol == "http" else "Http2Route"
        self.resource = CfnResource(
            self,
            "Resource",
            "AWS::AppMesh::GatewayRoute",
            {
                "GatewayRouteName": spec.name or self.unique_name(),
                "MeshName": gateway.mesh_name,
                "VirtualGatewayName": gateway.resource_name,
                "Spec": {
                    route_key: {
                        "Match": {"Prefix": spec.prefix},
                        "Action": {
                            "Target": {
                                "VirtualService": {
                                    "VirtualServiceName": target.attribute("Name")
                                }
                            }
                        },
                    }
                },
            },
        )

    def _attribute(self, name: str) -> Any:
        if name == "Arn":
            return self.resource.get_att("Arn")
        return self.resource.get_att("GatewayRouteName")
