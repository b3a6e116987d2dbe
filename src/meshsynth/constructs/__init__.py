"""Intent constructs lowering topology entries into template resources."""

from meshsynth.constructs.base import IntentConstruct
from meshsynth.constructs.ec2 import Bastion, Network
from meshsynth.constructs.ecs import Cluster, Service, TaskDefinition
from meshsynth.constructs.elbv2 import LoadBalancer
from meshsynth.constructs.mesh import (
    Certificate,
    DiscoveryService,
    GatewayRoute,
    Mesh,
    Namespace,
    VirtualGateway,
    VirtualNode,
    VirtualService,
)
from meshsynth.core.schema import Kind

# Outputs are not intent constructs; the synthesizer renders them directly.
BUILDERS: dict[Kind, type[IntentConstruct]] = {
    Kind.NETWORK: Network,
    Kind.MESH: Mesh,
    Kind.NAMESPACE: Namespace,
    Kind.DISCOVERY_SERVICE: DiscoveryService,
    Kind.CERTIFICATE: Certificate,
    Kind.VIRTUAL_GATEWAY: VirtualGateway,
    Kind.VIRTUAL_NODE: VirtualNode,
    Kind.VIRTUAL_SERVICE: VirtualService,
    Kind.GATEWAY_ROUTE: GatewayRoute,
    Kind.BASTION: Bastion,
    Kind.CLUSTER: Cluster,
    Kind.TASK_DEFINITION: TaskDefinition,
    Kind.SERVICE: Service,
    Kind.LOAD_BALANCER: LoadBalancer,
}

__all__ = [
    "BUILDERS",
    "IntentConstruct",
    "Bastion",
    "Certificate",
    "Cluster",
    "DiscoveryService",
    "GatewayRoute",
    "LoadBalancer",
    "Mesh",
    "Namespace",
    "Network",
    "Service",
    "TaskDefinition",
    "VirtualGateway",
    "VirtualNode",
    "VirtualService",
]
