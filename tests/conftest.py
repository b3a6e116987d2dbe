"""Shared fixtures."""

from pathlib import Path

import pytest

from meshsynth.config import Settings

EXAMPLE_TOPOLOGY = Path(__file__).parent.parent / "examples" / "app-mesh-tls-gateway.yml"

CA_ARN = "arn:aws:acm-pca:us-west-2:123456789012:certificate-authority/17c11925-da43-4c9d-a2bd-0b9c7828a9cd"


@pytest.fixture
def example_path():
    return EXAMPLE_TOPOLOGY


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None, account=None, region=None)


@pytest.fixture
def mesh_data():
    """A small topology: one gateway routing to one node-backed service."""
    return {
        "stack": "TestStack",
        "networks": {"Vpc": {}},
        "meshes": {"Mesh": {"name": "test-mesh"}},
        "namespaces": {"Namespace": {"name": "local"}},
        "discovery_services": {"AppDiscovery": {"namespace": "Namespace", "name": "app"}},
        "certificates": {
            "GatewayCertificate": {
                "domain_name": "gateway.${Namespace.Name}",
                "authority_arn": CA_ARN,
            },
        },
        "virtual_gateways": {
            "Gateway": {
                "mesh": "Mesh",
                "listeners": [
                    {
                        "port": 8443,
                        "tls": {"mode": "STRICT", "certificate": "GatewayCertificate"},
                    }
                ],
                "backend_defaults": {"trust_authorities": [CA_ARN]},
            }
        },
        "virtual_nodes": {
            "AppNode": {
                "mesh": "Mesh",
                "listeners": [{"port": 80}],
                "discovery": "AppDiscovery",
            }
        },
        "virtual_services": {"AppService": {"mesh": "Mesh", "provider": "AppNode"}},
        "gateway_routes": {
            "Route": {"gateway": "Gateway", "target": "AppService", "name": "default"}
        },
    }
