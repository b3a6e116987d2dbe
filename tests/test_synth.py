"""Tests for synth module."""

import pytest

from meshsynth.config import Settings
from meshsynth.core.construct import CfnResource, Construct, ConstructError, Stack
from meshsynth.core.synth import SynthesisError, Synthesizer
from meshsynth.core.topology import Topology

CA_ARN = "arn:aws:acm-pca:us-west-2:123456789012:certificate-authority/17c11925-da43-4c9d-a2bd-0b9c7828a9cd"


def of_type(template, type):
    return {k: v for k, v in template["Resources"].items() if v["Type"] == type}


def logical_id(synthesizer, id, attr="resource"):
    return getattr(synthesizer.resolver.construct(id), attr).logical_id


def get_att(id, attribute):
    return {"Fn::GetAtt": [id, attribute]}


@pytest.fixture
def mesh_synth(mesh_data, settings):
    return Synthesizer(Topology.from_dict(mesh_data), settings=settings)


@pytest.fixture
def example_synth(example_path, settings):
    return Synthesizer(Topology.load(example_path), settings=settings)


class TestEmptyStack:
    """Tests for a topology without entries."""

    def test_empty_stack(self, settings):
        """Test an empty stack synthesizes to an empty resource set."""
        topology = Topology.from_dict({"stack": "MyTestStack"})
        assert Synthesizer(topology, settings=settings).synth() == {"Resources": {}}

    def test_description(self, settings):
        topology = Topology.from_dict({"description": "demo"})
        assert Synthesizer(topology, settings=settings).synth() == {
            "Description": "demo",
            "Resources": {},
        }


class TestMeshSynthesis:
    """Tests for mesh, discovery and certificate lowering."""

    def test_mesh(self, mesh_synth):
        template = mesh_synth.synth()
        mesh_id = logical_id(mesh_synth, "Mesh")
        assert mesh_id == "Mesh73A573F6"
        assert template["Resources"][mesh_id] == {
            "Type": "AWS::AppMesh::Mesh",
            "Properties": {
                "MeshName": "test-mesh",
                "Spec": {"EgressFilter": {"Type": "DROP_ALL"}},
            },
        }

    def test_certificate_domain_from_namespace(self, mesh_synth):
        """Test literal-known handles resolve to plain strings."""
        template = mesh_synth.synth()
        cert_id = logical_id(mesh_synth, "GatewayCertificate")
        assert template["Resources"][cert_id]["Properties"] == {
            "DomainName": "gateway.local",
            "CertificateAuthorityArn": CA_ARN,
        }

    def test_discovery(self, mesh_synth):
        template = mesh_synth.synth()
        namespace_id = logical_id(mesh_synth, "Namespace")
        discovery_id = logical_id(mesh_synth, "AppDiscovery")
        assert template["Resources"][namespace_id] == {
            "Type": "AWS::ServiceDiscovery::HttpNamespace",
            "Properties": {"Name": "local"},
        }
        assert template["Resources"][discovery_id]["Properties"] == {
            "Name": "app",
            "NamespaceId": get_att(namespace_id, "Id"),
        }

    def test_virtual_gateway(self, mesh_synth):
        template = mesh_synth.synth()
        mesh_id = logical_id(mesh_synth, "Mesh")
        cert_id = logical_id(mesh_synth, "GatewayCertificate")
        gateway = template["Resources"][logical_id(mesh_synth, "Gateway")]
        assert gateway["Type"] == "AWS::AppMesh::VirtualGateway"
        props = gateway["Properties"]
        assert props["MeshName"] == get_att(mesh_id, "MeshName")
        assert props["VirtualGatewayName"].startswith("TestStackGateway")
        assert props["Spec"] == {
            "Listeners": [
                {
                    "PortMapping": {"Port": 8443, "Protocol": "http"},
                    "TLS": {
                        "Mode": "STRICT",
                        "Certificate": {"ACM": {"CertificateArn": {"Ref": cert_id}}},
                    },
                }
            ],
            "BackendDefaults": {
                "ClientPolicy": {
                    "TLS": {
                        "Validation": {
                            "Trust": {"ACM": {"CertificateAuthorityArns": [CA_ARN]}}
                        }
                    }
                }
            },
        }

    def test_virtual_node_discovery(self, mesh_synth):
        template = mesh_synth.synth()
        node = template["Resources"][logical_id(mesh_synth, "AppNode")]
        assert node["Properties"]["Spec"] == {
            "Listeners": [{"PortMapping": {"Port": 80, "Protocol": "http"}}],
            "ServiceDiscovery": {"AWSCloudMap": {"NamespaceName": "local", "ServiceName": "app"}},
        }

    def test_virtual_service_provider(self, mesh_synth):
        template = mesh_synth.synth()
        node_id = logical_id(mesh_synth, "AppNode")
        service = template["Resources"][logical_id(mesh_synth, "AppService")]
        assert service["Properties"]["Spec"] == {
            "Provider": {"VirtualNode": {"VirtualNodeName": get_att(node_id, "VirtualNodeName")}}
        }

    def test_gateway_route(self, mesh_synth):
        template = mesh_synth.synth()
        mesh_id = logical_id(mesh_synth, "Mesh")
        gateway_id = logical_id(mesh_synth, "Gateway")
        service_id = logical_id(mesh_synth, "AppService")
        route = template["Resources"][logical_id(mesh_synth, "Route")]
        assert route["Properties"] == {
            "GatewayRouteName": "default",
            "MeshName": get_att(mesh_id, "MeshName"),
            "VirtualGatewayName": get_att(gateway_id, "VirtualGatewayName"),
            "Spec": {
                "HttpRoute": {
                    "Match": {"Prefix": "/"},
                    "Action": {
                        "Target": {
                            "VirtualService": {
                                "VirtualServiceName": get_att(service_id, "VirtualServiceName")
                            }
                        }
                    },
                }
            },
        }


class TestNetworkSynthesis:
    """Tests for VPC lowering."""

    def test_default_subnets(self, mesh_synth):
        template = mesh_synth.synth()
        subnets = of_type(template, "AWS::EC2::Subnet")
        cidrs = [s["Properties"]["CidrBlock"] for s in subnets.values()]
        assert cidrs == ["10.0.0.0/18", "10.0.64.0/18", "10.0.128.0/18", "10.0.192.0/18"]
        assert "VpcPublicSubnet1Subnet5C2D37C4" in subnets

    def test_gateways_and_routes(self, mesh_synth):
        template = mesh_synth.synth()
        assert len(of_type(template, "AWS::EC2::InternetGateway")) == 1
        assert len(of_type(template, "AWS::EC2::NatGateway")) == 2
        assert len(of_type(template, "AWS::EC2::EIP")) == 2
        routes = of_type(template, "AWS::EC2::Route")
        assert len(routes) == 4
        assert sum("NatGatewayId" in r["Properties"] for r in routes.values()) == 2

    def test_single_nat_gateway(self, mesh_data, settings):
        mesh_data["networks"]["Vpc"] = {"nat_gateways": 1, "max_azs": 3}
        template = Synthesizer(Topology.from_dict(mesh_data), settings=settings).synth()
        nats = of_type(template, "AWS::EC2::NatGateway")
        assert len(nats) == 1
        nat_id = next(iter(nats))
        private_routes = [
            r for r in of_type(template, "AWS::EC2::Route").values()
            if "NatGatewayId" in r["Properties"]
        ]
        assert len(private_routes) == 3
        assert all(r["Properties"]["NatGatewayId"] == {"Ref": nat_id} for r in private_routes)

    def test_vpc(self, mesh_synth):
        template = mesh_synth.synth()
        assert template["Resources"]["Vpc8378EB38"]["Properties"] == {
            "CidrBlock": "10.0.0.0/16",
            "EnableDnsHostnames": True,
            "EnableDnsSupport": True,
            "InstanceTenancy": "default",
            "Tags": [{"Key": "Name", "Value": "TestStack/Vpc"}],
        }


class TestExampleSynthesis:
    """Tests for the App Mesh TLS gateway example."""

    def test_resource_counts(self, example_synth):
        template = example_synth.synth()
        counts = {
            "AWS::AppMesh::Mesh": 1,
            "AWS::AppMesh::VirtualGateway": 1,
            "AWS::AppMesh::VirtualNode": 1,
            "AWS::AppMesh::VirtualService": 1,
            "AWS::AppMesh::GatewayRoute": 1,
            "AWS::CertificateManager::Certificate": 3,
            "AWS::ECS::Cluster": 1,
            "AWS::ECS::TaskDefinition": 2,
            "AWS::ECS::Service": 2,
            "AWS::AutoScaling::AutoScalingGroup": 1,
            "AWS::EC2::Instance": 1,
            "AWS::ElasticLoadBalancingV2::LoadBalancer": 1,
            "AWS::ElasticLoadBalancingV2::Listener": 1,
            "AWS::ElasticLoadBalancingV2::TargetGroup": 1,
            "AWS::Logs::LogGroup": 2,
        }
        for type, count in counts.items():
            assert len(of_type(template, type)) == count, type
        assert len(template["Parameters"]) == 2

    def test_output(self, example_synth):
        template = example_synth.synth()
        lb_id = logical_id(example_synth, "LoadBalancer")
        assert template["Outputs"] == {
            "LoadBalancerHostname": {"Value": get_att(lb_id, "DNSName")}
        }

    def test_gateway_envoy_container(self, example_synth):
        template = example_synth.synth()
        mesh_id = logical_id(example_synth, "Mesh")
        gateway_id = logical_id(example_synth, "Gateway")
        task = template["Resources"][logical_id(example_synth, "GatewayTaskDefinition")]
        (envoy,) = task["Properties"]["ContainerDefinitions"]
        assert envoy["Name"] == "envoy"
        assert envoy["User"] == "1337"
        assert envoy["Cpu"] == 1024
        assert envoy["MemoryReservation"] == 1024
        assert envoy["PortMappings"] == [{"ContainerPort": 8443, "HostPort": 8443, "Protocol": "tcp"}]
        assert envoy["HealthCheck"] == {
            "Command": [
                "CMD-SHELL",
                "curl -s http://localhost:9901/server_info | grep state | grep -q LIVE",
            ],
            "Interval": 5,
            "Retries": 3,
            "Timeout": 2,
            "StartPeriod": 10,
        }
        assert envoy["Image"] == {
            "Fn::Join": [
                "",
                [
                    "840364872350.dkr.ecr.",
                    {"Ref": "AWS::Region"},
                    ".amazonaws.com/aws-appmesh-envoy:v1.15.0.0-prod",
                ],
            ]
        }
        assert envoy["Environment"] == [
            {"Name": "AWS_REGION", "Value": {"Ref": "AWS::Region"}},
            {
                "Name": "APPMESH_VIRTUAL_NODE_NAME",
                "Value": {
                    "Fn::Join": [
                        "",
                        [
                            "mesh/",
                            get_att(mesh_id, "MeshName"),
                            "/virtualGateway/",
                            get_att(gateway_id, "VirtualGatewayName"),
                        ],
                    ]
                },
            },
        ]
        assert envoy["LogConfiguration"]["Options"]["awslogs-stream-prefix"] == "envoy"

    def test_gateway_task_role(self, example_synth):
        """Test envoy may export its certificate and read the CA."""
        template = example_synth.synth()
        task_definition = example_synth.resolver.construct("GatewayTaskDefinition")
        cert_id = logical_id(example_synth, "GatewayCertificate")
        policy = template["Resources"][task_definition.task_role.policy.logical_id]
        assert policy["Properties"]["PolicyDocument"]["Statement"] == [
            {"Action": "acm:ExportCertificate", "Effect": "Allow", "Resource": {"Ref": cert_id}},
            {
                "Action": "acm-pca:GetCertificateAuthorityCertificate",
                "Effect": "Allow",
                "Resource": CA_ARN,
            },
        ]
        role = template["Resources"][task_definition.task_role.resource.logical_id]
        assert role["Properties"]["ManagedPolicyArns"] == [
            {
                "Fn::Join": [
                    "",
                    ["arn:", {"Ref": "AWS::Partition"}, ":iam::aws:policy/AWSAppMeshEnvoyAccess"],
                ]
            }
        ]

    def test_proxy_configuration(self, example_synth):
        template = example_synth.synth()
        task = template["Resources"][logical_id(example_synth, "WebServiceTask")]
        assert task["Properties"]["ProxyConfiguration"] == {
            "ContainerName": "envoy",
            "ProxyConfigurationProperties": [
                {"Name": "IgnoredUID", "Value": "1337"},
                {"Name": "AppPorts", "Value": "80"},
                {"Name": "ProxyIngressPort", "Value": "15000"},
                {"Name": "ProxyEgressPort", "Value": "15001"},
                {"Name": "EgressIgnoredIPs", "Value": "169.254.170.2,169.254.169.254"},
            ],
            "Type": "APPMESH",
        }
        app = task["Properties"]["ContainerDefinitions"][0]
        assert app["Name"] == "app"
        assert app["DependsOn"] == [{"Condition": "HEALTHY", "ContainerName": "envoy"}]
        assert "LogConfiguration" not in app

    def test_web_service(self, example_synth):
        template = example_synth.synth()
        discovery_id = logical_id(example_synth, "AppService")
        service = template["Resources"][logical_id(example_synth, "WebService")]
        props = service["Properties"]
        assert props["DesiredCount"] == 2
        assert props["LaunchType"] == "EC2"
        assert props["ServiceRegistries"] == [{"RegistryArn": get_att(discovery_id, "Arn")}]
        assert props["NetworkConfiguration"]["AwsvpcConfiguration"]["AssignPublicIp"] == "DISABLED"
        assert len(props["NetworkConfiguration"]["AwsvpcConfiguration"]["Subnets"]) == 2

    def test_gateway_service_behind_load_balancer(self, example_synth):
        template = example_synth.synth()
        load_balancer = example_synth.resolver.construct("LoadBalancer")
        listener_id = load_balancer.listeners["default"].logical_id
        service = template["Resources"][logical_id(example_synth, "GatewayService")]
        props = service["Properties"]
        assert props["PlacementConstraints"] == [{"Type": "distinctInstance"}]
        assert props["HealthCheckGracePeriodSeconds"] == 60
        (attachment,) = props["LoadBalancers"]
        assert attachment["ContainerName"] == "envoy"
        assert attachment["ContainerPort"] == 8443
        assert service["DependsOn"] == [listener_id]

    def test_listener(self, example_synth):
        template = example_synth.synth()
        lb_id = logical_id(example_synth, "LoadBalancer")
        cert_id = logical_id(example_synth, "AlbCertificate")
        listener = template["Resources"][
            example_synth.resolver.construct("LoadBalancer").listeners["default"].logical_id
        ]
        props = listener["Properties"]
        assert props["Port"] == 443
        assert props["Protocol"] == "HTTPS"
        assert props["LoadBalancerArn"] == {"Ref": lb_id}
        assert props["Certificates"] == [{"CertificateArn": {"Ref": cert_id}}]
        (target_group,) = of_type(template, "AWS::ElasticLoadBalancingV2::TargetGroup").values()
        assert target_group["Properties"]["Port"] == 8443
        assert target_group["Properties"]["Protocol"] == "HTTPS"
        assert target_group["Properties"]["TargetType"] == "ip"

    def test_public_certificate(self, example_synth):
        template = example_synth.synth()
        cert = template["Resources"][logical_id(example_synth, "AlbCertificate")]
        assert cert["Properties"] == {
            "DomainName": "appmeshtlsdemo.example.com",
            "ValidationMethod": "DNS",
        }

    def test_security_group_connections(self, example_synth):
        template = example_synth.synth()
        gateway_sg = example_synth.resolver.construct("GatewayService").security_group
        web_sg = example_synth.resolver.construct("WebService").security_group
        lb_sg = example_synth.resolver.construct("LoadBalancer").security_group
        ingress = of_type(template, "AWS::EC2::SecurityGroupIngress").values()

        def rule(source, target, port):
            return {
                "GroupId": get_att(target.resource.logical_id, "GroupId"),
                "SourceSecurityGroupId": get_att(source.resource.logical_id, "GroupId"),
                "IpProtocol": "tcp",
                "FromPort": port,
                "ToPort": port,
            }

        props = [
            {k: v for k, v in r["Properties"].items() if k != "Description"} for r in ingress
        ]
        assert rule(gateway_sg, web_sg, 80) in props
        assert rule(lb_sg, gateway_sg, 8443) in props

        lb_group = template["Resources"][lb_sg.resource.logical_id]
        assert lb_group["Properties"]["SecurityGroupIngress"] == [
            {
                "CidrIp": "0.0.0.0/0",
                "Description": "Allow from anyone on port 443",
                "IpProtocol": "tcp",
                "FromPort": 443,
                "ToPort": 443,
            }
        ]

    def test_cluster_capacity(self, example_synth):
        template = example_synth.synth()
        (group,) = of_type(template, "AWS::AutoScaling::AutoScalingGroup").values()
        assert group["Properties"]["MinSize"] == "4"
        assert group["Properties"]["MaxSize"] == "4"
        (launch_config,) = of_type(template, "AWS::AutoScaling::LaunchConfiguration").values()
        assert launch_config["Properties"]["InstanceType"] == "t3.small"
        assert len(launch_config["DependsOn"]) == 2


class TestSynthesizer:
    """Tests for Synthesizer behaviour."""

    def test_invalid_topology(self, mesh_data, settings):
        mesh_data["virtual_services"]["AppService"]["provider"] = "Ghost"
        synthesizer = Synthesizer(Topology.from_dict(mesh_data), settings=settings)
        with pytest.raises(SynthesisError) as exc_info:
            synthesizer.build()
        assert exc_info.value.errors == ["AppService.provider: construct not found: Ghost"]
        assert "Ghost" in str(exc_info.value)

    def test_template_cached(self, mesh_synth):
        assert mesh_synth.synth() is mesh_synth.synth()

    def test_locked_after_synth(self, mesh_synth):
        mesh_synth.synth()
        with pytest.raises(ConstructError):
            Construct(mesh_synth.stack, "Late")

    def test_resources(self, mesh_synth):
        resources = mesh_synth.resources()
        assert all(isinstance(r, CfnResource) for r in resources)
        assert len(resources) == len(mesh_synth.synth()["Resources"])

    def test_region_substituted(self, example_path, settings):
        synthesizer = Synthesizer(Topology.load(example_path), settings=settings, region="us-west-2")
        template = synthesizer.synth()
        task = template["Resources"][logical_id(synthesizer, "GatewayTaskDefinition")]
        (envoy,) = task["Properties"]["ContainerDefinitions"]
        assert envoy["Image"] == (
            "840364872350.dkr.ecr.us-west-2.amazonaws.com/aws-appmesh-envoy:v1.15.0.0-prod"
        )
        assert envoy["Environment"][0] == {"Name": "AWS_REGION", "Value": "us-west-2"}

    def test_environment_precedence(self, mesh_data):
        """Test explicit values win over the env block, which wins over settings."""
        mesh_data["env"] = {"region": "eu-west-1"}
        settings = Settings(_env_file=None, account="111111111111", region="us-east-1")
        synthesizer = Synthesizer(Topology.from_dict(mesh_data), settings=settings)
        assert synthesizer.environment.region == "eu-west-1"
        assert synthesizer.environment.account == "111111111111"
        explicit = Synthesizer(Topology.from_dict(mesh_data), settings=settings, region="ap-south-1")
        assert explicit.environment.region == "ap-south-1"

    def test_envoy_version_setting(self, example_path):
        settings = Settings(_env_file=None, envoy_image_version="v1.20.0.1-prod")
        synthesizer = Synthesizer(Topology.load(example_path), settings=settings, region="us-west-2")
        template = synthesizer.synth()
        task = template["Resources"][logical_id(synthesizer, "GatewayTaskDefinition")]
        assert task["Properties"]["ContainerDefinitions"][0]["Image"].endswith(":v1.20.0.1-prod")

    def test_overrides(self, mesh_data, settings):
        """Test property and raw overrides, including handles in values."""
        mesh_data["meshes"]["Mesh"]["overrides"] = {"Spec.EgressFilter.Type": "ALLOW_ALL"}
        mesh_data["meshes"]["Mesh"]["raw_overrides"] = {"DeletionPolicy": "Retain"}
        mesh_data["virtual_nodes"]["AppNode"]["overrides"] = {
            "Spec.Listeners.0.TLS": {
                "Mode": "STRICT",
                "Certificate": {"ACM": {"CertificateArn": "${GatewayCertificate}"}},
            }
        }
        synthesizer = Synthesizer(Topology.from_dict(mesh_data), settings=settings)
        template = synthesizer.synth()
        mesh = template["Resources"][logical_id(synthesizer, "Mesh")]
        assert mesh["Properties"]["Spec"] == {"EgressFilter": {"Type": "ALLOW_ALL"}}
        assert mesh["DeletionPolicy"] == "Retain"
        node = template["Resources"][logical_id(synthesizer, "AppNode")]
        cert_id = logical_id(synthesizer, "GatewayCertificate")
        assert node["Properties"]["Spec"]["Listeners"][0]["TLS"] == {
            "Mode": "STRICT",
            "Certificate": {"ACM": {"CertificateArn": {"Ref": cert_id}}},
        }

    def test_invalid_port_rule(self, example_path, settings):
        topology = Topology.load(example_path)
        topology.get("WebService").spec.allow_from[0].port = "icmp:8"
        with pytest.raises(SynthesisError) as exc_info:
            Synthesizer(topology, settings=settings).build()
        assert "Invalid port specification" in str(exc_info.value)

    def test_override_through_missing_list_item(self, mesh_data, settings):
        mesh_data["virtual_gateways"]["Gateway"]["overrides"] = {"Spec.Listeners.4.Port": 1}
        synthesizer = Synthesizer(Topology.from_dict(mesh_data), settings=settings)
        with pytest.raises(SynthesisError) as exc_info:
            synthesizer.synth()
        assert "Failed to render Gateway/Resource" in str(exc_info.value)
        assert "index 4 out of range" in str(exc_info.value)


class TestTemplateChecks:
    """Tests for checks run on the locked tree before rendering."""

    def test_duplicate_logical_ids(self, settings):
        """Test ids differing only in punctuation collide after stripping."""
        topology = Topology.from_dict(
            {
                "meshes": {"Mesh": {}},
                "outputs": {
                    "Out-A": {"value": "${Mesh.Arn}"},
                    "OutA": {"value": "${Mesh}"},
                },
            }
        )
        with pytest.raises(SynthesisError) as exc_info:
            Synthesizer(topology, settings=settings).synth()
        assert str(exc_info.value).startswith("Duplicate logical ids")
        assert exc_info.value.errors == ["OutA and Out-A share logical id OutA"]

    def test_reference_outside_stack(self, settings):
        synthesizer = Synthesizer(Topology.from_dict({"stack": "Local"}), settings=settings)
        foreign = CfnResource(Stack("Other"), "Bucket", "AWS::S3::Bucket")
        CfnResource(
            synthesizer.stack, "Policy", "AWS::S3::BucketPolicy", {"Bucket": foreign.ref}
        )
        with pytest.raises(SynthesisError) as exc_info:
            synthesizer.synth()
        assert exc_info.value.errors == ["Policy references Bucket outside the stack"]

    def test_dependency_cycle(self, settings):
        synthesizer = Synthesizer(Topology.from_dict({}), settings=settings)
        a = CfnResource(synthesizer.stack, "A", "AWS::SNS::Topic")
        b = CfnResource(synthesizer.stack, "B", "AWS::SQS::Queue", {"Topic": a.ref})
        a.add_depends_on(b)
        with pytest.raises(SynthesisError) as exc_info:
            synthesizer.synth()
        assert exc_info.value.errors == ["A -> B -> A"]
