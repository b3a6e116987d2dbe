"""Application load balancer in front of ECS services."""

from __future__ import annotations

from typing import Any

from meshsynth.constructs.base import IntentConstruct
from meshsynth.constructs.ec2 import Connectable, Network, Port, SecurityGroup
from meshsynth.constructs.ecs import Service
from meshsynth.constructs.mesh import Certificate
from meshsynth.core.construct import CfnResource, Construct
from meshsynth.core.schema import Kind, LoadBalancerListener, LoadBalancerSpec, SubnetType


class LoadBalancer(Connectable, IntentConstruct):
    """
    Application load balancer.

    Every listener forwards to its own IP target group; targets are
    container ports of awsvpc services, which in turn admit traffic from
    the load balancer's security group.
    """

    kind = Kind.LOAD_BALANCER
    spec: LoadBalancerSpec

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        spec = self.spec
        network = self.dependency(spec.network, Kind.NETWORK, Network)
        self.network = network

        self.security_group = SecurityGroup(
            self,
            "SecurityGroup",
            network.vpc.ref,
            f"Automatically created Security Group for ELB {self.unique_name()}",
        )
        subnet_type = SubnetType.PUBLIC if spec.internet_facing else SubnetType.PRIVATE
        self.resource = CfnResource(
            self,
            "Resource",
            "AWS::ElasticLoadBalancingV2::LoadBalancer",
            {
                "LoadBalancerAttributes": [
                    {"Key": "deletion_protection.enabled", "Value": "false"}
                ],
                "Scheme": "internet-facing" if spec.internet_facing else "internal",
                "SecurityGroups": [self.security_group.group_id],
                "Subnets": network.subnet_ids(subnet_type),
                "Type": "application",
            },
        )
        if spec.internet_facing:
            for dependency in network.internet_dependencies():
                self.resource.add_depends_on(dependency)

        self.listeners: dict[str, CfnResource] = {}
        for listener in spec.listeners:
            self.listeners[listener.id] = self._add_listener(listener)
        self.connections_from(spec.allow_from)

    def _certificate_arn(self, id: str) -> Any:
        return self.dependency(id, Kind.CERTIFICATE, Certificate).arn

    def _add_listener(self, listener: LoadBalancerListener) -> CfnResource:
        port = listener.effective_port
        scope = Construct(self, listener.id)

        health_check: dict[str, Any] = {}
        if listener.health_check_path:
            health_check["HealthCheckPath"] = listener.health_check_path
        target_group = CfnResource(
            scope,
            "TargetGroup",
            "AWS::ElasticLoadBalancingV2::TargetGroup",
            {
                **health_check,
                "Port": self._target_port(listener),
                "Protocol": listener.target_protocol,
                "TargetGroupAttributes": [
                    {"Key": "stickiness.enabled", "Value": "false"}
                ],
                "TargetType": "ip",
                "VpcId": self.network.vpc.ref,
            },
        )

        props: dict[str, Any] = {
            "DefaultActions": [{"TargetGroupArn": target_group.ref, "Type": "forward"}],
            "LoadBalancerArn": self.resource.ref,
            "Port": port,
            "Protocol": listener.protocol,
        }
        if listener.certificates:
            props["Certificates"] = [
                {"CertificateArn": self._certificate_arn(listener.certificates[0])}
            ]
        resource = CfnResource(scope, "Resource", "AWS::ElasticLoadBalancingV2::Listener", props)

        if len(listener.certificates) > 1:
            CfnResource(
                scope,
                "ExtraCertificates",
                "AWS::ElasticLoadBalancingV2::ListenerCertificate",
                {
                    "Certificates": [
                        {"CertificateArn": self._certificate_arn(id)}
                        for id in listener.certificates[1:]
                    ],
                    "ListenerArn": resource.ref,
                },
            )

        if listener.open:
            self.security_group.allow_from_anywhere(Port.tcp(port))

        for target in listener.targets:
            service = self.dependency(target.service, Kind.SERVICE, Service)
            container_port = service.task_definition.container_port(target.container, target.port)
            service.attach_target_group(target_group, resource, target.container, container_port)
            if service.security_group is not None:
                service.security_group.allow_from(self.security_group, Port.tcp(container_port))
        return resource

    def _target_port(self, listener: LoadBalancerListener) -> int:
        first = listener.targets[0]
        service = self.dependency(first.service, Kind.SERVICE, Service)
        return service.task_definition.container_port(first.container, first.port)

    def _attribute(self, name: str) -> Any:
        if name == "DNSName":
            return self.resource.get_att("DNSName")
        return self.resource.ref
