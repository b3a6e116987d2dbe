"""Networking: VPC, security groups, connections and the bastion host."""

from __future__ import annotations

import ipaddress
import math
import re
from dataclasses import dataclass
from typing import Any, cast

from meshsynth.constructs.base import IntentConstruct, ssm_image_parameter
from meshsynth.constructs.iam import InstanceProfile, Role
from meshsynth.core.construct import CfnResource, Construct, ConstructError
from meshsynth.core.schema import BastionSpec, Kind, NetworkSpec, PortRule, SubnetType
from meshsynth.core.tokens import Base64, GetAZs, Select

ALL_TRAFFIC_CIDR = "0.0.0.0/0"

AMAZON_LINUX_2_IMAGE = "/aws/service/ami-amazon-linux-latest/amzn2-ami-hvm-x86_64-gp2"

_PORT_SPEC = re.compile(r"^(tcp|udp):(\d+)(?:-(\d+))?$")


@dataclass(frozen=True)
class Port:
    """A protocol and port range for security group rules."""

    protocol: str
    from_port: int | None = None
    to_port: int | None = None

    @property
    def label(self) -> str:
        if self.protocol == "-1":
            return "ALL TRAFFIC"
        if self.from_port == self.to_port:
            span = str(self.from_port)
        else:
            span = f"{self.from_port}-{self.to_port}"
        return span if self.protocol == "tcp" else f"{self.protocol.upper()} {span}"

    def rule_properties(self) -> dict[str, Any]:
        props: dict[str, Any] = {"IpProtocol": self.protocol}
        if self.protocol != "-1":
            props["FromPort"] = self.from_port
            props["ToPort"] = self.to_port
        return props

    @classmethod
    def tcp(cls, port: int) -> Port:
        return cls("tcp", port, port)

    @classmethod
    def all_traffic(cls) -> Port:
        return cls("-1")


def parse_port(value: str | int) -> Port:
    """
    Parse a port rule.

    Accepts ``all``, an int (tcp), ``tcp:N``, ``tcp:N-M``, ``udp:N`` and
    ``udp:N-M``.
    """
    if isinstance(value, int):
        return Port.tcp(value)
    text = value.strip().lower()
    if text == "all":
        return Port.all_traffic()
    if text.isdigit():
        return Port.tcp(int(text))
    match = _PORT_SPEC.match(text)
    if not match:
        raise ConstructError(f"Invalid port specification: {value!r}")
    protocol, start, end = match.group(1), int(match.group(2)), match.group(3)
    stop = int(end) if end else start
    if stop < start or stop > 65535:
        raise ConstructError(f"Invalid port range: {value!r}")
    return Port(protocol, start, stop)


class SecurityGroup(Construct):
    """A security group allowing all outbound traffic."""

    def __init__(self, scope: Construct, id: str, vpc_id: Any, description: str) -> None:
        super().__init__(scope, id)
        self.ingress: list[dict[str, Any]] = []
        self.resource = CfnResource(
            self,
            "Resource",
            "AWS::EC2::SecurityGroup",
            {
                "GroupDescription": description,
                "SecurityGroupEgress": [
                    {
                        "CidrIp": ALL_TRAFFIC_CIDR,
                        "Description": "Allow all outbound traffic by default",
                        "IpProtocol": "-1",
                    }
                ],
                "VpcId": vpc_id,
            },
        )

    @property
    def group_id(self) -> Any:
        return self.resource.get_att("GroupId")

    def allow_from_anywhere(self, port: Port) -> None:
        """Inline ingress rule from any IPv4 address."""
        rule = {"CidrIp": ALL_TRAFFIC_CIDR, "Description": f"Allow from anyone on port {port.label}"}
        rule.update(port.rule_properties())
        if rule not in self.ingress:
            self.ingress.append(rule)
        self.resource.properties["SecurityGroupIngress"] = self.ingress

    def allow_from(self, peer: SecurityGroup, port: Port) -> CfnResource:
        """Standalone ingress rule from another security group."""
        id = f"from {peer.resource.logical_id}:{port.label}"
        existing = self.find_child(id)
        if isinstance(existing, CfnResource):
            return existing
        props: dict[str, Any] = {
            "Description": f"from {peer.resource.logical_id}:{port.label}",
            "GroupId": self.group_id,
            "SourceSecurityGroupId": peer.group_id,
        }
        props.update(port.rule_properties())
        return CfnResource(self, id, "AWS::EC2::SecurityGroupIngress", props)


class Connectable:
    """Mixin for intent constructs owning a security group."""

    security_group: SecurityGroup | None = None

    def connections_from(self, rules: list[PortRule]) -> None:
        owner = cast(IntentConstruct, self)
        for rule in rules:
            source = owner.resolver.construct(rule.source)
            peer = getattr(source, "security_group", None)
            if peer is None or self.security_group is None:
                raise ConstructError(f"{owner.id}: {rule.source} has no security group to allow from")
            self.security_group.allow_from(peer, parse_port(rule.port))


@dataclass
class Subnet:
    group: str
    type: SubnetType
    index: int
    cidr: str
    scope: Construct
    resource: CfnResource
    route_table: CfnResource
    default_route: CfnResource | None = None


def allocate_subnets(spec: NetworkSpec) -> list[tuple[str, SubnetType, int, str]]:
    """
    Carve the VPC range into one subnet per group and availability zone.

    Groups without ``cidr_mask`` share the space left over by groups that
    set one, using the largest prefix that fits them all.
    """
    network = ipaddress.ip_network(spec.cidr)
    azs = spec.max_azs
    masked = [g for g in spec.subnets if g.cidr_mask is not None]
    unmasked = [g for g in spec.subnets if g.cidr_mask is None]

    reserved = sum(2 ** (32 - g.cidr_mask) * azs for g in masked)  # type: ignore[operator]
    remaining = network.num_addresses - reserved
    default_prefix: int | None = None
    if unmasked:
        if remaining <= 0:
            raise ConstructError(f"No address space left in {spec.cidr} for {unmasked[0].name}")
        per_subnet = remaining // (len(unmasked) * azs)
        if per_subnet < 16:
            raise ConstructError(f"{spec.cidr} is too small for {len(unmasked) * azs} subnets")
        default_prefix = 32 - int(math.floor(math.log2(per_subnet)))
        default_prefix = max(default_prefix, network.prefixlen)

    allocated: list[tuple[str, SubnetType, int, str]] = []
    cursor = int(network.network_address)
    end = int(network.broadcast_address) + 1
    for group in spec.subnets:
        prefix = cast(int, group.cidr_mask if group.cidr_mask is not None else default_prefix)
        if prefix < network.prefixlen:
            raise ConstructError(f"Subnet mask /{prefix} is larger than the VPC {spec.cidr}")
        size = 2 ** (32 - prefix)
        for index in range(azs):
            # Align to the subnet size.
            cursor = (cursor + size - 1) // size * size
            if cursor + size > end:
                raise ConstructError(f"Subnets of group {group.name} do not fit in {spec.cidr}")
            cidr = f"{ipaddress.ip_address(cursor)}/{prefix}"
            allocated.append((group.name, group.type, index, cidr))
            cursor += size
    return allocated


class Network(IntentConstruct):
    """VPC with public/private subnets, internet gateway and NAT gateways."""

    kind = Kind.NETWORK
    spec: NetworkSpec

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        spec = self.spec
        self.vpc = CfnResource(
            self,
            "Resource",
            "AWS::EC2::VPC",
            {
                "CidrBlock": spec.cidr,
                "EnableDnsHostnames": True,
                "EnableDnsSupport": True,
                "InstanceTenancy": "default",
                "Tags": self.name_tag(),
            },
        )
        self.subnets: list[Subnet] = []

        has_public = any(g.type == SubnetType.PUBLIC for g in spec.subnets)
        has_private = any(g.type == SubnetType.PRIVATE for g in spec.subnets)
        if spec.nat_gateways is not None:
            nat_count = min(spec.nat_gateways, spec.max_azs)
        else:
            nat_count = spec.max_azs if has_public and has_private else 0
        if nat_count and not has_public:
            raise ConstructError(f"{self.id}: NAT gateways need a public subnet group")

        self.gateway_attachment: CfnResource | None = None
        igw: CfnResource | None = None
        if has_public:
            igw = CfnResource(self, "IGW", "AWS::EC2::InternetGateway", {"Tags": self.name_tag()})
            self.gateway_attachment = CfnResource(
                self,
                "VPCGW",
                "AWS::EC2::VPCGatewayAttachment",
                {"VpcId": self.vpc.ref, "InternetGatewayId": igw.ref},
            )

        nat_gateways: list[CfnResource] = []
        for group, subnet_type, index, cidr in allocate_subnets(spec):
            subnet = self._add_subnet(group, subnet_type, index, cidr)
            public = subnet_type == SubnetType.PUBLIC
            if public and igw is not None and self.gateway_attachment is not None:
                route = CfnResource(
                    subnet.scope,
                    "DefaultRoute",
                    "AWS::EC2::Route",
                    {
                        "RouteTableId": subnet.route_table.ref,
                        "DestinationCidrBlock": ALL_TRAFFIC_CIDR,
                        "GatewayId": igw.ref,
                    },
                )
                route.add_depends_on(self.gateway_attachment)
                subnet.default_route = route
                if len(nat_gateways) < nat_count:
                    nat_gateways.append(self._add_nat_gateway(subnet))

        for subnet in self.subnets:
            if subnet.type == SubnetType.PRIVATE and nat_gateways:
                nat = nat_gateways[min(subnet.index, len(nat_gateways) - 1)]
                subnet.default_route = CfnResource(
                    subnet.scope,
                    "DefaultRoute",
                    "AWS::EC2::Route",
                    {
                        "RouteTableId": subnet.route_table.ref,
                        "DestinationCidrBlock": ALL_TRAFFIC_CIDR,
                        "NatGatewayId": nat.ref,
                    },
                )

    def _add_subnet(self, group: str, subnet_type: SubnetType, index: int, cidr: str) -> Subnet:
        scope = Construct(self, f"{group}Subnet{index + 1}")
        tags = [
            {"Key": "Name", "Value": f"{self.stack.id}/{scope.path}"},
            {"Key": "subnet-name", "Value": group},
            {"Key": "subnet-type", "Value": subnet_type.value.capitalize()},
        ]
        resource = CfnResource(
            scope,
            "Subnet",
            "AWS::EC2::Subnet",
            {
                "CidrBlock": cidr,
                "VpcId": self.vpc.ref,
                "AvailabilityZone": self.availability_zone(index),
                "MapPublicIpOnLaunch": subnet_type == SubnetType.PUBLIC,
                "Tags": tags,
            },
        )
        route_table = CfnResource(
            scope,
            "RouteTable",
            "AWS::EC2::RouteTable",
            {"VpcId": self.vpc.ref, "Tags": [tags[0]]},
        )
        CfnResource(
            scope,
            "RouteTableAssociation",
            "AWS::EC2::SubnetRouteTableAssociation",
            {"RouteTableId": route_table.ref, "SubnetId": resource.ref},
        )
        subnet = Subnet(group, subnet_type, index, cidr, scope, resource, route_table)
        self.subnets.append(subnet)
        return subnet

    def _add_nat_gateway(self, subnet: Subnet) -> CfnResource:
        scope = subnet.scope
        eip = CfnResource(
            scope,
            "EIP",
            "AWS::EC2::EIP",
            {"Domain": "vpc", "Tags": [{"Key": "Name", "Value": f"{self.stack.id}/{scope.path}"}]},
        )
        return CfnResource(
            scope,
            "NATGateway",
            "AWS::EC2::NatGateway",
            {
                "SubnetId": subnet.resource.ref,
                "AllocationId": eip.get_att("AllocationId"),
                "Tags": [{"Key": "Name", "Value": f"{self.stack.id}/{scope.path}"}],
            },
        )

    def availability_zone(self, index: int) -> Any:
        return Select(index, GetAZs(""))

    def select_subnets(self, subnet_type: SubnetType) -> list[Subnet]:
        """Subnets of a type; private selection falls back to public."""
        chosen = [s for s in self.subnets if s.type == subnet_type]
        if not chosen and subnet_type == SubnetType.PRIVATE:
            chosen = [s for s in self.subnets if s.type == SubnetType.PUBLIC]
        if not chosen:
            raise ConstructError(f"{self.id} has no {subnet_type.value} subnets")
        return chosen

    def subnet_ids(self, subnet_type: SubnetType) -> list[Any]:
        return [s.resource.ref for s in self.select_subnets(subnet_type)]

    def internet_dependencies(self) -> list[CfnResource]:
        """Resources that must exist before anything internet-facing works."""
        return [
            s.default_route
            for s in self.subnets
            if s.type == SubnetType.PUBLIC and s.default_route is not None
        ]

    def _attribute(self, name: str) -> Any:
        if name == "CidrBlock":
            return self.spec.cidr
        return self.vpc.ref


class Bastion(Connectable, IntentConstruct):
    """A small instance reachable through Session Manager."""

    kind = Kind.BASTION
    spec: BastionSpec

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        spec = self.spec
        network = self.dependency(spec.network, Kind.NETWORK, Network)

        self.security_group = SecurityGroup(
            self, "SecurityGroup", network.vpc.ref, f"{self.stack.id}/{self.path}/SecurityGroup"
        )
        role = Role(self, "InstanceRole", "ec2.amazonaws.com")
        role.add_managed_policy("AmazonSSMManagedInstanceCore")
        profile = InstanceProfile(self, "InstanceProfile", role)
        image = ssm_image_parameter(self.stack, AMAZON_LINUX_2_IMAGE)

        subnet = network.select_subnets(spec.subnets)[0]
        self.instance = CfnResource(
            self,
            "Resource",
            "AWS::EC2::Instance",
            {
                "AvailabilityZone": network.availability_zone(subnet.index),
                "IamInstanceProfile": profile.resource.ref,
                "ImageId": image.ref,
                "InstanceType": spec.instance_type,
                "SecurityGroupIds": [self.security_group.group_id],
                "SubnetId": subnet.resource.ref,
                "Tags": self.name_tag(),
                "UserData": Base64("#!/bin/bash"),
            },
        )
        self.instance.add_depends_on(role.resource)
        self.connections_from(spec.allow_from)

    def _attribute(self, name: str) -> Any:
        if name == "PrivateIp":
            return self.instance.get_att("PrivateIp")
        return self.instance.ref
