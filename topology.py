"""
Declarative model of the VPC traffic mirroring topology.

build() turns a TopologyConfig into an immutable ResourceGraph: a consumer network and a
monitoring network sharing one address block, an inspection appliance behind a gateway load
balancer in the monitoring network, the endpoint service exposing that load balancer and the
consumer-side endpoint connecting to it. Entities reference each other by name; validate()
guarantees that every reference resolves inside the same graph before the graph is returned.

Nothing here talks to a cloud API. Realising the graph is the job of awsclassic.AwsResourceBuilder.
"""

import dataclasses
import ipaddress
from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from graphlib import TopologicalSorter
from typing import Any, ClassVar, Dict, Iterator, List, NamedTuple, Optional, Set, Tuple, Type, TypeVar

import config
from errors import ConfigurationError, InvariantViolationError, UnresolvedReferenceError

CONSUMER = "consumer"
MONITORING = "monitoring"

MACHINE_IMAGES = {
    "amazon-linux-2": "/aws/service/ami-amazon-linux-latest/amzn2-ami-hvm-x86_64-gp2",
    "amazon-linux-2023": "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-x86_64",
}
VOLUME_TYPES = {"gp2", "gp3", "io1", "io2", "st1", "sc1", "standard"}
DEFAULT_ZONE_SUFFIXES = "abcdef"

# AWS accepts subnet masks between /16 and /28
MIN_SUBNET_MASK = 16
MAX_SUBNET_MASK = 28


class ResourceKind(str, Enum):
    NETWORK = "network"
    SUBNET = "subnet"
    SECURITY_POLICY = "security-policy"
    COMPUTE_NODE = "compute-node"
    LOAD_BALANCER = "load-balancer"
    TARGET_GROUP = "target-group"
    LISTENER = "listener"
    ENDPOINT_SERVICE = "endpoint-service"
    ENDPOINT = "endpoint"
    IDENTITY_ROLE = "identity-role"


class SubnetRouting(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    ISOLATED = "isolated"


ROUTING_ALIASES = {
    "public": SubnetRouting.PUBLIC,
    "private": SubnetRouting.PRIVATE,
    "private-routed": SubnetRouting.PRIVATE,
    "private_with_nat": SubnetRouting.PRIVATE,
    "isolated": SubnetRouting.ISOLATED,
    "private_isolated": SubnetRouting.ISOLATED,
}


class Direction(str, Enum):
    INGRESS = "ingress"
    EGRESS = "egress"


class Reference(NamedTuple):
    field: str
    target: str
    kind: ResourceKind


# region Entities
@dataclass(frozen=True)
class Resource:
    name: str

    kind: ClassVar[ResourceKind]

    def references(self) -> Iterator[Reference]:
        return iter(())


@dataclass(frozen=True)
class SubnetSpec:
    role: str
    cidr_mask: int
    routing: SubnetRouting


@dataclass(frozen=True)
class Network(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.NETWORK

    cidr_block: str
    subnets: Tuple[SubnetSpec, ...]
    max_azs: int
    nat_gateways: int
    enable_dns_hostnames: bool = True
    enable_dns_support: bool = True

    def subnet_roles(self) -> Set[str]:
        return {spec.role for spec in self.subnets}


@dataclass(frozen=True)
class Subnet(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.SUBNET

    network: str
    role: str
    routing: SubnetRouting
    availability_zone: str
    cidr_block: str
    nat_gateway: bool = False
    egress_subnet: Optional[str] = None

    def references(self) -> Iterator[Reference]:
        yield Reference("network", self.network, ResourceKind.NETWORK)
        if self.egress_subnet is not None:
            yield Reference("egress_subnet", self.egress_subnet, ResourceKind.SUBNET)


@dataclass(frozen=True)
class SecurityRule:
    direction: Direction
    protocol: str
    from_port: int
    to_port: int
    cidr: str


@dataclass(frozen=True)
class SecurityPolicy(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.SECURITY_POLICY

    network: str
    rules: Tuple[SecurityRule, ...]
    allow_all_outbound: bool = True
    description: str = ""

    def references(self) -> Iterator[Reference]:
        yield Reference("network", self.network, ResourceKind.NETWORK)


@dataclass(frozen=True)
class BlockVolume:
    device_name: str
    size_gib: int
    volume_type: str


@dataclass(frozen=True)
class IdentityRole(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.IDENTITY_ROLE

    trust_principal: str
    managed_policies: Tuple[str, ...]


@dataclass(frozen=True)
class ComputeNode(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.COMPUTE_NODE

    machine_image: str
    instance_type: str
    network: str
    subnet_role: str
    subnet: str
    volumes: Tuple[BlockVolume, ...]
    role: Optional[str]
    security_policy: Optional[str] = None
    source_dest_check: bool = True
    propagate_tags_to_volumes: bool = True

    def references(self) -> Iterator[Reference]:
        yield Reference("network", self.network, ResourceKind.NETWORK)
        yield Reference("subnet", self.subnet, ResourceKind.SUBNET)
        if self.role is not None:
            yield Reference("role", self.role, ResourceKind.IDENTITY_ROLE)
        if self.security_policy is not None:
            yield Reference("security_policy", self.security_policy, ResourceKind.SECURITY_POLICY)


@dataclass(frozen=True)
class LoadBalancer(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.LOAD_BALANCER

    network: str
    subnet_role: str
    subnets: Tuple[str, ...]
    ip_address_type: str = "ipv4"
    load_balancer_type: str = "gateway"

    def references(self) -> Iterator[Reference]:
        yield Reference("network", self.network, ResourceKind.NETWORK)
        for subnet in self.subnets:
            yield Reference("subnets", subnet, ResourceKind.SUBNET)


@dataclass(frozen=True)
class HealthCheck:
    port: int
    protocol: str


@dataclass(frozen=True)
class TargetGroup(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.TARGET_GROUP

    network: str
    port: int
    protocol: str
    health_check: HealthCheck
    targets: Tuple[str, ...]
    target_type: str = "instance"

    def references(self) -> Iterator[Reference]:
        yield Reference("network", self.network, ResourceKind.NETWORK)
        for target in self.targets:
            yield Reference("targets", target, ResourceKind.COMPUTE_NODE)


@dataclass(frozen=True)
class Listener(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.LISTENER

    load_balancer: str
    target_group: str

    def references(self) -> Iterator[Reference]:
        yield Reference("load_balancer", self.load_balancer, ResourceKind.LOAD_BALANCER)
        yield Reference("target_group", self.target_group, ResourceKind.TARGET_GROUP)


@dataclass(frozen=True)
class EndpointService(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.ENDPOINT_SERVICE

    load_balancers: Tuple[str, ...]
    acceptance_required: bool = False

    def references(self) -> Iterator[Reference]:
        for load_balancer in self.load_balancers:
            yield Reference("load_balancers", load_balancer, ResourceKind.LOAD_BALANCER)


@dataclass(frozen=True)
class Endpoint(Resource):
    kind: ClassVar[ResourceKind] = ResourceKind.ENDPOINT

    network: str
    subnet_role: str
    subnets: Tuple[str, ...]
    service: str
    endpoint_type: str = "GatewayLoadBalancer"

    def references(self) -> Iterator[Reference]:
        yield Reference("network", self.network, ResourceKind.NETWORK)
        for subnet in self.subnets:
            yield Reference("subnets", subnet, ResourceKind.SUBNET)
        yield Reference("service", self.service, ResourceKind.ENDPOINT_SERVICE)
#endregion

R = TypeVar("R", bound=Resource)


@dataclass(frozen=True)
class ResourceGraph:
    """The complete, validated set of entities handed to the provisioning engine."""

    resources: Tuple[Resource, ...]

    @cached_property
    def _index(self) -> Dict[str, Resource]:
        return {resource.name: resource for resource in self.resources}

    def __iter__(self) -> Iterator[Resource]:
        return iter(self.resources)

    def __len__(self) -> int:
        return len(self.resources)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def get(self, name: str) -> Resource:
        return self._index[name]

    def of_kind(self, cls: Type[R]) -> List[R]:
        return [resource for resource in self.resources if isinstance(resource, cls)]

    def select_subnets(self, network: str, role: str) -> List[Subnet]:
        return [s for s in self.of_kind(Subnet) if s.network == network and s.role == role]

    def gateway_networks(self) -> List[Network]:
        return [network for network in self.of_kind(Network) if network.nat_gateways > 0]

    def dependencies(self) -> Dict[str, Set[str]]:
        return {resource.name: {ref.target for ref in resource.references()} for resource in self.resources}

    def topological_order(self) -> List[Resource]:
        order = TopologicalSorter(self.dependencies()).static_order()
        return [self._index[name] for name in order]

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            resource.name: {"kind": resource.kind.value, **dataclasses.asdict(resource)}
            for resource in self.resources
        }


# region Validation
def _check_placement(graph: ResourceGraph, owner: str, network_name: str, subnet_role: str, subnets: Tuple[str, ...]):
    network = graph.get(network_name)
    if subnet_role not in network.subnet_roles():
        raise InvariantViolationError(
            f"Subnet selector '{subnet_role}' of '{owner}' is not a partition of network '{network_name}'"
        )
    for name in subnets:
        subnet = graph.get(name)
        if subnet.network != network_name or subnet.role != subnet_role:
            raise InvariantViolationError(
                f"'{owner}' is placed in subnet '{name}', which is not a '{subnet_role}' subnet of '{network_name}'"
            )


def validate(graph: ResourceGraph) -> None:
    """Raise on the first dangling reference or violated invariant in the graph."""
    seen: Set[str] = set()
    for resource in graph:
        if resource.name in seen:
            raise InvariantViolationError(f"Resource name '{resource.name}' is declared more than once")
        seen.add(resource.name)

    for resource in graph:
        for ref in resource.references():
            if ref.target not in graph:
                raise UnresolvedReferenceError(resource.name, ref.field, ref.target)
            target = graph.get(ref.target)
            if target.kind is not ref.kind:
                raise UnresolvedReferenceError(
                    resource.name, ref.field, ref.target,
                    reason=f"is a {target.kind.value}, not a {ref.kind.value}",
                )

    for subnet in graph.of_kind(Subnet):
        if subnet.role not in graph.get(subnet.network).subnet_roles():
            raise InvariantViolationError(f"Subnet '{subnet.name}' is not a partition of '{subnet.network}'")
        if subnet.routing is SubnetRouting.PRIVATE:
            egress = graph.get(subnet.egress_subnet) if subnet.egress_subnet else None
            if egress is None or not egress.nat_gateway or egress.network != subnet.network:
                raise InvariantViolationError(
                    f"Private subnet '{subnet.name}' has no outbound gateway in '{subnet.network}'"
                )

    for node in graph.of_kind(ComputeNode):
        if node.role is None:
            raise InvariantViolationError(f"Compute node '{node.name}' requires an identity role")
        _check_placement(graph, node.name, node.network, node.subnet_role, (node.subnet,))
        if node.security_policy is not None and graph.get(node.security_policy).network != node.network:
            raise InvariantViolationError(
                f"Security policy '{node.security_policy}' of '{node.name}' belongs to another network"
            )

    for load_balancer in graph.of_kind(LoadBalancer):
        if not load_balancer.subnets:
            raise InvariantViolationError(f"Load balancer '{load_balancer.name}' has no subnets")
        _check_placement(graph, load_balancer.name, load_balancer.network, load_balancer.subnet_role, load_balancer.subnets)

    for endpoint in graph.of_kind(Endpoint):
        # gateway load balancer endpoints live in exactly one subnet
        if len(endpoint.subnets) != 1:
            raise InvariantViolationError(f"Endpoint '{endpoint.name}' must be placed in exactly one subnet")
        _check_placement(graph, endpoint.name, endpoint.network, endpoint.subnet_role, endpoint.subnets)

    for target_group in graph.of_kind(TargetGroup):
        if target_group.health_check.port == target_group.port:
            raise ConfigurationError(
                f"Target group '{target_group.name}' health check port must differ from forwarding port {target_group.port}"
            )
        for target in target_group.targets:
            if graph.get(target).network != target_group.network:
                raise InvariantViolationError(
                    f"Target '{target}' of '{target_group.name}' is not in network '{target_group.network}'"
                )

    for listener in graph.of_kind(Listener):
        load_balancer = graph.get(listener.load_balancer)
        target_group = graph.get(listener.target_group)
        if load_balancer.network != target_group.network:
            raise InvariantViolationError(
                f"Listener '{listener.name}' forwards across networks ({load_balancer.network} -> {target_group.network})"
            )
#endregion


# region Construction
def network_name(key: str) -> str:
    return f"{key}-vpc"


def availability_zones(configuration: config.TopologyConfig, max_azs: int) -> List[str]:
    if max_azs < 1:
        raise ConfigurationError("max_azs must be at least 1")
    zones = configuration.availability_zones or [f"{configuration.region}{s}" for s in DEFAULT_ZONE_SUFFIXES]
    if len(zones) < max_azs:
        raise ConfigurationError(f"max_azs is {max_azs} but only {len(zones)} availability zones are available")
    return list(zones[:max_azs])


def parse_routing(value: str) -> SubnetRouting:
    routing = ROUTING_ALIASES.get(str(value).strip().lower())
    if routing is None:
        raise ConfigurationError(f"Unknown subnet routing class: {value}")
    return routing


def declare_network(key: str, network_cfg: config.NetworkConfig, zones: List[str]) -> Tuple[Network, List[Subnet]]:
    name = network_name(key)
    try:
        block = ipaddress.ip_network(network_cfg.cidr)
    except ValueError as e:
        raise ConfigurationError(f"Invalid address block for '{name}': {e}") from e
    if block.version != 4:
        raise ConfigurationError(f"Address block of '{name}' must be IPv4")

    specs = []
    for subnet_cfg in network_cfg.subnets:
        if not max(block.prefixlen, MIN_SUBNET_MASK) <= subnet_cfg.cidr_mask <= MAX_SUBNET_MASK:
            raise ConfigurationError(f"Invalid cidr_mask /{subnet_cfg.cidr_mask} for subnet '{subnet_cfg.name}' of '{name}'")
        specs.append(SubnetSpec(subnet_cfg.name, subnet_cfg.cidr_mask, parse_routing(subnet_cfg.routing)))

    if not specs:
        raise ConfigurationError(f"Network '{name}' declares no subnets")
    if len({spec.role for spec in specs}) != len(specs):
        raise ConfigurationError(f"Network '{name}' declares a subnet name more than once")

    routings = {spec.routing for spec in specs}
    if network_cfg.nat_gateways < 0 or network_cfg.nat_gateways > len(zones):
        raise ConfigurationError(f"Network '{name}' can have between 0 and {len(zones)} outbound gateways")
    if network_cfg.nat_gateways and SubnetRouting.PUBLIC not in routings:
        raise ConfigurationError(f"Outbound gateways of '{name}' need a public subnet")
    if SubnetRouting.PRIVATE in routings and not network_cfg.nat_gateways:
        raise ConfigurationError(f"Private subnets of '{name}' need at least one outbound gateway")

    # carve the block sequentially: every partition across all zones, aligned to its mask
    cursor = int(block.network_address)
    end = int(block.broadcast_address) + 1
    allocations = []
    for spec in specs:
        size = 2 ** (32 - spec.cidr_mask)
        for index, zone in enumerate(zones):
            cursor = -(-cursor // size) * size
            if cursor + size > end:
                raise InvariantViolationError(f"Subnet partitions of '{name}' do not fit in {block}")
            cidr = str(ipaddress.IPv4Network((cursor, spec.cidr_mask)))
            allocations.append((spec, index, zone, cidr))
            cursor += size

    first_public = next(spec for spec in specs if spec.routing is SubnetRouting.PUBLIC) if network_cfg.nat_gateways else None
    nat_hosts = {
        zone: f"{name}-{first_public.role.lower()}-{index + 1}"
        for index, zone in enumerate(zones[:network_cfg.nat_gateways])
    }
    default_egress = next(iter(nat_hosts.values()), None)

    subnets = []
    for spec, index, zone, cidr in allocations:
        subnet_name = f"{name}-{spec.role.lower()}-{index + 1}"
        egress = None
        if spec.routing is SubnetRouting.PRIVATE:
            egress = nat_hosts.get(zone, default_egress)
        subnets.append(Subnet(
            name=subnet_name,
            network=name,
            role=spec.role,
            routing=spec.routing,
            availability_zone=zone,
            cidr_block=cidr,
            nat_gateway=nat_hosts.get(zone) == subnet_name,
            egress_subnet=egress,
        ))

    network = Network(
        name=name,
        cidr_block=str(block),
        subnets=tuple(specs),
        max_azs=network_cfg.max_azs,
        nat_gateways=network_cfg.nat_gateways,
        enable_dns_hostnames=network_cfg.enable_dns_hostnames,
        enable_dns_support=network_cfg.enable_dns_support,
    )
    return network, subnets


def _placement(subnets: List[Subnet], network: Network, role: str, owner: str) -> List[str]:
    placement = [s.name for s in subnets if s.network == network.name and s.role == role]
    if not placement:
        raise InvariantViolationError(
            f"Subnet selector '{role}' of '{owner}' does not match any partition of '{network.name}'"
        )
    return placement


def declare_compute_node(
    key: str,
    instance_cfg: config.InstanceConfig,
    network: Network,
    subnets: List[Subnet],
    security_policy: Optional[str] = None,
    source_dest_check: bool = True,
) -> ComputeNode:
    name = f"{key}-instance"
    if instance_cfg.machine_image not in MACHINE_IMAGES:
        raise ConfigurationError(f"Unknown machine image '{instance_cfg.machine_image}' for '{name}'")

    volumes = []
    for volume in instance_cfg.volumes:
        if volume.size <= 0 or volume.type not in VOLUME_TYPES:
            raise ConfigurationError(f"Invalid volume {volume.device_name} ({volume.size} GiB {volume.type}) for '{name}'")
        volumes.append(BlockVolume(volume.device_name, volume.size, volume.type))

    return ComputeNode(
        name=name,
        machine_image=instance_cfg.machine_image,
        instance_type=instance_cfg.instance_type,
        network=network.name,
        subnet_role=instance_cfg.subnet,
        subnet=_placement(subnets, network, instance_cfg.subnet, name)[0],
        volumes=tuple(volumes),
        role=instance_cfg.role,
        security_policy=security_policy,
        source_dest_check=source_dest_check,
        propagate_tags_to_volumes=instance_cfg.propagate_tags_to_volumes,
    )


def _check_port(value: int, what: str) -> int:
    if not 1 <= value <= 65535:
        raise ConfigurationError(f"{what} {value} is not a valid port")
    return value


def build(configuration: config.TopologyConfig) -> ResourceGraph:
    """Declare every entity of the traffic mirroring topology and validate the result.

    Raises:
        ConfigurationError: missing or inconsistent configuration input.
        UnresolvedReferenceError: an entity references something not declared in this build.
        InvariantViolationError: the declared entities break a topology invariant.
    """
    if not configuration.region:
        raise ConfigurationError("Missing required configuration key: region")
    for key in (CONSUMER, MONITORING):
        if key not in configuration.networks:
            raise ConfigurationError(f"Missing network configuration: {key}")
        if key not in configuration.instances:
            raise ConfigurationError(f"Missing instance configuration: {key}")
    for section, keys in (("networks", configuration.networks), ("instances", configuration.instances)):
        unknown = sorted(set(keys) - {CONSUMER, MONITORING})
        if unknown:
            raise ConfigurationError(f"Unknown {section} configuration: {', '.join(unknown)}")

    resources: List[Resource] = [
        IdentityRole(name=key, trust_principal=role.trust_principal, managed_policies=tuple(role.managed_policies))
        for key, role in configuration.roles.items()
    ]

    networks: Dict[str, Network] = {}
    subnets: List[Subnet] = []
    for key in (CONSUMER, MONITORING):
        network_cfg = configuration.networks[key]
        network, network_subnets = declare_network(key, network_cfg, availability_zones(configuration, network_cfg.max_azs))
        networks[key] = network
        subnets.extend(network_subnets)
        resources.append(network)
        resources.extend(network_subnets)

    consumer, monitoring = networks[CONSUMER], networks[MONITORING]

    # no inbound rules; outbound open
    consumer_sg = SecurityPolicy(
        name="consumer-sg",
        network=consumer.name,
        rules=(),
        allow_all_outbound=True,
        description="Consumer EC2 Instance SG",
    )

    # all traffic, but only from inside the monitoring network
    monitoring_sg = SecurityPolicy(
        name="monitoring-sg",
        network=monitoring.name,
        rules=(SecurityRule(Direction.INGRESS, "-1", 0, 0, monitoring.cidr_block),),
        allow_all_outbound=True,
        description="Monitoring EC2 Instance SG",
    )
    resources.extend([consumer_sg, monitoring_sg])

    consumer_node = declare_compute_node(
        CONSUMER, configuration.instances[CONSUMER], consumer, subnets, security_policy=consumer_sg.name,
    )
    monitoring_node = declare_compute_node(
        MONITORING,
        configuration.instances[MONITORING],
        monitoring,
        subnets,
        security_policy=monitoring_sg.name,
        source_dest_check=False,
    )
    resources.extend([consumer_node, monitoring_node])

    gwlb_cfg = configuration.gateway_load_balancer
    load_balancer = LoadBalancer(
        name="gwlb",
        network=monitoring.name,
        subnet_role=gwlb_cfg.subnet,
        subnets=tuple(_placement(subnets, monitoring, gwlb_cfg.subnet, "gwlb")),
        ip_address_type=gwlb_cfg.ip_address_type,
        load_balancer_type="gateway",
    )
    health_check_port = _check_port(gwlb_cfg.health_check.port, "Health check port")
    forwarding_port = _check_port(gwlb_cfg.port, "Forwarding port")
    if health_check_port == forwarding_port:
        raise ConfigurationError(
            f"Health check port and forwarding port must differ (both are {forwarding_port})"
        )
    target_group = TargetGroup(
        name="gwlb-target-group",
        network=monitoring.name,
        port=forwarding_port,
        protocol=gwlb_cfg.protocol,
        health_check=HealthCheck(health_check_port, gwlb_cfg.health_check.protocol),
        targets=(monitoring_node.name,),
        target_type="instance",
    )
    listener = Listener(name="gwlb-listener", load_balancer=load_balancer.name, target_group=target_group.name)
    endpoint_service = EndpointService(
        name="gwlb-endpoint-service",
        load_balancers=(load_balancer.name,),
        acceptance_required=configuration.endpoint_service.acceptance_required,
    )
    resources.extend([load_balancer, target_group, listener, endpoint_service])

    endpoint_cfg = configuration.consumer_endpoint
    if endpoint_cfg.enabled:
        resources.append(Endpoint(
            name="consumer-gwlb-endpoint",
            network=consumer.name,
            subnet_role=endpoint_cfg.subnet,
            subnets=(_placement(subnets, consumer, endpoint_cfg.subnet, "consumer-gwlb-endpoint")[0],),
            service=endpoint_service.name,
            endpoint_type="GatewayLoadBalancer",
        ))

    graph = ResourceGraph(tuple(resources))
    validate(graph)
    return graph
#endregion
