"""
This module defines the data structures for the traffic mirroring topology configuration.
The dataclasses mirror the layout of config.yaml; parse_config turns the raw YAML mapping
into them and fills in the defaults of the reference topology.
"""

import yaml
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from errors import ConfigurationError

REQUIRED_KEYS = ["team", "service", "environment", "region"]

@dataclass
class SubnetConfig:
    name: str
    routing: str
    cidr_mask: int

@dataclass
class NetworkConfig:
    cidr: str
    max_azs: int = 2
    nat_gateways: int = 0
    enable_dns_hostnames: bool = True
    enable_dns_support: bool = True
    subnets: List[SubnetConfig] = field(default_factory=list)

@dataclass
class VolumeConfig:
    device_name: str = "/dev/xvda"
    size: int = 8
    type: str = "gp3"

@dataclass
class InstanceConfig:
    instance_type: str
    subnet: str
    machine_image: str = "amazon-linux-2"
    role: Optional[str] = None
    volumes: List[VolumeConfig] = field(default_factory=lambda: [VolumeConfig()])
    propagate_tags_to_volumes: bool = True

@dataclass
class RoleConfig:
    trust_principal: str = "ec2.amazonaws.com"
    managed_policies: List[str] = field(default_factory=lambda: ["AmazonSSMManagedInstanceCore"])

@dataclass
class HealthCheckConfig:
    port: int = 22
    protocol: str = "TCP"

@dataclass
class GatewayLoadBalancerConfig:
    subnet: str = "Private"
    ip_address_type: str = "ipv4"
    port: int = 6081
    protocol: str = "GENEVE"
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)

@dataclass
class EndpointServiceConfig:
    acceptance_required: bool = False

@dataclass
class ConsumerEndpointConfig:
    enabled: bool = True
    subnet: str = "Isolated"

@dataclass
class TopologyConfig:
    team: str
    service: str
    environment: str
    region: str
    account: Optional[str] = None
    availability_zones: Optional[List[str]] = None
    tags: Optional[Dict[str, str]] = None
    roles: Dict[str, RoleConfig] = field(default_factory=dict)
    networks: Dict[str, NetworkConfig] = field(default_factory=dict)
    instances: Dict[str, InstanceConfig] = field(default_factory=dict)
    gateway_load_balancer: GatewayLoadBalancerConfig = field(default_factory=GatewayLoadBalancerConfig)
    endpoint_service: EndpointServiceConfig = field(default_factory=EndpointServiceConfig)
    consumer_endpoint: ConsumerEndpointConfig = field(default_factory=ConsumerEndpointConfig)


def default_networks() -> Dict[str, NetworkConfig]:
    return {
        "consumer": NetworkConfig(
            cidr="10.10.0.0/24",
            nat_gateways=0,
            subnets=[SubnetConfig("Public", "public", 28), SubnetConfig("Isolated", "isolated", 28)],
        ),
        "monitoring": NetworkConfig(
            cidr="10.10.0.0/24",
            nat_gateways=1,
            subnets=[SubnetConfig("Public", "public", 28), SubnetConfig("Private", "private", 28)],
        ),
    }


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Configuration section '{key}' must be a mapping")
    return value


def _require(data: Dict[str, Any], key: str, where: str) -> Any:
    if data.get(key) in (None, ""):
        raise ConfigurationError(f"Missing required configuration key: {where}{key}")
    return data[key]


def _integer(data: Dict[str, Any], key: str, where: str, default: Optional[int] = None, required: bool = False) -> int:
    value = _require(data, key, where) if required else data.get(key, default)
    # bool is an int subclass; "true" is never a port or a count
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"Configuration key {where}{key} must be an integer, got {value!r}")
    return value


def _flag(data: Dict[str, Any], key: str, where: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"Configuration key {where}{key} must be true or false, got {value!r}")
    return value


def _zones(data: Dict[str, Any]) -> Optional[List[str]]:
    zones = data.get("availability_zones")
    if zones is None:
        return None
    if not isinstance(zones, list) or not all(isinstance(zone, str) and zone for zone in zones):
        raise ConfigurationError(f"Configuration key availability_zones must be a list of zone names, got {zones!r}")
    return list(zones)


def parse_network(data: Dict[str, Any]) -> NetworkConfig:
    subnets = [
        SubnetConfig(
            name=_require(s, "name", "subnets[]."),
            routing=_require(s, "routing", "subnets[]."),
            cidr_mask=_integer(s, "cidr_mask", "subnets[].", required=True),
        )
        for s in data.get("subnets", [])
    ]
    return NetworkConfig(
        cidr=_require(data, "cidr", "networks.*."),
        max_azs=_integer(data, "max_azs", "networks.*.", 2),
        nat_gateways=_integer(data, "nat_gateways", "networks.*.", 0),
        enable_dns_hostnames=_flag(data, "enable_dns_hostnames", "networks.*.", True),
        enable_dns_support=_flag(data, "enable_dns_support", "networks.*.", True),
        subnets=subnets,
    )


def parse_instance(name: str, data: Dict[str, Any]) -> InstanceConfig:
    where = f"instances.{name}."
    volumes = [
        VolumeConfig(
            device_name=v.get("device_name", "/dev/xvda"),
            size=_integer(v, "size", where + "volumes[].", 8),
            type=v.get("type", "gp3"),
        )
        for v in data.get("volumes", [{}])
    ]
    return InstanceConfig(
        instance_type=_require(data, "instance_type", where),
        subnet=_require(data, "subnet", where),
        machine_image=data.get("machine_image", "amazon-linux-2"),
        role=data.get("role"),
        volumes=volumes,
        propagate_tags_to_volumes=_flag(data, "propagate_tags_to_volumes", where, True),
    )


def parse_config(config_data: Dict[str, Any]) -> TopologyConfig:
    """Validate the raw YAML mapping and convert it into a TopologyConfig."""
    if not isinstance(config_data, dict):
        raise ConfigurationError("Configuration must be a mapping")

    for key in REQUIRED_KEYS:
        if config_data.get(key) in (None, ""):
            raise ConfigurationError(f"Missing required configuration key: {key}")

    networks = default_networks()
    for name, network in _section(config_data, "networks").items():
        networks[name] = parse_network(network or {})

    roles = {
        name: RoleConfig(
            trust_principal=(role or {}).get("trust_principal", "ec2.amazonaws.com"),
            managed_policies=list((role or {}).get("managed_policies", ["AmazonSSMManagedInstanceCore"])),
        )
        for name, role in _section(config_data, "roles").items()
    }
    if not roles:
        roles = {"ssm": RoleConfig()}

    instances = {
        name: parse_instance(name, instance or {})
        for name, instance in _section(config_data, "instances").items()
    }

    gwlb = _section(config_data, "gateway_load_balancer")
    health_check = _section(gwlb, "health_check")
    endpoint_service = _section(config_data, "endpoint_service")
    consumer_endpoint = _section(config_data, "consumer_endpoint")

    return TopologyConfig(
        team=str(config_data["team"]),
        service=str(config_data["service"]),
        environment=str(config_data["environment"]),
        region=str(config_data["region"]),
        account=config_data.get("account"),
        availability_zones=_zones(config_data),
        tags=config_data.get("tags"),
        roles=roles,
        networks=networks,
        instances=instances,
        gateway_load_balancer=GatewayLoadBalancerConfig(
            subnet=gwlb.get("subnet", "Private"),
            ip_address_type=gwlb.get("ip_address_type", "ipv4"),
            port=_integer(gwlb, "port", "gateway_load_balancer.", 6081),
            protocol=gwlb.get("protocol", "GENEVE"),
            health_check=HealthCheckConfig(
                port=_integer(health_check, "port", "gateway_load_balancer.health_check.", 22),
                protocol=health_check.get("protocol", "TCP"),
            ),
        ),
        endpoint_service=EndpointServiceConfig(
            acceptance_required=_flag(endpoint_service, "acceptance_required", "endpoint_service.", False),
        ),
        consumer_endpoint=ConsumerEndpointConfig(
            enabled=_flag(consumer_endpoint, "enabled", "consumer_endpoint.", True),
            subnet=consumer_endpoint.get("subnet", "Isolated"),
        ),
    )


def load_config(file_path: str, defaults: Optional[Dict[str, Any]] = None) -> TopologyConfig:
    """Load and validate YAML configuration from the given file path.

    Keys present in the file win over the given defaults.
    """
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file) or {}

    if not isinstance(config_data, dict):
        raise ConfigurationError(f"Configuration file {file_path} must contain a mapping")

    return parse_config({**(defaults or {}), **config_data})
