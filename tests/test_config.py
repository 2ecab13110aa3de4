"""Tests for loading and parsing config.yaml."""

import pytest

from config import load_config, parse_config
from errors import ConfigurationError


def test_parse_minimal_config_applies_reference_defaults(config_data):
    configuration = parse_config(config_data)

    assert configuration.region == "us-east-1"
    assert set(configuration.networks) == {"consumer", "monitoring"}
    assert configuration.networks["consumer"].cidr == "10.10.0.0/24"
    assert configuration.networks["consumer"].nat_gateways == 0
    assert configuration.networks["monitoring"].nat_gateways == 1
    assert configuration.gateway_load_balancer.port == 6081
    assert configuration.gateway_load_balancer.protocol == "GENEVE"
    assert configuration.gateway_load_balancer.health_check.port == 22
    assert configuration.endpoint_service.acceptance_required is False
    assert configuration.consumer_endpoint.enabled is True


def test_parse_instance_defaults(config_data):
    instance = parse_config(config_data).instances["monitoring"]

    assert instance.machine_image == "amazon-linux-2"
    assert instance.role == "ssm"
    assert len(instance.volumes) == 1
    assert instance.volumes[0].device_name == "/dev/xvda"
    assert instance.volumes[0].size == 8
    assert instance.volumes[0].type == "gp3"


@pytest.mark.parametrize("key", ["team", "service", "environment", "region"])
def test_missing_required_key(config_data, key):
    del config_data[key]

    with pytest.raises(ConfigurationError, match=key):
        parse_config(config_data)


def test_missing_instance_type(config_data):
    del config_data["instances"]["consumer"]["instance_type"]

    with pytest.raises(ConfigurationError, match="instances.consumer.instance_type"):
        parse_config(config_data)


def test_default_role_when_roles_section_is_absent(config_data):
    del config_data["roles"]

    roles = parse_config(config_data).roles

    assert list(roles) == ["ssm"]
    assert roles["ssm"].managed_policies == ["AmazonSSMManagedInstanceCore"]


def test_network_override(config_data):
    config_data["networks"] = {
        "consumer": {
            "cidr": "10.20.0.0/24",
            "max_azs": 3,
            "subnets": [{"name": "Isolated", "routing": "isolated", "cidr_mask": 27}],
        },
    }

    networks = parse_config(config_data).networks

    assert networks["consumer"].cidr == "10.20.0.0/24"
    assert networks["consumer"].max_azs == 3
    assert networks["consumer"].subnets[0].cidr_mask == 27
    # the other network keeps its default
    assert networks["monitoring"].cidr == "10.10.0.0/24"


def test_section_must_be_a_mapping(config_data):
    config_data["gateway_load_balancer"] = ["not", "a", "mapping"]

    with pytest.raises(ConfigurationError, match="gateway_load_balancer"):
        parse_config(config_data)


def test_load_config_reads_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "team: netops\n"
        "service: mirroring\n"
        "environment: prod\n"
        "instances:\n"
        "  consumer: {instance_type: t3.small, subnet: Public, role: ssm}\n"
        "  monitoring: {instance_type: c5.large, subnet: Private, role: ssm}\n"
        "gateway_load_balancer:\n"
        "  health_check: {port: 80, protocol: HTTP}\n"
    )

    configuration = load_config(str(path), defaults={"region": "eu-west-1", "environment": "dev"})

    assert configuration.region == "eu-west-1"
    assert configuration.environment == "prod"
    assert configuration.instances["monitoring"].instance_type == "c5.large"
    assert configuration.gateway_load_balancer.health_check.port == 80
    assert configuration.gateway_load_balancer.health_check.protocol == "HTTP"


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigurationError):
        load_config(str(path))


def test_availability_zones_must_be_a_list(config_data):
    config_data["availability_zones"] = "us-east-1a"

    with pytest.raises(ConfigurationError, match="availability_zones must be a list"):
        parse_config(config_data)


def test_availability_zones_must_be_names(config_data):
    config_data["availability_zones"] = ["us-east-1a", 2]

    with pytest.raises(ConfigurationError, match="availability_zones"):
        parse_config(config_data)


@pytest.mark.parametrize(
    "section, key",
    [
        ("consumer_endpoint", "enabled"),
        ("endpoint_service", "acceptance_required"),
    ],
)
def test_flags_must_be_booleans(config_data, section, key):
    # a quoted "false" is a non-empty string and would otherwise read as true
    config_data[section] = {key: "false"}

    with pytest.raises(ConfigurationError, match=f"{section}.{key} must be true or false"):
        parse_config(config_data)


def test_network_dns_flag_must_be_boolean(config_data):
    config_data["networks"] = {"consumer": {"cidr": "10.10.0.0/24", "enable_dns_support": "no"}}

    with pytest.raises(ConfigurationError, match="enable_dns_support"):
        parse_config(config_data)


@pytest.mark.parametrize("port", ["22", True, 22.0])
def test_health_check_port_must_be_an_integer(config_data, port):
    config_data["gateway_load_balancer"] = {"health_check": {"port": port}}

    with pytest.raises(ConfigurationError, match="health_check.port must be an integer"):
        parse_config(config_data)


def test_max_azs_must_be_an_integer(config_data):
    config_data["networks"] = {"monitoring": {"cidr": "10.10.0.0/24", "max_azs": "2"}}

    with pytest.raises(ConfigurationError, match="max_azs must be an integer"):
        parse_config(config_data)
