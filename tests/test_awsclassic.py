"""Tests for realising the topology with pulumi_aws against the mocked engine."""

import json

import pulumi

from awsclassic import AwsResourceBuilder, assume_role_policy, managed_policy_arn
from config import parse_config
from topology import ResourceKind, Subnet, build

AMI_ID = "ami-0123456789abcdef0"


def test_generate_resource_name(config_data):
    configuration = parse_config(config_data)
    builder = AwsResourceBuilder(build(configuration), configuration)

    assert builder.generate_resource_name("gwlb") == "netops-mirroring-dev-use1-gwlb"
    assert builder.get_abbreviation("eu-west-1") == "euw1"
    assert builder.get_abbreviation("il-central-1") == "ilcentral1"


def test_generate_short_name_fits_load_balancer_limits(config_data):
    config_data["team"] = "network-operations"
    configuration = parse_config(config_data)
    builder = AwsResourceBuilder(build(configuration), configuration)

    name = builder.generate_short_name("gwlb-target-group")

    assert len(name) <= 32
    assert not name.endswith("-")


def test_tags_include_name(config_data):
    configuration = parse_config(config_data)
    builder = AwsResourceBuilder(build(configuration), configuration)

    assert builder.tags_for("gwlb") == {
        "project": "vpc-traffic-mirroring",
        "Name": "netops-mirroring-dev-use1-gwlb",
    }


def test_assume_role_policy_trusts_principal():
    policy = json.loads(assume_role_policy("ec2.amazonaws.com"))

    statement = policy["Statement"][0]
    assert statement["Action"] == "sts:AssumeRole"
    assert statement["Principal"] == {"Service": "ec2.amazonaws.com"}
    assert managed_policy_arn("AmazonSSMManagedInstanceCore") == (
        "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"
    )


def test_every_entity_is_realised(realized):
    assert set(realized.resources) == {resource.name for resource in realized.graph}


def test_gateways(realized):
    assert set(realized.internet_gateways) == {"consumer-vpc", "monitoring-vpc"}
    assert set(realized.nat_gateways) == {"monitoring-vpc-public-1"}


def test_machine_image_lookup(realized):
    assert realized.lookup_machine_image("amazon-linux-2") == AMI_ID


def test_realised_kinds(realized):
    kinds = {resource.kind for resource in realized.graph}

    assert isinstance(realized.resources["gwlb"], pulumi.CustomResource)
    assert ResourceKind.ENDPOINT in kinds


@pulumi.runtime.test
def test_monitoring_instance_disables_source_dest_check(realized):
    def check(args):
        monitoring, consumer = args
        assert monitoring is False
        assert consumer is True

    return pulumi.Output.all(
        realized.resources["monitoring-instance"].source_dest_check,
        realized.resources["consumer-instance"].source_dest_check,
    ).apply(check)


@pulumi.runtime.test
def test_instances_use_the_looked_up_image(realized):
    def check(args):
        ami, instance_type = args
        assert ami == AMI_ID
        assert instance_type == "t3.micro"

    instance = realized.resources["consumer-instance"]
    return pulumi.Output.all(instance.ami, instance.instance_type).apply(check)


@pulumi.runtime.test
def test_target_group_forwards_geneve(realized):
    def check(args):
        port, protocol, target_type = args
        assert port == 6081
        assert protocol == "GENEVE"
        assert target_type == "instance"

    target_group = realized.resources["gwlb-target-group"]
    return pulumi.Output.all(target_group.port, target_group.protocol, target_group.target_type).apply(check)


@pulumi.runtime.test
def test_load_balancer_is_gateway_class(realized):
    def check(args):
        load_balancer_type, ip_address_type, subnets = args
        assert load_balancer_type == "gateway"
        assert ip_address_type == "ipv4"
        assert len(subnets) == 2

    load_balancer = realized.resources["gwlb"]
    return pulumi.Output.all(
        load_balancer.load_balancer_type,
        load_balancer.ip_address_type,
        load_balancer.subnets,
    ).apply(check)


@pulumi.runtime.test
def test_endpoint_service_auto_accepts(realized):
    def check(acceptance_required):
        assert acceptance_required is False

    return realized.resources["gwlb-endpoint-service"].acceptance_required.apply(check)


@pulumi.runtime.test
def test_consumer_endpoint_targets_the_service(realized):
    def check(args):
        endpoint_type, service_name, subnet_ids = args
        assert endpoint_type == "GatewayLoadBalancer"
        assert service_name.endswith("gwlb-endpoint-service")
        assert len(subnet_ids) == 1

    endpoint = realized.resources["consumer-gwlb-endpoint"]
    return pulumi.Output.all(endpoint.vpc_endpoint_type, endpoint.service_name, endpoint.subnet_ids).apply(check)


@pulumi.runtime.test
def test_vpcs_share_the_address_block(realized):
    def check(args):
        assert args == ["10.10.0.0/24", "10.10.0.0/24"]

    return pulumi.Output.all(
        realized.resources["consumer-vpc"].cidr_block,
        realized.resources["monitoring-vpc"].cidr_block,
    ).apply(check)


def _field(value, name, camel_name=None):
    """Read a nested output field whether it came back as an output type or a plain mapping."""
    if isinstance(value, dict):
        return value.get(name, value.get(camel_name or name))
    return getattr(value, name)


@pulumi.runtime.test
def test_subnets_use_the_regional_provider(realized, mocks):
    subnets = realized.graph.of_kind(Subnet)

    def check(_):
        expected = f"pulumi:providers:aws::{realized.generate_resource_name('aws')}"
        for subnet in subnets:
            assert expected in mocks.providers[realized.generate_resource_name(subnet.name)]

    return pulumi.Output.all(*(realized.resources[subnet.name].id for subnet in subnets)).apply(check)


@pulumi.runtime.test
def test_provider_is_pinned_to_the_configured_region(realized):
    def check(region):
        assert region == "us-east-1"

    return realized.provider.region.apply(check)


@pulumi.runtime.test
def test_target_group_health_check_is_ssh(realized):
    def check(health_check):
        assert _field(health_check, "port") == "22"
        assert _field(health_check, "protocol") == "TCP"

    return realized.resources["gwlb-target-group"].health_check.apply(check)


@pulumi.runtime.test
def test_monitoring_security_group_admits_only_its_network(realized):
    def check(args):
        ingress, vpc_cidr = args
        assert len(ingress) == 1
        assert _field(ingress[0], "protocol") == "-1"
        assert _field(ingress[0], "cidr_blocks", "cidrBlocks") == [vpc_cidr]
        assert vpc_cidr == "10.10.0.0/24"

    return pulumi.Output.all(
        realized.resources["monitoring-sg"].ingress,
        realized.resources["monitoring-vpc"].cidr_block,
    ).apply(check)


@pulumi.runtime.test
def test_consumer_instance_uses_the_consumer_security_group(realized):
    def check(args):
        security_groups, ingress = args
        assert security_groups == [f"{realized.generate_resource_name('consumer-sg')}_id"]
        assert not ingress

    return pulumi.Output.all(
        realized.resources["consumer-instance"].vpc_security_group_ids,
        realized.resources["consumer-sg"].ingress,
    ).apply(check)
