import json
import pulumi
import pulumi_aws as aws
from typing import Any, Callable, Dict, List, Optional

import config
from topology import (
    MACHINE_IMAGES,
    ComputeNode,
    Direction,
    Endpoint,
    EndpointService,
    IdentityRole,
    Listener,
    LoadBalancer,
    Network,
    ResourceGraph,
    ResourceKind,
    SecurityPolicy,
    Subnet,
    SubnetRouting,
    TargetGroup,
)

# Consolidated list of common AWS region abbreviations
AWS_REGION_ABBREVIATIONS = {
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-south-1": "aps1",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ca-central-1": "cac1",
    "eu-central-1": "euc1",
    "eu-central-2": "euc2",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "me-south-1": "mes1",
    "sa-east-1": "sae1",
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
}

ANYWHERE = "0.0.0.0/0"
ROOT_DEVICE_NAME = "/dev/xvda"
# load balancer and target group names are capped at 32 characters
ELB_NAME_LIMIT = 32


def managed_policy_arn(policy_name: str) -> str:
    return f"arn:aws:iam::aws:policy/{policy_name}"


def assume_role_policy(principal: str) -> str:
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [
            {
                "Action": "sts:AssumeRole",
                "Effect": "Allow",
                "Principal": {"Service": principal},
            },
        ],
    })


class AwsResourceBuilder:
    """Realises a validated ResourceGraph as pulumi_aws resources.

    Entities are created in topological order so every reference is already a live
    resource (or Output) when a dependent entity needs it. Diffing against existing
    infrastructure is left to the Pulumi engine.
    """

    def __init__(self, graph: ResourceGraph, configuration: config.TopologyConfig):
        self.graph = graph
        self.config = configuration
        # every resource and lookup goes through this provider, pinned to the configured region
        self.provider = aws.Provider(self.generate_resource_name("aws"), region=configuration.region)
        self.resources: Dict[str, pulumi.CustomResource] = {}
        self.internet_gateways: Dict[str, aws.ec2.InternetGateway] = {}
        self.nat_gateways: Dict[str, aws.ec2.NatGateway] = {}
        self.instance_profiles: Dict[str, aws.iam.InstanceProfile] = {}
        self._realizers: Dict[ResourceKind, Callable[[Any], pulumi.CustomResource]] = {
            ResourceKind.IDENTITY_ROLE: self.create_role,
            ResourceKind.NETWORK: self.create_network,
            ResourceKind.SUBNET: self.create_subnet,
            ResourceKind.SECURITY_POLICY: self.create_security_group,
            ResourceKind.COMPUTE_NODE: self.create_instance,
            ResourceKind.LOAD_BALANCER: self.create_load_balancer,
            ResourceKind.TARGET_GROUP: self.create_target_group,
            ResourceKind.LISTENER: self.create_listener,
            ResourceKind.ENDPOINT_SERVICE: self.create_endpoint_service,
            ResourceKind.ENDPOINT: self.create_endpoint,
        }

    def get_abbreviation(self, region: str) -> str:
        return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.replace("-", "").lower())

    def generate_resource_name(self, base_name: str) -> str:
        team = self.config.team.strip().lower()
        service = self.config.service.strip().lower()
        env = self.config.environment.strip().lower()
        reg_abbr = self.get_abbreviation(self.config.region)
        return f"{team}-{service}-{env}-{reg_abbr}-{base_name}".lower()

    def generate_short_name(self, base_name: str) -> str:
        return self.generate_resource_name(base_name)[:ELB_NAME_LIMIT].rstrip("-")

    def tags_for(self, base_name: str) -> Dict[str, str]:
        tags = dict(self.config.tags or {})
        tags["Name"] = self.generate_resource_name(base_name)
        return tags

    def _opts(self, parent: Optional[pulumi.Resource] = None) -> pulumi.ResourceOptions:
        return pulumi.ResourceOptions(provider=self.provider, parent=parent)

    def _id(self, name: str) -> pulumi.Output[str]:
        return self.resources[name].id

    def build(self):
        for resource in self.graph.topological_order():
            realize = self._realizers[resource.kind]
            self.resources[resource.name] = realize(resource)
            pulumi.log.info(f"Created resource: {self.generate_resource_name(resource.name)} ({resource.kind.value})")

    def create_role(self, role: IdentityRole) -> aws.iam.Role:
        pulumi_name = self.generate_resource_name(f"{role.name}-role")
        iam_role = aws.iam.Role(
            pulumi_name,
            assume_role_policy=assume_role_policy(role.trust_principal),
            tags=self.tags_for(f"{role.name}-role"),
            opts=self._opts(),
        )
        for policy_name in role.managed_policies:
            aws.iam.RolePolicyAttachment(
                f"{pulumi_name}-{policy_name.lower()}",
                role=iam_role.name,
                policy_arn=managed_policy_arn(policy_name),
                opts=self._opts(parent=iam_role),
            )
        self.instance_profiles[role.name] = aws.iam.InstanceProfile(
            f"{pulumi_name}-profile",
            role=iam_role.name,
            tags=self.tags_for(f"{role.name}-profile"),
            opts=self._opts(parent=iam_role),
        )
        return iam_role

    def create_network(self, network: Network) -> aws.ec2.Vpc:
        pulumi_name = self.generate_resource_name(network.name)
        vpc = aws.ec2.Vpc(
            pulumi_name,
            cidr_block=network.cidr_block,
            enable_dns_hostnames=network.enable_dns_hostnames,
            enable_dns_support=network.enable_dns_support,
            tags=self.tags_for(network.name),
            opts=self._opts(),
        )
        if any(spec.routing is SubnetRouting.PUBLIC for spec in network.subnets):
            self.internet_gateways[network.name] = aws.ec2.InternetGateway(
                f"{pulumi_name}-igw",
                vpc_id=vpc.id,
                tags=self.tags_for(f"{network.name}-igw"),
                opts=self._opts(parent=vpc),
            )
        return vpc

    def _routes_for(self, subnet: Subnet) -> List[aws.ec2.RouteTableRouteArgs]:
        if subnet.routing is SubnetRouting.PUBLIC:
            gateway = self.internet_gateways[subnet.network]
            return [aws.ec2.RouteTableRouteArgs(cidr_block=ANYWHERE, gateway_id=gateway.id)]
        if subnet.routing is SubnetRouting.PRIVATE:
            nat_gateway = self.nat_gateways[subnet.egress_subnet]
            return [aws.ec2.RouteTableRouteArgs(cidr_block=ANYWHERE, nat_gateway_id=nat_gateway.id)]
        return []

    def create_subnet(self, subnet: Subnet) -> aws.ec2.Subnet:
        pulumi_name = self.generate_resource_name(subnet.name)
        tags = self.tags_for(subnet.name)
        tags["Role"] = subnet.role
        aws_subnet = aws.ec2.Subnet(
            pulumi_name,
            vpc_id=self._id(subnet.network),
            cidr_block=subnet.cidr_block,
            availability_zone=subnet.availability_zone,
            map_public_ip_on_launch=subnet.routing is SubnetRouting.PUBLIC,
            tags=tags,
            opts=self._opts(),
        )
        route_table = aws.ec2.RouteTable(
            f"{pulumi_name}-rt",
            vpc_id=self._id(subnet.network),
            routes=self._routes_for(subnet),
            tags=self.tags_for(f"{subnet.name}-rt"),
            opts=self._opts(parent=aws_subnet),
        )
        aws.ec2.RouteTableAssociation(
            f"{pulumi_name}-rta",
            subnet_id=aws_subnet.id,
            route_table_id=route_table.id,
            opts=self._opts(parent=aws_subnet),
        )
        if subnet.nat_gateway:
            eip = aws.ec2.Eip(
                f"{pulumi_name}-eip",
                domain="vpc",
                tags=self.tags_for(f"{subnet.name}-eip"),
                opts=self._opts(parent=aws_subnet),
            )
            self.nat_gateways[subnet.name] = aws.ec2.NatGateway(
                f"{pulumi_name}-nat",
                subnet_id=aws_subnet.id,
                allocation_id=eip.id,
                tags=self.tags_for(f"{subnet.name}-nat"),
                opts=self._opts(parent=aws_subnet),
            )
        return aws_subnet

    def create_security_group(self, policy: SecurityPolicy) -> aws.ec2.SecurityGroup:
        ingress = [
            aws.ec2.SecurityGroupIngressArgs(
                protocol=rule.protocol,
                from_port=rule.from_port,
                to_port=rule.to_port,
                cidr_blocks=[rule.cidr],
            )
            for rule in policy.rules
            if rule.direction is Direction.INGRESS
        ]
        egress = [
            aws.ec2.SecurityGroupEgressArgs(
                protocol=rule.protocol,
                from_port=rule.from_port,
                to_port=rule.to_port,
                cidr_blocks=[rule.cidr],
            )
            for rule in policy.rules
            if rule.direction is Direction.EGRESS
        ]
        if policy.allow_all_outbound:
            egress = [aws.ec2.SecurityGroupEgressArgs(protocol="-1", from_port=0, to_port=0, cidr_blocks=[ANYWHERE])]
        return aws.ec2.SecurityGroup(
            self.generate_resource_name(policy.name),
            vpc_id=self._id(policy.network),
            description=policy.description or self.generate_resource_name(policy.name),
            ingress=ingress,
            egress=egress,
            tags=self.tags_for(policy.name),
            opts=self._opts(),
        )

    def lookup_machine_image(self, machine_image: str) -> str:
        parameter = aws.ssm.get_parameter(
            name=MACHINE_IMAGES[machine_image],
            opts=pulumi.InvokeOptions(provider=self.provider),
        )
        return parameter.value

    def create_instance(self, node: ComputeNode) -> aws.ec2.Instance:
        root_block_device: Optional[aws.ec2.InstanceRootBlockDeviceArgs] = None
        ebs_block_devices = []
        for volume in node.volumes:
            if volume.device_name == ROOT_DEVICE_NAME:
                root_block_device = aws.ec2.InstanceRootBlockDeviceArgs(
                    volume_size=volume.size_gib,
                    volume_type=volume.volume_type,
                )
            else:
                ebs_block_devices.append(aws.ec2.InstanceEbsBlockDeviceArgs(
                    device_name=volume.device_name,
                    volume_size=volume.size_gib,
                    volume_type=volume.volume_type,
                ))

        security_groups = [self._id(node.security_policy)] if node.security_policy else None
        return aws.ec2.Instance(
            self.generate_resource_name(node.name),
            ami=self.lookup_machine_image(node.machine_image),
            instance_type=node.instance_type,
            subnet_id=self._id(node.subnet),
            vpc_security_group_ids=security_groups,
            iam_instance_profile=self.instance_profiles[node.role].name,
            source_dest_check=node.source_dest_check,
            root_block_device=root_block_device,
            ebs_block_devices=ebs_block_devices or None,
            volume_tags=self.tags_for(node.name) if node.propagate_tags_to_volumes else None,
            tags=self.tags_for(node.name),
            opts=self._opts(),
        )

    def create_load_balancer(self, load_balancer: LoadBalancer) -> aws.lb.LoadBalancer:
        return aws.lb.LoadBalancer(
            self.generate_resource_name(load_balancer.name),
            name=self.generate_short_name(load_balancer.name),
            load_balancer_type=load_balancer.load_balancer_type,
            ip_address_type=load_balancer.ip_address_type,
            subnets=[self._id(subnet) for subnet in load_balancer.subnets],
            tags=self.tags_for(load_balancer.name),
            opts=self._opts(),
        )

    def create_target_group(self, target_group: TargetGroup) -> aws.lb.TargetGroup:
        pulumi_name = self.generate_resource_name(target_group.name)
        aws_target_group = aws.lb.TargetGroup(
            pulumi_name,
            name=self.generate_short_name(target_group.name),
            port=target_group.port,
            protocol=target_group.protocol,
            vpc_id=self._id(target_group.network),
            target_type=target_group.target_type,
            health_check=aws.lb.TargetGroupHealthCheckArgs(
                port=str(target_group.health_check.port),
                protocol=target_group.health_check.protocol,
            ),
            tags=self.tags_for(target_group.name),
            opts=self._opts(),
        )
        for target in target_group.targets:
            aws.lb.TargetGroupAttachment(
                f"{pulumi_name}-{target}",
                target_group_arn=aws_target_group.arn,
                target_id=self._id(target),
                opts=self._opts(parent=aws_target_group),
            )
        return aws_target_group

    def create_listener(self, listener: Listener) -> aws.lb.Listener:
        return aws.lb.Listener(
            self.generate_resource_name(listener.name),
            load_balancer_arn=self.resources[listener.load_balancer].arn,
            default_actions=[
                aws.lb.ListenerDefaultActionArgs(
                    type="forward",
                    target_group_arn=self.resources[listener.target_group].arn,
                ),
            ],
            tags=self.tags_for(listener.name),
            opts=self._opts(),
        )

    def create_endpoint_service(self, service: EndpointService) -> aws.ec2.VpcEndpointService:
        return aws.ec2.VpcEndpointService(
            self.generate_resource_name(service.name),
            acceptance_required=service.acceptance_required,
            gateway_load_balancer_arns=[self.resources[lb].arn for lb in service.load_balancers],
            tags=self.tags_for(service.name),
            opts=self._opts(),
        )

    def create_endpoint(self, endpoint: Endpoint) -> aws.ec2.VpcEndpoint:
        return aws.ec2.VpcEndpoint(
            self.generate_resource_name(endpoint.name),
            vpc_id=self._id(endpoint.network),
            service_name=self.resources[endpoint.service].service_name,
            vpc_endpoint_type=endpoint.endpoint_type,
            subnet_ids=[self._id(subnet) for subnet in endpoint.subnets],
            tags=self.tags_for(endpoint.name),
            opts=self._opts(),
        )
