import copy

import pulumi
import pytest

AMI_ID = "ami-0123456789abcdef0"


class TopologyMocks(pulumi.runtime.Mocks):
    def __init__(self):
        # provider reference each resource was registered with, keyed by resource name
        self.providers = {}

    def new_resource(self, args: pulumi.runtime.MockResourceArgs):
        self.providers[args.name] = args.provider
        outputs = dict(args.inputs)
        outputs.setdefault("arn", f"arn:aws:mock::123456789012:{args.name}")
        if args.typ == "aws:ec2/vpcEndpointService:VpcEndpointService":
            outputs["serviceName"] = f"com.amazonaws.vpce.us-east-1.{args.name}"
        return [f"{args.name}_id", outputs]

    def call(self, args: pulumi.runtime.MockCallArgs):
        if args.token == "aws:ssm/getParameter:getParameter":
            return {"name": args.args.get("name"), "type": "String", "value": AMI_ID}
        return {}


MOCKS = TopologyMocks()
pulumi.runtime.set_mocks(MOCKS, project="vpc-traffic-mirroring", stack="test", preview=False)


CONFIG_DATA = {
    "team": "netops",
    "service": "mirroring",
    "environment": "dev",
    "region": "us-east-1",
    "tags": {"project": "vpc-traffic-mirroring"},
    "roles": {
        "ssm": {
            "trust_principal": "ec2.amazonaws.com",
            "managed_policies": ["AmazonSSMManagedInstanceCore"],
        },
    },
    "instances": {
        "consumer": {"instance_type": "t3.micro", "subnet": "Public", "role": "ssm"},
        "monitoring": {"instance_type": "t3.micro", "subnet": "Private", "role": "ssm"},
    },
}


@pytest.fixture
def mocks():
    return MOCKS


@pytest.fixture
def config_data():
    return copy.deepcopy(CONFIG_DATA)


@pytest.fixture(scope="module")
def realized():
    """The default topology realised against the mocked Pulumi engine."""
    import config
    import topology
    from awsclassic import AwsResourceBuilder

    configuration = config.parse_config(copy.deepcopy(CONFIG_DATA))
    builder = AwsResourceBuilder(topology.build(configuration), configuration)
    builder.build()
    return builder
