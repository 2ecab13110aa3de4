import pulumi
import config
import topology
from errors import TopologyError
from awsclassic import AwsResourceBuilder
from typing import Any, Dict

def stack_defaults() -> Dict[str, Any]:
    """Values taken from the Pulumi stack when config.yaml leaves them out."""
    defaults = {}
    region = pulumi.Config("aws").get("region")
    if region:
        defaults["region"] = region
    return defaults

def main():
    # Load YAML configuration.
    config_file = pulumi.Config().get("configFile") or "config.yaml"
    configuration = config.load_config(config_file, defaults=stack_defaults())

    try:
        graph = topology.build(configuration)
    except TopologyError as e:
        pulumi.log.error(f"Failed to declare the traffic mirroring topology: {e}")
        raise

    pulumi.log.debug(f"Declared {len(graph)} resources from {config_file}")

    builder = AwsResourceBuilder(graph, configuration)
    try:
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    # Export resource IDs if available.
    for name, resource in builder.resources.items():
        try:
            pulumi.export(name, resource.id)
        except Exception as e:
            pulumi.log.warn(f"Failed to export resource '{name}': {e}")

    for service in graph.of_kind(topology.EndpointService):
        pulumi.export(f"{service.name}-name", builder.resources[service.name].service_name)

if __name__ == "__main__":
    main()
