import pulumi
from config import load_config
from topology import TopologyBuilder

def main():
    # Load YAML configuration; fails here if the database password is not set
    try:
        config = load_config("config.yaml")
    except Exception as e:
        pulumi.log.error(f"Failed to load configuration: {e}")
        raise

    builder = TopologyBuilder(config)

    try:
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    for name, value in builder.outputs().items():
        pulumi.export(name, value)

    # Export declared resource ids
    for name, resource_id in builder.resource_ids().items():
        try:
            pulumi.export(f"{name}_id", resource_id)
        except Exception as e:
            pulumi.log.warn(f"Failed to export resource '{name}': {e}")

if __name__ == "__main__":
    main()
