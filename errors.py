class ConfigurationError(ValueError):
    """Raised when config.yaml or the environment cannot produce a valid topology configuration."""


class TopologyError(ValueError):
    """Raised when a declaration would break the dependency graph or an access policy."""
