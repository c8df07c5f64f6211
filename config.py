"""
This module defines the data structures for our configuration and the loader
that turns config.yaml plus the process environment into a TopologyConfig.
The resulting object is passed explicitly into the topology builder.
"""

import os
import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from errors import ConfigurationError

REQUIRED_KEYS = ["project_name", "environment", "region"]

NAT_GATEWAY_STRATEGIES = {"None", "Single", "OnePerAz"}

DEFAULT_SERVICES = {
    "web": {"build_context": "./infra-web", "container_name": "infraweb"},
    "api": {"build_context": "./infra-api", "container_name": "infraapi"},
}


@dataclass(frozen=True)
class DatabaseConfig:
    password: str = field(repr=False)
    engine: str = "mysql"
    engine_version: Optional[str] = None
    port: int = 3306
    instance_class: str = "db.t3.micro"
    allocated_storage: int = 20
    storage_type: str = "gp2"
    multi_az: bool = True
    username: str = "sa"
    db_name: str = "test"


@dataclass(frozen=True)
class ServiceConfig:
    name: str
    build_context: str
    container_name: str
    memory: int = 128
    cpu: int = 512
    task_cpu: str = "512"
    task_memory: str = "1024"


@dataclass(frozen=True)
class TopologyConfig:
    project_name: str
    environment: str
    region: str
    database: DatabaseConfig
    web: ServiceConfig
    api: ServiceConfig
    tags: Dict[str, str] = field(default_factory=dict)
    vpc_cidr: str = "10.0.0.0/20"
    nat_gateway_strategy: str = "OnePerAz"
    health_check_path: str = "/WeatherForecast"
    container_port: int = 5000
    listener_port: int = 80
    desired_count: int = 2
    log_retention_days: int = 7

    @property
    def services(self) -> Dict[str, ServiceConfig]:
        return {"web": self.web, "api": self.api}


def _positive_int(section: str, key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigurationError(f"'{section}{key}' must be a positive integer, got {value!r}")
    return value


def _database_config(raw: Mapping[str, Any], environ: Mapping[str, str]) -> DatabaseConfig:
    raw = dict(raw or {})
    password_env = raw.pop("password_env", "RDS_PASSWORD")
    if "password" in raw:
        raise ConfigurationError(
            f"The database password must not be stored in config; set the '{password_env}' environment variable"
        )
    password = environ.get(password_env)
    if not password:
        raise ConfigurationError(f"Missing required environment variable: {password_env}")
    for key in ("port", "allocated_storage"):
        if key in raw:
            _positive_int("database.", key, raw[key])
    try:
        return DatabaseConfig(password=password, **raw)
    except TypeError as e:
        raise ConfigurationError(f"Invalid database configuration: {e}") from e


def _service_config(name: str, raw: Optional[Mapping[str, Any]]) -> ServiceConfig:
    values = dict(DEFAULT_SERVICES[name])
    values.update(raw or {})
    for key in ("memory", "cpu"):
        if key in values:
            _positive_int(f"services.{name}.", key, values[key])
    for key in ("task_cpu", "task_memory"):
        if key in values:
            values[key] = str(values[key])
    try:
        return ServiceConfig(name=name, **values)
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration for service '{name}': {e}") from e


def parse_config(config_data: Mapping[str, Any], environ: Optional[Mapping[str, str]] = None) -> TopologyConfig:
    """Validate raw configuration values and build a TopologyConfig."""
    if environ is None:
        environ = os.environ
    if not isinstance(config_data, Mapping):
        raise ConfigurationError("Configuration must be a mapping")

    # Ensure required keys exist
    for key in REQUIRED_KEYS:
        if not config_data.get(key):
            raise ConfigurationError(f"Missing required configuration key: {key}")

    data = dict(config_data)
    services = data.pop("services", None) or {}
    unknown_services = set(services) - set(DEFAULT_SERVICES)
    if unknown_services:
        raise ConfigurationError(f"Unknown services in configuration: {sorted(unknown_services)}")

    database = _database_config(data.pop("database", None), environ)
    web = _service_config("web", services.get("web"))
    api = _service_config("api", services.get("api"))

    for key in ("container_port", "listener_port", "desired_count", "log_retention_days"):
        if key in data:
            _positive_int("", key, data[key])

    strategy = data.get("nat_gateway_strategy", "OnePerAz")
    if strategy not in NAT_GATEWAY_STRATEGIES:
        raise ConfigurationError(
            f"Unknown nat_gateway_strategy '{strategy}', expected one of {sorted(NAT_GATEWAY_STRATEGIES)}"
        )

    path = data.get("health_check_path", "/WeatherForecast")
    if not str(path).startswith("/"):
        raise ConfigurationError(f"health_check_path must start with '/', got {path!r}")

    if data.get("tags") is not None and not isinstance(data["tags"], Mapping):
        raise ConfigurationError(f"tags must be a mapping, got {type(data['tags']).__name__}")
    if not data.get("tags"):
        data["tags"] = {"Name": data["project_name"]}
    data["tags"] = {str(k): str(v) for k, v in data["tags"].items()}

    try:
        return TopologyConfig(database=database, web=web, api=api, **data)
    except TypeError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def load_config(file_path: str, environ: Optional[Mapping[str, str]] = None) -> TopologyConfig:
    """Load and validate YAML configuration from the given file path."""
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file) or {}
    return parse_config(config_data, environ)
