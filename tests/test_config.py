import pytest

from config import DatabaseConfig, load_config, parse_config
from errors import ConfigurationError
from tests.conftest import TEST_PASSWORD, make_config_data


class TestParseConfig:
    def test_defaults_match_the_deployed_topology(self, topology_config):
        assert topology_config.tags == {"Name": "Woo-Commerce"}
        assert topology_config.vpc_cidr == "10.0.0.0/20"
        assert topology_config.health_check_path == "/WeatherForecast"
        assert topology_config.container_port == 5000
        assert topology_config.desired_count == 2
        assert topology_config.database.engine == "mysql"
        assert topology_config.database.port == 3306
        assert topology_config.database.username == "sa"
        assert topology_config.database.password == TEST_PASSWORD
        assert topology_config.web.build_context == "./infra-web"
        assert topology_config.api.build_context == "./infra-api"
        assert topology_config.api.memory == 128
        assert topology_config.api.cpu == 512

    @pytest.mark.parametrize("key", ["project_name", "environment", "region"])
    def test_missing_required_key_raises(self, environ, key):
        data = make_config_data()
        del data[key]
        with pytest.raises(ConfigurationError, match=key):
            parse_config(data, environ)

    def test_missing_password_raises(self):
        with pytest.raises(ConfigurationError, match="RDS_PASSWORD"):
            parse_config(make_config_data(), {})

    def test_empty_password_raises(self):
        with pytest.raises(ConfigurationError, match="RDS_PASSWORD"):
            parse_config(make_config_data(), {"RDS_PASSWORD": ""})

    def test_password_env_can_be_renamed(self):
        data = make_config_data(database={"password_env": "DB_ADMIN_PASSWORD"})
        config = parse_config(data, {"DB_ADMIN_PASSWORD": "other"})
        assert config.database.password == "other"

    def test_password_in_config_file_is_rejected(self, environ):
        data = make_config_data(database={"password": "plaintext"})
        with pytest.raises(ConfigurationError, match="must not be stored"):
            parse_config(data, environ)

    def test_password_not_in_repr(self, topology_config):
        assert TEST_PASSWORD not in repr(topology_config)
        assert TEST_PASSWORD not in repr(DatabaseConfig(password=TEST_PASSWORD))

    def test_service_overrides_keep_defaults(self, environ):
        data = make_config_data(services={"api": {"memory": 256, "task_memory": 2048}})
        config = parse_config(data, environ)
        assert config.api.memory == 256
        assert config.api.task_memory == "2048"
        assert config.api.container_name == "infraapi"
        assert config.web.memory == 128

    def test_unknown_service_rejected(self, environ):
        with pytest.raises(ConfigurationError, match="worker"):
            parse_config(make_config_data(services={"worker": {}}), environ)

    def test_unknown_key_rejected(self, environ):
        with pytest.raises(ConfigurationError):
            parse_config(make_config_data(replicas=3), environ)

    @pytest.mark.parametrize("value", [0, -1, "2", True])
    def test_desired_count_must_be_positive_int(self, environ, value):
        with pytest.raises(ConfigurationError, match="desired_count"):
            parse_config(make_config_data(desired_count=value), environ)

    @pytest.mark.parametrize("tags", [["Name", "Woo-Commerce"], "Woo-Commerce"])
    def test_tags_must_be_a_mapping(self, environ, tags):
        with pytest.raises(ConfigurationError, match="tags must be a mapping"):
            parse_config(make_config_data(tags=tags), environ)

    def test_unknown_nat_strategy_rejected(self, environ):
        with pytest.raises(ConfigurationError, match="nat_gateway_strategy"):
            parse_config(make_config_data(nat_gateway_strategy="Many"), environ)

    def test_health_check_path_must_be_absolute(self, environ):
        with pytest.raises(ConfigurationError, match="health_check_path"):
            parse_config(make_config_data(health_check_path="WeatherForecast"), environ)


class TestLoadConfig:
    def test_loads_yaml_file(self, tmp_path, environ):
        path = tmp_path / "config.yaml"
        path.write_text(
            "project_name: Woo-Commerce\n"
            "environment: prod\n"
            "region: eu-west-1\n"
            "tags:\n"
            "  Name: Woo-Commerce\n"
            "  Team: shop\n"
            "database:\n"
            "  instance_class: db.t3.small\n"
        )
        config = load_config(str(path), environ)
        assert config.environment == "prod"
        assert config.tags == {"Name": "Woo-Commerce", "Team": "shop"}
        assert config.database.instance_class == "db.t3.small"

    def test_empty_file_reports_missing_key(self, tmp_path, environ):
        path = tmp_path / "config.yaml"
        path.write_text("")
        with pytest.raises(ConfigurationError, match="project_name"):
            load_config(str(path), environ)

    def test_missing_password_fails_before_any_resource(self, tmp_path, mocks):
        path = tmp_path / "config.yaml"
        path.write_text("project_name: Woo-Commerce\nenvironment: dev\nregion: us-east-1\n")
        created = len(mocks.created)
        with pytest.raises(ConfigurationError):
            load_config(str(path), {})
        assert len(mocks.created) == created
