"""
Tests for configuration loading, environment overrides and validation.
"""

import pytest
import yaml
from pydantic import ValidationError

from push_deployer.config.settings import (
    DeployerConfig,
    apply_env_overrides,
    generate_default_config,
    parse_memory,
)
from push_deployer.exceptions import InputError


class TestDefaults:
    def test_defaults_match_documented_values(self):
        config = DeployerConfig.from_dict({}, environ={})

        assert config.workload.registry_url == "localhost:5000"
        assert config.workload.namespace == "default"
        assert config.workload.branch == "main"
        assert config.workload.latest_tag == "latest"
        assert config.workload.stable_tag == "last-stable"
        assert config.workload.build_args == {"NODE_OPTIONS": "--max-old-space-size=1024"}
        assert config.build.memory_limit_bytes == 1536 * 1024 * 1024
        assert config.timeouts.rollout == 300
        assert config.gateway.port == 9000
        assert config.gateway.webhook_path == "/webhook/git-update"
        assert config.gateway.concurrency_policy == "queue"
        assert config.cleanup.revisions_to_keep == 3

    def test_container_defaults_to_workload_name(self):
        config = DeployerConfig.from_dict({"workload": {"name": "web"}}, environ={})
        assert config.workload.container_name == "web"

        config = DeployerConfig.from_dict(
            {"workload": {"name": "web", "container": "app"}}, environ={}
        )
        assert config.workload.container_name == "app"

    def test_config_is_immutable(self):
        config = DeployerConfig.from_dict({}, environ={})
        with pytest.raises(ValidationError):
            config.workload.name = "other"


class TestFileLoading:
    def test_from_file(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text(
            yaml.safe_dump(
                {
                    "workload": {"name": "web", "namespace": "prod"},
                    "timeouts": {"rollout": 120},
                    "gateway": {"concurrency_policy": "reject"},
                }
            )
        )

        config = DeployerConfig.from_file(str(path), environ={})

        assert config.workload.name == "web"
        assert config.workload.namespace == "prod"
        assert config.timeouts.rollout == 120
        assert config.timeouts.build == 1800
        assert config.gateway.concurrency_policy == "reject"

    def test_missing_file(self, tmp_path):
        with pytest.raises(InputError, match="not found"):
            DeployerConfig.from_file(str(tmp_path / "missing.yml"), environ={})

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("workload: [unclosed\n")
        with pytest.raises(InputError, match="not valid YAML"):
            DeployerConfig.from_file(str(path), environ={})

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(InputError, match="mapping"):
            DeployerConfig.from_file(str(path), environ={})

    def test_invalid_values(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text(yaml.safe_dump({"gateway": {"concurrency_policy": "parallel"}}))
        with pytest.raises(InputError, match="Invalid configuration"):
            DeployerConfig.from_file(str(path), environ={})

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text("")
        config = DeployerConfig.from_file(str(path), environ={})
        assert config.workload.name == "app"


class TestEnvironmentOverrides:
    def test_legacy_variable_names(self):
        config = DeployerConfig.from_env(
            {
                "REGISTRY_URL": "registry.local:5000",
                "APP_NAME": "shop",
                "K8S_NAMESPACE": "staging",
                "APP_REPO_PATH": "/home/deploy/shop",
                "WEBHOOK_SECRET": "s3cret",
            }
        )

        assert config.workload.registry_url == "registry.local:5000"
        assert config.workload.name == "shop"
        assert config.workload.namespace == "staging"
        assert config.workload.source_repo_path == "/home/deploy/shop"
        assert config.require_webhook_secret() == "s3cret"

    def test_environment_wins_over_file(self, tmp_path):
        path = tmp_path / "config.yml"
        path.write_text(yaml.safe_dump({"workload": {"name": "from-file", "branch": "main"}}))

        config = DeployerConfig.from_file(str(path), environ={"APP_NAME": "from-env"})

        assert config.workload.name == "from-env"
        assert config.workload.branch == "main"

    def test_prefixed_names_win_over_legacy_names(self):
        merged = apply_env_overrides(
            {}, {"APP_NAME": "legacy", "PUSH_DEPLOYER_WORKLOAD": "preferred"}
        )
        assert merged["workload"]["name"] == "preferred"

    def test_overrides_do_not_mutate_input(self):
        data = {"workload": {"name": "web"}}
        apply_env_overrides(data, {"APP_NAME": "other"})
        assert data == {"workload": {"name": "web"}}


class TestWebhookSecret:
    def test_missing_secret(self):
        config = DeployerConfig.from_dict({}, environ={})
        with pytest.raises(InputError, match="Webhook secret is not configured"):
            config.require_webhook_secret()

    def test_secret_is_not_saved(self, tmp_path):
        config = DeployerConfig.from_dict({"gateway": {"webhook_secret": "s3cret"}}, environ={})
        path = tmp_path / "config.yml"

        config.save(str(path))

        assert "s3cret" not in path.read_text()
        assert "webhook_secret" not in yaml.safe_load(path.read_text())["gateway"]

    def test_secret_hidden_in_repr(self):
        config = DeployerConfig.from_dict({"gateway": {"webhook_secret": "s3cret"}}, environ={})
        assert "s3cret" not in repr(config)


class TestGeneratedConfig:
    def test_generated_config_loads(self, tmp_path):
        path = tmp_path / "etc" / "config.yml"

        generate_default_config(str(path))
        config = DeployerConfig.from_file(str(path), environ={})

        assert config == DeployerConfig.from_dict({}, environ={})


class TestParseMemory:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("1536m", 1536 * 1024**2),
            ("2g", 2 * 1024**3),
            ("512K", 512 * 1024),
            ("1048576", 1048576),
            ("1.5g", int(1.5 * 1024**3)),
        ],
    )
    def test_sizes(self, value, expected):
        assert parse_memory(value) == expected

    def test_empty(self):
        with pytest.raises(ValueError):
            parse_memory("")

    @pytest.mark.parametrize("value", ["1.5 gigs", "0", "-1g"])
    def test_invalid_memory_limit_rejected_at_load(self, value):
        with pytest.raises(InputError, match="memory_limit"):
            DeployerConfig.from_dict({"build": {"memory_limit": value}}, environ={})
