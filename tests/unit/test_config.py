"""
Unit tests for dispatch settings and the config loader.
"""

import pytest

from cicd_dispatch.config.loader import load_config, parse_config
from cicd_dispatch.config.settings import DispatchSettings
from cicd_dispatch.domain.models import Capability, PipelineType, Priority
from cicd_dispatch.errors import ValidationError


class TestDispatchSettings:
    def test_defaults_are_valid(self):
        settings = DispatchSettings()
        assert settings.validate() == []
        assert settings.supersede_policy == "cancel"
        assert settings.retry_max == 3

    def test_from_mapping_coerces_types(self):
        settings = DispatchSettings.from_mapping(
            {"max_concurrency": "8", "retry_backoff_base_seconds": 1}
        )
        assert settings.max_concurrency == 8
        assert settings.retry_backoff_base_seconds == 1.0

    def test_environment_overrides_file(self):
        settings = DispatchSettings.from_mapping(
            {"max_concurrency": 2},
            env={"CICD_DISPATCH_MAX_CONCURRENCY": "6", "PATH": "/usr/bin"},
        )
        assert settings.max_concurrency == 6

    @pytest.mark.parametrize(
        "data,problem",
        [
            ({"max_concurrency": 0}, "max_concurrency"),
            ({"retry_max": "many"}, "invalid value"),
            ({"supersede_policy": "queue"}, "supersede_policy"),
            ({"colour": "blue"}, "unknown setting"),
        ],
    )
    def test_invalid_settings(self, data, problem):
        with pytest.raises(ValidationError) as exc_info:
            DispatchSettings.from_mapping(data)
        assert any(problem in p for p in exc_info.value.problems)

    def test_to_dict(self):
        assert DispatchSettings().to_dict()["log_format"] == "json"


class TestConfigLoader:
    def test_load_from_file(self, config_file, repo_root):
        config = load_config(config_file, repo_root=repo_root, env={})

        assert [c.id for c in config.components] == ["frontend", "backend"]
        assert config.pipeline("release").type == PipelineType.RELEASE
        assert config.pipeline("ci").priority == Priority.HIGH
        assert config.settings.max_concurrency == 4
        assert config.images["frontend"] == "ghcr.io/acme/frontend"
        assert config.stacks["frontend"][0].language == "node"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match="not found"):
            load_config(tmp_path / "nope.yaml", env={})

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "dispatch.yaml"
        path.write_text("components: [\n")
        with pytest.raises(ValidationError, match="not valid YAML"):
            load_config(path, env={})

    def test_schema_violation(self, config_data, repo_root):
        config_data["pipelines"][0]["jobs"][0]["kind"] = "compile"
        with pytest.raises(ValidationError, match="schema"):
            parse_config(config_data, repo_root=repo_root, env={})

    def test_unknown_dependency(self, config_data, repo_root):
        config_data["pipelines"][0]["jobs"][0]["depends_on"] = ["missing"]
        with pytest.raises(ValidationError) as exc_info:
            parse_config(config_data, repo_root=repo_root, env={})
        assert any("unknown job 'missing'" in p for p in exc_info.value.problems)

    def test_template_cycle(self, config_data, repo_root):
        jobs = config_data["pipelines"][0]["jobs"]
        jobs[1]["depends_on"] = ["build"]
        with pytest.raises(ValidationError) as exc_info:
            parse_config(config_data, repo_root=repo_root, env={})
        assert any("dependency cycle" in p for p in exc_info.value.problems)

    def test_duplicate_component(self, config_data, repo_root):
        config_data["components"].append({"id": "frontend", "paths": ["web/**"]})
        with pytest.raises(ValidationError, match="duplicate component"):
            parse_config(config_data, repo_root=repo_root, env={})

    def test_reserved_component_id(self, config_data, repo_root):
        config_data["components"].append({"id": "infrastructure", "paths": ["infra/**"]})
        with pytest.raises(ValidationError, match="reserved"):
            parse_config(config_data, repo_root=repo_root, env={})

    def test_unknown_selected_component(self, config_data, repo_root):
        config_data["pipelines"][0]["jobs"][0]["select"] = {"components": ["mobile"]}
        with pytest.raises(ValidationError, match="unknown component 'mobile'"):
            parse_config(config_data, repo_root=repo_root, env={})

    def test_capabilities(self, config_data, repo_root):
        config_data["components"][1]["capabilities"] = ["test"]
        config = parse_config(config_data, repo_root=repo_root, env={})
        assert config.component("backend").capabilities == frozenset({Capability.TEST})
        assert config.component("frontend").capabilities == frozenset(Capability)

    def test_custom_labels_replace_defaults(self, config_data, repo_root):
        config_data["labels"] = {"docs-only": {"suppress": [{"kind": "build"}]}}
        config = parse_config(config_data, repo_root=repo_root, env={})
        assert [rule.label for rule in config.label_rules] == ["docs-only"]

    def test_infrastructure_lookup(self, config):
        infra = config.component("infrastructure")
        assert infra.capabilities == frozenset()
        with pytest.raises(KeyError):
            config.component("mobile")
