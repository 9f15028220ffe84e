"""
Unit tests for CloudFormationTemplateManager.
"""

import io
import logging

import pytest
import yaml

from ..error_handling import ConfigError, TemplateError
from ..template_manager import (
    CfnTag,
    CfnYamlLoader,
    CloudFormationTemplateManager,
    dump_cloudformation_yaml,
    load_cloudformation_yaml,
    parse_env_vars,
)


class TestCloudFormationYaml:
    """Test intrinsic tag handling."""

    def test_short_form_tags_survive_round_trip(self, ecs_template_file):
        template = load_cloudformation_yaml(ecs_template_file)

        family = template['Resources']['TaskDefinition']['Properties']['Family']
        assert family == CfnTag('!Ref', 'AppName')

        stream = io.StringIO()
        dump_cloudformation_yaml(template, stream)
        text = stream.getvalue()

        assert "!Ref AppName" in text
        assert "!Sub /ecs/${AppName}" in text
        assert "!GetAtt Service.Name" in text
        assert "!Split" in text and "!ImportValue shared-subnets" in text
        assert yaml.load(text, Loader=CfnYamlLoader) == template

    def test_key_order_preserved(self, ecs_template_file):
        template = load_cloudformation_yaml(ecs_template_file)

        stream = io.StringIO()
        dump_cloudformation_yaml(template, stream)

        assert list(yaml.load(stream.getvalue(), Loader=CfnYamlLoader)) == \
            ['AWSTemplateFormatVersion', 'Description', 'Parameters', 'Resources', 'Outputs']


class TestParseEnvVars:
    """Test parsing of the environment-variable argument."""

    def test_empty(self):
        assert parse_env_vars(None) == {}
        assert parse_env_vars("") == {}

    def test_scalars_become_strings(self):
        assert parse_env_vars('{"A": "x", "PORT": 80, "DEBUG": false, "NONE": null}') == \
            {"A": "x", "PORT": "80", "DEBUG": "false", "NONE": ""}

    @pytest.mark.parametrize("raw", ['not json', '["A"]', '{"A": {"nested": 1}}'])
    def test_invalid(self, raw):
        with pytest.raises(ConfigError):
            parse_env_vars(raw)


class TestCloudFormationTemplateManager:
    """Test cases for CloudFormationTemplateManager class."""

    @pytest.fixture
    def manager(self):
        return CloudFormationTemplateManager()

    def container(self, template_path):
        template = load_cloudformation_yaml(template_path)
        return template['Resources']['TaskDefinition']['Properties']['ContainerDefinitions'][0]

    def test_inject_keeps_existing_and_appends_new(self, manager, ecs_template_file, caplog):
        with caplog.at_level(logging.WARNING):
            added = manager.inject_environment(str(ecs_template_file), {"A": "2", "B": "3"})

        assert added == ["B"]
        assert self.container(ecs_template_file)['Environment'] == [
            {'Name': 'A', 'Value': '1'},
            {'Name': 'B', 'Value': '3'},
        ]
        assert "A already declared" in caplog.text

    def test_inject_preserves_intrinsic_tags(self, manager, ecs_template_file):
        manager.inject_environment(str(ecs_template_file), {"B": "3"})

        text = ecs_template_file.read_text(encoding='utf-8')
        assert "!Ref ContainerImageUri" in text
        assert "!Ref AWS::Region" in text
        assert "!Sub /ecs/${AppName}" in text

    def test_inject_creates_environment_list(self, manager, tmp_path):
        path = tmp_path / "service.yaml"
        path.write_text(
            "Resources:\n"
            "  Task:\n"
            "    Type: AWS::ECS::TaskDefinition\n"
            "    Properties:\n"
            "      ContainerDefinitions:\n"
            "        - Name: web\n"
            "          Image: nginx\n",
            encoding='utf-8'
        )

        manager.inject_environment(str(path), {"ASPNETCORE_ENVIRONMENT": "Production"})

        container = load_cloudformation_yaml(path)['Resources']['Task']['Properties']['ContainerDefinitions'][0]
        assert container['Environment'] == [{'Name': 'ASPNETCORE_ENVIRONMENT', 'Value': 'Production'}]

    def test_inject_empty_leaves_file_untouched(self, manager, ecs_template_file):
        before = ecs_template_file.read_text(encoding='utf-8')

        assert manager.inject_environment(str(ecs_template_file), {}) == []
        assert ecs_template_file.read_text(encoding='utf-8') == before

    def test_inject_all_existing_leaves_file_untouched(self, manager, ecs_template_file):
        before = ecs_template_file.read_text(encoding='utf-8')

        assert manager.inject_environment(str(ecs_template_file), {"A": "9"}) == []
        assert ecs_template_file.read_text(encoding='utf-8') == before

    def test_inject_missing_template(self, manager, tmp_path):
        with pytest.raises(TemplateError, match="not found"):
            manager.inject_environment(str(tmp_path / "missing.yaml"), {})

    def test_find_container_by_name(self, manager, ecs_template_file):
        template = manager.load_template(str(ecs_template_file))
        assert manager.find_container_definition(template, "web")['Name'] == "web"

        with pytest.raises(TemplateError, match="sidecar"):
            manager.find_container_definition(template, "sidecar")

    def test_template_without_task_definition(self, manager, tmp_path):
        path = tmp_path / "bucket.yaml"
        path.write_text("Resources:\n  Bucket:\n    Type: AWS::S3::Bucket\n", encoding='utf-8')

        with pytest.raises(TemplateError):
            manager.inject_environment(str(path), {"A": "1"})

    def test_load_invalid_yaml_reports_line(self, manager, tmp_path):
        path = tmp_path / "invalid.yaml"
        path.write_text("Resources:\n  Bad: [\n", encoding='utf-8')

        with pytest.raises(TemplateError) as exc_info:
            manager.load_template(str(path))

        assert "Invalid YAML" in str(exc_info.value)
        assert exc_info.value.line_number is not None

    def test_load_missing_resources(self, manager, tmp_path):
        path = tmp_path / "no-resources.yaml"
        path.write_text("Description: nothing here\n", encoding='utf-8')

        with pytest.raises(TemplateError, match="Resources"):
            manager.load_template(str(path))
