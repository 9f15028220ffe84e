"""
CloudFormation template manager for injecting container environment variables.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .error_handling import ConfigError, ErrorHandler, TemplateError

logger = logging.getLogger(__name__)

TASK_DEFINITION_TYPE = 'AWS::ECS::TaskDefinition'


class CfnTag:
    """A CloudFormation short-form intrinsic such as ``!Ref`` or ``!Sub``."""

    def __init__(self, tag: str, value: Any):
        self.tag = tag
        self.value = value

    def __eq__(self, other):
        return isinstance(other, CfnTag) and self.tag == other.tag and self.value == other.value

    def __repr__(self):
        return f"CfnTag({self.tag!r}, {self.value!r})"


class CfnYamlLoader(yaml.SafeLoader):
    """SafeLoader that keeps CloudFormation intrinsic tags."""


class CfnYamlDumper(yaml.SafeDumper):
    """SafeDumper that writes CloudFormation intrinsic tags back in short form."""

    def choose_scalar_style(self):
        # PyYAML quotes every explicitly tagged scalar; keep `!Ref Name` plain
        if self.analysis is None:
            self.analysis = self.analyze_scalar(self.event.value)
        tag = self.event.tag or ''
        if (not self.event.style and tag.startswith('!') and not self.flow_level
                and self.analysis.allow_block_plain and not self.analysis.empty):
            return ''
        return super().choose_scalar_style()


def _construct_cfn_tag(loader, tag_suffix, node):
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    return CfnTag(f"!{tag_suffix}", value)


def _represent_cfn_tag(dumper, data):
    if isinstance(data.value, list):
        return dumper.represent_sequence(data.tag, data.value)
    if isinstance(data.value, dict):
        return dumper.represent_mapping(data.tag, data.value)
    return dumper.represent_scalar(data.tag, data.value)


def _represent_none(dumper, value):
    return dumper.represent_scalar('tag:yaml.org,2002:null', '')


CfnYamlLoader.add_multi_constructor('!', _construct_cfn_tag)
CfnYamlDumper.add_representer(CfnTag, _represent_cfn_tag)
CfnYamlDumper.add_representer(type(None), _represent_none)


def load_cloudformation_yaml(file_path) -> Any:
    """Load a CloudFormation YAML file, keeping intrinsic function tags."""
    with open(file_path, 'r', encoding='utf-8') as f:
        return yaml.load(f, Loader=CfnYamlLoader)


def dump_cloudformation_yaml(template: Dict, stream) -> None:
    yaml.dump(
        template,
        stream,
        Dumper=CfnYamlDumper,
        default_flow_style=False,
        sort_keys=False,
        indent=2,
        width=120,
        allow_unicode=True
    )


def parse_env_vars(raw: Optional[str]) -> Dict[str, str]:
    """Parse the environment-variable JSON blob given on the command line.

    Raises:
        ConfigError: If the blob is not a JSON object of scalar values.
    """
    if not raw:
        return {}

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Environment variables must be a JSON object: {e}")

    if not isinstance(data, dict):
        raise ConfigError("Environment variables must be a JSON object of NAME: value pairs")

    env_vars = {}
    for name, value in data.items():
        if isinstance(value, (dict, list)):
            raise ConfigError(f"Environment variable {name} must have a scalar value")
        if isinstance(value, bool):
            value = str(value).lower()
        env_vars[str(name)] = "" if value is None else str(value)
    return env_vars


class CloudFormationTemplateManager:
    """Manages CloudFormation template loading, modification, and saving."""

    def load_template(self, file_path: str) -> Dict:
        """Load and parse CloudFormation template from YAML file.

        Args:
            file_path: Path to template file.

        Returns:
            Parsed CloudFormation template as dictionary.

        Raises:
            TemplateError: If template cannot be loaded or parsed.
        """
        template_path = Path(file_path)

        if not template_path.exists():
            raise TemplateError(
                f"Template file not found: {template_path}",
                template_path=str(template_path)
            )

        try:
            template = load_cloudformation_yaml(template_path)
        except yaml.YAMLError as e:
            mark = getattr(e, 'problem_mark', None)
            raise TemplateError(
                f"Invalid YAML syntax in template: {str(e)}",
                template_path=str(template_path),
                line_number=mark.line + 1 if mark is not None else None
            )

        if not isinstance(template, dict):
            raise TemplateError(
                f"Template must be a YAML object, got {type(template).__name__}",
                template_path=str(template_path)
            )

        if not isinstance(template.get('Resources'), dict):
            raise TemplateError(
                "Template missing required section: Resources",
                template_path=str(template_path)
            )

        logger.debug(f"Loaded template {template_path} with {len(template['Resources'])} resources")
        return template

    def save_template(self, template: Dict, output_path: str) -> None:
        """Save CloudFormation template to YAML file.

        Raises:
            TemplateError: If template cannot be saved.
        """
        save_path = Path(output_path)
        try:
            with open(save_path, 'w', encoding='utf-8') as f:
                dump_cloudformation_yaml(template, f)
        except (OSError, yaml.YAMLError) as e:
            ErrorHandler.handle_file_error(e, str(save_path), "save")
            raise TemplateError(f"Failed to save template: {str(e)}", template_path=str(save_path))

        logger.info(f"Successfully saved template: {save_path}")

    def find_container_definition(self, template: Dict, container_name: Optional[str] = None) -> Dict:
        """Find a container definition inside the template's task definition.

        Args:
            template: CloudFormation template dictionary.
            container_name: Container to look for. Defaults to the first container.

        Raises:
            TemplateError: If no matching container definition exists.
        """
        for resource_name, resource in template.get('Resources', {}).items():
            if not isinstance(resource, dict) or resource.get('Type') != TASK_DEFINITION_TYPE:
                continue

            containers = resource.get('Properties', {}).get('ContainerDefinitions') or []
            if not isinstance(containers, list):
                continue

            for container in containers:
                if not isinstance(container, dict):
                    continue
                if container_name is None or container.get('Name') == container_name:
                    logger.debug(f"Using container definition {container.get('Name')} in {resource_name}")
                    return container

        target = f"container '{container_name}'" if container_name else "a container definition"
        raise TemplateError(f"Could not find {target} in any {TASK_DEFINITION_TYPE} resource")

    def add_environment(self, container: Dict, env_vars: Mapping[str, str]) -> List[str]:
        """Append variables the container does not already declare.

        Variables already declared in the template keep their template value.

        Returns:
            Names of the variables that were added.
        """
        environment = container.get('Environment')
        if environment is None:
            environment = []
            container['Environment'] = environment
        elif not isinstance(environment, list):
            raise TemplateError("Container Environment must be a list")

        existing = {entry.get('Name') for entry in environment if isinstance(entry, dict)}

        added = []
        for name, value in env_vars.items():
            if name in existing:
                logger.warning(f"Environment variable {name} already declared in template, keeping template value")
                continue
            environment.append({'Name': name, 'Value': str(value)})
            existing.add(name)
            added.append(name)

        return added

    def inject_environment(self, template_path: str, env_vars: Mapping[str, str],
                           container_name: Optional[str] = None) -> List[str]:
        """Inject environment variables into a task-definition template in place.

        Args:
            template_path: Path to the ECS service template.
            env_vars: Variables to add.
            container_name: Container to edit. Defaults to the first container.

        Returns:
            Names of the variables that were added.

        Raises:
            TemplateError: If the template does not exist, cannot be parsed, or
                has no container definition.
        """
        if not Path(template_path).exists():
            raise TemplateError(f"Template file not found: {template_path}", template_path=str(template_path))

        if not env_vars:
            logger.info("No environment variables to inject")
            return []

        template = self.load_template(template_path)
        container = self.find_container_definition(template, container_name)
        added = self.add_environment(container, env_vars)

        if added:
            self.save_template(template, template_path)
            logger.info(f"Injected {len(added)} environment variables into {template_path}: {', '.join(added)}")
        else:
            logger.info(f"All environment variables already declared in {template_path}")

        return added
