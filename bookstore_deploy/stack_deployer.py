"""
CloudFormation stack deployment.

Stacks are deployed with ``aws cloudformation deploy``, which creates the stack
when it is absent, updates it when the template or parameters changed and does
nothing otherwise. When the deploy fails the stack events recorded since the
deploy started are fetched and the failure-relevant ones are reported.
"""

import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from botocore.exceptions import ClientError

from .config import CLI_USAGE_EXIT_CODE, STACK_CAPABILITIES
from .data_models import DeployResult, StackEvent
from .error_handling import DeployError, ErrorHandler, UsageError
from .logging_utils import log_aws_cli, log_success

logger = logging.getLogger(__name__)

ParameterInput = Union[Mapping[str, Optional[str]], Sequence[Tuple[str, Optional[str]]]]


def build_parameter_overrides(parameters: ParameterInput) -> List[str]:
    """Build the ordered ``key=value`` list passed to the CLI.

    Pairs whose value is None are skipped.

    Raises:
        DeployError: If a key appears more than once.
    """
    pairs = parameters.items() if isinstance(parameters, Mapping) else parameters

    overrides = []
    seen = set()
    for key, value in pairs:
        if value is None:
            continue
        if key in seen:
            raise DeployError(f"Duplicate stack parameter: {key}")
        seen.add(key)
        overrides.append(f"{key}={value}")
    return overrides


class StackDeployer:
    """Deploys CloudFormation stacks and diagnoses failed deploys."""

    def __init__(self, cloudformation_client, region: str, profile: Optional[str] = None,
                 aws_cli: str = 'aws'):
        """Initialize the stack deployer.

        Args:
            cloudformation_client: boto3 CloudFormation client used for events and outputs.
            region: AWS region passed to the CLI.
            profile: Named profile passed to the CLI, if any.
            aws_cli: AWS CLI executable.
        """
        self.cf_client = cloudformation_client
        self.region = region
        self.profile = profile
        self.aws_cli = aws_cli

    def build_command(self, template_path: str, stack_name: str, region: str,
                      parameter_overrides: Iterable[str], tags: Optional[Mapping[str, str]] = None) -> List[str]:
        command = [
            self.aws_cli, 'cloudformation', 'deploy',
            '--template-file', str(template_path),
            '--stack-name', stack_name,
            '--region', region,
            '--capabilities', *STACK_CAPABILITIES,
            '--no-fail-on-empty-changeset'
        ]

        overrides = list(parameter_overrides)
        if overrides:
            command.extend(['--parameter-overrides', *overrides])

        if tags:
            command.extend(['--tags', *[f"{key}={value}" for key, value in tags.items()]])

        if self.profile:
            command.extend(['--profile', self.profile])

        return command

    def deploy(self, template_path: str, stack_name: str, region: Optional[str] = None,
               parameter_overrides: Iterable[str] = (),
               tags: Optional[Mapping[str, str]] = None) -> DeployResult:
        """Deploy a stack.

        Args:
            template_path: Path to the CloudFormation template.
            stack_name: Name of the stack.
            region: Region to deploy into. Defaults to the deployer's region.
            parameter_overrides: ``key=value`` strings.
            tags: Stack tags.

        Returns:
            DeployResult with the final stack status and outputs.

        Raises:
            UsageError: If the CLI rejected the arguments.
            DeployError: If the deploy failed.
        """
        region = region or self.region

        if not Path(template_path).exists():
            raise DeployError(f"Template file not found: {template_path}", stack_name=stack_name)

        command = self.build_command(template_path, stack_name, region, parameter_overrides, tags)

        logger.info(f"Deploying stack {stack_name} in {region} from {template_path}")
        logger.debug(f"Running: {' '.join(command)}")

        deploy_start_time = datetime.now(timezone.utc)
        try:
            completed = subprocess.run(command, capture_output=True, text=True)
        except FileNotFoundError:
            raise DeployError(
                f"AWS CLI executable not found: {self.aws_cli}",
                stack_name=stack_name,
                hints=["Install the AWS CLI v2 and make sure it is on PATH"]
            )

        log_aws_cli(logger, completed.stdout or "")
        log_aws_cli(logger, completed.stderr or "")

        if completed.returncode == CLI_USAGE_EXIT_CODE:
            raise UsageError(
                f"AWS CLI rejected the deploy arguments for stack {stack_name} "
                f"(exit code {completed.returncode})",
                stack_name=stack_name
            )

        if completed.returncode != 0:
            logger.error(f"Stack deploy failed for {stack_name} (exit code {completed.returncode})")
            events = self.describe_failure_events(stack_name, deploy_start_time)
            raise DeployError(
                f"Deployment of stack {stack_name} failed with exit code {completed.returncode}",
                stack_name=stack_name,
                events=events
            )

        changed = "No changes to deploy" not in (completed.stdout or "")
        if not changed:
            logger.info(f"No changes to deploy for stack {stack_name}")

        stack = self.describe_stack(stack_name)
        outputs = self._outputs_from_stack(stack)

        log_success(logger, f"Stack {stack_name} is {stack.get('StackStatus', 'UNKNOWN')}")
        return DeployResult(
            stack_name=stack_name,
            stack_status=stack.get('StackStatus', 'UNKNOWN'),
            changed=changed,
            start_time=deploy_start_time,
            outputs=outputs
        )

    def describe_failure_events(self, stack_name: str, since: datetime) -> List[StackEvent]:
        """List failure and rollback events recorded at or after ``since``.

        Events are logged as ``resource | status | reason`` and returned newest first.
        """
        try:
            paginator = self.cf_client.get_paginator('describe_stack_events')
            raw_events = []
            for page in paginator.paginate(StackName=stack_name):
                raw_events.extend(page.get('StackEvents', []))
        except ClientError as e:
            ErrorHandler.handle_aws_error(e, f"describe_stack_events {stack_name}")
            return []

        events = [StackEvent.from_api(event) for event in raw_events]
        failures = filter_failure_events(events, since)

        if failures:
            logger.error(f"Failure events for stack {stack_name}:")
            for event in failures:
                logger.error(f"  {event.format()}")
        else:
            logger.warning(f"No failure events found for stack {stack_name} since {since.isoformat()}")

        return failures

    def describe_stack(self, stack_name: str) -> Dict:
        try:
            response = self.cf_client.describe_stacks(StackName=stack_name)
        except ClientError as e:
            raise DeployError(
                f"Could not describe stack {stack_name}: {ErrorHandler.error_message(e)}",
                stack_name=stack_name
            )
        return response['Stacks'][0]

    def stack_exists(self, stack_name: str) -> bool:
        try:
            self.cf_client.describe_stacks(StackName=stack_name)
            return True
        except ClientError as e:
            if "does not exist" in str(e):
                return False
            raise

    def get_stack_outputs(self, stack_name: str) -> Dict[str, str]:
        return self._outputs_from_stack(self.describe_stack(stack_name))

    @staticmethod
    def _outputs_from_stack(stack: Dict) -> Dict[str, str]:
        outputs = {}
        for output in stack.get('Outputs', []):
            outputs[output['OutputKey']] = output['OutputValue']
        return outputs


def filter_failure_events(events: Iterable[StackEvent], since: datetime) -> List[StackEvent]:
    """Keep failure events at or after ``since``, newest first."""
    selected = [event for event in events if event.timestamp >= since and event.is_failure()]
    return sorted(selected, key=lambda event: event.timestamp, reverse=True)
