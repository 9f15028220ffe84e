"""
Remote command execution through SSM Run Command.
"""

import logging
import time
from typing import Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .config import COMMAND_IN_PROGRESS_STATUSES, CONFIG, NON_RETRYABLE_DISPATCH_ERRORS
from .data_models import CommandHandle, CommandResult
from .error_handling import (
    AgentTimeoutError,
    DispatchError,
    ErrorHandler,
    RemoteExecutionError,
)
from .logging_utils import log_success
from .retry import RetryExhaustedError, RetryPolicy

logger = logging.getLogger(__name__)


def is_retryable_dispatch_error(error: Exception) -> bool:
    """Unknown instances and denied access are permanent, everything else is retried."""
    return ErrorHandler.error_code(error) not in NON_RETRYABLE_DISPATCH_ERRORS


class RemoteExecutor:
    """Sends commands to an instance's SSM agent and waits for their result."""

    def __init__(self, ssm_client, retry_policy: Optional[RetryPolicy] = None,
                 poll_interval: Optional[float] = None):
        self.ssm_client = ssm_client
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=CONFIG['max_retry_attempts'],
            base_delay=CONFIG['retry_base_delay'],
            is_retryable=is_retryable_dispatch_error
        )
        self.poll_interval = poll_interval if poll_interval is not None else CONFIG['command_poll_interval']

    def get_ping_status(self, instance_id: str) -> Optional[str]:
        response = self.ssm_client.describe_instance_information(
            Filters=[{'Key': 'InstanceIds', 'Values': [instance_id]}]
        )
        instances = response.get('InstanceInformationList', [])
        if not instances:
            return None
        return instances[0].get('PingStatus')

    def wait_for_agent_ready(self, instance_id: str, timeout_polls: Optional[int] = None,
                             poll_interval: Optional[float] = None) -> bool:
        """Poll until the instance's SSM agent reports Online.

        Args:
            instance_id: Target EC2 instance.
            timeout_polls: Maximum number of polls.
            poll_interval: Seconds between polls.

        Returns:
            True once the agent is Online, False when the poll budget is spent.
        """
        if timeout_polls is None:
            timeout_polls = CONFIG['agent_poll_attempts']
        poll_interval = poll_interval if poll_interval is not None else CONFIG['agent_poll_interval']

        logger.info(f"Waiting for SSM agent on {instance_id} (up to {timeout_polls * poll_interval:g}s)")

        for poll in range(1, timeout_polls + 1):
            try:
                status = self.get_ping_status(instance_id)
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"Could not query SSM agent status: {ErrorHandler.error_message(e)}")
                status = None

            if status == 'Online':
                log_success(logger, f"SSM agent on {instance_id} is Online (poll {poll}/{timeout_polls})")
                return True

            logger.debug(f"SSM agent status on {instance_id}: {status or 'not registered'} "
                         f"(poll {poll}/{timeout_polls})")
            if poll < timeout_polls:
                time.sleep(poll_interval)

        logger.error(f"SSM agent on {instance_id} did not come online after {timeout_polls} polls")
        return False

    def require_agent_ready(self, instance_id: str, timeout_polls: Optional[int] = None,
                            poll_interval: Optional[float] = None) -> None:
        """Like wait_for_agent_ready but raises AgentTimeoutError on timeout."""
        if not self.wait_for_agent_ready(instance_id, timeout_polls, poll_interval):
            raise AgentTimeoutError(
                f"SSM agent on instance {instance_id} never reached Online",
                instance_id=instance_id
            )

    def dispatch(self, instance_id: str, document_name: str, parameters: Dict[str, List[str]],
                 comment: Optional[str] = None) -> CommandHandle:
        """Send a command document to the instance.

        Raises:
            DispatchError: On a permanent error or after the last attempt.
        """
        request = {
            'InstanceIds': [instance_id],
            'DocumentName': document_name,
            'Parameters': parameters,
            'TimeoutSeconds': CONFIG['command_timeout_seconds']
        }
        if comment:
            request['Comment'] = comment[:100]

        logger.info(f"Dispatching {document_name} to {instance_id}")
        try:
            response = self.retry_policy.execute(
                self.ssm_client.send_command,
                description=f"send_command to {instance_id}",
                **request
            )
        except RetryExhaustedError as e:
            raise DispatchError(
                f"Could not send command to {instance_id} after {e.attempts} attempts: {e.last_error}",
                instance_id=instance_id, attempts=e.attempts
            )
        except ClientError as e:
            ErrorHandler.handle_aws_error(e, f"send_command {instance_id}")
            raise DispatchError(
                f"Could not send command to {instance_id}: {ErrorHandler.error_message(e)}",
                instance_id=instance_id, attempts=1
            )

        command_id = response['Command']['CommandId']
        logger.info(f"Command {command_id} sent to {instance_id}")
        return CommandHandle(command_id=command_id, instance_id=instance_id, document_name=document_name)

    def await_completion(self, handle: CommandHandle) -> CommandResult:
        """Poll the invocation until it reaches a terminal status.

        There is no poll limit; the command's own execution timeout bounds the wait.

        Raises:
            RemoteExecutionError: If the command did not finish with Success or
                its status cannot be read because of a permanent error.
        """
        logger.info(f"Waiting for command {handle.command_id} on {handle.instance_id}")

        while True:
            try:
                invocation = self.ssm_client.get_command_invocation(
                    CommandId=handle.command_id,
                    InstanceId=handle.instance_id
                )
            except ClientError as e:
                code = ErrorHandler.error_code(e)
                # The invocation is not visible immediately after send_command
                if code != 'InvocationDoesNotExist':
                    if not is_retryable_dispatch_error(e):
                        ErrorHandler.handle_aws_error(e, f"get_command_invocation {handle.command_id}")
                        raise RemoteExecutionError(
                            f"Could not read status of command {handle.command_id} on {handle.instance_id}: "
                            f"{ErrorHandler.error_message(e)}",
                            status=code, command_id=handle.command_id
                        )
                    logger.warning(f"Transient error polling command {handle.command_id} ({code}), retrying")
                status = 'Pending'
                invocation = {}
            except BotoCoreError as e:
                logger.warning(f"Transient error polling command {handle.command_id}: {e}, retrying")
                status = 'Pending'
                invocation = {}
            else:
                status = invocation.get('Status', 'Pending')

            if status not in COMMAND_IN_PROGRESS_STATUSES:
                break

            logger.debug(f"Command {handle.command_id} status: {status}")
            time.sleep(self.poll_interval)

        result = CommandResult(
            command_id=handle.command_id,
            instance_id=handle.instance_id,
            status=status,
            stdout=invocation.get('StandardOutputContent', '') or '',
            stderr=invocation.get('StandardErrorContent', '') or ''
        )

        if not result.succeeded:
            logger.error(f"Command {handle.command_id} finished with status {status}")
            if result.stderr:
                for line in result.stderr.splitlines():
                    logger.error(f"  {line}")
            raise RemoteExecutionError(
                f"Remote command {handle.command_id} on {handle.instance_id} finished with status {status}",
                status=status, stderr=result.stderr, command_id=handle.command_id
            )

        log_success(logger, f"Command {handle.command_id} completed successfully")
        return result

    def run_commands(self, instance_id: str, commands: List[str], comment: Optional[str] = None) -> CommandResult:
        """Dispatch shell commands with AWS-RunShellScript and wait for the result."""
        handle = self.dispatch(
            instance_id,
            CONFIG['ssm_document_name'],
            {'commands': commands},
            comment=comment
        )
        return self.await_completion(handle)
