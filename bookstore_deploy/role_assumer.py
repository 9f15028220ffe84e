"""
Deployment role assumption.

Exchanges the caller's identity for temporary credentials of the
``<app>-<suffix>`` role in the caller's account and installs them as the
credential context for the rest of the process.
"""

import logging
import os
from typing import Dict, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .aws_session import AwsContext
from .config import CONFIG
from .error_handling import AuthError, ErrorHandler
from .logging_utils import log_success

logger = logging.getLogger(__name__)


class RoleAssumer:
    """Assumes the fixed deployment role and activates its credentials."""

    def __init__(self, aws_context: AwsContext, app_name: Optional[str] = None,
                 role_suffix: Optional[str] = None, session_name: Optional[str] = None):
        self.aws_context = aws_context
        self.app_name = app_name or CONFIG['app_name']
        self.role_suffix = role_suffix or CONFIG['deployment_role_suffix']
        self.session_name = session_name or CONFIG['role_session_name']

    @property
    def role_name(self) -> str:
        return f"{self.app_name}-{self.role_suffix}"

    def build_role_arn(self, account_id: str) -> str:
        return f"arn:aws:iam::{account_id}:role/{self.role_name}"

    def get_account_id(self) -> str:
        """Resolve the caller's account id."""
        sts_client = self.aws_context.client('sts')
        try:
            identity = sts_client.get_caller_identity()
        except (ClientError, BotoCoreError) as e:
            raise AuthError(f"Could not resolve caller identity: {e}")

        logger.info(f"Caller identity: {identity.get('Arn', 'unknown')}")
        return identity['Account']

    def assume(self) -> Dict[str, str]:
        """Assume the deployment role and install its credentials.

        Returns:
            The temporary credentials (AccessKeyId, SecretAccessKey, SessionToken).

        Raises:
            AuthError: If the caller identity cannot be resolved or the role cannot be assumed.
        """
        account_id = self.get_account_id()
        role_arn = self.build_role_arn(account_id)

        logger.info(f"Assuming deployment role: {role_arn}")
        sts_client = self.aws_context.client('sts')

        try:
            response = sts_client.assume_role(
                RoleArn=role_arn,
                RoleSessionName=self.session_name,
                DurationSeconds=CONFIG['role_session_duration']
            )
        except ClientError as e:
            ErrorHandler.handle_aws_error(e, f"AssumeRole {role_arn}")
            raise AuthError(
                f"Failed to assume role {role_arn}: {ErrorHandler.error_message(e)}",
                role_arn=role_arn
            )
        except BotoCoreError as e:
            raise AuthError(f"Failed to assume role {role_arn}: {e}", role_arn=role_arn)

        credentials = response['Credentials']
        self.install(credentials)

        assumed_user = response.get('AssumedRoleUser', {})
        log_success(logger, f"Assumed role {assumed_user.get('Arn', role_arn)}")
        return {
            'AccessKeyId': credentials['AccessKeyId'],
            'SecretAccessKey': credentials['SecretAccessKey'],
            'SessionToken': credentials['SessionToken']
        }

    def install(self, credentials: Dict[str, str]) -> None:
        """Activate temporary credentials for boto3 clients and AWS CLI subprocesses."""
        session = boto3.Session(
            aws_access_key_id=credentials['AccessKeyId'],
            aws_secret_access_key=credentials['SecretAccessKey'],
            aws_session_token=credentials['SessionToken'],
            region_name=self.aws_context.region
        )
        self.aws_context.install_session(session)

        os.environ['AWS_ACCESS_KEY_ID'] = credentials['AccessKeyId']
        os.environ['AWS_SECRET_ACCESS_KEY'] = credentials['SecretAccessKey']
        os.environ['AWS_SESSION_TOKEN'] = credentials['SessionToken']
        # A profile would take precedence over the exported keys in the AWS CLI
        os.environ.pop('AWS_PROFILE', None)
