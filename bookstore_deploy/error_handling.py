"""
Error handling utilities for the deployment pipeline.
"""

import logging
from typing import List, Optional

from botocore.exceptions import ClientError

from .data_models import ErrorResponse

logger = logging.getLogger(__name__)

ROLE_ASSUMPTION_HINTS = [
    "Verify the deployment role exists in the target account (aws iam get-role --role-name <role>)",
    "Verify the caller is allowed to call sts:AssumeRole on the deployment role",
    "Verify the role's trust policy lists the caller's account or principal"
]

BUCKET_ACCESS_HINTS = [
    "Verify the artifact bucket exists (aws s3 ls s3://<bucket>)",
    "Verify the bucket is in the expected region",
    "Verify the deployment role has s3:PutObject and s3:ListBucket on the bucket"
]

DISPATCH_HINTS = [
    "Verify the instance id is correct and the instance is running",
    "Verify the instance profile grants the SSM agent AmazonSSMManagedInstanceCore",
    "Verify the deployment role has ssm:SendCommand on the instance"
]


class ErrorHandler:
    """Centralized error handling for the deployment pipeline."""

    @staticmethod
    def error_code(error: Exception) -> Optional[str]:
        """Extract the AWS error code from a ClientError."""
        if isinstance(error, ClientError):
            return error.response.get('Error', {}).get('Code')
        return None

    @staticmethod
    def error_message(error: Exception) -> str:
        if isinstance(error, ClientError):
            return error.response.get('Error', {}).get('Message', str(error))
        return str(error)

    @staticmethod
    def handle_aws_error(error: ClientError, context: str = "") -> ErrorResponse:
        """Handle AWS API errors with detailed information."""
        error_code = ErrorHandler.error_code(error) or 'Unknown'
        error_message = ErrorHandler.error_message(error)

        logger.error(f"AWS API Error in {context}: {error_code} - {error_message}")

        return ErrorResponse(
            error_type="AWS_API_ERROR",
            error_code=error_code,
            message=error_message,
            details=f"Context: {context}" if context else None
        )

    @staticmethod
    def handle_file_error(error: Exception, file_path: str, operation: str) -> ErrorResponse:
        """Handle file system errors with path information."""
        logger.error(f"File {operation} error for {file_path}: {str(error)}")

        return ErrorResponse(
            error_type="FILE_ERROR",
            error_code=type(error).__name__,
            message=f"Failed to {operation} file: {file_path}",
            details=str(error)
        )

    @staticmethod
    def log_hints(hints: List[str]) -> None:
        """Log remediation hints, one per line."""
        for hint in hints:
            logger.error(f"  - {hint}")


class DeploymentException(Exception):
    """Base exception for every pipeline failure."""

    def __init__(self, message: str, hints: Optional[List[str]] = None):
        super().__init__(message)
        self.hints = list(hints or [])


class ConfigError(DeploymentException):
    """Hand-off file or parameter problem."""


class ParseError(ConfigError):
    """Hand-off file exists but is not a flat JSON object."""

    def __init__(self, message: str, file_path: Optional[str] = None):
        super().__init__(message)
        self.file_path = file_path


class AuthError(DeploymentException):
    """Deployment role could not be assumed."""

    def __init__(self, message: str, role_arn: Optional[str] = None):
        super().__init__(message, hints=ROLE_ASSUMPTION_HINTS)
        self.role_arn = role_arn


class DeployError(DeploymentException):
    """Stack deployment failed."""

    def __init__(self, message: str, stack_name: Optional[str] = None,
                 events: Optional[list] = None, hints: Optional[List[str]] = None):
        super().__init__(message, hints=hints)
        self.stack_name = stack_name
        self.events = list(events or [])


class UsageError(DeployError):
    """The AWS CLI rejected the deploy arguments."""


class ArchiveError(DeploymentException):
    """Application artifact could not be produced."""


class UploadError(DeploymentException):
    """Artifact upload failed."""

    def __init__(self, message: str, bucket: Optional[str] = None,
                 attempts: int = 0, hints: Optional[List[str]] = None):
        super().__init__(message, hints=hints)
        self.bucket = bucket
        self.attempts = attempts


class TemplateError(DeploymentException):
    """CloudFormation template could not be read or edited."""

    def __init__(self, message: str, template_path: Optional[str] = None, line_number: Optional[int] = None):
        super().__init__(message)
        self.template_path = template_path
        self.line_number = line_number


class AgentTimeoutError(DeploymentException):
    """SSM agent never came online."""

    def __init__(self, message: str, instance_id: Optional[str] = None):
        super().__init__(message, hints=DISPATCH_HINTS[:2])
        self.instance_id = instance_id


class DispatchError(DeploymentException):
    """Remote command could not be sent."""

    def __init__(self, message: str, instance_id: Optional[str] = None, attempts: int = 0):
        super().__init__(message, hints=DISPATCH_HINTS)
        self.instance_id = instance_id
        self.attempts = attempts


class RemoteExecutionError(DeploymentException):
    """Remote command finished in a non-success state."""

    def __init__(self, message: str, status: Optional[str] = None,
                 stderr: str = "", command_id: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.stderr = stderr
        self.command_id = command_id
