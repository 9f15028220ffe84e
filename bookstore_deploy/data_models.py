"""
Data models for the Bookstore deployment pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .config import ROLLBACK_STATUSES


class DeploymentTarget(Enum):
    """Compute platform the application is rolled out to."""
    EC2 = 'EC2'
    ECS = 'ECS'

    @classmethod
    def parse(cls, value: str) -> 'DeploymentTarget':
        """Parse a deployment type case-insensitively."""
        try:
            return cls(value.strip().upper())
        except (AttributeError, ValueError):
            raise ValueError(f"Invalid deployment type '{value}' (expected EC2 or ECS)")


class RolloutState(Enum):
    """States of a single rollout."""
    PACKAGING = 'Packaging'
    UPLOADING = 'Uploading'
    AWAITING_AGENT = 'AwaitingAgent'
    DISPATCHING = 'Dispatching'
    AWAITING_COMPLETION = 'AwaitingCompletion'
    DEPLOYING_STACK = 'DeployingStack'
    SUCCEEDED = 'Succeeded'
    FAILED = 'Failed'


@dataclass
class StackEvent:
    """A CloudFormation stack event."""
    timestamp: datetime
    logical_resource_id: str
    resource_status: str
    status_reason: Optional[str] = None
    resource_type: Optional[str] = None

    @classmethod
    def from_api(cls, event: Dict) -> 'StackEvent':
        """Build a StackEvent from a describe_stack_events entry."""
        return cls(
            timestamp=event['Timestamp'],
            logical_resource_id=event.get('LogicalResourceId', ''),
            resource_status=event.get('ResourceStatus', ''),
            status_reason=event.get('ResourceStatusReason'),
            resource_type=event.get('ResourceType')
        )

    def is_failure(self) -> bool:
        """Whether the event reports a failure or the start of a rollback."""
        status = self.resource_status or ''
        return status.endswith('FAILED') or status in ROLLBACK_STATUSES

    def format(self) -> str:
        parts = [self.logical_resource_id, self.resource_status]
        if self.status_reason:
            parts.append(self.status_reason)
        return " | ".join(parts)


@dataclass
class DeployResult:
    """Result of a stack deployment."""
    stack_name: str
    stack_status: str
    changed: bool
    start_time: datetime
    outputs: Dict[str, str] = field(default_factory=dict)


@dataclass
class CommandHandle:
    """A dispatched SSM command on one instance."""
    command_id: str
    instance_id: str
    document_name: str


@dataclass
class CommandResult:
    """Terminal state of a remote command invocation."""
    command_id: str
    instance_id: str
    status: str
    stdout: str = ""
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == 'Success'


@dataclass
class ServiceUnit:
    """systemd unit that runs the application on an EC2 instance."""
    description: str
    working_directory: str
    exec_start: str
    user: str
    log_path: str
    environment_file: Optional[str] = None
    restart: str = 'always'
    restart_sec: int = 10

    def render(self) -> str:
        """Render the unit file."""
        lines = [
            "[Unit]",
            f"Description={self.description}",
            "After=network.target",
            "",
            "[Service]",
            f"WorkingDirectory={self.working_directory}",
            f"ExecStart={self.exec_start}",
            f"User={self.user}",
            f"Restart={self.restart}",
            f"RestartSec={self.restart_sec}",
        ]
        if self.environment_file:
            # Leading '-' lets the service start when the file is absent
            lines.append(f"EnvironmentFile=-{self.environment_file}")
        lines.extend([
            f"StandardOutput=append:{self.log_path}",
            f"StandardError=append:{self.log_path}",
            "",
            "[Install]",
            "WantedBy=multi-user.target",
            ""
        ])
        return "\n".join(lines)


@dataclass
class RolloutResult:
    """Overall result of one deploy stage invocation."""
    target: DeploymentTarget
    state: RolloutState
    stdout: str = ""
    stderr: str = ""
    details: Dict[str, str] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == RolloutState.SUCCEEDED

    @property
    def summary(self) -> str:
        status = "✓" if self.succeeded else "✗"
        parts = [f"{status} {self.target.value} rollout {self.state.value}"]
        for key, value in self.details.items():
            parts.append(f"{key}: {value}")
        return " | ".join(parts)


@dataclass
class ErrorResponse:
    """Standardized error response."""
    error_type: str
    error_code: Optional[str]
    message: str
    details: Optional[str] = None

    def __str__(self) -> str:
        """String representation of error."""
        parts = [f"{self.error_type}: {self.message}"]
        if self.error_code:
            parts.append(f"Code: {self.error_code}")
        if self.details:
            parts.append(f"Details: {self.details}")
        return " | ".join(parts)
