"""
Bookstore deployment pipeline

Builds, provisions and rolls out the Bookstore application to EC2 or ECS
using CloudFormation, S3, SSM Run Command and ECR.
"""

from .config import CONFIG
from .config_store import ConfigStore
from .data_models import DeploymentTarget, DeployResult, RolloutResult, RolloutState, StackEvent
from .orchestrator import DeploymentOrchestrator

__all__ = [
    'CONFIG',
    'ConfigStore',
    'DeploymentTarget',
    'DeployResult',
    'RolloutResult',
    'RolloutState',
    'StackEvent',
    'DeploymentOrchestrator'
]
