"""
Configuration constants for the Bookstore deployment pipeline.
"""

import os
from pathlib import Path

# Bundled CloudFormation templates
TEMPLATE_DIR = Path(__file__).parent / "templates"

CONFIG = {
    # Application
    'app_name': os.getenv('APP_NAME', 'bookstore'),

    # AWS configuration
    'aws_region': os.getenv('AWS_REGION', 'us-east-1'),
    'aws_profile': os.getenv('AWS_PROFILE'),

    # Role assumption
    'deployment_role_suffix': os.getenv('DEPLOYMENT_ROLE_SUFFIX', 'deployment-role'),
    'role_session_name': 'bookstore-deployment',
    'role_session_duration': 3600,

    # Hand-off files
    'config_directory': os.getenv('DEPLOY_CONFIG_DIR', '.'),
    'infrastructure_config_file': 'infrastructure.config',
    'build_config_file': 'build.config',

    # Templates
    'ec2_infrastructure_template': str(TEMPLATE_DIR / 'ec2-infrastructure.yaml'),
    'ecs_infrastructure_template': str(TEMPLATE_DIR / 'ecs-infrastructure.yaml'),
    'ecs_service_template': str(TEMPLATE_DIR / 'ecs-service.yaml'),

    # Artifacts
    'artifact_bucket': os.getenv('ARTIFACT_BUCKET'),
    'artifact_key_prefix': 'releases',
    'archive_name': 'bookstore.zip',
    'install_directory': '/opt/bookstore',
    'service_user': 'ec2-user',
    'entry_point': 'Bookstore.Web.dll',
    'image_tag': 'latest',

    # Retry and polling
    'max_retry_attempts': 5,
    'retry_base_delay': 1.0,
    'agent_poll_attempts': 60,
    'agent_poll_interval': 5,
    'command_poll_interval': 5,

    # Remote execution
    'ssm_document_name': 'AWS-RunShellScript',
    'command_timeout_seconds': 3600,

    # ECS service defaults
    'ecs_cpu': '256',
    'ecs_memory': '512',
    'ecs_desired_count': '1',
    'container_port': '80',

    # EC2 infrastructure defaults
    'instance_type': 't3.small',

    # Logging configuration
    'log_level': os.getenv('LOG_LEVEL', 'INFO'),
    'verbose': os.getenv('VERBOSE', 'false').lower() == 'true'
}

# Exit code the AWS CLI uses for argument and usage errors
CLI_USAGE_EXIT_CODE = 254

# Stack event statuses that indicate a failed deploy, besides any *_FAILED status
ROLLBACK_STATUSES = ('ROLLBACK_STARTED', 'ROLLBACK_IN_PROGRESS')

# Capabilities passed to every stack deploy
STACK_CAPABILITIES = ['CAPABILITY_IAM', 'CAPABILITY_NAMED_IAM']

# S3 error codes that are never transient
NON_RETRYABLE_UPLOAD_ERRORS = {'NoSuchBucket', 'AccessDenied', 'AllAccessDisabled', '403', '404'}

# SSM error codes that are never transient
NON_RETRYABLE_DISPATCH_ERRORS = {
    'InvalidInstanceId',
    'InvalidDocument',
    'AccessDenied',
    'AccessDeniedException',
    'UnauthorizedOperation'
}

# SSM invocation statuses that mean the command is still running
COMMAND_IN_PROGRESS_STATUSES = ('Pending', 'InProgress', 'Delayed')

# Hand-off keys written by the build and infra stages
HANDOFF_KEYS = {
    'cluster_name': 'ECSClusterName',
    'instance_id': 'InstanceId',
    'image_uri': 'ContainerImageUri',
    'artifact_uri': 'S3ArtifactUri',
    'artifact_bucket': 'ArtifactBucket',
    'stack_name': 'StackName',
    'region': 'Region'
}

# Tags applied to every stack the pipeline deploys
DEFAULT_STACK_TAGS = {
    'Project': 'Bookstore',
    'ManagedBy': 'bookstore-deploy'
}
