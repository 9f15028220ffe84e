"""
Command-line interface for the Bookstore deployment pipeline.
"""

import argparse
import logging
import sys
import traceback
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .config import CLI_USAGE_EXIT_CODE, CONFIG
from .data_models import DeploymentTarget
from .error_handling import DeploymentException, ErrorHandler, UsageError
from .logging_utils import setup_logging
from .orchestrator import DeploymentOrchestrator
from .template_manager import parse_env_vars

logger = logging.getLogger(__name__)


def deployment_type(value: str) -> DeploymentTarget:
    """argparse type for --deployment-type."""
    try:
        return DeploymentTarget.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser.

    Returns:
        Configured ArgumentParser instance.
    """
    common = argparse.ArgumentParser(add_help=False)

    common.add_argument(
        '--deployment-type', '-t',
        required=True,
        type=deployment_type,
        metavar='{EC2,ECS}',
        help='Compute platform to deploy to'
    )

    aws_group = common.add_argument_group('AWS Configuration')
    aws_group.add_argument(
        '--app-name',
        default=CONFIG['app_name'],
        help=f'Application name used for stacks, roles and artifacts (default: {CONFIG["app_name"]})'
    )
    aws_group.add_argument(
        '--region',
        default=CONFIG['aws_region'],
        help=f'AWS region for operations (default: {CONFIG["aws_region"]})'
    )
    aws_group.add_argument(
        '--profile',
        default=CONFIG['aws_profile'],
        help='AWS profile to use for authentication (default: use default credentials chain)'
    )
    aws_group.add_argument(
        '--skip-role-assumption',
        action='store_true',
        help='Use the caller credentials instead of assuming the deployment role'
    )
    aws_group.add_argument(
        '--config-dir',
        default=CONFIG['config_directory'],
        help='Directory holding infrastructure.config and build.config (default: current directory)'
    )

    logging_group = common.add_argument_group('Logging Options')
    logging_group.add_argument(
        '--verbose', '-v',
        action='store_true',
        default=CONFIG['verbose'],
        help='Enable verbose logging'
    )
    logging_group.add_argument(
        '--log-file',
        help='Write logs to specified file'
    )

    parser = argparse.ArgumentParser(
        prog='bookstore-deploy',
        description='Build, provision and deploy the Bookstore application to EC2 or ECS',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Package the published app and upload it for an EC2 rollout
  bookstore-deploy build -t EC2 --publish-dir ./publish --artifact-bucket my-artifacts

  # Build and push the container image for ECS
  bookstore-deploy build -t ECS --docker-context .

  # Provision the ECS cluster and network resources
  bookstore-deploy infra -t ECS --vpc-id vpc-123 --subnet-ids subnet-a,subnet-b

  # Deploy the ECS service with extra environment variables
  bookstore-deploy deploy -t ECS --environment-variables '{"ASPNETCORE_ENVIRONMENT": "Production"}'

  # Roll out to an EC2 instance using the caller's credentials
  bookstore-deploy deploy -t EC2 --skip-role-assumption
        """
    )
    subparsers = parser.add_subparsers(dest='stage', metavar='{build,infra,deploy}')
    subparsers.required = True

    build = subparsers.add_parser('build', parents=[common], help='Package or containerize the application')
    build.add_argument('--publish-dir', help='Published application directory (EC2)')
    build.add_argument('--artifact-bucket', help='S3 bucket for the application archive (EC2)')
    build.add_argument('--docker-context', help='Docker build context (ECS)')
    build.add_argument('--dockerfile', help='Dockerfile path (ECS)')
    build.add_argument('--image-tag', default=CONFIG['image_tag'], help='Image tag (ECS)')

    infra = subparsers.add_parser('infra', parents=[common], help='Provision infrastructure stack')
    infra.add_argument('--template', help='Infrastructure CloudFormation template')
    infra.add_argument('--vpc-id', help='VPC to deploy into')
    infra.add_argument('--subnet-ids', help='Comma-separated subnet ids')
    infra.add_argument('--instance-type', help=f'EC2 instance type (default: {CONFIG["instance_type"]})')
    infra.add_argument('--key-name', help='EC2 key pair name')
    infra.add_argument('--cluster-name', help='ECS cluster name')

    deploy = subparsers.add_parser('deploy', parents=[common], help='Roll the application out')
    deploy.add_argument('--template', help='ECS service CloudFormation template')
    deploy.add_argument('--instance-id', help='Target EC2 instance (default: from infrastructure.config)')
    deploy.add_argument('--cluster-name', help='ECS cluster (default: from infrastructure.config)')
    deploy.add_argument('--image-uri', help='Container image URI (default: from build.config)')
    deploy.add_argument('--cpu', help=f'Task CPU units (default: {CONFIG["ecs_cpu"]})')
    deploy.add_argument('--memory', help=f'Task memory in MiB (default: {CONFIG["ecs_memory"]})')
    deploy.add_argument('--desired-count', help=f'Number of tasks (default: {CONFIG["ecs_desired_count"]})')
    deploy.add_argument('--container-port', help=f'Container port (default: {CONFIG["container_port"]})')
    deploy.add_argument('--environment-variables', help='JSON object of environment variables')
    deploy.add_argument('--publish-dir', help='Package this directory instead of using the build stage artifact (EC2)')
    deploy.add_argument('--artifact-bucket', help='S3 bucket for the application archive (EC2)')

    return parser


def create_orchestrator(args: argparse.Namespace) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        target=args.deployment_type,
        app_name=args.app_name,
        region=args.region,
        profile=args.profile,
        config_directory=args.config_dir,
        skip_role_assumption=args.skip_role_assumption
    )


def run_stage(args: argparse.Namespace) -> int:
    """Run the selected stage.

    Returns:
        Exit code (0 for success).
    """
    orchestrator = create_orchestrator(args)

    if args.stage == 'build':
        values = orchestrator.run_build(
            publish_dir=args.publish_dir,
            artifact_bucket=args.artifact_bucket,
            docker_context=args.docker_context,
            dockerfile=args.dockerfile,
            image_tag=args.image_tag
        )
        print("\nBuild outputs:")
        for key, value in values.items():
            print(f"  {key}: {value}")
        return 0

    if args.stage == 'infra':
        result = orchestrator.run_infra(
            template_path=args.template,
            vpc_id=args.vpc_id,
            subnet_ids=args.subnet_ids,
            instance_type=args.instance_type,
            key_name=args.key_name,
            cluster_name=args.cluster_name
        )
        print(f"\nStack {result.stack_name}: {result.stack_status}")
        for key, value in result.outputs.items():
            print(f"  {key}: {value}")
        return 0

    result = orchestrator.run_deploy(
        instance_id=args.instance_id,
        cluster_name=args.cluster_name,
        image_uri=args.image_uri,
        cpu=args.cpu,
        memory=args.memory,
        desired_count=args.desired_count,
        container_port=args.container_port,
        env_vars=parse_env_vars(args.environment_variables),
        template_path=args.template,
        publish_dir=args.publish_dir,
        artifact_bucket=args.artifact_bucket
    )
    print("\n" + result.summary)
    if result.stdout:
        print("\nRemote output:")
        print(result.stdout)
    return 0 if result.succeeded else 1


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose, log_file=args.log_file)

    try:
        return run_stage(args)
    except UsageError as e:
        logger.error(str(e))
        parser.print_usage(sys.stderr)
        return CLI_USAGE_EXIT_CODE
    except DeploymentException as e:
        logger.error(str(e))
        if e.hints:
            logger.error("Possible causes:")
            ErrorHandler.log_hints(e.hints)
        return 1
    except KeyboardInterrupt:
        print("\nOperation cancelled by user", file=sys.stderr)
        return 130  # Standard exit code for SIGINT
    except ClientError as e:
        response = ErrorHandler.handle_aws_error(e, f"{args.stage} stage")
        print(f"\n{response}", file=sys.stderr)
        return 1
    except BotoCoreError as e:
        logger.error(f"AWS SDK error in {args.stage} stage: {e}")
        return 1
    except OSError as e:
        response = ErrorHandler.handle_file_error(e, getattr(e, 'filename', None) or "", "access")
        print(f"\n{response}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if args.verbose:
            traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
