"""Container image build and push to ECR for ECS rollouts."""

import base64
import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from botocore.exceptions import ClientError

from .config import CONFIG
from .error_handling import ArchiveError, ErrorHandler
from .logging_utils import log_success

logger = logging.getLogger(__name__)


class ContainerImagePublisher:
    """Builds the application image and pushes it to an ECR repository."""

    def __init__(self, ecr_client, app_name: Optional[str] = None, tags: Optional[dict] = None):
        self.ecr_client = ecr_client
        self.app_name = app_name or CONFIG['app_name']
        self.tags = tags or {}

    def ensure_repository(self, repository_name: str) -> str:
        """Create the repository if needed and return its URI."""
        try:
            response = self.ecr_client.describe_repositories(repositoryNames=[repository_name])
            uri = response['repositories'][0]['repositoryUri']
            logger.info(f"ECR repository '{repository_name}' exists")
            return uri
        except ClientError as e:
            if ErrorHandler.error_code(e) != 'RepositoryNotFoundException':
                ErrorHandler.handle_aws_error(e, f"describe_repositories {repository_name}")
                raise ArchiveError(f"Could not check ECR repository {repository_name}: {e}")

        logger.info(f"Creating ECR repository '{repository_name}'")
        try:
            response = self.ecr_client.create_repository(
                repositoryName=repository_name,
                imageScanningConfiguration={'scanOnPush': True},
                tags=[{'Key': key, 'Value': value} for key, value in self.tags.items()]
            )
        except ClientError as e:
            ErrorHandler.handle_aws_error(e, f"create_repository {repository_name}")
            raise ArchiveError(f"Could not create ECR repository {repository_name}: {e}")

        return response['repository']['repositoryUri']

    def login(self) -> str:
        """Log docker in to the registry and return the registry endpoint."""
        try:
            token_response = self.ecr_client.get_authorization_token()
        except ClientError as e:
            ErrorHandler.handle_aws_error(e, "get_authorization_token")
            raise ArchiveError(f"Could not get ECR authorization token: {e}")

        token_data = token_response['authorizationData'][0]
        token = base64.b64decode(token_data['authorizationToken']).decode('utf-8')
        username, password = token.split(':', 1)
        endpoint = token_data['proxyEndpoint']

        self._run(
            ['docker', 'login', '--username', username, '--password-stdin', endpoint],
            input_text=password
        )
        logger.info(f"Logged in to {endpoint}")
        return endpoint

    def build_and_push(self, context_dir: str, repository_uri: str, tag: Optional[str] = None,
                       dockerfile: Optional[str] = None) -> str:
        """Build, tag and push the image.

        Returns:
            Full image URI including the tag.

        Raises:
            ArchiveError: If the build context is missing or docker fails.
        """
        context = Path(context_dir)
        if not context.is_dir():
            raise ArchiveError(f"Docker build context not found: {context_dir}")

        image_uri = f"{repository_uri}:{tag or CONFIG['image_tag']}"

        build_command = ['docker', 'build', '-t', image_uri]
        if dockerfile:
            build_command.extend(['-f', str(dockerfile)])
        build_command.append(str(context))

        logger.info(f"Building image {image_uri}")
        self._run(build_command)

        logger.info(f"Pushing image {image_uri}")
        self._run(['docker', 'push', image_uri])

        log_success(logger, f"Pushed image to ECR: {image_uri}")
        return image_uri

    def publish(self, context_dir: str, tag: Optional[str] = None, dockerfile: Optional[str] = None,
                repository_name: Optional[str] = None) -> str:
        """Ensure the repository exists, log in and push the image."""
        repository_uri = self.ensure_repository(repository_name or self.app_name)
        self.login()
        return self.build_and_push(context_dir, repository_uri, tag=tag, dockerfile=dockerfile)

    @staticmethod
    def _run(command: List[str], input_text: Optional[str] = None) -> None:
        try:
            subprocess.run(command, input=input_text, text=True, check=True)
        except FileNotFoundError:
            raise ArchiveError(f"{command[0]} executable not found")
        except subprocess.CalledProcessError as e:
            raise ArchiveError(f"Command '{' '.join(command[:2])}' failed with exit code {e.returncode}")
