"""
Unit tests for container image publishing.
"""

import base64
import subprocess
from unittest.mock import Mock, call, patch

import pytest

from ..error_handling import ArchiveError
from ..image_builder import ContainerImagePublisher
from .conftest import client_error

REPOSITORY_URI = "123456789012.dkr.ecr.us-east-1.amazonaws.com/bookstore"


class TestContainerImagePublisher:
    """Test cases for ContainerImagePublisher."""

    @pytest.fixture
    def ecr_client(self):
        client = Mock()
        client.describe_repositories.return_value = {'repositories': [{'repositoryUri': REPOSITORY_URI}]}
        client.get_authorization_token.return_value = {
            'authorizationData': [{
                'authorizationToken': base64.b64encode(b"AWS:secret-password").decode('ascii'),
                'proxyEndpoint': 'https://123456789012.dkr.ecr.us-east-1.amazonaws.com'
            }]
        }
        return client

    @pytest.fixture
    def publisher(self, ecr_client):
        return ContainerImagePublisher(ecr_client, app_name="bookstore", tags={'Project': 'Bookstore'})

    def test_existing_repository(self, publisher, ecr_client):
        assert publisher.ensure_repository("bookstore") == REPOSITORY_URI
        ecr_client.create_repository.assert_not_called()

    def test_missing_repository_is_created(self, publisher, ecr_client):
        ecr_client.describe_repositories.side_effect = client_error('RepositoryNotFoundException')
        ecr_client.create_repository.return_value = {'repository': {'repositoryUri': REPOSITORY_URI}}

        assert publisher.ensure_repository("bookstore") == REPOSITORY_URI
        assert ecr_client.create_repository.call_args.kwargs['tags'] == [{'Key': 'Project', 'Value': 'Bookstore'}]

    def test_publish_runs_docker(self, publisher, tmp_path):
        with patch('bookstore_deploy.image_builder.subprocess.run') as mock_run:
            image_uri = publisher.publish(str(tmp_path), tag="v1")

        assert image_uri == f"{REPOSITORY_URI}:v1"
        assert mock_run.call_args_list == [
            call(['docker', 'login', '--username', 'AWS', '--password-stdin',
                  'https://123456789012.dkr.ecr.us-east-1.amazonaws.com'],
                 input='secret-password', text=True, check=True),
            call(['docker', 'build', '-t', image_uri, str(tmp_path)], input=None, text=True, check=True),
            call(['docker', 'push', image_uri], input=None, text=True, check=True),
        ]

    def test_docker_failure_raises_archive_error(self, publisher, tmp_path):
        with patch('bookstore_deploy.image_builder.subprocess.run',
                   side_effect=subprocess.CalledProcessError(1, ['docker', 'build'])):
            with pytest.raises(ArchiveError, match="exit code 1"):
                publisher.build_and_push(str(tmp_path), REPOSITORY_URI)

    def test_missing_context(self, publisher, tmp_path):
        with pytest.raises(ArchiveError, match="context"):
            publisher.build_and_push(str(tmp_path / "missing"), REPOSITORY_URI)
