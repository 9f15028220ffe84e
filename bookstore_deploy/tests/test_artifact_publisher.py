"""
Unit tests for EC2 artifact packaging, upload and install commands.
"""

import shlex
import zipfile
from unittest.mock import Mock, patch

import pytest
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import EndpointConnectionError

from ..artifact_publisher import Ec2ArtifactPublisher, is_retryable_upload_error
from ..error_handling import ArchiveError, UploadError
from .conftest import client_error


class TestRetryClassification:
    """Test which S3 errors are retried."""

    @pytest.mark.parametrize("code", ['NoSuchBucket', 'AccessDenied', '403', '404'])
    def test_permanent_client_errors(self, code):
        assert is_retryable_upload_error(client_error(code)) is False

    @pytest.mark.parametrize("code", ['RequestTimeout', 'SlowDown', 'InternalError'])
    def test_transient_client_errors(self, code):
        assert is_retryable_upload_error(client_error(code)) is True

    def test_wrapped_upload_failure(self):
        denied = S3UploadFailedError("Failed to upload x to b/k: An error occurred (AccessDenied)")
        reset = S3UploadFailedError("Failed to upload x to b/k: Connection reset by peer")

        assert is_retryable_upload_error(denied) is False
        assert is_retryable_upload_error(reset) is True


class TestEc2ArtifactPublisher:
    """Test cases for Ec2ArtifactPublisher."""

    @pytest.fixture
    def s3_client(self):
        client = Mock()
        client.head_bucket.return_value = {}
        return client

    @pytest.fixture
    def publisher(self, s3_client):
        return Ec2ArtifactPublisher(s3_client, app_name="bookstore")

    def test_package_includes_files_and_unit(self, publisher, publish_dir, tmp_path):
        unit = publisher.build_service_unit(environment_file=publisher.environment_file)

        archive = publisher.package(str(publish_dir), str(tmp_path / "out.zip"), service_unit=unit)

        with zipfile.ZipFile(archive) as zf:
            names = set(zf.namelist())
            unit_text = zf.read("bookstore.service").decode('utf-8')

        assert names == {
            "Bookstore.Web.dll",
            "appsettings.json",
            "wwwroot/css/site.css",
            "bookstore.service",
        }
        assert "ExecStart=/usr/bin/dotnet /opt/bookstore/Bookstore.Web.dll" in unit_text
        assert "EnvironmentFile=-/etc/bookstore/bookstore.env" in unit_text
        assert "StandardOutput=append:/var/log/bookstore.log" in unit_text
        assert "Restart=always" in unit_text

    def test_package_replaces_existing_archive(self, publisher, publish_dir, tmp_path):
        destination = tmp_path / "out.zip"
        destination.write_bytes(b"stale")

        archive = publisher.package(str(publish_dir), str(destination))

        assert zipfile.is_zipfile(archive)

    def test_package_default_destination(self, publisher, publish_dir):
        archive = publisher.package(str(publish_dir))
        assert archive == publish_dir.parent / "bookstore.zip"

    def test_package_missing_directory(self, publisher, tmp_path):
        with pytest.raises(ArchiveError, match="not found"):
            publisher.package(str(tmp_path / "missing"))

    def test_upload_returns_s3_uri(self, publisher, s3_client, publish_dir):
        archive = publisher.package(str(publish_dir))

        uri = publisher.upload(str(archive), "artifacts")

        assert uri == "s3://artifacts/releases/bookstore.zip"
        s3_client.upload_file.assert_called_once_with(str(archive), "artifacts", "releases/bookstore.zip")

    def test_upload_retries_transient_failures_with_backoff(self, publisher, s3_client, publish_dir):
        archive = publisher.package(str(publish_dir))
        s3_client.upload_file.side_effect = client_error('RequestTimeout')

        with patch('bookstore_deploy.retry.time.sleep') as mock_sleep:
            with pytest.raises(UploadError) as exc_info:
                publisher.upload(str(archive), "artifacts")

        assert s3_client.upload_file.call_count == 5
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0, 4.0, 8.0]
        assert exc_info.value.attempts == 5

    def test_upload_succeeds_on_fifth_attempt(self, publisher, s3_client, publish_dir):
        archive = publisher.package(str(publish_dir))
        s3_client.upload_file.side_effect = [client_error('RequestTimeout')] * 4 + [None]

        with patch('bookstore_deploy.retry.time.sleep') as mock_sleep:
            uri = publisher.upload(str(archive), "artifacts")

        assert uri == "s3://artifacts/releases/bookstore.zip"
        assert s3_client.upload_file.call_count == 5
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0, 4.0, 8.0]

    def test_upload_does_not_retry_access_denied(self, publisher, s3_client, publish_dir):
        archive = publisher.package(str(publish_dir))
        s3_client.upload_file.side_effect = client_error('AccessDenied')

        with patch('bookstore_deploy.retry.time.sleep') as mock_sleep:
            with pytest.raises(UploadError) as exc_info:
                publisher.upload(str(archive), "artifacts")

        s3_client.upload_file.assert_called_once()
        mock_sleep.assert_not_called()
        assert exc_info.value.attempts == 1
        assert exc_info.value.hints

    @pytest.mark.parametrize("code,reason", [('404', 'does not exist'), ('403', 'access denied')])
    def test_upload_checks_bucket_first(self, publisher, s3_client, publish_dir, code, reason):
        archive = publisher.package(str(publish_dir))
        s3_client.head_bucket.side_effect = client_error(code)

        with pytest.raises(UploadError, match=reason):
            publisher.upload(str(archive), "artifacts")

        s3_client.upload_file.assert_not_called()

    def test_bucket_check_retries_transient_errors(self, publisher, s3_client, publish_dir):
        archive = publisher.package(str(publish_dir))
        s3_client.head_bucket.side_effect = [client_error('503', 'Service Unavailable'), {}]

        with patch('bookstore_deploy.retry.time.sleep') as mock_sleep:
            uri = publisher.upload(str(archive), "artifacts")

        assert uri == "s3://artifacts/releases/bookstore.zip"
        assert s3_client.head_bucket.call_count == 2
        mock_sleep.assert_called_once_with(1.0)

    def test_bucket_check_gives_up_after_connection_errors(self, publisher, s3_client, publish_dir):
        archive = publisher.package(str(publish_dir))
        s3_client.head_bucket.side_effect = EndpointConnectionError(endpoint_url='https://s3.amazonaws.com')

        with patch('bookstore_deploy.retry.time.sleep') as mock_sleep:
            with pytest.raises(UploadError) as exc_info:
                publisher.upload(str(archive), "artifacts")

        assert exc_info.value.attempts == 5
        assert mock_sleep.call_count == 4
        s3_client.upload_file.assert_not_called()

    def test_upload_missing_archive(self, publisher, tmp_path):
        with pytest.raises(ArchiveError):
            publisher.upload(str(tmp_path / "nope.zip"), "artifacts")

    def test_install_commands_order(self, publisher):
        commands = publisher.build_install_commands("s3://artifacts/releases/bookstore.zip", region="us-east-1")

        assert commands[0] == "set -euo pipefail"
        assert commands[1] == ("aws s3 cp s3://artifacts/releases/bookstore.zip "
                               "/tmp/bookstore-release.zip --region us-east-1")
        assert "mv /opt/bookstore/bookstore.service /etc/systemd/system/bookstore.service" in commands
        assert commands.index("systemctl daemon-reload") < commands.index("systemctl restart bookstore.service")
        assert commands[-1] == "systemctl is-active bookstore.service"
        assert not any("bookstore.env" in command for command in commands)

    def test_install_commands_quote_untrusted_values(self, publisher):
        commands = publisher.build_install_commands(
            "s3://artifacts/my release.zip",
            install_dir="/opt/book store",
            environment={"GREETING": "it's $(whoami)"}
        )

        assert "aws s3 cp 's3://artifacts/my release.zip' /tmp/bookstore-release.zip" in commands
        assert "rm -rf '/opt/book store'" in commands

        env_command = next(command for command in commands if command.startswith("printf"))
        tokens = shlex.split(env_command)
        assert tokens[:3] == ["printf", "%s\\n", "GREETING=it's $(whoami)"]
        assert tokens[-2:] == [">", "/etc/bookstore/bookstore.env"]
        assert "chmod 600 /etc/bookstore/bookstore.env" in commands
