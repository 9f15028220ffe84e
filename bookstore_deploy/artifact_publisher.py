"""
EC2 artifact publishing.

The published application directory is zipped together with a systemd unit,
uploaded to S3 and installed on the instance by a shell script sent through
SSM Run Command.
"""

import logging
import os
import shlex
import zipfile
from pathlib import Path
from typing import List, Mapping, Optional

from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import ClientError

from .config import CONFIG, NON_RETRYABLE_UPLOAD_ERRORS
from .data_models import ServiceUnit
from .error_handling import BUCKET_ACCESS_HINTS, ArchiveError, ErrorHandler, UploadError
from .logging_utils import log_success
from .retry import RetryExhaustedError, RetryPolicy

logger = logging.getLogger(__name__)

SYSTEMD_DIRECTORY = '/etc/systemd/system'


def is_retryable_upload_error(error: Exception) -> bool:
    """Missing buckets and denied access are permanent, everything else is retried."""
    code = ErrorHandler.error_code(error)
    if code is not None:
        return code not in NON_RETRYABLE_UPLOAD_ERRORS

    # upload_file wraps the service error in S3UploadFailedError
    if isinstance(error, S3UploadFailedError):
        message = str(error)
        return not any(marker in message for marker in ('NoSuchBucket', 'AccessDenied', 'Forbidden'))

    return True


class Ec2ArtifactPublisher:
    """Packages, uploads and installs the application for EC2 rollouts."""

    def __init__(self, s3_client, app_name: Optional[str] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        self.s3_client = s3_client
        self.app_name = app_name or CONFIG['app_name']
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=CONFIG['max_retry_attempts'],
            base_delay=CONFIG['retry_base_delay'],
            is_retryable=is_retryable_upload_error
        )

    @property
    def unit_file_name(self) -> str:
        return f"{self.app_name}.service"

    def build_service_unit(self, install_dir: Optional[str] = None, entry_point: Optional[str] = None,
                           user: Optional[str] = None, environment_file: Optional[str] = None) -> ServiceUnit:
        """Describe the systemd service that runs the application."""
        install_dir = install_dir or CONFIG['install_directory']
        entry_point = entry_point or CONFIG['entry_point']

        return ServiceUnit(
            description=f"{self.app_name} web application",
            working_directory=install_dir,
            exec_start=f"/usr/bin/dotnet {install_dir}/{entry_point}",
            user=user or CONFIG['service_user'],
            log_path=f"/var/log/{self.app_name}.log",
            environment_file=environment_file
        )

    def package(self, publish_dir: str, archive_path: Optional[str] = None,
                service_unit: Optional[ServiceUnit] = None) -> Path:
        """Zip the publish directory.

        Args:
            publish_dir: Directory produced by the application publish step.
            archive_path: Destination archive. Defaults to ``<publish_dir>/../<archive_name>``.
            service_unit: Unit bundled at the archive root as ``<app>.service``.

        Returns:
            Path of the created archive.

        Raises:
            ArchiveError: If the publish directory is missing or the archive cannot be written.
        """
        source = Path(publish_dir)
        if not source.is_dir():
            raise ArchiveError(f"Publish directory not found: {publish_dir}")

        destination = Path(archive_path) if archive_path else source.parent / CONFIG['archive_name']

        if destination.exists():
            logger.info(f"Removing existing archive: {destination}")
            destination.unlink()

        destination_resolved = destination.resolve()
        file_count = 0
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(destination, 'w', zipfile.ZIP_DEFLATED) as archive:
                for root, _, files in os.walk(source):
                    for name in sorted(files):
                        file_path = Path(root) / name
                        if file_path.resolve() == destination_resolved:
                            continue
                        archive.write(file_path, file_path.relative_to(source).as_posix())
                        file_count += 1

                if service_unit is not None:
                    archive.writestr(self.unit_file_name, service_unit.render())
        except OSError as e:
            raise ArchiveError(f"Failed to create archive {destination}: {e}")

        logger.info(f"Packaged {file_count} files from {source} into {destination}")
        return destination

    def verify_bucket(self, bucket: str) -> None:
        """Check the bucket exists and is reachable.

        Transient failures are retried like the upload itself.

        Raises:
            UploadError: If the bucket is missing, access is denied, or the
                check keeps failing.
        """
        try:
            self.retry_policy.execute(
                self.s3_client.head_bucket, Bucket=bucket,
                description=f"Bucket check for {bucket}"
            )
        except RetryExhaustedError as e:
            raise UploadError(
                f"Artifact bucket {bucket} is not reachable after {e.attempts} attempts: {e.last_error}",
                bucket=bucket, attempts=e.attempts, hints=BUCKET_ACCESS_HINTS
            )
        except ClientError as e:
            code = ErrorHandler.error_code(e)
            ErrorHandler.handle_aws_error(e, f"head_bucket {bucket}")
            if code in ('404', 'NoSuchBucket'):
                reason = "does not exist"
            elif code in ('403', 'AccessDenied'):
                reason = "is not accessible (access denied)"
            else:
                reason = f"is not reachable ({code})"
            raise UploadError(f"Artifact bucket {bucket} {reason}", bucket=bucket, attempts=1,
                              hints=BUCKET_ACCESS_HINTS)

        logger.debug(f"Artifact bucket {bucket} is reachable")

    def upload(self, archive_path: str, bucket: str, key_prefix: Optional[str] = None) -> str:
        """Upload the archive with bounded exponential-backoff retry.

        Returns:
            ``s3://`` URI of the uploaded archive.

        Raises:
            UploadError: On a permanent error or after the last attempt.
        """
        archive = Path(archive_path)
        if not archive.is_file():
            raise ArchiveError(f"Archive not found: {archive_path}")

        self.verify_bucket(bucket)

        prefix = (key_prefix if key_prefix is not None else CONFIG['artifact_key_prefix']).strip('/')
        key = f"{prefix}/{archive.name}" if prefix else archive.name
        uri = f"s3://{bucket}/{key}"

        logger.info(f"Uploading {archive} to {uri}")
        try:
            self.retry_policy.execute(
                self.s3_client.upload_file, str(archive), bucket, key,
                description=f"Upload to {uri}"
            )
        except RetryExhaustedError as e:
            raise UploadError(
                f"Upload to {uri} failed after {e.attempts} attempts: {e.last_error}",
                bucket=bucket, attempts=e.attempts, hints=BUCKET_ACCESS_HINTS
            )
        except (ClientError, S3UploadFailedError) as e:
            raise UploadError(
                f"Upload to {uri} failed: {e}",
                bucket=bucket, attempts=1, hints=BUCKET_ACCESS_HINTS
            )

        log_success(logger, f"Uploaded artifact to {uri}")
        return uri

    @property
    def environment_file(self) -> str:
        return f"/etc/{self.app_name}/{self.app_name}.env"

    def build_install_commands(self, artifact_uri: str, install_dir: Optional[str] = None,
                               region: Optional[str] = None,
                               environment: Optional[Mapping[str, str]] = None) -> List[str]:
        """Shell commands that install the uploaded archive on the instance.

        Every interpolated value is shell-quoted.

        Args:
            artifact_uri: ``s3://`` URI of the archive.
            install_dir: Directory the archive is extracted into.
            region: Region passed to ``aws s3 cp``.
            environment: Variables written to the service's environment file.
        """
        install_dir = install_dir or CONFIG['install_directory']
        service = self.unit_file_name
        staging = f"/tmp/{self.app_name}-release.zip"
        region_flag = f" --region {shlex.quote(region)}" if region else ""

        q_install = shlex.quote(install_dir)
        q_staging = shlex.quote(staging)
        q_service = shlex.quote(service)

        commands = [
            "set -euo pipefail",
            f"aws s3 cp {shlex.quote(artifact_uri)} {q_staging}{region_flag}",
            f"systemctl stop {q_service} || true",
            f"rm -rf {q_install}",
            f"mkdir -p {q_install}",
            f"unzip -o -q {q_staging} -d {q_install}",
            f"mv {shlex.quote(install_dir.rstrip('/') + '/' + service)} {shlex.quote(SYSTEMD_DIRECTORY + '/' + service)}",
        ]

        if environment:
            env_file = self.environment_file
            lines = " ".join(shlex.quote(f"{name}={value}") for name, value in environment.items())
            commands.extend([
                f"mkdir -p {shlex.quote(str(Path(env_file).parent))}",
                f"printf '%s\\n' {lines} > {shlex.quote(env_file)}",
                f"chmod 600 {shlex.quote(env_file)}",
            ])

        commands.extend([
            "systemctl daemon-reload",
            f"systemctl enable {q_service}",
            f"systemctl restart {q_service}",
            f"rm -f {q_staging}",
            f"systemctl is-active {q_service}"
        ])
        return commands
