"""
Pytest configuration and shared fixtures for deployment pipeline tests.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

from ..aws_session import AwsContext

ECS_SERVICE_TEMPLATE = """\
AWSTemplateFormatVersion: '2010-09-09'
Description: Test ECS service
Parameters:
  AppName:
    Type: String
  ContainerImageUri:
    Type: String
Resources:
  LogGroup:
    Type: AWS::Logs::LogGroup
    Properties:
      LogGroupName: !Sub '/ecs/${AppName}'
  TaskDefinition:
    Type: AWS::ECS::TaskDefinition
    Properties:
      Family: !Ref AppName
      ContainerDefinitions:
        - Name: web
          Image: !Ref ContainerImageUri
          Environment:
            - Name: A
              Value: '1'
          LogConfiguration:
            LogDriver: awslogs
            Options:
              awslogs-group: !Ref LogGroup
              awslogs-region: !Ref AWS::Region
  Service:
    Type: AWS::ECS::Service
    Properties:
      TaskDefinition: !Ref TaskDefinition
      Subnets: !Split [',', !ImportValue shared-subnets]
Outputs:
  ServiceName:
    Value: !GetAtt Service.Name
"""


def client_error(code, message="error", operation="Operation"):
    """Build a botocore ClientError with the given code."""
    return ClientError({'Error': {'Code': code, 'Message': message}}, operation)


@pytest.fixture
def ecs_template_file(tmp_path):
    """ECS service template written to a temporary directory."""
    path = tmp_path / "ecs-service.yaml"
    path.write_text(ECS_SERVICE_TEMPLATE, encoding='utf-8')
    return path


@pytest.fixture
def publish_dir(tmp_path):
    """Fake application publish output."""
    directory = tmp_path / "publish"
    (directory / "wwwroot" / "css").mkdir(parents=True)
    (directory / "Bookstore.Web.dll").write_bytes(b"\x4d\x5a\x90\x00")
    (directory / "appsettings.json").write_text(json.dumps({"Logging": {}}), encoding='utf-8')
    (directory / "wwwroot" / "css" / "site.css").write_text("body {}", encoding='utf-8')
    return directory


@pytest.fixture
def config_dir(tmp_path):
    """Directory for the hand-off files."""
    directory = tmp_path / "config"
    directory.mkdir()
    return directory


@pytest.fixture
def write_config():
    """Write a hand-off file as JSON."""
    def _write(path: Path, values):
        path.write_text(json.dumps(values), encoding='utf-8')
        return path
    return _write


@pytest.fixture
def mock_clients():
    """Mock boto3 clients keyed by service name."""
    clients = {
        'sts': Mock(name='sts'),
        's3': Mock(name='s3'),
        'ssm': Mock(name='ssm'),
        'cloudformation': Mock(name='cloudformation'),
        'ecr': Mock(name='ecr'),
    }

    clients['sts'].get_caller_identity.return_value = {
        'Account': '123456789012',
        'Arn': 'arn:aws:iam::123456789012:user/deployer'
    }
    clients['sts'].assume_role.return_value = {
        'Credentials': {
            'AccessKeyId': 'ASIATESTKEY',
            'SecretAccessKey': 'test-secret',
            'SessionToken': 'test-token',
            'Expiration': datetime(2030, 1, 1, tzinfo=timezone.utc)
        },
        'AssumedRoleUser': {
            'Arn': 'arn:aws:sts::123456789012:assumed-role/bookstore-deployment-role/bookstore-deployment'
        }
    }
    clients['s3'].head_bucket.return_value = {}
    clients['s3'].upload_file.return_value = None
    return clients


@pytest.fixture
def aws_context(mock_clients):
    """AwsContext whose session hands out the mock clients."""
    session = Mock()
    session.client.side_effect = lambda service_name, **kwargs: mock_clients[service_name]
    return AwsContext(region='us-east-1', session=session)


@pytest.fixture
def no_sleep(monkeypatch):
    """Record sleeps instead of waiting."""
    delays = []
    monkeypatch.setattr('time.sleep', delays.append)
    return delays


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as end-to-end pipeline test"
    )
