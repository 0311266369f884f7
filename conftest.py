import io
import logging
from logging import Logger
from typing import Any, Generator

import boto3
import pytest
from moto import mock_aws
from mypy_boto3_s3.client import S3Client
from mypy_boto3_ssm.client import SSMClient
from pyvips import Image  # type: ignore

from imghandler.jsonlog import MyJsonFormatter

REGION = 'us-east-1'
SOURCE_BUCKET = 'source-bucket'
FALLBACK_BUCKET = 'fallback-bucket'
FALLBACK_KEY = 'fallback.png'
PARAMETER_NAME = '/imghandler/secret'
SECRET = 'some-secret'


def create_image(width: int = 40, height: int = 30, suffix: str = '.png') -> bytes:
  image = Image.black(width, height, bands=3).copy(interpretation='srgb')
  return image.write_to_buffer(suffix)


@pytest.fixture(autouse=True)
def aws_environment(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
  monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
  monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
  monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
  monkeypatch.setenv('AWS_DEFAULT_REGION', REGION)


@pytest.fixture
def log_stream() -> io.StringIO:
  return io.StringIO()


@pytest.fixture
def logger(request: Any, log_stream: io.StringIO) -> Generator[Logger, None, None]:
  log = logging.getLogger(f'imghandler.test.{request.node.name}')
  log.setLevel(logging.DEBUG)

  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(log_stream)
  log.addHandler(log_handler)
  log.propagate = False

  yield log

  log.removeHandler(log_handler)


@pytest.fixture
def aws() -> Generator[None, None, None]:
  with mock_aws():
    yield


@pytest.fixture
def s3(aws: None) -> S3Client:
  client = boto3.client('s3', region_name=REGION)
  client.create_bucket(Bucket=SOURCE_BUCKET)
  client.create_bucket(Bucket=FALLBACK_BUCKET)
  return client


@pytest.fixture
def ssm(aws: None) -> SSMClient:
  return boto3.client('ssm', region_name=REGION)
