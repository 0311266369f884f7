import base64
import json
import threading
from http import HTTPStatus
from logging import Logger
from typing import Callable, Optional, Protocol

import boto3
from mypy_boto3_rekognition.client import RekognitionClient
from mypy_boto3_s3.client import S3Client
from mypy_boto3_ssm.client import SSMClient

from imghandler.config import Settings
from imghandler.errors import INTERNAL_ERROR, ImageHandlerError
from imghandler.imageprocessor.index import ImageProcessor
from imghandler.imagerequest.index import ImageRequest, ProcessedRequest, http_date
from imghandler.jsonlog import init_logging
from imghandler.secretcache import SecretCache
from imghandler.typing import ApiEvent, ApiResponse, Headers

FALLBACK_CACHE_CONTROL = 'max-age=31536000,public'

logger = init_logging(__name__)


class RequestParser(Protocol):

  def setup(self, s3: S3Client, secret: Optional[str], event: ApiEvent) -> ProcessedRequest:
    ...


class Processor(Protocol):

  def process(
      self,
      s3: S3Client,
      rekognition: RekognitionClient,
      request: ProcessedRequest,
  ) -> str:
    ...


# A recovery stage either answers the failed invocation or passes (None).
RecoveryStage = Callable[[Exception, bool], Optional[ApiResponse]]


def is_alb_event(event: ApiEvent) -> bool:
  return 'elb' in (event.get('requestContext') or {})


def compose_headers(is_error: bool, is_alb: bool, settings: Settings) -> Headers:
  headers: Headers = {
      'Access-Control-Allow-Methods': 'GET',
      'Access-Control-Allow-Headers': 'Content-Type, Authorization',
  }

  # ALB does not support this header.
  if not is_alb:
    headers['Access-Control-Allow-Credentials'] = True

  if settings.cors_enabled:
    headers['Access-Control-Allow-Origin'] = settings.cors_origin

  if is_error:
    headers['Content-Type'] = 'application/json'

  return headers


def error_status(error: Exception) -> int:
  if isinstance(error, ImageHandlerError):
    return error.status
  return HTTPStatus.INTERNAL_SERVER_ERROR


class FallbackResolver:
  """Serves the configured default image in place of a failed one."""

  def __init__(self, log: Logger, s3: S3Client, settings: Settings):
    self.log = log
    self.s3 = s3
    self.settings = settings

  def resolve(self, error: Exception, is_alb: bool) -> Optional[ApiResponse]:
    if not self.settings.fallback_configured:
      return None

    bucket = self.settings.fallback_bucket
    key = self.settings.fallback_key

    try:
      obj = self.s3.get_object(Bucket=bucket, Key=key)
      body = base64.b64encode(obj['Body'].read()).decode()
    except Exception as e:
      self.log.error({
          'message': 'error occurred while getting the default fallback image',
          'bucket': bucket,
          'key': key,
          'reason': str(e),
      })
      return None

    headers = compose_headers(False, is_alb, self.settings)
    if 'ContentType' in obj:
      headers['Content-Type'] = obj['ContentType']
    if 'LastModified' in obj:
      headers['Last-Modified'] = http_date(obj['LastModified'])
    headers['Cache-Control'] = FALLBACK_CACHE_CONTROL

    return {
        'statusCode': error_status(error),
        'isBase64Encoded': True,
        'headers': headers,
        'body': body,
    }


class ImageHandlerServer:
  instances: dict[Settings, 'ImageHandlerServer'] = {}
  instances_lock = threading.Lock()

  def __init__(
      self,
      log: Logger,
      settings: Settings,
      s3: S3Client,
      rekognition: RekognitionClient,
      secret_cache: SecretCache,
      parser: RequestParser,
      processor: Processor,
  ):
    self.log = log
    self.settings = settings
    self.s3 = s3
    self.rekognition = rekognition
    self.secret_cache = secret_cache
    self.parser = parser
    self.processor = processor
    self.fallback = FallbackResolver(log, s3, settings)
    self.recovery_stages: list[RecoveryStage] = [
        self.fallback.resolve,
        self.classified_response,
    ]

  @classmethod
  def create(
      cls,
      log: Logger,
      settings: Settings,
      s3: S3Client,
      ssm: SSMClient,
      rekognition: RekognitionClient,
  ) -> 'ImageHandlerServer':
    return cls(
        log=log,
        settings=settings,
        s3=s3,
        rekognition=rekognition,
        secret_cache=SecretCache(
            log, ssm, settings.enable_signature, settings.secret_parameter_name),
        parser=ImageRequest(log, settings),
        processor=ImageProcessor(log, settings))

  @classmethod
  def from_lambda(cls, log: Logger, settings: Settings) -> 'ImageHandlerServer':
    with cls.instances_lock:
      if settings not in cls.instances:
        cls.instances[settings] = cls.create(
            log=log,
            settings=settings,
            s3=boto3.client('s3', region_name=settings.region),
            ssm=boto3.client('ssm', region_name=settings.region),
            rekognition=boto3.client('rekognition', region_name=settings.region))

      return cls.instances[settings]

  def handle(self, event: ApiEvent) -> ApiResponse:
    is_alb = is_alb_event(event)
    self.log.info({'message': 'request', 'path': event.get('path', ''), 'is_alb': is_alb})

    try:
      secret = self.secret_cache.ensure_loaded()
      request = self.parser.setup(self.s3, secret, event)
      self.log.debug({'message': 'parsed', **request.summary()})
      body = self.processor.process(self.s3, self.rekognition, request)
      return self.success_response(request, body, is_alb)
    except Exception as e:
      self.log.error({'message': 'failed to handle request', 'reason': repr(e)})
      return self.recover(e, is_alb)

  def success_response(self, request: ProcessedRequest, body: str, is_alb: bool) -> ApiResponse:
    headers = compose_headers(False, is_alb, self.settings)

    metadata = {
        'Content-Type': request.content_type,
        'Expires': request.expires,
        'Last-Modified': request.last_modified,
        'Cache-Control': request.cache_control,
    }
    for name, value in metadata.items():
      if value is not None:
        headers[name] = value

    # Custom headers override everything.
    if request.headers:
      headers.update(request.headers)

    return {
        'statusCode': HTTPStatus.OK,
        'isBase64Encoded': True,
        'headers': headers,
        'body': body,
    }

  def recover(self, error: Exception, is_alb: bool) -> ApiResponse:
    for stage in self.recovery_stages:
      res = stage(error, is_alb)
      if res is not None:
        return res

    return self.internal_error_response(error, is_alb)

  def classified_response(self, error: Exception, is_alb: bool) -> Optional[ApiResponse]:
    if not isinstance(error, ImageHandlerError):
      return None

    return {
        'statusCode': error.status,
        'isBase64Encoded': False,
        'headers': compose_headers(True, is_alb, self.settings),
        'body': error.to_json(),
    }

  def internal_error_response(self, error: Exception, is_alb: bool) -> ApiResponse:
    return {
        'statusCode': HTTPStatus.INTERNAL_SERVER_ERROR,
        'isBase64Encoded': False,
        'headers': compose_headers(True, is_alb, self.settings),
        'body': json.dumps(INTERNAL_ERROR, separators=(',', ':')),
    }


def lambda_main(event: ApiEvent) -> ApiResponse:
  server = ImageHandlerServer.from_lambda(logger, Settings.from_env())
  return server.handle(event)
