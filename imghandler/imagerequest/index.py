import base64
import binascii
import dataclasses
import datetime
import hashlib
import hmac
import json
from email.utils import format_datetime
from http import HTTPStatus
from logging import Logger
from typing import Any, Optional

from botocore.exceptions import ClientError
from dateutil import tz
from mypy_boto3_s3.client import S3Client

from imghandler.config import Settings
from imghandler.errors import (
    ImageHandlerError,
    client_error_code,
    is_not_found_client_error
)
from imghandler.typing import ApiEvent, ImageRequestPayload, S3Key

DEFAULT_CACHE_CONTROL = 'max-age=31536000,public'
EXPIRES_FORMAT = '%Y%m%dT%H%M%SZ'

OUTPUT_FORMATS: dict[str, str] = {
    'jpeg': 'image/jpeg',
    'jpg': 'image/jpeg',
    'png': 'image/png',
    'webp': 'image/webp',
    'avif': 'image/avif',
    'tiff': 'image/tiff',
    'gif': 'image/gif',
}


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


def http_date(dt: datetime.datetime) -> str:
  if dt.tzinfo is None:
    dt = dt.replace(tzinfo=tz.tzutc())
  return format_datetime(dt.astimezone(datetime.UTC), usegmt=True)


@dataclasses.dataclass(frozen=True)
class ProcessedRequest:
  bucket: str
  key: S3Key
  edits: dict[str, Any]
  output_format: Optional[str]
  original_image: bytes
  content_type: Optional[str]
  cache_control: Optional[str]
  expires: Optional[str]
  last_modified: Optional[str]
  headers: Optional[dict[str, str]] = None

  def summary(self) -> dict[str, Any]:
    return {
        'bucket': self.bucket,
        'key': self.key,
        'edits': self.edits,
        'output_format': self.output_format,
        'content_type': self.content_type,
    }


def get_header(event: ApiEvent, name: str) -> str:
  headers = event.get('headers') or {}
  for k, v in headers.items():
    if k.lower() == name:
      return v
  return ''


def get_query(event: ApiEvent) -> dict[str, str]:
  return event.get('queryStringParameters') or {}


def ensure_allowed_bucket(settings: Settings, bucket: Any) -> str:
  if bucket not in settings.source_buckets:
    raise ImageHandlerError(
        HTTPStatus.FORBIDDEN, 'ImageBucket::CannotAccessBucket',
        'The bucket you specified could not be accessed. Please check that the bucket is specified in your SOURCE_BUCKETS.'
    )
  return bucket


class ImageRequest:
  """Turns an inbound event into a ProcessedRequest.

  The request path is a base64 encoded JSON document naming the source object
  and the edits to apply. When signature verification is enabled the path must
  be signed with the secret, the hex HMAC-SHA256 being passed as the
  ``signature`` query parameter.
  """

  def __init__(self, log: Logger, settings: Settings):
    self.log = log
    self.settings = settings

  def setup(self, s3: S3Client, secret: Optional[str], event: ApiEvent) -> ProcessedRequest:
    path = event.get('path', '')
    query = get_query(event)

    if self.settings.enable_signature:
      self.verify_signature(path, query.get('signature'), secret)

    expires = self.parse_expires(query.get('expires'))

    payload = self.decode_path(path)
    bucket = self.choose_bucket(payload.get('bucket'))

    key = payload.get('key')
    if not isinstance(key, str) or key == '':
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'ImageEdits::CannotFindImage',
          'The image you specified could not be found. Please check your request syntax as well as the bucket you specified to ensure it exists.'
      )

    edits = self.parse_edits(payload.get('edits'))
    headers = self.parse_custom_headers(payload.get('headers'))
    output_format = self.choose_output_format(payload, edits, get_header(event, 'accept'))

    obj = self.get_original_object(s3, bucket, S3Key(key))

    if output_format is not None:
      content_type: Optional[str] = OUTPUT_FORMATS[output_format]
    else:
      content_type = obj.get('ContentType')

    last_modified = obj.get('LastModified')

    return ProcessedRequest(
        bucket=bucket,
        key=S3Key(key),
        edits=edits,
        output_format=output_format,
        original_image=obj['Body'].read(),
        content_type=content_type,
        cache_control=obj.get('CacheControl', DEFAULT_CACHE_CONTROL),
        expires=None if expires is None else http_date(expires),
        last_modified=None if last_modified is None else http_date(last_modified),
        headers=headers)

  def verify_signature(self, path: str, signature: Optional[str], secret: Optional[str]) -> None:
    if signature is None or signature == '':
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'AuthorizationQueryParametersError',
          'Query-string requires the signature parameter.')

    if secret is None:
      raise ImageHandlerError(
          HTTPStatus.FORBIDDEN, 'SignatureDoesNotMatch',
          'Signature does not match.')

    expected = hmac.new(secret.encode(), path.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature):
      raise ImageHandlerError(
          HTTPStatus.FORBIDDEN, 'SignatureDoesNotMatch', 'Signature does not match.')

  def parse_expires(self, expires: Optional[str]) -> Optional[datetime.datetime]:
    if expires is None:
      return None

    try:
      parsed = datetime.datetime.strptime(expires, EXPIRES_FORMAT).replace(tzinfo=tz.tzutc())
    except ValueError:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'ImageRequestExpiryFormat',
          'Request has invalid expiry date.')

    if parsed < get_now():
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'ImageRequestExpired', 'Request has expired.')

    return parsed

  def decode_path(self, path: str) -> ImageRequestPayload:
    encoded = path.lstrip('/').replace('-', '+').replace('_', '/')
    try:
      # Tolerate stripped padding.
      decoded = base64.b64decode(encoded + '=' * (-len(encoded) % 4), validate=True)
      payload = json.loads(decoded)
    except (binascii.Error, ValueError):
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'DecodeRequest::CannotDecodeRequest',
          'The image request you provided could not be decoded. Please check that your request is base64 encoded properly and refer to the documentation for additional guidance.'
      )

    if not isinstance(payload, dict):
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'DecodeRequest::CannotReadPath',
          'The request path must be a base64 encoded JSON object.')

    return payload  # type: ignore

  def parse_edits(self, edits: Any) -> dict[str, Any]:
    if edits is None:
      return {}

    if not isinstance(edits, dict):
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'DecodeRequest::InvalidEdits',
          'The edits in your request must be a JSON object.')

    return edits

  def parse_custom_headers(self, headers: Any) -> Optional[dict[str, str]]:
    if headers is None:
      return None

    if not isinstance(headers, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in headers.items()):
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'DecodeRequest::InvalidHeaders',
          'The headers in your request must be a JSON object of string values.')

    return headers

  def choose_bucket(self, requested: Optional[str]) -> str:
    allowed = self.settings.source_buckets

    if requested is None:
      if len(allowed) == 0:
        raise ImageHandlerError(
            HTTPStatus.BAD_REQUEST, 'ImageBucket::CannotFindBucket',
            'The bucket you specified could not be found. Please check the spelling of the bucket name in your request.'
        )
      return allowed[0]

    return ensure_allowed_bucket(self.settings, requested)

  def choose_output_format(
      self,
      payload: ImageRequestPayload,
      edits: dict[str, Any],
      accept_header: str,
  ) -> Optional[str]:
    output_format = payload.get('outputFormat') or edits.get('toFormat')

    if output_format is None:
      if self.settings.auto_webp and 'image/webp' in accept_header:
        return 'webp'
      return None

    output_format = str(output_format).lower()
    if output_format not in OUTPUT_FORMATS:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'ImageRequest::InvalidOutputFormat',
          f'Output format {output_format} is not supported.')

    if output_format == 'jpg':
      return 'jpeg'
    return output_format

  def get_original_object(self, s3: S3Client, bucket: str, key: S3Key) -> Any:
    try:
      return s3.get_object(Bucket=bucket, Key=key)
    except ClientError as e:
      self.log.warning({
          'message': 'failed to get original object',
          'bucket': bucket,
          'key': key,
          'reason': str(e),
      })
      if is_not_found_client_error(e):
        raise ImageHandlerError(
            HTTPStatus.NOT_FOUND, 'NoSuchKey', 'The specified key does not exist.')
      raise ImageHandlerError(
          HTTPStatus.INTERNAL_SERVER_ERROR, client_error_code(e), str(e))
