import json

from botocore.exceptions import ClientError

from imghandler.typing import ErrorBody


class ImageHandlerError(Exception):
  """A failure that carries its own HTTP status.

  Anything raised by the request parser or the image processor that is not an
  ImageHandlerError is treated as an internal error.
  """

  def __init__(self, status: int, code: str, message: str):
    super().__init__(message)
    self.status = int(status)
    self.code = code
    self.message = message

  def to_dict(self) -> ErrorBody:
    return {'status': self.status, 'code': self.code, 'message': self.message}

  def to_json(self) -> str:
    return json.dumps(self.to_dict(), separators=(',', ':'))

  def __repr__(self) -> str:
    return f'ImageHandlerError({self.status}, {self.code!r}, {self.message!r})'


INTERNAL_ERROR: ErrorBody = {
    'message': 'Internal error. Please contact the system administrator.',
    'code': 'InternalError',
    'status': 500,
}


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


def client_error_code(exception: ClientError) -> str:
  return exception.response.get('Error', {}).get('Code', 'Unknown')
