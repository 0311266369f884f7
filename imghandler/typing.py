from typing import Any, NewType, NotRequired, TypedDict

S3Key = NewType('S3Key', str)
HttpPath = NewType('HttpPath', str)

Headers = dict[str, str | bool]


class ElbContext(TypedDict):
  targetGroupArn: str


class RequestContext(TypedDict, total=False):
  elb: ElbContext
  requestId: str
  stage: str


class ApiEvent(TypedDict):
  path: HttpPath
  httpMethod: NotRequired[str]
  headers: NotRequired[dict[str, str] | None]
  queryStringParameters: NotRequired[dict[str, str] | None]
  requestContext: NotRequired[RequestContext]
  isBase64Encoded: NotRequired[bool]
  body: NotRequired[str | None]


class ApiResponse(TypedDict):
  statusCode: int
  isBase64Encoded: bool
  headers: Headers
  body: str


class ErrorBody(TypedDict):
  status: int
  code: str
  message: str


class ImageRequestPayload(TypedDict):
  bucket: NotRequired[str]
  key: S3Key
  edits: NotRequired[dict[str, Any]]
  outputFormat: NotRequired[str]
  headers: NotRequired[dict[str, str]]
