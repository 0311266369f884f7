import base64
import dataclasses
import time
from http import HTTPStatus
from logging import Logger
from typing import Any, Optional

from botocore.exceptions import ClientError
from mypy_boto3_rekognition.client import RekognitionClient
from mypy_boto3_s3.client import S3Client
from pyvips import Direction, Error, Image, Interesting, Size  # type: ignore

from imghandler.config import Settings
from imghandler.errors import ImageHandlerError, is_not_found_client_error
from imghandler.imagerequest.index import ProcessedRequest, ensure_allowed_bucket

# Lambda refuses response payloads above 6 MB.
MAX_RESPONSE_SIZE = 6 * 1024 * 1024

DEFAULT_QUALITY = 80

# Effectively unbounded; lets thumbnail_image() fit on height alone.
UNBOUNDED = 10_000_000

LOADER_FORMATS = {
    'jpegload': 'jpeg',
    'jpegload_buffer': 'jpeg',
    'pngload': 'png',
    'pngload_buffer': 'png',
    'webpload': 'webp',
    'webpload_buffer': 'webp',
    'heifload': 'avif',
    'heifload_buffer': 'avif',
    'tiffload': 'tiff',
    'tiffload_buffer': 'tiff',
    'gifload': 'gif',
    'gifload_buffer': 'gif',
}

SUFFIXES = {
    'jpeg': '.jpg',
    'png': '.png',
    'webp': '.webp',
    'avif': '.avif',
    'tiff': '.tif',
    'gif': '.gif',
}

LOSSY_FORMATS = frozenset(['jpeg', 'webp', 'avif', 'tiff'])

FITS = {
    'cover': (Interesting.CENTRE, Size.BOTH),
    'contain': (Interesting.NONE, Size.BOTH),
    'inside': (Interesting.NONE, Size.BOTH),
    'fill': (Interesting.NONE, Size.FORCE),
}


def is_dimension(value: Any) -> bool:
  return value is None or (isinstance(value, int) and not isinstance(value, bool) and value > 0)


def invalid_edit(name: str) -> ImageHandlerError:
  return ImageHandlerError(
      HTTPStatus.BAD_REQUEST, 'ImageEdits::InvalidEdit',
      f'The {name} edit in your request is invalid.')


@dataclasses.dataclass(frozen=True)
class BoundingBox:
  left: int
  top: int
  width: int
  height: int

  @classmethod
  def from_rekognition(
      cls,
      box: Any,
      image_width: int,
      image_height: int,
      padding: int,
  ) -> 'BoundingBox':
    left = max(0, round(box['Left'] * image_width) - padding)
    top = max(0, round(box['Top'] * image_height) - padding)
    right = min(image_width, round((box['Left'] + box['Width']) * image_width) + padding)
    bottom = min(image_height, round((box['Top'] + box['Height']) * image_height) + padding)

    return cls(left, top, max(1, right - left), max(1, bottom - top))


class ImageProcessor:

  def __init__(self, log: Logger, settings: Settings):
    self.log = log
    self.settings = settings

  def process(
      self,
      s3: S3Client,
      rekognition: RekognitionClient,
      request: ProcessedRequest,
  ) -> str:
    if len(request.edits) == 0 and request.output_format is None:
      return self.encode_response(request.original_image)

    start_ns = time.time_ns()

    try:
      image = Image.new_from_buffer(request.original_image, '')
      output_format = request.output_format or LOADER_FORMATS.get(image.get('vips-loader'), 'png')

      image = self.apply_edits(s3, rekognition, request, image)
      buf = self.write(image, output_format, request.edits.get('quality'))
    except Error as e:
      self.log.warning({'message': 'failed to process image', 'key': request.key, 'reason': str(e)})
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'ImageProcessing::CannotProcessImage',
          'The image could not be processed. Please check the edits in your request.')

    self.log.debug({
        'message': 'processed',
        'key': request.key,
        'output_format': output_format,
        'img_size': len(buf),
        'vips_us': (time.time_ns() - start_ns) // 1000,
    })

    return self.encode_response(buf)

  def encode_response(self, buf: bytes) -> str:
    encoded = base64.b64encode(buf).decode()
    if len(encoded) > MAX_RESPONSE_SIZE:
      raise ImageHandlerError(
          HTTPStatus.REQUEST_ENTITY_TOO_LARGE, 'TooLargeImageException',
          'The converted image is too large to return.')
    return encoded

  def apply_edits(
      self,
      s3: S3Client,
      rekognition: RekognitionClient,
      request: ProcessedRequest,
      image: Image,
  ) -> Image:
    edits = request.edits

    if 'smartCrop' in edits:
      image = self.smart_crop(rekognition, request.original_image, image, edits['smartCrop'])

    if 'rotate' in edits:
      if edits['rotate'] is None:
        image = image.autorot()
      else:
        image = image.rotate(float(edits['rotate']))

    if 'resize' in edits:
      image = self.resize(image, edits['resize'])

    if edits.get('flip'):
      image = image.flip(Direction.VERTICAL)

    if edits.get('flop'):
      image = image.flip(Direction.HORIZONTAL)

    if edits.get('grayscale'):
      image = image.colourspace('b-w')

    if 'overlayWith' in edits:
      image = self.overlay(s3, request.bucket, image, edits['overlayWith'])

    return image

  def resize(self, image: Image, param: Any) -> Image:
    if not isinstance(param, dict):
      raise invalid_edit('resize')

    width = param.get('width')
    height = param.get('height')
    if not (is_dimension(width) and is_dimension(height)):
      raise invalid_edit('resize')
    if width is None and height is None:
      return image

    crop, size = FITS.get(param.get('fit', 'cover'), FITS['cover'])
    if width is None or height is None:
      # One side alone never crops.
      crop, size = Interesting.NONE, Size.BOTH

    return image.thumbnail_image(
        width if width is not None else UNBOUNDED,
        height=height if height is not None else UNBOUNDED,
        crop=crop,
        size=size)

  def smart_crop(
      self,
      rekognition: RekognitionClient,
      original: bytes,
      image: Image,
      param: Any,
  ) -> Image:
    param = param if isinstance(param, dict) else {}
    face_index = int(param.get('faceIndex', 0))
    padding = int(param.get('padding', 0))

    try:
      res = rekognition.detect_faces(Image={'Bytes': original})
    except ClientError as e:
      self.log.error({'message': 'failed to detect faces', 'reason': str(e)})
      raise ImageHandlerError(
          HTTPStatus.INTERNAL_SERVER_ERROR, 'SmartCrop::Error',
          'Smart Crop could not be applied. Please contact the system administrator.')

    faces = res.get('FaceDetails', [])
    if face_index < 0 or len(faces) <= face_index:
      raise ImageHandlerError(
          HTTPStatus.BAD_REQUEST, 'SmartCrop::FaceIndexOutOfRange',
          'You have provided a FaceIndex value that exceeds the length of the zero-based detectedFaces array. Please specify a value that is in-range.'
      )

    box = BoundingBox.from_rekognition(
        faces[face_index]['BoundingBox'], image.get('width'), image.get('height'), padding)

    return image.extract_area(box.left, box.top, box.width, box.height)

  def overlay(self, s3: S3Client, bucket: str, image: Image, param: Any) -> Image:
    if not isinstance(param, dict):
      raise invalid_edit('overlayWith')

    key = param.get('key')
    if key is None:
      return image

    overlay_bucket = ensure_allowed_bucket(self.settings, param.get('bucket', bucket))

    try:
      res = s3.get_object(Bucket=overlay_bucket, Key=key)
    except ClientError as e:
      if is_not_found_client_error(e):
        raise ImageHandlerError(
            HTTPStatus.NOT_FOUND, 'NoSuchKey', 'The specified overlay image does not exist.')
      raise

    overlay = Image.new_from_buffer(res['Body'].read(), '')
    return image.composite2(
        overlay, 'over', x=int(param.get('left', 0)), y=int(param.get('top', 0)))

  def write(self, image: Image, output_format: str, quality: Optional[int]) -> bytes:
    suffix = SUFFIXES[output_format]
    if output_format in LOSSY_FORMATS:
      return image.write_to_buffer(suffix, Q=int(quality or DEFAULT_QUALITY))
    return image.write_to_buffer(suffix)
