import base64
from logging import Logger
from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from mypy_boto3_s3.client import S3Client
from pyvips import Image  # type: ignore

from conftest import FALLBACK_BUCKET, SOURCE_BUCKET, create_image
from imghandler.config import Settings
from imghandler.errors import ImageHandlerError
from imghandler.imagerequest.index import ProcessedRequest
from imghandler.typing import S3Key

from . import index
from .index import BoundingBox, ImageProcessor

LOADER_MAP = {
    'jpegload_buffer': 'image/jpeg',
    'pngload_buffer': 'image/png',
    'webpload_buffer': 'image/webp',
    'heifload_buffer': 'image/avif',
    'tiffload_buffer': 'image/tiff',
    'gifload_buffer': 'image/gif',
}

FACE = {'BoundingBox': {'Left': 0.25, 'Top': 0.5, 'Width': 0.5, 'Height': 0.5}}


def create_request(
    edits: dict[str, Any],
    output_format: Optional[str] = None,
    original: Optional[bytes] = None,
) -> ProcessedRequest:
  return ProcessedRequest(
      bucket=SOURCE_BUCKET,
      key=S3Key('image.png'),
      edits=edits,
      output_format=output_format,
      original_image=create_image() if original is None else original,
      content_type='image/png',
      cache_control=None,
      expires=None,
      last_modified=None)


def decode(b64: str) -> Image:
  return Image.new_from_buffer(base64.b64decode(b64), '')


def mime(image: Image) -> str:
  return LOADER_MAP[image.get('vips-loader')]


@pytest.fixture
def processor(logger: Logger) -> ImageProcessor:
  return ImageProcessor(logger, Settings(source_buckets=(SOURCE_BUCKET,)))


@pytest.fixture
def rekognition() -> MagicMock:
  client = MagicMock()
  client.detect_faces.return_value = {'FaceDetails': [FACE]}
  return client


def test_no_edits(processor: ImageProcessor, rekognition: MagicMock) -> None:
  req = create_request({})

  out = processor.process(MagicMock(), rekognition, req)

  assert base64.b64decode(out) == req.original_image
  rekognition.detect_faces.assert_not_called()


@pytest.mark.parametrize(
    'resize,size', [
        ({'width': 20, 'height': 20}, (20, 20)),
        ({'width': 20, 'height': 20, 'fit': 'cover'}, (20, 20)),
        ({'width': 20, 'height': 20, 'fit': 'inside'}, (20, 15)),
        ({'width': 20, 'height': 20, 'fit': 'fill'}, (20, 20)),
        ({'width': 20}, (20, 15)),
        ({'height': 15}, (20, 15)),
        ({}, (40, 30)),
    ],
    ids=['default', 'cover', 'inside', 'fill', 'width_only', 'height_only', 'empty'])
def test_resize(
    processor: ImageProcessor,
    rekognition: MagicMock,
    resize: dict[str, int],
    size: tuple[int, int],
) -> None:
  image = decode(processor.process(MagicMock(), rekognition, create_request({'resize': resize})))

  assert (image.get('width'), image.get('height')) == size
  assert mime(image) == 'image/png'


@pytest.mark.parametrize(
    'output_format,content_type', [
        ('jpeg', 'image/jpeg'),
        ('png', 'image/png'),
        ('webp', 'image/webp'),
        ('tiff', 'image/tiff'),
    ])
def test_output_format(
    processor: ImageProcessor,
    rekognition: MagicMock,
    output_format: str,
    content_type: str,
) -> None:
  image = decode(processor.process(MagicMock(), rekognition, create_request({}, output_format)))

  assert mime(image) == content_type
  assert (image.get('width'), image.get('height')) == (40, 30)


def test_keeps_original_format(processor: ImageProcessor, rekognition: MagicMock) -> None:
  req = create_request({'flip': True}, original=create_image(suffix='.jpg'))

  image = decode(processor.process(MagicMock(), rekognition, req))

  assert mime(image) == 'image/jpeg'


def test_grayscale(processor: ImageProcessor, rekognition: MagicMock) -> None:
  image = decode(processor.process(MagicMock(), rekognition, create_request({'grayscale': True})))

  assert image.get('bands') == 1


def test_flip_flop(processor: ImageProcessor, rekognition: MagicMock) -> None:
  image = decode(
      processor.process(MagicMock(), rekognition, create_request({
          'flip': True,
          'flop': True
      })))

  assert (image.get('width'), image.get('height')) == (40, 30)


def test_smart_crop(processor: ImageProcessor, rekognition: MagicMock) -> None:
  req = create_request({'smartCrop': {'faceIndex': 0, 'padding': 0}})

  image = decode(processor.process(MagicMock(), rekognition, req))

  assert (image.get('width'), image.get('height')) == (20, 15)
  rekognition.detect_faces.assert_called_once_with(Image={'Bytes': req.original_image})


def test_smart_crop_padding(processor: ImageProcessor, rekognition: MagicMock) -> None:
  image = decode(
      processor.process(MagicMock(), rekognition, create_request({'smartCrop': {
          'padding': 5
      }})))

  # Clamped at the bottom edge.
  assert (image.get('width'), image.get('height')) == (30, 20)


def test_smart_crop_out_of_range(processor: ImageProcessor, rekognition: MagicMock) -> None:
  with pytest.raises(ImageHandlerError) as e:
    processor.process(MagicMock(), rekognition, create_request({'smartCrop': {'faceIndex': 1}}))

  assert e.value.status == 400
  assert e.value.code == 'SmartCrop::FaceIndexOutOfRange'


def test_smart_crop_rekognition_error(processor: ImageProcessor, rekognition: MagicMock) -> None:
  rekognition.detect_faces.side_effect = ClientError(
      {'Error': {
          'Code': 'InvalidImageFormatException',
          'Message': 'invalid'
      }}, 'DetectFaces')

  with pytest.raises(ImageHandlerError) as e:
    processor.process(MagicMock(), rekognition, create_request({'smartCrop': True}))

  assert e.value.status == 500
  assert e.value.code == 'SmartCrop::Error'


def test_overlay(processor: ImageProcessor, rekognition: MagicMock, s3: S3Client) -> None:
  s3.put_object(Bucket=SOURCE_BUCKET, Key='logo.png', Body=create_image(10, 10))

  image = decode(
      processor.process(
          s3, rekognition, create_request({'overlayWith': {
              'key': 'logo.png',
              'left': 5,
              'top': 5
          }})))

  assert (image.get('width'), image.get('height')) == (40, 30)


def test_overlay_not_found(processor: ImageProcessor, rekognition: MagicMock, s3: S3Client) -> None:
  with pytest.raises(ImageHandlerError) as e:
    processor.process(s3, rekognition, create_request({'overlayWith': {'key': 'missing.png'}}))

  assert e.value.status == 404


def test_overlay_bucket_not_allowed(
    processor: ImageProcessor,
    rekognition: MagicMock,
    s3: S3Client,
) -> None:
  s3.put_object(Bucket=FALLBACK_BUCKET, Key='logo.png', Body=create_image(10, 10))

  with pytest.raises(ImageHandlerError) as e:
    processor.process(
        s3, rekognition,
        create_request({'overlayWith': {
            'bucket': FALLBACK_BUCKET,
            'key': 'logo.png'
        }}))

  assert e.value.status == 403
  assert e.value.code == 'ImageBucket::CannotAccessBucket'


@pytest.mark.parametrize(
    'edits', [
        {'resize': 'abc'},
        {'resize': {'width': 'wide'}},
        {'resize': {'width': 0}},
        {'resize': {'height': True}},
        {'overlayWith': 'logo.png'},
    ],
    ids=['resize_not_object', 'width_not_int', 'width_zero', 'height_bool', 'overlay_not_object'])
def test_invalid_edit(
    processor: ImageProcessor,
    rekognition: MagicMock,
    edits: dict[str, Any],
) -> None:
  with pytest.raises(ImageHandlerError) as e:
    processor.process(MagicMock(), rekognition, create_request(edits))

  assert e.value.status == 400
  assert e.value.code == 'ImageEdits::InvalidEdit'


def test_broken_image(processor: ImageProcessor, rekognition: MagicMock) -> None:
  with pytest.raises(ImageHandlerError) as e:
    processor.process(
        MagicMock(), rekognition, create_request({'grayscale': True}, original=b'broken'))

  assert e.value.status == 400
  assert e.value.code == 'ImageProcessing::CannotProcessImage'


def test_too_large(
    processor: ImageProcessor,
    rekognition: MagicMock,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
  monkeypatch.setattr(index, 'MAX_RESPONSE_SIZE', 16)

  with pytest.raises(ImageHandlerError) as e:
    processor.process(MagicMock(), rekognition, create_request({}))

  assert e.value.status == 413
  assert e.value.code == 'TooLargeImageException'


def test_bounding_box() -> None:
  box = BoundingBox.from_rekognition(FACE['BoundingBox'], 40, 30, 2)

  assert box == BoundingBox(left=8, top=13, width=24, height=17)
