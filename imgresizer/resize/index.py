import dataclasses
import datetime
import hashlib
import os
import re
import threading
import time
from collections import OrderedDict
from enum import Enum
from logging import Logger
from pathlib import Path
from typing import Any, Optional

from pyvips import Image  # type: ignore

from imgresizer.filestore.index import LocalFileStore
from imgresizer.typing import HttpPath, QueryDict

IMAGE_EXTENSIONS = ['.png', '.jpg', '.jpeg']

# Query parameters that make a request a resize candidate.
RESIZE_PARAMS = ('w', 'h', 'format')

JPEG_QUALITY = 80
DEFAULT_CACHE_CAPACITY = 256
DEFAULT_CACHE_MAX_BYTES = 256 * 1024 * 1024

# Decimal integer with optional sign and surrounding whitespace.
DIMENSION_RE = re.compile(r'\s*[+-]?[0-9]+\s*', re.ASCII)
MAX_DIMENSION = 2**31 - 1


class OutputFormat(Enum):
  PNG = 0
  JPEG = 1

  @classmethod
  def from_str(cls, s: str) -> 'OutputFormat':
    # Anything that isn't PNG is served as JPEG.
    if s.lower() == 'png':
      return cls.PNG
    return cls.JPEG

  def content_type(self) -> str:
    if self == OutputFormat.PNG:
      return 'image/png'
    if self == OutputFormat.JPEG:
      return 'image/jpeg'
    raise Exception('system error')

  def extension(self) -> str:
    if self == OutputFormat.PNG:
      return '.png'
    if self == OutputFormat.JPEG:
      return '.jpg'
    raise Exception('system error')


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))


@dataclasses.dataclass(eq=True, frozen=True)
class ResizeDirective:
  present: bool
  width: int = 0
  height: int = 0
  format: str = ''

  @property
  def output_format(self) -> OutputFormat:
    return OutputFormat.from_str(self.format)

  def with_size(self, size: Size) -> 'ResizeDirective':
    return dataclasses.replace(self, width=size.width, height=size.height)

  def __str__(self) -> str:
    return f'w: {self.width}, h: {self.height}, format: {self.format}'


NO_DIRECTIVE = ResizeDirective(present=False)


@dataclasses.dataclass(frozen=True)
class ResizeResult:
  body: bytes
  content_type: str
  cached: bool


def get_normalized_extension(path: HttpPath) -> str:
  _, ext = os.path.splitext(path.lower())
  return ext


def is_image_path(path: HttpPath) -> bool:
  if not path:
    return False

  return get_normalized_extension(path) in IMAGE_EXTENSIONS


def parse_dimension(qs: QueryDict, name: str) -> int:
  if name not in qs or len(qs[name]) == 0:
    return 0

  s = qs[name][0]
  if DIMENSION_RE.fullmatch(s) is None:
    return 0

  value = int(s)
  if value < 0 or MAX_DIMENSION < value:
    return 0

  return value


def get_resize_directive(path: HttpPath, qs: QueryDict) -> ResizeDirective:
  if not any(name in qs for name in RESIZE_PARAMS):
    return NO_DIRECTIVE

  if 'format' in qs and 0 < len(qs['format']):
    fmt = qs['format'][0]
  else:
    fmt = path[path.rfind('.') + 1:]

  return ResizeDirective(
      present=True,
      width=parse_dimension(qs, 'w'),
      height=parse_dimension(qs, 'h'),
      format=fmt)


def resolve_size(original: Size, directive: ResizeDirective) -> Size:
  """Fill in a zero width or height from the original aspect ratio.

  When both are given the image is stretched to exactly that size. When both
  are zero the result is 0x0, which the codec refuses to resize to.
  """
  width = directive.width
  height = directive.height

  if height == 0:
    height = round(original.height * width / original.width)
  elif width == 0:
    width = round(original.width * height / original.height)

  return Size(width, height)


def cache_key(location: Path, last_modified: datetime.datetime, directive: ResizeDirective) -> str:
  # Collisions would serve the wrong image, hence a cryptographic digest.
  canonical = '\x00'.join([
      str(location),
      last_modified.isoformat(),
      str(directive.width),
      str(directive.height),
      directive.output_format.name,
  ])
  return hashlib.blake2b(canonical.encode(), digest_size=16).hexdigest()


class ResizeCache:
  """Process-wide LRU store of encoded images.

  Bounded both by entry count and by the total size of the stored bytes. An
  entry larger than the byte budget on its own is not stored.
  """

  def __init__(
      self,
      capacity: int = DEFAULT_CACHE_CAPACITY,
      max_bytes: int = DEFAULT_CACHE_MAX_BYTES,
  ):
    if capacity <= 0 or max_bytes <= 0:
      raise ValueError(f'Invalid argument: capacity: {capacity}, max_bytes: {max_bytes}')

    self.capacity = capacity
    self.max_bytes = max_bytes
    self.entries: OrderedDict[str, bytes] = OrderedDict()
    self.nbytes = 0
    self.lock = threading.Lock()
    self.hits = 0
    self.misses = 0

  def get(self, key: str) -> Optional[bytes]:
    with self.lock:
      data = self.entries.get(key)
      if data is None:
        self.misses += 1
        return None

      self.entries.move_to_end(key)
      self.hits += 1
      return data

  def set(self, key: str, data: bytes) -> None:
    with self.lock:
      old = self.entries.pop(key, None)
      if old is not None:
        self.nbytes -= len(old)

      if self.max_bytes < len(data):
        return

      self.entries[key] = data
      self.nbytes += len(data)
      while self.capacity < len(self.entries) or self.max_bytes < self.nbytes:
        _, evicted = self.entries.popitem(last=False)
        self.nbytes -= len(evicted)

  def clear(self) -> None:
    with self.lock:
      self.entries.clear()
      self.nbytes = 0

  def stats(self) -> dict[str, int]:
    with self.lock:
      return {
          'size': len(self.entries),
          'capacity': self.capacity,
          'bytes': self.nbytes,
          'max_bytes': self.max_bytes,
          'hits': self.hits,
          'misses': self.misses,
      }

  def __len__(self) -> int:
    with self.lock:
      return len(self.entries)


class VipsCodec:

  def __init__(self, jpeg_quality: int = JPEG_QUALITY):
    self.jpeg_quality = jpeg_quality

  def decode(self, data: bytes) -> Image:
    # Truncated or damaged files raise instead of decoding with a grey fill.
    return Image.new_from_buffer(data, '', fail=True)

  def size(self, image: Image) -> Size:
    return Size.from_image(image)

  def resize(self, image: Image, width: int, height: int) -> Image:
    if width <= 0 or height <= 0:
      raise ValueError(f'Invalid target size: width: {width}, height: {height}')

    return image.thumbnail_image(width, height=height, size='force')

  def encode(self, image: Image, output_format: OutputFormat) -> bytes:
    if output_format == OutputFormat.PNG:
      return image.write_to_buffer(output_format.extension())
    return image.write_to_buffer(output_format.extension(), Q=self.jpeg_quality)


class ImgResizer:
  """Resize cache pipeline.

  Looks the request up in the cache by (location, last modified, directive)
  and only decodes, resizes and encodes on a miss. Every failure is raised to
  the caller.
  """

  def __init__(
      self,
      log: Logger,
      store: LocalFileStore,
      codec: VipsCodec,
      cache: ResizeCache,
  ):
    self.log = log
    self.store = store
    self.codec = codec
    self.cache = cache

  def log_info(self, message: str, dict: dict[str, Any]) -> None:
    self.log.info({
        'message': message,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **dict,
    })

  def get_image_data(
      self,
      location: Path,
      last_modified: datetime.datetime,
      directive: ResizeDirective,
  ) -> ResizeResult:
    key = cache_key(location, last_modified, directive)
    output_format = directive.output_format

    cached = self.cache.get(key)
    if cached is not None:
      self.log_info('serving from cache', {'location': str(location), 'key': key})
      return ResizeResult(body=cached, content_type=output_format.content_type(), cached=True)

    start_ns = time.time_ns()

    image = self.codec.decode(self.store.read(location))
    original = self.codec.size(image)
    resolved = directive.with_size(resolve_size(original, directive))
    resized = self.codec.resize(image, resolved.width, resolved.height)
    body = self.codec.encode(resized, output_format)

    vips_us = (time.time_ns() - start_ns) // 1000

    self.cache.set(key, body)

    self.log_debug(
        'resized', {
            'location': str(location),
            'key': key,
            'original': original,
            'resolved': str(resolved),
            'img_size': len(body),
            'vips_us': vips_us,
        })

    return ResizeResult(body=body, content_type=output_format.content_type(), cached=False)
