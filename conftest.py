import logging
from collections import Counter
from logging import Logger
from pathlib import Path
from typing import Callable

import pytest
from pyvips import Image  # type: ignore

from imgresizer.resize.index import OutputFormat, VipsCodec


class CountingCodec(VipsCodec):

  def __init__(self) -> None:
    super().__init__()
    self.calls: Counter[str] = Counter()

  def decode(self, data: bytes) -> Image:
    self.calls['decode'] += 1
    return super().decode(data)

  def resize(self, image: Image, width: int, height: int) -> Image:
    self.calls['resize'] += 1
    return super().resize(image, width, height)

  def encode(self, image: Image, output_format: OutputFormat) -> bytes:
    self.calls['encode'] += 1
    return super().encode(image, output_format)


@pytest.fixture
def logger() -> Logger:
  log = logging.getLogger(__name__)
  log.setLevel(logging.DEBUG)
  return log


@pytest.fixture
def codec() -> CountingCodec:
  return CountingCodec()


@pytest.fixture
def make_image(tmp_path: Path) -> Callable[[str, int, int], Path]:

  def fn(name: str, width: int, height: int) -> Path:
    path = tmp_path / name
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.black(width, height, bands=3).write_to_file(str(path))
    return path

  return fn
