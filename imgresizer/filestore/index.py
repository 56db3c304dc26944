import datetime
import stat
from pathlib import Path
from typing import Optional

from dateutil import tz

from imgresizer.typing import HttpPath

# Returned by last_modified() for anything that is not a regular file.
FILE_NOT_FOUND = datetime.datetime(1601, 1, 1, tzinfo=tz.tzutc())


class LocalFileStore:
  """Static file origin rooted at a directory.

  Paths handed to the store are ASGI paths, which the server has already
  percent-decoded.
  """

  root: Path

  def __init__(self, root: Path):
    self.root = root.resolve()

  def resolve(self, path: HttpPath) -> Optional[Path]:
    rel = path.lstrip('/')
    if rel == '' or '\x00' in rel or '..' in rel.split('/'):
      return None

    location = (self.root / rel).resolve()
    if not location.is_relative_to(self.root):
      return None

    return location

  def last_modified(self, location: Path) -> datetime.datetime:
    try:
      st = location.stat()
    except (FileNotFoundError, NotADirectoryError):
      return FILE_NOT_FOUND

    if not stat.S_ISREG(st.st_mode):
      return FILE_NOT_FOUND

    return datetime.datetime.fromtimestamp(st.st_mtime, tz=tz.tzutc())

  def read(self, location: Path) -> bytes:
    return location.read_bytes()
