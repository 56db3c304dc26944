from importlib import metadata
from pathlib import Path

DIST_NAME = 'imgresizer'


def get_version() -> str:
  version_file = Path(__file__).parent.resolve().with_name('VERSION')
  if version_file.is_file():
    return version_file.read_text().strip()
  # Installed without the source tree.
  return metadata.version(DIST_NAME)


version = get_version()
