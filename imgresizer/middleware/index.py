import dataclasses
import datetime
import logging
import os
import sys
from http import HTTPStatus
from logging import Logger
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib import parse

from pathspec import PathSpec
from pathspec.patterns.gitwildmatch import GitWildMatchPattern
from pythonjsonlogger.json import JsonFormatter
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.routing import Mount
from starlette.staticfiles import StaticFiles

import imgresizer
from imgresizer.filestore.index import FILE_NOT_FOUND, LocalFileStore
from imgresizer.resize.index import (
    DEFAULT_CACHE_CAPACITY,
    DEFAULT_CACHE_MAX_BYTES,
    ImgResizer,
    ResizeCache,
    ResizeResult,
    VipsCodec,
    get_resize_directive,
    is_image_path
)
from imgresizer.typing import ASGIApp, HttpPath, Receive, Scope, Send

ENV_WEB_ROOT = 'IMGRESIZER_WEB_ROOT'
ENV_CONTENT_ROOT = 'IMGRESIZER_CONTENT_ROOT'
ENV_CACHE_CAPACITY = 'IMGRESIZER_CACHE_CAPACITY'
ENV_CACHE_MAX_BYTES = 'IMGRESIZER_CACHE_MAX_BYTES'
ENV_BYPASS_PATTERNS = 'IMGRESIZER_BYPASS_PATTERNS'


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgresizer.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  log = logging.getLogger('imgresizer')
  log.setLevel(logging.DEBUG)
  for h in list(log.handlers):
    log.removeHandler(h)

  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


def get_positive_int(log: Logger, environ: Mapping[str, str], key: str, default: int) -> int:
  if key not in environ:
    return default

  try:
    value = int(environ[key])
    if value <= 0:
      raise ValueError(f'non-positive value: {value}')
  except ValueError as e:
    log.warning({
        'message': 'invalid environment variable',
        'key': key,
        'reason': str(e),
    })
    return default

  return value


@dataclasses.dataclass(eq=True, frozen=True)
class Config:
  root: str
  cache_capacity: int = DEFAULT_CACHE_CAPACITY
  cache_max_bytes: int = DEFAULT_CACHE_MAX_BYTES
  bypass_patterns: str = ''

  @classmethod
  def from_env(cls, log: Logger, environ: Mapping[str, str]) -> 'Config':
    root = environ.get(ENV_WEB_ROOT) or environ.get(ENV_CONTENT_ROOT) or os.getcwd()

    return cls(
        root=root,
        cache_capacity=get_positive_int(log, environ, ENV_CACHE_CAPACITY, DEFAULT_CACHE_CAPACITY),
        cache_max_bytes=get_positive_int(
            log, environ, ENV_CACHE_MAX_BYTES, DEFAULT_CACHE_MAX_BYTES),
        bypass_patterns=environ.get(ENV_BYPASS_PATTERNS, ''))

  def bypass_path_spec(self) -> Optional[PathSpec]:
    if self.bypass_patterns == '':
      return None
    return PathSpec.from_lines(GitWildMatchPattern, self.bypass_patterns.split(','))


@dataclasses.dataclass(eq=True, frozen=True)
class PassThrough:
  reason: str


def static_app(root: str) -> ASGIApp:
  return Starlette(routes=[Mount('/', app=StaticFiles(directory=root))])


class ImageResizerMiddleware:
  """Serve resized images for ``?w=&h=&format=`` requests.

  Everything the middleware does not handle, including every failure while
  classifying or resizing, is forwarded untouched to the wrapped app.
  """

  instances: dict[Config, 'ImageResizerMiddleware'] = {}

  def __init__(
      self,
      app: ASGIApp,
      log: Logger,
      store: LocalFileStore,
      resizer: ImgResizer,
      bypass_path_spec: Optional[PathSpec] = None,
  ):
    self.app = app
    self.log = log
    self.store = store
    self.resizer = resizer
    self.bypass_path_spec = bypass_path_spec

  @classmethod
  def from_config(cls, log: Logger, config: Config) -> 'ImageResizerMiddleware':
    if config not in cls.instances:
      store = LocalFileStore(Path(config.root))
      resizer = ImgResizer(
          log=log,
          store=store,
          codec=VipsCodec(),
          cache=ResizeCache(config.cache_capacity, config.cache_max_bytes))
      cls.instances[config] = cls(
          app=static_app(config.root),
          log=log,
          store=store,
          resizer=resizer,
          bypass_path_spec=config.bypass_path_spec())

    return cls.instances[config]

  def log_debug(self, message: str, context: dict[str, str], dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **context,
        **dict,
    })

  def log_info(self, message: str, context: dict[str, str], dict: dict[str, Any]) -> None:
    self.log.info({
        'message': message,
        **context,
        **dict,
    })

  def log_error(self, message: str, context: dict[str, str], dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **context,
        **dict,
    })

  async def process(
      self,
      path: HttpPath,
      qstr: str,
      context: dict[str, str],
  ) -> PassThrough | ResizeResult:
    if qstr == '':
      return PassThrough(reason='no query')

    if not is_image_path(path):
      return PassThrough(reason='not image')

    if self.bypass_path_spec is not None and self.bypass_path_spec.match_file(path):
      return PassThrough(reason='bypassed')

    directive = get_resize_directive(path, parse.parse_qs(qstr, keep_blank_values=True))
    if not directive.present:
      return PassThrough(reason='no resize params')

    self.log_info('resizing', context, {'directive': str(directive)})

    location = self.store.resolve(path)
    if location is None:
      return PassThrough(reason='unresolvable')

    last_modified = self.store.last_modified(location)
    if last_modified == FILE_NOT_FOUND:
      return PassThrough(reason='no orig')

    return await run_in_threadpool(
        self.resizer.get_image_data, location, last_modified, directive)

  async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
    if scope['type'] != 'http':
      await self.app(scope, receive, send)
      return

    path = HttpPath(scope['path'])
    qstr = scope['query_string'].decode('latin-1')
    context = {'path': str(path), 'qstr': qstr}

    try:
      result = await self.process(path, qstr, context)
    except Exception as e:
      self.log_error('error resizing image', context, {
          'reason': str(e),
          'exception': type(e).__name__,
      })
      result = PassThrough(reason='error occurred')

    if isinstance(result, PassThrough):
      self.log_debug('passed through', context, {'reason': result.reason})
      await self.app(scope, receive, send)
      return
    elif isinstance(result, ResizeResult):
      self.log_debug(
          'responded', context, {
              'content_type': result.content_type,
              'img_size': len(result.body),
              'cached': result.cached,
          })

      await send({
          'type': 'http.response.start',
          'status': int(HTTPStatus.OK),
          'headers': [
              (b'content-type', result.content_type.encode('latin-1')),
              (b'content-length', str(len(result.body)).encode('latin-1')),
          ],
      })
      await send({'type': 'http.response.body', 'body': result.body})
    else:
      raise Exception('system error')


def app_from_env(environ: Mapping[str, str]) -> ImageResizerMiddleware:
  log = init_logging()
  return ImageResizerMiddleware.from_config(log, Config.from_env(log, environ))
