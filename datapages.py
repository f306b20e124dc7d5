# The MIT License (MIT)
#
# Copyright (c) 2018 Niklas Rosenstein
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to
# deal in the Software without restriction, including without limitation the
# rights to use, copy, modify, merge, publish, distribute, sublicense, and/or
# sell copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in
# all copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING
# FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS
# IN THE SOFTWARE.
"""
Datapages is a minimal page server that renders Jinja2 templates against a
directory of JSON and text files, reloading everything on every request.
"""

__version__ = '1.0.0'
__author__ = 'Niklas Rosenstein <rosensteinniklas@gmail.com>'

from fastapi import FastAPI
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse
from fastapi.concurrency import run_in_threadpool

import abc
import asyncio
import functools
import io
import jinja2
import json
import logging
import os
import stat
import sys
import toml

log = logging.getLogger(__name__)

##
# Exceptions
##

class DatapagesError(Exception):
  pass


class DataLoadError(DatapagesError):
  """
  Raised when the data directory exists but can not be read at all.
  """


class TemplateDirectoryError(DatapagesError):
  """
  Raised when the template directory is missing or not a directory.
  """


class PageNotFoundError(DatapagesError):
  """
  Raised when the template for a page can not be found or fails to render.
  """

  def __init__(self, page, reason=None):
    DatapagesError.__init__(self, page, reason)
    self.page = page
    self.reason = reason

  def __str__(self):
    return "Template '{}' not found or rendering failed".format(self.page)


##
# Context Document
##

class Value(metaclass=abc.ABCMeta):
  """
  A value in a #ContextDocument. The only variants are #ObjectValue,
  #StringValue and #JsonValue.
  """

  __slots__ = ()

  @abc.abstractmethod
  def _key(self):
    pass

  def __eq__(self, other):
    if type(other) is not type(self):
      return NotImplemented
    return self._key() == other._key()

  def __ne__(self, other):
    result = self.__eq__(other)
    return result if result is NotImplemented else not result

  def __repr__(self):
    return '{}({!r})'.format(type(self).__name__, self._key())

  def to_template_data(self):
    return to_template_data(self)


class ObjectValue(Value):
  """
  A nested #ContextDocument, loaded from a subdirectory.
  """

  __slots__ = ('document',)

  def __init__(self, document):
    if not isinstance(document, ContextDocument):
      raise TypeError('expected ContextDocument, got {}'.format(
        type(document).__name__))
    self.document = document

  def _key(self):
    return self.document


class StringValue(Value):
  """
  The verbatim contents of a text file.
  """

  __slots__ = ('text',)

  def __init__(self, text):
    if not isinstance(text, str):
      raise TypeError('expected str, got {}'.format(type(text).__name__))
    self.text = text

  def _key(self):
    return self.text


class JsonValue(Value):
  """
  The parsed contents of a JSON file. *data* may be any JSON value.
  """

  __slots__ = ('data',)

  def __init__(self, data):
    self.data = data

  def _key(self):
    return self.data


def to_template_data(value):
  """
  Convert a #Value to the plain Python data that is handed to the template
  engine.
  """

  if isinstance(value, ObjectValue):
    return value.document.to_template_data()
  elif isinstance(value, StringValue):
    return value.text
  elif isinstance(value, JsonValue):
    return value.data
  raise TypeError('not a context value: {!r}'.format(value))


class ContextDocument(object):
  """
  A mapping of keys derived from file and directory names to #Value objects.

  Keys are not guaranteed to be unique on disk: `a.json`, `a.txt` and the
  directory `a/` all map to the key `a`. In that case the entry that is
  inserted last wins, which depends on the directory listing order and is
  therefore not stable across platforms.
  """

  def __init__(self, values=None):
    self._values = {}
    for key, value in (values or {}).items():
      self.set(key, value)

  def __repr__(self):
    return 'ContextDocument({!r})'.format(self._values)

  def __eq__(self, other):
    if not isinstance(other, ContextDocument):
      return NotImplemented
    return self._values == other._values

  def __ne__(self, other):
    result = self.__eq__(other)
    return result if result is NotImplemented else not result

  def __len__(self):
    return len(self._values)

  def __iter__(self):
    return iter(self._values)

  def __contains__(self, key):
    return key in self._values

  def __getitem__(self, key):
    return self._values[key]

  def get(self, key, default=None):
    return self._values.get(key, default)

  def set(self, key, value):
    if not isinstance(value, Value):
      raise TypeError('expected Value, got {}'.format(type(value).__name__))
    if key in self._values:
      log.debug('Key %r is overwritten by a later entry', key)
    self._values[key] = value

  def keys(self):
    return self._values.keys()

  def items(self):
    return self._values.items()

  def to_template_data(self):
    return {key: to_template_data(value) for key, value in self._values.items()}


##
# Context Loader
##

def _reject_constant(name):
  raise ValueError('invalid JSON constant: {}'.format(name))


class DirectoryLoader(object):
  """
  Walks a data directory and builds a #ContextDocument from it. Every
  filesystem call is dispatched to the default executor, so the walk yields
  to the event loop at each I/O boundary and can be cancelled there.
  Siblings are loaded concurrently; *max_workers* bounds the number of
  filesystem calls in flight.

  Failures of a single entry are logged and the entry is left out of the
  document. Only the failure to list the root directory is raised.
  """

  def __init__(self, encoding='utf8', max_workers=None):
    self.encoding = encoding
    self.max_workers = max_workers
    self._semaphore = None
    self.file_loaders = {
      '.json': self.load_json,
      '.txt': self.load_text,
    }

  async def load(self, root):
    self._semaphore = asyncio.Semaphore(self.max_workers) if self.max_workers else None
    if not await self._io(os.path.exists, root):
      log.info("Data directory '%s' does not exist, creating empty context", root)
      return ContextDocument()
    try:
      return await self.load_directory(root)
    except OSError as exc:
      raise DataLoadError('failed to load data directory {!r}: {}'.format(root, exc)) from exc

  async def _io(self, func, *args):
    loop = asyncio.get_running_loop()
    call = functools.partial(func, *args)
    if self._semaphore is None:
      return await loop.run_in_executor(None, call)
    async with self._semaphore:
      return await loop.run_in_executor(None, call)

  async def load_directory(self, directory):
    """
    Load all entries of *directory*. A directory that does not exist (any
    more) produces an empty document. Raises #OSError if the directory can
    not be listed.
    """

    document = ContextDocument()
    if not await self._io(os.path.exists, directory):
      return document

    names = await self._io(os.listdir, directory)
    results = await asyncio.gather(*[
      self.load_entry(os.path.join(directory, name), name) for name in names])
    for result in results:
      if result is not None:
        document.set(*result)
    return document

  async def load_entry(self, filename, name):
    """
    Load a single directory entry. Returns a `(key, value)` tuple or #None
    if the entry is ignored or failed to load.
    """

    try:
      st = await self._io(os.stat, filename)
    except OSError as exc:
      log.error('Failed to read metadata of %s: %s', filename, exc)
      return None

    if stat.S_ISDIR(st.st_mode):
      try:
        document = await self.load_directory(filename)
      except OSError as exc:
        log.error('Failed to load directory %s: %s', filename, exc)
        return None
      log.info('Loaded directory: %s', filename)
      return name, ObjectValue(document)

    if not stat.S_ISREG(st.st_mode):
      return None

    stem, suffix = os.path.splitext(name)
    loader = self.file_loaders.get(suffix)
    if not stem or loader is None:
      return None
    value = await loader(filename)
    if value is None:
      return None
    return stem, value

  def _read(self, filename):
    with io.open(filename, encoding=self.encoding, newline='') as fp:
      return fp.read()

  async def _read_file(self, filename):
    try:
      return await self._io(self._read, filename)
    except (OSError, UnicodeDecodeError) as exc:
      log.error('Failed to read file %s: %s', filename, exc)
      return None

  async def load_json(self, filename):
    content = await self._read_file(filename)
    if content is None:
      return None
    try:
      data = json.loads(content, parse_constant=_reject_constant)
    except (ValueError, RecursionError) as exc:
      log.error('Failed to parse JSON file %s: %s', filename, exc)
      return None
    log.info('Loaded JSON file: %s', filename)
    return JsonValue(data)

  async def load_text(self, filename):
    content = await self._read_file(filename)
    if content is None:
      return None
    log.info('Loaded text file: %s', filename)
    return StringValue(content)


async def load_context(root, max_workers=None, encoding='utf8'):
  """
  Load the data directory *root* into a #ContextDocument. Returns an empty
  document if *root* does not exist. Raises #DataLoadError if *root* exists
  but can not be listed.
  """

  return await DirectoryLoader(encoding, max_workers).load(root)


def load_context_sync(root, max_workers=None, encoding='utf8'):
  return asyncio.run(load_context(root, max_workers, encoding))


##
# Page Renderer
##

class DataEnvironment(jinja2.Environment):
  """
  A #jinja2.Environment that looks up keys of dictionaries before their
  attributes, so that data keys like `items` or `keys` are not shadowed by
  the methods of #dict.
  """

  def getattr(self, obj, attribute):
    if isinstance(obj, dict):
      try:
        return obj[attribute]
      except KeyError:
        pass
    return jinja2.Environment.getattr(self, obj, attribute)


def page_template_name(page, suffix='.html'):
  return 'pages/{}{}'.format(page or 'index', suffix)


class JinjaPageRenderer(object):
  """
  Renders `pages/<name>` templates from the *template_directory*. A new
  #jinja2.Environment is created for every request so that changes to the
  templates are picked up immediately.
  """

  def __init__(self, template_directory, template_suffix='.html', encoding='utf8'):
    self.template_directory = template_directory
    self.template_suffix = template_suffix
    self.encoding = encoding

  def create_environment(self):
    if not os.path.isdir(self.template_directory):
      raise TemplateDirectoryError('template directory {!r} does not exist'
        .format(self.template_directory))
    loader = jinja2.FileSystemLoader(self.template_directory, encoding=self.encoding)
    return DataEnvironment(
      loader=loader,
      undefined=jinja2.ChainableUndefined,
      autoescape=jinja2.select_autoescape(['html', 'htm', 'xml']))

  def render(self, env, page, document):
    """
    Render the template for *page* with the data of the #ContextDocument.
    Lookups of missing keys render empty, any other error raised while
    loading or rendering the template becomes a #PageNotFoundError.
    """

    name = page_template_name(page, self.template_suffix)
    try:
      template = env.get_template(name)
      return template.render(document.to_template_data())
    except Exception as exc:
      raise PageNotFoundError(page or 'index', exc) from exc

  def render_page(self, page, document):
    return self.render(self.create_environment(), page, document)


##
# Configuration
##

class Config(object):
  """
  Wraps a dictionary that may contain nested values. Values in nested
  dictionaries can be retrieved by separating keys by dots.
  """

  _missing = object()

  def __init__(self, data=None):
    self._data = data if data is not None else {}

  def __repr__(self):
    return 'Config({!r})'.format(self._data)

  def _resolve(self, key, create_intermediate=False):
    """
    Returns the container that holds the last part of *key* and that part,
    or `(None, None)` if an intermediate value is missing or not a table.
    """

    parts = key.split('.')
    container = self._data
    for part in parts[:-1]:
      if part not in container:
        if not create_intermediate:
          return None, None
        container[part] = {}
      container = container[part]
      if not isinstance(container, dict):
        return None, None
    return container, parts[-1]

  def __getitem__(self, key):
    container, last = self._resolve(key)
    if container is None or last not in container:
      raise KeyError(key)
    return container[last]

  def __setitem__(self, key, value):
    container, last = self._resolve(key, True)
    if container is None:
      raise KeyError(key)
    container[last] = value

  def __contains__(self, key):
    container, last = self._resolve(key)
    return container is not None and last in container

  def get(self, key, default=None):
    try:
      return self[key]
    except KeyError:
      return default

  def setdefault(self, key, value):
    if key in self:
      return self[key]
    self[key] = value
    return value

  def pop(self, key, default=_missing):
    container, last = self._resolve(key)
    if container is None or last not in container:
      if default is Config._missing:
        raise KeyError(key)
      return default
    return container.pop(last)


DEFAULT_CONFIG_FILE = '.datapages.toml'


def load_config(filename=None):
  """
  Load the TOML configuration from *filename*, or from `.datapages.toml` in
  the current directory if it exists, and fill in the defaults.
  """

  if not filename and os.path.isfile(DEFAULT_CONFIG_FILE):
    filename = DEFAULT_CONFIG_FILE
  if filename:
    with io.open(filename, encoding='utf8') as fp:
      config = Config(toml.load(fp))
  else:
    config = Config()

  config.setdefault('server.host', '127.0.0.1')
  config.setdefault('server.port', 8080)
  config.setdefault('datapages.templateDirectory', 'templates')
  config.setdefault('datapages.dataDirectory', 'data')
  config.setdefault('datapages.templateSuffix', '.html')
  config.setdefault('datapages.encoding', 'utf8')
  config.setdefault('datapages.maxWorkers', 8)
  config.setdefault('datapages.logLevel', 'INFO')
  return config


##
# HTTP application
##

def create_app(config=None):
  """
  Create the #FastAPI application serving `GET /{page}`. `GET /` redirects
  permanently to `/index`.
  """

  if not isinstance(config, Config):
    config = Config(config)
  data_directory = config.get('datapages.dataDirectory', 'data')
  encoding = config.get('datapages.encoding', 'utf8')
  max_workers = config.get('datapages.maxWorkers')
  renderer = JinjaPageRenderer(
    config.get('datapages.templateDirectory', 'templates'),
    config.get('datapages.templateSuffix', '.html'),
    encoding)

  app = FastAPI(title='datapages', docs_url=None, redoc_url=None, openapi_url=None)
  app.state.config = config
  app.state.renderer = renderer

  @app.get('/')
  async def index():
    return RedirectResponse('/index', status_code=308)

  @app.get('/{page}')
  async def render_page(page: str):
    try:
      env = await run_in_threadpool(renderer.create_environment)
    except TemplateDirectoryError as exc:
      log.error('Failed to register templates: %s', exc)
      return PlainTextResponse('Failed to load templates', status_code=500)

    try:
      document = await load_context(data_directory, max_workers, encoding)
    except DataLoadError as exc:
      log.error('Failed to load data files: %s', exc)
      return PlainTextResponse('Failed to load data files', status_code=500)

    try:
      html = await run_in_threadpool(renderer.render, env, page, document)
    except PageNotFoundError as exc:
      log.error('Template rendering error for %r: %s', page, exc.reason)
      return PlainTextResponse(str(exc), status_code=404)
    return HTMLResponse(html)

  return app


##
# Main
##

def get_argument_parser(prog=None):
  import argparse
  parser = argparse.ArgumentParser(prog=prog, description=__doc__.strip())
  parser.add_argument('--version', action='version', version=__version__, help='Display the version and exit.')
  parser.add_argument('-c', '--config', help='Alternative configuration file.')
  parser.add_argument('--host', help='Override the address to listen on.')
  parser.add_argument('--port', type=int, help='Override the port to listen on.')
  parser.add_argument('-t', '--templates', help='Override the template directory.')
  parser.add_argument('-d', '--data', help='Override the data directory.')
  parser.add_argument('--log-level', help='Override the log level (e.g. DEBUG, INFO).')
  parser.add_argument('--dump-context', action='store_true', help='Print the context loaded from the data directory as JSON and exit.')
  return parser


def main(argv=None, prog=None):
  parser = get_argument_parser(prog)
  args = parser.parse_args(argv)

  config = load_config(args.config)
  if args.host:
    config['server.host'] = args.host
  if args.port:
    config['server.port'] = args.port
  if args.templates:
    config['datapages.templateDirectory'] = args.templates
  if args.data:
    config['datapages.dataDirectory'] = args.data
  if args.log_level:
    config['datapages.logLevel'] = args.log_level

  level = str(config['datapages.logLevel']).upper()
  if not isinstance(logging.getLevelName(level), int):
    parser.error('invalid log level: {!r}'.format(config['datapages.logLevel']))
  logging.basicConfig(level=level, format='[%(levelname)s %(name)s]: %(message)s')

  if args.dump_context:
    try:
      document = load_context_sync(
        config['datapages.dataDirectory'],
        config['datapages.maxWorkers'],
        config['datapages.encoding'])
    except DataLoadError as exc:
      log.error('%s', exc)
      return 1
    print(json.dumps(document.to_template_data(), indent=2, sort_keys=True))
    return 0

  import uvicorn
  host, port = config['server.host'], config['server.port']
  log.info('Server starting on http://%s:%s', host, port)
  log.info('Templates directory: %s', config['datapages.templateDirectory'])
  log.info('Data directory: %s', config['datapages.dataDirectory'])
  log.info('Templates and data files are reloaded on each request')
  uvicorn.run(create_app(config), host=host, port=port, log_level=level.lower())
  return 0

_entry_point = lambda: sys.exit(main())


if __name__ == '__main__':
  _entry_point()
