
import setuptools

with open('requirements.txt') as fp:
  requirements = fp.readlines()

with open('README.md') as fp:
  long_description = fp.read()

setuptools.setup(
  name = 'datapages',
  version = '1.0.0',
  author = 'Niklas Rosenstein',
  author_email = 'rosensteinniklas@gmail.com',
  license = 'MIT',
  description = 'Datapages renders Jinja2 pages against a live directory of JSON and text files.',
  long_description = long_description,
  long_description_content_type = 'text/markdown',
  url = 'https://github.com/NiklasRosenstein/datapages',
  py_modules = ['datapages'],
  python_requires = '>=3.8',
  install_requires = requirements,
  extras_require = dict(
    test = ['pytest', 'httpx']
  ),
  entry_points = dict(
    console_scripts = [
      'datapages = datapages:_entry_point'
    ]
  )
)
