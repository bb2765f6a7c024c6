"""Setup for pip package."""

import pathlib
import setuptools

NAME = 'rasterinterp'

def get_version(package=NAME):
  path = pathlib.Path(__file__).resolve().parent / package / '__init__.py'
  for line in path.read_text().splitlines():
    if line.startswith("__version__ = '"):
      _, version, _ = line.split("'")
      return version
  raise RuntimeError(f'Unable to find version string in {path}.')


def get_requirements():
  path = pathlib.Path(__file__).resolve().parent / NAME / 'requirements.txt'
  return [line.strip() for line in path.read_text().splitlines()
          if not (line.isspace() or line.startswith('#'))]


setuptools.setup(
  name=NAME,
  version=get_version(),
  description='Interpolation kernels and tiled resampling of multi-band rasters',
  long_description=(pathlib.Path(__file__).resolve().parent / 'README.md').read_text(),
  long_description_content_type='text/markdown',
  packages=[NAME],
  package_data={NAME: ['py.typed', 'requirements.txt']},
  classifiers=[
    'Intended Audience :: Developers',
    'Intended Audience :: Science/Research',
    'License :: OSI Approved :: MIT License',
    'Operating System :: OS Independent',
    'Programming Language :: Python :: 3',
    'Topic :: Scientific/Engineering :: GIS',
    'Topic :: Scientific/Engineering :: Image Processing',
    'Topic :: Software Development :: Libraries :: Python Modules',
  ],
  python_requires='>=3.9',
  install_requires=get_requirements(),
)
