"""rasterinterp: interpolation kernels and a tiled resampling driver for multi-band rasters.

.. include:: ../README.md
"""

from __future__ import annotations

__docformat__ = 'google'
__version__ = '0.1.0'
__version_info__ = tuple(int(num) for num in __version__.split('.'))

from collections.abc import Callable, Iterator, Sequence
import abc
import concurrent.futures
import dataclasses
import math
import operator
import time
import typing
from typing import Any

import numpy as np
import numpy.typing as npt
import scipy.ndimage

if typing.TYPE_CHECKING:
  _NDArray = npt.NDArray[Any]
  _ArrayLike = npt.ArrayLike
else:
  _NDArray = Any
  _ArrayLike = Any  # Else `pdoc` uses a long type expression for documentation.

Transform = Callable[[Any, Any], tuple[Any, Any]]
"""Coordinate function mapping arrays of destination `(x, y)` to arrays of source `(x, y)`."""


def _check_eq(a: Any, b: Any) -> None:
  """If the two values or arrays are not equal, raise an exception with a useful message."""
  are_equal = np.all(a == b) if isinstance(a, np.ndarray) else a == b
  if not are_equal:
    raise AssertionError(f'{a!r} == {b!r}')


def _sinc(x: _ArrayLike) -> _NDArray:
  """Return the value `np.sinc(x)` but improved to:
  (1) ignore underflow that occurs at 0.0 for np.float32, and
  (2) output exact zero for integer input values.

  >>> _sinc(np.array([-3, -2, -1, 0], dtype=np.float32))
  array([0., 0., 0., 1.], dtype=float32)

  >>> _sinc(0)
  1.0
  """
  x = np.asarray(x)
  x_is_scalar = x.ndim == 0
  with np.errstate(under='ignore'):
    result = np.sinc(np.atleast_1d(x))
    result[np.atleast_1d(x == np.floor(x))] = 0.0
    result[np.atleast_1d(x == 0)] = 1.0
    return result.item() if x_is_scalar else result


class RasterInterpError(Exception):
  """Base class for the errors raised by this package."""


class OutOfDomainError(RasterInterpError, IndexError):
  """A sample accessor was queried outside its grid of integer coordinates."""


class InsufficientMarginError(RasterInterpError, ValueError):
  """The neighborhood required by an interpolation kernel extends outside the source grid."""


class InvalidQueryError(RasterInterpError, ValueError):
  """An extrema query is inconsistent with the result cached by the tracker."""


class ResampleCancelledError(RasterInterpError):
  """The cancellation callback of `resample` requested to stop between tiles."""


@dataclasses.dataclass(frozen=True)
class Rect:
  """Rectangle of integer pixel coordinates `[x, x + width) x [y, y + height)`."""

  x: int
  """First column."""

  y: int
  """First row."""

  width: int
  height: int

  def __post_init__(self) -> None:
    if self.width < 0 or self.height < 0:
      raise ValueError(f'Rect {self} has negative size.')

  @property
  def x_max(self) -> int:
    """Last included column."""
    return self.x + self.width - 1

  @property
  def y_max(self) -> int:
    """Last included row."""
    return self.y + self.height - 1

  @property
  def is_empty(self) -> bool:
    return self.width == 0 or self.height == 0

  def contains_point(self, x: int, y: int) -> bool:
    return self.x <= x <= self.x_max and self.y <= y <= self.y_max

  def contains_rect(self, other: Rect) -> bool:
    if other.is_empty:
      return True
    return (self.x <= other.x and other.x_max <= self.x_max and
            self.y <= other.y and other.y_max <= self.y_max)

  def shrink(self, low: int, high: int) -> Rect:
    """Return the rectangle with `low` pixels removed from the low side of each axis and `high`
    pixels removed from the high side.  The result may be empty."""
    width = max(self.width - low - high, 0)
    height = max(self.height - low - high, 0)
    return Rect(self.x + low, self.y + low, width, height)

  def intersection(self, other: Rect) -> Rect:
    x, y = max(self.x, other.x), max(self.y, other.y)
    width = max(min(self.x + self.width, other.x + other.width) - x, 0)
    height = max(min(self.y + self.height, other.y + other.height) - y, 0)
    return Rect(x, y, width, height)

  def slices(self, origin_x: int, origin_y: int) -> tuple[slice, slice]:
    """Return `(rows, columns)` slices of this rectangle in an array whose first sample is at
    `(origin_x, origin_y)`."""
    return (slice(self.y - origin_y, self.y - origin_y + self.height),
            slice(self.x - origin_x, self.x - origin_x + self.width))


class SampleAccessor:
  """Read-only random access to a multi-band grid of samples at integer pixel coordinates.

  Args:
    array: Grid of numeric samples with shape `(height, width)` or `(height, width, num_bands)`.
      The values are copied into a read-only float64 array.
    origin: Pixel coordinates `(min_x, min_y)` of the first sample `array[0, 0]`.

  The domain is `[min_x, min_x + width) x [min_y, min_y + height)`.  Row index `y` and column
  index `x` address the sample `array[y - min_y, x - min_x]`.
  """

  def __init__(self, array: _ArrayLike, *, origin: tuple[int, int] = (0, 0)) -> None:
    array = np.asarray(array)
    if not np.issubdtype(array.dtype, np.number) or np.issubdtype(array.dtype, np.complexfloating):
      raise ValueError(f'Type {array.dtype} is not real numeric.')
    if array.ndim == 2:
      array = array[..., None]
    if array.ndim != 3:
      raise ValueError(f'Array shape {array.shape} is not (height, width[, num_bands]).')
    if 0 in array.shape:
      raise ValueError(f'Array shape {array.shape} is empty.')
    self._array = np.array(array, np.float64)
    self._array.flags.writeable = False
    min_x, min_y = (operator.index(value) for value in origin)
    self.domain = Rect(min_x, min_y, array.shape[1], array.shape[0])
    """Rectangle of valid integer coordinates."""

  @property
  def num_bands(self) -> int:
    return self._array.shape[2]

  @property
  def array(self) -> _NDArray:
    """Read-only samples, with shape `(height, width, num_bands)`."""
    return self._array

  def sample(self, x: int, y: int, band: int = 0) -> float:
    """Return the stored value at integer coordinates `(x, y)` in `band`."""
    try:
      x, y, band = operator.index(x), operator.index(y), operator.index(band)
    except TypeError as e:
      raise OutOfDomainError(f'Coordinates ({x!r}, {y!r}, {band!r}) are not integers.') from e
    if not self.domain.contains_point(x, y) or not 0 <= band < self.num_bands:
      raise OutOfDomainError(
          f'Sample ({x}, {y}, band {band}) is outside {self.domain} with {self.num_bands} bands.')
    return float(self._array[y - self.domain.y, x - self.domain.x, band])

  def window(self, rect: Rect) -> _NDArray:
    """Return the read-only block of samples covered by `rect`, with shape
    `(rect.height, rect.width, num_bands)`."""
    if rect.is_empty or not self.domain.contains_rect(rect):
      raise OutOfDomainError(f'Window {rect} is not inside {self.domain}.')
    return self._array[rect.slices(self.domain.x, self.domain.y)]


@dataclasses.dataclass(frozen=True)
class Interpolation:
  """Abstract base class for interpolation methods.

  An interpolation method is separable: along each axis it maps a continuous coordinate to the
  index of the first sample of a window of `window_size` consecutive samples together with one
  weight per window sample.  The 2D value is the tensor-product weighted sum over the window.
  """

  name: str
  """Interpolation name."""

  window_size: int
  """Number of samples per axis contributing to each interpolated value."""

  margin_low: int
  """Pixels of neighborhood required below the queried cell on each axis."""

  margin_high: int
  """Pixels of neighborhood required above the queried cell on each axis."""

  @property
  def margin(self) -> int:
    """Largest number of neighborhood pixels required beyond the queried cell."""
    return max(self.margin_low, self.margin_high)

  @abc.abstractmethod
  def window_start(self, x: _NDArray) -> _NDArray:
    """Return the coordinate (as a float, which is NaN or infinite for non-finite `x`) of the
    first window sample for each of the float coordinates `x`."""

  @abc.abstractmethod
  def weights(self, x: _NDArray) -> tuple[_NDArray, _NDArray]:
    """Return the first window indices (int64, shape `x.shape`) and the weights (shape
    `x.shape + (window_size,)`) for the finite float coordinates `x`."""

  def window_inside(self, x: _NDArray, low: int, high: int) -> _NDArray:
    """Return True where the window of each coordinate `x` lies within `[low, high]`."""
    first = self.window_start(x)
    return (first >= low) & (first + (self.window_size - 1) <= high)


class NearestInterpolation(Interpolation):
  """Select the sample nearest to each coordinate, rounding halfway cases up."""

  def __init__(self) -> None:
    super().__init__(name='nearest', window_size=1, margin_low=0, margin_high=0)

  def window_start(self, x: _NDArray) -> _NDArray:
    return np.floor(x + 0.5)

  def weights(self, x: _NDArray) -> tuple[_NDArray, _NDArray]:
    return self.window_start(x).astype(np.int64), np.ones(x.shape + (1,))


class BilinearInterpolation(Interpolation):
  """Piecewise-linear interpolation between the two samples enclosing each coordinate."""

  def __init__(self) -> None:
    super().__init__(name='bilinear', window_size=2, margin_low=0, margin_high=1)

  def window_start(self, x: _NDArray) -> _NDArray:
    return np.floor(x)

  def weights(self, x: _NDArray) -> tuple[_NDArray, _NDArray]:
    floor = np.floor(x)
    frac = x - floor
    return floor.astype(np.int64), np.stack([1.0 - frac, frac], axis=-1)


class BicubicInterpolation(Interpolation):
  """Local cubic interpolation through the 4 samples surrounding each coordinate.

  Conceptually, each of the 4 rows `y0 - 1 .. y0 + 2` fits the exact cubic through its samples at
  `x0 - 1 .. x0 + 2` and evaluates it at `x`; then the cubic through these 4 row values is
  evaluated at `y`.  Because the fit is linear in the samples, this equals the tensor product of
  the 1D Lagrange weights computed here.  See `cubic_value` and `cubic_roots`.
  """

  def __init__(self) -> None:
    super().__init__(name='bicubic', window_size=4, margin_low=2, margin_high=2)

  def window_start(self, x: _NDArray) -> _NDArray:
    return np.floor(x) - 1.0

  def weights(self, x: _NDArray) -> tuple[_NDArray, _NDArray]:
    floor = np.floor(x)
    t = x - floor
    # Lagrange basis for the nodes -1, 0, 1, 2; it is exactly (0, 1, 0, 0) at t == 0.
    w0 = -t * (t - 1.0) * (t - 2.0) / 6.0
    w1 = (t + 1.0) * (t - 1.0) * (t - 2.0) / 2.0
    w2 = -(t + 1.0) * t * (t - 2.0) / 2.0
    w3 = (t + 1.0) * t * (t - 1.0) / 6.0
    return floor.astype(np.int64) - 1, np.stack([w0, w1, w2, w3], axis=-1)


def _keys_cubic(x: _NDArray) -> _NDArray:
  """Return the Keys (Catmull-Rom, a = -0.5) cubic convolution kernel evaluated at `x`."""
  x = np.abs(x)
  # Coefficients of the Mitchell-Netravali family for b=0, c=0.5.
  f3, f2, f0 = 1.5, -2.5, 1.0
  g3, g2, g1, g0 = -0.5, 2.5, -4.0, 2.0
  v01 = ((f3 * x + f2) * x) * x + f0
  v12 = ((g3 * x + g2) * x + g1) * x + g0
  return np.where(x < 1.0, v01, np.where(x < 2.0, v12, 0.0))


class KeysBicubicInterpolation(Interpolation):
  """Cubic convolution using the Keys kernel, also known as the Catmull-Rom spline.

  [R. G. Keys.  Cubic convolution interpolation for digital image processing.
  IEEE Trans. on Acoustics, Speech, and Signal Processing, 29(6), 1981.]

  Unlike `BicubicInterpolation`, the result has C^1 continuity across cells but reproduces
  polynomials only up to degree 2.
  """

  def __init__(self) -> None:
    super().__init__(name='bicubic2', window_size=4, margin_low=2, margin_high=2)

  def window_start(self, x: _NDArray) -> _NDArray:
    return np.floor(x) - 1.0

  def weights(self, x: _NDArray) -> tuple[_NDArray, _NDArray]:
    floor = np.floor(x)
    offsets = np.arange(-1.0, 3.0)
    return floor.astype(np.int64) - 1, _keys_cubic((x - floor)[..., None] - offsets)


class LanczosInterpolation(Interpolation):
  """Sinc function modulated by a sinc window, with `radius` lobes on each side.

  Args:
    radius: Number of lobes `a >= 1`.  The window covers the `2 * a` samples
      `x0 - a + 1 .. x0 + a` where `x0 = floor(x)`.

  The 1D weights `sinc(d) * sinc(d / a)` for `|d| < a` are normalized to sum to 1 over the window.

  See https://en.wikipedia.org/wiki/Lanczos_resampling.
  """

  def __init__(self, *, radius: int) -> None:
    if isinstance(radius, bool) or not isinstance(radius, (int, np.integer)) or radius < 1:
      raise ValueError(f'Lanczos radius {radius!r} is not an integer >= 1.')
    radius = int(radius)
    super().__init__(name=f'lanczos{radius}', window_size=2 * radius, margin_low=radius,
                     margin_high=radius)
    self.radius = radius

  def window_start(self, x: _NDArray) -> _NDArray:
    return np.floor(x) + (1.0 - self.radius)

  def weights(self, x: _NDArray) -> tuple[_NDArray, _NDArray]:
    radius = self.radius
    floor = np.floor(x)
    offsets = np.arange(1.0 - radius, radius + 1.0)
    d = (x - floor)[..., None] - offsets
    weight = np.where(np.abs(d) < radius, _sinc(d) * _sinc(d / radius), 0.0)
    weight /= weight.sum(axis=-1, keepdims=True)
    return floor.astype(np.int64) + (1 - radius), weight


_DEFAULT_INTERPOLATION = 'bilinear'

_DICT_INTERPOLATIONS = {
    'nearest': NearestInterpolation(),
    'bilinear': BilinearInterpolation(),
    'bicubic': BicubicInterpolation(),
    'bicubic2': KeysBicubicInterpolation(),
    'lanczos2': LanczosInterpolation(radius=2),
    'lanczos3': LanczosInterpolation(radius=3),
    'lanczos4': LanczosInterpolation(radius=4),
    'lanczos5': LanczosInterpolation(radius=5),
}

INTERPOLATIONS = list(_DICT_INTERPOLATIONS)
r"""Shortcut names for the predefined interpolation methods:

| name         | `Interpolation`              | window | margin (low, high) |
|--------------|------------------------------|:------:|:------------------:|
| `'nearest'`  | `NearestInterpolation()`     | 1x1    | (0, 0) |
| `'bilinear'` | `BilinearInterpolation()`    | 2x2    | (0, 1) |
| `'bicubic'`  | `BicubicInterpolation()`     | 4x4    | (2, 2) |
| `'bicubic2'` | `KeysBicubicInterpolation()` | 4x4    | (2, 2) |
| `'lanczos2'` | `LanczosInterpolation`(radius=2) | 4x4 | (2, 2) |
| `'lanczos3'` | `LanczosInterpolation`(radius=3) | 6x6 | (3, 3) |
| `'lanczos4'` | `LanczosInterpolation`(radius=4) | 8x8 | (4, 4) |
| `'lanczos5'` | `LanczosInterpolation`(radius=5) | 10x10 | (5, 5) |

Any other name `'lanczos<a>'` creates `LanczosInterpolation(radius=a)`.
"""


def _get_interpolation(interpolation: str | Interpolation) -> Interpolation:
  """Return an `Interpolation`, which can be specified as a name in `INTERPOLATIONS`."""
  if isinstance(interpolation, Interpolation):
    return interpolation
  if interpolation in _DICT_INTERPOLATIONS:
    return _DICT_INTERPOLATIONS[interpolation]
  if (isinstance(interpolation, str) and interpolation.startswith('lanczos') and
      interpolation[len('lanczos'):].isdigit()):
    return LanczosInterpolation(radius=int(interpolation[len('lanczos'):]))
  raise ValueError(f'Unknown interpolation {interpolation!r}; expected one of {INTERPOLATIONS}.')


def _cubic_coefficients(values: Sequence[float]) -> tuple[float, float, float, float]:
  """Return the power-basis coefficients `(c0, c1, c2, c3)` in `u` of the cubic through
  `(0, v0), (1, v1), (2, v2), (3, v3)`, from its Newton forward differences."""
  if len(values) != 4:
    raise ValueError(f'Expected 4 values, got {len(values)}.')
  v0, v1, v2, v3 = (float(value) for value in values)
  d1 = v1 - v0
  d2 = v2 - 2.0 * v1 + v0
  d3 = v3 - 3.0 * v2 + 3.0 * v1 - v0
  return v0, d1 - d2 / 2.0 + d3 / 3.0, (d2 - d3) / 2.0, d3 / 6.0


def cubic_value(x0: float, t: _ArrayLike, values: Sequence[float]) -> Any:
  """Evaluate at `t` the cubic through `(x0, v0), (x0 + 1, v1), (x0 + 2, v2), (x0 + 3, v3)`.

  Args:
    x0: Position of the first value.
    t: Position(s) at which to evaluate the cubic.
    values: The 4 values `v0, v1, v2, v3`.

  Returns:
    A float, or an array of the shape of `t`.

  >>> cubic_value(0, 1.5, [0.0, 1.0, 8.0, 27.0])
  3.375
  """
  c0, c1, c2, c3 = _cubic_coefficients(values)
  u = np.asarray(t, np.float64) - x0
  result = ((c3 * u + c2) * u + c1) * u + c0
  return result.item() if result.ndim == 0 else result


def cubic_roots(x0: float, low: float, high: float, values: Sequence[float]) -> list[float]:
  """Return the real roots of the derivative of the cubic of `cubic_value` in `[low, high]`.

  These are the positions of the local extrema (or of a stationary inflection) of the cubic, which
  bound its values over an interval together with the interval endpoints.  The result is sorted
  and is empty if the derivative has no isolated root in the interval (including the case of a
  constant cubic).

  >>> cubic_roots(0, 0.0, 3.0, [0.0, 1.0, 1.0, 0.0])
  [1.5]
  """
  if low > high:
    raise ValueError(f'Empty interval [{low}, {high}].')
  _, c1, c2, c3 = _cubic_coefficients(values)
  a, b, c = 3.0 * c3, 2.0 * c2, c1
  if a == 0.0:
    roots = [] if b == 0.0 else [-c / b]
  else:
    discriminant = b * b - 4.0 * a * c
    if discriminant < 0.0:
      roots = []
    elif discriminant == 0.0:
      roots = [-b / (2.0 * a)]
    else:
      # Numerically stable form of the quadratic formula.
      q = -0.5 * (b + math.copysign(math.sqrt(discriminant), b))
      roots = [q / a, c / q]
  return sorted({x0 + u for u in roots if low <= x0 + u <= high})


@dataclasses.dataclass(frozen=True)
class Extrema:
  """Minimum and maximum sample values of band 0 over a region, with their pixel coordinates.

  It unpacks as the tuple `(min_value, min_x, min_y, max_value, max_x, max_y)`.
  """

  min_value: float
  min_x: int
  min_y: int
  max_value: float
  max_x: int
  max_y: int

  def __iter__(self) -> Iterator[Any]:
    return iter(dataclasses.astuple(self))


class ExtremaTracker:
  """Lazily computes and caches the `Extrema` of band 0 of a sample accessor.

  A query without region covers `domain` (the effective domain of the owning `Kernel`) and its
  result is returned again, as the identical object, by later queries without region.  While that
  whole-domain result is cached, a query for any other rectangle raises `InvalidQueryError`.
  A query with an explicit rectangle is always recomputed and replaces the cached result.

  The cache is mutated on first query; an instance must not be shared across threads without
  external synchronization.
  """

  def __init__(self, accessor: SampleAccessor, domain: Rect) -> None:
    self._accessor = accessor
    self._domain = domain
    self._region: Rect | None = None
    self._result: Extrema | None = None

  def min_max(self, region: Rect | None = None) -> Extrema:
    """Return the extrema over `region`, or over the whole domain if `region` is None."""
    if region is None:
      if self._result is not None and self._region is None:
        return self._result
      result = self._compute(self._domain)
    else:
      if self._result is not None and self._region is None and region != self._domain:
        raise InvalidQueryError(
            f'Region {region} differs from the cached whole-domain extrema over {self._domain}.')
      result = self._compute(region)
    self._region, self._result = region, result
    return result

  def _compute(self, region: Rect) -> Extrema:
    if region.is_empty:
      raise InvalidQueryError(f'Region {region} is empty.')
    block = self._accessor.window(region)[..., 0]
    is_nan = np.isnan(block)
    if is_nan.all():
      raise InvalidQueryError(f'Region {region} contains only NaN samples.')
    # NaN samples are skipped; ties resolve to the first position in row-major order.
    min_row, min_col = scipy.ndimage.minimum_position(np.where(is_nan, np.inf, block))
    max_row, max_col = scipy.ndimage.maximum_position(np.where(is_nan, -np.inf, block))
    return Extrema(float(block[min_row, min_col]), region.x + int(min_col), region.y + int(min_row),
                   float(block[max_row, max_col]), region.x + int(max_col), region.y + int(max_row))


class Kernel:
  """An `Interpolation` method bound to a `SampleAccessor`.

  Args:
    accessor: Source samples; never modified.
    interpolation: Method, specified as a name in `INTERPOLATIONS` or an `Interpolation` instance.

  The effective domain is the accessor domain shrunk by the interpolation margins; every
  coordinate inside it (closed interval on each axis) can be interpolated.  A coordinate whose
  window leaves the accessor domain raises `InsufficientMarginError`; no clamping is done here.

  >>> kernel = create_kernel(np.arange(9.0).reshape(3, 3), 'bilinear', origin=(-1, -1))
  >>> kernel.interpolate(-0.5, 0.5)
  array([5.])
  """

  def __init__(self, accessor: SampleAccessor,
               interpolation: str | Interpolation = _DEFAULT_INTERPOLATION) -> None:
    self.accessor = accessor
    self.interpolation = _get_interpolation(interpolation)
    self.effective_domain = accessor.domain.shrink(self.interpolation.margin_low,
                                                   self.interpolation.margin_high)
    """Integer rectangle over which interpolation is always valid."""
    self.extrema = ExtremaTracker(accessor, self.effective_domain)

  @property
  def margin(self) -> int:
    return self.interpolation.margin

  def contains(self, x: _ArrayLike, y: _ArrayLike) -> Any:
    """Return True where the interpolation window at the continuous coordinates lies within the
    accessor domain.

    This holds everywhere in the effective domain, and also just outside it wherever the window
    needs less than the full margin.  It is False for non-finite coordinates.
    """
    domain, interpolation = self.accessor.domain, self.interpolation
    x, y = np.asarray(x, np.float64), np.asarray(y, np.float64)
    return (interpolation.window_inside(x, domain.x, domain.x_max) &
            interpolation.window_inside(y, domain.y, domain.y_max))

  def interpolate(self, x: float, y: float) -> _NDArray:
    """Return the interpolated sample vector (shape `(num_bands,)`) at `(x, y)`."""
    return self.interpolate_many(x, y)

  def interpolate_many(self, x: _ArrayLike, y: _ArrayLike) -> _NDArray:
    """Return the interpolated sample vectors at broadcastable arrays of coordinates.

    The result has shape `np.broadcast(x, y).shape + (num_bands,)`.
    """
    x, y = np.broadcast_arrays(np.asarray(x, np.float64), np.asarray(y, np.float64))
    shape = x.shape
    x, y = x.reshape(-1), y.reshape(-1)
    if not (np.all(np.isfinite(x)) and np.all(np.isfinite(y))):
      raise ValueError('Coordinates must be finite.')
    interpolation = self.interpolation
    first_x, weight_x = interpolation.weights(x)
    first_y, weight_y = interpolation.weights(y)
    domain = self.accessor.domain
    n = interpolation.window_size
    if x.size and (first_x.min() < domain.x or first_x.max() + n - 1 > domain.x_max or
                   first_y.min() < domain.y or first_y.max() + n - 1 > domain.y_max):
      raise InsufficientMarginError(
          f'The {interpolation.name} window at coordinates within x=[{x.min()}, {x.max()}],'
          f' y=[{y.min()}, {y.max()}] extends outside {domain}.')
    index_x = (first_x - domain.x)[:, None] + np.arange(n)  # (N, n)
    index_y = first_y - domain.y  # (N,)
    array = self.accessor.array
    # Contract one window row at a time, so that memory is proportional to N * n * B.
    result = np.zeros((x.size, self.accessor.num_bands))
    for row in range(n):
      samples = array[(index_y + row)[:, None], index_x]  # (N, n, B)
      result += weight_y[:, row, None] * np.einsum('pxb,px->pb', samples, weight_x)
    return result.reshape(shape + (self.accessor.num_bands,))

  def min_max(self, region: Rect | None = None) -> Extrema:
    """Return the band-0 `Extrema` over `region` or over the effective domain; see
    `ExtremaTracker`."""
    return self.extrema.min_max(region)


def create_kernel(source: SampleAccessor | _ArrayLike,
                  interpolation: str | Interpolation = _DEFAULT_INTERPOLATION, *,
                  origin: tuple[int, int] = (0, 0)) -> Kernel:
  """Return a `Kernel` over `source`, which is either a `SampleAccessor` or an array of samples
  (in which case `origin` gives the coordinates of its first sample)."""
  accessor = (source if isinstance(source, SampleAccessor) else
              SampleAccessor(source, origin=origin))
  return Kernel(accessor, interpolation)


class DestinationGrid:
  """Writable multi-band float64 grid covering `extent`, partitioned into independent tiles.

  Args:
    extent: Rectangle of destination pixel coordinates.
    num_bands: Number of values per pixel.
    tile_shape: Tile size `(tile_width, tile_height)`; if None, the extent is a single tile.
    initial: Value of all samples before any resampling.
  """

  def __init__(self, extent: Rect, num_bands: int = 1, *,
               tile_shape: tuple[int, int] | None = None, initial: float = 0.0) -> None:
    if extent.is_empty:
      raise ValueError(f'Extent {extent} is empty.')
    if num_bands < 1:
      raise ValueError(f'Number of bands {num_bands} is not positive.')
    if tile_shape is not None and (len(tile_shape) != 2 or min(tile_shape) < 1):
      raise ValueError(f'Tile shape {tile_shape} is not (width, height) with positive sizes.')
    self.extent = extent
    self.tile_shape = (extent.width, extent.height) if tile_shape is None else tuple(tile_shape)
    self.array = np.full((extent.height, extent.width, num_bands), initial, np.float64)
    """Samples, with shape `(height, width, num_bands)`."""

  @property
  def num_bands(self) -> int:
    return self.array.shape[2]

  def tiles(self) -> Iterator[Rect]:
    """Yield the tiles partitioning the extent, in row-major order."""
    tile_width, tile_height = self.tile_shape
    for y in range(self.extent.y, self.extent.y + self.extent.height, tile_height):
      for x in range(self.extent.x, self.extent.x + self.extent.width, tile_width):
        yield self.extent.intersection(Rect(x, y, tile_width, tile_height))

  def view(self, rect: Rect) -> _NDArray:
    """Return the writable view of the samples covered by `rect`."""
    if not self.extent.contains_rect(rect):
      raise ValueError(f'Rect {rect} is not inside extent {self.extent}.')
    return self.array[rect.slices(self.extent.x, self.extent.y)]


BORDERS = ['fill', 'clamp']
"""Treatments of transformed coordinates whose interpolation window leaves the source domain:

| name      | comments |
|-----------|----------|
| `'fill'`  | write the fill value (default) |
| `'clamp'` | within the source domain, clamp the offending axes to the effective domain (edge extrapolation); beyond it, write the fill value |
"""


def _clamp_to_effective_domain(kernel: Kernel, x: _NDArray,
                               y: _NDArray) -> tuple[_NDArray, _NDArray]:
  """Move the coordinates inside the accessor domain whose window leaves the domain onto the
  nearest point of the effective domain, independently on each axis."""
  domain, effective = kernel.accessor.domain, kernel.effective_domain
  if effective.is_empty:
    return x, y
  interpolation = kernel.interpolation
  inside = (x >= domain.x) & (x <= domain.x_max) & (y >= domain.y) & (y <= domain.y_max)
  clamp_x = inside & ~interpolation.window_inside(x, domain.x, domain.x_max)
  clamp_y = inside & ~interpolation.window_inside(y, domain.y, domain.y_max)
  x = np.where(clamp_x, np.clip(x, effective.x, effective.x_max), x)
  y = np.where(clamp_y, np.clip(y, effective.y, effective.y_max), y)
  return x, y


def resample_tile(kernel: Kernel, destination: DestinationGrid, tile: Rect,
                  inverse_transform: Transform, fill: _ArrayLike = math.nan, *,
                  border: str = 'fill') -> None:
  """Write the pixels of `tile` in `destination` by interpolating `kernel` through
  `inverse_transform`.

  Pixels whose transformed coordinates are not finite, or whose interpolation window leaves the
  source domain (see `Kernel.contains`), receive `fill`.  The tile only writes its own storage, so
  tiles may be processed in any order or concurrently.
  """
  if border not in BORDERS:
    raise ValueError(f'Border {border!r} is not one of {BORDERS}.')
  fill = np.broadcast_to(np.asarray(fill, np.float64), (destination.num_bands,))
  output = destination.view(tile)
  if tile.is_empty:
    return
  dst_y, dst_x = np.mgrid[tile.y:tile.y + tile.height, tile.x:tile.x + tile.width]
  src_x, src_y = inverse_transform(dst_x.astype(np.float64), dst_y.astype(np.float64))
  shape = tile.height, tile.width
  src_x = np.broadcast_to(np.asarray(src_x, np.float64), shape)
  src_y = np.broadcast_to(np.asarray(src_y, np.float64), shape)
  if border == 'clamp':
    src_x, src_y = _clamp_to_effective_domain(kernel, src_x, src_y)
  # The comparisons are False for NaN coordinates.
  inside = kernel.contains(src_x, src_y)
  output[...] = fill
  if np.any(inside):
    output[inside] = kernel.interpolate_many(src_x[inside], src_y[inside])
  _check_eq(output.shape, (*shape, destination.num_bands))


def resample(
    kernel: Kernel,
    destination: DestinationGrid,
    inverse_transform: Transform,
    fill: _ArrayLike = math.nan,
    *,
    region: Rect | None = None,
    border: str = 'fill',
    num_threads: int | None = None,
    cancel: Callable[[], bool] | None = None,
    debug: bool = False,
) -> DestinationGrid:
  """Fill `destination` by evaluating `kernel` at the source coordinates of each pixel.

  For each destination pixel `(dx, dy)`, processed tile by tile, the source coordinates are
  `(sx, sy) = inverse_transform(dx, dy)`.  If the interpolation window at `(sx, sy)` lies inside
  the source domain, which is always the case within the effective domain of `kernel`, the pixel
  receives `kernel.interpolate(sx, sy)`; otherwise every band receives `fill`.  This coordinate
  test precedes the interpolation, so `InsufficientMarginError` is never raised here.

  Args:
    kernel: Interpolation kernel over the source samples.
    destination: Grid to write; its number of bands must match the source.
    inverse_transform: Function mapping arrays of destination pixel coordinates `(x, y)` to arrays
      of source pixel coordinates `(x, y)`.  It is called once per tile with arrays of the tile
      shape and may be affine, projective, or arbitrary.
    fill: Value, scalar or per band, for pixels outside the source.  It defaults to NaN.
    region: If set, only the destination pixels inside this rectangle are written.
    border: Name in `BORDERS` for the treatment of coordinates outside the effective domain.
    num_threads: If greater than 1, tiles are processed concurrently on this many threads.
      The result is identical for any number of threads.
    cancel: Optional function called before each tile is started; if it returns True, the
      remaining tiles are skipped and `ResampleCancelledError` is raised once the tiles in
      progress are complete.
    debug: Show internal information.

  Returns:
    The `destination` grid.

  >>> kernel = create_kernel(np.arange(16.0).reshape(4, 4), 'bilinear')
  >>> destination = DestinationGrid(Rect(0, 0, 8, 8), tile_shape=(4, 4))
  >>> grid = resample(kernel, destination, lambda x, y: (x / 2, y / 2))
  >>> grid.array[1, :, 0]
  array([2. , 2.5, 3. , 3.5, 4. , 4.5, nan, nan])
  """
  if destination.num_bands != kernel.accessor.num_bands:
    raise ValueError(f'Destination has {destination.num_bands} bands but the source has'
                     f' {kernel.accessor.num_bands}.')
  if border not in BORDERS:
    raise ValueError(f'Border {border!r} is not one of {BORDERS}.')
  if num_threads is not None and num_threads < 1:
    raise ValueError(f'Number of threads {num_threads} is not positive.')
  tiles = list(destination.tiles())
  if region is not None:
    if not destination.extent.contains_rect(region):
      raise ValueError(f'Region {region} is not inside extent {destination.extent}.')
    tiles = [tile.intersection(region) for tile in tiles]
    tiles = [tile for tile in tiles if not tile.is_empty]
  if debug:
    print(f'(resample: {len(tiles)} tiles of at most {destination.tile_shape} pixels using'
          f' {kernel.interpolation.name} on {num_threads or 1} threads).')
  start_time = time.monotonic()

  def process_tile(tile: Rect) -> bool:
    if cancel is not None and cancel():
      return False
    resample_tile(kernel, destination, tile, inverse_transform, fill, border=border)
    return True

  if num_threads is None or num_threads == 1 or len(tiles) <= 1:
    completed = []
    for tile in tiles:
      completed.append(process_tile(tile))
      if not completed[-1]:
        break
  else:
    with concurrent.futures.ThreadPoolExecutor(max_workers=num_threads) as executor:
      completed = list(executor.map(process_tile, tiles))

  if sum(completed) < len(tiles):
    raise ResampleCancelledError(
        f'Resampling cancelled after {sum(completed)} of {len(tiles)} tiles.')
  if debug:
    print(f'(resample: completed in {time.monotonic() - start_time:.3f} s).')
  return destination


def resample_array(
    array: _ArrayLike,
    shape: tuple[int, int],
    inverse_transform: Transform,
    *,
    interpolation: str | Interpolation = _DEFAULT_INTERPOLATION,
    fill: _ArrayLike = math.nan,
    tile_shape: tuple[int, int] | None = None,
    origin: tuple[int, int] = (0, 0),
    dst_origin: tuple[int, int] = (0, 0),
    border: str = 'fill',
    num_threads: int | None = None,
    debug: bool = False,
) -> _NDArray:
  """Resample the grid `array` onto a new grid of `shape` through `inverse_transform`.

  Args:
    array: Source samples with shape `(height, width)` or `(height, width, num_bands)`.
    shape: Destination `(height, width)`.
    inverse_transform: Map from destination to source pixel coordinates; see `resample`.
    interpolation: Name in `INTERPOLATIONS` or an `Interpolation` instance.
    fill: Value for destination pixels outside the source.
    tile_shape: Destination tile size `(tile_width, tile_height)`.
    origin: Pixel coordinates `(x, y)` of the first source sample.
    dst_origin: Pixel coordinates `(x, y)` of the first destination sample.
    border: Name in `BORDERS`.
    num_threads: Number of threads processing the tiles.
    debug: Show internal information.

  Returns:
    A float64 array of shape `shape`, followed by the number of bands if `array` is 3D.

  >>> array = np.arange(12.0).reshape(3, 4)
  >>> resample_array(array, (3, 4), lambda x, y: (x, y), interpolation='nearest')
  array([[ 0.,  1.,  2.,  3.],
         [ 4.,  5.,  6.,  7.],
         [ 8.,  9., 10., 11.]])
  """
  array = np.asarray(array)
  height, width = shape
  kernel = create_kernel(array, interpolation, origin=origin)
  extent = Rect(dst_origin[0], dst_origin[1], width, height)
  destination = DestinationGrid(extent, kernel.accessor.num_bands, tile_shape=tile_shape)
  resample(kernel, destination, inverse_transform, fill, border=border,
           num_threads=num_threads, debug=debug)
  return destination.array[..., 0] if array.ndim == 2 else destination.array


def translation_matrix(tx: float, ty: float) -> _NDArray:
  """Return the 3x3 homogeneous matrix translating `(x, y)` by `(tx, ty)`."""
  return np.array([[1.0, 0.0, tx], [0.0, 1.0, ty], [0.0, 0.0, 1.0]])


def scaling_matrix(sx: float, sy: float | None = None) -> _NDArray:
  """Return the 3x3 homogeneous matrix scaling `(x, y)` by `(sx, sy)`, where `sy` defaults
  to `sx`."""
  sy = sx if sy is None else sy
  return np.diag([sx, sy, 1.0])


def rotation_matrix(angle: float) -> _NDArray:
  """Return the 3x3 homogeneous matrix rotating `(x, y)` by `angle` radians about the origin."""
  cos, sin = np.cos(angle), np.sin(angle)
  return np.array([[cos, -sin, 0.0], [sin, cos, 0.0], [0.0, 0.0, 1.0]])


def transform_from_matrix(matrix: _ArrayLike) -> Transform:
  """Return the coordinate function of a 3x3 homogeneous (affine or projective) matrix.

  Points mapped to infinity by a projective matrix yield non-finite coordinates, which `resample`
  treats as outside the source.

  >>> transform = transform_from_matrix(translation_matrix(1.0, 2.0) @ scaling_matrix(2.0))
  >>> transform(np.array([0.0, 1.0]), np.array([0.0, 1.0]))
  (array([1., 3.]), array([2., 4.]))
  """
  matrix = np.asarray(matrix, np.float64)
  if matrix.shape != (3, 3):
    raise ValueError(f'Matrix shape {matrix.shape} is not (3, 3).')
  is_affine = np.all(matrix[2] == (0.0, 0.0, 1.0))

  def transform(x: _ArrayLike, y: _ArrayLike) -> tuple[_NDArray, _NDArray]:
    x, y = np.asarray(x, np.float64), np.asarray(y, np.float64)
    u = matrix[0, 0] * x + matrix[0, 1] * y + matrix[0, 2]
    v = matrix[1, 0] * x + matrix[1, 1] * y + matrix[1, 2]
    if is_affine:
      return u, v
    w = matrix[2, 0] * x + matrix[2, 1] * y + matrix[2, 2]
    with np.errstate(divide='ignore', invalid='ignore'):
      return u / w, v / w

  return transform


def compose_transforms(*transforms: Transform) -> Transform:
  """Return the coordinate function applying `transforms` in order, first to last."""
  if not transforms:
    raise ValueError('At least one transform is required.')

  def composed(x: _ArrayLike, y: _ArrayLike) -> tuple[Any, Any]:
    for transform in transforms:
      x, y = transform(x, y)
    return x, y

  return composed
