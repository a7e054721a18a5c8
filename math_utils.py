import math

import numba as nb
import numpy as np


def mean(values):
    """Arithmetic mean of the supplied values, no outlier removal."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        raise ValueError("Cannot take the mean of an empty sequence")
    return float(np.mean(arr))


def median(values):
    """
    Median using the sort-and-average-of-two-middles definition for even lengths.
    """
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        raise ValueError("Cannot take the median of an empty sequence")
    return float(np.median(arr))


def sample_std(values):
    """Sample standard deviation (n - 1 denominator)."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size < 2:
        raise ValueError("Sample standard deviation needs at least two values")
    return float(np.std(arr, ddof=1))


def min_with_index(values):
    """Return (value, index) of the smallest value. Ties resolve to the first occurrence."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        raise ValueError("Cannot take the minimum of an empty sequence")
    idx = int(np.argmin(arr))
    return float(arr[idx]), idx


def max_with_index(values):
    """Return (value, index) of the largest value. Ties resolve to the first occurrence."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        raise ValueError("Cannot take the maximum of an empty sequence")
    idx = int(np.argmax(arr))
    return float(arr[idx]), idx


def clamp(num, lower, upper):
    """Bound num to the closed interval [lower, upper]."""
    if num < lower:
        return lower
    if num > upper:
        return upper
    return num


def round_to(num, places):
    """Round half away from zero to the given number of decimal places."""
    multiplier = 10 ** places
    if num < 0:
        return -math.floor(-num * multiplier + 0.5) / multiplier
    return math.floor(num * multiplier + 0.5) / multiplier


def between(val, lower, upper, kind="inclusive"):
    """
    Check whether val lies between lower and upper.

    kind is one of "inclusive", "inclusive_left", "inclusive_right" or "exclusive".
    """
    if kind == "inclusive":
        return lower <= val <= upper
    if kind == "inclusive_left":
        return lower <= val < upper
    if kind == "inclusive_right":
        return lower < val <= upper
    if kind == "exclusive":
        return lower < val < upper
    raise ValueError(f"Unknown interval kind: {kind!r}")


@nb.jit(nopython=True)
def norm_sinv(p):
    """
    Inverse of the standard normal cumulative distribution.

    Returns the number of standard deviations from the mean that corresponds to the
    probability p. Uses Acklam's rational approximation, relative error below 1.15e-9
    over the whole open interval (0, 1). p <= 0 maps to -inf and p >= 1 to +inf.
    """
    if p != p:
        return np.nan
    if p <= 0.0:
        return -np.inf
    if p >= 1.0:
        return np.inf

    a1 = -3.969683028665376e1
    a2 = 2.209460984245205e2
    a3 = -2.759285104469687e2
    a4 = 1.38357751867269e2
    a5 = -3.066479806614716e1
    a6 = 2.506628277459239

    b1 = -5.447609879822406e1
    b2 = 1.615858368580409e2
    b3 = -1.556989798598866e2
    b4 = 6.680131188771972e1
    b5 = -1.328068155288572e1

    c1 = -7.784894002430293e-3
    c2 = -3.223964580411365e-1
    c3 = -2.400758277161838
    c4 = -2.549732539343734
    c5 = 4.374664141464968
    c6 = 2.938163982698783

    d1 = 7.784695709041462e-3
    d2 = 3.224671290700398e-1
    d3 = 2.445134137142996
    d4 = 3.754408661907416

    p_low = 0.02425
    p_high = 1.0 - p_low

    # Lower tail
    if p < p_low:
        q = math.sqrt(-2.0 * math.log(p))
        return (((((c1 * q + c2) * q + c3) * q + c4) * q + c5) * q + c6) / \
            ((((d1 * q + d2) * q + d3) * q + d4) * q + 1.0)

    # Central region
    if p <= p_high:
        q = p - 0.5
        r = q * q
        return (((((a1 * r + a2) * r + a3) * r + a4) * r + a5) * r + a6) * q / \
            (((((b1 * r + b2) * r + b3) * r + b4) * r + b5) * r + 1.0)

    # Upper tail
    q = math.sqrt(-2.0 * math.log(1.0 - p))
    return -(((((c1 * q + c2) * q + c3) * q + c4) * q + c5) * q + c6) / \
        ((((d1 * q + d2) * q + d3) * q + d4) * q + 1.0)
