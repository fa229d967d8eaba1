"""
Generic array utilities shared by the layers.

The operations that depend on how an array is represented (reversal, gate
slicing, element-type queries and conversion) are ``functools.singledispatch``
generics. The implementations here cover a single array of values
(``tf.Tensor``, ``tf.Variable`` or a numeric ``numpy`` array); other
representations register their own overloads (see ``normlayers.tracked``).
"""

import functools
import logging

import numpy as np
import tensorflow as tf

logger = logging.getLogger(__name__)


def _as_tuple(axes):
    if isinstance(axes, (list, tuple)):
        return tuple(axes)
    return (axes,)


def canonicalize_axes(rank, axes):
    """
    Sorted, deduplicated, non-negative axes. ``None`` means every axis;
    an axis outside ``[-rank, rank)`` raises ``ValueError``.
    """
    if axes is None:
        return tuple(range(rank))
    axes = _as_tuple(axes)
    for axis in axes:
        if not -rank <= axis < rank:
            raise ValueError(f"Axis {axis} is out of bounds for a tensor of rank {rank}")
    return tuple(sorted({axis % rank for axis in axes}))


# ============================================================================
# REPRESENTATION-DEPENDENT GENERICS
# ============================================================================


@functools.singledispatch
def reverse(x, axis=None):
    """
    Reverse ``x`` along ``axis``.

    Args:
        x: Array-like input
        axis: int, tuple of ints, or None to reverse every axis

    Returns:
        tf.Tensor with the same shape as ``x``
    """
    x = tf.convert_to_tensor(x)
    return tf.reverse(x, axis=list(canonicalize_axes(x.shape.rank, axis)))


def gate_slice(h, n):
    """Index range of the ``n``-th (1-based) gate of size ``h``."""
    return slice(h * (n - 1), h * n)


@functools.singledispatch
def gate(x, h, n):
    """
    Slice the ``n``-th gate of size ``h`` out of ``x`` along axis 0.

    Recurrent cells stack their gate pre-activations (or gate weights) along
    the first axis; ``gate`` cuts one contiguous chunk. Works for vectors and
    matrices.

    Called as ``gate(h, n)`` with two integers, returns the ``slice`` itself.
    """
    x = tf.convert_to_tensor(x)
    return x[gate_slice(h, n)]


@gate.register(int)
def _(h, n):
    return gate_slice(h, n)


@functools.singledispatch
def element_dtype(x):
    """The ``tf.DType`` of the elements of ``x``."""
    dtype = getattr(x, "dtype", None)
    if dtype is None:
        return tf.convert_to_tensor(x).dtype
    return tf.as_dtype(dtype)


@functools.singledispatch
def _convert_eltype(x, dtype):
    if element_dtype(x) == dtype:
        return x
    return tf.cast(x, dtype)


def convert_eltype(dtype, x):
    """Convert the element type of ``x`` to ``dtype``."""
    return _convert_eltype(x, tf.as_dtype(dtype))


# ============================================================================
# NORMS, RECORDS AND ELEMENT TYPES
# ============================================================================


def norm_except(x, dims=None):
    """
    L2 norm over every axis except ``dims``.

    The reduced axes are kept with size 1, so the result broadcasts against
    ``x``. With ``dims=None`` the norm covers the whole tensor and the result
    has shape (1, ..., 1).

    Args:
        x: Input tensor
        dims: Axis or tuple of axes to keep

    Returns:
        Tensor of norms
    """
    x = tf.convert_to_tensor(x)
    rank = x.shape.rank
    if dims is None:
        reduce_axes = list(range(rank))
    else:
        kept = canonicalize_axes(rank, dims)
        reduce_axes = [i for i in range(rank) if i not in kept]
    return tf.sqrt(tf.reduce_sum(tf.square(x), axis=reduce_axes, keepdims=True))


def machine_eps(dtype):
    """Machine epsilon of a floating ``tf.DType``."""
    return np.finfo(tf.as_dtype(dtype).as_numpy_dtype).eps


def merge(*records):
    """New record holding the entries of ``records``; later ones win."""
    merged = {}
    for record in records:
        merged.update(record)
    return merged


def count_scalars(tree):
    """
    Number of scalars held by a parameter or state record.

    Tensors count their elements, flags count one, ``None`` counts zero.
    """
    total = 0
    for leaf in tf.nest.flatten(tree):
        if leaf is None:
            continue
        if isinstance(leaf, bool):
            total += 1
        else:
            total += int(np.prod(leaf.shape))
    return total


def recursive_floating_dtype(tree):
    """The first floating element type found in ``tree``, or None."""
    for leaf in tf.nest.flatten(tree):
        if leaf is None or isinstance(leaf, bool):
            continue
        dtype = getattr(leaf, "dtype", None)
        if dtype is not None and tf.as_dtype(dtype).is_floating:
            return tf.as_dtype(dtype)
    return None


def match_eltype(layer, ps, st, x):
    """
    Align the element type of ``x`` with the layer's parameters and state.

    Inputs of a floating type other than the one held by ``ps``/``st`` are
    converted; integer inputs, and layers with no floating parameters or
    state, are left untouched.
    """
    dtype = recursive_floating_dtype((ps, st))
    if dtype is None:
        return x

    x_dtype = element_dtype(x)
    if not x_dtype.is_floating or x_dtype == dtype:
        return x

    logger.debug(
        "%s called with %s input; converting to %s",
        type(layer).__name__,
        x_dtype.name,
        dtype.name,
    )
    return convert_eltype(dtype, x)
