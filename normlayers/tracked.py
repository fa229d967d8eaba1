"""
Overloads for arrays of independently tracked scalars.

Under ``tf.GradientTape`` a computation is normally carried by one tracked
tensor. Code that indexes a tensor element by element (or builds values one
scalar at a time) ends up instead with a container of scalar tensors: a
``list``/``tuple`` (possibly nested) or an object-dtype ``numpy`` array of
rank-0 ``tf.Tensor``/``tf.Variable`` values. The generic utilities in
``normlayers.utils`` are written for the single-tensor representation; the
overloads registered here recognise the container form, perform the
operation on the container and re-pack the result into one ``tf.Tensor``.

Importing ``normlayers`` registers these overloads.
"""

import logging

import numpy as np
import tensorflow as tf

from normlayers import utils

logger = logging.getLogger(__name__)

_TRACKED_TYPES = (tf.Tensor, tf.Variable)
_CONTAINER_TYPES = (list, tuple, np.ndarray)

_warned_convert_eltype = False


def _is_tracked_scalar(value):
    return isinstance(value, _TRACKED_TYPES) and value.shape.rank == 0


def is_array_of_trackables(x):
    """True when ``x`` is a non-empty container of tracked scalars."""
    if isinstance(x, np.ndarray):
        if x.dtype != object or x.size == 0:
            return False
        return all(_is_tracked_scalar(value) for value in x.flat)
    if isinstance(x, (list, tuple)):
        leaves = tf.nest.flatten(x)
        return len(leaves) > 0 and all(_is_tracked_scalar(value) for value in leaves)
    return False


def _nested_shape(x):
    if not isinstance(x, (list, tuple)):
        return ()
    inner = {_nested_shape(item) for item in x}
    if len(inner) > 1:
        raise ValueError(
            f"Ragged nesting of tracked scalars: rows have shapes {sorted(inner)}"
        )
    return (len(x),) + (inner.pop() if inner else ())


def to_object_array(x):
    """View a (nested) list of tracked scalars as an object ndarray."""
    if isinstance(x, np.ndarray):
        return x
    shape = _nested_shape(x)
    # Element-wise assignment keeps the tensors themselves; np.array(...)
    # would convert them to numpy scalars.
    out = np.empty(shape, dtype=object)
    for index, value in zip(np.ndindex(*shape), tf.nest.flatten(x)):
        out[index] = value
    return out


def aos_to_soa(x):
    """
    Re-pack an array of tracked scalars into a single tracked tensor.

    The packing is a ``tf.stack``, so gradients recorded on the individual
    scalars flow through to the packed tensor.
    """
    arr = to_object_array(x)
    packed = tf.stack([tf.convert_to_tensor(value) for value in arr.flat])
    return tf.reshape(packed, arr.shape)


# ============================================================================
# OVERLOADS
# ============================================================================


def _reverse(x, axis=None):
    return aos_to_soa(np.flip(to_object_array(x), axis=axis))


def _gate(x, h, n):
    # Slice the container first so only the selected scalars are packed.
    return aos_to_soa(to_object_array(x)[utils.gate_slice(h, n)])


def _element_dtype(x):
    first = next(iter(to_object_array(x).flat))
    return first.dtype


def _convert_eltype(x, dtype):
    global _warned_convert_eltype
    if not _warned_convert_eltype:
        logger.warning(
            "convert_eltype cannot change the element type of an array of "
            "tracked scalars; returning the input unchanged."
        )
        _warned_convert_eltype = True
    return x


def _register(generic, implementation):
    fallback = generic.dispatch(object)

    def dispatch(x, *args, **kwargs):
        if is_array_of_trackables(x):
            return implementation(x, *args, **kwargs)
        return fallback(x, *args, **kwargs)

    for cls in _CONTAINER_TYPES:
        generic.register(cls, dispatch)


_register(utils.reverse, _reverse)
_register(utils.gate, _gate)
_register(utils.element_dtype, _element_dtype)
_register(utils._convert_eltype, _convert_eltype)
