"""
Parameter initializers.

Every initializer follows the same contract: ``init(rng, *shape) -> tf.Tensor``
where ``rng`` is a ``tf.random.Generator``. Layers store initializers as plain
callables (``init_bias``, ``init_scale``, ``init_weight``) and call them from
``init_parameters``.
"""

import numpy as np
import tensorflow as tf


def zeros32(rng, *shape):
    """All-zero float32 tensor. ``rng`` is accepted for a uniform signature."""
    return tf.zeros(shape, dtype=tf.float32)


def ones32(rng, *shape):
    """All-one float32 tensor."""
    return tf.ones(shape, dtype=tf.float32)


def rand32(rng, *shape):
    """Uniform samples in [0, 1)."""
    return rng.uniform(shape, dtype=tf.float32)


def randn32(rng, *shape):
    """Standard normal samples."""
    return rng.normal(shape, dtype=tf.float32)


def glorot_uniform(rng, *shape, gain=1.0):
    """
    Glorot (Xavier) uniform initialization.

    Samples from U(-a, a) with a = gain * sqrt(6 / (fan_in + fan_out)). For a
    dense weight of shape (in_dims, out_dims) the fans are the two dimensions;
    for convolution kernels (..., in_channels, out_channels) the receptive
    field size multiplies both.

    Args:
        rng: tf.random.Generator
        *shape: Shape of the tensor to create
        gain: Scaling factor for the bound

    Returns:
        float32 tensor of the requested shape
    """
    if len(shape) == 0:
        fan_in = fan_out = 1
    elif len(shape) == 1:
        fan_in = fan_out = shape[0]
    else:
        receptive_field = int(np.prod(shape[:-2])) if len(shape) > 2 else 1
        fan_in = shape[-2] * receptive_field
        fan_out = shape[-1] * receptive_field

    limit = float(gain * np.sqrt(6.0 / (fan_in + fan_out)))
    return rng.uniform(shape, minval=-limit, maxval=limit, dtype=tf.float32)
