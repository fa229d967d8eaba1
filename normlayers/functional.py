"""
Normalization kernels.

Stateless TensorFlow implementations of batch, group, instance and layer
normalization. Inputs are channels-last: the batch axis is axis 0 and the
channel axis is the last one.

Every kernel follows the same formulation:

    x_hat = (x - mean) / sqrt(var + epsilon)
    y = activation(scale * x_hat + bias)

and differs only in the axes the statistics are computed over. ``scale`` and
``bias`` may be None (no affine transformation). Shape mismatches are left to
TensorFlow to report.
"""

import tensorflow as tf

from normlayers.utils import canonicalize_axes


def _moments(x, axes):
    # Biased variance, E[(x - mean)^2], with the reduced axes kept.
    mean = tf.reduce_mean(x, axis=axes, keepdims=True)
    var = tf.reduce_mean(tf.square(x - mean), axis=axes, keepdims=True)
    return mean, var


def _per_channel(v, rank):
    # (C,) -> (1, ..., 1, C)
    return tf.reshape(v, [1] * (rank - 1) + [-1])


def _activate(activation, y):
    return y if activation is None else activation(y)


def _affine(y, scale, bias):
    if scale is not None:
        y = y * scale
    if bias is not None:
        y = y + bias
    return y


def batchnorm(
    x, scale, bias, running_mean, running_var, training, activation, momentum, epsilon
):
    """
    Batch normalization over every axis except the channel axis.

    In training mode (or when no running statistics are given) the batch
    statistics are used. With running statistics in training mode, the
    returned statistics are the exponential moving averages

        running_mean' = (1 - momentum) * running_mean + momentum * mean
        running_var'  = (1 - momentum) * running_var
                        + momentum * var * n / (n - 1)

    where ``var`` is the biased batch variance and ``n`` the number of
    elements reduced per channel. In test mode with running statistics, those
    are used to normalize and returned unchanged.

    Args:
        x: Input tensor, shape (batch, ..., channels)
        scale, bias: Tensors of shape (channels,) or None
        running_mean, running_var: Tensors of shape (channels,) or None
        training: Python bool
        activation: Elementwise callable or None
        momentum: Moving-average weight of the new batch statistic
        epsilon: Added to the variance for numerical stability

    Returns:
        Tuple (y, {"running_mean": ..., "running_var": ...})
    """
    x = tf.convert_to_tensor(x)
    rank = x.shape.rank
    reduce_axes = list(range(rank - 1))
    tracking = running_mean is not None and running_var is not None

    if training or not tracking:
        mean, var = _moments(x, reduce_axes)
        if training and tracking:
            n = tf.cast(tf.reduce_prod(tf.shape(x)[:-1]), x.dtype)
            m = tf.cast(momentum, x.dtype)
            batch_mean = tf.stop_gradient(tf.reshape(mean, [-1]))
            batch_var = tf.stop_gradient(tf.reshape(var, [-1]))
            running_mean = (1 - m) * running_mean + m * batch_mean
            running_var = (1 - m) * running_var + m * batch_var * n / (n - 1)
    else:
        mean = _per_channel(running_mean, rank)
        var = _per_channel(running_var, rank)

    y = (x - mean) * tf.math.rsqrt(var + epsilon)
    if scale is not None:
        scale = _per_channel(scale, rank)
    if bias is not None:
        bias = _per_channel(bias, rank)
    y = _affine(y, scale, bias)

    return _activate(activation, y), {
        "running_mean": running_mean,
        "running_var": running_var,
    }


def groupnorm(x, scale, bias, groups, activation, epsilon):
    """
    Group normalization.

    Channels are split into ``groups`` contiguous partitions. Statistics are
    computed per sample and per group over the spatial axes and the channels
    of the group.

    Args:
        x: Input tensor, shape (batch, ..., channels)
        scale, bias: Tensors of shape (channels,) or None
        groups: Number of channel groups
        activation: Elementwise callable or None
        epsilon: Added to the variance for numerical stability

    Returns:
        Normalized tensor, same shape as ``x``
    """
    x = tf.convert_to_tensor(x)
    rank = x.shape.rank
    channels = x.shape[-1]
    shape = tf.shape(x)

    # (batch, ..., channels) -> (batch, ..., groups, channels // groups)
    grouped = tf.reshape(
        x, tf.concat([shape[:-1], [groups, channels // groups]], axis=0)
    )
    reduce_axes = list(range(1, rank - 1)) + [rank]
    mean, var = _moments(grouped, reduce_axes)
    y = tf.reshape((grouped - mean) * tf.math.rsqrt(var + epsilon), shape)

    if scale is not None:
        scale = _per_channel(scale, rank)
    if bias is not None:
        bias = _per_channel(bias, rank)
    return _activate(activation, _affine(y, scale, bias))


def instancenorm(x, scale, bias, training, activation, epsilon):
    """
    Instance normalization: per sample, per channel statistics over the
    spatial axes. Running statistics are never kept; ``training`` is accepted
    for a uniform signature.

    Returns:
        Tuple (y, {"running_mean": None, "running_var": None})
    """
    x = tf.convert_to_tensor(x)
    rank = x.shape.rank
    if rank <= 2:
        raise ValueError(
            f"InstanceNorm needs at least one spatial axis; got input of rank {rank}"
        )
    mean, var = _moments(x, list(range(1, rank - 1)))
    y = (x - mean) * tf.math.rsqrt(var + epsilon)

    if scale is not None:
        scale = _per_channel(scale, rank)
    if bias is not None:
        bias = _per_channel(bias, rank)
    y = _affine(y, scale, bias)
    return _activate(activation, y), {"running_mean": None, "running_var": None}


def layernorm(x, scale, bias, activation, dims, epsilon):
    """
    Layer normalization over ``dims`` (None: every axis).

    ``scale`` and ``bias`` must broadcast against ``x``.
    """
    x = tf.convert_to_tensor(x)
    axes = list(canonicalize_axes(x.shape.rank, dims))
    mean, var = _moments(x, axes)
    y = (x - mean) * tf.math.rsqrt(var + epsilon)
    return _activate(activation, _affine(y, scale, bias))
