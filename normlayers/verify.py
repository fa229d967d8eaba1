"""
Verification of the normalization layers against Keras reference layers.

Each ``verify_*`` function runs a layer and the equivalent
``tf.keras.layers`` layer (loaded with the same scale/bias and running
statistics) on the same input and reports the elementwise output
differences and the differences of the gradients of ``mean(output)`` with
respect to scale and bias. Differences should be at floating point error
level.

Weight normalization has no Keras counterpart, so its mathematical
properties are checked instead:
    1. ||w|| equals g
    2. the direction of w equals the direction of v
"""

import numpy as np
import tensorflow as tf

from normlayers.normalization import has_affine, tracks_running_stats
from normlayers.utils import canonicalize_axes, norm_except


def _compare(custom_forward, reference_forward, ps, reference):
    """
    Args:
        custom_forward: ps -> output of the custom layer
        reference_forward: () -> output of the Keras layer
        ps: Parameter record of the custom layer
        reference: Built Keras layer with ``gamma``/``beta`` when affine
    """
    custom_output = custom_forward(ps)
    tf_output = reference_forward()
    output_diff = tf.abs(custom_output - tf_output).numpy()

    grad_diff = np.zeros(0, dtype=np.float32)
    if "scale" in ps and "bias" in ps:
        sources = [ps["scale"], ps["bias"]]
        with tf.GradientTape() as tape1:
            tape1.watch(sources)
            custom_loss = tf.reduce_mean(custom_forward(ps))
        custom_grads = tape1.gradient(custom_loss, sources)

        with tf.GradientTape() as tape2:
            tf_loss = tf.reduce_mean(reference_forward())
        tf_grads = tape2.gradient(tf_loss, [reference.gamma, reference.beta])

        grad_diff = np.concatenate(
            [
                np.abs(
                    tf.reshape(c, [-1]).numpy() - tf.reshape(t, [-1]).numpy()
                )
                for c, t in zip(custom_grads, tf_grads)
            ]
        )

    return {
        "output_diff": output_diff,
        "grad_diff": grad_diff,
        "max_output_diff": float(np.max(output_diff)),
        "max_grad_diff": float(np.max(grad_diff)) if grad_diff.size else 0.0,
    }


def _load_affine(reference, ps):
    if "scale" in ps:
        reference.gamma.assign(tf.reshape(ps["scale"], reference.gamma.shape))
        reference.beta.assign(tf.reshape(ps["bias"], reference.beta.shape))


def verify_batchnorm(layer, ps, st, test_input):
    """
    Compare a BatchNorm layer with ``tf.keras.layers.BatchNormalization``.

    Keras weights the *old* statistic by its momentum, so the reference is
    built with ``1 - layer.momentum``. The mode is taken from
    ``st["training"]``.
    """
    training = st["training"]
    reference = tf.keras.layers.BatchNormalization(
        axis=-1,
        momentum=1.0 - layer.momentum,
        epsilon=layer.epsilon,
        center=has_affine(layer),
        scale=has_affine(layer),
    )
    reference.build(tuple(test_input.shape))
    _load_affine(reference, ps)
    if tracks_running_stats(layer):
        reference.moving_mean.assign(st["running_mean"])
        reference.moving_variance.assign(st["running_var"])

    return _compare(
        lambda p: layer(test_input, p, st)[0],
        lambda: layer.activation(reference(test_input, training=training)),
        ps,
        reference,
    )


def verify_layernorm(layer, ps, st, test_input):
    """
    Compare a LayerNorm layer with ``tf.keras.layers.LayerNormalization``.

    The layer must normalize over non-batch axes only (``dims`` set), and its
    ``shape`` must cover exactly those axes.
    """
    if layer.dims is None:
        raise ValueError("LayerNorm verification needs `dims` excluding the batch axis")
    axes = list(canonicalize_axes(len(test_input.shape), layer.dims))
    if 0 in axes:
        raise ValueError("LayerNorm verification needs `dims` excluding the batch axis")

    reference = tf.keras.layers.LayerNormalization(
        axis=axes,
        epsilon=layer.epsilon,
        center=has_affine(layer),
        scale=has_affine(layer),
    )
    reference.build(tuple(test_input.shape))
    _load_affine(reference, ps)

    return _compare(
        lambda p: layer(test_input, p, st)[0],
        lambda: layer.activation(reference(test_input)),
        ps,
        reference,
    )


def verify_groupnorm(layer, ps, st, test_input):
    """Compare a GroupNorm layer with ``tf.keras.layers.GroupNormalization``."""
    reference = tf.keras.layers.GroupNormalization(
        groups=layer.groups,
        axis=-1,
        epsilon=layer.epsilon,
        center=has_affine(layer),
        scale=has_affine(layer),
    )
    reference.build(tuple(test_input.shape))
    _load_affine(reference, ps)

    return _compare(
        lambda p: layer(test_input, p, st)[0],
        lambda: layer.activation(reference(test_input)),
        ps,
        reference,
    )


def verify_instancenorm(layer, ps, st, test_input):
    """
    Compare an InstanceNorm layer with ``tf.keras.layers.GroupNormalization``
    using one group per channel, which is instance normalization.
    """
    reference = tf.keras.layers.GroupNormalization(
        groups=layer.chs,
        axis=-1,
        epsilon=layer.epsilon,
        center=has_affine(layer),
        scale=has_affine(layer),
    )
    reference.build(tuple(test_input.shape))
    _load_affine(reference, ps)

    return _compare(
        lambda p: layer(test_input, p, st)[0],
        lambda: layer.activation(reference(test_input)),
        ps,
        reference,
    )


def verify_weightnorm(layer, ps):
    """
    Check the weight normalization properties of every reparameterized
    parameter of a WeightNorm layer.

    Returns:
        Dict with the mean/max norm and direction errors over all parameters
        and a 'per_parameter' breakdown
    """
    rebuilt = layer.normalized_parameters(ps)
    per_parameter = {}
    norm_errors = []
    direction_errors = []

    for i, name in enumerate(layer.which_params):
        dims = None if layer.dims is None else layer.dims[i]
        w = rebuilt[name]
        v = ps["normalized"][f"{name}_v"]
        g = ps["normalized"][f"{name}_g"]

        w_norm = norm_except(w, dims)
        v_norm = norm_except(v, dims)

        # Property 1: ||w|| = g
        norm_error = tf.abs(w_norm - g).numpy().ravel()

        # Property 2: w / ||w|| = v / ||v||
        direction_error = norm_except(w / w_norm - v / v_norm, dims).numpy().ravel()

        norm_errors.append(norm_error)
        direction_errors.append(direction_error)
        per_parameter[name] = {
            "norm_property_error": float(np.mean(norm_error)),
            "direction_property_error": float(np.mean(direction_error)),
            "g_values": g.numpy().ravel().tolist(),
        }

    norm_errors = np.concatenate(norm_errors) if norm_errors else np.zeros(0)
    direction_errors = (
        np.concatenate(direction_errors) if direction_errors else np.zeros(0)
    )
    return {
        "norm_property_error": float(np.mean(norm_errors)) if norm_errors.size else 0.0,
        "direction_property_error": (
            float(np.mean(direction_errors)) if direction_errors.size else 0.0
        ),
        "max_norm_error": float(np.max(norm_errors)) if norm_errors.size else 0.0,
        "max_direction_error": (
            float(np.max(direction_errors)) if direction_errors.size else 0.0
        ),
        "per_parameter": per_parameter,
    }
