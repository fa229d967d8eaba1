"""
Normalization layers with explicit parameters and state.

Batch, group, instance and layer normalization share one abstraction,
``AbstractNormalizationLayer``. Whether a layer has learnable affine
parameters (scale/bias) and whether it keeps running statistics are part of
its type: constructing ``BatchNorm(8, affine=False)`` returns an instance of a
``BatchNorm`` subclass whose class attributes are ``affine = False`` and
``track_stats = True``. ``has_affine`` and ``tracks_running_stats`` read those
class attributes, so they are plain Python constants under ``tf.function``
and never part of a gradient computation.

All layers use the channels-last layout: the batch axis is axis 0 and the
channel axis is the last one.

    layer = BatchNorm(16, "relu")
    ps, st = setup(rng, layer)
    y, st = layer(x, ps, st)        # training mode, running stats updated
    y, _ = layer(x, ps, testmode(st))
"""

import functools

import tensorflow as tf

from normlayers import functional
from normlayers.core import AbstractExplicitLayer
from normlayers.initializers import ones32, zeros32
from normlayers.utils import gate_slice, match_eltype


@functools.lru_cache(maxsize=None)
def _specialize(cls, affine, track_stats):
    return type(
        cls.__name__,
        (cls,),
        {
            "__module__": cls.__module__,
            "__qualname__": cls.__qualname__,
            "affine": affine,
            "track_stats": track_stats,
            "_generic": cls,
        },
    )


def has_affine(layer):
    """True if ``layer`` has learnable scale and bias parameters."""
    return bool(getattr(type(layer), "affine", False))


def tracks_running_stats(layer):
    """True if ``layer`` keeps running mean/variance in its state."""
    return bool(getattr(type(layer), "track_stats", False))


def _activation_name(activation):
    return getattr(activation, "__name__", repr(activation))


def _static_batch_size(x):
    shape = getattr(x, "shape", None)
    if shape is None:
        return len(x)
    return tf.TensorShape(shape)[0]


class AbstractNormalizationLayer(AbstractExplicitLayer):
    """
    Base class of the normalization layers.

    ``affine`` and ``track_stats`` keyword arguments select the subclass that
    is instantiated; the generic class itself is never instantiated.
    """

    affine = True
    track_stats = False

    def __new__(cls, *args, **kwargs):
        generic = cls.__dict__.get("_generic", cls)
        affine = bool(kwargs.get("affine", True))
        track_stats = bool(kwargs.get("track_stats", generic.track_stats))
        return super().__new__(_specialize(generic, affine, track_stats))

    def _affine_parameters(self, rng, *shape):
        if has_affine(self):
            return {
                "scale": self.init_scale(rng, *shape),
                "bias": self.init_bias(rng, *shape),
            }
        return {}

    def _repr_fields(self):
        fields = []
        if self.activation is not tf.keras.activations.linear:
            fields.append(_activation_name(self.activation))
        fields.append(f"affine={has_affine(self)}")
        return fields


class BatchNorm(AbstractNormalizationLayer):
    """
    Batch Normalization (Ioffe & Szegedy, 2015)

    KEY IDEA: For each channel, compute mean and variance over the batch and
    all spatial positions, then normalize to mean=0, variance=1.

    FORMULATION:
        Training:
            μ_B = mean of x over every axis but the channel axis
            σ²_B = mean of (x - μ_B)² over the same axes
            y = activation(γ * (x - μ_B) / √(σ²_B + ε) + β)

        Inference (with running statistics):
            y = activation(γ * (x - μ_running) / √(σ²_running + ε) + β)

    Running statistics are exponential moving averages updated in training
    mode with weight ``momentum`` on the new batch statistic; the variance
    update uses the unbiased batch variance.

    Args:
        chs: Size of the channel (last) axis
        activation: Applied elementwise after normalization
        init_bias, init_scale: Initializers for the affine parameters
        affine: Learn per-channel scale and bias
        track_stats: Keep running mean/variance for test mode
        epsilon: Added to the variance for numerical stability
        momentum: Weight of the batch statistic in the moving average

    Parameters:
        affine=True: ``scale`` and ``bias`` of shape (chs,)
        affine=False: empty

    States:
        track_stats=True: ``running_mean``, ``running_var`` of shape (chs,)
        ``training``: bool, switched with ``trainmode``/``testmode``

    A batch of size 1 in training mode is rejected: its variance is zero.
    """

    track_stats = True

    def __init__(
        self,
        chs,
        activation=None,
        *,
        init_bias=zeros32,
        init_scale=ones32,
        affine=True,
        track_stats=True,
        epsilon=1e-5,
        momentum=0.1,
    ):
        self.chs = chs
        self.activation = tf.keras.activations.get(activation)
        self.init_bias = init_bias
        self.init_scale = init_scale
        self.epsilon = epsilon
        self.momentum = momentum
        self._freeze()

    def init_parameters(self, rng):
        return self._affine_parameters(rng, self.chs)

    def init_state(self, rng):
        if tracks_running_stats(self):
            return {
                "running_mean": zeros32(rng, self.chs),
                "running_var": ones32(rng, self.chs),
                "training": True,
            }
        return {"training": True}

    def parameter_count(self):
        return 2 * self.chs if has_affine(self) else 0

    def state_count(self):
        return (2 * self.chs if tracks_running_stats(self) else 0) + 1

    def __call__(self, x, ps, st):
        if st["training"] and _static_batch_size(x) == 1:
            raise ValueError("Batch size for BatchNorm cannot be 1 during training")

        x = match_eltype(self, ps, st, x)
        y, stats = functional.batchnorm(
            x,
            ps.get("scale"),
            ps.get("bias"),
            st.get("running_mean"),
            st.get("running_var"),
            st["training"],
            self.activation,
            self.momentum,
            self.epsilon,
        )
        return y, self._update_state(st, stats)

    def _update_state(self, st, stats):
        if tracks_running_stats(self):
            return {
                **st,
                "running_mean": stats["running_mean"],
                "running_var": stats["running_var"],
            }
        return st

    def __repr__(self):
        fields = [str(self.chs)] + self._repr_fields()
        fields.append(f"track_stats={tracks_running_stats(self)}")
        return f"BatchNorm({', '.join(fields)})"


class GroupNorm(AbstractNormalizationLayer):
    """
    Group Normalization (Wu & He, 2018)

    Splits the channels into ``groups`` contiguous partitions of equal size
    and normalizes each partition per sample, over the spatial axes and the
    channels of the partition. No running statistics are kept, so the
    computation is the same in training and test mode.

    Args:
        chs: Size of the channel (last) axis
        groups: Number of groups; must divide ``chs``
        activation: Applied elementwise after normalization
        init_bias, init_scale: Initializers for the affine parameters
        affine: Learn per-channel scale and bias
        epsilon: Added to the variance for numerical stability

    Parameters:
        affine=True: ``scale`` and ``bias`` of shape (chs,)
        affine=False: empty

    States:
        empty
    """

    def __init__(
        self,
        chs,
        groups,
        activation=None,
        *,
        init_bias=zeros32,
        init_scale=ones32,
        affine=True,
        epsilon=1e-5,
    ):
        if groups <= 0:
            raise ValueError(f"The number of groups must be positive, got {groups}")
        if chs % groups != 0:
            raise ValueError(
                f"The number of groups ({groups}) must divide the number of channels ({chs})"
            )
        self.chs = chs
        self.groups = groups
        self.activation = tf.keras.activations.get(activation)
        self.init_bias = init_bias
        self.init_scale = init_scale
        self.epsilon = epsilon
        self._freeze()

    def channel_groups(self):
        """Channel slices of the groups, in order."""
        size = self.chs // self.groups
        return [gate_slice(size, n) for n in range(1, self.groups + 1)]

    def init_parameters(self, rng):
        return self._affine_parameters(rng, self.chs)

    def parameter_count(self):
        return 2 * self.chs if has_affine(self) else 0

    def __call__(self, x, ps, st):
        x = match_eltype(self, ps, st, x)
        y = functional.groupnorm(
            x,
            ps.get("scale"),
            ps.get("bias"),
            self.groups,
            self.activation,
            self.epsilon,
        )
        return y, st

    def __repr__(self):
        fields = [str(self.chs), str(self.groups)] + self._repr_fields()
        return f"GroupNorm({', '.join(fields)})"


class InstanceNorm(AbstractNormalizationLayer):
    """
    Instance Normalization (Ulyanov et al., 2016)

    Per sample, per channel statistics over the spatial axes only; unlike
    BatchNorm nothing is pooled across the batch. Expects inputs with at
    least one spatial axis, i.e. shape (batch, ..., chs) with rank > 2.

    Parameters:
        affine=True: ``scale`` and ``bias`` of shape (chs,)

    States:
        ``training``: bool
    """

    def __init__(
        self,
        chs,
        activation=None,
        *,
        init_bias=zeros32,
        init_scale=ones32,
        affine=True,
        epsilon=1e-5,
    ):
        self.chs = chs
        self.activation = tf.keras.activations.get(activation)
        self.init_bias = init_bias
        self.init_scale = init_scale
        self.epsilon = epsilon
        self._freeze()

    def init_parameters(self, rng):
        return self._affine_parameters(rng, self.chs)

    def init_state(self, rng):
        return {"training": True}

    def parameter_count(self):
        return 2 * self.chs if has_affine(self) else 0

    def __call__(self, x, ps, st):
        x = match_eltype(self, ps, st, x)
        y, _ = functional.instancenorm(
            x,
            ps.get("scale"),
            ps.get("bias"),
            st["training"],
            self.activation,
            self.epsilon,
        )
        return y, st

    def __repr__(self):
        fields = [str(self.chs)] + self._repr_fields()
        return f"InstanceNorm({', '.join(fields)})"


class LayerNorm(AbstractNormalizationLayer):
    """
    Layer Normalization (Ba, Kiros & Hinton, 2016)

    Computes mean and variance over ``dims`` and normalizes with them. The
    default (``dims=None``) uses every axis of the input, batch included;
    pass e.g. ``dims=(1, 2, 3)`` to normalize each sample on its own.

        y = activation(γ * (x - E[x]) / √(Var[x] + ε) + β)

    The default is ``affine=True``.

    Args:
        shape: Shape of the input excluding the batch axis
        activation: Applied elementwise after normalization
        epsilon: Added to the variance for numerical stability
        dims: Axes to normalize over (int, tuple, or None for all)
        affine: Learn elementwise scale and bias
        init_bias, init_scale: Initializers for the affine parameters

    Parameters:
        affine=True: ``bias`` and ``scale`` of shape (1, *shape); the
            singleton is the batch axis
        affine=False: empty

    States:
        empty
    """

    def __init__(
        self,
        shape,
        activation=None,
        *,
        epsilon=1e-5,
        dims=None,
        affine=True,
        init_bias=zeros32,
        init_scale=ones32,
    ):
        self.shape = tuple(shape)
        self.activation = tf.keras.activations.get(activation)
        self.epsilon = epsilon
        self.dims = dims
        self.init_bias = init_bias
        self.init_scale = init_scale
        self._freeze()

    def init_parameters(self, rng):
        if has_affine(self):
            return {
                "bias": self.init_bias(rng, 1, *self.shape),
                "scale": self.init_scale(rng, 1, *self.shape),
            }
        return {}

    def parameter_count(self):
        if not has_affine(self):
            return 0
        size = 1
        for dim in self.shape:
            size *= dim
        return 2 * size

    def __call__(self, x, ps, st):
        x = match_eltype(self, ps, st, x)
        y = functional.layernorm(
            x,
            ps.get("scale"),
            ps.get("bias"),
            self.activation,
            self.dims,
            self.epsilon,
        )
        return y, st

    def __repr__(self):
        fields = [str(self.shape)] + self._repr_fields()
        fields.append(f"dims={self.dims}")
        return f"LayerNorm({', '.join(fields)})"
