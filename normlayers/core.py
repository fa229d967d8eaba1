"""
Explicit layer protocol.

A layer is an immutable configuration object. Its learnable parameters and
its non-learned bookkeeping (running statistics, train/test flags) live in
two records owned by the caller:

    ps, st = setup(rng, layer)
    y, st = apply(layer, x, ps, st)

Layers never mutate ``ps`` or ``st``; a call returns the output together with
a new state record, and the caller replaces its reference. Records are plain
dicts so they nest, and ``tf.nest`` / ``tf.GradientTape`` can walk them.

This module also provides the two generic building blocks used alongside the
normalization layers: a sequential ``Chain`` and a ``Dense`` layer.
"""

import tensorflow as tf

from normlayers.initializers import glorot_uniform, zeros32
from normlayers.utils import count_scalars, match_eltype


class AbstractExplicitLayer:
    """
    Base class of every layer.

    Subclasses set their configuration in ``__init__`` and finish with
    ``self._freeze()``; any later attribute assignment raises
    ``AttributeError``.
    """

    def __setattr__(self, name, value):
        if self.__dict__.get("_frozen", False):
            raise AttributeError(
                f"{type(self).__name__} is immutable; build a new layer instead"
            )
        super().__setattr__(name, value)

    def _freeze(self):
        self._frozen = True

    def init_parameters(self, rng):
        return {}

    def init_state(self, rng):
        return {}

    def parameter_count(self):
        """Number of scalars in the parameter record."""
        return count_scalars(self.init_parameters(tf.random.Generator.from_seed(0)))

    def state_count(self):
        """Number of scalars in the state record; each flag counts as one."""
        return count_scalars(self.init_state(tf.random.Generator.from_seed(0)))

    def __call__(self, x, ps, st):
        raise NotImplementedError


def setup(rng, layer):
    """Initialise the parameter and state records of ``layer``."""
    return layer.init_parameters(rng), layer.init_state(rng)


def apply(layer, x, ps, st):
    """Run ``layer`` on ``x``; returns ``(y, new_state)``."""
    return layer(x, ps, st)


def update_state(st, key, value):
    """
    Copy of ``st`` with every entry named ``key`` set to ``value``.

    Nested records (e.g. the per-layer states of a ``Chain``) are updated
    recursively.
    """
    updated = {}
    for name, entry in st.items():
        if name == key:
            updated[name] = value
        elif isinstance(entry, dict):
            updated[name] = update_state(entry, key, value)
        else:
            updated[name] = entry
    return updated


def trainmode(st):
    return update_state(st, "training", True)


def testmode(st):
    return update_state(st, "training", False)


class Chain(AbstractExplicitLayer):
    """
    Sequential composition of layers.

    Parameters and states are keyed ``layer_1``, ``layer_2``, ... in order.
    Each layer's new state is placed in the returned record, so running
    statistics accumulate in call order.
    """

    def __init__(self, *layers):
        self.layers = tuple(layers)
        self.names = tuple(f"layer_{i}" for i in range(1, len(layers) + 1))
        self._freeze()

    def init_parameters(self, rng):
        return {
            name: layer.init_parameters(rng)
            for name, layer in zip(self.names, self.layers)
        }

    def init_state(self, rng):
        return {
            name: layer.init_state(rng) for name, layer in zip(self.names, self.layers)
        }

    def parameter_count(self):
        return sum(layer.parameter_count() for layer in self.layers)

    def state_count(self):
        return sum(layer.state_count() for layer in self.layers)

    def __call__(self, x, ps, st):
        new_st = {}
        for name, layer in zip(self.names, self.layers):
            x, new_st[name] = apply(layer, x, ps[name], st[name])
        return x, new_st

    def __repr__(self):
        inner = ", ".join(repr(layer) for layer in self.layers)
        return f"Chain({inner})"


class Dense(AbstractExplicitLayer):
    """
    Fully connected layer: ``y = activation(x @ weight + bias)``.

    Parameters:
        weight: shape (in_dims, out_dims)
        bias: shape (out_dims,), only when ``use_bias=True``
    """

    def __init__(
        self,
        in_dims,
        out_dims,
        activation=None,
        use_bias=True,
        init_weight=glorot_uniform,
        init_bias=zeros32,
    ):
        self.in_dims = in_dims
        self.out_dims = out_dims
        self.activation = tf.keras.activations.get(activation)
        self.use_bias = use_bias
        self.init_weight = init_weight
        self.init_bias = init_bias
        self._freeze()

    def init_parameters(self, rng):
        ps = {"weight": self.init_weight(rng, self.in_dims, self.out_dims)}
        if self.use_bias:
            ps["bias"] = self.init_bias(rng, self.out_dims)
        return ps

    def parameter_count(self):
        return self.in_dims * self.out_dims + (self.out_dims if self.use_bias else 0)

    def __call__(self, x, ps, st):
        x = match_eltype(self, ps, st, x)
        y = tf.matmul(x, ps["weight"])
        if self.use_bias:
            y = tf.nn.bias_add(y, ps["bias"])
        return self.activation(y), st

    def __repr__(self):
        return f"Dense({self.in_dims} => {self.out_dims})"
