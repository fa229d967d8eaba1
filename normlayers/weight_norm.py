"""
Weight Normalization (Salimans & Kingma, 2016)

KEY IDEA: Reparameterize a weight tensor to decouple its magnitude from its
direction. Instead of learning w directly, learn:

    w = g * v / ||v||

where g is the magnitude and v the direction.

``WeightNorm`` wraps any explicit layer and reparameterizes the parameters
named in ``which_params``. Its parameter record has two groups:

    {"normalized":   {"weight_g": ..., "weight_v": ..., ...},
     "unnormalized": {"bias": ..., ...}}

On every call the chosen parameters are rebuilt from (g, v) and the wrapped
layer runs with the complete parameter record. The rebuild function is
built once per tuple of parameter names, from one specialized closure per
name.
"""

import functools

import tensorflow as tf

from normlayers.core import AbstractExplicitLayer, apply
from normlayers.utils import machine_eps, match_eltype, merge, norm_except


def _eps(dtype):
    return float(machine_eps(dtype))


_REBUILD_LINE = (
    "{name} = {v} * ({g} / (norm_except({v}{dims}) + eps({v}.dtype)))"
)


def _rebuild_one(name, index):
    v_key, g_key = f"{name}_v", f"{name}_g"

    def rebuild(ps, dims):
        v = ps[v_key]
        keep = None if index is None else dims[index]
        return v * (ps[g_key] / (norm_except(v, keep) + _eps(v.dtype)))

    return rebuild


@functools.lru_cache(maxsize=None)
def make_reconstructor(which_params, per_param_dims):
    """
    Build the rebuild function for one tuple of parameter names.

    One closure is specialized per name (its ``g``/``v`` keys and its
    position in ``dims`` are fixed when it is built). ``reconstruct.source``
    lists the expressions, e.g. for ``("weight", "bias")`` with
    ``per_param_dims=True``:

        weight = weight_v * (weight_g / (norm_except(weight_v, dims[0]) + eps(weight_v.dtype)))
        bias = bias_v * (bias_g / (norm_except(bias_v, dims[1]) + eps(bias_v.dtype)))

    Args:
        which_params: Tuple of parameter names, in output order
        per_param_dims: Whether ``dims`` holds one entry per name (otherwise
            the norm covers the whole tensor)

    Returns:
        reconstruct(ps, dims) -> dict
    """
    steps = tuple(
        (name, _rebuild_one(name, i if per_param_dims else None))
        for i, name in enumerate(which_params)
    )

    def reconstruct(ps, dims):
        return {name: rebuild(ps, dims) for name, rebuild in steps}

    reconstruct.__qualname__ = f"reconstruct[{', '.join(which_params)}]"
    reconstruct.source = "\n".join(
        _REBUILD_LINE.format(
            name=name,
            v=f"{name}_v",
            g=f"{name}_g",
            dims=f", dims[{i}]" if per_param_dims else "",
        )
        for i, name in enumerate(which_params)
    )
    return reconstruct


class WeightNorm(AbstractExplicitLayer):
    """
    Weight normalization wrapper.

    Args:
        layer: The explicit layer whose parameters are reparameterized
        which_params: Names of the parameters to reparameterize
        dims: None to take the norm over each whole tensor (scalar
            magnitude), or a tuple with one entry per name giving the axis
            (or axes) kept by the norm, i.e. one magnitude per slice

    Parameters:
        normalized: ``<name>_g`` and ``<name>_v`` for every chosen name
        unnormalized: the remaining parameters of ``layer``

    States:
        Same as ``layer``
    """

    def __init__(self, layer, which_params, dims=None):
        self.layer = layer
        self.which_params = tuple(which_params)
        self.dims = None if dims is None else tuple(dims)
        self._reconstruct = make_reconstructor(self.which_params, self.dims is not None)
        self._freeze()

    def _dims_for(self, i):
        return None if self.dims is None else self.dims[i]

    def init_parameters(self, rng):
        ps_layer = self.layer.init_parameters(rng)

        missing = [name for name in self.which_params if name not in ps_layer]
        if missing:
            raise ValueError(
                f"{type(self.layer).__name__} has no parameters named {missing}; "
                f"available: {list(ps_layer)}"
            )
        if self.dims is not None and len(self.dims) != len(self.which_params):
            raise ValueError(
                f"dims has {len(self.dims)} entries but {len(self.which_params)} "
                "parameters are normalized"
            )

        normalized = {}
        for i, name in enumerate(self.which_params):
            v = ps_layer[name]
            if not bool(tf.reduce_any(tf.not_equal(v, tf.zeros_like(v)))):
                raise ValueError(
                    f"Parameter {name} is completely zero. This will result in NaN "
                    f"gradients. Either remove this parameter from `which_params` or "
                    f"modify the initialization in the actual layer. Typically this "
                    f"is controlled using the `init_{name}` keyword argument."
                )
            normalized[f"{name}_g"] = norm_except(v, self._dims_for(i))
            normalized[f"{name}_v"] = v

        unnormalized = {
            name: value
            for name, value in ps_layer.items()
            if name not in self.which_params
        }
        return {"normalized": normalized, "unnormalized": unnormalized}

    def init_state(self, rng):
        return self.layer.init_state(rng)

    def state_count(self):
        return self.layer.state_count()

    def normalized_parameters(self, ps):
        """Rebuild the reparameterized parameters from their (g, v) pairs."""
        return self._reconstruct(ps["normalized"], self.dims)

    def __call__(self, x, ps, st):
        x = match_eltype(self, ps, st, x)
        ps_layer = merge(self.normalized_parameters(ps), ps["unnormalized"])
        return apply(self.layer, x, ps_layer, st)

    def __repr__(self):
        return (
            f"WeightNorm({self.layer!r}, which_params={self.which_params}, "
            f"dims={self.dims})"
        )
