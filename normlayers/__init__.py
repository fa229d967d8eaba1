"""
normlayers: normalization layers with explicit parameters and state.
"""

from normlayers import tracked  # noqa: F401  registers the tracked-array overloads
from normlayers.core import (
    AbstractExplicitLayer,
    Chain,
    Dense,
    apply,
    setup,
    testmode,
    trainmode,
    update_state,
)
from normlayers.initializers import glorot_uniform, ones32, rand32, randn32, zeros32
from normlayers.normalization import (
    AbstractNormalizationLayer,
    BatchNorm,
    GroupNorm,
    InstanceNorm,
    LayerNorm,
    has_affine,
    tracks_running_stats,
)
from normlayers.utils import (
    convert_eltype,
    element_dtype,
    gate,
    match_eltype,
    norm_except,
    reverse,
)
from normlayers.weight_norm import WeightNorm

__all__ = [
    "AbstractExplicitLayer",
    "AbstractNormalizationLayer",
    "BatchNorm",
    "Chain",
    "Dense",
    "GroupNorm",
    "InstanceNorm",
    "LayerNorm",
    "WeightNorm",
    "apply",
    "convert_eltype",
    "element_dtype",
    "gate",
    "glorot_uniform",
    "has_affine",
    "match_eltype",
    "norm_except",
    "ones32",
    "rand32",
    "randn32",
    "reverse",
    "setup",
    "testmode",
    "trainmode",
    "tracks_running_stats",
    "update_state",
    "zeros32",
]
