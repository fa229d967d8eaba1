"""
The custom layers against their tf.keras.layers counterparts.
"""

import pytest

from normlayers import (
    BatchNorm,
    Dense,
    GroupNorm,
    InstanceNorm,
    LayerNorm,
    WeightNorm,
    apply,
    setup,
    testmode,
)
from normlayers.verify import (
    verify_batchnorm,
    verify_groupnorm,
    verify_instancenorm,
    verify_layernorm,
    verify_weightnorm,
)

TOLERANCE = 1e-4


def _perturbed(rng, ps):
    # Non-trivial scale/bias so the affine part is exercised
    return {name: value + 0.3 * rng.normal(value.shape.as_list()) for name, value in ps.items()}


def _assert_close(results):
    assert results["max_output_diff"] < TOLERANCE
    assert results["max_grad_diff"] < TOLERANCE


@pytest.mark.parametrize("shape", [(16, 4, 4, 6), (32, 10)])
def test_batchnorm_training_matches_keras(rng, shape):
    layer = BatchNorm(shape[-1], "relu")
    ps, st = setup(rng, layer)
    results = verify_batchnorm(layer, _perturbed(rng, ps), st, rng.normal(shape) * 2.0)
    _assert_close(results)
    assert results["grad_diff"].size == 2 * shape[-1]


def test_batchnorm_eval_matches_keras(rng):
    layer = BatchNorm(5, momentum=0.3)
    ps, st = setup(rng, layer)
    _, st = apply(layer, rng.normal((16, 3, 3, 5)) * 2.0 + 1.0, ps, st)
    results = verify_batchnorm(
        layer, _perturbed(rng, ps), testmode(st), rng.normal((8, 3, 3, 5))
    )
    _assert_close(results)


def test_batchnorm_without_affine_matches_keras(rng):
    layer = BatchNorm(4, affine=False)
    ps, st = setup(rng, layer)
    results = verify_batchnorm(layer, ps, st, rng.normal((8, 4)))
    _assert_close(results)
    assert results["grad_diff"].size == 0


def test_groupnorm_matches_keras(rng):
    layer = GroupNorm(12, 3)
    ps, st = setup(rng, layer)
    _assert_close(verify_groupnorm(layer, _perturbed(rng, ps), st, rng.normal((4, 5, 5, 12))))


def test_instancenorm_matches_keras(rng):
    layer = InstanceNorm(6)
    ps, st = setup(rng, layer)
    _assert_close(
        verify_instancenorm(layer, _perturbed(rng, ps), st, rng.normal((4, 7, 7, 6)))
    )


@pytest.mark.parametrize(
    "shape, input_shape, dims",
    [((6, 6, 4), (3, 6, 6, 4), (1, 2, 3)), ((10,), (3, 5, 10), -1)],
)
def test_layernorm_matches_keras(rng, shape, input_shape, dims):
    layer = LayerNorm(shape, dims=dims)
    ps, st = setup(rng, layer)
    _assert_close(verify_layernorm(layer, _perturbed(rng, ps), st, rng.normal(input_shape)))


@pytest.mark.parametrize("dims", [None, (0, 1, 2)])
def test_layernorm_verification_needs_per_sample_dims(rng, dims):
    layer = LayerNorm((4, 4), dims=dims)
    ps, st = setup(rng, layer)
    with pytest.raises(ValueError, match="batch axis"):
        verify_layernorm(layer, ps, st, rng.normal((2, 4, 4)))


@pytest.mark.parametrize("dims", [None, ((-1,), (0,))])
def test_weightnorm_properties(rng, dims):
    layer = WeightNorm(Dense(8, 4, init_bias=lambda rng, *s: rng.normal(s)), ("weight", "bias"), dims=dims)
    ps, _ = setup(rng, layer)

    results = verify_weightnorm(layer, ps)

    assert results["max_norm_error"] < TOLERANCE
    assert results["max_direction_error"] < TOLERANCE
    assert set(results["per_parameter"]) == {"weight", "bias"}
