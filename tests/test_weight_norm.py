import numpy as np
import pytest
import tensorflow as tf

from normlayers import BatchNorm, Dense, WeightNorm, norm_except, setup
from normlayers.initializers import ones32
from normlayers.weight_norm import make_reconstructor


def _rebuilt_weight(layer, ps):
    return layer.normalized_parameters(ps)["weight"]


def test_parameter_groups(rng):
    layer = WeightNorm(Dense(4, 3), ("weight",))
    ps, st = setup(rng, layer)

    assert set(ps) == {"normalized", "unnormalized"}
    assert set(ps["normalized"]) == {"weight_g", "weight_v"}
    assert set(ps["unnormalized"]) == {"bias"}
    assert st == {}


def test_whole_tensor_norm_gives_scalar_magnitude(rng):
    layer = WeightNorm(Dense(4, 3), ("weight",))
    ps, _ = setup(rng, layer)

    g = ps["normalized"]["weight_g"]
    v = ps["normalized"]["weight_v"]
    assert tuple(g.shape) == (1, 1)
    np.testing.assert_allclose(g.numpy().item(), np.linalg.norm(v.numpy()), rtol=1e-5)


def test_per_column_magnitude(rng):
    layer = WeightNorm(Dense(16, 8), ("weight",), dims=((-1,),))
    ps, _ = setup(rng, layer)

    g = ps["normalized"]["weight_g"]
    v = ps["normalized"]["weight_v"].numpy()
    assert tuple(g.shape) == (1, 8)
    np.testing.assert_allclose(g.numpy()[0], np.linalg.norm(v, axis=0), rtol=1e-5)
    assert layer.parameter_count() == 8 + 16 * 8 + 8


@pytest.mark.parametrize("dims", [None, ((-1,),), ((0,),)])
def test_norm_and_direction_properties(rng, dims):
    layer = WeightNorm(Dense(6, 5), ("weight",), dims=dims)
    ps, _ = setup(rng, layer)
    # Move g and v away from their initial, already consistent values
    normalized = dict(ps["normalized"])
    normalized["weight_g"] = normalized["weight_g"] * 3.0 + 0.5
    normalized["weight_v"] = normalized["weight_v"] + rng.normal((6, 5)) * 0.1
    ps = {**ps, "normalized": normalized}

    keep = None if dims is None else dims[0]
    w = _rebuilt_weight(layer, ps)
    v = normalized["weight_v"]

    np.testing.assert_allclose(
        norm_except(w, keep).numpy(), normalized["weight_g"].numpy(), rtol=1e-5
    )
    np.testing.assert_allclose(
        (w / norm_except(w, keep)).numpy(),
        (v / norm_except(v, keep)).numpy(),
        atol=1e-5,
    )


def test_forward_matches_inner_layer_at_initialization(rng):
    dense = Dense(5, 4, "relu")
    layer = WeightNorm(dense, ("weight",), dims=((-1,),))
    ps, st = setup(rng, layer)
    x = rng.normal((3, 5))

    y, _ = layer(x, ps, st)

    inner_ps = {
        "weight": ps["normalized"]["weight_v"],
        "bias": ps["unnormalized"]["bias"],
    }
    y_ref, _ = dense(x, inner_ps, {})
    np.testing.assert_allclose(y.numpy(), y_ref.numpy(), atol=1e-5)


def test_gradient_wrt_direction_is_orthogonal_to_it(rng):
    layer = WeightNorm(Dense(6, 3), ("weight",))
    ps, st = setup(rng, layer)
    x = rng.normal((4, 6))

    with tf.GradientTape() as tape:
        tape.watch(tf.nest.flatten(ps))
        y, _ = layer(x, ps, st)
        loss = tf.reduce_sum(tf.square(y - 1.0))
    grads = tape.gradient(loss, ps)

    grad_v = grads["normalized"]["weight_v"].numpy()
    grad_g = grads["normalized"]["weight_g"].numpy()
    v = ps["normalized"]["weight_v"].numpy()
    assert np.all(np.isfinite(grad_v)) and np.all(np.isfinite(grad_g))
    assert abs(float(np.sum(v * grad_v))) < 1e-4
    assert grads["unnormalized"]["bias"] is not None


def test_reconstructor_is_built_once_per_names():
    first = make_reconstructor(("weight",), True)
    assert make_reconstructor(("weight",), True) is first
    assert make_reconstructor(("weight",), False) is not first
    assert "dims[0]" in first.source
    assert "dims[" not in make_reconstructor(("weight",), False).source


def test_out_of_range_dims_are_rejected(rng):
    layer = WeightNorm(Dense(3, 2), ("weight",), dims=((2,),))
    with pytest.raises(ValueError, match="out of bounds"):
        setup(rng, layer)


def test_reconstructor_unrolls_each_name_in_order(rng):
    layer = WeightNorm(Dense(3, 2, init_bias=ones32), ("bias", "weight"))
    ps, _ = setup(rng, layer)

    rebuilt = layer.normalized_parameters(ps)

    assert list(rebuilt) == ["bias", "weight"]
    assert ps["unnormalized"] == {}
    source = make_reconstructor(("bias", "weight"), False).source
    assert source.count("norm_except") == 2


def test_missing_parameter_name_is_rejected(rng):
    layer = WeightNorm(Dense(2, 3), ("kernel",))
    with pytest.raises(ValueError, match="kernel"):
        setup(rng, layer)


def test_all_zero_parameter_is_rejected(rng):
    layer = WeightNorm(Dense(2, 3), ("weight", "bias"))
    with pytest.raises(ValueError, match="bias is completely zero"):
        setup(rng, layer)


def test_dims_length_must_match(rng):
    layer = WeightNorm(Dense(2, 3), ("weight",), dims=((0,), (1,)))
    with pytest.raises(ValueError, match="dims"):
        setup(rng, layer)


def test_state_is_delegated_to_the_wrapped_layer(rng):
    layer = WeightNorm(BatchNorm(3), ("scale",))
    ps, st = setup(rng, layer)

    assert set(st) == {"running_mean", "running_var", "training"}
    assert layer.state_count() == BatchNorm(3).state_count()
    assert set(ps["unnormalized"]) == {"bias"}

    _, new_st = layer(rng.normal((5, 3)) + 2.0, ps, st)
    assert not np.allclose(new_st["running_mean"].numpy(), 0.0)


def test_repr_names_wrapped_layer():
    layer = WeightNorm(Dense(2, 3), ["weight"])
    assert repr(layer) == "WeightNorm(Dense(2 => 3), which_params=('weight',), dims=None)"
    with pytest.raises(AttributeError):
        layer.dims = ((0,),)
