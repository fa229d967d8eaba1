import logging

import numpy as np
import pytest
import tensorflow as tf

from normlayers import convert_eltype, element_dtype, gate, reverse, tracked
from normlayers.tracked import aos_to_soa, is_array_of_trackables, to_object_array


def _scalars(values):
    return [tf.constant(v) for v in values]


# ============================================================================
# RECOGNITION AND PACKING
# ============================================================================


def test_recognises_lists_of_tracked_scalars():
    assert is_array_of_trackables(_scalars([1.0, 2.0]))
    assert is_array_of_trackables((tf.Variable(1.0), tf.constant(2.0)))
    assert is_array_of_trackables([_scalars([1.0, 2.0]), _scalars([3.0, 4.0])])


@pytest.mark.parametrize(
    "value",
    [
        [],
        [1.0, 2.0],
        [tf.constant([1.0, 2.0])],
        np.array([1.0, 2.0]),
        np.empty(0, dtype=object),
        tf.constant([1.0, 2.0]),
    ],
)
def test_other_values_are_not_arrays_of_trackables(value):
    assert not is_array_of_trackables(value)


def test_object_array_keeps_the_tensors():
    values = _scalars([1.0, 2.0, 3.0, 4.0])
    arr = to_object_array([values[:2], values[2:]])

    assert arr.shape == (2, 2)
    assert arr[1, 0] is values[2]


@pytest.mark.parametrize(
    "rows",
    [
        lambda: [_scalars([1.0, 2.0]), _scalars([3.0])],
        lambda: [tf.constant(1.0), _scalars([2.0, 3.0])],
    ],
)
def test_ragged_nesting_is_rejected(rows):
    with pytest.raises(ValueError, match="Ragged"):
        to_object_array(rows())
    with pytest.raises(ValueError, match="Ragged"):
        reverse(rows())


def test_packing_preserves_shape_and_values():
    packed = aos_to_soa([_scalars([1.0, 2.0, 3.0]), _scalars([4.0, 5.0, 6.0])])

    assert isinstance(packed, tf.Tensor)
    np.testing.assert_array_equal(packed.numpy(), [[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])


# ============================================================================
# REVERSE
# ============================================================================


def test_reverse_of_tracked_vector_returns_one_tensor():
    values = _scalars([1.0, 2.0, 3.0])

    result = reverse(values)

    assert isinstance(result, tf.Tensor)
    np.testing.assert_array_equal(result.numpy(), [3.0, 2.0, 1.0])


def test_reverse_twice_is_identity():
    values = _scalars([1.0, 2.0, 3.0, 4.0])
    once = reverse(values)
    twice = reverse(once)
    np.testing.assert_array_equal(twice.numpy(), [1.0, 2.0, 3.0, 4.0])


def test_reverse_matrix_along_one_axis():
    rows = [_scalars([1.0, 2.0]), _scalars([3.0, 4.0])]
    np.testing.assert_array_equal(reverse(rows, axis=1).numpy(), [[2.0, 1.0], [4.0, 3.0]])
    np.testing.assert_array_equal(reverse(rows, axis=0).numpy(), [[3.0, 4.0], [1.0, 2.0]])


def test_reverse_plain_values_uses_tensorflow():
    np.testing.assert_array_equal(reverse(np.array([1, 2, 3])).numpy(), [3, 2, 1])
    np.testing.assert_array_equal(
        reverse(tf.constant([[1, 2], [3, 4]]), axis=-1).numpy(), [[2, 1], [4, 3]]
    )


def test_reverse_rejects_out_of_range_axis():
    with pytest.raises(ValueError, match="out of bounds"):
        reverse(tf.constant([[1, 2], [3, 4]]), axis=2)


def test_gradient_flows_through_reverse():
    a, b, c = tf.Variable(1.0), tf.Variable(2.0), tf.Variable(3.0)

    with tf.GradientTape() as tape:
        r = reverse([a, b, c])
        loss = tf.reduce_sum(r * tf.constant([10.0, 1.0, 3.0]))
    grads = tape.gradient(loss, [a, b, c])

    assert [float(g) for g in grads] == [3.0, 1.0, 10.0]


def test_gradient_of_packed_tensor_reaches_scalars():
    a, b = tf.Variable(2.0), tf.Variable(5.0)

    with tf.GradientTape() as tape:
        loss = tf.reduce_sum(reverse([a, b]) * tf.constant([4.0, 13.0]))
    grad_a, grad_b = tape.gradient(loss, [a, b])

    assert float(grad_a) == 13.0
    assert float(grad_b) == 4.0


# ============================================================================
# GATE
# ============================================================================


def test_gate_with_two_integers_is_a_slice():
    assert gate(3, 2) == slice(3, 6)


def test_gate_of_tracked_vector():
    values = _scalars([float(i) for i in range(6)])

    second = gate(values, 2, 2)

    assert isinstance(second, tf.Tensor)
    np.testing.assert_array_equal(second.numpy(), [2.0, 3.0])


def test_gate_of_tracked_matrix_slices_rows():
    rows = [_scalars([float(i), float(i) + 0.5]) for i in range(4)]

    np.testing.assert_array_equal(gate(rows, 2, 1).numpy(), [[0.0, 0.5], [1.0, 1.5]])
    np.testing.assert_array_equal(gate(rows, 2, 2).numpy(), [[2.0, 2.5], [3.0, 3.5]])


def test_gate_of_plain_tensor():
    x = tf.reshape(tf.range(12.0), (6, 2))
    np.testing.assert_array_equal(gate(x, 3, 2).numpy(), x.numpy()[3:6])


# ============================================================================
# ELEMENT TYPES
# ============================================================================


def test_element_dtype_of_tracked_array():
    values = [tf.constant(1.0, dtype=tf.float64), tf.constant(2.0, dtype=tf.float64)]
    assert element_dtype(values) == tf.float64
    assert element_dtype(tf.zeros(2, dtype=tf.float16)) == tf.float16
    assert element_dtype(np.zeros(2, dtype=np.float32)) == tf.float32


def test_convert_eltype_of_plain_values():
    converted = convert_eltype(tf.float64, tf.constant([1.0, 2.0]))
    assert converted.dtype == tf.float64

    same = tf.constant([1.0])
    assert convert_eltype(tf.float32, same) is same


def test_convert_eltype_of_tracked_array_warns_once(monkeypatch, caplog):
    monkeypatch.setattr(tracked, "_warned_convert_eltype", False)
    values = _scalars([1.0, 2.0])

    with caplog.at_level(logging.WARNING, logger="normlayers.tracked"):
        first = convert_eltype(tf.float64, values)
        second = convert_eltype(tf.float16, values)

    assert first is values
    assert second is values
    warnings = [r for r in caplog.records if r.name == "normlayers.tracked"]
    assert len(warnings) == 1
    assert "tracked scalars" in warnings[0].getMessage()
