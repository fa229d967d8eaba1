import numpy as np
import tensorflow as tf

from normlayers import BatchNorm, Chain, Dense, setup
from normlayers.train import create_dataloaders, evaluate_model, train_model, train_step


def _linear_data(n=256, dims=4):
    rng = np.random.default_rng(7)
    x = rng.normal(size=(n, dims)).astype("float32")
    y = (x @ np.arange(1, dims + 1, dtype="float32")[:, None] / dims).astype("float32")
    return x, y


def test_dataloaders_drop_incomplete_batches():
    x, y = _linear_data(n=10)
    batches = list(create_dataloaders(x, y, batch_size=4, shuffle=False))

    assert len(batches) == 2
    assert all(xb.shape[0] == 4 for xb, _ in batches)
    np.testing.assert_array_equal(batches[0][0].numpy(), x[:4])


def test_train_step_returns_new_records(rng):
    model = Chain(Dense(4, 8, use_bias=False), BatchNorm(8, "relu"), Dense(8, 1))
    ps, st = setup(rng, model)
    x, y = _linear_data(n=16)
    loss_fn = tf.keras.losses.MeanSquaredError()

    new_ps, new_st, loss = train_step(model, ps, st, x, y, loss_fn, 0.01)

    assert np.isfinite(float(loss))
    assert not np.allclose(new_ps["layer_1"]["weight"].numpy(), ps["layer_1"]["weight"].numpy())
    assert not np.allclose(
        new_st["layer_2"]["running_mean"].numpy(), st["layer_2"]["running_mean"].numpy()
    )
    np.testing.assert_array_equal(st["layer_2"]["running_mean"].numpy(), np.zeros(8))


def test_training_reduces_loss(rng):
    model = Chain(Dense(4, 16, use_bias=False), BatchNorm(16, "relu"), Dense(16, 1))
    ps, st = setup(rng, model)
    x, y = _linear_data()
    train_ds = create_dataloaders(x, y, batch_size=32, seed=0)
    val_ds = create_dataloaders(x, y, batch_size=64, shuffle=False)
    loss_fn = tf.keras.losses.MeanSquaredError()

    initial = evaluate_model(model, ps, st, val_ds, loss_fn)
    ps, st, history = train_model(
        model, ps, st, train_ds, epochs=5, learning_rate=0.05, val_ds=val_ds
    )

    assert len(history["train_loss"]) == 5
    assert len(history["val_loss"]) == 5
    assert history["train_loss"][-1] < history["train_loss"][0]
    assert history["val_loss"][-1] < initial
    assert st["layer_2"]["training"] is True


def test_evaluate_model_uses_test_mode(rng):
    model = Chain(Dense(4, 4), BatchNorm(4))
    ps, st = setup(rng, model)
    x, _ = _linear_data(n=8)
    # One sample per batch is only accepted in test mode
    dataset = create_dataloaders(x, np.zeros((8, 4), "float32"), batch_size=1, shuffle=False)

    loss = evaluate_model(model, ps, st, dataset, tf.keras.losses.MeanSquaredError())

    assert np.isfinite(loss)
