"""
Training and evaluation with explicit parameters and state.

The loop threads the parameter and state records through every step:

    For each epoch:
        For each batch:
            1. Forward pass under tf.GradientTape (returns output and new state)
            2. Compute loss
            3. Gradients of the loss w.r.t. the parameter record
            4. SGD update producing a new parameter record
            5. Replace the state record with the one returned by the layer

Running statistics therefore accumulate in batch order, and nothing is
mutated in place.
"""

import tensorflow as tf
from tqdm import tqdm

from normlayers.core import apply, testmode, trainmode


def create_dataloaders(x, y, batch_size, shuffle=True, seed=None):
    """
    Create a tf.data.Dataset pipeline for batching and prefetching.

    The last incomplete batch is dropped: BatchNorm rejects a batch of one
    sample in training mode, and a fixed batch size keeps the static shape.

    Args:
        x: Inputs array
        y: Targets array
        batch_size: Batch size
        shuffle: Whether to shuffle the dataset
        seed: Shuffle seed

    Returns:
        tf.data.Dataset
    """
    dataset = tf.data.Dataset.from_tensor_slices((x, y))

    if shuffle:
        dataset = dataset.shuffle(buffer_size=len(x), seed=seed)

    dataset = dataset.batch(batch_size, drop_remainder=True)
    return dataset.prefetch(tf.data.AUTOTUNE)


def train_step(model, ps, st, x, y, loss_fn, learning_rate):
    """
    One gradient-descent step.

    Returns:
        Tuple (new_ps, new_st, loss)
    """
    with tf.GradientTape() as tape:
        tape.watch(tf.nest.flatten(ps))
        y_pred, new_st = apply(model, x, ps, st)
        loss = loss_fn(y, y_pred)

    gradients = tape.gradient(loss, ps)
    new_ps = tf.nest.map_structure(
        lambda p, g: p if g is None else p - learning_rate * g, ps, gradients
    )
    return new_ps, new_st, loss


def train_model(
    model, ps, st, train_ds, epochs, learning_rate, loss_fn=None, val_ds=None
):
    """
    Train ``model`` starting from ``(ps, st)``.

    Args:
        model: Explicit layer
        ps, st: Initial parameter and state records
        train_ds: Training dataset yielding (x, y) batches
        epochs: Number of training epochs
        learning_rate: SGD step size
        loss_fn: Callable (y_true, y_pred) -> scalar; mean squared error
            by default
        val_ds: Optional validation dataset, evaluated in test mode after
            every epoch

    Returns:
        Tuple (ps, st, history) where history holds per-epoch
        'train_loss' and 'val_loss' lists
    """
    if loss_fn is None:
        loss_fn = tf.keras.losses.MeanSquaredError()

    train_loss_metric = tf.keras.metrics.Mean(name="train_loss")
    history = {"train_loss": [], "val_loss": []}
    st = trainmode(st)

    for epoch in range(epochs):
        train_loss_metric.reset_state()

        pbar = tqdm(train_ds, desc=f"Epoch {epoch + 1}/{epochs}", leave=False)
        for x_batch, y_batch in pbar:
            ps, st, loss = train_step(
                model, ps, st, x_batch, y_batch, loss_fn, learning_rate
            )
            train_loss_metric.update_state(loss)
            pbar.set_postfix({"loss": f"{float(train_loss_metric.result()):.4f}"})

        epoch_loss = float(train_loss_metric.result())
        history["train_loss"].append(epoch_loss)

        if val_ds is not None:
            val_loss = evaluate_model(model, ps, st, val_ds, loss_fn)
            history["val_loss"].append(val_loss)
            print(
                f"  Epoch {epoch + 1}/{epochs} | Train Loss: {epoch_loss:.4f} | Val Loss: {val_loss:.4f}"
            )
        else:
            print(f"  Epoch {epoch + 1}/{epochs} | Train Loss: {epoch_loss:.4f}")

    return ps, st, history


def evaluate_model(model, ps, st, dataset, loss_fn):
    """
    Average loss over ``dataset`` in test mode.

    BatchNorm layers use their running statistics; the state returned by the
    layers is discarded.
    """
    loss_metric = tf.keras.metrics.Mean()
    st = testmode(st)

    for x_batch, y_batch in dataset:
        y_pred, _ = apply(model, x_batch, ps, st)
        loss_metric.update_state(loss_fn(y_batch, y_pred))

    return float(loss_metric.result())
