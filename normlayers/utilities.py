"""
Experiment utilities: seed setting, device configuration, I/O and plotting.
"""

import json
import os
import random

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import seaborn as sns  # noqa: E402
import tensorflow as tf  # noqa: E402

sns.set_style("whitegrid")
plt.rcParams["figure.figsize"] = (12, 8)
plt.rcParams["font.size"] = 10

COLORS = {
    "baseline": "#2E86AB",
    "batchnorm": "#A23B72",
    "layernorm": "#F18F01",
    "groupnorm": "#C73E1D",
    "instancenorm": "#3B1F2B",
    "weightnorm": "#06A77D",
}


def derive_seed_from_string(s):
    """
    Derive a deterministic seed from a string (sum of its code points).

    Args:
        s: String to convert to seed

    Returns:
        Integer seed value
    """
    return sum(ord(c) for c in s)


def setup(seed_string="normlayers"):
    """
    Seed Python, numpy and TensorFlow, configure GPU memory growth and
    return a seeded ``tf.random.Generator`` for parameter initialization.

    Args:
        seed_string: String to derive the seed from

    Returns:
        tf.random.Generator
    """
    seed = derive_seed_from_string(seed_string)

    tf.random.set_seed(seed)
    np.random.seed(seed)
    random.seed(seed)
    os.environ["TF_DETERMINISTIC_OPS"] = "1"

    gpus = tf.config.list_physical_devices("GPU")
    if gpus:
        try:
            for gpu in gpus:
                tf.config.experimental.set_memory_growth(gpu, True)
            print(f"✓ Configured {len(gpus)} GPU(s) with memory growth enabled")
        except RuntimeError as e:
            # Memory growth can only be set before the GPUs are initialized.
            print(f"GPU configuration error: {e}")

    print(f"✓ Environment setup complete (seed={seed})")
    return tf.random.Generator.from_seed(seed)


def _to_serializable(obj):
    if isinstance(obj, (np.ndarray, tf.Tensor)):
        return obj.tolist() if isinstance(obj, np.ndarray) else obj.numpy().tolist()
    elif isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, dict):
        return {key: _to_serializable(value) for key, value in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_to_serializable(item) for item in obj]
    else:
        return obj


def save_results(results, filepath):
    """
    Save results to a JSON file, converting numpy/TensorFlow values to
    native Python types.

    Args:
        results: Dictionary of results (can contain numpy arrays, TF tensors)
        filepath: Path to save JSON file
    """
    directory = os.path.dirname(filepath)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(filepath, "w") as f:
        json.dump(_to_serializable(results), f, indent=2)

    print(f"✓ Results saved to {filepath}")


def load_results(filepath):
    with open(filepath, "r") as f:
        return json.load(f)


def plot_training_curves(all_results, save_path, batch_size):
    """
    Plot training and validation loss of every experiment run with
    ``batch_size``.

    Args:
        all_results: Dict mapping experiment_id ("<norm>_bs<size>") -> results
        save_path: Where to save the plot
        batch_size: Batch size whose runs are compared
    """
    fig, axes = plt.subplots(1, 2, figsize=(15, 6))
    metrics = [
        ("train_loss", "Training Loss", axes[0]),
        ("val_loss", "Validation Loss", axes[1]),
    ]

    for exp_id, results in all_results.items():
        if results["batch_size"] != batch_size:
            continue

        norm_type = exp_id.split("_")[0]
        history = results["history"]
        epochs = range(1, len(history["train_loss"]) + 1)
        color = COLORS.get(norm_type, "#000000")

        for metric_key, title, ax in metrics:
            if history.get(metric_key):
                ax.plot(
                    epochs,
                    history[metric_key],
                    color=color,
                    linewidth=2,
                    label=norm_type,
                    alpha=0.8,
                )
                ax.set_xlabel("Epoch", fontsize=12)
                ax.set_ylabel(title, fontsize=12)
                ax.set_title(title, fontsize=14, fontweight="bold")
                ax.grid(True, alpha=0.3)
                ax.legend(loc="best", fontsize=10)

    plt.tight_layout()
    plt.savefig(save_path, dpi=150, bbox_inches="tight")
    print(f"✓ Training curves saved to {save_path}")
    plt.close(fig)


def _plot_diff_histogram(ax, diff, color, title):
    diff = np.asarray(diff, dtype=np.float64).ravel()
    mean_diff = np.mean(diff)
    max_diff = np.max(diff)

    ax.hist(diff, bins=50, color=color, alpha=0.7, edgecolor="black")
    ax.axvline(
        mean_diff,
        color="red",
        linestyle="--",
        linewidth=2,
        label=f"Mean: {mean_diff:.2e}",
    )
    ax.set_xlabel("Absolute Difference", fontsize=12)
    ax.set_ylabel("Frequency", fontsize=12)
    ax.set_title(f"{title}\nMax Diff: {max_diff:.2e}", fontsize=14, fontweight="bold")
    ax.legend()
    ax.grid(True, alpha=0.3)


def plot_verification(verification_results, save_path, norm_type):
    """
    Histogram of output and gradient differences between a custom layer and
    its Keras reference.

    Args:
        verification_results: Dict with 'output_diff' and 'grad_diff' keys
        save_path: Where to save plot
        norm_type: Layer name for the titles
    """
    fig, axes = plt.subplots(1, 2, figsize=(14, 6))

    _plot_diff_histogram(
        axes[0],
        verification_results["output_diff"],
        "#2E86AB",
        f"{norm_type.upper()} Output: Custom vs Keras",
    )

    grad_diff = verification_results.get("grad_diff")
    if grad_diff is not None and np.size(grad_diff) > 0:
        _plot_diff_histogram(
            axes[1], grad_diff, "#A23B72", f"{norm_type.upper()} Gradients: Custom vs Keras"
        )
    else:
        axes[1].set_axis_off()

    plt.tight_layout()
    plt.savefig(save_path, dpi=150, bbox_inches="tight")
    print(f"✓ Verification plot saved to {save_path}")
    plt.close(fig)


def plot_small_batch_comparison(small_batch_results, save_path, batch_size):
    """
    Validation loss of BatchNorm against the batch-independent normalizations
    at a small batch size.

    Args:
        small_batch_results: Dict mapping norm type -> results dict
        save_path: Where to save plot
        batch_size: The small batch size, for the title
    """
    fig, ax = plt.subplots(figsize=(8, 6))

    for norm_type, results in small_batch_results.items():
        val_loss = results["history"]["val_loss"]
        ax.plot(
            range(1, len(val_loss) + 1),
            val_loss,
            color=COLORS.get(norm_type, "#000000"),
            linewidth=2.5,
            label=norm_type,
            marker="o",
            markersize=4,
        )

    ax.set_xlabel("Epoch", fontsize=12)
    ax.set_ylabel("Validation Loss", fontsize=12)
    ax.set_title(
        f"Small Batch (size={batch_size}): Validation Loss",
        fontsize=14,
        fontweight="bold",
    )
    ax.legend(fontsize=11)
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    plt.savefig(save_path, dpi=150, bbox_inches="tight")
    print(f"✓ Small batch comparison saved to {save_path}")
    plt.close(fig)
