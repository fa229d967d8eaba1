"""
Experiment orchestrator.

Runs the verification cases and training experiments defined in config.py,
caches their results as JSON and generates the plots.
"""

import os
import time

import numpy as np
import tensorflow as tf

from experiments.config import (
    EXPERIMENTS,
    SEED_STRING,
    SHARED_CONFIG,
    SMALL_BATCH_SIZE,
    VERIFICATIONS,
)
from normlayers import (
    BatchNorm,
    Chain,
    Dense,
    GroupNorm,
    InstanceNorm,
    LayerNorm,
    WeightNorm,
    apply,
    setup,
    testmode,
)
from normlayers.train import create_dataloaders, evaluate_model, train_model
from normlayers.utilities import (
    load_results,
    plot_small_batch_comparison,
    plot_training_curves,
    plot_verification,
    save_results,
)
from normlayers.utilities import setup as setup_environment
from normlayers.verify import (
    verify_batchnorm,
    verify_groupnorm,
    verify_instancenorm,
    verify_layernorm,
    verify_weightnorm,
)

METRICS_DIR = "results/metrics"
PLOTS_DIR = "plots"

VERIFIERS = {
    "batchnorm": verify_batchnorm,
    "groupnorm": verify_groupnorm,
    "instancenorm": verify_instancenorm,
    "layernorm": verify_layernorm,
}

LAYERS = {
    "batchnorm": BatchNorm,
    "groupnorm": GroupNorm,
    "instancenorm": InstanceNorm,
    "layernorm": LayerNorm,
}


def build_verification_layer(case):
    kwargs = dict(case["kwargs"])
    if case["layer"] == "weightnorm":
        dense = Dense(kwargs.pop("in_dims"), kwargs.pop("out_dims"))
        return WeightNorm(dense, ("weight",), **kwargs)
    return LAYERS[case["layer"]](**kwargs)


def create_model(norm_type, input_dims, hidden_dims, groups, output_dims=1):
    """
    Two-layer MLP with the requested normalization after the hidden layer.

    Args:
        norm_type: One of None, 'batchnorm', 'layernorm', 'groupnorm',
            'weightnorm'
        input_dims, hidden_dims, output_dims: Layer widths
        groups: Number of groups for GroupNorm

    Returns:
        Chain
    """
    if norm_type is None:
        return Chain(
            Dense(input_dims, hidden_dims, "relu"), Dense(hidden_dims, output_dims)
        )

    if norm_type == "weightnorm":
        return Chain(
            WeightNorm(
                Dense(input_dims, hidden_dims, "relu"), ("weight",), dims=((-1,),)
            ),
            WeightNorm(Dense(hidden_dims, output_dims), ("weight",), dims=((-1,),)),
        )

    if norm_type == "batchnorm":
        # The normalization's bias replaces the dense bias.
        norm = BatchNorm(hidden_dims, "relu")
        hidden = Dense(input_dims, hidden_dims, use_bias=False)
    elif norm_type == "layernorm":
        norm = LayerNorm((hidden_dims,), "relu", dims=-1)
        hidden = Dense(input_dims, hidden_dims)
    elif norm_type == "groupnorm":
        norm = GroupNorm(hidden_dims, groups, "relu")
        hidden = Dense(input_dims, hidden_dims)
    else:
        raise ValueError(f"Unknown normalization type: {norm_type}")

    return Chain(hidden, norm, Dense(hidden_dims, output_dims))


def make_regression_data(seed, num_samples, input_dims):
    """Synthetic regression targets y = sin(x @ w) + 0.1 * noise."""
    rng = np.random.default_rng(seed)
    w = rng.normal(size=(input_dims, 1)) / np.sqrt(input_dims)
    x = rng.normal(size=(num_samples, input_dims)).astype("float32")
    y = (np.sin(x @ w) + 0.1 * rng.normal(size=(num_samples, 1))).astype("float32")
    return x, y


def run_verification(rng):
    """
    Verify every layer in VERIFICATIONS against its Keras reference.

    Returns:
        Dict mapping case name -> verification results
    """
    print("\n" + "-" * 70)
    print("VERIFYING IMPLEMENTATIONS")
    print("-" * 70)

    tolerance = SHARED_CONFIG["tolerance"]
    verification = {}

    for case in VERIFICATIONS:
        print(f"\n  Verifying {case['name']} with shape {case['input_shape']}...")
        layer = build_verification_layer(case)
        ps, st = setup(rng, layer)
        test_input = rng.normal(case["input_shape"])

        if case["layer"] == "weightnorm":
            results = verify_weightnorm(layer, ps)
            error = results["max_norm_error"]
            print(f"    Norm property error: {results['norm_property_error']:.2e}")
            print(
                f"    Direction property error: {results['direction_property_error']:.2e}"
            )
        else:
            if not case["training"]:
                # One training pass so the running statistics are non-trivial.
                _, st = apply(layer, rng.normal(case["input_shape"]) * 2.0 + 1.0, ps, st)
                st = testmode(st)
            results = VERIFIERS[case["layer"]](layer, ps, st, test_input)
            error = results["max_output_diff"]
            print(f"    Max output diff: {results['max_output_diff']:.2e}")
            print(f"    Max gradient diff: {results['max_grad_diff']:.2e}")

        if error < tolerance:
            print(f"    ✓ Verification PASSED (error < {tolerance:.0e})")
        else:
            print(f"    ⚠ Verification issue (error = {error:.2e})")

        results["passed"] = bool(error < tolerance)
        verification[case["name"]] = results
        save_results(results, f"{METRICS_DIR}/verification_{case['name']}.json")

        if "output_diff" in results:
            plot_verification(
                results, f"{PLOTS_DIR}/verification_{case['name']}.png", case["name"]
            )

    return verification


def run_training(rng):
    """
    Run every experiment in EXPERIMENTS, loading cached results when present.

    Returns:
        Dict mapping experiment id ("<name>_bs<batch size>") -> results
    """
    seed = int(rng.uniform_full_int([], dtype=tf.int64).numpy() % (2**31))
    x_train, y_train = make_regression_data(
        seed, SHARED_CONFIG["num_train"], SHARED_CONFIG["input_dims"]
    )
    x_val, y_val = make_regression_data(
        seed + 1, SHARED_CONFIG["num_val"], SHARED_CONFIG["input_dims"]
    )

    all_results = {}
    total_experiments = sum(len(exp["batch_sizes"]) for exp in EXPERIMENTS)
    current_exp = 0

    for exp_config in EXPERIMENTS:
        for batch_size in exp_config["batch_sizes"]:
            current_exp += 1
            exp_id = f"{exp_config['name']}_bs{batch_size}"
            results_file = f"{METRICS_DIR}/{exp_id}.json"

            print("\n" + "=" * 70)
            print(f"EXPERIMENT {current_exp}/{total_experiments}: {exp_id}")
            print(f"Description: {exp_config['description']}")
            print("=" * 70)

            if os.path.exists(results_file):
                print(f"\n✓ Loading cached results from {results_file}")
                all_results[exp_id] = load_results(results_file)
                continue

            train_ds = create_dataloaders(x_train, y_train, batch_size, seed=seed)
            val_ds = create_dataloaders(x_val, y_val, batch_size, shuffle=False)

            model = create_model(
                exp_config["norm_type"],
                SHARED_CONFIG["input_dims"],
                SHARED_CONFIG["hidden_dims"],
                SHARED_CONFIG["groups"],
            )
            print(f"\nModel: {model}")
            print(f"Parameters: {model.parameter_count()}, states: {model.state_count()}")
            ps, st = setup(rng, model)

            start_time = time.time()
            ps, st, history = train_model(
                model,
                ps,
                st,
                train_ds,
                epochs=SHARED_CONFIG["epochs"],
                learning_rate=SHARED_CONFIG["learning_rate"],
                val_ds=val_ds,
            )
            training_time = time.time() - start_time
            print(f"\nTraining completed in {training_time:.2f} seconds")

            final_val_loss = evaluate_model(
                model, ps, st, val_ds, tf.keras.losses.MeanSquaredError()
            )

            results = {
                "config": exp_config,
                "batch_size": batch_size,
                "history": history,
                "final_val_loss": final_val_loss,
                "training_time": training_time,
            }
            save_results(results, results_file)
            all_results[exp_id] = results

            print(f"\n✓ Experiment {exp_id} complete!")

    return all_results


def run_all(verify_only=False):
    """
    Main experiment orchestrator.

    WORKFLOW:
        1. Setup environment (seeds, GPU config)
        2. Verify every layer against Keras
        3. Train the MLP with each normalization (skipped when verify_only)
        4. Generate plots and print a summary
    """
    print("\n" + "=" * 70)
    print(" " * 20 + "NORMALIZATION LAYERS")
    print(" " * 20 + "Experiment Runner")
    print("=" * 70 + "\n")

    rng = setup_environment(seed_string=SEED_STRING)
    os.makedirs(METRICS_DIR, exist_ok=True)
    os.makedirs(PLOTS_DIR, exist_ok=True)

    verification = run_verification(rng)
    failed = [name for name, results in verification.items() if not results["passed"]]

    if verify_only:
        print("\n" + "=" * 70)
        print(f"VERIFICATION: {len(verification) - len(failed)}/{len(verification)} passed")
        print("=" * 70)
        return verification

    all_results = run_training(rng)

    # ========== GENERATE PLOTS ==========
    print("\n" + "=" * 70)
    print("GENERATING PLOTS")
    print("=" * 70)

    normal_batch_size = max(max(exp["batch_sizes"]) for exp in EXPERIMENTS)
    plot_training_curves(
        all_results, f"{PLOTS_DIR}/convergence_all.png", normal_batch_size
    )

    small_batch = {
        exp_id.split("_")[0]: results
        for exp_id, results in all_results.items()
        if results["batch_size"] == SMALL_BATCH_SIZE
    }
    if small_batch:
        plot_small_batch_comparison(
            small_batch, f"{PLOTS_DIR}/small_batch_comparison.png", SMALL_BATCH_SIZE
        )

    # ========== SUMMARY ==========
    print("\n" + "=" * 70)
    print("EXPERIMENT SUMMARY")
    print("=" * 70)
    print(f"\n{'Experiment':<25} {'Batch Size':<12} {'Final Val Loss':<15} {'Training Time'}")
    print("-" * 70)

    for exp_id, results in sorted(all_results.items()):
        print(
            f"{exp_id:<25} {results['batch_size']:<12} {results['final_val_loss']:>14.4f}  {results['training_time']:>7.1f}s"
        )

    print(f"\nVerification: {len(verification) - len(failed)}/{len(verification)} passed")
    if failed:
        print(f"⚠ Failed: {', '.join(failed)}")
    print(f"\n✓ Results saved in: {METRICS_DIR}/")
    print(f"✓ Plots saved in: {PLOTS_DIR}/")

    return all_results


if __name__ == "__main__":
    run_all()
