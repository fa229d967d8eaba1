"""
Experiment configurations.

This file defines:
- Verification cases: each normalization layer against its Keras reference
- Training experiments: a small MLP on synthetic regression data with each
  normalization scheme, at a normal and a small batch size
"""

# Seed string; see normlayers.utilities.derive_seed_from_string
SEED_STRING = "normlayers"

# Shared configuration across all experiments
SHARED_CONFIG = {
    "epochs": 10,
    "learning_rate": 0.05,
    "num_train": 2048,
    "num_val": 512,
    "input_dims": 16,
    "hidden_dims": 32,
    "groups": 4,
    # Maximum accepted |custom - reference| in verification
    "tolerance": 1e-4,
}

# Layers compared against tf.keras.layers; "training" selects the mode of the
# verification pass. Eval-mode cases first run one training step so the
# running statistics differ from their initial values.
VERIFICATIONS = [
    {
        "name": "batchnorm_train",
        "layer": "batchnorm",
        "kwargs": {"chs": 12},
        "input_shape": (16, 8, 8, 12),
        "training": True,
    },
    {
        "name": "batchnorm_eval",
        "layer": "batchnorm",
        "kwargs": {"chs": 12, "momentum": 0.3},
        "input_shape": (16, 8, 8, 12),
        "training": False,
    },
    {
        "name": "batchnorm_dense_relu",
        "layer": "batchnorm",
        "kwargs": {"chs": 100, "activation": "relu"},
        "input_shape": (32, 100),
        "training": True,
    },
    {
        "name": "groupnorm",
        "layer": "groupnorm",
        "kwargs": {"chs": 12, "groups": 3},
        "input_shape": (4, 8, 8, 12),
        "training": True,
    },
    {
        "name": "instancenorm",
        "layer": "instancenorm",
        "kwargs": {"chs": 6},
        "input_shape": (4, 10, 10, 6),
        "training": True,
    },
    {
        "name": "layernorm",
        "layer": "layernorm",
        "kwargs": {"shape": (8, 8, 12), "dims": (1, 2, 3)},
        "input_shape": (4, 8, 8, 12),
        "training": True,
    },
    {
        "name": "layernorm_last_axis",
        "layer": "layernorm",
        "kwargs": {"shape": (30,), "dims": -1},
        "input_shape": (4, 7, 30),
        "training": True,
    },
    {
        "name": "weightnorm",
        "layer": "weightnorm",
        "kwargs": {"in_dims": 16, "out_dims": 8, "dims": ((-1,),)},
        "input_shape": (4, 16),
        "training": True,
    },
]

# Each experiment is run for all specified batch sizes
EXPERIMENTS = [
    {
        "name": "baseline",
        "norm_type": None,
        "batch_sizes": [64],
        "description": "MLP without any normalization (baseline for comparison)",
    },
    {
        "name": "batchnorm",
        "norm_type": "batchnorm",
        "batch_sizes": [64, 4],
        "description": "Batch Normalization - normalizes across mini-batch",
    },
    {
        "name": "layernorm",
        "norm_type": "layernorm",
        "batch_sizes": [64, 4],
        "description": "Layer Normalization - normalizes across features",
    },
    {
        "name": "groupnorm",
        "norm_type": "groupnorm",
        "batch_sizes": [64, 4],
        "description": "Group Normalization - normalizes across channel groups",
    },
    {
        "name": "weightnorm",
        "norm_type": "weightnorm",
        "batch_sizes": [64, 4],
        "description": "Weight Normalization - reparameterizes weight vectors",
    },
]

SMALL_BATCH_SIZE = 4
