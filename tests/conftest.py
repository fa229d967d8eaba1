import pytest
import tensorflow as tf


@pytest.fixture
def rng():
    return tf.random.Generator.from_seed(394)
