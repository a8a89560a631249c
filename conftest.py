"""Pytest configuration for doctest support."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from flax import nnx

# Configure JAX for reproducible tests
jax.config.update("jax_enable_x64", True)


@pytest.fixture(autouse=True)
def add_imports(doctest_namespace):
    """Automatically add common imports and objects to all doctests."""
    import gaugex
    from gaugex.actions import SYMANZIK
    from gaugex.flow import FlowParams, gradient_flow
    from gaugex.groups import SU, U1
    from gaugex.lattice import Lattice, LatticeGaugeField

    rng = nnx.Rngs(42)

    doctest_namespace.update(
        {
            # Core imports
            "gaugex": gaugex,
            "jax": jax,
            "jnp": jnp,
            "np": np,
            "nnx": nnx,
            # Frequently used names
            "Lattice": Lattice,
            "LatticeGaugeField": LatticeGaugeField,
            "SU": SU,
            "U1": U1,
            "SYMANZIK": SYMANZIK,
            "FlowParams": FlowParams,
            "gradient_flow": gradient_flow,
            # Common objects
            "rng": rng,
            "rngs": rng,  # alias for compatibility
        }
    )


@pytest.fixture
def rng_key():
    return jax.random.PRNGKey(0)
