import flax.typing as ftp
import jax
import numpy as np
from flax import nnx

RngSpec = ftp.PRNGKey | nnx.Rngs | int


def as_key(rng: RngSpec) -> ftp.PRNGKey:
    """Turn an explicit random stream specification into a ``jax.random`` key.

    Accepts a key, an ``nnx.Rngs`` container (its ``sample`` stream is
    advanced) or an integer seed.
    """
    if isinstance(rng, nnx.Rngs):
        return rng.sample()
    if isinstance(rng, int | np.integer):
        return jax.random.PRNGKey(int(rng))
    return rng


def parse_direction(mu, dim: int) -> int:
    """Validate a lattice direction index, raising ``ValueError`` when out of range."""
    if not isinstance(mu, int | np.integer) or not 0 <= mu < dim:
        raise ValueError(f"direction must be an integer in [0, {dim}), got {mu!r}")
    return int(mu)


def unit_vector(mu: int, dim: int) -> tuple[int, ...]:
    return tuple(1 if i == mu else 0 for i in range(dim))
