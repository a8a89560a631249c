"""Shared tolerances and helpers for the test suite."""

import jax
import numpy as np
from hypothesis import strategies as st

from gaugex.groups import SU, U1
from gaugex.lattice import Lattice, LatticeGaugeField
from gaugex.lie import adjoint, unitarity_violation

ATOL = 1e-10
RTOL = 1e-10

GROUPS = [U1(), SU(2), SU(3)]
GROUP_IDS = [g.name for g in GROUPS]

random_seeds = st.integers(min_value=0, max_value=2**31 - 1)


def random_field(shape, group, seed=0, beta=2.0, periodic=True):
    lattice = Lattice(shape, periodic)
    return LatticeGaugeField.random(lattice, beta, jax.random.PRNGKey(seed), group)


def near_identity_field(shape, group, seed=0, beta=6.0, epsilon=0.3, periodic=True):
    """Smooth configuration with links close to the identity."""
    lattice = Lattice(shape, periodic)
    field = LatticeGaugeField.identity(lattice, beta, group)
    links = group.random_near_identity(
        jax.random.PRNGKey(seed), field.links.shape[:-2], epsilon
    )
    return field.replace(links=LatticeGaugeField._fill_placeholders(lattice, group, links))


def assert_in_group(u, group, atol=1e-8):
    u = np.asarray(u)
    assert np.all(np.asarray(unitarity_violation(u)) < atol)
    det = np.linalg.det(u)
    if group.is_abelian:
        np.testing.assert_allclose(np.abs(det), 1.0, atol=atol)
    else:
        np.testing.assert_allclose(det, 1.0, atol=atol)


def assert_anti_hermitian(x, atol=1e-10):
    x = np.asarray(x)
    np.testing.assert_allclose(x, -np.asarray(adjoint(x)), atol=atol)
