r"""
Gauge group descriptors.

A :class:`GaugeGroup` is an immutable, hashable description of a matrix Lie
group in its defining representation. It carries the data the engine needs
(matrix size, Lie algebra dimension, abelian flag, generators and structure
constants) together with the group-specific array operations: identity,
Haar sampling, symmetric proposals near the identity, projection back onto
the group manifold, projection onto the Lie algebra and the exponential map.

Instances are hashable so they can be passed as static arguments to
:func:`jax.jit`.

Example:
    >>> su3 = SU(3)
    >>> su3.lie_dimension
    8
    >>> round(su3.structure_constant(0, 1, 2), 6)
    1.0
"""

import re
from dataclasses import dataclass
from functools import cached_property

import jax
import jax.numpy as jnp
import numpy as np

from . import lie


class GaugeGroup:
    """Base class of gauge group descriptors.

    Subclasses define ``name``, ``matrix_dim``, ``lie_dimension``,
    ``is_abelian``, ``generators`` and the array operations below.
    """

    name: str
    matrix_dim: int
    lie_dimension: int
    is_abelian: bool

    @property
    def generators(self) -> jax.Array:
        """Anti-Hermitian basis of the Lie algebra, shape ``(dim, N, N)``."""
        raise NotImplementedError()

    @cached_property
    def structure_constants(self) -> np.ndarray:
        r"""Totally antisymmetric $f_{abc}$ with $[X_a, X_b] = -2 f_{abc} X_c$.

        For the normalisation $\text{tr}(X_a X_b^\dagger) = 2\delta_{ab}$ this
        is the standard $[T_a, T_b] = i f_{abc} T_c$ with $T_a = \lambda_a/2$.
        """
        if self.is_abelian:
            raise TypeError(f"{self.name} is abelian; structure constants vanish")
        gens = np.asarray(self.generators)
        comm = np.einsum("aij,bjk->abik", gens, gens)
        comm = comm - comm.transpose(1, 0, 2, 3)
        f = -np.einsum("abij,cij->abc", comm, gens.conj()).real / 4
        return f

    def structure_constant(self, a: int, b: int, c: int) -> float:
        """Structure constant ``f(a, b, c)`` (zero-based indices).

        Raises:
            TypeError: For abelian groups, which must not be queried.
        """
        return float(self.structure_constants[a, b, c])

    def identity(self, batch_shape=()) -> jax.Array:
        n = self.matrix_dim
        return jnp.broadcast_to(
            jnp.eye(n, dtype=complex), tuple(batch_shape) + (n, n)
        )

    def random(self, rng, batch_shape=()) -> jax.Array:
        """Haar distributed group elements."""
        raise NotImplementedError()

    def random_algebra(self, rng, batch_shape=(), scale=1.0) -> jax.Array:
        """Gaussian Lie algebra elements, coefficients with standard deviation ``scale``."""
        gens = self.generators
        coeffs = scale * jax.random.normal(rng, tuple(batch_shape) + (len(gens),))
        return jnp.einsum("...a,aij->...ij", coeffs, gens)

    def random_near_identity(self, rng, batch_shape=(), epsilon=0.1) -> jax.Array:
        """Symmetric proposals $e^{\\epsilon X}$; $R$ and $R^{-1}$ are equally likely."""
        return self.expm(self.random_algebra(rng, batch_shape, epsilon))

    def project(self, m) -> tuple[jax.Array, jax.Array]:
        """Nearest group elements and a per-matrix success flag."""
        raise NotImplementedError()

    def project_algebra(self, m) -> jax.Array:
        """Projection of arbitrary matrices onto the Lie algebra."""
        raise NotImplementedError()

    def expm(self, x) -> jax.Array:
        """Exponential map from the Lie algebra onto the group."""
        raise NotImplementedError()

    def __repr__(self):
        return self.name


@dataclass(frozen=True, repr=False)
class U1(GaugeGroup):
    """The abelian group U(1) of phases, stored as 1x1 matrices."""

    name = "U(1)"
    matrix_dim = 1
    lie_dimension = 1
    is_abelian = True

    @property
    def generators(self):
        return lie.U1_GEN

    def random(self, rng, batch_shape=()):
        theta = jax.random.uniform(
            rng, tuple(batch_shape) + (1, 1), minval=-jnp.pi, maxval=jnp.pi
        )
        return jnp.exp(1j * theta)

    def project(self, m):
        return lie.project_unitary_phase(m)

    def project_algebra(self, m):
        return lie.skew_hermitian(m)

    def expm(self, x):
        return jnp.exp(x)


@dataclass(frozen=True, repr=False)
class SU(GaugeGroup):
    """Special unitary group SU(n), n >= 2, in the fundamental representation."""

    n: int

    is_abelian = False

    def __post_init__(self):
        if self.n < 2:
            raise ValueError(f"SU(n) needs n >= 2, got {self.n}")

    @property
    def name(self):
        return f"SU({self.n})"

    @property
    def matrix_dim(self):
        return self.n

    @property
    def lie_dimension(self):
        return self.n**2 - 1

    @cached_property
    def generators(self):
        return lie.su_generators(self.n)

    def random(self, rng, batch_shape=()):
        return lie.sample_haar(rng, self.n, batch_shape)

    def project(self, m):
        return lie.project_special_unitary(m)

    def project_algebra(self, m):
        return lie.skew_traceless(m)

    def expm(self, x):
        return lie.expm_skew(x)


SU2 = SU(2)
SU3 = SU(3)


def group_from_name(name: str) -> GaugeGroup:
    """Resolve ``"U(1)"`` or ``"SU(n)"`` to a group descriptor."""
    if name == U1.name:
        return U1()
    match = re.fullmatch(r"SU\((\d+)\)", name)
    if match is None:
        raise ValueError(f"Unknown gauge group {name!r}")
    return SU(int(match.group(1)))
