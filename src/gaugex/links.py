"""
Single link variables.

A :class:`LinkVariable` wraps one group-valued matrix living on a directed
lattice edge. It is an immutable pytree: every operation returns a new
value. Whole fields store their links in one dense array instead (see
:mod:`gaugex.lattice`); this type is the element-level view used for
single-link access and for tests.
"""

import logging

import flax
import jax
import jax.numpy as jnp

from . import lie
from .errors import NumericalDegeneracy
from .groups import GaugeGroup
from .utils import RngSpec, as_key

logger = logging.getLogger(__name__)


@flax.struct.dataclass
class LinkVariable:
    matrix: jax.Array
    group: GaugeGroup = flax.struct.field(pytree_node=False)

    @classmethod
    def identity(cls, group: GaugeGroup):
        return cls(group.identity(), group)

    @classmethod
    def random(cls, group: GaugeGroup, rng: RngSpec):
        """Haar distributed random element of ``group``."""
        return cls(group.random(as_key(rng)), group)

    @classmethod
    def from_matrix(cls, matrix, group: GaugeGroup):
        matrix = jnp.asarray(matrix, dtype=complex)
        n = group.matrix_dim
        if matrix.shape != (n, n):
            raise ValueError(
                f"{group} link needs a ({n}, {n}) matrix, got shape {matrix.shape}"
            )
        return cls(matrix, group)

    def dagger(self):
        """Hermitian conjugate, the group inverse."""
        return self.replace(matrix=lie.adjoint(self.matrix))

    def multiply(self, other: "LinkVariable"):
        """Group product ``self * other`` (``other`` acts first on vectors)."""
        if other.group != self.group:
            raise ValueError(f"cannot multiply {self.group} and {other.group} links")
        return self.replace(matrix=self.matrix @ other.matrix)

    def __matmul__(self, other):
        return self.multiply(other)

    def trace(self):
        return jnp.trace(self.matrix)

    def real_trace(self):
        return lie.re_trace(self.matrix)

    def determinant(self):
        return jnp.linalg.det(self.matrix)

    def unitarity_violation(self):
        return lie.unitarity_violation(self.matrix)

    def project_to_group(self):
        """Nearest group element; idempotent on valid elements.

        Raises:
            NumericalDegeneracy: If the matrix is singular or not finite.
        """
        u, ok = self.group.project(self.matrix)
        if not bool(ok):
            logger.error("projection onto %s failed for a single link", self.group)
            raise NumericalDegeneracy(
                f"cannot project matrix onto {self.group}: singular or not finite",
                count=1,
            )
        return self.replace(matrix=u)

    def allclose(self, other: "LinkVariable", atol=1e-10):
        return bool(jnp.allclose(self.matrix, other.matrix, atol=atol))
