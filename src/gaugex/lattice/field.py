r"""
Gauge field configurations.

:class:`LatticeGaugeField` binds a dense link array to a lattice topology,
a gauge group and the coupling $\beta$. It owns the mutable simulation
state: Monte Carlo updaters replace its link array, while smearing and
flow produce new field objects. Observables come in two flavours, single
site lookups that walk the topology (and raise
:class:`~gaugex.errors.BoundaryExceeded` at open boundaries) and whole
lattice averages computed with the array kernels of
:mod:`gaugex.lattice.gauge`.

Example:
    >>> lat = Lattice((4, 4, 4, 4))
    >>> field = LatticeGaugeField.identity(lat, beta=5.0, group=U1())
    >>> float(field.wilson_action())
    0.0
    >>> float(field.average_plaquette())
    1.0
"""

import logging
from collections.abc import Mapping

import chex
import jax
import jax.numpy as jnp
import numpy as np

from .. import lie
from ..errors import BoundaryExceeded, NumericalDegeneracy, TopologyMismatch
from ..groups import SU3, SU, GaugeGroup, U1
from ..links import LinkVariable
from ..utils import RngSpec, as_key, parse_direction
from . import gauge
from .topology import Lattice

logger = logging.getLogger(__name__)


def _infer_group(n):
    return U1() if n == 1 else SU(n)


class LatticeGaugeField:
    """One link variable per edge of a lattice, plus the coupling ``beta``.

    Args:
        lattice: Topology the links live on.
        group: Gauge group of the links.
        links: Array of shape ``(*lattice.shape, lattice.dim, N, N)``.
        beta: Inverse coupling.
    """

    def __init__(self, lattice: Lattice, group: GaugeGroup, links, beta: float):
        if not isinstance(lattice, Lattice):
            lattice = Lattice(tuple(lattice))
        n = group.matrix_dim
        expected = lattice.shape + (lattice.dim, n, n)
        if tuple(jnp.shape(links)) != expected:
            raise TopologyMismatch(
                f"link array of shape {jnp.shape(links)} does not match "
                f"lattice {lattice.shape} with {group} links (expected {expected})"
            )
        self.lattice = lattice
        self.group = group
        self.beta = float(beta)
        self.links = jnp.asarray(links, dtype=complex)

    # -- construction -- #

    @classmethod
    def identity(cls, lattice, beta, group=SU3):
        """Cold start: every link is the identity."""
        if not isinstance(lattice, Lattice):
            lattice = Lattice(tuple(lattice))
        links = group.identity(lattice.shape + (lattice.dim,))
        return cls(lattice, group, links, beta)

    @classmethod
    def random(cls, lattice, beta, rng: RngSpec, group=SU3):
        """Hot start: Haar random links on every edge."""
        if not isinstance(lattice, Lattice):
            lattice = Lattice(tuple(lattice))
        links = group.random(as_key(rng), lattice.shape + (lattice.dim,))
        links = cls._fill_placeholders(lattice, group, links)
        return cls(lattice, group, links, beta)

    @classmethod
    def from_links(cls, lattice, links, beta, group=None):
        """Build a field from explicit link data.

        Args:
            lattice: Topology.
            links: Either a dense array ``(*shape, D, N, N)``, or a mapping
                from edges ``(site, mu)`` to :class:`LinkVariable` or
                matrices, covering exactly the edges of ``lattice``.
            beta: Inverse coupling.
            group: Gauge group; inferred from the links when omitted.

        Raises:
            TopologyMismatch: If the link data does not cover exactly the
                edge set of the lattice.
        """
        if not isinstance(lattice, Lattice):
            lattice = Lattice(tuple(lattice))

        if not isinstance(links, Mapping):
            links = jnp.asarray(links, dtype=complex)
            if group is None:
                group = _infer_group(links.shape[-1])
            if links.shape[: lattice.dim + 1] != lattice.shape + (lattice.dim,):
                raise TopologyMismatch(
                    f"link array of shape {links.shape} does not cover the "
                    f"edges of lattice {lattice.shape}"
                )
            links = cls._fill_placeholders(lattice, group, links)
            return cls(lattice, group, links, beta)

        edges = set(lattice.edges())
        keys = {(tuple(int(s) for s in site), int(mu)) for site, mu in links}
        missing, extra = edges - keys, keys - edges
        if missing or extra or len(keys) != len(links):
            logger.error(
                "link map has %d missing and %d unexpected edges",
                len(missing),
                len(extra),
            )
            raise TopologyMismatch(
                f"link map does not match the {len(edges)} edges of lattice "
                f"{lattice.shape}: {len(missing)} missing "
                f"(e.g. {sorted(missing)[:3]}), {len(extra)} unexpected "
                f"(e.g. {sorted(extra)[:3]})"
            )

        if group is None:
            first = next(iter(links.values()))
            if isinstance(first, LinkVariable):
                group = first.group
            else:
                group = _infer_group(np.shape(first)[-1])

        n = group.matrix_dim
        data = np.array(group.identity(lattice.shape + (lattice.dim,)))
        for (site, mu), value in links.items():
            if isinstance(value, LinkVariable):
                if value.group != group:
                    raise ValueError(
                        f"link on edge {(site, mu)} is in {value.group}, not {group}"
                    )
                value = value.matrix
            value = np.asarray(value)
            if value.shape != (n, n):
                raise ValueError(
                    f"link on edge {(site, mu)} has shape {value.shape}, "
                    f"expected {(n, n)}"
                )
            data[tuple(site) + (mu,)] = value
        return cls(lattice, group, jnp.asarray(data), beta)

    @staticmethod
    def _fill_placeholders(lattice, group, links):
        if lattice.link_mask.all():
            return links
        mask = jnp.asarray(lattice.link_mask)[..., None, None]
        return jnp.where(mask, links, group.identity(links.shape[:-2]))

    def copy(self):
        return LatticeGaugeField(self.lattice, self.group, self.links, self.beta)

    def replace(self, links=None, beta=None):
        """New field on the same lattice with some attributes replaced."""
        return LatticeGaugeField(
            self.lattice,
            self.group,
            self.links if links is None else links,
            self.beta if beta is None else beta,
        )

    def map(self, fn):
        """Apply ``fn`` to the link array and wrap the result as a new field."""
        return self.replace(links=fn(self.links))

    def __repr__(self):
        return (
            f"LatticeGaugeField(shape={self.lattice.shape}, "
            f"periodic={self.lattice.periodic}, group={self.group}, "
            f"beta={self.beta})"
        )

    # -- properties -- #

    @property
    def dim(self):
        return self.lattice.dim

    @property
    def shape(self):
        return self.lattice.shape

    @property
    def matrix_dim(self):
        return self.group.matrix_dim

    @property
    def abelian(self):
        return self.group.is_abelian and self.group.matrix_dim == 1

    def num_sites(self):
        return self.lattice.num_sites

    def num_links(self):
        return self.lattice.num_edges

    # -- single links -- #

    def _check_edge(self, site, mu):
        site = self.lattice.validate_site(site)
        mu = parse_direction(mu, self.dim)
        if not self.lattice.has_edge(site, mu):
            raise BoundaryExceeded(site, mu, 1)
        return site, mu

    def link(self, site, mu) -> LinkVariable:
        site, mu = self._check_edge(site, mu)
        return LinkVariable(self.links[site + (mu,)], self.group)

    def set_link(self, site, mu, link):
        site, mu = self._check_edge(site, mu)
        if not isinstance(link, LinkVariable):
            link = LinkVariable.from_matrix(link, self.group)
        elif link.group != self.group:
            raise ValueError(f"cannot store a {link.group} link in a {self.group} field")
        self.links = self.links.at[site + (mu,)].set(link.matrix)

    def _walk(self, site, path):
        site = self.lattice.validate_site(site)
        prod = LinkVariable.identity(self.group)
        for mu, sign in path:
            if sign > 0:
                prod = prod @ self.link(site, mu)
                site = self.lattice.neighbor(site, mu, 1)
            else:
                site = self.lattice.neighbor(site, mu, -1)
                prod = prod @ self.link(site, mu).dagger()
        return prod, site

    def wilson_loop(self, site, path) -> LinkVariable:
        """Ordered product of links along a closed path starting at ``site``.

        Args:
            site: Starting site.
            path: Steps ``(mu, sign)`` with ``sign`` in ``{+1, -1}``.

        Raises:
            BoundaryExceeded: If the path leaves an open boundary.
            ValueError: If the path does not return to ``site``.
        """
        for mu, sign in path:
            parse_direction(mu, self.dim)
            if sign not in (1, -1):
                raise ValueError(f"path step sign must be +1 or -1, got {sign}")
        prod, end = self._walk(site, path)
        if end != tuple(site):
            raise ValueError(f"path starting at {tuple(site)} ends at {end}")
        return prod

    def plaquette(self, site, mu, nu) -> LinkVariable:
        r"""$U_\mu(n) U_\nu(n+\mu) U_\mu(n+\nu)^\dagger U_\nu(n)^\dagger$."""
        if mu == nu:
            raise ValueError(f"plaquette needs two distinct directions, got {mu}")
        return self.wilson_loop(site, gauge.rectangular_path(mu, nu, 1, 1))

    def rectangle(self, site, mu, nu) -> LinkVariable:
        """1x2 loop, one step along ``mu`` and two along ``nu``."""
        if mu == nu:
            raise ValueError(f"rectangle needs two distinct directions, got {mu}")
        return self.wilson_loop(site, gauge.rectangular_path(mu, nu, 1, 2))

    def polyakov_loop(self, site, temporal_dir=0) -> LinkVariable:
        """Product of the links winding once around ``temporal_dir`` from ``site``.

        Raises:
            BoundaryExceeded: If ``temporal_dir`` is not periodic.
        """
        temporal_dir = parse_direction(temporal_dir, self.dim)
        return self.wilson_loop(
            site, [(temporal_dir, 1)] * self.shape[temporal_dir]
        )

    def staple(self, site, mu) -> jax.Array:
        """Staple sum at edge ``(site, mu)``, see :func:`gauge.staple`."""
        site, mu = self._check_edge(site, mu)
        return gauge.staple(self.links, mu, self.lattice)[site]

    def plaquette_action(self, site, mu, nu):
        r"""Contribution $\beta (1 - \text{Re tr}\,P / N)$ of one plaquette."""
        p = self.plaquette(site, mu, nu)
        return self.beta * (1 - p.real_trace() / self.matrix_dim)

    # -- whole-lattice observables -- #

    def plaquette_field(self, mu, nu, specialize=True):
        """Plaquette matrices at every site (masked sites hold garbage)."""
        mu = parse_direction(mu, self.dim)
        nu = parse_direction(nu, self.dim)
        if mu == nu:
            raise ValueError(f"plaquette needs two distinct directions, got {mu}")
        if specialize and self.abelian:
            return gauge.abelian_plaquette_field(self.links, mu, nu)
        return gauge.plaquette_field(self.links, mu, nu)

    def _plaquette_mean(self, planes=None, specialize=True):
        traces = gauge.plaquette_traces(
            self.links, self.lattice, specialize and self.abelian, planes
        )
        total, count = 0.0, 0
        for (mu, nu), re_tr, mask in traces:
            if mask is None:
                total = total + jnp.sum(re_tr)
                count += self.num_sites()
            else:
                total = total + jnp.sum(jnp.where(mask, re_tr, 0))
                count += int(mask.sum())
        if count == 0:
            raise ValueError("lattice has no plaquettes in the requested planes")
        return total / (count * self.matrix_dim)

    def average_plaquette(self, specialize=True):
        """Mean of ``Re tr P / N`` over all plaquettes, in ``[-1, 1]``."""
        return self._plaquette_mean(specialize=specialize)

    def spatial_plaquette(self, temporal_dir=0):
        planes = [
            p for p in gauge.plane_pairs(self.dim) if temporal_dir not in p
        ]
        return self._plaquette_mean(planes)

    def temporal_plaquette(self, temporal_dir=0):
        planes = [p for p in gauge.plane_pairs(self.dim) if temporal_dir in p]
        return self._plaquette_mean(planes)

    def wilson_action(self, specialize=True):
        r"""$S = \beta \sum_\square (1 - \text{Re tr}\,P/N)$, each plaquette once.

        Args:
            specialize: Use scalar phase products for U(1); set false to
                force the general matrix path.
        """
        return gauge.wilson_action(
            self.links, self.beta, self.lattice, specialize and self.abelian
        )

    def average_wilson_loop(self, mu, nu, r, t):
        """Mean ``Re tr W / N`` of ``r x t`` loops in the ``(mu, nu)`` plane."""
        mu = parse_direction(mu, self.dim)
        nu = parse_direction(nu, self.dim)
        if mu == nu or r < 1 or t < 1:
            raise ValueError(f"invalid Wilson loop {r}x{t} in plane ({mu}, {nu})")
        prod, mask, _ = gauge.path_product(
            self.links, gauge.rectangular_path(mu, nu, r, t), self.lattice
        )
        return gauge.masked_mean(lie.re_trace(prod), mask) / self.matrix_dim

    def average_polyakov_loop(self, temporal_dir=0):
        """Mean of ``tr P / N`` over the spatial sites (complex).

        Raises:
            BoundaryExceeded: If ``temporal_dir`` is not periodic.
        """
        temporal_dir = parse_direction(temporal_dir, self.dim)
        length = self.shape[temporal_dir]
        if not self.lattice.periodic[temporal_dir]:
            raise BoundaryExceeded((0,) * self.dim, temporal_dir, length)
        prod, _, _ = gauge.path_product(self.links, [(temporal_dir, 1)] * length)
        tr = jnp.trace(prod, axis1=-2, axis2=-1)
        return jnp.mean(jnp.take(tr, 0, axis=temporal_dir)) / self.matrix_dim

    def field_strength(self, mu, nu):
        """Hermitian clover field strength, zero at sites without a full clover."""
        mu = parse_direction(mu, self.dim)
        nu = parse_direction(nu, self.dim)
        if mu == nu:
            raise ValueError(f"field strength needs two distinct directions, got {mu}")
        f, _ = gauge.field_strength(
            self.links, mu, nu, self.lattice, not self.group.is_abelian
        )
        return f

    def topological_charge_density(self):
        return gauge.topological_charge_density(
            self.links, self.lattice, not self.group.is_abelian
        )

    def topological_charge(self):
        """Total clover charge; zero unless the lattice is four dimensional."""
        return jnp.sum(self.topological_charge_density())

    def energy_density(self, kind="plaquette"):
        r"""Action density $E$ per site.

        Args:
            kind: ``"plaquette"`` for $E = \frac{2}{V} \sum_P \text{Re tr}(1 - P)$
                or ``"clover"`` for
                $E = \frac{1}{2V} \sum_{n,\mu,\nu} \text{tr}(F_{\mu\nu} F_{\mu\nu})$.
        """
        volume = self.num_sites()
        if kind == "plaquette":
            n = self.matrix_dim
            total = 0.0
            for _, re_tr, mask in gauge.plaquette_traces(
                self.links, self.lattice, self.abelian
            ):
                total = total + gauge.masked_sum(n - re_tr, mask)
            return 2 * total / volume
        if kind == "clover":
            total = 0.0
            for mu, nu in gauge.plane_pairs(self.dim):
                f = self.field_strength(mu, nu)
                total = total + jnp.sum(lie.re_trace(f, f))
            # both orderings of (mu, nu) contribute equally
            return total / volume
        raise ValueError(f"unknown energy density discretisation {kind!r}")

    # -- transformations -- #

    def gauge_transform(self, gs):
        r"""New field with $U_\mu(n) \to g(n) U_\mu(n) g(n+\mu)^\dagger$.

        Args:
            gs: Group elements per site, shape ``(*shape, N, N)``.
        """
        n = self.matrix_dim
        chex.assert_shape(gs, self.shape + (n, n))
        return self.map(lambda links: gauge.gauge_transform(links, gs, self.lattice))

    def random_gauge_transform(self, rng: RngSpec):
        gs = self.group.random(as_key(rng), self.shape)
        return self.gauge_transform(gs)

    def unitarity_violation(self):
        """Largest deviation of any link from unitarity."""
        return jnp.max(lie.unitarity_violation(self.links))

    def reunitarize(self):
        """Re-project every link onto the group, in place.

        Raises:
            NumericalDegeneracy: If any link cannot be projected; the field
                is left unchanged.
        """
        links, ok = self.group.project(self.links)
        ok = ok | ~jnp.asarray(self.lattice.link_mask)
        if not bool(jnp.all(ok)):
            count = int(jnp.sum(~ok))
            logger.error("reunitarization failed for %d links", count)
            raise NumericalDegeneracy(
                f"{count} links could not be projected onto {self.group}", count
            )
        self.links = self._fill_placeholders(self.lattice, self.group, links)
        return self
