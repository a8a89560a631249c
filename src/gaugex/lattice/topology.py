r"""
Hypercubic lattice topology.

The engine only consumes the attributes defined here: the extent and
periodicity per dimension, an enumeration of sites and oriented edges,
neighbor lookups, and a few boolean masks derived from them. Sites are
enumerated lexicographically (C order) and the edge ``(site, mu)`` has the
dense index ``site_index(site) * dim + mu``, matching the storage order of
link arrays of shape ``(*shape, dim, N, N)``.

On a non-periodic axis ``mu`` the last site has no forward edge in
direction ``mu``; the corresponding slot of a link array is a placeholder.

Example:
    >>> lat = Lattice((4, 4), periodic=(True, False))
    >>> lat.num_edges
    28
    >>> lat.neighbor((0, 3), 0, -1)
    (3, 3)
"""

import itertools
from dataclasses import dataclass
from functools import cached_property

import numpy as np

from ..errors import BoundaryExceeded
from ..utils import parse_direction, unit_vector


@dataclass(frozen=True)
class Lattice:
    shape: tuple[int, ...]
    periodic: tuple[bool, ...] = True

    def __post_init__(self):
        shape = tuple(int(s) for s in self.shape)
        if len(shape) < 2:
            raise ValueError(f"gauge fields need at least 2 dimensions, got {shape}")
        if any(s < 2 for s in shape):
            raise ValueError(f"lattice extents must be >= 2, got {shape}")

        periodic = self.periodic
        if isinstance(periodic, bool | np.bool_):
            periodic = (bool(periodic),) * len(shape)
        periodic = tuple(bool(p) for p in periodic)
        if len(periodic) != len(shape):
            raise ValueError(
                f"periodicity {periodic} does not match lattice dimension {len(shape)}"
            )
        object.__setattr__(self, "shape", shape)
        object.__setattr__(self, "periodic", periodic)

    @property
    def dim(self):
        return len(self.shape)

    @property
    def num_sites(self):
        return int(np.prod(self.shape))

    @property
    def num_edges(self):
        return int(self.link_mask.sum())

    def sites(self):
        """All sites in lexicographic order."""
        return itertools.product(*(range(s) for s in self.shape))

    def edges(self):
        """All oriented (positive) edges ``(site, mu)`` in storage order."""
        for site in self.sites():
            for mu in range(self.dim):
                if self.has_edge(site, mu):
                    yield site, mu

    def validate_site(self, site):
        site = tuple(int(s) for s in site)
        if len(site) != self.dim or not all(
            0 <= s < n for s, n in zip(site, self.shape)
        ):
            raise ValueError(f"site {site} is not on lattice of shape {self.shape}")
        return site

    def site_index(self, site):
        return int(np.ravel_multi_index(self.validate_site(site), self.shape))

    def edge_index(self, site, mu):
        mu = parse_direction(mu, self.dim)
        return self.site_index(site) * self.dim + mu

    def has_edge(self, site, mu):
        site = self.validate_site(site)
        mu = parse_direction(mu, self.dim)
        return self.periodic[mu] or site[mu] < self.shape[mu] - 1

    def neighbor(self, site, mu, step=1):
        """Site reached by ``step`` unit steps along ``mu``.

        Raises:
            BoundaryExceeded: When leaving a non-periodic axis.
        """
        site = list(self.validate_site(site))
        mu = parse_direction(mu, self.dim)
        pos = site[mu] + step
        if self.periodic[mu]:
            pos %= self.shape[mu]
        elif not 0 <= pos < self.shape[mu]:
            raise BoundaryExceeded(site, mu, step)
        site[mu] = pos
        return tuple(site)

    def plaquette_edges(self, site, mu, nu):
        """The four edges bounding the ``(mu, nu)`` plaquette at ``site``.

        Returns:
            List of ``((site, direction), orientation)`` in path order, with
            orientation ``+1`` for a forward and ``-1`` for a backward
            traversal of the stored edge.
        """
        if mu == nu:
            raise ValueError(f"plaquette needs two distinct directions, got {mu}")
        site_mu = self.neighbor(site, mu)
        site_nu = self.neighbor(site, nu)
        return [
            ((tuple(site), mu), 1),
            ((site_mu, nu), 1),
            ((site_nu, mu), -1),
            ((tuple(site), nu), -1),
        ]

    # -- masks -- #

    def edge_mask(self, mu):
        """Boolean array over sites, true where the edge ``(site, mu)`` exists."""
        mu = parse_direction(mu, self.dim)
        return self.loop_mask(unit_vector(mu, self.dim))

    @cached_property
    def link_mask(self):
        """Boolean array of shape ``(*shape, dim)`` marking existing edges."""
        return np.stack([self.edge_mask(mu) for mu in range(self.dim)], axis=-1)

    def loop_mask(self, extents):
        """Sites from which a box with the given forward extents stays on the lattice."""
        extents = tuple(extents)
        if len(extents) != self.dim:
            raise ValueError(f"need {self.dim} extents, got {extents}")
        mask = np.ones(self.shape, dtype=bool)
        for d, (ext, size) in enumerate(zip(extents, self.shape)):
            if self.periodic[d] or ext == 0:
                continue
            coord = np.arange(size).reshape(
                tuple(size if i == d else 1 for i in range(self.dim))
            )
            mask = mask & (coord + ext < size)
        return mask

    def plaquette_mask(self, mu, nu):
        extents = np.add(unit_vector(mu, self.dim), unit_vector(nu, self.dim))
        return self.loop_mask(extents)

    # -- parallel partition -- #

    @property
    def num_colors(self):
        bipartite = all(
            s % 2 == 0 for s, p in zip(self.shape, self.periodic) if p
        )
        return 2 if bipartite else 3

    @cached_property
    def _colors(self):
        grids = np.meshgrid(*(np.arange(s) for s in self.shape), indexing="ij")
        if self.num_colors == 2:
            return sum(grids) % 2
        total = np.zeros(self.shape, dtype=int)
        for coord, size, per in zip(grids, self.shape, self.periodic):
            c = coord % 2
            if per and size % 2 == 1:
                c = np.where(coord == size - 1, 2, c)
            total = total + c
        return total % 3

    def checkerboard(self):
        """Site colouring in which nearest neighbors never share a colour.

        Two colours (parity) when every periodic extent is even, three
        otherwise. Links of one direction and one colour never appear in a
        common plaquette, so they can be updated simultaneously.

        Returns:
            Integer array of shape ``shape`` with values in
            ``range(num_colors)``.
        """
        return self._colors
