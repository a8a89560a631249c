r"""
Array-level gauge field kernels.

Links are stored as one array of shape ``(*space, D, N, N)`` where
``links[n, mu]`` is $U_\mu(n)$, the parallel transporter from ``n + e_mu``
to ``n``. Shifts use periodic wrapping; on non-periodic lattices the
functions taking a :class:`~gaugex.lattice.Lattice` mask out every
product that would wrap around an open boundary.

All functions act on a single configuration; :func:`wilson_action` is
batched over leading axes with ``jax_autovmap``.
"""

import jax
import jax.numpy as jnp
import numpy as np
from einops import einsum
from jax_autovmap import autovmap

from ..lie import adjoint, contract, re_trace
from ..utils import unit_vector


def roll_lattice(lattice, loc, invert=False):
    """Roll lattice by given tuple.

    Axes are counted from the left, so if the dimension of `lattice` is
    larger than the length of `loc`, the trailing dimensions of the lattice
    are treaded as "channels".

    By default, the lattice is "rolled into position": for loc = (1, 1, 0)
    the new lattice has ``rolled[0, 0, 0, ...] = lattice[1, 1, 0, ...]``.

    Args:
        lattice: Array with leading axes representing lattice.
        loc: Tuple of integers.
        invert: If true, roll lattice in opposite direction.
    """
    dims = tuple(range(len(loc)))
    loc = tuple(int(i) for i in loc)
    if invert:
        lattice = jnp.roll(lattice, loc, dims)
    else:
        lattice = jnp.roll(lattice, tuple(-i for i in loc), dims)
    return lattice


def shift(field, mu, step=1):
    """``out[n] = field[n + step * e_mu]`` for a field of matrices ``(*space, N, N)``."""
    dim = jnp.ndim(field) - 2
    return roll_lattice(field, tuple(step * e for e in unit_vector(mu, dim)))


def plane_pairs(dim):
    """All planes ``(mu, nu)`` with ``mu < nu``."""
    return [(mu, nu) for mu in range(dim) for nu in range(mu + 1, dim)]


# -- masks -- #


def _expand(mask):
    return None if mask is None else jnp.asarray(mask)[..., None, None]


def _edge_mask_at(lattice, mu, offset):
    # edge (n + offset, mu) exists and n + offset did not wrap an open axis
    mask = np.roll(
        lattice.edge_mask(mu),
        tuple(-int(o) for o in offset),
        axis=tuple(range(lattice.dim)),
    )
    for d, (o, size) in enumerate(zip(offset, lattice.shape)):
        if lattice.periodic[d] or o == 0:
            continue
        coord = np.arange(size).reshape(
            tuple(size if i == d else 1 for i in range(lattice.dim))
        )
        mask = mask & (coord + o >= 0) & (coord + o < size)
    return mask


def masked_mean(values, mask):
    if mask is None:
        return jnp.mean(values)
    count = int(np.sum(mask))
    if count == 0:
        raise ValueError("no site of the lattice supports this observable")
    return jnp.sum(jnp.where(mask, values, 0)) / count


# -- closed loops -- #


def plaquette_field(links, mu, nu):
    r"""$U_\mu(n) U_\nu(n+\mu) U_\mu(n+\nu)^\dagger U_\nu(n)^\dagger$ at every site."""
    u_mu = links[..., mu, :, :]
    u_nu = links[..., nu, :, :]
    return contract(u_mu, shift(u_nu, mu), adjoint(shift(u_mu, nu)), adjoint(u_nu))


def abelian_plaquette_field(links, mu, nu):
    """Plaquettes of 1x1 link matrices using scalar phase products."""
    u_mu = links[..., mu, 0, 0]
    u_nu = links[..., nu, 0, 0]
    dim = links.shape[-3]
    e_mu = unit_vector(mu, dim)
    e_nu = unit_vector(nu, dim)
    p = u_mu * roll_lattice(u_nu, e_mu) * roll_lattice(u_mu, e_nu).conj() * u_nu.conj()
    return p[..., None, None]


def rectangle_field(links, mu, nu):
    r"""1x2 loops, one step along ``mu`` and two along ``nu``.

    $U_\mu(n) U_\nu(n+\mu) U_\nu(n+\mu+\nu) U_\mu(n+2\nu)^\dagger
    U_\nu(n+\nu)^\dagger U_\nu(n)^\dagger$
    """
    u_mu = links[..., mu, :, :]
    u_nu = links[..., nu, :, :]
    u_nu_xmu = shift(u_nu, mu)
    return contract(
        u_mu,
        u_nu_xmu,
        shift(u_nu_xmu, nu),
        adjoint(shift(u_mu, nu, 2)),
        adjoint(shift(u_nu, nu)),
        adjoint(u_nu),
    )


def path_product(links, path, lattice=None):
    """Ordered link products along ``path`` starting from every site.

    Args:
        links: Link array ``(*space, D, N, N)``.
        path: Sequence of steps ``(mu, sign)``; a forward step multiplies by
            $U_\\mu(x)$, a backward step by $U_\\mu(x - \\mu)^\\dagger$.
        lattice: Optional topology; used to mask starting sites from which
            the path would leave an open boundary.

    Returns:
        Tuple ``(product, mask, offset)``: the products ``(*space, N, N)``,
        a boolean site mask (``None`` without a lattice) and the
        displacement of the end point from the start.
    """
    dim = links.shape[-3]
    if len(path) == 0:
        raise ValueError("path must contain at least one step")
    offset = np.zeros(dim, dtype=int)
    mask = None if lattice is None else np.ones(lattice.shape, dtype=bool)
    prod = None
    for mu, sign in path:
        if sign not in (1, -1):
            raise ValueError(f"path step sign must be +1 or -1, got {sign}")
        if sign < 0:
            offset[mu] -= 1
        link = roll_lattice(links[..., mu, :, :], offset)
        if lattice is not None:
            mask = mask & _edge_mask_at(lattice, mu, offset)
        if sign > 0:
            offset[mu] += 1
        else:
            link = adjoint(link)
        prod = link if prod is None else contract(prod, link)
    return prod, mask, tuple(int(o) for o in offset)


def rectangular_path(mu, nu, r, t):
    """Closed ``r x t`` loop in the ``(mu, nu)`` plane."""
    return (
        [(mu, 1)] * r + [(nu, 1)] * t + [(mu, -1)] * r + [(nu, -1)] * t
    )


def clover_field(links, mu, nu, lattice=None):
    """Sum of the four plaquettes in the ``(mu, nu)`` plane touching each site."""
    leaves = [
        [(mu, 1), (nu, 1), (mu, -1), (nu, -1)],
        [(nu, 1), (mu, -1), (nu, -1), (mu, 1)],
        [(mu, -1), (nu, -1), (mu, 1), (nu, 1)],
        [(nu, -1), (mu, 1), (nu, 1), (mu, -1)],
    ]
    total, mask = 0, None
    for leaf in leaves:
        prod, leaf_mask, _ = path_product(links, leaf, lattice)
        total = total + prod
        mask = leaf_mask if mask is None else mask & leaf_mask
    return total, mask


def field_strength(links, mu, nu, lattice=None, traceless=True):
    r"""Hermitian clover estimate $F_{\mu\nu} = (Q - Q^\dagger) / 8i$.

    For non-abelian groups (``traceless=True``) the trace is removed.

    Returns:
        Tuple ``(F, mask)``.
    """
    q, mask = clover_field(links, mu, nu, lattice)
    f = (q - adjoint(q)) / 8j
    if traceless:
        n = f.shape[-1]
        tr = jnp.trace(f, axis1=-2, axis2=-1)
        f = f - tr[..., None, None] / n * jnp.eye(n, dtype=f.dtype)
    if mask is not None:
        f = jnp.where(_expand(mask), f, 0)
    return f, mask


def topological_charge_density(links, lattice=None, traceless=True):
    r"""Clover charge density $q(n)$ in four dimensions.

    $q = \frac{1}{4\pi^2}\left[\text{tr} F_{01}F_{23} - \text{tr} F_{02}F_{13}
    + \text{tr} F_{03}F_{12}\right]$. Lattices of other dimension carry
    no charge and give zeros.
    """
    dim = links.shape[-3]
    if dim != 4:
        return jnp.zeros(links.shape[:dim])
    fs = {
        (mu, nu): field_strength(links, mu, nu, lattice, traceless)[0]
        for mu, nu in plane_pairs(dim)
    }
    q = (
        re_trace(fs[0, 1], fs[2, 3])
        - re_trace(fs[0, 2], fs[1, 3])
        + re_trace(fs[0, 3], fs[1, 2])
    )
    return q / (4 * jnp.pi**2)


# -- staples -- #


def staple(links, mu, lattice=None, directions=None):
    r"""Sum $A_\mu(n)$ of the open three-link paths closing plaquettes through $U_\mu(n)$.

    $A_\mu(n) = \sum_{\nu \neq \mu} U_\nu(n+\mu) U_\mu(n+\nu)^\dagger U_\nu(n)^\dagger
    + U_\nu(n+\mu-\nu)^\dagger U_\mu(n-\nu)^\dagger U_\nu(n-\nu)$

    such that $\sum_{P \ni U_\mu(n)} \text{Re tr}\, P = \text{Re tr}(U_\mu(n) A_\mu(n))$.

    Args:
        links: Link array ``(*space, D, N, N)``.
        mu: Direction of the links.
        lattice: Optional topology masking plaquettes that do not exist.
        directions: Directions ``nu`` to include, default all.
    """
    dim = links.shape[-3]
    if directions is None:
        directions = range(dim)
    u_mu = links[..., mu, :, :]
    total = jnp.zeros_like(u_mu)
    for nu in directions:
        if nu == mu:
            continue
        u_nu = links[..., nu, :, :]
        u_nu_xmu = shift(u_nu, mu)
        forward = contract(u_nu_xmu, adjoint(shift(u_mu, nu)), adjoint(u_nu))
        backward = contract(
            adjoint(shift(u_nu_xmu, nu, -1)),
            adjoint(shift(u_mu, nu, -1)),
            shift(u_nu, nu, -1),
        )
        if lattice is not None:
            mask = lattice.plaquette_mask(mu, nu)
            forward = forward * _expand(mask)
            backward = backward * _expand(np.roll(mask, 1, axis=nu))
        total = total + forward + backward
    return total


def parallel_staple(links, mu, lattice=None, directions=None):
    r"""Staple as parallel transporter from $n + \mu$ to $n$, $C_\mu = A_\mu^\dagger$."""
    return adjoint(staple(links, mu, lattice, directions))


# -- gauge transformations -- #


def gauge_transform(links, gs, lattice=None):
    r"""Apply $U_\mu(n) \to g(n) U_\mu(n) g(n+\mu)^\dagger$ to every edge.

    Placeholder slots of missing edges are left untouched.
    """
    dim = links.shape[-3]
    spc = " ".join(f"l{d}" for d in range(dim))

    for mu in range(dim):
        gs_rolled = adjoint(shift(gs, mu))
        new = einsum(
            gs,
            links[..., mu, :, :],
            gs_rolled,
            f"{spc} i ic, {spc} ic jc, {spc} jc j -> {spc} i j",
        )
        if lattice is not None:
            new = jnp.where(_expand(lattice.edge_mask(mu)), new, links[..., mu, :, :])
        links = links.at[..., mu, :, :].set(new)

    return links


# -- actions -- #


def plaquette_traces(links, lattice=None, abelian=False, planes=None):
    """Real traces of the plaquettes per plane.

    Returns:
        List of ``((mu, nu), re_tr, mask)`` with ``mask`` ``None`` when
        every plaquette exists.
    """
    dim = links.shape[-3]
    plaq = abelian_plaquette_field if abelian else plaquette_field
    out = []
    for mu, nu in plane_pairs(dim) if planes is None else planes:
        mask = None if lattice is None else lattice.plaquette_mask(mu, nu)
        if mask is not None and mask.all():
            mask = None
        out.append(((mu, nu), re_trace(plaq(links, mu, nu)), mask))
    return out


def masked_sum(values, mask):
    if mask is None:
        return jnp.sum(values)
    return jnp.sum(jnp.where(mask, values, 0))


def loop_action(links, c0=1.0, c1=0.0, lattice=None, abelian=False):
    r"""$\sum_\square c_0 (1 - \text{Re tr} P / N) + \sum_{\boxminus} c_1 (1 - \text{Re tr} R / N)$.

    Plaquettes are counted once per unordered plane, rectangles in both
    orientations. The result is not yet multiplied by $\beta$.
    """
    n = links.shape[-1]
    dim = links.shape[-3]
    total = 0.0
    for _, re_tr, mask in plaquette_traces(links, lattice, abelian):
        total = total + c0 * masked_sum(1 - re_tr / n, mask)
    if c1 != 0:
        for mu in range(dim):
            for nu in range(dim):
                if mu == nu:
                    continue
                extents = np.add(unit_vector(mu, dim), 2 * np.array(unit_vector(nu, dim)))
                mask = None if lattice is None else lattice.loop_mask(extents)
                re_tr = re_trace(rectangle_field(links, mu, nu))
                total = total + c1 * masked_sum(1 - re_tr / n, mask)
    return total


def wilson_action(links: jax.Array, beta: float, lattice=None, abelian=False) -> jax.Array:
    r"""Computes the Wilson action $\beta \sum_\square (1 - \text{Re tr}\,P/N)$.

    The links array is expected to have shape ``(*batch, *space, D, N, N)``
    and the action is evaluated per configuration in the batch. Every
    plaquette is counted once.

    Args:
        links: Link array.
        beta: The inverse coupling constant.
        lattice: Optional topology, required for non-periodic boundaries.
        abelian: Use scalar phase products (1x1 links only).

    Returns:
        The action, with shape ``batch``.
    """
    lat_dim = jnp.shape(links)[-3]

    def action(lat, beta):
        return beta * loop_action(lat, 1.0, 0.0, lattice, abelian)

    return autovmap(lat_dim + 3, 0)(action)(links, beta)
