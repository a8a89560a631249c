r"""
Link smearing.

Every smearing step reads the complete previous link array and writes a new
one, so no link sees partially smeared neighbors. All functions return a
new :class:`~gaugex.lattice.LatticeGaugeField` and leave their input
untouched.

The blends are built from the parallel-transporter staples

$$C_\mu(n) = \sum_{\nu} S_\nu(n) T_\mu(n+\nu) S_\nu(n+\mu)^\dagger
    + S_\nu(n-\nu)^\dagger T_\mu(n-\nu) S_\nu(n-\nu+\mu),$$

with side links $S$ and top links $T$ (both $U$ for APE and stout).
"""

import itertools
import logging
from functools import partial

import jax
import jax.numpy as jnp
import numpy as np

from .errors import NumericalDegeneracy
from .lattice import LatticeGaugeField
from .lattice.gauge import parallel_staple, shift
from .lie import adjoint, contract

logger = logging.getLogger(__name__)


def _smearing_directions(dim, temporal_dir):
    if temporal_dir is None:
        return tuple(range(dim))
    if not 0 <= temporal_dir < dim:
        raise ValueError(f"temporal direction {temporal_dir} not in [0, {dim})")
    return tuple(d for d in range(dim) if d != temporal_dir)


def _check_steps(n_steps):
    if n_steps < 0:
        raise ValueError(f"number of smearing steps must be >= 0, got {n_steps}")


def _raise_if_failed(ok, name, step):
    if not bool(jnp.all(ok)):
        count = int(jnp.sum(~ok))
        logger.error("%s smearing step %d: %d links failed to project", name, step, count)
        raise NumericalDegeneracy(
            f"{name} smearing step {step}: {count} links could not be projected "
            "onto the group",
            count,
        )


def transported_staple(side, top, mu, nu, lattice=None):
    """Forward and backward staple in the ``(mu, nu)`` plane from separate link fields.

    Args:
        side: Links in direction ``nu``, shape ``(*space, N, N)``.
        top: Links in direction ``mu``.
        mu: Direction of the smeared link.
        nu: Transverse direction.
        lattice: Optional topology masking staples that leave the lattice.
    """
    forward = contract(side, shift(top, nu), adjoint(shift(side, mu)))
    side_back = shift(side, nu, -1)
    backward = contract(adjoint(side_back), shift(top, nu, -1), shift(side_back, mu))
    if lattice is not None:
        mask = lattice.plaquette_mask(mu, nu)
        forward = forward * jnp.asarray(mask)[..., None, None]
        backward = backward * jnp.asarray(np.roll(mask, 1, axis=nu))[..., None, None]
    return forward + backward


# -- APE -- #


@partial(jax.jit, static_argnames=("group", "lattice", "directions"))
def _ape_step(links, alpha, group, lattice, directions):
    norm = 2 * (len(directions) - 1)
    ok = jnp.ones(lattice.shape, dtype=bool)
    out = links
    for mu in directions:
        u = links[..., mu, :, :]
        c = parallel_staple(links, mu, lattice, directions)
        new, good = group.project((1 - alpha) * u + alpha / norm * c)
        edge = jnp.asarray(lattice.edge_mask(mu))
        out = out.at[..., mu, :, :].set(jnp.where(edge[..., None, None], new, u))
        ok = ok & (good | ~edge)
    return out, ok


def ape_smear(field: LatticeGaugeField, alpha: float, n_steps: int = 1, temporal_dir=0):
    r"""APE smearing, $U' = \text{Proj}[(1 - \alpha) U + \frac{\alpha}{2(d-1)} C]$.

    Args:
        field: Configuration to smear.
        alpha: Smearing weight.
        n_steps: Number of iterations.
        temporal_dir: Direction excluded from smearing (its links are left
            unchanged and it does not contribute staples); ``None`` smears
            all ``d = D`` directions.

    Raises:
        NumericalDegeneracy: If a blended link cannot be projected.
    """
    _check_steps(n_steps)
    directions = _smearing_directions(field.dim, temporal_dir)
    if len(directions) < 2:
        raise ValueError("APE smearing needs at least two smeared directions")
    links = field.links
    for step in range(n_steps):
        links, ok = _ape_step(links, alpha, field.group, field.lattice, directions)
        _raise_if_failed(ok, "APE", step)
    logger.debug("APE smearing: %d steps, alpha=%g", n_steps, alpha)
    return field.replace(links=links)


# -- HYP -- #


@partial(jax.jit, static_argnames=("group", "lattice"))
def _hyp_step(links, alphas, group, lattice):
    alpha1, alpha2, alpha3 = alphas
    dim = lattice.dim
    u = [links[..., mu, :, :] for mu in range(dim)]
    ok = jnp.ones(lattice.shape, dtype=bool)

    def blend(mu, alpha, norm, staples):
        nonlocal ok
        if not staples:
            return u[mu]
        new, good = group.project((1 - alpha) * u[mu] + alpha / norm * sum(staples))
        edge = jnp.asarray(lattice.edge_mask(mu))
        ok = ok & (good | ~edge)
        return jnp.where(edge[..., None, None], new, u[mu])

    # innermost level: links decorated in the hyperplanes orthogonal to {nu, rho}
    bar = {}
    for mu in range(dim):
        others = [d for d in range(dim) if d != mu]
        for nu, rho in itertools.combinations(others, 2):
            staples = [
                transported_staple(u[eta], u[mu], mu, eta, lattice)
                for eta in others
                if eta not in (nu, rho)
            ]
            bar[mu, frozenset((nu, rho))] = blend(mu, alpha3, 2 * (dim - 3), staples)

    tilde = {}
    for mu, nu in itertools.permutations(range(dim), 2):
        staples = [
            transported_staple(
                bar[rho, frozenset((nu, mu))], bar[mu, frozenset((rho, nu))], mu, rho, lattice
            )
            for rho in range(dim)
            if rho not in (mu, nu)
        ]
        tilde[mu, nu] = blend(mu, alpha2, 2 * (dim - 2), staples)

    out = links
    for mu in range(dim):
        staples = [
            transported_staple(tilde[nu, mu], tilde[mu, nu], mu, nu, lattice)
            for nu in range(dim)
            if nu != mu
        ]
        out = out.at[..., mu, :, :].set(blend(mu, alpha1, 2 * (dim - 1), staples))
    return out, ok


def hyp_smear(field: LatticeGaugeField, alphas=(0.75, 0.6, 0.3), n_steps: int = 1):
    r"""Hypercubic blocking.

    Three nested APE-like blends with weights ``alphas = (alpha1, alpha2,
    alpha3)``, outermost first. The innermost level only uses staples
    orthogonal to two further directions, so every smeared link stays within
    the hypercubes attached to it. In ``D`` dimensions the levels are
    normalised by ``2(D-1)``, ``2(D-2)`` and ``2(D-3)`` staples; a level
    without staples keeps its input links.

    Raises:
        NumericalDegeneracy: If a blended link cannot be projected.
    """
    _check_steps(n_steps)
    alphas = tuple(float(a) for a in alphas)
    if len(alphas) != 3:
        raise ValueError(f"HYP smearing needs three weights, got {alphas}")
    links = field.links
    for step in range(n_steps):
        links, ok = _hyp_step(links, alphas, field.group, field.lattice)
        _raise_if_failed(ok, "HYP", step)
    logger.debug("HYP smearing: %d steps, alphas=%s", n_steps, alphas)
    return field.replace(links=links)


# -- stout -- #


def stout_generator(links, mu, group, lattice=None, directions=None):
    r"""Algebra element $Z_\mu = P(C_\mu U_\mu^\dagger)$ driving stout smearing and flow.

    $P$ projects onto the Lie algebra: the traceless anti-Hermitian part for
    SU(N), the anti-Hermitian part for U(1). Zero on missing edges.
    """
    u = links[..., mu, :, :]
    z = group.project_algebra(contract(parallel_staple(links, mu, lattice, directions), adjoint(u)))
    if lattice is not None:
        z = z * jnp.asarray(lattice.edge_mask(mu))[..., None, None]
    return z


@partial(jax.jit, static_argnames=("group", "lattice", "directions"))
def _stout_step(links, rho, group, lattice, directions):
    out = links
    for mu in directions:
        u = links[..., mu, :, :]
        z = rho * stout_generator(links, mu, group, lattice, directions)
        new = contract(group.expm(z), u)
        edge = jnp.asarray(lattice.edge_mask(mu))
        out = out.at[..., mu, :, :].set(jnp.where(edge[..., None, None], new, u))
    ok = jnp.all(jnp.isfinite(out), axis=(-3, -2, -1))
    return out, ok


def stout_smear(field: LatticeGaugeField, rho: float, n_steps: int = 1, temporal_dir=None):
    r"""Stout smearing, $U' = \exp(\rho Z) U$ with $Z$ from :func:`stout_generator`.

    The exponential keeps links on the group, no projection is needed. One
    step with ``rho = eps`` is an Euler step of the gradient flow.

    Raises:
        NumericalDegeneracy: If a smeared link is not finite.
    """
    _check_steps(n_steps)
    directions = _smearing_directions(field.dim, temporal_dir)
    links = field.links
    for step in range(n_steps):
        links, ok = _stout_step(links, rho, field.group, field.lattice, directions)
        _raise_if_failed(ok, "stout", step)
    logger.debug("stout smearing: %d steps, rho=%g", n_steps, rho)
    return field.replace(links=links)
