r"""
Markov chain Monte Carlo updates of gauge links.

All updaters sample the Wilson action $S = \beta \sum_\square (1 - \text{Re tr}
\, U_\square / N)$. The local weight of a single link $U = U_\mu(n)$ only
depends on the staple $A = A_\mu(n)$ (see :func:`gaugex.lattice.staple`),

$$S(U) = -\frac{\beta}{N} \text{Re tr}(U A) + \text{const}.$$

A sweep visits every link once. Links are updated in checkerboard batches:
for each direction and each colour of :meth:`Lattice.checkerboard`, all
links in the batch share no plaquette, so they are updated simultaneously
from one staple evaluation. Every batch draws from its own key obtained by
splitting the sweep key. The field only receives the new links once the
whole sweep has finished without producing non-finite entries.
"""

import logging
import typing as tp
from functools import lru_cache, partial

import flax
import flax.typing as ftp
import jax
import jax.numpy as jnp
import numpy as np
from flax import nnx

from .errors import NumericalDegeneracy
from .groups import GaugeGroup
from .lattice import LatticeGaugeField
from .lattice.gauge import staple
from .lie import (
    adjoint,
    contract,
    embed_su2,
    re_trace,
    sample_kennedy_pendleton,
    sample_sphere,
    sample_von_mises,
    su2_from_quaternion,
    su2_quaternion,
    su2_submatrix,
    subgroup_pairs,
)
from .utils import RngSpec, as_key

logger = logging.getLogger(__name__)

Proposal = tp.Callable[[ftp.PRNGKey, jax.Array], jax.Array]


@flax.struct.dataclass
class SweepInfo:
    acceptance: float
    n_updates: int


def metropolis_accept(rng, delta_s):
    r"""Metropolis decision for action changes ``delta_s``.

    Accepts with probability $\min(1, e^{-\Delta S})$: always when
    $\Delta S \le 0$, otherwise when a uniform draw falls below
    $e^{-\Delta S}$. Non-finite changes are rejected. The outcome is a
    deterministic function of ``rng`` and ``delta_s``.
    """
    delta_s = jnp.asarray(delta_s, dtype=jnp.result_type(float, delta_s))
    u = jax.random.uniform(rng, delta_s.shape, dtype=delta_s.dtype)
    accept = (delta_s <= 0) | (u < jnp.exp(-delta_s))
    return accept & jnp.isfinite(delta_s)


@lru_cache(maxsize=None)
def near_identity_proposal(group: GaugeGroup, epsilon: float) -> Proposal:
    r"""Symmetric proposal $U \to R U$ with $R = e^{\epsilon X}$, $X$ Gaussian in the algebra."""

    def proposal(rng, u):
        r = group.random_near_identity(rng, u.shape[:-2], epsilon)
        return contract(r, u)

    return proposal


def _finite(u, active):
    return jnp.all(jnp.isfinite(u), axis=(-2, -1)) | ~active


# -- batch kernels -- #


@partial(jax.jit, static_argnames=("group", "lattice", "mu", "proposal"))
def _metropolis_batch(links, key, beta, active, group, lattice, mu, proposal):
    n = group.matrix_dim
    u = links[..., mu, :, :]
    a = staple(links, mu, lattice)

    key_proposal, key_accept = jax.random.split(key)
    u_new = proposal(key_proposal, u)
    delta_s = -(beta / n) * re_trace(u_new - u, a)
    accept = metropolis_accept(key_accept, delta_s) & active

    u = jnp.where(accept[..., None, None], u_new, u)
    return links.at[..., mu, :, :].set(u), accept, _finite(u, active)


def _u1_heatbath(key, u, w, beta, active, max_tries):
    w = w[..., 0, 0]
    chi, done = sample_von_mises(key, beta * jnp.abs(w), active, max_tries=max_tries)
    phase = jnp.exp(1j * (chi - jnp.angle(w)))
    update = active & done
    u = jnp.where(update[..., None, None], phase[..., None, None] * u, u)
    return u, done


def _subgroup_direction(w, i, j):
    # w restricted to the (i, j) block, written as k * v with v in SU(2)
    a = su2_quaternion(su2_submatrix(w, i, j))
    k = jnp.linalg.norm(a, axis=-1)
    degenerate = k <= jnp.finfo(k.dtype).tiny
    unit = jnp.array([1.0, 0.0, 0.0, 0.0], dtype=a.dtype)
    a = jnp.where(degenerate[..., None], unit, a / jnp.where(degenerate, 1.0, k)[..., None])
    return k, su2_from_quaternion(a), degenerate


def _su2_subgroup_heatbath(key, u, w, beta, active, n, i, j, max_tries):
    k, v, _ = _subgroup_direction(w, i, j)
    alpha = 2 * beta * k / n

    key_x0, key_dir = jax.random.split(key)
    x0, done = sample_kennedy_pendleton(key_x0, alpha, active, max_tries=max_tries)
    direction = sample_sphere(key_dir, 3, x0.shape, dtype=x0.dtype)
    x_vec = jnp.sqrt(jnp.clip(1 - x0**2, 0.0))[..., None] * direction
    x = su2_from_quaternion(jnp.concatenate([x0[..., None], x_vec], axis=-1))

    r = contract(x, adjoint(v))
    r = jnp.where((active & done)[..., None, None], r, jnp.eye(2, dtype=r.dtype))
    big = embed_su2(r, n, i, j)
    return contract(big, u), contract(big, w), done


@partial(jax.jit, static_argnames=("group", "lattice", "mu", "max_tries"))
def _heatbath_batch(links, key, beta, active, group, lattice, mu, max_tries):
    n = group.matrix_dim
    u = links[..., mu, :, :]
    w = contract(u, staple(links, mu, lattice))

    if group.is_abelian:
        u, converged = _u1_heatbath(key, u, w, beta, active, max_tries)
    else:
        converged = jnp.ones(active.shape, dtype=bool)
        pairs = subgroup_pairs(n)
        for (i, j), sub in zip(pairs, jax.random.split(key, len(pairs))):
            u, w, done = _su2_subgroup_heatbath(
                sub, u, w, beta, active, n, i, j, max_tries
            )
            converged = converged & done

    return links.at[..., mu, :, :].set(u), converged & active, _finite(u, active)


@partial(jax.jit, static_argnames=("group", "lattice", "mu"))
def _overrelax_batch(links, key, beta, active, group, lattice, mu):
    del key, beta
    n = group.matrix_dim
    u = links[..., mu, :, :]
    w = contract(u, staple(links, mu, lattice))

    if group.is_abelian:
        w0 = w[..., 0, 0]
        update = active & (jnp.abs(w0) > jnp.finfo(u.real.dtype).tiny)
        phase = jnp.exp(-2j * jnp.angle(w0))
        u = jnp.where(update[..., None, None], phase[..., None, None] * u, u)
    else:
        eye = jnp.eye(2, dtype=u.dtype)
        for i, j in subgroup_pairs(n):
            _, v, degenerate = _subgroup_direction(w, i, j)
            r = contract(adjoint(v), adjoint(v))
            r = jnp.where((active & ~degenerate)[..., None, None], r, eye)
            big = embed_su2(r, n, i, j)
            u, w = contract(big, u), contract(big, w)

    return links.at[..., mu, :, :].set(u), active, _finite(u, active)


# -- updaters -- #


class LinkUpdater(nnx.Module):
    """Base class of single-link updaters sweeping in checkerboard batches.

    Subclasses implement :meth:`_batch`, which updates all links of one
    direction selected by a boolean site mask and returns the new link
    array, a per-site accepted flag and a per-site finiteness flag.
    """

    stochastic = True

    def __init__(self, rngs: nnx.Rngs | None = None):
        self.rngs = rngs

    def _get_rng(self, rng: RngSpec | None) -> ftp.PRNGKey:
        if not self.stochastic:
            return jax.random.PRNGKey(0)
        if rng is None:
            if self.rngs is None:
                raise ValueError("rngs must be provided")
            rng = self.rngs.sample()
        return as_key(rng)

    def _batch(self, links, key, beta, active, group, lattice, mu):
        raise NotImplementedError()

    def _raise_degenerate(self, count):
        name = type(self).__name__
        logger.error("%s produced %d non-finite links; field left unchanged", name, count)
        raise NumericalDegeneracy(
            f"{name} update produced {count} non-finite links", count
        )

    def sweep(self, field: LatticeGaugeField, rng: RngSpec | None = None) -> SweepInfo:
        """Update every link of ``field`` once, in place.

        Raises:
            NumericalDegeneracy: If any updated link is not finite. The field
                keeps the links it had before the sweep.
        """
        key = self._get_rng(rng)
        lattice = field.lattice
        colors = lattice.checkerboard()
        n_colors = lattice.num_colors
        keys = jax.random.split(key, lattice.dim * n_colors)

        links = field.links
        accepted, failed = 0, 0
        for mu in range(lattice.dim):
            edge_mask = lattice.edge_mask(mu)
            for color in range(n_colors):
                active = jnp.asarray(edge_mask & (colors == color))
                links, acc, ok = self._batch(
                    links,
                    keys[mu * n_colors + color],
                    field.beta,
                    active,
                    field.group,
                    lattice,
                    mu,
                )
                accepted = accepted + jnp.sum(acc)
                failed = failed + jnp.sum(~ok)

        failed = int(failed)
        if failed:
            self._raise_degenerate(failed)

        field.links = links
        n_updates = field.num_links()
        info = SweepInfo(acceptance=float(accepted) / n_updates, n_updates=n_updates)
        logger.debug(
            "%s sweep: %d links, acceptance %.4f",
            type(self).__name__,
            n_updates,
            info.acceptance,
        )
        return info

    def update_link(
        self, field: LatticeGaugeField, rng: RngSpec | None, site, mu
    ) -> bool:
        """Update the single link ``(site, mu)`` in place.

        Returns:
            Whether the update was accepted.
        """
        field.link(site, mu)  # validates the edge
        site = tuple(int(s) for s in site)
        active = np.zeros(field.shape, dtype=bool)
        active[site] = True
        links, acc, ok = self._batch(
            field.links,
            self._get_rng(rng),
            field.beta,
            jnp.asarray(active),
            field.group,
            field.lattice,
            int(mu),
        )
        if not bool(ok[site]):
            self._raise_degenerate(1)
        field.links = links
        return bool(acc[site])


class Metropolis(LinkUpdater):
    r"""Metropolis updates with a symmetric proposal.

    The action change of a proposal $U \to U'$ is computed from the staple,
    $\Delta S = -\frac{\beta}{N} \text{Re tr}((U' - U) A)$.

    Args:
        epsilon: Width of the default proposal $U' = e^{\epsilon X} U$.
        proposal: Optional proposal ``proposal(rng, u) -> u_new`` acting on
            arrays of link matrices ``(..., N, N)``. It must be symmetric for
            detailed balance to hold, and should be reused between sweeps to
            avoid recompilation.
        rngs: Default random stream.
    """

    def __init__(
        self,
        epsilon: float = 0.2,
        proposal: Proposal | None = None,
        rngs: nnx.Rngs | None = None,
    ):
        if epsilon <= 0:
            raise ValueError(f"proposal width must be positive, got {epsilon}")
        super().__init__(rngs)
        self.epsilon = float(epsilon)
        self.proposal = proposal

    def _batch(self, links, key, beta, active, group, lattice, mu):
        proposal = self.proposal
        if proposal is None:
            proposal = near_identity_proposal(group, self.epsilon)
        return _metropolis_batch(
            links, key, beta, active, group, lattice, mu, proposal
        )


class HeatBath(LinkUpdater):
    """Heat bath: sample each link from its local Boltzmann weight.

    U(1) links are drawn from the von Mises distribution. SU(N) links are
    updated in the SU(2) subgroups ``(i, j)``, ``i < j``, in lexicographic
    order (Cabibbo-Marinari), each drawn with the Kennedy-Pendleton
    algorithm. The reported acceptance is the fraction of links for which
    every rejection sampler finished within ``max_tries`` rounds.
    """

    def __init__(self, max_tries: int = 100, rngs: nnx.Rngs | None = None):
        if max_tries < 1:
            raise ValueError(f"max_tries must be positive, got {max_tries}")
        super().__init__(rngs)
        self.max_tries = int(max_tries)

    def _batch(self, links, key, beta, active, group, lattice, mu):
        return _heatbath_batch(
            links, key, beta, active, group, lattice, mu, self.max_tries
        )


class Overrelaxation(LinkUpdater):
    """Microcanonical reflection of each link, leaving the action unchanged.

    Does not change the action and is therefore not ergodic; interleave it
    with :class:`HeatBath` or :class:`Metropolis` sweeps.
    """

    stochastic = False

    def _batch(self, links, key, beta, active, group, lattice, mu):
        return _overrelax_batch(links, key, beta, active, group, lattice, mu)
