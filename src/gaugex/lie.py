r"""
Matrix Lie group operations for link variables.

This module collects the dense matrix primitives the engine is built from:
generator bases, chained matrix products, projections onto the group
manifold and onto the Lie algebra, the exponential map, Haar sampling and
the SU(2) subgroup helpers used by heat bath and overrelaxation.

All functions act on the trailing two axes and broadcast over any number
of leading (lattice or batch) axes.

Conventions:
    - Generators are anti-Hermitian, $X_a = i \lambda_a$ with
      $\text{tr}(\lambda_a \lambda_b) = 2 \delta_{ab}$.
    - SU(2) elements are written in quaternion form
      $a_0 \mathbb{1} + i \vec{a} \cdot \vec{\sigma}$.
"""

from functools import partial

import jax
import jax.numpy as jnp
import numpy as np
from einops import einsum

# -- Constants -- #

U1_GEN = np.sqrt(2) * 1j * jnp.ones((1, 1, 1))

SU2_GEN = 1j * jnp.array(
    [
        [[0, 1], [1, 0]],
        [[0, -1j], [1j, 0]],
        [[1, 0], [0, -1]],
    ]
)

SU3_GEN = 1j * jnp.array(
    [
        [[0, 1, 0], [1, 0, 0], [0, 0, 0]],
        [[0, -1j, 0], [1j, 0, 0], [0, 0, 0]],
        [[1, 0, 0], [0, -1, 0], [0, 0, 0]],
        [[0, 0, 1], [0, 0, 0], [1, 0, 0]],
        [[0, 0, -1j], [0, 0, 0], [1j, 0, 0]],
        [[0, 0, 0], [0, 0, 1], [0, 1, 0]],
        [[0, 0, 0], [0, 0, -1j], [0, 1j, 0]],
        [[1 / jnp.sqrt(3), 0, 0], [0, 1 / jnp.sqrt(3), 0], [0, 0, -2 / jnp.sqrt(3)]],
    ]
)


def su_generators(n):
    r"""Anti-Hermitian generator basis of $\mathfrak{su}(n)$.

    Returns the Pauli (n=2) and Gell-Mann (n=3) bases in their usual order;
    for larger n the generalised Gell-Mann matrices are built (symmetric,
    antisymmetric, then diagonal), normalised to
    $\text{tr}(\lambda_a \lambda_b) = 2 \delta_{ab}$.

    Args:
        n: Matrix dimension, at least 2.

    Returns:
        Array of shape ``(n**2 - 1, n, n)``.
    """
    if n < 2:
        raise ValueError(f"su(n) needs n >= 2, got {n}")
    if n == 2:
        return SU2_GEN
    if n == 3:
        return SU3_GEN

    gens = []
    for j in range(n):
        for k in range(j + 1, n):
            sym = np.zeros((n, n), dtype=complex)
            sym[j, k] = sym[k, j] = 1
            asym = np.zeros((n, n), dtype=complex)
            asym[j, k] = -1j
            asym[k, j] = 1j
            gens.extend([sym, asym])
    for l in range(1, n):
        diag = np.zeros(n, dtype=complex)
        diag[:l] = 1
        diag[l] = -l
        gens.append(np.sqrt(2 / (l * (l + 1))) * np.diag(diag))
    return 1j * jnp.asarray(np.stack(gens))


# -- Operations -- #


def contract(*factors, trace=False):
    r"""Ordered matrix product $A_1 A_2 \cdots A_n$ of link-shaped arrays.

    Leading (lattice) axes broadcast like numpy, aligned from the right.

    Args:
        factors: Arrays whose last two axes are matrices.
        trace: Return $\text{tr}(A_1 \cdots A_n)$ instead of the product.

    Example:
        >>> A = jnp.ones((3, 4, 4))
        >>> B = jnp.ones((3, 4, 4))
        >>> C = contract(A, B)  # Shape (3, 4, 4)
        >>> trace_AB = contract(A, B, trace=True)  # Shape (3,)
    """
    leading = [jnp.ndim(f) - 2 for f in factors]
    assert all(
        lead >= 0 for lead in leading
    ), "all factors must be matrices (ndim >= 2)"

    # leading axes are aligned from the right, like numpy broadcasting
    n_lead = max(leading)
    indices = []
    for m, lead in enumerate(leading):
        indices.append(
            [f"l{i}" for i in range(n_lead - lead, n_lead)] + [f"m{m}", f"m{m + 1}"]
        )

    if trace:
        indices[-1][-1] = "m0"

    ind_in = ", ".join(" ".join(ind) for ind in indices)
    ind_out = " ".join(f"l{i}" for i in range(n_lead))
    if not trace:
        ind_out += f" m0 m{len(factors)}"
    return einsum(*factors, f"{ind_in} -> {ind_out}")


def adjoint(arr):
    r"""Conjugate transpose $A^\dagger$ over the last two axes."""
    return arr.conj().swapaxes(-1, -2)


def re_trace(a, b=None):
    r"""Real part of $\text{tr}(A)$, or of $\text{tr}(AB)$ without forming $AB$."""
    if b is None:
        return jnp.trace(a, axis1=-2, axis2=-1).real
    return jnp.einsum("...ij,...ji->...", a, b).real


def skew_hermitian(m):
    r"""Anti-Hermitian part $\frac{1}{2}(M - M^\dagger)$."""
    return (m - adjoint(m)) / 2


def skew_traceless(m):
    r"""Project onto $\mathfrak{su}(N)$: traceless anti-Hermitian part of $M$."""
    a = skew_hermitian(m)
    n = a.shape[-1]
    tr = jnp.trace(a, axis1=-2, axis2=-1)
    return a - tr[..., None, None] / n * jnp.eye(n, dtype=a.dtype)


def expm_skew(x):
    r"""Matrix exponential of anti-Hermitian matrices.

    Uses the eigendecomposition of the Hermitian matrix $H = -iX$, so the
    result is unitary to machine precision:
    $e^X = V \text{diag}(e^{i w}) V^\dagger$.
    """
    h = -1j * x
    h = (h + adjoint(h)) / 2
    w, v = jnp.linalg.eigh(h)
    return contract(v * jnp.exp(1j * w)[..., None, :], adjoint(v))


def project_unitary_phase(z, tol=None):
    r"""Project $1 \times 1$ matrices onto U(1): $z \mapsto z / |z|$.

    Returns:
        Tuple ``(u, ok)`` with ``ok`` false where $|z|$ vanished or where
        the input was not finite.
    """
    r = jnp.abs(z)
    if tol is None:
        tol = 100 * jnp.finfo(r.dtype).eps
    ok = jnp.isfinite(r) & (r > tol)
    u = z / jnp.where(ok, r, 1.0)
    return u, ok[..., 0, 0]


def project_special_unitary(m, tol=None):
    r"""Project square matrices onto SU(N).

    Takes the unitary polar factor $W = U V^\dagger$ of the singular value
    decomposition $M = U \Sigma V^\dagger$ (the closest unitary matrix in
    Frobenius norm) and removes the determinant phase,
    $W \to W / \det(W)^{1/N}$. Matrices already in SU(N) are reproduced up
    to rounding.

    Args:
        m: Array of shape ``(..., N, N)``.
        tol: Smallest acceptable ratio of smallest to largest singular
            value; defaults to a multiple of the dtype epsilon.

    Returns:
        Tuple ``(u, ok)`` with ``ok`` false where the input was singular
        (to tolerance) or not finite.
    """
    n = m.shape[-1]
    u, s, vh = jnp.linalg.svd(m)
    w = contract(u, vh)
    det = jnp.linalg.det(w)
    phase = jnp.exp(-1j * jnp.angle(det) / n)
    w = w * phase[..., None, None]

    if tol is None:
        tol = 1000 * jnp.finfo(s.dtype).eps
    smax = jnp.max(s, axis=-1)
    ok = (jnp.min(s, axis=-1) > tol * smax) & jnp.isfinite(smax)
    return w, ok


def unitarity_violation(u):
    r"""Frobenius norm of $U U^\dagger - \mathbb{1}$, per matrix."""
    n = u.shape[-1]
    diff = contract(u, adjoint(u)) - jnp.eye(n, dtype=u.dtype)
    return jnp.sqrt(jnp.sum(jnp.abs(diff) ** 2, axis=(-1, -2)))


# -- SU(2) subgroups -- #


def su2_quaternion(w):
    r"""Quaternion coefficients of the SU(2)-like part of 2x2 matrices.

    Any complex 2x2 matrix $w$ splits into $a_0 + i\vec a\cdot\vec\sigma$
    (real $a$) plus a part that drops out of $\text{Re}\,\text{tr}(r w)$ for
    every $r \in SU(2)$. Only the former is returned.

    Returns:
        Array of shape ``(..., 4)``.
    """
    a0 = (w[..., 0, 0] + w[..., 1, 1]).real / 2
    a1 = (w[..., 0, 1] + w[..., 1, 0]).imag / 2
    a2 = (w[..., 0, 1] - w[..., 1, 0]).real / 2
    a3 = (w[..., 0, 0] - w[..., 1, 1]).imag / 2
    return jnp.stack([a0, a1, a2, a3], axis=-1)


def su2_from_quaternion(a):
    r"""Build $a_0 + i\vec a\cdot\vec\sigma$ from coefficients of shape ``(..., 4)``."""
    a0, a1, a2, a3 = jnp.moveaxis(a, -1, 0)
    row0 = jnp.stack([a0 + 1j * a3, a2 + 1j * a1], axis=-1)
    row1 = jnp.stack([-a2 + 1j * a1, a0 - 1j * a3], axis=-1)
    return jnp.stack([row0, row1], axis=-2)


def su2_submatrix(m, i, j):
    """Extract rows and columns ``(i, j)`` of ``m`` as 2x2 matrices."""
    idx = jnp.array([i, j])
    return m[..., idx[:, None], idx[None, :]]


def embed_su2(r, n, i, j):
    """Embed 2x2 matrices into the ``(i, j)`` block of an ``n x n`` identity."""
    out = jnp.broadcast_to(jnp.eye(n, dtype=r.dtype), r.shape[:-2] + (n, n))
    out = out.at[..., i, i].set(r[..., 0, 0])
    out = out.at[..., i, j].set(r[..., 0, 1])
    out = out.at[..., j, i].set(r[..., 1, 0])
    out = out.at[..., j, j].set(r[..., 1, 1])
    return out


def subgroup_pairs(n):
    """Cabibbo-Marinari SU(2) subgroup sequence: all ``(i, j)``, ``i < j``."""
    return tuple((i, j) for i in range(n) for j in range(i + 1, n))


# -- Sampling -- #


@jax.vmap
def _haar_transform(z):
    # if this is a bottleneck, investigate https://github.com/google/jax/issues/8542
    q, r = jnp.linalg.qr(z)
    d = jnp.diag(r)
    d = d / jnp.abs(d)
    norm = jnp.prod(d) * jnp.linalg.det(q)
    m = jnp.einsum("ij,j->ij", q, d / norm ** (1 / len(d)))
    return m


def _sample_haar(rng, n, count):
    """Sample multiple SU(N) matrices uniformly according to Haar measure.

    Uses the QR decomposition method to generate uniformly distributed
    SU(N) matrices from Gaussian random matrices.
    """
    real_part, imag_part = 1 / np.sqrt(2) * jax.random.normal(rng, (2, count, n, n))
    z = real_part + 1j * imag_part
    return _haar_transform(z)


def sample_haar(rng, n=2, batch_shape=()):
    """Sample SU(N) matrices uniformly according to Haar measure.

    Args:
        rng: Random key for sampling.
        n: Dimension of SU(N) group (default: SU(2)).
        batch_shape: Shape of batch dimensions for multiple samples.

    Returns:
        SU(N) matrices of shape batch_shape + (n, n).

    Example:
        >>> key = jax.random.PRNGKey(42)
        >>> su2_matrix = sample_haar(key, n=2)  # Single SU(2) matrix
        >>> su3_batch = sample_haar(key, n=3, batch_shape=(10,))  # 10 SU(3) matrices
    """
    batch_shape = tuple(batch_shape)
    if batch_shape == ():
        z = _sample_haar(rng, n, 1)
        return jnp.squeeze(z, axis=0)
    size = int(np.prod(batch_shape))
    return _sample_haar(rng, n, size).reshape(*batch_shape, n, n)


def sample_sphere(rng, dim, batch_shape=(), dtype=float):
    """Uniform points on the unit sphere in ``dim`` dimensions."""
    g = jax.random.normal(rng, tuple(batch_shape) + (dim,), dtype=dtype)
    return g / jnp.linalg.norm(g, axis=-1, keepdims=True)


@partial(jax.jit, static_argnames=("max_tries",))
def sample_kennedy_pendleton(rng, alpha, active, max_tries=100):
    r"""Sample $x_0 \in [-1, 1]$ with density $\sqrt{1 - x_0^2}\, e^{\alpha x_0}$.

    Kennedy-Pendleton rejection sampling, vectorised: every entry is
    redrawn until accepted, for at most ``max_tries`` rounds. Entries with
    $\alpha$ below a small threshold fall back to the Haar distribution of
    $x_0$, for which no rejection is needed.

    Args:
        rng: Random key.
        alpha: Array of non-negative couplings.
        active: Boolean mask; inactive entries are not sampled.
        max_tries: Cap on rejection rounds.

    Returns:
        Tuple ``(x0, done)`` where ``done`` marks accepted entries
        (inactive entries count as done).
    """
    small = alpha < 1e-8
    tiny = jnp.finfo(alpha.dtype).tiny
    safe_alpha = jnp.where(small, 1.0, alpha)
    rng, rng_haar = jax.random.split(rng)
    x0_haar = sample_sphere(rng_haar, 4, alpha.shape, dtype=alpha.dtype)[..., 0]

    def cond(state):
        _, it, _, done = state
        return (it < max_tries) & ~jnp.all(done)

    def body(state):
        key, it, x0, done = state
        key, sub = jax.random.split(key)
        r = jax.random.uniform(
            sub, (4,) + alpha.shape, dtype=alpha.dtype, minval=tiny, maxval=1.0
        )
        lam2 = -(jnp.log(r[0]) + jnp.cos(2 * jnp.pi * r[1]) ** 2 * jnp.log(r[2]))
        lam2 = lam2 / (2 * safe_alpha)
        accept = r[3] ** 2 <= 1 - lam2
        new = ~done & accept
        x0 = jnp.where(new, 1 - 2 * lam2, x0)
        return key, it + 1, x0, done | accept

    done = ~active | small
    x0 = jnp.where(small, x0_haar, jnp.ones_like(alpha))
    _, _, x0, done = jax.lax.while_loop(cond, body, (rng, jnp.array(0), x0, done))
    return x0, done


@partial(jax.jit, static_argnames=("max_tries",))
def sample_von_mises(rng, kappa, active, max_tries=100):
    r"""Sample angles with density $\propto e^{\kappa \cos\theta}$ on $(-\pi, \pi]$.

    Best-Fisher rejection sampling, vectorised like
    :func:`sample_kennedy_pendleton`. Very small $\kappa$ gives uniform
    angles.

    Returns:
        Tuple ``(theta, done)``.
    """
    small = kappa < 1e-5
    tiny = jnp.finfo(kappa.dtype).tiny
    k = jnp.where(small, 1.0, kappa)
    tau = 1 + jnp.sqrt(1 + 4 * k**2)
    rho = (tau - jnp.sqrt(2 * tau)) / (2 * k)
    r = (1 + rho**2) / (2 * rho)

    rng, rng_uniform = jax.random.split(rng)
    theta_uniform = jax.random.uniform(
        rng_uniform, kappa.shape, dtype=kappa.dtype, minval=-jnp.pi, maxval=jnp.pi
    )

    def cond(state):
        _, it, _, done = state
        return (it < max_tries) & ~jnp.all(done)

    def body(state):
        key, it, theta, done = state
        key, sub = jax.random.split(key)
        u = jax.random.uniform(
            sub, (3,) + kappa.shape, dtype=kappa.dtype, minval=tiny, maxval=1.0
        )
        z = jnp.cos(jnp.pi * u[0])
        f = (1 + r * z) / (r + z)
        c = k * (r - f)
        accept = (c * (2 - c) - u[1] > 0) | (jnp.log(c / u[1]) + 1 - c >= 0)
        angle = jnp.sign(u[2] - 0.5) * jnp.arccos(jnp.clip(f, -1.0, 1.0))
        theta = jnp.where(~done & accept, angle, theta)
        return key, it + 1, theta, done | accept

    done = ~active | small
    theta = jnp.where(small, theta_uniform, jnp.zeros_like(kappa))
    _, _, theta, done = jax.lax.while_loop(
        cond, body, (rng, jnp.array(0), theta, done)
    )
    return theta, done
