r"""
Wilson gradient flow.

The flow $\dot V_\mu(n, t) = Z_\mu(V) V_\mu(n, t)$ with
$Z_\mu = P(C_\mu V_\mu^\dagger)$ (see :func:`gaugex.smearing.stout_generator`)
smooths a configuration continuously; one Euler step of size $\epsilon$ is a
stout smearing step with $\rho = \epsilon$.

Integrators:
    - Euler: $V' = e^{\epsilon Z(V)} V$.
    - RK3: Luscher's third-order Lie group Runge-Kutta scheme,

      .. math::

        W_1 &= e^{Z_0 / 4} W_0, \\
        W_2 &= e^{8 Z_1 / 9 - 17 Z_0 / 36} W_1, \\
        W_3 &= e^{3 Z_2 / 4 - 8 Z_1 / 9 + 17 Z_0 / 36} W_2,

      with $Z_i = \epsilon Z(W_i)$.
    - Adaptive: RK3 steps whose size is controlled by comparing to the
      embedded second-order result $e^{2 Z_1 - Z_0} W_0$.

Scales are read off the recorded trajectory: $t_0$ solves
$t^2 E(t) = 0.3$ and $w_0^2$ solves $t \frac{d}{dt} t^2 E(t) = 0.3$.

Example:
    >>> lat = Lattice((4, 4, 4, 4))
    >>> cold = LatticeGaugeField.identity(lat, beta=6.0)
    >>> _, traj = gradient_flow(cold, FlowParams(epsilon=0.1, t_max=0.3))
    >>> bool(np.max(np.abs(traj.energy)) < 1e-20)
    True
"""

import enum
import logging
import time
from functools import partial

import flax
import jax
import jax.numpy as jnp
import numpy as np

from .errors import NumericalDegeneracy, ScaleNotBracketed
from .lattice import LatticeGaugeField
from .lie import contract
from .smearing import stout_generator

logger = logging.getLogger(__name__)


class FlowMethod(enum.Enum):
    EULER = "euler"
    RK3 = "rk3"
    ADAPTIVE = "adaptive"


ENERGY_KINDS = ("plaquette", "clover")


@flax.struct.dataclass
class FlowParams:
    """Flow integration settings.

    Args:
        epsilon: Step size (initial step size for the adaptive method).
        t_max: Flow time at which integration stops.
        method: Integrator, see :class:`FlowMethod`.
        tolerance: Target local error of the adaptive method.
        min_step: Smallest adaptive step; steps pinned here are accepted
            regardless of the error estimate.
        max_step: Largest adaptive step.
        max_steps: Optional cap on the number of steps.
        max_wall_time: Optional cap on the integration time in seconds.
        energy: Discretisation of the energy density, ``"plaquette"`` or
            ``"clover"``.
    """

    epsilon: float = flax.struct.field(pytree_node=False, default=0.01)
    t_max: float = flax.struct.field(pytree_node=False, default=1.0)
    method: FlowMethod = flax.struct.field(pytree_node=False, default=FlowMethod.RK3)
    tolerance: float = flax.struct.field(pytree_node=False, default=1e-5)
    min_step: float = flax.struct.field(pytree_node=False, default=1e-4)
    max_step: float = flax.struct.field(pytree_node=False, default=0.1)
    max_steps: int | None = flax.struct.field(pytree_node=False, default=None)
    max_wall_time: float | None = flax.struct.field(pytree_node=False, default=None)
    energy: str = flax.struct.field(pytree_node=False, default="clover")

    def __post_init__(self):
        if not self.epsilon > 0:
            raise ValueError(f"flow step must be positive, got {self.epsilon}")
        if not self.t_max > 0:
            raise ValueError(f"t_max must be positive, got {self.t_max}")
        if not isinstance(self.method, FlowMethod):
            # accepts the enum value, e.g. "rk3"
            object.__setattr__(self, "method", FlowMethod(self.method))
        if self.method is FlowMethod.ADAPTIVE:
            if not self.tolerance > 0:
                raise ValueError(f"tolerance must be positive, got {self.tolerance}")
            if not 0 < self.min_step <= self.max_step:
                raise ValueError(
                    f"need 0 < min_step <= max_step, got {self.min_step}, {self.max_step}"
                )
        if self.max_steps is not None and self.max_steps < 1:
            raise ValueError(f"max_steps must be positive, got {self.max_steps}")
        if self.max_wall_time is not None and not self.max_wall_time > 0:
            raise ValueError(f"max_wall_time must be positive, got {self.max_wall_time}")
        if self.energy not in ENERGY_KINDS:
            raise ValueError(f"energy must be one of {ENERGY_KINDS}, got {self.energy!r}")


@flax.struct.dataclass
class FlowTrajectory:
    """Recorded flow times, energy densities and $t^2 E(t)$."""

    t: np.ndarray
    energy: np.ndarray
    t2_energy: np.ndarray
    stop_reason: str = flax.struct.field(pytree_node=False, default="t_max")

    @staticmethod
    def _crossing(t, values, target):
        if len(values) < 2:
            raise ScaleNotBracketed(
                target,
                float(t[-1]) if len(t) else 0.0,
                float(np.max(values)) if len(values) else None,
            )
        above = np.nonzero(values >= target)[0]
        above = above[above > 0]
        for i in above:
            if values[i - 1] < target:
                frac = (target - values[i - 1]) / (values[i] - values[i - 1])
                return t[i - 1] + frac * (t[i] - t[i - 1])
        raise ScaleNotBracketed(
            target, float(t[-1]), float(np.max(values)) if len(values) else None
        )

    def find_t0(self, target=0.3):
        """Flow time at which $t^2 E(t)$ first rises through ``target``.

        Raises:
            ScaleNotBracketed: If the trajectory never reaches ``target``.
        """
        return float(self._crossing(self.t, self.t2_energy, target))

    def w_function(self):
        r"""$W(t) = t \frac{d}{dt} t^2 E(t)$ by finite differences at step midpoints."""
        t_mid = (self.t[1:] + self.t[:-1]) / 2
        slope = np.diff(self.t2_energy) / np.diff(self.t)
        return t_mid, t_mid * slope

    def find_w0(self, target=0.3):
        """Scale $w_0$ with $W(w_0^2) = $ ``target``.

        Raises:
            ScaleNotBracketed: If $W$ never reaches ``target``.
        """
        t_mid, w = self.w_function()
        try:
            return float(np.sqrt(self._crossing(t_mid, w, target)))
        except ScaleNotBracketed as err:
            raise ScaleNotBracketed(target, float(self.t[-1]), err.max_value) from None


# -- kernels -- #


def flow_generator(links, group, lattice=None):
    """$Z_\\mu$ for all directions, stacked like the links."""
    dim = links.shape[-3]
    return jnp.stack(
        [stout_generator(links, mu, group, lattice) for mu in range(dim)], axis=-3
    )


def _advance(z, links, group):
    return contract(group.expm(z), links)


def _rk3_stages(links, epsilon, group, lattice):
    z0 = epsilon * flow_generator(links, group, lattice)
    w1 = _advance(z0 / 4, links, group)
    z1 = epsilon * flow_generator(w1, group, lattice)
    w2 = _advance(8 / 9 * z1 - 17 / 36 * z0, w1, group)
    z2 = epsilon * flow_generator(w2, group, lattice)
    w3 = _advance(3 / 4 * z2 - 8 / 9 * z1 + 17 / 36 * z0, w2, group)
    return w3, z0, z1


@partial(jax.jit, static_argnames=("group", "lattice", "method"))
def _flow_step(links, epsilon, group, lattice, method):
    if method is FlowMethod.EULER:
        return _advance(epsilon * flow_generator(links, group, lattice), links, group)
    w3, _, _ = _rk3_stages(links, epsilon, group, lattice)
    return w3


@partial(jax.jit, static_argnames=("group", "lattice"))
def _adaptive_step(links, epsilon, group, lattice):
    w3, z0, z1 = _rk3_stages(links, epsilon, group, lattice)
    low = _advance(2 * z1 - z0, links, group)
    n = links.shape[-1]
    diff = jnp.sqrt(jnp.sum(jnp.abs(w3 - low) ** 2, axis=(-2, -1))) / n
    return w3, jnp.max(diff)


@partial(jax.jit, static_argnames=("group", "lattice", "kind"))
def _energy_density(links, group, lattice, kind):
    return LatticeGaugeField(lattice, group, links, 0.0).energy_density(kind)


def _check_finite(links, t):
    if not bool(jnp.all(jnp.isfinite(links))):
        logger.error("gradient flow produced non-finite links at t=%g", t)
        raise NumericalDegeneracy(f"gradient flow produced non-finite links at t={t}")


def flow_step(
    field: LatticeGaugeField, epsilon: float, method: FlowMethod | str = FlowMethod.RK3
):
    """Advance ``field`` by one flow step of size ``epsilon``; returns a new field.

    ``ADAPTIVE`` performs a plain RK3 step here; step control only happens in
    :func:`gradient_flow`.
    """
    method = FlowMethod(method)
    if not epsilon > 0:
        raise ValueError(f"flow step must be positive, got {epsilon}")
    if method is FlowMethod.ADAPTIVE:
        method = FlowMethod.RK3
    links = _flow_step(field.links, epsilon, field.group, field.lattice, method)
    _check_finite(links, epsilon)
    return field.replace(links=links)


def gradient_flow(field: LatticeGaugeField, params: FlowParams = FlowParams()):
    """Integrate the flow from ``t = 0`` to ``params.t_max``.

    Integration also stops early on ``params.max_steps`` or
    ``params.max_wall_time``; the trajectory's ``stop_reason`` records
    which bound ended it.

    Returns:
        Tuple ``(flowed_field, trajectory)``.
    """
    group, lattice = field.group, field.lattice
    links = field.links

    def measure(links):
        return float(_energy_density(links, group, lattice, params.energy))

    ts, energies = [0.0], [measure(links)]
    t, eps, steps = 0.0, params.epsilon, 0
    if params.method is FlowMethod.ADAPTIVE:
        eps = min(max(eps, params.min_step), params.max_step)
    stop_reason = "t_max"
    start = time.monotonic()

    while params.t_max - t > 1e-12 * params.t_max:
        if params.max_steps is not None and steps >= params.max_steps:
            stop_reason = "max_steps"
            break
        if (
            params.max_wall_time is not None
            and time.monotonic() - start > params.max_wall_time
        ):
            stop_reason = "wall_time"
            break

        if params.method is FlowMethod.ADAPTIVE:
            links, step, eps = _adaptive_advance(links, t, eps, params, group, lattice)
        else:
            step = min(eps, params.t_max - t)
            links = _flow_step(links, step, group, lattice, params.method)
        t += step
        steps += 1
        _check_finite(links, t)

        ts.append(t)
        energies.append(measure(links))
        logger.debug("flow step %d: t=%.5f eps=%.3g E=%.6g", steps, t, step, energies[-1])

    if stop_reason != "t_max":
        logger.warning(
            "gradient flow stopped at t=%g < t_max=%g after %d steps (%s)",
            t,
            params.t_max,
            steps,
            stop_reason,
        )

    t_arr = np.asarray(ts)
    energy = np.asarray(energies)
    trajectory = FlowTrajectory(t_arr, energy, t_arr**2 * energy, stop_reason)
    return field.replace(links=links), trajectory


def _adaptive_advance(links, t, eps, params, group, lattice):
    """One accepted adaptive step; returns ``(links, step_taken, next_step)``."""
    while True:
        step = min(eps, params.t_max - t)
        new, dist = _adaptive_step(links, step, group, lattice)
        dist = float(dist)
        if not np.isfinite(dist):
            logger.error("adaptive flow error estimate is not finite at t=%g", t)
            raise NumericalDegeneracy(f"adaptive flow step at t={t} is not finite")
        if dist > 0:
            factor = 0.95 * (params.tolerance / dist) ** (1 / 3)
        else:
            factor = params.max_step / step
        proposed = min(max(step * factor, params.min_step), params.max_step)

        if dist <= params.tolerance:
            return new, step, proposed
        if step <= params.min_step:
            logger.warning(
                "adaptive flow pinned at min_step=%g at t=%g (error %.3g > %.3g)",
                params.min_step,
                t,
                dist,
                params.tolerance,
            )
            return new, step, proposed
        eps = proposed
