"""
Exception types raised by the simulation engine.

Argument validation raises plain :class:`ValueError`. The classes here mark
conditions that come from the state of a configuration or its topology.
"""


class GaugeError(Exception):
    """Base class for all engine errors."""


class TopologyMismatch(GaugeError):
    """Link data does not cover exactly the edge set of the lattice."""


class BoundaryExceeded(GaugeError, IndexError):
    """A neighbor lookup stepped off a non-periodic lattice axis."""

    def __init__(self, site, mu, step):
        self.site = tuple(site)
        self.mu = mu
        self.step = step
        super().__init__(
            f"step {step:+d} in direction {mu} from site {self.site} "
            "leaves the (non-periodic) lattice"
        )


class NumericalDegeneracy(GaugeError, ArithmeticError):
    """Projection onto the group failed, or a link became non-finite.

    This is fatal for the operation that raised it; the configuration the
    operation started from is left untouched.
    """

    def __init__(self, message, count=None):
        self.count = count
        super().__init__(message)


class ScaleNotBracketed(GaugeError):
    """A flow trajectory never reached the requested reference value.

    Recoverable: rerun the flow with a larger ``t_max``.

    Args:
        target: The reference value that was searched for.
        t_max: Last flow time in the trajectory.
        max_value: Largest value of the observable along the trajectory.
    """

    def __init__(self, target, t_max, max_value):
        self.target = target
        self.t_max = t_max
        self.max_value = max_value
        super().__init__(
            f"observable never reached {target} up to t={t_max} "
            f"(largest value {max_value})"
        )
