r"""
Gauge actions built from plaquettes and 1x2 rectangles.

$$S = \beta \Big[ c_0 \sum_\square \big(1 - \tfrac{1}{N} \text{Re tr}\, U_\square\big)
    + c_1 \sum_{\boxminus} \big(1 - \tfrac{1}{N} \text{Re tr}\, U_\boxminus\big) \Big]$$

with $c_0 + 8 c_1 = 1$. Plaquettes are counted once per unordered plane,
rectangles once per orientation.

Example:
    >>> round(SYMANZIK.c0, 6)
    1.666667
"""

import flax

from .lattice import LatticeGaugeField, gauge


@flax.struct.dataclass
class ActionCoeffs:
    c0: float = flax.struct.field(pytree_node=False, default=1.0)
    c1: float = flax.struct.field(pytree_node=False, default=0.0)

    def __post_init__(self):
        if abs(self.c0 + 8 * self.c1 - 1) > 1e-12:
            raise ValueError(
                f"action coefficients must satisfy c0 + 8 c1 = 1, "
                f"got c0={self.c0}, c1={self.c1}"
            )

    @classmethod
    def from_c1(cls, c1: float):
        """Coefficients with the given rectangle weight, normalised by ``c0 = 1 - 8 c1``."""
        return cls(1 - 8 * c1, c1)


WILSON = ActionCoeffs.from_c1(0.0)
SYMANZIK = ActionCoeffs.from_c1(-1 / 12)
IWASAKI = ActionCoeffs.from_c1(-0.331)
DBW2 = ActionCoeffs.from_c1(-1.4088)

PRESETS = {
    "wilson": WILSON,
    "symanzik": SYMANZIK,
    "iwasaki": IWASAKI,
    "dbw2": DBW2,
}


def improved_action(field: LatticeGaugeField, coeffs: ActionCoeffs | str):
    """Plaquette plus rectangle action of ``field`` with the given coefficients.

    Args:
        field: Gauge configuration.
        coeffs: Coefficients, or the name of a preset (``"symanzik"``, ...).
    """
    if isinstance(coeffs, str):
        try:
            coeffs = PRESETS[coeffs.lower()]
        except KeyError:
            raise ValueError(
                f"unknown action {coeffs!r}, choose from {sorted(PRESETS)}"
            ) from None
    return field.beta * gauge.loop_action(
        field.links, coeffs.c0, coeffs.c1, field.lattice, field.abelian
    )


def wilson_action(field: LatticeGaugeField):
    """The plain Wilson action, the ``c1 = 0`` member of the family."""
    return improved_action(field, WILSON)
