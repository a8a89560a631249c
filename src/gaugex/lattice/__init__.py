"""
Lattice topology, gauge field configurations and array-level kernels.
"""

from . import gauge
from .field import LatticeGaugeField
from .gauge import (
    gauge_transform,
    parallel_staple,
    plaquette_field,
    rectangle_field,
    roll_lattice,
    staple,
    wilson_action,
)
from .topology import Lattice

__all__ = [
    "gauge",
    "Lattice",
    "LatticeGaugeField",
    "gauge_transform",
    "parallel_staple",
    "plaquette_field",
    "rectangle_field",
    "roll_lattice",
    "staple",
    "wilson_action",
]
