r"""Lattice gauge field Monte Carlo with JAX.

Gauge configurations live on hypercubic lattices as dense arrays of link
matrices. The library provides the Wilson and improved gauge actions,
single-link Monte Carlo updates (Metropolis, heat bath, overrelaxation),
APE, HYP and stout smearing, the gradient flow with scale setting, and the
usual observables (plaquettes, Wilson and Polyakov loops, clover field
strength, topological charge).

Example:
    >>> lat = gaugex.Lattice((4, 4, 4, 4))
    >>> field = gaugex.LatticeGaugeField.identity(lat, beta=5.0, group=gaugex.U1())
    >>> info = gaugex.HeatBath(rngs=rngs).sweep(field)
    >>> bool(field.average_plaquette() < 1.0)
    True
"""

# Submodules that should be imported as submodules
from . import (
    actions,
    checkpoint,
    flow,
    lattice,
    lie,
    smearing,
)

from .actions import (
    DBW2,
    IWASAKI,
    SYMANZIK,
    WILSON,
    ActionCoeffs,
    improved_action,
)
from .checkpoint import load_checkpoint, save_checkpoint
from .errors import (
    BoundaryExceeded,
    GaugeError,
    NumericalDegeneracy,
    ScaleNotBracketed,
    TopologyMismatch,
)
from .flow import FlowMethod, FlowParams, FlowTrajectory, flow_step, gradient_flow
from .groups import SU, SU2, SU3, U1, GaugeGroup, group_from_name
from .lattice import Lattice, LatticeGaugeField
from .links import LinkVariable
from .mcmc import (
    HeatBath,
    LinkUpdater,
    Metropolis,
    Overrelaxation,
    SweepInfo,
    metropolis_accept,
)
from .smearing import ape_smear, hyp_smear, stout_smear

__version__ = "0.1.0"

__all__ = [
    # submodules
    "actions",
    "checkpoint",
    "flow",
    "lattice",
    "lie",
    "smearing",
    # groups and links
    "GaugeGroup",
    "U1",
    "SU",
    "SU2",
    "SU3",
    "group_from_name",
    "LinkVariable",
    # lattice
    "Lattice",
    "LatticeGaugeField",
    # actions
    "ActionCoeffs",
    "WILSON",
    "SYMANZIK",
    "IWASAKI",
    "DBW2",
    "improved_action",
    # updates
    "LinkUpdater",
    "Metropolis",
    "HeatBath",
    "Overrelaxation",
    "SweepInfo",
    "metropolis_accept",
    # smoothing
    "ape_smear",
    "hyp_smear",
    "stout_smear",
    "FlowMethod",
    "FlowParams",
    "FlowTrajectory",
    "flow_step",
    "gradient_flow",
    # persistence
    "save_checkpoint",
    "load_checkpoint",
    # errors
    "GaugeError",
    "TopologyMismatch",
    "BoundaryExceeded",
    "NumericalDegeneracy",
    "ScaleNotBracketed",
]
