"""
Saving and restoring gauge configurations.

Checkpoints are numpy ``.npz`` archives holding the lattice extents and
periodicity, the gauge group name, ``beta`` and the dense link array in
storage order (sites lexicographic, then direction). Loading one
reproduces the field exactly.
"""

import logging
import os

import numpy as np

from .errors import TopologyMismatch
from .groups import group_from_name
from .lattice import Lattice, LatticeGaugeField

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


def _npz_path(path):
    path = os.fspath(path)
    return path if path.endswith(".npz") else path + ".npz"


def save_checkpoint(path: str | os.PathLike, field: LatticeGaugeField):
    """Write ``field`` to ``path``, adding a ``.npz`` suffix if missing."""
    path = _npz_path(path)
    np.savez(
        path,
        format_version=np.int64(FORMAT_VERSION),
        shape=np.asarray(field.shape, dtype=np.int64),
        periodic=np.asarray(field.lattice.periodic, dtype=bool),
        group=np.str_(field.group.name),
        beta=np.float64(field.beta),
        links=np.asarray(field.links),
    )
    logger.info("saved %r to %s", field, path)


def load_checkpoint(path: str | os.PathLike) -> LatticeGaugeField:
    """Restore a field written by :func:`save_checkpoint`.

    Raises:
        ValueError: On an unknown format version or group.
        TopologyMismatch: If the link array does not fit the stored lattice.
    """
    path = _npz_path(path)
    with np.load(path, allow_pickle=False) as data:
        version = int(data["format_version"])
        if version != FORMAT_VERSION:
            raise ValueError(
                f"unsupported checkpoint format {version} (expected {FORMAT_VERSION})"
            )
        lattice = Lattice(
            tuple(int(s) for s in data["shape"]),
            tuple(bool(p) for p in data["periodic"]),
        )
        group = group_from_name(str(data["group"]))
        beta = float(data["beta"])
        links = data["links"]

    n = group.matrix_dim
    expected = lattice.shape + (lattice.dim, n, n)
    if links.shape != expected:
        raise TopologyMismatch(
            f"checkpoint links have shape {links.shape}, expected {expected}"
        )
    field = LatticeGaugeField(lattice, group, links, beta)
    logger.info("loaded %r from %s", field, path)
    return field
