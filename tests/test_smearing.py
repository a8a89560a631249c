"""
Tests for APE, HYP and stout smearing.
"""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from gaugex.errors import NumericalDegeneracy
from gaugex.flow import FlowMethod, flow_step
from gaugex.groups import SU2, SU3, U1
from gaugex.smearing import ape_smear, hyp_smear, stout_generator, stout_smear

from .utils import (
    ATOL,
    GROUP_IDS,
    GROUPS,
    assert_anti_hermitian,
    assert_in_group,
    random_field,
)


def _flat(field):
    n = field.matrix_dim
    return field.links.reshape(-1, n, n)


SMEARINGS = {
    "ape": lambda field: ape_smear(field, 0.5, n_steps=2),
    "ape_all": lambda field: ape_smear(field, 0.4, temporal_dir=None),
    "hyp": lambda field: hyp_smear(field),
    "stout": lambda field: stout_smear(field, 0.1, n_steps=2),
}


class TestCommon:

    @pytest.mark.parametrize("group", GROUPS, ids=GROUP_IDS)
    @pytest.mark.parametrize("name", sorted(SMEARINGS))
    def test_stays_in_group_and_smooths(self, group, name):
        field = random_field((3, 3, 3, 3), group, seed=1)
        smeared = SMEARINGS[name](field)
        assert_in_group(_flat(smeared), group)
        if name == "ape":
            # only spatial plaquettes are smoothed
            assert smeared.spatial_plaquette() > field.spatial_plaquette()
        else:
            assert smeared.average_plaquette() > field.average_plaquette()

    @pytest.mark.parametrize("name", sorted(SMEARINGS))
    def test_input_untouched(self, name):
        field = random_field((3, 3, 3), SU2, seed=2)
        before = field.links
        smeared = SMEARINGS[name](field)
        assert smeared is not field
        np.testing.assert_array_equal(field.links, before)

    @pytest.mark.parametrize("group", GROUPS, ids=GROUP_IDS)
    @pytest.mark.parametrize("name", sorted(SMEARINGS))
    def test_gauge_covariant(self, group, name, rng_key):
        field = random_field((3, 3, 3, 3), group, seed=3)
        gs = group.random(rng_key, field.shape)
        first = SMEARINGS[name](field.gauge_transform(gs))
        second = SMEARINGS[name](field).gauge_transform(gs)
        np.testing.assert_allclose(first.links, second.links, atol=1e-9)

    @pytest.mark.parametrize("name", sorted(SMEARINGS))
    def test_open_boundaries(self, name):
        field = random_field((3, 4, 3), SU3, seed=4, periodic=(True, False, True))
        smeared = SMEARINGS[name](field)
        assert_in_group(_flat(smeared), SU3)
        np.testing.assert_array_equal(
            smeared.links[:, 3, :, 1], np.broadcast_to(np.eye(3), (3, 3, 3, 3))
        )

    def test_zero_steps(self):
        field = random_field((3, 3), SU2)
        for smeared in [
            ape_smear(field, 0.5, 0, temporal_dir=None),
            hyp_smear(field, n_steps=0),
            stout_smear(field, 0.1, 0),
        ]:
            np.testing.assert_array_equal(smeared.links, field.links)
        with pytest.raises(ValueError):
            stout_smear(field, 0.1, -1)


class TestAPE:

    def test_temporal_links_unchanged(self):
        field = random_field((4, 3, 3), SU3, seed=5)
        smeared = ape_smear(field, 0.6, n_steps=3, temporal_dir=0)
        np.testing.assert_array_equal(smeared.links[..., 0, :, :], field.links[..., 0, :, :])
        assert not np.allclose(smeared.links[..., 1, :, :], field.links[..., 1, :, :])

    def test_zero_alpha_is_identity(self):
        field = random_field((3, 3, 3), SU3, seed=6)
        smeared = ape_smear(field, 0.0, n_steps=2, temporal_dir=None)
        np.testing.assert_allclose(smeared.links, field.links, atol=ATOL)

    def test_needs_two_directions(self):
        field = random_field((3, 3), U1())
        with pytest.raises(ValueError, match="two smeared directions"):
            ape_smear(field, 0.5)
        with pytest.raises(ValueError):
            ape_smear(field, 0.5, temporal_dir=2)

    def test_u1_formula(self):
        field = random_field((3, 3), U1(), seed=7)
        alpha = 0.3
        smeared = ape_smear(field, alpha, temporal_dir=None)
        c = jnp.conj(field.staple((1, 2), 0)[0, 0])
        blend = (1 - alpha) * field.links[1, 2, 0, 0, 0] + alpha / 2 * c
        np.testing.assert_allclose(
            smeared.links[1, 2, 0, 0, 0], blend / jnp.abs(blend), atol=ATOL
        )

    def test_degenerate_projection(self):
        field = random_field((3, 3, 3), SU2, seed=8)
        field.links = field.links.at[1, 1, 1, 0].set(jnp.nan)
        with pytest.raises(NumericalDegeneracy):
            ape_smear(field, 0.5, temporal_dir=None)


class TestHYP:

    def test_zero_weights_is_identity(self):
        field = random_field((3, 3, 3, 3), SU2, seed=9)
        smeared = hyp_smear(field, alphas=(0.0, 0.0, 0.0))
        np.testing.assert_allclose(smeared.links, field.links, atol=ATOL)

    def test_only_outer_level(self):
        # with the inner levels switched off HYP is one APE step over all directions
        field = random_field((3, 3, 3, 3), SU3, seed=10)
        hyp = hyp_smear(field, alphas=(0.45, 0.0, 0.0))
        ape = ape_smear(field, 0.45, temporal_dir=None)
        np.testing.assert_allclose(hyp.links, ape.links, atol=1e-9)

    def test_three_dimensions(self):
        # the innermost level has no staples in three dimensions
        field = random_field((3, 3, 3), SU2, seed=11)
        smeared = hyp_smear(field, alphas=(0.75, 0.6, 0.3))
        assert_in_group(_flat(smeared), SU2)

    def test_needs_three_weights(self):
        field = random_field((3, 3, 3), SU2)
        with pytest.raises(ValueError, match="three weights"):
            hyp_smear(field, alphas=(0.5, 0.5))


class TestStout:

    @pytest.mark.parametrize("group", GROUPS, ids=GROUP_IDS)
    def test_zero_rho_is_identity(self, group):
        field = random_field((3, 3, 3), group, seed=12)
        smeared = stout_smear(field, 0.0)
        np.testing.assert_allclose(smeared.links, field.links, atol=ATOL)

    @pytest.mark.parametrize("group", GROUPS, ids=GROUP_IDS)
    def test_generator_in_algebra(self, group):
        field = random_field((3, 3, 3), group, seed=13)
        z = stout_generator(field.links, 1, group, field.lattice)
        assert_anti_hermitian(z)
        if not group.is_abelian:
            np.testing.assert_allclose(jnp.trace(z, axis1=-2, axis2=-1), 0, atol=ATOL)

    @pytest.mark.parametrize("group", GROUPS, ids=GROUP_IDS)
    def test_matches_euler_flow_step(self, group):
        field = random_field((3, 3, 3, 3), group, seed=14)
        eps = 0.02
        smeared = stout_smear(field, eps)
        flowed = flow_step(field, eps, FlowMethod.EULER)
        np.testing.assert_allclose(smeared.links, flowed.links, atol=1e-12)

    def test_small_step_lowers_action(self):
        field = random_field((3, 3, 3, 3), SU3, seed=15)
        smeared = stout_smear(field, 0.01)
        assert float(smeared.wilson_action()) < float(field.wilson_action())

    def test_spatial_only(self):
        field = random_field((3, 3, 3), SU2, seed=16)
        smeared = stout_smear(field, 0.1, temporal_dir=0)
        np.testing.assert_array_equal(smeared.links[..., 0, :, :], field.links[..., 0, :, :])

    def test_non_finite_raises(self):
        field = random_field((3, 3, 3), SU2, seed=17)
        field.links = field.links.at[0, 0, 0, 1].set(jnp.inf)
        with pytest.raises(NumericalDegeneracy):
            stout_smear(field, 0.1)
