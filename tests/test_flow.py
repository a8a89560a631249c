"""
Tests for the Wilson gradient flow and scale setting.
"""

import logging

import numpy as np
import pytest

from gaugex.errors import ScaleNotBracketed
from gaugex.flow import (
    FlowMethod,
    FlowParams,
    FlowTrajectory,
    flow_step,
    gradient_flow,
)
from gaugex.groups import SU2, SU3, U1
from gaugex.lattice import LatticeGaugeField

from .utils import GROUP_IDS, GROUPS, assert_in_group, near_identity_field, random_field


def _trajectory(t, energy):
    t = np.asarray(t, dtype=float)
    energy = np.asarray(energy, dtype=float)
    return FlowTrajectory(t, energy, t**2 * energy)


class TestFlowParams:

    def test_defaults(self):
        params = FlowParams()
        assert params.method is FlowMethod.RK3
        assert params.energy == "clover"

    def test_method_from_string(self):
        assert FlowParams(method="adaptive").method is FlowMethod.ADAPTIVE
        with pytest.raises(ValueError):
            FlowParams(method="rk4")

    @pytest.mark.parametrize(
        "kwargs",
        [
            dict(epsilon=0.0),
            dict(t_max=-1.0),
            dict(max_steps=0),
            dict(max_wall_time=0.0),
            dict(energy="wilson"),
            dict(method=FlowMethod.ADAPTIVE, tolerance=0.0),
            dict(method=FlowMethod.ADAPTIVE, min_step=0.2, max_step=0.1),
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            FlowParams(**kwargs)


class TestFlowStep:

    @pytest.mark.parametrize("group", GROUPS, ids=GROUP_IDS)
    def test_cold_start_is_fixed_point(self, group):
        field = LatticeGaugeField.identity((3, 3, 3, 3), 6.0, group)
        flowed = flow_step(field, 0.1)
        np.testing.assert_allclose(flowed.links, field.links, atol=1e-14)

    @pytest.mark.parametrize("group", GROUPS, ids=GROUP_IDS)
    @pytest.mark.parametrize("method", list(FlowMethod))
    def test_stays_in_group(self, group, method):
        field = random_field((3, 3, 3, 3), group, seed=1)
        flowed = flow_step(field, 0.05, method)
        n = group.matrix_dim
        assert_in_group(flowed.links.reshape(-1, n, n), group)
        assert float(flowed.wilson_action()) < float(field.wilson_action())

    def test_adaptive_step_is_rk3(self):
        field = random_field((3, 3, 3), SU2, seed=2)
        np.testing.assert_array_equal(
            flow_step(field, 0.03, "adaptive").links, flow_step(field, 0.03, "rk3").links
        )

    def test_invalid_step(self):
        field = random_field((3, 3), U1())
        with pytest.raises(ValueError):
            flow_step(field, 0.0)
        with pytest.raises(ValueError):
            flow_step(field, 0.1, "midpoint")

    def test_rk3_more_accurate_than_euler(self):
        field = near_identity_field((3, 3, 3, 3), SU3, seed=3, epsilon=0.4)
        t = 0.1
        reference = field
        for _ in range(40):
            reference = flow_step(reference, t / 40, FlowMethod.RK3)

        def error(method, n):
            out = field
            for _ in range(n):
                out = flow_step(out, t / n, method)
            return float(np.max(np.abs(out.links - reference.links)))

        euler_coarse, euler_fine = error(FlowMethod.EULER, 4), error(FlowMethod.EULER, 8)
        rk3_coarse, rk3_fine = error(FlowMethod.RK3, 4), error(FlowMethod.RK3, 8)
        assert rk3_coarse < euler_coarse
        # first order: halving the step roughly halves the error
        assert 1.5 < euler_coarse / euler_fine < 2.6
        # third order
        assert rk3_coarse / rk3_fine > 4


class TestGradientFlow:

    def test_cold_start_energy_vanishes(self):
        field = LatticeGaugeField.identity((4, 4, 4, 4), 6.0, SU3)
        _, traj = gradient_flow(field, FlowParams(epsilon=0.1, t_max=0.5))
        assert traj.stop_reason == "t_max"
        np.testing.assert_allclose(traj.t, [0.0, 0.1, 0.2, 0.3, 0.4, 0.5], atol=1e-12)
        np.testing.assert_allclose(traj.energy, 0.0, atol=1e-20)

    @pytest.mark.parametrize("energy", ["plaquette", "clover"])
    def test_energy_decreases(self, energy):
        field = near_identity_field((3, 3, 3, 3), SU2, seed=4, epsilon=0.5)
        flowed, traj = gradient_flow(field, FlowParams(epsilon=0.05, t_max=0.3, energy=energy))
        assert np.all(np.diff(traj.energy) < 0)
        assert flowed is not field
        np.testing.assert_allclose(traj.t2_energy, traj.t**2 * traj.energy)
        np.testing.assert_allclose(traj.energy[0], field.energy_density(energy))

    def test_last_step_lands_on_t_max(self):
        field = random_field((3, 3, 3), U1(), seed=5)
        _, traj = gradient_flow(field, FlowParams(epsilon=0.04, t_max=0.1))
        np.testing.assert_allclose(traj.t, [0.0, 0.04, 0.08, 0.1], atol=1e-12)

    def test_max_steps(self, caplog):
        field = random_field((3, 3, 3), SU2, seed=6)
        with caplog.at_level(logging.WARNING, logger="gaugex.flow"):
            _, traj = gradient_flow(
                field, FlowParams(epsilon=0.01, t_max=1.0, max_steps=3)
            )
        assert traj.stop_reason == "max_steps"
        assert len(traj.t) == 4
        assert traj.t[-1] == pytest.approx(0.03)
        assert "max_steps" in caplog.text

    def test_input_untouched(self):
        field = random_field((3, 3, 3), SU2, seed=7)
        before = field.links
        gradient_flow(field, FlowParams(epsilon=0.05, t_max=0.1))
        np.testing.assert_array_equal(field.links, before)


class TestAdaptive:

    def test_matches_fixed_step(self):
        field = near_identity_field((3, 3, 3, 3), SU2, seed=8, epsilon=0.5)
        params = FlowParams(
            epsilon=0.01, t_max=0.3, method="adaptive", tolerance=1e-7, max_step=0.05
        )
        adaptive, traj = gradient_flow(field, params)
        fixed, _ = gradient_flow(field, FlowParams(epsilon=0.01, t_max=0.3))
        assert traj.t[-1] == pytest.approx(0.3)
        steps = np.diff(traj.t)
        assert np.all(steps <= 0.05 + 1e-12)
        # the final step may be cut short to land on t_max
        assert np.all(steps[:-1] >= params.min_step - 1e-12)
        np.testing.assert_allclose(adaptive.links, fixed.links, atol=1e-4)

    def test_step_grows_on_smooth_field(self):
        field = LatticeGaugeField.identity((3, 3, 3, 3), 6.0, SU2)
        params = FlowParams(epsilon=0.001, t_max=0.5, method="adaptive", max_step=0.1)
        _, traj = gradient_flow(field, params)
        assert traj.stop_reason == "t_max"
        assert np.diff(traj.t).max() == pytest.approx(0.1)

    def test_tight_tolerance_pins_at_min_step(self, caplog):
        field = random_field((3, 3, 3), SU3, seed=9)
        params = FlowParams(
            epsilon=0.05,
            t_max=0.1,
            method="adaptive",
            tolerance=1e-30,
            min_step=0.02,
            max_step=0.05,
        )
        with caplog.at_level(logging.WARNING, logger="gaugex.flow"):
            _, traj = gradient_flow(field, params)
        np.testing.assert_allclose(np.diff(traj.t), 0.02)
        assert "min_step" in caplog.text


class TestScales:

    def test_find_t0_interpolates(self):
        # t^2 E = 0.1, 0.2, 0.4 at t = 1, 2, 3
        traj = _trajectory([1.0, 2.0, 3.0], [0.1, 0.05, 0.4 / 9])
        assert traj.find_t0() == pytest.approx(2.5)
        assert traj.find_t0(0.15) == pytest.approx(1.5)

    def test_find_t0_first_crossing(self):
        t = np.array([0.0, 1.0, 2.0, 3.0, 4.0])
        values = np.array([0.0, 0.4, 0.2, 0.5, 0.6])
        traj = FlowTrajectory(t, np.zeros_like(t), values)
        assert traj.find_t0(0.3) == pytest.approx(0.75)

    def test_not_bracketed(self):
        traj = _trajectory([0.0, 0.5, 1.0], [1.0, 0.4, 0.2])
        with pytest.raises(ScaleNotBracketed) as info:
            traj.find_t0()
        assert info.value.target == 0.3
        assert info.value.t_max == 1.0
        assert info.value.max_value == pytest.approx(0.2)

    def test_find_w0(self):
        # t^2 E = t^2 / 2 gives W(t) = t^2, crossing 0.3 at t = sqrt(0.3)
        t = np.linspace(0.0, 1.0, 201)
        traj = FlowTrajectory(t, np.full_like(t, 0.5), 0.5 * t**2)
        t_mid, w = traj.w_function()
        np.testing.assert_allclose(w, t_mid**2, rtol=1e-12)
        assert traj.find_w0() == pytest.approx(0.3**0.25, rel=1e-4)

    def test_find_w0_not_bracketed(self):
        t = np.linspace(0.0, 0.5, 11)
        traj = FlowTrajectory(t, np.full_like(t, 0.5), 0.5 * t**2)
        with pytest.raises(ScaleNotBracketed):
            traj.find_w0()

    def test_single_point_trajectory(self):
        # a trajectory stopped before its first step
        traj = _trajectory([0.0], [0.2])
        with pytest.raises(ScaleNotBracketed):
            traj.find_t0()
        with pytest.raises(ScaleNotBracketed) as info:
            traj.find_w0()
        assert info.value.t_max == 0.0
        assert info.value.max_value is None

    def test_flowed_configuration(self):
        field = random_field((4, 4, 4, 4), SU2, seed=10)
        _, traj = gradient_flow(field, FlowParams(epsilon=0.02, t_max=0.2))
        target = 0.5 * float(traj.t2_energy.max())
        t0 = traj.find_t0(target)
        assert 0 < t0 <= 0.2
        i = np.searchsorted(traj.t, t0)
        assert traj.t2_energy[i - 1] < target <= traj.t2_energy[i]
