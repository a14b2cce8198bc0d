import logging

import numpy as np
import pytest

import adjopt.objective as objective
from adjopt.constitutive import UnknownFormulationError
from adjopt import logger
from adjopt.mesh import SimplexMesh
from adjopt.objective import (StressObjective, ComplianceObjective, PositionObjective,
        TargetObjective, VolumeObjective, VolumePenaltyObjective, SumObjective,
        BarycenterTargetObjective, TransientObjective, BoundarySmoothingObjective,
        create_objective, transient_quadrature_weights)
from adjopt.parameter import ShapeParameter, ElasticParameter, TopologyOptimizationParameter
from adjopt.state import LameParameters, SimulationState

from objective_data import *


def split_body(p):
    return (p[:, 0] > 0.5).astype(np.int_)


def make_state(formulation='LinearElasticity', n=3, scale=0.02, time_steps=0, seed=0):
    mesh = SimplexMesh.from_box([0, 1, 0, 1], nx=n, ny=n, body_id=split_body)
    lame = LameParameters(1.5, 0.8, mesh.number_of_cells())
    state = SimulationState(mesh, formulation, lame, time_steps=time_steps)
    rng = np.random.default_rng(seed)
    for _ in range(time_steps + 1):
        state.cache_step(scale*rng.standard_normal(state.ndof()))
    return state


def fd_gradient(fun, x, h=1e-6):
    """Central differences of `fun()` w.r.t. the entries of the array `x`, modified in place."""
    x = x.reshape(-1)
    g = np.zeros(len(x))
    for i in range(len(x)):
        x[i] += h
        fp = fun()
        x[i] -= 2*h
        fm = fun()
        x[i] += h
        g[i] = (fp - fm)/(2*h)
    return g


@pytest.fixture
def warning_log(caplog, monkeypatch):
    # the package logger does not propagate to the root logger caplog listens on
    monkeypatch.setattr(logger, "propagate", True)
    caplog.set_level(logging.WARNING, logger="adjopt")
    return caplog


class TestTransientInterfaces:
    @pytest.mark.parametrize("data", transient_weights_data)
    def test_weights(self, data):
        w = transient_quadrature_weights(data["time_steps"], data["dt"], data["rule"])
        np.testing.assert_allclose(w, data["weights"], atol=1e-14)

    def test_invalid_rule(self):
        obj = PositionObjective(make_state(), None, {"volume_selection": []})
        with pytest.raises(ValueError):
            TransientObjective(4, 1.0, "step_5", obj)
        with pytest.raises(ValueError):
            TransientObjective(4, 1.0, "midpoint", obj)

    def test_accumulation(self):
        state = make_state(time_steps=2)
        shape = ShapeParameter(state)
        obj = StressObjective(state, shape, None, {"power": 2, "volume_selection": []})
        tobj = TransientObjective(2, 0.5, "trapezoidal", obj)
        w = tobj.get_transient_quadrature_weights()

        values, rhs, grads = [], [], []
        for i in range(3):
            obj.set_time_step(i)
            values.append(obj.value())
            rhs.append(obj.compute_adjoint_rhs_step(state))
            grads.append(obj.compute_partial_gradient(shape))

        np.testing.assert_allclose(tobj.value(), np.dot(w, values))
        np.testing.assert_allclose(tobj.compute_adjoint_rhs(state), np.array(rhs).T*w)
        np.testing.assert_allclose(tobj.compute_partial_gradient(shape), w @ np.array(grads))


class TestCompositeInterfaces:
    def test_sum(self):
        state = make_state()
        shape = ShapeParameter(state)
        objs = [
            StressObjective(state, shape, None, {"power": 2, "volume_selection": [1]}),
            VolumeObjective(shape, {"volume_selection": []}),
            PositionObjective(state, shape, {"volume_selection": []}, dim=1),
        ]
        sobj = SumObjective()
        for obj in objs:
            sobj.add(obj)

        assert sobj.value() == pytest.approx(sum(obj.value() for obj in objs), rel=1e-14)
        np.testing.assert_allclose(sobj.compute_partial_gradient(shape),
                sum(obj.compute_partial_gradient(shape) for obj in objs))
        np.testing.assert_allclose(sobj.compute_adjoint_rhs(state),
                sum(obj.compute_adjoint_rhs(state) for obj in objs))

        assert SumObjective().value() == 0.0
        assert SumObjective().compute_adjoint_rhs(state).shape == (state.ndof(), 1)

    @pytest.mark.parametrize("data", barycenter_data)
    def test_barycenter(self, data):
        state = make_state(scale=0.0)
        state.diff_cached[0].u[:] = np.tile(data["shift"], state.mesh.number_of_nodes())
        shape = ShapeParameter(state)
        obj = BarycenterTargetObjective(state, shape, {"volume_selection": []}, data["target"])

        np.testing.assert_allclose(obj.get_barycenter(), data["center"], atol=1e-12)
        assert obj.value() == pytest.approx(data["value"], abs=1e-12)

    def test_barycenter_gradient(self):
        state = make_state(scale=0.05)
        shape = ShapeParameter(state)
        obj = BarycenterTargetObjective(state, shape, {"volume_selection": [0]}, np.array([0.1, 0.7]))

        grad = obj.compute_partial_gradient(shape)
        fd = fd_gradient(obj.value, state.mesh.node)
        np.testing.assert_allclose(grad, fd, rtol=1e-5, atol=1e-7)

        rhs = obj.compute_adjoint_rhs(state)[:, 0]
        fd = fd_gradient(obj.value, state.diff_cached[0].u)
        np.testing.assert_allclose(rhs, fd, rtol=1e-5, atol=1e-7)

    def test_per_step_target(self):
        state = make_state(scale=0.0, time_steps=1)
        shape = ShapeParameter(state)
        obj = BarycenterTargetObjective(state, shape, {"volume_selection": []},
                np.array([[0.5, 0.5], [0.5, 0.0]]))
        obj.set_time_step(0)
        assert obj.value() == pytest.approx(0.0, abs=1e-12)
        obj.set_time_step(1)
        assert obj.value() == pytest.approx(0.25)

        with pytest.raises(ValueError):
            BarycenterTargetObjective(state, shape, {"volume_selection": []}, np.array([0.5, 0.5, 0.5]))


class TestVolumeInterfaces:
    def test_volume(self):
        state = make_state()
        shape = ShapeParameter(state)
        assert VolumeObjective(shape, {"volume_selection": []}).value() == pytest.approx(1.0)
        assert VolumeObjective(shape, {"volume_selection": [1]}).value() == pytest.approx(0.5)

        with pytest.raises(ValueError):
            VolumeObjective(None, {"volume_selection": []})

    def test_volume_gradient(self):
        state = make_state()
        shape = ShapeParameter(state)
        obj = VolumeObjective(shape, {"volume_selection": [0]})
        grad = obj.compute_partial_gradient(shape)
        fd = fd_gradient(obj.value, state.mesh.node)
        np.testing.assert_allclose(grad, fd, rtol=1e-5, atol=1e-8)

        np.testing.assert_array_equal(obj.compute_adjoint_rhs(state), 0)
        np.testing.assert_array_equal(obj.compute_partial_gradient(ElasticParameter(state)), 0)

    @pytest.mark.parametrize("data", volume_penalty_data)
    def test_volume_penalty(self, data):
        state = make_state()
        shape = ShapeParameter(state)
        obj = VolumePenaltyObjective(shape, {"volume_selection": [], "soft_bound": data["soft_bound"]})
        assert obj.value() == pytest.approx(data["value"], abs=1e-12)

        vobj = VolumeObjective(shape, {"volume_selection": []})
        vol = vobj.value()
        lo, hi = obj.bound
        expected = 0.0 if lo <= vol <= hi else 2*(vol - (lo if vol < lo else hi))
        np.testing.assert_allclose(obj.compute_partial_gradient(shape),
                expected*vobj.compute_partial_gradient(shape), atol=1e-14)

    def test_volume_penalty_at_bound(self):
        state = make_state()
        shape = ShapeParameter(state)
        vol = VolumeObjective(shape, {"volume_selection": []}).value()
        for bound in ([vol, 2*vol], [0.5*vol, vol]):
            obj = VolumePenaltyObjective(shape, {"volume_selection": [], "soft_bound": bound})
            assert obj.value() == 0.0
            np.testing.assert_array_equal(obj.compute_partial_gradient(shape), 0)


class TestStressInterfaces:
    @pytest.mark.parametrize("power", zero_stress_data)
    def test_zero_stress(self, power):
        state = make_state(scale=0.0)
        shape = ShapeParameter(state)
        obj = StressObjective(state, shape, None, {"power": power, "volume_selection": []})
        assert obj.value() == 0.0
        np.testing.assert_array_equal(obj.compute_adjoint_rhs(state), 0)
        np.testing.assert_array_equal(obj.compute_partial_gradient(shape), 0)

    def test_small_integral_warning(self, warning_log):
        state = make_state(scale=0.0)
        obj = StressObjective(state, None, None, {"power": 2, "volume_selection": []},
                has_integral_sqrt=True)
        assert obj.value() == 0.0
        assert not warning_log.records

        with np.errstate(invalid='ignore'):
            obj.compute_adjoint_rhs(state)
        assert any("stress integral too small" in r.getMessage() for r in warning_log.records)
        assert all(r.levelno == logging.WARNING for r in warning_log.records)

    @pytest.mark.parametrize("data", stress_data)
    def test_adjoint_rhs(self, data):
        state = make_state(data["formulation"])
        shape = ShapeParameter(state)
        obj = StressObjective(state, shape, None, {"power": data["power"], "volume_selection": []},
                has_integral_sqrt=data["sqrt"])

        rhs = obj.compute_adjoint_rhs(state)
        assert rhs.shape == (state.ndof(), 1)
        fd = fd_gradient(obj.value, state.diff_cached[0].u)
        np.testing.assert_allclose(rhs[:, 0], fd, rtol=1e-5, atol=1e-8)

    @pytest.mark.parametrize("data", stress_data)
    def test_shape_gradient(self, data):
        state = make_state(data["formulation"])
        shape = ShapeParameter(state)
        obj = StressObjective(state, shape, None, {"power": data["power"], "volume_selection": [1]},
                has_integral_sqrt=data["sqrt"])

        grad = obj.compute_partial_gradient(shape)
        assert grad.shape == (shape.full_dim, )
        fd = fd_gradient(obj.value, state.mesh.node)
        np.testing.assert_allclose(grad, fd, rtol=1e-5, atol=1e-8)

    @pytest.mark.parametrize("data", stress_data[2:])
    def test_elastic_gradient(self, data):
        state = make_state(data["formulation"])
        elastic = ElasticParameter(state)
        obj = StressObjective(state, None, elastic, {"power": data["power"], "volume_selection": []},
                has_integral_sqrt=data["sqrt"])

        grad = obj.compute_partial_gradient(elastic)
        NC = state.mesh.number_of_cells()
        np.testing.assert_allclose(grad[:NC], fd_gradient(obj.value, state.lame.lam), rtol=1e-5, atol=1e-8)
        np.testing.assert_allclose(grad[NC:], fd_gradient(obj.value, state.lame.mu), rtol=1e-5, atol=1e-8)

    def test_surface_stress(self):
        state = make_state()
        state.mesh.set_boundary_id(lambda p: p[:, 0] > 1 - 1e-12, 2)
        shape = ShapeParameter(state)
        obj = StressObjective(state, shape, None, {"power": 2, "surface_selection": [2]})
        assert obj.spatial_integral_type == 'surface'

        fd = fd_gradient(obj.value, state.diff_cached[0].u)
        np.testing.assert_allclose(obj.compute_adjoint_rhs(state)[:, 0], fd, rtol=1e-5, atol=1e-8)
        fd = fd_gradient(obj.value, state.mesh.node)
        np.testing.assert_allclose(obj.compute_partial_gradient(shape), fd, rtol=1e-5, atol=1e-8)

    def test_foreign_state(self):
        state = make_state()
        other = make_state(seed=1)
        obj = StressObjective(state, None, None, {"power": 2, "volume_selection": []})
        np.testing.assert_array_equal(obj.compute_adjoint_rhs(other), 0)

        obj.set_time_step(3)
        with pytest.raises(IndexError):
            obj.value()
        with pytest.raises(IndexError):
            obj.compute_adjoint_rhs(state)


class TestComplianceInterfaces:
    def test_formulation(self):
        state = make_state('NeoHookean')
        with pytest.raises(UnknownFormulationError):
            ComplianceObjective(state, None, None, None, {"volume_selection": []})

    def test_topology_gradient(self):
        state = make_state()
        topo = TopologyOptimizationParameter(state)
        rng = np.random.default_rng(3)
        state.lame.density[:] = rng.uniform(0.5, 1.0, size=topo.full_dim)
        obj = ComplianceObjective(state, None, None, topo, {"volume_selection": []})

        grad = obj.compute_partial_gradient(topo)
        fd = fd_gradient(obj.value, state.lame.density)
        np.testing.assert_allclose(grad, fd, rtol=1e-5, atol=1e-9)

        grad_slot = super(ComplianceObjective, obj)._topology_gradient()
        np.testing.assert_allclose(grad, grad_slot, rtol=1e-10, atol=1e-14)

    def test_shape_and_elastic_gradient(self):
        state = make_state()
        shape = ShapeParameter(state)
        elastic = ElasticParameter(state)
        obj = ComplianceObjective(state, shape, elastic, None, {"volume_selection": []})

        np.testing.assert_allclose(obj.compute_adjoint_rhs(state)[:, 0],
                fd_gradient(obj.value, state.diff_cached[0].u), rtol=1e-5, atol=1e-8)
        np.testing.assert_allclose(obj.compute_partial_gradient(shape),
                fd_gradient(obj.value, state.mesh.node), rtol=1e-5, atol=1e-8)
        NC = state.mesh.number_of_cells()
        np.testing.assert_allclose(obj.compute_partial_gradient(elastic)[:NC],
                fd_gradient(obj.value, state.lame.lam), rtol=1e-5, atol=1e-9)


class TestPositionInterfaces:
    def test_surface_position(self):
        state = make_state(scale=0.0)
        shape = ShapeParameter(state)
        obj = PositionObjective(state, shape, {"surface_selection": []}, dim=0)
        assert obj.value() == pytest.approx(2.0)

        state.diff_cached[0].u[:] = 0.05*np.random.default_rng(2).standard_normal(state.ndof())
        fd = fd_gradient(obj.value, state.mesh.node)
        np.testing.assert_allclose(obj.compute_partial_gradient(shape), fd, rtol=1e-5, atol=1e-8)

    def test_set_dim(self):
        state = make_state()
        obj = PositionObjective(state, None, {"volume_selection": []})
        with pytest.raises(ValueError):
            obj.set_dim(2)
        with pytest.raises(ValueError):
            PositionObjective(make_state('Laplacian'), None, {"volume_selection": []})

    def test_dispatch_by_identity(self):
        state = make_state()
        shape = ShapeParameter(state)
        other = ShapeParameter(state)
        obj = PositionObjective(state, shape, {"volume_selection": []}, dim=1)

        assert shape.same_as(shape) and not shape.same_as(other) and not shape.same_as(None)
        assert np.any(obj.compute_partial_gradient(shape) != 0)
        np.testing.assert_array_equal(obj.compute_partial_gradient(other), 0)


class TestTargetInterfaces:
    def test_value(self):
        state = make_state(scale=0.0)
        ref = SimulationState(state.mesh.copy(), 'LinearElasticity')
        ref.cache_step(np.zeros(ref.ndof()))
        shape = ShapeParameter(state)

        obj = TargetObjective(state, shape, {"volume_selection": []})
        with pytest.raises(RuntimeError):
            obj.value()
        obj.set_reference(ref)
        assert obj.value() == pytest.approx(0.0, abs=1e-14)

        c = np.array([0.1, -0.3])
        state.diff_cached[0].u[:] = np.tile(c, state.mesh.number_of_nodes())
        assert obj.value() == pytest.approx(np.dot(c, c))

    def test_gradient(self):
        state = make_state(scale=0.05)
        ref = make_state(scale=0.05, seed=4)
        shape = ShapeParameter(state)
        obj = TargetObjective(state, shape, {"volume_selection": [1]})
        obj.set_reference(ref, {1})

        np.testing.assert_allclose(obj.compute_adjoint_rhs(state)[:, 0],
                fd_gradient(obj.value, state.diff_cached[0].u), rtol=1e-5, atol=1e-8)
        np.testing.assert_allclose(obj.compute_partial_gradient(shape),
                fd_gradient(obj.value, state.mesh.node), rtol=1e-5, atol=1e-8)

    def test_mismatch(self):
        state = make_state()
        ref = SimulationState(SimplexMesh.from_box([0, 1, 0, 1], nx=2, ny=2, body_id=split_body))
        ref.cache_step(np.zeros(ref.ndof()))
        obj = TargetObjective(state, None, {"volume_selection": []})
        with pytest.raises(ValueError):
            obj.set_reference(ref)


class TestSmoothingInterfaces:
    @pytest.mark.parametrize("data", smoothing_data)
    def test_gradient(self, data):
        state = make_state()
        rng = np.random.default_rng(5)
        state.mesh.node += 0.02*rng.standard_normal(state.mesh.node.shape)
        shape = ShapeParameter(state)
        obj = BoundarySmoothingObjective(shape, {"scale_invariant": data["scale_invariant"],
                "power": data["power"]})

        assert obj.value() > 0
        grad = obj.compute_partial_gradient(shape)
        fd = fd_gradient(obj.value, state.mesh.node, h=1e-7)
        np.testing.assert_allclose(grad, fd, rtol=1e-5, atol=1e-7)

        np.testing.assert_array_equal(obj.compute_partial_gradient(ShapeParameter(state)), 0)
        np.testing.assert_array_equal(obj.compute_adjoint_rhs(state), 0)

    def test_straight_boundary(self):
        state = make_state()
        shape = ShapeParameter(state)
        obj = BoundarySmoothingObjective(shape, {"scale_invariant": True, "power": 2})
        # only the four corners are not flat
        assert obj.value() == pytest.approx(4*0.5)

    def test_degenerate_warning(self, warning_log):
        state = make_state()
        shape = ShapeParameter(state)
        obj = BoundarySmoothingObjective(shape, {"scale_invariant": True, "power": 2})
        b = shape.get_boundary_nodes()[0]
        state.mesh.node[obj._neighbors(b)] = state.mesh.node[b]

        obj.compute_partial_gradient(shape)
        assert any(f"Boundary vertex {b} has near-zero" in r.getMessage() for r in warning_log.records)

    def test_flat_power_warning(self, warning_log):
        state = make_state()
        shape = ShapeParameter(state)
        obj = BoundarySmoothingObjective(shape, {"scale_invariant": True, "power": 1})
        assert obj.value() == pytest.approx(4*np.sqrt(0.5))
        assert not warning_log.records

        obj.compute_partial_gradient(shape)
        assert any("is flat and power 1 < 2" in r.getMessage() for r in warning_log.records)

        obj = BoundarySmoothingObjective(shape, {"scale_invariant": True, "power": 2})
        warning_log.clear()
        assert np.all(np.isfinite(obj.compute_partial_gradient(shape)))
        assert not warning_log.records

    def test_inactive_vertices(self):
        state = make_state()
        rng = np.random.default_rng(6)
        state.mesh.node += 0.02*rng.standard_normal(state.mesh.node.shape)
        shape = ShapeParameter(state, active_mask=np.zeros(state.mesh.number_of_nodes(), dtype=np.bool_))
        for scale_invariant in (False, True):
            obj = BoundarySmoothingObjective(shape, {"scale_invariant": scale_invariant})
            assert obj.value() == 0.0
            np.testing.assert_array_equal(obj.compute_partial_gradient(shape), 0)


class TestThreadedAssemblyInterfaces:
    @pytest.mark.parametrize("data", threaded_data)
    def test_threads(self, data):
        state = make_state(data["formulation"], n=6, scale=0.05)
        params = [ShapeParameter(state), ElasticParameter(state), TopologyOptimizationParameter(state)]
        serial = create_objective(data["args"], state, *params)
        threaded = create_objective(dict(data["args"], nthreads=4), state, *params)
        assert threaded.alg.nthreads == 4

        assert threaded.value() == pytest.approx(serial.value(), rel=1e-12)
        np.testing.assert_allclose(threaded.compute_adjoint_rhs(state),
                serial.compute_adjoint_rhs(state), rtol=1e-10, atol=1e-14)
        for param in params:
            np.testing.assert_allclose(threaded.compute_partial_gradient(param),
                    serial.compute_partial_gradient(param), rtol=1e-10, atol=1e-14)


class TestObjectiveInterfaces:
    def test_total_gradient(self):
        state = make_state()
        shape = ShapeParameter(state)
        ones = lambda s, p: np.ones(p.full_dim)
        state._adjoint_term = ones
        obj = VolumeObjective(shape, {"volume_selection": []})

        with pytest.raises(RuntimeError):
            obj.total_gradient(shape, [state])

        state.set_adjoint(np.zeros((state.ndof(), 1)))
        np.testing.assert_allclose(obj.total_gradient(shape, [state]),
                obj.compute_partial_gradient(shape) + 1)
        np.testing.assert_allclose(obj.total_gradient(shape, [make_state(seed=1)]),
                obj.compute_partial_gradient(shape))

    @pytest.mark.parametrize("data", factory_data)
    def test_create_objective(self, data):
        state = make_state()
        shape = ShapeParameter(state)
        obj = create_objective(data["args"], state, shape_param=shape)
        assert isinstance(obj, getattr(objective, data["cls"]))
        assert np.isfinite(obj.value())

    @pytest.mark.parametrize("data", invalid_factory_data)
    def test_invalid_objective(self, data):
        state = make_state()
        with pytest.raises(data["error"]):
            create_objective(data["args"], state, shape_param=ShapeParameter(state))

    def test_create_transient(self):
        state = make_state(time_steps=4)
        args = {"type": "stress", "power": 2, "volume_selection": [], "transient_integral_type": "final"}
        obj = create_objective(args, state)
        assert isinstance(obj, TransientObjective)
        stress = obj.obj
        stress.set_time_step(4)
        assert obj.value() == pytest.approx(stress.value())

        args["transient_integral_type"] = "step_7"
        with pytest.raises(ValueError):
            create_objective(args, state)

    def test_create_target(self):
        state = make_state()
        obj = create_objective({"type": "target", "volume_selection": []}, state, reference=state)
        assert obj.value() == pytest.approx(0.0, abs=1e-14)

        obj = create_objective({"type": "center-target", "volume_selection": []}, state,
                shape_param=ShapeParameter(state), target=[0.5, 0.5])
        assert obj.value() < 1e-3


if __name__ == "__main__":
    pytest.main(["./test_objective.py", "-k", "TestStressInterfaces"])
