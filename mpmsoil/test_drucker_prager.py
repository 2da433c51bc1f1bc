"""
Drucker-Prager return mapping: elastic exactness, consistency (f <= 0 after
every update), apex return and plastic strain bookkeeping.
"""
import numpy as np
import pytest
import warp as wp

from mpmsoil import mpmRoutines
from mpmsoil.materials import DruckerPragerMaterial, drucker_prager_constants, yield_function

wp.init()
device = "cpu"


def run_return_mapping(material, stress, dstrain):
    """Apply one constitutive update per row; returns (stress, plastic strain increment)."""
    stress = np.asarray(stress, dtype=np.float32).reshape(-1, 3, 3)
    dstrain = np.asarray(dstrain, dtype=np.float32).reshape(-1, 3, 3)
    n = stress.shape[0]

    def full(value):
        return wp.array(np.full(n, value, dtype=np.float32), dtype=float, device=device)

    shear_mod = wp.zeros(n, dtype=float, device=device)
    bulk_mod = wp.zeros(n, dtype=float, device=device)
    alpha_phi = wp.zeros(n, dtype=float, device=device)
    alpha_psi = wp.zeros(n, dtype=float, device=device)
    k_c = wp.zeros(n, dtype=float, device=device)
    wp.launch(
        kernel=mpmRoutines.compute_material_constants,
        dim=n,
        inputs=[
            full(material.youngs_modulus),
            full(material.poisson_ratio),
            full(material.cohesion),
            full(material.friction_angle),
            full(material.dilation_angle),
        ],
        outputs=[shear_mod, bulk_mod, alpha_phi, alpha_psi, k_c],
        device=device
    )

    particle_stress = wp.array(stress, dtype=wp.mat33, device=device)
    particle_dstrain = wp.array(dstrain, dtype=wp.mat33, device=device)
    plastic = wp.zeros(n, dtype=float, device=device)
    wp.launch(
        kernel=mpmRoutines.drucker_prager_stress_update,
        dim=n,
        inputs=[0, 0, particle_stress, particle_dstrain, shear_mod, bulk_mod, alpha_phi, alpha_psi, k_c, plastic],
        device=device
    )
    return particle_stress.numpy().astype(np.float64), plastic.numpy().astype(np.float64)


def elastic_trial(material, stress, dstrain):
    G = material.shear_modulus
    lam = material.bulk_modulus - 2.0 / 3.0 * G
    tr = np.trace(dstrain, axis1=-2, axis2=-1)[..., None, None]
    return stress + lam * tr * np.eye(3) + 2.0 * G * dstrain


def random_symmetric(rng, n, scale):
    a = rng.normal(scale=scale, size=(n, 3, 3))
    return 0.5 * (a + np.swapaxes(a, 1, 2))


def test_material_constants_match_host():
    material = DruckerPragerMaterial.from_degrees(2.0e7, 0.25, 1.0e4, 35.0, 5.0)
    alpha_phi, alpha_psi, k_c = material.cone_constants()
    assert alpha_phi == pytest.approx(np.tan(np.radians(35.0)) / np.sqrt(9.0 + 12.0 * np.tan(np.radians(35.0)) ** 2))
    assert k_c == pytest.approx(3.0e4 / np.sqrt(9.0 + 12.0 * np.tan(np.radians(35.0)) ** 2))
    assert alpha_psi < alpha_phi
    assert material.shear_modulus == pytest.approx(8.0e6)
    assert material.bulk_modulus == pytest.approx(2.0e7 / 1.5)
    assert material.k0 == pytest.approx(1.0 / 3.0)


def test_elastic_increment_is_linear_elasticity():
    material = DruckerPragerMaterial.from_degrees(1.0, 0.25, 0.0, 30.0, 0.0)
    stress = -1.0e-3 * np.eye(3)[None]
    dstrain = 1.0e-5 * np.diag([1.0, -0.5, 0.2])[None]
    new_stress, plastic = run_return_mapping(material, stress, dstrain)
    np.testing.assert_allclose(new_stress, elastic_trial(material, stress, dstrain), rtol=1e-5, atol=1e-9)
    assert plastic[0] == 0.0


def test_yield_never_exceeded_after_update():
    rng = np.random.default_rng(42)
    material = DruckerPragerMaterial.from_degrees(1.0e3, 0.3, 0.5, 30.0, 10.0)
    alpha_phi, _, k_c = material.cone_constants()
    n = 500
    stress = random_symmetric(rng, n, 1.0) - 2.0 * np.eye(3)
    dstrain = random_symmetric(rng, n, 5.0e-3)
    trial = elastic_trial(material, stress, dstrain)
    f_trial = yield_function(trial, alpha_phi, k_c)

    new_stress, plastic = run_return_mapping(material, stress, dstrain)
    f_new = yield_function(new_stress, alpha_phi, k_c)
    scale = np.maximum(np.abs(new_stress).max(axis=(1, 2)), 1.0)
    assert np.all(f_new <= 1e-5 * scale)

    elastic = f_trial < -1e-4
    plastic_steps = f_trial > 1e-4
    assert np.any(elastic) and np.any(plastic_steps)
    assert np.all(plastic[elastic] == 0.0)
    assert np.all(plastic[plastic_steps] > 0.0)
    # plastic states end on the yield surface
    np.testing.assert_allclose(f_new[plastic_steps], 0.0, atol=1e-4)
    np.testing.assert_allclose(new_stress, np.swapaxes(new_stress, 1, 2), atol=1e-6)


def test_apex_return_for_hydrostatic_tension():
    material = DruckerPragerMaterial.from_degrees(1.0e3, 0.3, 0.2, 30.0, 0.0)
    alpha_phi, _, k_c = material.cone_constants()
    dstrain = 1.0e-2 * np.eye(3)[None]
    new_stress, plastic = run_return_mapping(material, np.zeros((1, 3, 3)), dstrain)
    apex = k_c / (3.0 * alpha_phi)
    np.testing.assert_allclose(new_stress[0], apex * np.eye(3), rtol=1e-5)
    assert plastic[0] > 0.0


def test_cohesionless_tension_returns_to_zero_stress():
    material = DruckerPragerMaterial.from_degrees(1.0e3, 0.3, 0.0, 35.0, 5.0)
    dstrain = np.diag([2.0e-3, 1.0e-3, 5.0e-3])[None]
    new_stress, plastic = run_return_mapping(material, np.zeros((1, 3, 3)), dstrain)
    np.testing.assert_allclose(new_stress[0], 0.0, atol=1e-6)
    assert plastic[0] > 0.0


def test_pressure_insensitive_cone_caps_shear():
    """phi = 0: sqrt(J2) is capped at k = c"""
    material = DruckerPragerMaterial(1.0e3, 0.3, cohesion=1.0)
    shear = np.zeros((1, 3, 3))
    shear[0, 0, 1] = shear[0, 1, 0] = 1.0e-2
    new_stress, plastic = run_return_mapping(material, np.zeros((1, 3, 3)), shear)
    _, _, k_c = drucker_prager_constants(1.0, 0.0, 0.0)
    assert k_c == pytest.approx(1.0)
    assert new_stress[0, 0, 1] == pytest.approx(1.0, rel=1e-5)
    assert np.trace(new_stress[0]) == pytest.approx(0.0, abs=1e-6)
    # all of the excess shear strain is plastic: dlambda = f / G, norm factor sqrt(0.5)
    G = material.shear_modulus
    f_trial = 2.0 * G * 1.0e-2 - 1.0
    assert plastic[0] == pytest.approx(f_trial / G * np.sqrt(0.5), rel=1e-4)


def test_plastic_strain_accumulates_over_repeated_updates():
    material = DruckerPragerMaterial.from_degrees(1.0e3, 0.3, 0.0, 30.0, 0.0)
    stress = -np.eye(3)[None]
    dstrain = np.zeros((1, 3, 3))
    dstrain[0, 0, 2] = dstrain[0, 2, 0] = 2.0e-3
    total = 0.0
    history = []
    for _ in range(5):
        stress, plastic = run_return_mapping(material, stress, dstrain)
        total += plastic[0]
        history.append(total)
    assert np.all(np.diff(history) >= 0.0)
    assert history[-1] > 0.0


@pytest.mark.parametrize("kwargs", [
    dict(youngs_modulus=0.0, poisson_ratio=0.3),
    dict(youngs_modulus=1.0, poisson_ratio=0.5),
    dict(youngs_modulus=1.0, poisson_ratio=-1.0),
    dict(youngs_modulus=1.0, poisson_ratio=0.3, cohesion=-1.0),
    dict(youngs_modulus=1.0, poisson_ratio=0.3, friction_angle=0.2, dilation_angle=0.3),
])
def test_invalid_material_rejected(kwargs):
    with pytest.raises(ValueError):
        DruckerPragerMaterial(**kwargs)
