"""
Whole-step behaviour of the MUSL solver.
"""
import numpy as np
import pytest
import warp as wp

from mpmsoil.materials import DruckerPragerMaterial, yield_function
from mpmsoil.mpmDomain import MPMDomain
from mpmsoil.simulationRoutines import NumericalInstabilityError

wp.init()
device = "cpu"

GRAVITY = -1.0e-6
COLUMN_TOP = 10.0
COLUMN_BOTTOM = 2.0


def elastic_soil():
    # the cohesion keeps the oedometric K0 state inside the cone
    return DruckerPragerMaterial.from_degrees(1.0e-2, 0.3, 1.0e-3, 30.0, 0.0)


def confined_column(geostatic, damping=0.0, n_workers=1):
    """
    2 x 2 x 8 cell soil column in a cubic-kernel grid: slipping side walls
    (uniaxial strain) and a non-slipping floor.
    """
    domain = MPMDomain("cubic", 7, 7, 14, cell_size=1.0, dt=1.0, damping=damping,
                       n_workers=n_workers, device=device, save_flag=False, verbose=False)
    domain.add_box_particles(0, origin=(2.0, 2.0, COLUMN_BOTTOM), extent=(2.0, 2.0, COLUMN_TOP - COLUMN_BOTTOM),
                             ratio=0.5, density=1.0)
    domain.set_drucker_prager(elastic_soil())
    domain.set_body_force((0.0, 0.0, GRAVITY))
    if geostatic:
        domain.set_geostatic_stress(z_top=COLUMN_TOP)

    domain.set_region_bc([0, 1, 2], range(7), range(14), "slipping", normal=(1.0, 0.0, 0.0))
    domain.set_region_bc([4, 5, 6], range(7), range(14), "slipping", normal=(1.0, 0.0, 0.0))
    domain.set_region_bc(range(7), [0, 1, 2], range(14), "slipping", normal=(0.0, 1.0, 0.0))
    domain.set_region_bc(range(7), [4, 5, 6], range(14), "slipping", normal=(0.0, 1.0, 0.0))
    domain.set_region_bc(range(7), range(7), [0, 1, 2], "non_slipping")
    return domain


def row_stress(domain, data):
    """
    Horizontally averaged stress per particle row, for rows with 2 < depth < 6.

    Rows are grouped by seeding height. The overburden of a row is the mass
    above it, so the expected sigma_zz uses the seeded depth.
    """
    z0 = domain.particles_host.x[:, 2]
    rows = np.unique(z0)
    rows = rows[(COLUMN_TOP - rows > 2.0) & (COLUMN_TOP - rows < 6.0)]
    stress = data["stress"]
    mean = np.array([stress[z0 == z].mean(axis=0) for z in rows])
    expected = 1.0 * GRAVITY * (COLUMN_TOP - rows)
    return mean, expected


def test_single_particle_stays_idle():
    domain = MPMDomain("quadratic", 8, 8, 8, cell_size=0.5, dt=0.1, device=device, save_flag=False, verbose=False)
    domain.add_particles([[2.1, 1.9, 2.0]], volume=0.125, density=2.0)
    domain.set_drucker_prager(DruckerPragerMaterial.from_degrees(1.0e3, 0.25, 0.0, 30.0, 0.0))
    for _ in range(100):
        domain.step()
    data = domain.particle_data()
    np.testing.assert_allclose(data["x"][0], (2.1, 1.9, 2.0), atol=1e-6)
    np.testing.assert_array_equal(data["v"], 0.0)
    np.testing.assert_array_equal(data["stress"], 0.0)
    assert data["plastic_strain"][0] == 0.0
    assert domain.sim.step == 100
    domain.close()


def test_free_body_translates_rigidly():
    domain = MPMDomain("cubic", 16, 10, 10, cell_size=1.0, dt=0.5, device=device, save_flag=False, verbose=False)
    domain.add_box_particles(0, origin=(3.0, 3.0, 3.0), extent=(4.0, 4.0, 4.0), ratio=0.5, density=1.0)
    domain.set_drucker_prager(DruckerPragerMaterial.from_degrees(1.0, 0.3, 0.0, 30.0, 0.0))
    domain.set_velocity((0.1, 0.0, 0.0))
    x0 = domain.particles_host.x.copy()
    for _ in range(20):
        domain.step()
    data = domain.particle_data()
    np.testing.assert_allclose(data["v"], np.broadcast_to((0.1, 0.0, 0.0), data["v"].shape), atol=1e-5)
    np.testing.assert_allclose(data["x"], x0 + (1.0, 0.0, 0.0), atol=1e-4)
    np.testing.assert_allclose(data["stress"], 0.0, atol=1e-6)
    np.testing.assert_allclose(data["volume"], domain.particles_host.volume, rtol=1e-4)
    domain.close()


def test_geostatic_column_stays_in_equilibrium():
    domain = confined_column(geostatic=True, damping=0.2)
    for _ in range(600):
        domain.step()
    data = domain.particle_data()
    # compare against the velocity a settling column reaches, c * strain ~ 1e-4
    assert np.max(np.abs(data["v"])) < 1.0e-5
    mean, expected = row_stress(domain, data)
    # single particles scatter by ~20%, row averages carry the overburden
    np.testing.assert_allclose(mean[:, 2, 2], expected, rtol=0.05)
    # lateral stress follows K0 = nu / (1 - nu)
    np.testing.assert_allclose(mean[:, 0, 0], mean[:, 1, 1], rtol=1e-2)
    np.testing.assert_allclose(mean[:, 0, 0], elastic_soil().k0 * mean[:, 2, 2], rtol=0.15)
    assert np.all(data["plastic_strain"] == 0.0)
    domain.close()


def test_column_settles_to_geostatic_profile():
    domain = confined_column(geostatic=False, damping=0.3, n_workers=2)
    for _ in range(2000):
        domain.step()
    data = domain.particle_data()
    mean, expected = row_stress(domain, data)
    np.testing.assert_allclose(mean[:, 2, 2], expected, rtol=0.08)
    assert np.max(np.abs(data["v"])) < 1.0e-5
    # floor nodes stay fixed, the column keeps its footprint
    assert np.min(data["x"][:, 2]) > COLUMN_BOTTOM
    domain.close()


def test_collapsing_block_respects_yield_surface():
    material = DruckerPragerMaterial.from_degrees(1.0e-2, 0.3, 0.0, 30.0, 0.0)
    domain = MPMDomain("cubic", 20, 8, 12, cell_size=1.0, dt=1.0, device=device, save_flag=False, verbose=False)
    domain.add_box_particles(1, origin=(2.0, 2.0, 2.0), extent=(4.0, 4.0, 6.0), ratio=0.5, density=1.0)
    domain.set_drucker_prager(material)
    domain.set_body_force((0.0, 0.0, -1.0e-4))
    domain.set_geostatic_stress()
    domain.set_region_bc(range(20), [0, 1, 2], range(12), "slipping", normal=(0.0, 1.0, 0.0))
    domain.set_region_bc(range(20), [6, 7], range(12), "slipping", normal=(0.0, 1.0, 0.0))
    domain.set_region_bc([0, 1, 2], range(8), range(12), "slipping", normal=(1.0, 0.0, 0.0))
    # the floor goes last so wall corners keep their vertical support
    domain.set_region_bc(range(20), range(8), [0, 1, 2], "friction", normal=(0.0, 0.0, 1.0), friction=0.5)
    for _ in range(300):
        domain.step()
    data = domain.particle_data()
    alpha_phi, _, k_c = material.cone_constants()
    f = yield_function(data["stress"], alpha_phi, k_c)
    scale = np.maximum(np.abs(data["stress"]).max(axis=(1, 2)), 1e-8)
    assert np.all(f <= 1e-4 * scale)
    assert np.all(np.isfinite(data["x"]))
    # the unsupported +x face runs out and yields
    assert np.max(data["x"][:, 0]) > 6.0
    assert np.max(data["plastic_strain"]) > 0.0
    domain.close()


def test_non_finite_state_aborts_run():
    domain = MPMDomain("linear", 6, 6, 6, cell_size=1.0, device=device, save_flag=False, verbose=False)
    domain.add_particles([[2.5, 2.5, 2.5]], volume=1.0, mass=1.0)
    domain.set_drucker_prager(DruckerPragerMaterial(1.0, 0.3, 1.0))
    domain.set_velocity((np.nan, 0.0, 0.0))
    with pytest.raises(NumericalInstabilityError) as excinfo:
        domain.step()
    assert excinfo.value.step == 1
    assert excinfo.value.particle == 0
    assert "non-finite" in str(excinfo.value)
    domain.close()


def test_particle_leaving_grid_aborts_run():
    domain = MPMDomain("cubic", 8, 8, 8, cell_size=1.0, device=device, save_flag=False, verbose=False)
    domain.add_particles([[3.5, 3.5, 3.5], [4.5, 3.5, 3.5]], volume=1.0, mass=1.0)
    domain.set_drucker_prager(DruckerPragerMaterial(1.0, 0.3, 1.0))
    domain.set_velocity((2.0, 0.0, 0.0))
    with pytest.raises(NumericalInstabilityError) as excinfo:
        domain.step()
    assert excinfo.value.particle == 1
    assert "left the grid" in str(excinfo.value)
    domain.close()


@pytest.mark.parametrize("kwargs", [
    dict(shape="cubic", nx=1, ny=4, nz=4),
    dict(shape="cubic", nx=4, ny=4, nz=4, cell_size=0.0),
    dict(shape="cubic", nx=4, ny=4, nz=4, cell_size=(1.0, -1.0, 1.0)),
    dict(shape=5, nx=4, ny=4, nz=4),
    dict(shape="cubic", nx=4, ny=4, nz=4, dt=0.0),
    dict(shape="cubic", nx=4, ny=4, nz=4, damping=1.0),
    dict(shape="cubic", nx=4, ny=4, nz=4, n_workers=0),
])
def test_bad_domain_configuration(kwargs):
    kwargs.setdefault("device", device)
    with pytest.raises(ValueError):
        MPMDomain(verbose=False, **kwargs)


def test_bad_run_configuration():
    domain = MPMDomain("cubic", 8, 8, 8, cell_size=1.0, device=device, save_flag=False, verbose=False)
    with pytest.raises(ValueError):
        domain.solve_musl(10, 1)  # no particles yet
    domain.add_particles([[0.5, 4.0, 4.0]], volume=1.0, mass=1.0)
    domain.set_drucker_prager(DruckerPragerMaterial(1.0, 0.3, 1.0))
    with pytest.raises(ValueError, match="outside the grid"):
        domain.initialize()
    domain.particles_host.x[0] = (4.0, 4.0, 4.0)
    with pytest.raises(ValueError):
        domain.solve_musl(0, 1)
    with pytest.raises(ValueError):
        domain.solve_musl(10, 0)
    domain.close()


def test_particles_without_material_rejected():
    domain = MPMDomain("linear", 6, 6, 6, device=device, save_flag=False, verbose=False)
    domain.add_particles([[2.5, 2.5, 2.5]], volume=1.0, mass=1.0)
    with pytest.raises(ValueError, match="no material"):
        domain.initialize()
    domain.close()


def test_particle_data_is_a_snapshot():
    domain = MPMDomain("linear", 10, 10, 10, cell_size=1.0, device=device, save_flag=False, verbose=False)
    domain.add_particles([[5.0, 5.0, 5.0]], volume=1.0, mass=1.0, velocity=[[0.1, 0.0, 0.0]])
    domain.set_drucker_prager(DruckerPragerMaterial(1.0, 0.3, 1.0))
    domain.step()
    before = domain.particle_data()
    x_before = before["x"].copy()
    domain.step()
    np.testing.assert_array_equal(before["x"], x_before)
    assert domain.particle_data()["x"][0, 0] > x_before[0, 0]
    domain.close()


def test_instability_names_particle_with_worst_code():
    domain = MPMDomain("cubic", 16, 8, 8, cell_size=1.0, device=device, save_flag=False, verbose=False)
    # particle 0 goes non-finite, particle 1 leaves the grid in the same step
    domain.add_particles([[3.5, 4.0, 4.0], [12.5, 4.0, 4.0]], volume=1.0, mass=1.0,
                         velocity=[[np.nan, 0.0, 0.0], [2.0, 0.0, 0.0]])
    domain.set_drucker_prager(DruckerPragerMaterial(1.0, 0.3, 1.0))
    with pytest.raises(NumericalInstabilityError) as excinfo:
        domain.step()
    assert excinfo.value.particle == 0
    assert "non-finite" in excinfo.value.reason
    codes = domain.particles.particle_health.numpy()
    np.testing.assert_array_equal(codes, [3, 1])
    domain.close()
