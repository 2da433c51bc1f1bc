import numpy as np
import pytest
import warp as wp

from mpmsoil.boundaryConditions import BC_FREE, BC_FRICTION, BC_NON_SLIPPING, BC_SLIPPING
from mpmsoil.getArgs import get_args
from runMPMSoil import build_domain

wp.init()

SMALL_BOX = [
    "--verbose", "0", "--saveFlag", "0", "--device", "cpu",
    "--nx", "20", "--ny", "8", "--nz", "12",
    "--boxOrigin", "3", "2", "3", "--boxExtent", "6", "4", "5", "--ratio", "0.5",
    "--E", "1e-2", "--gravity", "-1e-4", "--frictionAngle", "30",
]


def test_box_boundary_layout():
    domain = build_domain(get_args(SMALL_BOX))
    bc = domain.boundaries
    # back wall directly behind the box holds every component
    assert bc.get(3, 4, 6).kind == BC_NON_SLIPPING
    assert bc.get(2, 4, 1).kind == BC_NON_SLIPPING
    # floor nodes under the side walls keep the floor constraint
    assert bc.get(10, 2, 3).kind == BC_FRICTION
    assert bc.get(10, 7, 0).kind == BC_FRICTION
    assert bc.get(10, 2, 6).kind == BC_SLIPPING
    assert bc.get(10, 6, 6).kind == BC_SLIPPING
    # the run-out side stays open
    assert bc.get(15, 4, 6).kind == BC_FREE
    assert bc.get(19, 4, 6).kind == BC_FREE
    assert bc.get(10, 4, 3).friction == pytest.approx(np.tan(np.radians(30.0)))
    domain.close()

    domain = build_domain(get_args(SMALL_BOX + ["--frontWall", "1"]))
    assert domain.boundaries.get(9, 4, 6).kind == BC_SLIPPING
    assert domain.boundaries.get(9, 4, 3).kind == BC_FRICTION
    domain.close()


def test_box_collapse_stays_above_floor():
    domain = build_domain(get_args(SMALL_BOX))
    for _ in range(300):
        domain.step()
    start = domain.particles_host.x
    data = domain.particle_data()
    floor = 3.0
    assert np.min(data["x"][:, 2]) > floor
    # the block runs out over the open +x side, the back wall holds
    assert np.max(data["x"][:, 0]) > np.max(start[:, 0]) + 0.1
    assert np.min(data["x"][:, 0]) > 3.0
    domain.close()
