"""
MPMDomain: grid, particles, materials and boundaries of one MUSL simulation.

Typical use::

    domain = MPMDomain("cubic", 60, 12, 24, cell_size=1.0, dt=1.0)
    domain.add_box_particles(0, origin=(2, 2, 3), extent=(20, 8, 10), ratio=0.25, density=1.0)
    domain.set_drucker_prager(DruckerPragerMaterial.from_degrees(1e3, 0.3, 0.0, 30.0, 0.0))
    domain.set_body_force((0.0, 0.0, -1e-4))
    domain.set_geostatic_stress(z_top=13.0)
    domain.set_region_bc(range(60), range(12), range(0, 5), "friction", normal=(0, 0, -1), friction=0.5)
    domain.solve_musl(n_steps=5000, save_interval=100)
"""

import numpy as np
import warp as wp

from mpmsoil import simulationRoutines
from mpmsoil.boundaryConditions import BoundaryRegistry
from mpmsoil.particleSeeding import ParticleSet
from mpmsoil.phaseScheduler import PhaseScheduler
from mpmsoil.shapeFunctions import stencil_inside_grid
from mpmsoil.simStates import GridState, ParticleState, SimState


class MPMDomain:
    def __init__(self, shape, nx, ny, nz, cell_size=1.0, origin=(0.0, 0.0, 0.0), dt=1.0, damping=0.0,
                 n_workers=1, device="cpu", output_folder="./output/", save_flag=True, verbose=True):
        wp.init()
        self.sim = SimState((nx, ny, nz), cell_size, shape, dt=dt, damping=damping, origin=origin, device=device)
        self.scheduler = PhaseScheduler(device, n_workers)
        self.grid = GridState(self.sim.grid_dims, self.scheduler.n_partials, device=device)
        self.boundaries = BoundaryRegistry(self.sim.grid_dims)
        self.particles_host = ParticleSet()
        self.particles = None  # ParticleState, created by initialize()

        self.device = device
        self.output_folder = output_folder
        self.save_flag = save_flag
        self.verbose = verbose

        if verbose:
            print(f'GRID: {self.sim.grid_dims}, cell size: {self.sim.cell_size}, shape function: {self.sim.shape}, '
                  f'device: {device}, workers: {self.scheduler.n_workers}, '
                  f'partial grids: {self.grid.partial_bytes / 1e9:.3f} GB')

    # ---- seeding & material pass ----

    def _check_staging(self):
        if self.particles is not None:
            raise ValueError("Particles were already uploaded; seed and assign materials before the run starts")

    def add_box_particles(self, region, origin, extent, ratio, mass=None, density=None):
        self._check_staging()
        return self.particles_host.add_box(region, origin, extent, ratio, self.sim.cell_size, mass=mass, density=density)

    def add_particles(self, x, volume, mass=None, density=None, region=-1, velocity=None):
        self._check_staging()
        return self.particles_host.add_particles(x, volume, mass=mass, density=density, region=region, velocity=velocity)

    def set_drucker_prager(self, material, region=None):
        self._check_staging()
        self.particles_host.assign_material(material, region)

    def set_body_force(self, body_force, region=None):
        self._check_staging()
        self.particles_host.assign_body_force(body_force, region)

    def set_particle_damping(self, damping, region=None):
        self._check_staging()
        self.particles_host.assign_damping(damping, region)

    def set_velocity(self, velocity, region=None):
        self._check_staging()
        self.particles_host.assign_velocity(velocity, region)

    def set_stress(self, stress, region=None):
        self._check_staging()
        self.particles_host.assign_stress(stress, region)

    def set_geostatic_stress(self, z_top=None, K0=None, region=None):
        self._check_staging()
        if z_top is None:
            z_top = float(np.max(self.particles_host.x[self.particles_host.select(region), 2]))
        self.particles_host.assign_geostatic_stress(z_top, K0=K0, region=region)

    # ---- boundary conditions ----

    def set_free_bc(self, i, j, k):
        self.boundaries.set_free(i, j, k)

    def set_slipping_bc(self, i, j, k, normal):
        self.boundaries.set_slipping(i, j, k, normal)

    def set_non_slipping_bc(self, i, j, k):
        self.boundaries.set_non_slipping(i, j, k)

    def set_friction_bc(self, i, j, k, friction, normal):
        self.boundaries.set_friction(i, j, k, friction, normal)

    def set_region_bc(self, i_range, j_range, k_range, kind, normal=None, friction=0.0):
        self.boundaries.set_region(i_range, j_range, k_range, kind, normal=normal, friction=friction)

    # ---- run ----

    def initialize(self):
        """Validate and upload the staged particles, compile boundaries, derive material constants."""
        if self.particles is not None:
            return
        host = self.particles_host
        host.check_ready()
        inside = stencil_inside_grid(host.x, self.sim.shape, self.sim.origin_np, self.sim.cell_size, self.sim.grid_dims)
        if not np.all(inside):
            outside = np.flatnonzero(~inside)
            raise ValueError(
                f"{outside.size} particles have a stencil outside the grid (first index {outside[0]} at {host.x[outside[0]]})"
            )
        # nodes touched only by a vanishing weight stay inactive
        self.sim.min_node_mass = max(self.sim.min_node_mass, 1e-9 * float(np.min(host.mass)))

        self.particles = ParticleState.from_host(host, device=self.device)
        self.grid.set_boundary_arrays(*self.boundaries.compile(self.device))
        simulationRoutines.compute_material_constants(self.particles, self.device)

        if self.verbose:
            print(f"Number of particles: {len(host)}")
            print(f"Boundary nodes: {self.boundaries.summary()}")
            simulationRoutines.print_cfl_report(self.sim, host)

    def step(self):
        self.initialize()
        simulationRoutines.musl_step(self.sim, self.grid, self.particles, self.scheduler)

    def solve_musl(self, n_steps, save_interval):
        self.initialize()
        simulationRoutines.run_musl(
            self.sim,
            self.grid,
            self.particles,
            self.scheduler,
            n_steps,
            save_interval,
            save_flag=self.save_flag,
            output_folder=self.output_folder,
            verbose=self.verbose,
        )

    def particle_data(self):
        """Host copy of the particle state."""
        self.initialize()
        return self.particles.to_host()

    def close(self):
        self.scheduler.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
