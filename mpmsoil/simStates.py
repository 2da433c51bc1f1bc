"""
State classes for the MUSL solver
Organizes variables into logical groups for cleaner code structure
"""

import numpy as np
import warp as wp

from mpmsoil.shapeFunctions import resolve_shape, stencil_width


class SimState:
    """Global simulation state - grid geometry, kernel and time stepping"""
    def __init__(self, grid_dims, cell_size, shape, dt=1.0, damping=0.0, origin=(0.0, 0.0, 0.0),
                 device="cpu", min_node_mass=1e-15):
        grid_dims = tuple(int(n) for n in grid_dims)
        if len(grid_dims) != 3 or any(n < 2 for n in grid_dims):
            raise ValueError(f"Grid needs at least two nodes per axis, got {grid_dims}")
        cell_size = np.broadcast_to(np.asarray(cell_size, dtype=np.float64), (3,)).copy()
        if np.any(~np.isfinite(cell_size)) or np.any(cell_size <= 0.0):
            raise ValueError(f"Cell size must be positive, got {cell_size}")
        if not np.isfinite(dt) or dt <= 0.0:
            raise ValueError(f"Time step must be positive, got {dt}")
        if not 0.0 <= damping < 1.0:
            raise ValueError(f"Global damping must lie in [0, 1), got {damping}")

        self.device = device
        self.grid_dims = grid_dims
        self.cell_size = cell_size
        self.origin_np = np.broadcast_to(np.asarray(origin, dtype=np.float64), (3,)).copy()
        self.origin = wp.vec3(*[float(o) for o in self.origin_np])
        self.inv_dx = wp.vec3(*[float(1.0 / h) for h in cell_size])

        # Kernel
        self.shape = resolve_shape(shape)
        self.stencil_width = stencil_width(self.shape)

        # Time stepping
        self.dt = float(dt)
        self.t = 0.0
        self.step = 0

        # Damping and activity threshold
        self.damping = float(damping)
        self.min_node_mass = float(min_node_mass)

    @property
    def grid_extent(self):
        return (np.asarray(self.grid_dims) - 1) * self.cell_size

    def kernel_geometry(self):
        """Shared leading arguments of the stencil kernels."""
        nx, ny, nz = self.grid_dims
        return [self.shape, self.origin, self.inv_dx, nx, ny, nz]


class GridState:
    """Grid node arrays plus per-worker partial accumulators"""
    def __init__(self, grid_dims, n_partials, device="cpu"):
        self.device = device
        self.grid_dims = tuple(grid_dims)
        self.n_partials = int(n_partials)
        partial_dims = (self.n_partials,) + self.grid_dims

        self.grid_m = wp.zeros(shape=self.grid_dims, dtype=float, device=device)
        self.grid_mv = wp.zeros(shape=self.grid_dims, dtype=wp.vec3, device=device)  # momentum
        self.grid_f = wp.zeros(shape=self.grid_dims, dtype=wp.vec3, device=device)
        self.grid_v = wp.zeros(shape=self.grid_dims, dtype=wp.vec3, device=device)

        self.part_m = wp.zeros(shape=partial_dims, dtype=float, device=device)
        self.part_mv = wp.zeros(shape=partial_dims, dtype=wp.vec3, device=device)
        self.part_f = wp.zeros(shape=partial_dims, dtype=wp.vec3, device=device)

        # Boundary conditions (filled by BoundaryRegistry.compile)
        self.bc_kind = wp.zeros(shape=self.grid_dims, dtype=wp.int32, device=device)
        self.bc_normal = wp.zeros(shape=self.grid_dims, dtype=wp.vec3, device=device)
        self.bc_friction = wp.zeros(shape=self.grid_dims, dtype=float, device=device)

        # Health check, worst code per partial/worker
        self.health_flags = wp.zeros(shape=self.n_partials, dtype=wp.int32, device=device)

    @property
    def partial_bytes(self):
        """Memory held by the per-worker partial grids (one float and two vec3 per node and worker)."""
        return self.n_partials * int(np.prod(self.grid_dims)) * 7 * 4

    def set_boundary_arrays(self, bc_kind, bc_normal, bc_friction):
        self.bc_kind = bc_kind
        self.bc_normal = bc_normal
        self.bc_friction = bc_friction


class ParticleState:
    """Particle arrays on the device"""
    def __init__(self, nPoints, device="cpu"):
        self.device = device
        self.nPoints = nPoints

        # Kinematics
        self.particle_x = wp.zeros(shape=nPoints, dtype=wp.vec3, device=device)
        self.particle_x_prev = wp.zeros(shape=nPoints, dtype=wp.vec3, device=device)  # start of step
        self.particle_v = wp.zeros(shape=nPoints, dtype=wp.vec3, device=device)
        self.particle_mass = wp.zeros(shape=nPoints, dtype=float, device=device)
        self.particle_vol = wp.zeros(shape=nPoints, dtype=float, device=device)
        self.particle_density = wp.zeros(shape=nPoints, dtype=float, device=device)
        self.particle_region = wp.zeros(shape=nPoints, dtype=wp.int32, device=device)

        # Deformation and stress
        self.particle_F = wp.zeros(shape=nPoints, dtype=wp.mat33, device=device)
        self.particle_L = wp.zeros(shape=nPoints, dtype=wp.mat33, device=device)  # velocity gradient
        self.particle_dstrain = wp.zeros(shape=nPoints, dtype=wp.mat33, device=device)
        self.particle_stress = wp.zeros(shape=nPoints, dtype=wp.mat33, device=device)
        self.particle_plastic_strain = wp.zeros(shape=nPoints, dtype=float, device=device)
        self.particle_health = wp.zeros(shape=nPoints, dtype=wp.int32, device=device)  # last health code

        # Loading
        self.particle_body_force = wp.zeros(shape=nPoints, dtype=wp.vec3, device=device)
        self.particle_damping = wp.zeros(shape=nPoints, dtype=float, device=device)

        # Material (per particle)
        self.E = None
        self.nu = None
        self.cohesion = None
        self.friction_angle = None
        self.dilation_angle = None
        self.shear_mod = wp.zeros(shape=nPoints, dtype=float, device=device)
        self.bulk_mod = wp.zeros(shape=nPoints, dtype=float, device=device)
        self.alpha_phi = wp.zeros(shape=nPoints, dtype=float, device=device)
        self.alpha_psi = wp.zeros(shape=nPoints, dtype=float, device=device)
        self.k_c = wp.zeros(shape=nPoints, dtype=float, device=device)

    @classmethod
    def from_host(cls, particles, device="cpu"):
        """Upload a ParticleSet; F starts at identity."""
        state = cls(len(particles), device=device)
        state.particle_x = wp.array(np.asarray(particles.x, dtype=np.float32), dtype=wp.vec3, device=device)
        state.particle_x_prev = wp.array(np.asarray(particles.x, dtype=np.float32), dtype=wp.vec3, device=device)
        state.particle_v = wp.array(np.asarray(particles.v, dtype=np.float32), dtype=wp.vec3, device=device)
        state.particle_mass = wp.array(np.asarray(particles.mass, dtype=np.float32), dtype=float, device=device)
        state.particle_vol = wp.array(np.asarray(particles.volume, dtype=np.float32), dtype=float, device=device)
        state.particle_density = wp.array(np.asarray(particles.density, dtype=np.float32), dtype=float, device=device)
        state.particle_region = wp.array(particles.region, dtype=wp.int32, device=device)
        state.particle_stress = wp.array(np.asarray(particles.stress, dtype=np.float32), dtype=wp.mat33, device=device)
        state.particle_F = wp.array(np.tile(np.eye(3, dtype=np.float32), (len(particles), 1, 1)), dtype=wp.mat33, device=device)
        state.particle_body_force = wp.array(np.asarray(particles.body_force, dtype=np.float32), dtype=wp.vec3, device=device)
        state.particle_damping = wp.array(np.asarray(particles.damping, dtype=np.float32), dtype=float, device=device)

        state.E = wp.array(np.asarray(particles.material["E"], dtype=np.float32), dtype=float, device=device)
        state.nu = wp.array(np.asarray(particles.material["nu"], dtype=np.float32), dtype=float, device=device)
        state.cohesion = wp.array(np.asarray(particles.material["cohesion"], dtype=np.float32), dtype=float, device=device)
        state.friction_angle = wp.array(np.asarray(particles.material["friction_angle"], dtype=np.float32), dtype=float, device=device)
        state.dilation_angle = wp.array(np.asarray(particles.material["dilation_angle"], dtype=np.float32), dtype=float, device=device)
        return state

    def to_host(self):
        """Host copies of the particle fields; later steps do not change them."""
        return {
            "x": self.particle_x.numpy().copy(),
            "v": self.particle_v.numpy().copy(),
            "mass": self.particle_mass.numpy().copy(),
            "volume": self.particle_vol.numpy().copy(),
            "density": self.particle_density.numpy().copy(),
            "region": self.particle_region.numpy().copy(),
            "F": self.particle_F.numpy().copy(),
            "stress": self.particle_stress.numpy().copy(),
            "plastic_strain": self.particle_plastic_strain.numpy().copy(),
        }
