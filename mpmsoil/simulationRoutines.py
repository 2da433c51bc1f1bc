import time

import numpy as np
import warp as wp

from mpmsoil import boundaryConditions
from mpmsoil import ioUtils
from mpmsoil import mpmRoutines
from mpmsoil.materials import p_wave_speed


class NumericalInstabilityError(RuntimeError):
    """Raised when the particle state goes non-finite, inverts, or leaves the grid."""

    def __init__(self, step, particle, reason):
        self.step = step
        self.particle = particle
        self.reason = reason
        super().__init__(f"Numerical instability at step {step}, particle {particle}: {reason}")


def compute_material_constants(particles, device):
    wp.launch(
        kernel=mpmRoutines.compute_material_constants,
        dim=particles.nPoints,
        inputs=[
            particles.E,
            particles.nu,
            particles.cohesion,
            particles.friction_angle,
            particles.dilation_angle,
        ],
        outputs=[
            particles.shear_mod,
            particles.bulk_mod,
            particles.alpha_phi,
            particles.alpha_psi,
            particles.k_c,
        ],
        device=device
    )


def p2g(sim, grid, particles, scheduler):
    """Zero the grid, scatter mass/momentum/force, reduce the partial grids."""
    scheduler.node_pass(
        mpmRoutines.reset_grid,
        sim.grid_dims,
        [
            grid.n_partials,
            grid.grid_m,
            grid.grid_mv,
            grid.grid_f,
            grid.grid_v,
            grid.part_m,
            grid.part_mv,
            grid.part_f,
        ],
    )
    scheduler.particle_pass(
        mpmRoutines.p2g_scatter,
        particles.nPoints,
        sim.kernel_geometry() + [
            particles.particle_x,
            particles.particle_v,
            particles.particle_mass,
            particles.particle_vol,
            particles.particle_stress,
            particles.particle_body_force,
            particles.particle_damping,
            grid.part_m,
            grid.part_mv,
            grid.part_f,
        ],
    )
    scheduler.node_pass(
        mpmRoutines.reduce_partials,
        sim.grid_dims,
        [
            grid.n_partials,
            grid.part_m,
            grid.part_mv,
            grid.part_f,
            grid.grid_m,
            grid.grid_mv,
            grid.grid_f,
        ],
    )


def apply_boundary_conditions(sim, grid, scheduler, with_friction):
    scheduler.node_pass(
        boundaryConditions.apply_boundary_conditions,
        sim.grid_dims,
        [
            1 if with_friction else 0,
            sim.min_node_mass,
            grid.grid_m,
            grid.bc_kind,
            grid.bc_normal,
            grid.bc_friction,
            grid.grid_v,
        ],
    )


def grid_update(sim, grid, scheduler):
    """Damped momentum update followed by every boundary condition, friction included."""
    scheduler.node_pass(
        mpmRoutines.update_grid_velocity,
        sim.grid_dims,
        [
            sim.dt,
            sim.damping,
            sim.min_node_mass,
            grid.grid_m,
            grid.grid_mv,
            grid.grid_f,
            grid.grid_v,
        ],
    )
    apply_boundary_conditions(sim, grid, scheduler, with_friction=True)


def g2p(sim, grid, particles, scheduler):
    nx, ny, nz = sim.grid_dims
    scheduler.particle_pass(
        mpmRoutines.g2p,
        particles.nPoints,
        [
            sim.dt,
            sim.shape,
            sim.origin,
            sim.inv_dx,
            nx,
            ny,
            nz,
            sim.min_node_mass,
            grid.grid_m,
            grid.grid_mv,
            grid.grid_v,
            particles.particle_x,
            particles.particle_x_prev,
            particles.particle_v,
        ],
    )


def remap_velocity(sim, grid, particles, scheduler):
    """Second scatter of the updated particle momentum at the start-of-step positions."""
    scheduler.node_pass(
        mpmRoutines.reset_momentum_partials,
        sim.grid_dims,
        [grid.n_partials, grid.part_mv],
    )
    scheduler.particle_pass(
        mpmRoutines.p2g_momentum,
        particles.nPoints,
        sim.kernel_geometry() + [
            particles.particle_x_prev,
            particles.particle_v,
            particles.particle_mass,
            grid.part_mv,
        ],
    )
    scheduler.node_pass(
        mpmRoutines.remap_grid_velocity,
        sim.grid_dims,
        [
            grid.n_partials,
            sim.min_node_mass,
            grid.part_mv,
            grid.grid_m,
            grid.grid_mv,
            grid.grid_v,
        ],
    )
    # kinematic constraints only, friction was spent in the first pass
    apply_boundary_conditions(sim, grid, scheduler, with_friction=False)


def update_stress(sim, grid, particles, scheduler):
    nx, ny, nz = sim.grid_dims
    scheduler.particle_pass(
        mpmRoutines.update_deformation,
        particles.nPoints,
        [
            sim.dt,
            sim.shape,
            sim.origin,
            sim.inv_dx,
            nx,
            ny,
            nz,
            sim.min_node_mass,
            grid.grid_m,
            grid.grid_v,
            particles.particle_x_prev,
            particles.particle_mass,
            particles.particle_F,
            particles.particle_vol,
            particles.particle_density,
            particles.particle_L,
            particles.particle_dstrain,
            particles.particle_stress,
        ],
    )
    scheduler.particle_pass(
        mpmRoutines.drucker_prager_stress_update,
        particles.nPoints,
        [
            particles.particle_stress,
            particles.particle_dstrain,
            particles.shear_mod,
            particles.bulk_mod,
            particles.alpha_phi,
            particles.alpha_psi,
            particles.k_c,
            particles.particle_plastic_strain,
        ],
    )


def check_health(sim, grid, particles, scheduler):
    grid.health_flags.zero_()
    scheduler.particle_pass(
        mpmRoutines.check_particle_health,
        particles.nPoints,
        sim.kernel_geometry() + [
            particles.particle_x,
            particles.particle_v,
            particles.particle_stress,
            particles.particle_F,
            grid.health_flags,
            particles.particle_health,
        ],
    )
    worst = int(np.max(grid.health_flags.numpy()))
    if worst > 0:
        # lowest particle index carrying the most severe code
        particle = int(np.argmax(particles.particle_health.numpy() == worst))
        raise NumericalInstabilityError(sim.step, particle, mpmRoutines.HEALTH_MESSAGES[worst])


def musl_step(sim, grid, particles, scheduler, health_check=True):
    """
    One explicit MUSL step. The order of the phases is fixed:
    P2G -> grid update + BC -> G2P -> momentum re-map + BC -> stress update.
    """
    # 1. Particle-to-grid transfer
    p2g(sim, grid, particles, scheduler)

    # 2. Grid momentum update, damping and boundary conditions
    grid_update(sim, grid, scheduler)

    # 3. Grid-to-particle: FLIP velocity, PIC position
    g2p(sim, grid, particles, scheduler)

    # 4. Re-map the updated momentum to the grid (MUSL)
    remap_velocity(sim, grid, particles, scheduler)

    # 5. Velocity gradient, deformation and Drucker-Prager stress update
    update_stress(sim, grid, particles, scheduler)

    sim.step += 1
    sim.t += sim.dt

    if health_check:
        check_health(sim, grid, particles, scheduler)


def print_cfl_report(sim, particles_host):
    """Wave speed / time step report; returns the CFL number of the stiffest particle."""
    E = particles_host.material["E"]
    nu = particles_host.material["nu"]
    density = particles_host.density
    c_p = p_wave_speed(E, nu, density)
    c_max = float(np.max(c_p))
    dx_min = float(np.min(sim.cell_size))
    cfl_limit = dx_min / c_max
    cfl_number = sim.dt * c_max / dx_min

    E_mean = np.mean(E)
    nu_mean = np.mean(nu)
    K_mean = E_mean / (3 * (1 - 2 * nu_mean))
    G_mean = E_mean / (2 * (1 + nu_mean))

    print(f"\n{'='*60}")
    print("CFL CONDITION ANALYSIS")
    print(f"{'='*60}")
    print(f"Material Properties (mean):")
    print(f"  E = {E_mean:.4e}")
    print(f"  ν = {nu_mean:.3f}")
    print(f"  ρ = {np.mean(density):.4e}")
    print(f"  K = {K_mean:.4e} (bulk modulus)")
    print(f"  G = {G_mean:.4e} (shear modulus)")
    print(f"\nWave Speeds:")
    print(f"  P-wave (fastest particle): c_p = {c_max:.4e}")
    print(f"\nGrid & Time Step:")
    print(f"  dx = {dx_min:.4e} (smallest cell edge)")
    print(f"  dt = {sim.dt:.4e}")
    print(f"\nCFL Analysis:")
    print(f"  CFL limit:  dt < {cfl_limit:.2e}  (for C=1.0)")
    print(f"  CFL number: {cfl_number:.3f}")

    safety_factors = {
        0.5: "Highly stable (conservative)",
        0.3: "Recommended for MPM",
        0.2: "Safe",
        0.1: "Very conservative"
    }
    print(f"\n  Safety Factor Recommendations:")
    for factor, desc in safety_factors.items():
        recommended_dt = factor * cfl_limit
        status = "✅" if sim.dt <= recommended_dt else "⚠️"
        print(f"    {status} C={factor}: dt < {recommended_dt:.2e}  ({desc})")

    if cfl_number < 0.3:
        print(f"\n  ✅ GOOD: Stable for MPM (CFL = {cfl_number:.3f})")
    elif cfl_number < 1.0:
        print(f"\n  ⚠️  MARGINAL: Near stability limit (CFL = {cfl_number:.3f})")
    else:
        print(f"\n  ❌ WARNING: CFL condition violated (CFL = {cfl_number:.3f} > 1.0)!")
        print(f"     Simulation will likely diverge!")
    print(f"{'='*60}\n")
    return cfl_number


def run_musl(sim, grid, particles, scheduler, n_steps, save_interval, save_flag=True,
             output_folder="./output/", verbose=True, status_interval=100):
    """Advance n_steps MUSL steps, writing a snapshot every save_interval steps."""
    if int(n_steps) < 1:
        raise ValueError(f"Number of steps must be >= 1, got {n_steps}")
    if int(save_interval) < 1:
        raise ValueError(f"Save interval must be >= 1, got {save_interval}")

    if save_flag and sim.step == 0:
        ioUtils.save_snapshot(sim, grid, particles, output_folder, verbose=verbose)

    startTime = time.time()
    for counter in range(1, int(n_steps) + 1):
        stepStartTime = time.time()
        musl_step(sim, grid, particles, scheduler)

        if verbose and counter % status_interval == 0:
            v = particles.particle_v.numpy()
            print(f'Step: {sim.step}, simulationTime: {sim.t:.4e}, deltaTime: +{time.time()-stepStartTime:.4f}s, '
                  f'realTime: {time.time()-startTime:.4f}s, max velocity: {np.max(np.linalg.norm(v, axis=1)):.4e}, '
                  f'mean accumulated plastic strain: {np.mean(particles.particle_plastic_strain.numpy()):.4e}')

        if save_flag and (counter % save_interval == 0 or counter == n_steps):
            ioUtils.save_snapshot(sim, grid, particles, output_folder, verbose=verbose)

    if verbose:
        print(f"Finished {n_steps} steps in {time.time()-startTime:.2f}s")
