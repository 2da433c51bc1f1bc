import numpy as np
import warp as wp

from mpmsoil.getArgs import get_args
from mpmsoil.materials import DruckerPragerMaterial
from mpmsoil.mpmDomain import MPMDomain
from mpmsoil.particleSeeding import load_domain_hdf5


def node_index(coordinate, origin, cell_size):
    return int(np.rint((coordinate - origin) / cell_size))


def apply_box_boundaries(domain, args, box_min, box_max):
    """
    Slipping walls on both y faces, a frictional floor under the soil and a
    non-slipping wall directly behind the box (-x). The +x face is left free
    unless frontWall is set, which adds a slipping wall there.

    Later assignments overwrite earlier ones, so the floor follows the side
    walls (every floor node keeps its vertical constraint) and the back wall
    goes last.
    """
    nx, ny, nz = domain.sim.grid_dims
    h = domain.sim.cell_size
    o = domain.sim.origin_np
    mu = args.floorFriction if args.floorFriction is not None else float(np.tan(np.radians(args.frictionAngle)))

    k_floor = node_index(box_min[2], o[2], h[2])
    j_lo = node_index(box_min[1], o[1], h[1])
    j_hi = node_index(box_max[1], o[1], h[1])
    i_lo = node_index(box_min[0], o[0], h[0])
    i_hi = node_index(box_max[0], o[0], h[0])

    domain.set_region_bc(range(nx), range(0, j_lo + 1), range(nz), "slipping", normal=(0.0, -1.0, 0.0))
    domain.set_region_bc(range(nx), range(j_hi, ny), range(nz), "slipping", normal=(0.0, 1.0, 0.0))
    if args.frontWall:
        domain.set_region_bc(range(i_hi, nx), range(ny), range(nz), "slipping", normal=(1.0, 0.0, 0.0))
    domain.set_region_bc(range(nx), range(ny), range(0, k_floor + 1), "friction", normal=(0.0, 0.0, -1.0), friction=mu)
    domain.set_region_bc(range(0, i_lo + 1), range(ny), range(nz), "non_slipping")
    if args.verbose:
        front = f", front wall i >= {i_hi}" if args.frontWall else ""
        print(f"Floor friction: mu = {mu:.3f} on k <= {k_floor}; y walls at j <= {j_lo}, j >= {j_hi}; "
              f"back wall i <= {i_lo}{front}")


def build_domain(args):
    """Domain, particles, loading and boundaries described by the parsed arguments."""
    material = DruckerPragerMaterial.from_degrees(
        args.E, args.nu, args.cohesion, args.frictionAngle, args.dilationAngle
    )
    cell_size = args.cellSize[0] if len(args.cellSize) == 1 else args.cellSize

    domain = MPMDomain(
        args.shape, args.nx, args.ny, args.nz,
        cell_size=cell_size,
        dt=args.dt,
        damping=args.damping,
        n_workers=args.nWorkers,
        device=args.device,
        output_folder=args.outputFolder,
        save_flag=bool(args.saveFlag),
        verbose=bool(args.verbose),
    )

    # --- Particles & material ---
    if args.domainFile is not None:
        domain.particles_host = load_domain_hdf5(
            args.domainFile, default_material=material, density=args.density, verbose=bool(args.verbose)
        )
        box_min = np.min(domain.particles_host.x, axis=0)
        box_max = np.max(domain.particles_host.x, axis=0)
    else:
        domain.add_box_particles(0, args.boxOrigin, args.boxExtent, args.ratio, density=args.density)
        domain.set_drucker_prager(material)
        box_min = np.asarray(args.boxOrigin)
        box_max = box_min + np.asarray(args.boxExtent)

    domain.set_body_force((0.0, 0.0, args.gravity))
    if args.particleDamping > 0.0:
        domain.set_particle_damping(args.particleDamping)

    # --- Initial stress ---
    if args.initialiseGeostatic:
        z_top = args.z_top if args.z_top is not None else float(box_max[2])
        domain.set_geostatic_stress(z_top=z_top, K0=args.K0)

    # --- Boundaries ---
    apply_box_boundaries(domain, args, box_min, box_max)
    return domain


def main(argv=None):
    args = get_args(argv)
    wp.init()
    with build_domain(args) as domain:
        domain.solve_musl(args.nSteps, args.saveInterval)


if __name__ == "__main__":
    main()
