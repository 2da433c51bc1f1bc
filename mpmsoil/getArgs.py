import argparse
import json
import os
import sys


def print_args_in_order(args, parser):
    print("\n===== Loaded Simulation Parameters =====")
    for action in parser._actions:
        if action.dest in vars(args):
            print(f"{action.dest}: {getattr(args, action.dest)}")
    print("=======================================\n")


def build_parser(pre_parser=None):
    parents = [pre_parser] if pre_parser is not None else []
    parser = argparse.ArgumentParser(description="MUSL MPM soil simulation parameters", parents=parents)

    # Grid & kernel
    parser.add_argument("--shape", type=str, default="cubic", help="Shape function: linear (1), quadratic (2) or cubic (3)")
    parser.add_argument("--nx", type=int, default=60, help="Number of grid nodes along x")
    parser.add_argument("--ny", type=int, default=12, help="Number of grid nodes along y")
    parser.add_argument("--nz", type=int, default=24, help="Number of grid nodes along z")
    parser.add_argument("--cellSize", type=float, nargs="+", default=[1.0], help="Cell size, one value or one per axis")

    # Time stepping & damping
    parser.add_argument("--dt", type=float, default=1.0, help="Time step (1.0 in non-dimensional units)")
    parser.add_argument("--nSteps", type=int, default=5000, help="Number of MUSL steps")
    parser.add_argument("--damping", type=float, default=0.0, help="Global local (Cundall) damping on grid forces, in [0, 1)")
    parser.add_argument("--particleDamping", type=float, default=0.0, help="Viscous damping coefficient per particle")

    # Execution
    parser.add_argument("--device", type=str, default="cpu", help="Warp device, e.g. cpu or cuda:0")
    parser.add_argument("--nWorkers", type=int, default=1, help="Number of CPU workers (ignored on CUDA)")

    # Saving
    parser.add_argument("--saveFlag", type=int, default=1, help="Enable saving simulation results")
    parser.add_argument("--saveInterval", type=int, default=100, help="Steps between snapshots")
    parser.add_argument("--outputFolder", type=str, default="./output/", help="Output folder for simulation results")
    parser.add_argument("--verbose", type=int, default=1, help="Print status lines")

    # Domain: HDF5 file or a box of particles
    parser.add_argument("--domainFile", type=str, default=None,
                        help="Input HDF5 domain file with x (3, N), particle_volume and optional density, E, nu, cohesion, friction_angle, dilation_angle")
    parser.add_argument("--boxOrigin", type=float, nargs=3, default=[2.0, 2.0, 3.0], help="Lower corner of the particle box")
    parser.add_argument("--boxExtent", type=float, nargs=3, default=[20.0, 8.0, 10.0], help="Size of the particle box")
    parser.add_argument("--ratio", type=float, default=0.25, help="Particle spacing as a fraction of the cell size")

    # Material (used as defaults if not in HDF5)
    parser.add_argument("--density", type=float, default=1.0, help="Density of material - default if not in HDF5")
    parser.add_argument("--E", type=float, default=1.0e-2, help="Young's modulus - default if not in HDF5")
    parser.add_argument("--nu", type=float, default=0.3, help="Poisson's ratio - default if not in HDF5")
    parser.add_argument("--cohesion", type=float, default=0.0, help="Cohesion - default if not in HDF5")
    parser.add_argument("--frictionAngle", type=float, default=30.0, help="Friction angle (degrees) - default if not in HDF5")
    parser.add_argument("--dilationAngle", type=float, default=0.0, help="Dilation angle (degrees) - default if not in HDF5")

    # Gravity & initial stress
    parser.add_argument("--gravity", type=float, default=-1.0e-6, help="Body force along z (acceleration)")
    parser.add_argument("--initialiseGeostatic", type=int, default=1, help="Initialise geostatic stress or let the column settle")
    parser.add_argument("--K0", type=float, default=None, help="Lateral earth pressure coefficient. If None, uses nu / (1 - nu)")
    parser.add_argument("--z_top", type=float, default=None, help="Reference height for geostatic stress. If None, uses the top of the particles")

    # Boundaries
    parser.add_argument("--floorFriction", type=float, default=None, help="Floor friction coefficient. If None, uses tan(frictionAngle)")
    parser.add_argument("--frontWall", type=int, default=0, help="Add a slipping wall on the +x face of the soil")
    return parser


def get_args(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    # First pass: only parse --config so we can load it before other args
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config", type=str, help="Path to JSON config file")
    pre_args, _ = pre_parser.parse_known_args(argv)

    # Main parser
    parser = build_parser(pre_parser)

    # If a config file is provided, load it
    config_data = {}
    if pre_args.config:
        if not os.path.exists(pre_args.config):
            raise ValueError(f"Config file {pre_args.config} does not exist")
        with open(pre_args.config, "r") as f:
            config_data = json.load(f)

    args = parser.parse_args(argv)

    # Track which arguments were explicitly set on the command line
    cli_args_set = set()
    for arg in argv:
        if arg.startswith('--'):
            cli_args_set.add(arg.lstrip('-').split('=')[0].replace('-', '_'))

    # Apply config file values only if NOT overridden by CLI
    for k, v in config_data.items():
        if not hasattr(args, k):
            raise ValueError(f"Unknown configuration key '{k}' in {pre_args.config}")
        if k not in cli_args_set:
            setattr(args, k, v)

    if args.verbose:
        print_args_in_order(args, parser)

    return args
