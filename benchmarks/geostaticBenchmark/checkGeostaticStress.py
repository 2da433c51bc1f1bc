"""
Compare the settled column against the layered geostatic profile.

Usage:
    python benchmarks/geostaticBenchmark/checkGeostaticStress.py ./output/soilColumn/sim_step_00004000.h5
"""
import sys

import matplotlib.pyplot as plt
import numpy as np

from mpmsoil.ioUtils import load_snapshot


def expected_vertical_stress(z, z_top, density_of, gravity):
    """Integrate rho * g from the surface down, one particle row at a time."""
    rows, inverse = np.unique(np.round(z, 6), return_inverse=True)
    row_density = np.array([density_of[inverse == r].mean() for r in range(len(rows))])
    row_sigma = np.zeros(len(rows))
    acc = 0.0
    z_prev = z_top
    # rows are ascending, walk them from the top
    for r in reversed(range(len(rows))):
        acc += row_density[r] * gravity * (z_prev - rows[r])
        row_sigma[r] = acc
        z_prev = rows[r]
    return row_sigma[inverse]


def main(h5_filename, gravity=-1.0e-6, spacing=0.5):
    particles, grid, attrs = load_snapshot(h5_filename)
    x = particles["Position"]
    stress = particles["Stress"]
    z = x[:, 2]
    z_top = z.max() + 0.5 * spacing
    depth = z_top - z

    sigma_zz = stress[:, 2, 2]
    sigma_xx = stress[:, 0, 0]
    expected = expected_vertical_stress(z, z_top, particles["Density"], gravity)
    interior = (depth > 2.0) & (z > z.min() + 2.0)
    error = 100 * (sigma_zz - expected) / (np.abs(expected) + 1e-12)

    print("\n" + "=" * 60)
    print(f"GEOSTATIC CHECK: step {attrs['step']}, time {attrs['time']:.4e}")
    print("=" * 60)
    print(f"Column height: {depth.max():.2f}")
    print(f"Max |velocity|: {np.max(np.linalg.norm(particles['Velocity'], axis=1)):.3e}")
    print(f"Interior sigma_zz error: mean {np.mean(error[interior]):.2f}%, max {np.max(np.abs(error[interior])):.2f}%")
    print(f"Interior K0 (sigma_xx / sigma_zz): {np.mean(sigma_xx[interior] / sigma_zz[interior]):.3f}")
    print(f"Max yield function value: {np.max(particles['YieldFunction']):.3e}")
    print(f"Particles with plastic strain: {np.sum(particles['PlasticStrain'] > 0)}")

    fig, axes = plt.subplots(1, 3, figsize=(15, 5))
    ax = axes[0]
    ax.scatter(sigma_zz, depth, s=2, alpha=0.5, label="MPM σ_zz")
    ax.plot(np.sort(expected), depth[np.argsort(expected)], "r-", linewidth=2, label="Layered ∫ρg dz")
    ax.invert_yaxis()
    ax.set_xlabel("σ_zz")
    ax.set_ylabel("Depth")
    ax.legend()
    ax.grid(True)

    ax = axes[1]
    ax.scatter(sigma_xx / (sigma_zz - 1e-12), depth, s=2, alpha=0.5)
    ax.invert_yaxis()
    ax.set_xlabel("σ_xx / σ_zz")
    ax.set_title("Lateral earth pressure coefficient")
    ax.grid(True)

    ax = axes[2]
    ax.scatter(error[interior], depth[interior], s=2, alpha=0.5)
    ax.axvline(0, color="r", linestyle="--")
    ax.invert_yaxis()
    ax.set_xlabel("σ_zz error (%)")
    ax.grid(True)

    plt.tight_layout()
    out = h5_filename.replace(".h5", "_geostatic.png")
    plt.savefig(out, dpi=150)
    print(f"Saved diagnostic plot to {out}")


if __name__ == "__main__":
    main(sys.argv[1])
