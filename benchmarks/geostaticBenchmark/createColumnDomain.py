"""
Create an HDF5 input file for the layered soil column benchmark.

Setup:
- Column 4 x 4 x 16 (non-dimensional units), particles at 0.5 spacing
- Lower half: stiffer, denser, cohesive layer
- Upper half: loose cohesionless sand

Run with:
    python runMPMSoil.py --config benchmarks/geostaticBenchmark/columnConfig.json
"""

import h5py
import numpy as np

# --- Column dimensions ---
column_origin = np.array([2.0, 2.0, 3.0])
column_size = np.array([4.0, 4.0, 16.0])
split_height = 8.0   # height of the layer interface above the column base
particle_spacing = 0.5

# --- Layer properties (angles in degrees) ---
layers = {
    "bottom": dict(density=1.2, E=2.0e-2, nu=0.3, cohesion=1.0e-4, friction_angle=35.0, dilation_angle=5.0),
    "top": dict(density=1.0, E=1.0e-2, nu=0.3, cohesion=0.0, friction_angle=30.0, dilation_angle=0.0),
}

# --- Generate particles at cell centres ---
counts = np.rint(column_size / particle_spacing).astype(int)
axes = [column_origin[a] + (np.arange(counts[a]) + 0.5) * particle_spacing for a in range(3)]
X, Y, Z = np.meshgrid(*axes, indexing="ij")
coords = np.vstack([X.ravel(), Y.ravel(), Z.ravel()]).T
nPoints = len(coords)
particle_volume = np.full(nPoints, particle_spacing ** 3)

bottom_mask = coords[:, 2] < column_origin[2] + split_height
fields = {}
for name in layers["top"]:
    fields[name] = np.where(bottom_mask, layers["bottom"][name], layers["top"][name])

print(f"Particles: {nPoints} ({np.sum(bottom_mask)} bottom, {np.sum(~bottom_mask)} top)")

# --- Save to HDF5 ---
h5_filename = "./benchmarks/geostaticBenchmark/soilColumn.h5"
with h5py.File(h5_filename, "w") as h5file:
    h5file.create_dataset("x", data=coords.T)
    h5file.create_dataset("particle_volume", data=particle_volume)
    for name, values in fields.items():
        h5file.create_dataset(name, data=values)
print(f"Saved HDF5: {h5_filename}")
