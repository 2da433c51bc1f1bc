import os

import h5py
import numpy as np
import warp as wp
from lxml import etree

from mpmsoil import mpmRoutines
from mpmsoil.materials import mean_stress, von_mises_stress


def snapshot_prefix(output_folder, step):
    return os.path.join(output_folder, f"sim_step_{step:08d}")


def _xdmf_attribute(parent, h5_name, path, name, values, center, dims):
    ncomp = int(np.prod(values.shape[len(dims):]))
    if ncomp == 1:
        attribute_type = "Scalar"
    elif ncomp == 3:
        attribute_type = "Vector"
    else:
        attribute_type = "Tensor"
    attr = etree.SubElement(parent, "Attribute", Name=name, AttributeType=attribute_type, Center=center)
    shape = " ".join(str(d) for d in dims) + ("" if ncomp == 1 else f" {ncomp}")
    number_type = "Int" if np.issubdtype(values.dtype, np.integer) else "Float"
    data_item = etree.SubElement(attr, "DataItem",
                                 Dimensions=shape,
                                 NumberType=number_type,
                                 Precision="4",
                                 Format="HDF")
    data_item.text = f"{h5_name}:{path}"


def save_particles_and_grid_to_h5_xdmf(
    filename_prefix,
    particle_positions,        # shape (N, 3)
    particle_fields,           # name -> (N,), (N, 3) or (N, 3, 3)
    grid_fields,               # name -> (nx, ny, nz) or (nx, ny, nz, 3)
    grid_origin,               # (x0, y0, z0)
    grid_spacing,              # (dx, dy, dz)
    attributes=None
):
    # Ensure output directory exists
    os.makedirs(os.path.dirname(os.path.abspath(filename_prefix)), exist_ok=True)

    h5_filename = f"{filename_prefix}.h5"
    xdmf_filename = f"{filename_prefix}.xdmf"
    h5_name = os.path.basename(h5_filename)
    n = len(particle_positions)

    with h5py.File(h5_filename, "w") as h5f:
        h5f.create_dataset("Particle/Position", data=np.asarray(particle_positions, dtype=np.float32))
        for name, values in particle_fields.items():
            values = np.asarray(values)
            dtype = np.int32 if np.issubdtype(values.dtype, np.integer) else np.float32
            h5f.create_dataset(f"Particle/{name}", data=values.astype(dtype))
        for name, values in grid_fields.items():
            # XDMF orders structured data (z, y, x)
            values = np.asarray(values, dtype=np.float32)
            h5f.create_dataset(f"Grid/{name}", data=np.swapaxes(values, 0, 2))
        for key, value in (attributes or {}).items():
            h5f.attrs[key] = value

    # XDMF
    root = etree.Element("Xdmf", Version="3.0")
    domain = etree.SubElement(root, "Domain")

    ######################
    # Particle Grid Block
    ######################
    grid_particles = etree.SubElement(domain, "Grid", Name="Particles", GridType="Uniform")
    if attributes and "time" in attributes:
        etree.SubElement(grid_particles, "Time", Value=f"{attributes['time']}")

    geometry = etree.SubElement(grid_particles, "Geometry", GeometryType="XYZ")
    data_item = etree.SubElement(geometry, "DataItem",
                                 Dimensions=f"{n} 3",
                                 NumberType="Float",
                                 Precision="4",
                                 Format="HDF")
    data_item.text = f"{h5_name}:/Particle/Position"
    etree.SubElement(grid_particles, "Topology", TopologyType="Polyvertex", NumberOfElements=str(n))

    for name, values in particle_fields.items():
        _xdmf_attribute(grid_particles, h5_name, f"/Particle/{name}", name, np.asarray(values), "Node", (n,))

    ######################
    # Grid Block
    ######################
    if grid_fields:
        grid_shape = np.asarray(next(iter(grid_fields.values()))).shape[:3]
        zyx = (grid_shape[2], grid_shape[1], grid_shape[0])
        grid_struct = etree.SubElement(domain, "Grid", Name="Grid", GridType="Uniform")
        etree.SubElement(grid_struct, "Topology", TopologyType="3DCoRectMesh",
                         Dimensions=" ".join(str(d) for d in zyx))

        geometry = etree.SubElement(grid_struct, "Geometry", GeometryType="ORIGIN_DXDYDZ")
        origin_elem = etree.SubElement(geometry, "DataItem", Dimensions="3", NumberType="Float", Format="XML")
        origin_elem.text = f"{grid_origin[2]} {grid_origin[1]} {grid_origin[0]}"
        spacing_elem = etree.SubElement(geometry, "DataItem", Dimensions="3", NumberType="Float", Format="XML")
        spacing_elem.text = f"{grid_spacing[2]} {grid_spacing[1]} {grid_spacing[0]}"

        for name, values in grid_fields.items():
            values = np.swapaxes(np.asarray(values, dtype=np.float32), 0, 2)
            _xdmf_attribute(grid_struct, h5_name, f"/Grid/{name}", name, values, "Node", zyx)

    # Write XDMF
    with open(xdmf_filename, "wb") as f:
        f.write(etree.tostring(root, pretty_print=True))

    return h5_filename, xdmf_filename


def save_snapshot(sim, grid, particles, output_folder, verbose=True):
    """
    Save particle and grid state of the current step.

    Particles: position, velocity, stress tensor, mean and von Mises stress,
    Drucker-Prager yield function value, plastic strain, volume, density and
    region. Grid: node mass and velocity.
    """
    yield_value = wp.zeros(shape=particles.nPoints, dtype=float, device=particles.device)
    wp.launch(
        kernel=mpmRoutines.evaluate_yield_function,
        dim=particles.nPoints,
        inputs=[particles.particle_stress, particles.alpha_phi, particles.k_c],
        outputs=[yield_value],
        device=particles.device
    )

    sigma = particles.particle_stress.numpy().astype(np.float64)
    particle_fields = {
        "Velocity": particles.particle_v.numpy(),
        "Stress": sigma.reshape(-1, 9),
        "MeanStress": mean_stress(sigma),
        "VonMises": von_mises_stress(sigma),
        "YieldFunction": yield_value.numpy(),
        "PlasticStrain": particles.particle_plastic_strain.numpy(),
        "Volume": particles.particle_vol.numpy(),
        "Density": particles.particle_density.numpy(),
        "Region": particles.particle_region.numpy(),
    }
    grid_fields = {
        "Mass": grid.grid_m.numpy(),
        "Velocity": grid.grid_v.numpy(),
    }
    prefix = snapshot_prefix(output_folder, sim.step)
    h5_filename, _ = save_particles_and_grid_to_h5_xdmf(
        prefix,
        particles.particle_x.numpy(),
        particle_fields,
        grid_fields,
        sim.origin_np,
        sim.cell_size,
        attributes={"step": sim.step, "time": sim.t, "dt": sim.dt, "cell_size": sim.cell_size, "shape": sim.shape},
    )
    if verbose:
        print(f"Saved snapshot {h5_filename}")
    return h5_filename


def load_snapshot(h5_filename):
    """Read a snapshot back: particle fields (stress reshaped to (N, 3, 3)), grid fields in (nx, ny, nz) order, attributes."""
    with h5py.File(h5_filename, "r") as h5f:
        particles = {"Position": np.array(h5f["Particle/Position"])}
        for name in h5f["Particle"]:
            particles[name] = np.array(h5f[f"Particle/{name}"])
        if "Stress" in particles:
            particles["Stress"] = particles["Stress"].reshape(-1, 3, 3)
        grid = {}
        if "Grid" in h5f:
            for name in h5f["Grid"]:
                grid[name] = np.swapaxes(np.array(h5f[f"Grid/{name}"]), 0, 2)
        attributes = {key: h5f.attrs[key] for key in h5f.attrs}
    return particles, grid, attributes
