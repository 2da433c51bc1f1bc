"""
Host-side particle staging.

Particles are created (box fill or HDF5 domain file), then a batch pass over
regions assigns material records, body force, damping, velocity and initial
stress. The finished set is uploaded to the device once, when the run starts.
"""

import h5py
import numpy as np

from mpmsoil.materials import DruckerPragerMaterial

MATERIAL_FIELDS = ("E", "nu", "cohesion", "friction_angle", "dilation_angle")


def fill_box(origin, extent, spacing):
    """
    Regular lattice of particle centres filling a box.

    Returns positions (N, 3) and the per-particle volume.
    """
    origin = np.broadcast_to(np.asarray(origin, dtype=np.float64), (3,))
    extent = np.broadcast_to(np.asarray(extent, dtype=np.float64), (3,))
    spacing = np.broadcast_to(np.asarray(spacing, dtype=np.float64), (3,))
    if np.any(~np.isfinite(spacing)) or np.any(spacing <= 0.0):
        raise ValueError(f"Particle spacing must be positive, got {spacing}")
    if np.any(~np.isfinite(extent)) or np.any(extent <= 0.0):
        raise ValueError(f"Box extent must be positive, got {extent}")

    counts = np.rint(extent / spacing).astype(np.int64)
    if np.any(counts < 1):
        raise ValueError(f"Box extent {extent} holds no particles at spacing {spacing}")

    axes = [origin[a] + (np.arange(counts[a]) + 0.5) * spacing[a] for a in range(3)]
    gx, gy, gz = np.meshgrid(*axes, indexing="ij")
    x = np.stack([gx.ravel(), gy.ravel(), gz.ravel()], axis=1)
    return x, float(np.prod(spacing))


class ParticleSet:
    """Struct-of-arrays particle staging on the host."""

    def __init__(self):
        self.x = np.zeros((0, 3))
        self.v = np.zeros((0, 3))
        self.mass = np.zeros(0)
        self.volume = np.zeros(0)
        self.region = np.zeros(0, dtype=np.int32)
        self.stress = np.zeros((0, 3, 3))
        self.body_force = np.zeros((0, 3))
        self.damping = np.zeros(0)
        self.material = {name: np.zeros(0) for name in MATERIAL_FIELDS}
        self.has_material = np.zeros(0, dtype=bool)

    def __len__(self):
        return self.x.shape[0]

    @property
    def density(self):
        return self.mass / self.volume

    def add_particles(self, x, volume, mass=None, density=None, region=-1, velocity=None):
        x = np.asarray(x, dtype=np.float64).reshape(-1, 3)
        n = x.shape[0]
        if n == 0:
            raise ValueError("No particles to add")
        if not np.all(np.isfinite(x)):
            raise ValueError("Particle positions must be finite")
        volume = np.broadcast_to(np.asarray(volume, dtype=np.float64), (n,)).copy()
        if np.any(~np.isfinite(volume)) or np.any(volume <= 0.0):
            raise ValueError("Particle volume must be positive")
        if mass is None:
            if density is None:
                raise ValueError("Either mass or density is needed to seed particles")
            density = np.broadcast_to(np.asarray(density, dtype=np.float64), (n,))
            mass = density * volume
        mass = np.broadcast_to(np.asarray(mass, dtype=np.float64), (n,)).copy()
        if np.any(~np.isfinite(mass)) or np.any(mass <= 0.0):
            raise ValueError("Particle mass must be positive")
        if velocity is None:
            velocity = np.zeros((n, 3))
        velocity = np.broadcast_to(np.asarray(velocity, dtype=np.float64), (n, 3))

        self.x = np.concatenate([self.x, x])
        self.v = np.concatenate([self.v, velocity])
        self.mass = np.concatenate([self.mass, mass])
        self.volume = np.concatenate([self.volume, volume])
        self.region = np.concatenate([self.region, np.full(n, int(region), dtype=np.int32)])
        self.stress = np.concatenate([self.stress, np.zeros((n, 3, 3))])
        self.body_force = np.concatenate([self.body_force, np.zeros((n, 3))])
        self.damping = np.concatenate([self.damping, np.zeros(n)])
        for name in MATERIAL_FIELDS:
            self.material[name] = np.concatenate([self.material[name], np.zeros(n)])
        self.has_material = np.concatenate([self.has_material, np.zeros(n, dtype=bool)])
        return np.arange(len(self) - n, len(self))

    def add_box(self, region, origin, extent, ratio, cell_size, mass=None, density=None):
        """Box of particles at spacing ratio * cell_size (ratio 1/4 gives 4 particles per cell axis)."""
        ratio = float(ratio)
        if not np.isfinite(ratio) or ratio <= 0.0:
            raise ValueError(f"Particle spacing ratio must be positive, got {ratio}")
        spacing = ratio * np.broadcast_to(np.asarray(cell_size, dtype=np.float64), (3,))
        x, volume = fill_box(origin, extent, spacing)
        return self.add_particles(x, volume, mass=mass, density=density, region=region)

    def select(self, region=None):
        """Mask of particles in a region id, a list of ids, or everything (None)."""
        if region is None:
            return np.ones(len(self), dtype=bool)
        return np.isin(self.region, np.atleast_1d(region))

    def _selection(self, region):
        mask = self.select(region)
        if not np.any(mask):
            raise ValueError(f"No particles in region {region}")
        return mask

    def assign_material(self, material, region=None):
        if not isinstance(material, DruckerPragerMaterial):
            raise ValueError(f"Expected a DruckerPragerMaterial, got {type(material).__name__}")
        mask = self._selection(region)
        self.material["E"][mask] = material.youngs_modulus
        self.material["nu"][mask] = material.poisson_ratio
        self.material["cohesion"][mask] = material.cohesion
        self.material["friction_angle"][mask] = material.friction_angle
        self.material["dilation_angle"][mask] = material.dilation_angle
        self.has_material[mask] = True

    def assign_material_arrays(self, indices, **fields):
        """Spatially varying parameters, one value per listed particle (angles in radians)."""
        unknown = set(fields) - set(MATERIAL_FIELDS)
        if unknown:
            raise ValueError(f"Unknown material fields {sorted(unknown)}")
        indices = np.asarray(indices)
        if not np.all(self.has_material[indices]):
            raise ValueError("Assign a base material before overriding individual fields")
        for name, values in fields.items():
            self.material[name][indices] = values
        # re-validate every distinct parameter set through the record
        stacked = np.stack([self.material[name][indices] for name in MATERIAL_FIELDS], axis=1)
        for row in np.unique(stacked, axis=0):
            DruckerPragerMaterial(*[float(v) for v in row])

    def assign_body_force(self, body_force, region=None):
        body_force = np.asarray(body_force, dtype=np.float64).reshape(3)
        if not np.all(np.isfinite(body_force)):
            raise ValueError("Body force must be finite")
        self.body_force[self._selection(region)] = body_force

    def assign_damping(self, damping, region=None):
        damping = float(damping)
        if not np.isfinite(damping) or damping < 0.0:
            raise ValueError(f"Particle damping must be >= 0, got {damping}")
        self.damping[self._selection(region)] = damping

    def assign_velocity(self, velocity, region=None):
        velocity = np.asarray(velocity, dtype=np.float64).reshape(3)
        self.v[self._selection(region)] = velocity

    def assign_stress(self, stress, region=None):
        stress = np.asarray(stress, dtype=np.float64).reshape(3, 3)
        if not np.allclose(stress, stress.T):
            raise ValueError("Initial stress must be symmetric")
        self.stress[self._selection(region)] = stress

    def assign_geostatic_stress(self, z_top, K0=None, region=None):
        """
        sigma_zz = rho * b_z * (z_top - z), sigma_xx = sigma_yy = K0 * sigma_zz.

        b_z is each particle's assigned body force, so gravity pointing down
        (b_z < 0) gives compression (negative stress) below z_top. K0 defaults
        to nu / (1 - nu) of each particle's material.
        """
        mask = self._selection(region)
        if K0 is None:
            if not np.all(self.has_material[mask]):
                raise ValueError("Geostatic stress with the default K0 needs a material assigned first")
            nu = self.material["nu"][mask]
            K0 = nu / (1.0 - nu)
        elif float(K0) < 0.0:
            raise ValueError(f"K0 must be >= 0, got {K0}")
        depth = float(z_top) - self.x[mask, 2]
        sig_zz = self.density[mask] * self.body_force[mask, 2] * depth
        sig_h = K0 * sig_zz
        stress = np.zeros((int(np.sum(mask)), 3, 3))
        stress[:, 0, 0] = sig_h
        stress[:, 1, 1] = sig_h
        stress[:, 2, 2] = sig_zz
        self.stress[mask] = stress

    def check_ready(self):
        if len(self) == 0:
            raise ValueError("No particles have been seeded")
        if not np.all(self.has_material):
            missing = np.flatnonzero(~self.has_material)
            raise ValueError(f"{missing.size} particles have no material (first index {missing[0]})")


def load_domain_hdf5(path, default_material=None, density=None, region=0, verbose=True):
    """
    Particles from a domain file: "x" stored as (3, N), "particle_volume" (N,),
    and optional per-particle "density", "E", "nu", "cohesion",
    "friction_angle", "dilation_angle" (angles in degrees).
    """
    particles = ParticleSet()
    with h5py.File(path, "r") as h5file:
        if "x" not in h5file or "particle_volume" not in h5file:
            raise ValueError(f"{path} must contain 'x' and 'particle_volume' datasets")
        x = np.array(h5file["x"]).T
        volume = np.array(h5file["particle_volume"], dtype=np.float64)
        if "density" in h5file:
            density = np.array(h5file["density"], dtype=np.float64)
            if verbose:
                print(f"  Loaded density from HDF5: {density.min():.2e} to {density.max():.2e}")
        elif density is None:
            raise ValueError(f"{path} has no 'density' dataset and no default density was given")
        fields = {}
        for name in MATERIAL_FIELDS:
            if name in h5file:
                values = np.array(h5file[name], dtype=np.float64)
                if name.endswith("_angle"):
                    values = np.radians(values)
                fields[name] = values
                if verbose:
                    print(f"  Loaded {name} from HDF5: {values.min():.3e} to {values.max():.3e}")

    indices = particles.add_particles(x, volume, density=density, region=region)
    if verbose:
        print(f"Number of particles: {len(particles)}")
    if default_material is not None:
        particles.assign_material(default_material)
        if fields:
            particles.assign_material_arrays(indices, **fields)
    elif fields:
        if set(fields) != set(MATERIAL_FIELDS):
            raise ValueError(f"{path} defines only {sorted(fields)}; pass a default material for the rest")
        particles.has_material[indices] = True
        particles.assign_material_arrays(indices, **fields)
    return particles
