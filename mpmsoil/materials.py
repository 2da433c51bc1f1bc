"""
Drucker-Prager material record and its host-side helpers.

Angles are stored in radians. Stress is tension positive throughout.
"""

import math
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class DruckerPragerMaterial:
    youngs_modulus: float
    poisson_ratio: float
    cohesion: float = 0.0
    friction_angle: float = 0.0
    dilation_angle: float = 0.0

    def __post_init__(self):
        if not math.isfinite(self.youngs_modulus) or self.youngs_modulus <= 0.0:
            raise ValueError(f"Young's modulus must be > 0, got {self.youngs_modulus}")
        if not -1.0 < self.poisson_ratio < 0.5:
            raise ValueError(f"Poisson ratio must lie in (-1, 0.5), got {self.poisson_ratio}")
        if not math.isfinite(self.cohesion) or self.cohesion < 0.0:
            raise ValueError(f"Cohesion must be >= 0, got {self.cohesion}")
        for name in ("friction_angle", "dilation_angle"):
            angle = getattr(self, name)
            if not 0.0 <= angle < 0.5 * math.pi:
                raise ValueError(f"{name} must lie in [0, pi/2) radians, got {angle}")
        if self.dilation_angle > self.friction_angle:
            raise ValueError(
                f"Dilation angle ({self.dilation_angle}) must not exceed the friction angle ({self.friction_angle})"
            )

    @classmethod
    def from_degrees(cls, youngs_modulus, poisson_ratio, cohesion=0.0, friction_angle=0.0, dilation_angle=0.0):
        return cls(
            float(youngs_modulus),
            float(poisson_ratio),
            float(cohesion),
            math.radians(friction_angle),
            math.radians(dilation_angle),
        )

    @property
    def shear_modulus(self):
        return self.youngs_modulus / (2.0 * (1.0 + self.poisson_ratio))

    @property
    def bulk_modulus(self):
        return self.youngs_modulus / (3.0 * (1.0 - 2.0 * self.poisson_ratio))

    @property
    def k0(self):
        """At-rest lateral earth pressure coefficient nu / (1 - nu)."""
        return self.poisson_ratio / (1.0 - self.poisson_ratio)

    def cone_constants(self):
        """(alpha_phi, alpha_psi, k) of the cone fitted to plane-strain Mohr-Coulomb."""
        return drucker_prager_constants(self.cohesion, self.friction_angle, self.dilation_angle)


def drucker_prager_constants(cohesion, friction_angle, dilation_angle):
    tan_phi = np.tan(friction_angle)
    tan_psi = np.tan(dilation_angle)
    root_phi = np.sqrt(9.0 + 12.0 * tan_phi * tan_phi)
    alpha_phi = tan_phi / root_phi
    alpha_psi = tan_psi / np.sqrt(9.0 + 12.0 * tan_psi * tan_psi)
    k_c = 3.0 * np.asarray(cohesion) / root_phi
    return alpha_phi, alpha_psi, k_c


def yield_function(stress, alpha_phi, k_c):
    """f = sqrt(J2) + alpha * I1 - k for one (3, 3) stress or a stack (N, 3, 3)."""
    stress = np.asarray(stress, dtype=np.float64)
    I1 = np.trace(stress, axis1=-2, axis2=-1)
    s = stress - (I1 / 3.0)[..., None, None] * np.eye(3)
    sqrt_J2 = np.sqrt(0.5 * np.sum(s * s, axis=(-2, -1)))
    return sqrt_J2 + alpha_phi * I1 - k_c


def mean_stress(stress):
    stress = np.asarray(stress)
    return np.trace(stress, axis1=-2, axis2=-1) / 3.0


def von_mises_stress(stress):
    stress = np.asarray(stress)
    s = stress - mean_stress(stress)[..., None, None] * np.eye(3)
    return np.sqrt(1.5 * np.sum(s * s, axis=(-2, -1)))


def p_wave_speed(youngs_modulus, poisson_ratio, density):
    """Dilatational wave speed sqrt((K + 4G/3) / rho)."""
    E = np.asarray(youngs_modulus, dtype=np.float64)
    nu = np.asarray(poisson_ratio, dtype=np.float64)
    rho = np.asarray(density, dtype=np.float64)
    shear = E / (2.0 * (1.0 + nu))
    bulk = E / (3.0 * (1.0 - 2.0 * nu))
    return np.sqrt((bulk + 4.0 / 3.0 * shear) / rho)
