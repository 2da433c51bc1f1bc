"""
Per-node grid boundary conditions.

Conditions are registered sparsely on the host (node index -> kind, normal,
friction coefficient) and compiled into dense (nx, ny, nz) device arrays that
the grid update consults every step.
"""

from dataclasses import dataclass

import numpy as np
import warp as wp

BC_FREE = wp.constant(0)
BC_SLIPPING = wp.constant(1)
BC_NON_SLIPPING = wp.constant(2)
BC_FRICTION = wp.constant(3)

BC_KINDS = {"free": 0, "slipping": 1, "non_slipping": 2, "friction": 3}


@dataclass(frozen=True)
class BoundaryCondition:
    kind: int
    normal: tuple = (0.0, 0.0, 0.0)
    friction: float = 0.0


def _unit_normal(normal):
    n = np.asarray(normal, dtype=np.float64).reshape(-1)
    if n.shape != (3,) or not np.all(np.isfinite(n)):
        raise ValueError(f"Boundary normal must be three finite numbers, got {normal}")
    length = np.linalg.norm(n)
    if length < 1e-12:
        raise ValueError("Boundary normal must be non-zero")
    return tuple(float(c) for c in n / length)


def _index_list(value, count, axis):
    if isinstance(value, (int, np.integer)):
        indices = [int(value)]
    else:
        indices = [int(v) for v in value]
    for idx in indices:
        if idx < 0 or idx >= count:
            raise ValueError(f"Node index {idx} on axis {axis} outside the grid [0, {count})")
    return indices


class BoundaryRegistry:
    """Sparse map from node index to boundary condition; later calls overwrite earlier ones."""

    def __init__(self, grid_dims):
        self.grid_dims = tuple(int(n) for n in grid_dims)
        self._conditions = {}

    def __len__(self):
        return len(self._conditions)

    def __contains__(self, node):
        return tuple(node) in self._conditions

    def get(self, i, j, k):
        """Condition at a node; unregistered nodes are free."""
        return self._conditions.get((i, j, k), BoundaryCondition(BC_FREE))

    def items(self):
        return self._conditions.items()

    def _check_node(self, i, j, k):
        node = (int(i), int(j), int(k))
        for axis, (idx, count) in enumerate(zip(node, self.grid_dims)):
            if idx < 0 or idx >= count:
                raise ValueError(f"Node index {idx} on axis {axis} outside the grid [0, {count})")
        return node

    def assign(self, i, j, k, kind, normal=None, friction=0.0):
        if isinstance(kind, str):
            if kind not in BC_KINDS:
                raise ValueError(f"Unknown boundary kind '{kind}', expected one of {sorted(BC_KINDS)}")
            kind = BC_KINDS[kind]
        node = self._check_node(i, j, k)

        if kind == BC_FREE or kind == BC_NON_SLIPPING:
            condition = BoundaryCondition(int(kind))
        elif kind == BC_SLIPPING:
            if normal is None:
                raise ValueError("A slipping boundary needs a normal")
            condition = BoundaryCondition(BC_SLIPPING, _unit_normal(normal))
        elif kind == BC_FRICTION:
            if normal is None:
                raise ValueError("A frictional boundary needs a normal")
            friction = float(friction)
            if not np.isfinite(friction) or friction < 0.0:
                raise ValueError(f"Friction coefficient must be finite and >= 0, got {friction}")
            condition = BoundaryCondition(BC_FRICTION, _unit_normal(normal), friction)
        else:
            raise ValueError(f"Unknown boundary kind {kind}")

        self._conditions[node] = condition

    def set_free(self, i, j, k):
        self.assign(i, j, k, BC_FREE)

    def set_slipping(self, i, j, k, normal):
        self.assign(i, j, k, BC_SLIPPING, normal=normal)

    def set_non_slipping(self, i, j, k):
        self.assign(i, j, k, BC_NON_SLIPPING)

    def set_friction(self, i, j, k, friction, normal):
        self.assign(i, j, k, BC_FRICTION, normal=normal, friction=friction)

    def set_region(self, i_range, j_range, k_range, kind, normal=None, friction=0.0):
        """Assign one condition to every node of a block; each range is an int or an iterable of ints."""
        nx, ny, nz = self.grid_dims
        i_list = _index_list(i_range, nx, 0)
        j_list = _index_list(j_range, ny, 1)
        k_list = _index_list(k_range, nz, 2)
        for i in i_list:
            for j in j_list:
                for k in k_list:
                    self.assign(i, j, k, kind, normal=normal, friction=friction)

    def compile(self, device="cpu"):
        """Dense (kind, normal, friction) arrays for the grid kernels."""
        kind = np.zeros(self.grid_dims, dtype=np.int32)
        normal = np.zeros(self.grid_dims + (3,), dtype=np.float32)
        friction = np.zeros(self.grid_dims, dtype=np.float32)
        for (i, j, k), bc in self._conditions.items():
            kind[i, j, k] = bc.kind
            normal[i, j, k] = bc.normal
            friction[i, j, k] = bc.friction
        return (
            wp.array(kind, dtype=wp.int32, device=device),
            wp.array(normal, dtype=wp.vec3, device=device),
            wp.array(friction, dtype=float, device=device),
        )

    def summary(self):
        counts = {name: 0 for name in BC_KINDS}
        names = {v: n for n, v in BC_KINDS.items()}
        for bc in self._conditions.values():
            counts[names[bc.kind]] += 1
        return counts


@wp.func
def constrain_velocity(v: wp.vec3, kind: int, normal: wp.vec3, friction: float, with_friction: int) -> wp.vec3:
    if kind == BC_NON_SLIPPING:
        return wp.vec3(0.0)
    if kind == BC_SLIPPING or kind == BC_FRICTION:
        # normal component always goes first
        vn = wp.dot(v, normal)
        vt = v - vn * normal
        if kind == BC_FRICTION and with_friction == 1:
            vt_mag = wp.length(vt)
            dv = friction * wp.abs(vn)
            if vt_mag <= dv:
                return wp.vec3(0.0)
            return vt * ((vt_mag - dv) / vt_mag)
        return vt
    return v


@wp.kernel
def apply_boundary_conditions(
    offset: int,
    worker: int,
    with_friction: int,
    min_mass: float,
    grid_m: wp.array(dtype=float, ndim=3),
    bc_kind: wp.array(dtype=wp.int32, ndim=3),
    bc_normal: wp.array(dtype=wp.vec3, ndim=3),
    bc_friction: wp.array(dtype=float, ndim=3),
    grid_v: wp.array(dtype=wp.vec3, ndim=3),
):
    # with_friction = 0 applies only the kinematic part (re-mapped velocities)
    ti, j, k = wp.tid()
    i = ti + offset
    kind = int(bc_kind[i, j, k])
    if kind != BC_FREE and grid_m[i, j, k] > min_mass:
        grid_v[i, j, k] = constrain_velocity(
            grid_v[i, j, k], kind, bc_normal[i, j, k], bc_friction[i, j, k], with_friction
        )
