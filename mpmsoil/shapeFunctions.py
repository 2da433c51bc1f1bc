"""
Grid interpolation kernels (linear, quadratic B-spline, cubic B-spline).

A particle at grid coordinate xg influences the nodes base..base+width-1 on
every axis, where width = selector + 1 (8, 27 or 64 nodes in 3D).
"""

import numpy as np
import warp as wp

LINEAR = wp.constant(1)
QUADRATIC = wp.constant(2)
CUBIC = wp.constant(3)

SHAPE_SELECTORS = {"linear": 1, "quadratic": 2, "cubic": 3}


def resolve_shape(shape):
    """Return the integer kernel selector for a name ("cubic") or selector (3)."""
    if isinstance(shape, str):
        key = shape.strip().lower()
        if key in SHAPE_SELECTORS:
            return SHAPE_SELECTORS[key]
        if not key.isdigit():
            raise ValueError(f"Unknown shape function '{shape}', expected one of {sorted(SHAPE_SELECTORS)}")
        shape = int(key)
    if int(shape) != shape or int(shape) not in SHAPE_SELECTORS.values():
        raise ValueError(f"Shape function selector must be 1 (linear), 2 (quadratic) or 3 (cubic), got {shape}")
    return int(shape)


def stencil_width(shape):
    return resolve_shape(shape) + 1


@wp.func
def grid_coordinates(x: wp.vec3, origin: wp.vec3, inv_dx: wp.vec3) -> wp.vec3:
    return wp.cw_mul(x - origin, inv_dx)


@wp.func
def stencil_base(xg: float, shape: int) -> int:
    # lowest node index of the support along one axis
    if shape == LINEAR:
        return int(wp.floor(xg))
    if shape == QUADRATIC:
        return int(wp.floor(xg - 0.5))
    return int(wp.floor(xg)) - 1


@wp.func
def weight_1d(r: float, shape: int) -> float:
    a = wp.abs(r)
    if shape == LINEAR:
        if a < 1.0:
            return 1.0 - a
        return 0.0
    if shape == QUADRATIC:
        if a < 0.5:
            return 0.75 - a * a
        if a < 1.5:
            return 0.5 * (1.5 - a) * (1.5 - a)
        return 0.0
    if a < 1.0:
        return 0.5 * a * a * a - a * a + 2.0 / 3.0
    if a < 2.0:
        t = 2.0 - a
        return t * t * t / 6.0
    return 0.0


@wp.func
def dweight_1d(r: float, shape: int) -> float:
    a = wp.abs(r)
    s = 1.0
    if r < 0.0:
        s = -1.0
    if shape == LINEAR:
        # closed on the left node so the two slopes always cancel
        if a <= 1.0:
            return -s
        return 0.0
    if shape == QUADRATIC:
        if a < 0.5:
            return -2.0 * r
        if a < 1.5:
            return -s * (1.5 - a)
        return 0.0
    if a < 1.0:
        return 1.5 * r * a - 2.0 * r
    if a < 2.0:
        t = 2.0 - a
        return -0.5 * s * t * t
    return 0.0


@wp.func
def node_weight(xg: wp.vec3, ix: int, iy: int, iz: int, shape: int) -> float:
    return (
        weight_1d(xg[0] - float(ix), shape)
        * weight_1d(xg[1] - float(iy), shape)
        * weight_1d(xg[2] - float(iz), shape)
    )


@wp.func
def node_weight_gradient(xg: wp.vec3, ix: int, iy: int, iz: int, shape: int, inv_dx: wp.vec3) -> wp.vec3:
    rx = xg[0] - float(ix)
    ry = xg[1] - float(iy)
    rz = xg[2] - float(iz)
    wx = weight_1d(rx, shape)
    wy = weight_1d(ry, shape)
    wz = weight_1d(rz, shape)
    return wp.vec3(
        dweight_1d(rx, shape) * wy * wz * inv_dx[0],
        wx * dweight_1d(ry, shape) * wz * inv_dx[1],
        wx * wy * dweight_1d(rz, shape) * inv_dx[2],
    )


@wp.func
def inside_grid(ix: int, iy: int, iz: int, nx: int, ny: int, nz: int) -> bool:
    return ix >= 0 and ix < nx and iy >= 0 and iy < ny and iz >= 0 and iz < nz


@wp.kernel
def stencil_weights(
    particle_x: wp.array(dtype=wp.vec3),
    shape: int,
    origin: wp.vec3,
    inv_dx: wp.vec3,
    stencil_nodes: wp.array(dtype=wp.vec3i, ndim=2),
    stencil_w: wp.array(dtype=float, ndim=2),
    stencil_dw: wp.array(dtype=wp.vec3, ndim=2),
):
    p = wp.tid()
    xg = grid_coordinates(particle_x[p], origin, inv_dx)
    bx = stencil_base(xg[0], shape)
    by = stencil_base(xg[1], shape)
    bz = stencil_base(xg[2], shape)
    width = shape + 1
    for a in range(width):
        for b in range(width):
            for c in range(width):
                n = (a * width + b) * width + c
                ix = bx + a
                iy = by + b
                iz = bz + c
                stencil_nodes[p, n] = wp.vec3i(ix, iy, iz)
                stencil_w[p, n] = node_weight(xg, ix, iy, iz, shape)
                stencil_dw[p, n] = node_weight_gradient(xg, ix, iy, iz, shape, inv_dx)


def compute_weights(positions, shape, cell_size, origin=(0.0, 0.0, 0.0), device="cpu"):
    """
    Evaluate the stencil of every particle.

    Returns
    -------
    nodes : (N, S, 3) int32 node indices
    weights : (N, S) weights
    gradients : (N, S, 3) weight gradients in physical units
    where S = (selector + 1)**3.
    """
    shape = resolve_shape(shape)
    positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    cell_size = np.broadcast_to(np.asarray(cell_size, dtype=np.float64), (3,))
    if np.any(cell_size <= 0.0):
        raise ValueError(f"Cell size must be positive, got {cell_size}")
    n_nodes = stencil_width(shape) ** 3
    n = positions.shape[0]

    x = wp.array(positions, dtype=wp.vec3, device=device)
    nodes = wp.zeros(shape=(n, n_nodes), dtype=wp.vec3i, device=device)
    weights = wp.zeros(shape=(n, n_nodes), dtype=float, device=device)
    gradients = wp.zeros(shape=(n, n_nodes), dtype=wp.vec3, device=device)
    wp.launch(
        kernel=stencil_weights,
        dim=n,
        inputs=[x, shape, wp.vec3(*[float(o) for o in origin]), wp.vec3(*[float(1.0 / h) for h in cell_size])],
        outputs=[nodes, weights, gradients],
        device=device,
    )
    return nodes.numpy(), weights.numpy(), gradients.numpy()


def stencil_base_host(xg, shape):
    """numpy twin of stencil_base, used for setup-time validation."""
    if shape == 1:
        return np.floor(xg).astype(np.int64)
    if shape == 2:
        return np.floor(xg - np.float32(0.5)).astype(np.int64)
    return np.floor(xg).astype(np.int64) - 1


def stencil_inside_grid(positions, shape, origin, cell_size, grid_dims):
    """Boolean mask of particles whose whole stencil lies on grid nodes."""
    shape = resolve_shape(shape)
    positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
    inv_dx = (1.0 / np.broadcast_to(np.asarray(cell_size, dtype=np.float64), (3,))).astype(np.float32)
    xg = (positions - np.asarray(origin, dtype=np.float32)) * inv_dx
    base = stencil_base_host(xg, shape)
    width = shape + 1
    upper = base + width - 1
    dims = np.asarray(grid_dims, dtype=np.int64)
    finite = np.all(np.isfinite(positions), axis=1)
    return finite & np.all(base >= 0, axis=1) & np.all(upper < dims, axis=1)
