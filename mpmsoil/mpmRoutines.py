import warp as wp

from mpmsoil.shapeFunctions import (
    grid_coordinates,
    stencil_base,
    node_weight,
    node_weight_gradient,
    inside_grid,
)

# health check codes, larger is more severe
HEALTH_OK = wp.constant(0)
HEALTH_OUT_OF_GRID = wp.constant(1)
HEALTH_INVERTED = wp.constant(2)
HEALTH_NON_FINITE = wp.constant(3)

HEALTH_MESSAGES = {
    1: "particle stencil left the grid",
    2: "deformation gradient inverted (det(F) <= 0)",
    3: "non-finite particle state",
}


@wp.func
def identity33() -> wp.mat33:
    return wp.mat33(1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0)


@wp.func
def signum(x: float) -> float:
    if x > 0.0:
        return 1.0
    if x < 0.0:
        return -1.0
    return 0.0


@wp.kernel
def compute_material_constants(
    E: wp.array(dtype=float),
    nu: wp.array(dtype=float),
    cohesion: wp.array(dtype=float),
    friction_angle: wp.array(dtype=float),
    dilation_angle: wp.array(dtype=float),
    shear_mod: wp.array(dtype=float),
    bulk_mod: wp.array(dtype=float),
    alpha_phi: wp.array(dtype=float),
    alpha_psi: wp.array(dtype=float),
    k_c: wp.array(dtype=float),
    ):
    # Elastic moduli and the Drucker-Prager cone fitted to plane-strain Mohr-Coulomb
    # E, nu: Young's modulus and Poisson ratio
    # friction_angle, dilation_angle: radians
    # alpha_phi: pressure sensitivity of the yield cone
    # alpha_psi: pressure sensitivity of the plastic potential
    # k_c: cohesion term of the yield cone
    p = wp.tid()
    shear_mod[p] = E[p] / (2.0 * (1.0 + nu[p]))
    bulk_mod[p] = E[p] / (3.0 * (1.0 - 2.0 * nu[p]))

    tan_phi = wp.tan(friction_angle[p])
    tan_psi = wp.tan(dilation_angle[p])
    root_phi = wp.sqrt(9.0 + 12.0 * tan_phi * tan_phi)
    alpha_phi[p] = tan_phi / root_phi
    alpha_psi[p] = tan_psi / wp.sqrt(9.0 + 12.0 * tan_psi * tan_psi)
    k_c[p] = 3.0 * cohesion[p] / root_phi


@wp.kernel
def reset_grid(
    offset: int,
    worker: int,
    n_partials: int,
    grid_m: wp.array(dtype=float, ndim=3),
    grid_mv: wp.array(dtype=wp.vec3, ndim=3),
    grid_f: wp.array(dtype=wp.vec3, ndim=3),
    grid_v: wp.array(dtype=wp.vec3, ndim=3),
    part_m: wp.array(dtype=float, ndim=4),
    part_mv: wp.array(dtype=wp.vec3, ndim=4),
    part_f: wp.array(dtype=wp.vec3, ndim=4),
):
    ti, j, k = wp.tid()
    i = ti + offset
    grid_m[i, j, k] = 0.0
    grid_mv[i, j, k] = wp.vec3(0.0)
    grid_f[i, j, k] = wp.vec3(0.0)
    grid_v[i, j, k] = wp.vec3(0.0)
    for w in range(n_partials):
        part_m[w, i, j, k] = 0.0
        part_mv[w, i, j, k] = wp.vec3(0.0)
        part_f[w, i, j, k] = wp.vec3(0.0)


@wp.kernel
def reset_momentum_partials(
    offset: int,
    worker: int,
    n_partials: int,
    part_mv: wp.array(dtype=wp.vec3, ndim=4),
):
    ti, j, k = wp.tid()
    i = ti + offset
    for w in range(n_partials):
        part_mv[w, i, j, k] = wp.vec3(0.0)


@wp.kernel
def p2g_scatter(
    offset: int,
    worker: int,
    shape: int,
    origin: wp.vec3,
    inv_dx: wp.vec3,
    nx: int,
    ny: int,
    nz: int,
    particle_x: wp.array(dtype=wp.vec3),
    particle_v: wp.array(dtype=wp.vec3),
    particle_mass: wp.array(dtype=float),
    particle_vol: wp.array(dtype=float),
    particle_stress: wp.array(dtype=wp.mat33),
    particle_body_force: wp.array(dtype=wp.vec3),
    particle_damping: wp.array(dtype=float),
    part_m: wp.array(dtype=float, ndim=4),
    part_mv: wp.array(dtype=wp.vec3, ndim=4),
    part_f: wp.array(dtype=wp.vec3, ndim=4),
):
    # mass, momentum and force of each particle onto its stencil
    # each worker owns the partial grid part_*[worker]
    p = wp.tid() + offset
    xg = grid_coordinates(particle_x[p], origin, inv_dx)
    m = particle_mass[p]
    v = particle_v[p]
    vol = particle_vol[p]
    stress = particle_stress[p]
    # body force plus viscous particle damping, per unit mass
    accel = particle_body_force[p] - particle_damping[p] * v

    bx = stencil_base(xg[0], shape)
    by = stencil_base(xg[1], shape)
    bz = stencil_base(xg[2], shape)
    width = shape + 1
    for a in range(width):
        ix = bx + a
        for b in range(width):
            iy = by + b
            for c in range(width):
                iz = bz + c
                if inside_grid(ix, iy, iz, nx, ny, nz):
                    weight = node_weight(xg, ix, iy, iz, shape)
                    dweight = node_weight_gradient(xg, ix, iy, iz, shape, inv_dx)
                    internal_force = -vol * (stress * dweight)
                    wp.atomic_add(part_m, worker, ix, iy, iz, weight * m)
                    wp.atomic_add(part_mv, worker, ix, iy, iz, (weight * m) * v)
                    wp.atomic_add(part_f, worker, ix, iy, iz, internal_force + (weight * m) * accel)


@wp.kernel
def p2g_momentum(
    offset: int,
    worker: int,
    shape: int,
    origin: wp.vec3,
    inv_dx: wp.vec3,
    nx: int,
    ny: int,
    nz: int,
    particle_x_prev: wp.array(dtype=wp.vec3),
    particle_v: wp.array(dtype=wp.vec3),
    particle_mass: wp.array(dtype=float),
    part_mv: wp.array(dtype=wp.vec3, ndim=4),
):
    # second MUSL scatter: updated momentum with the start-of-step weights
    p = wp.tid() + offset
    xg = grid_coordinates(particle_x_prev[p], origin, inv_dx)
    mv = particle_mass[p] * particle_v[p]

    bx = stencil_base(xg[0], shape)
    by = stencil_base(xg[1], shape)
    bz = stencil_base(xg[2], shape)
    width = shape + 1
    for a in range(width):
        ix = bx + a
        for b in range(width):
            iy = by + b
            for c in range(width):
                iz = bz + c
                if inside_grid(ix, iy, iz, nx, ny, nz):
                    weight = node_weight(xg, ix, iy, iz, shape)
                    wp.atomic_add(part_mv, worker, ix, iy, iz, weight * mv)


@wp.kernel
def reduce_partials(
    offset: int,
    worker: int,
    n_partials: int,
    part_m: wp.array(dtype=float, ndim=4),
    part_mv: wp.array(dtype=wp.vec3, ndim=4),
    part_f: wp.array(dtype=wp.vec3, ndim=4),
    grid_m: wp.array(dtype=float, ndim=3),
    grid_mv: wp.array(dtype=wp.vec3, ndim=3),
    grid_f: wp.array(dtype=wp.vec3, ndim=3),
):
    ti, j, k = wp.tid()
    i = ti + offset
    m = float(0.0)
    mv = wp.vec3(0.0)
    f = wp.vec3(0.0)
    # fixed worker order keeps the sum reproducible
    for w in range(n_partials):
        m = m + part_m[w, i, j, k]
        mv = mv + part_mv[w, i, j, k]
        f = f + part_f[w, i, j, k]
    grid_m[i, j, k] = m
    grid_mv[i, j, k] = mv
    grid_f[i, j, k] = f


@wp.kernel
def update_grid_velocity(
    offset: int,
    worker: int,
    dt: float,
    damping: float,
    min_mass: float,
    grid_m: wp.array(dtype=float, ndim=3),
    grid_mv: wp.array(dtype=wp.vec3, ndim=3),
    grid_f: wp.array(dtype=wp.vec3, ndim=3),
    grid_v: wp.array(dtype=wp.vec3, ndim=3),
):
    ti, j, k = wp.tid()
    i = ti + offset
    m = grid_m[i, j, k]
    if m > min_mass:
        mv = grid_mv[i, j, k]
        f = grid_f[i, j, k]
        if damping > 0.0:
            # local (Cundall) damping against the direction of motion
            f = f - damping * wp.vec3(
                wp.abs(f[0]) * signum(mv[0]),
                wp.abs(f[1]) * signum(mv[1]),
                wp.abs(f[2]) * signum(mv[2]),
            )
        grid_v[i, j, k] = (mv + dt * f) * (1.0 / m)
    else:
        grid_v[i, j, k] = wp.vec3(0.0)


@wp.kernel
def remap_grid_velocity(
    offset: int,
    worker: int,
    n_partials: int,
    min_mass: float,
    part_mv: wp.array(dtype=wp.vec3, ndim=4),
    grid_m: wp.array(dtype=float, ndim=3),
    grid_mv: wp.array(dtype=wp.vec3, ndim=3),
    grid_v: wp.array(dtype=wp.vec3, ndim=3),
):
    ti, j, k = wp.tid()
    i = ti + offset
    mv = wp.vec3(0.0)
    for w in range(n_partials):
        mv = mv + part_mv[w, i, j, k]
    grid_mv[i, j, k] = mv
    m = grid_m[i, j, k]
    if m > min_mass:
        grid_v[i, j, k] = mv * (1.0 / m)
    else:
        grid_v[i, j, k] = wp.vec3(0.0)


@wp.kernel
def g2p(
    offset: int,
    worker: int,
    dt: float,
    shape: int,
    origin: wp.vec3,
    inv_dx: wp.vec3,
    nx: int,
    ny: int,
    nz: int,
    min_mass: float,
    grid_m: wp.array(dtype=float, ndim=3),
    grid_mv: wp.array(dtype=wp.vec3, ndim=3),
    grid_v: wp.array(dtype=wp.vec3, ndim=3),
    particle_x: wp.array(dtype=wp.vec3),
    particle_x_prev: wp.array(dtype=wp.vec3),
    particle_v: wp.array(dtype=wp.vec3),
):
    # FLIP velocity increment, PIC position update
    p = wp.tid() + offset
    x = particle_x[p]
    xg = grid_coordinates(x, origin, inv_dx)
    dv = wp.vec3(0.0)
    v_grid = wp.vec3(0.0)

    bx = stencil_base(xg[0], shape)
    by = stencil_base(xg[1], shape)
    bz = stencil_base(xg[2], shape)
    width = shape + 1
    for a in range(width):
        ix = bx + a
        for b in range(width):
            iy = by + b
            for c in range(width):
                iz = bz + c
                if inside_grid(ix, iy, iz, nx, ny, nz):
                    m = grid_m[ix, iy, iz]
                    if m > min_mass:
                        weight = node_weight(xg, ix, iy, iz, shape)
                        v_new = grid_v[ix, iy, iz]
                        v_old = grid_mv[ix, iy, iz] * (1.0 / m)
                        dv = dv + weight * (v_new - v_old)
                        v_grid = v_grid + weight * v_new

    particle_x_prev[p] = x
    particle_v[p] = particle_v[p] + dv
    particle_x[p] = x + dt * v_grid


@wp.kernel
def update_deformation(
    offset: int,
    worker: int,
    dt: float,
    shape: int,
    origin: wp.vec3,
    inv_dx: wp.vec3,
    nx: int,
    ny: int,
    nz: int,
    min_mass: float,
    grid_m: wp.array(dtype=float, ndim=3),
    grid_v: wp.array(dtype=wp.vec3, ndim=3),
    particle_x_prev: wp.array(dtype=wp.vec3),
    particle_mass: wp.array(dtype=float),
    particle_F: wp.array(dtype=wp.mat33),
    particle_vol: wp.array(dtype=float),
    particle_density: wp.array(dtype=float),
    particle_L: wp.array(dtype=wp.mat33),
    particle_dstrain: wp.array(dtype=wp.mat33),
    particle_stress: wp.array(dtype=wp.mat33),
):
    # velocity gradient from the re-mapped grid velocity, evaluated with the
    # start-of-step stencil, then F, volume, density, strain increment and the
    # Jaumann rotation of the stress carried over from the last step
    p = wp.tid() + offset
    xg = grid_coordinates(particle_x_prev[p], origin, inv_dx)
    L = wp.mat33(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)

    bx = stencil_base(xg[0], shape)
    by = stencil_base(xg[1], shape)
    bz = stencil_base(xg[2], shape)
    width = shape + 1
    for a in range(width):
        ix = bx + a
        for b in range(width):
            iy = by + b
            for c in range(width):
                iz = bz + c
                if inside_grid(ix, iy, iz, nx, ny, nz):
                    if grid_m[ix, iy, iz] > min_mass:
                        dweight = node_weight_gradient(xg, ix, iy, iz, shape, inv_dx)
                        L = L + wp.outer(grid_v[ix, iy, iz], dweight)

    I33 = identity33()
    F_inc = I33 + dt * L
    particle_L[p] = L
    particle_F[p] = F_inc * particle_F[p]
    vol = particle_vol[p] * wp.determinant(F_inc)
    particle_vol[p] = vol
    particle_density[p] = particle_mass[p] / vol

    Lt = wp.transpose(L)
    particle_dstrain[p] = (0.5 * dt) * (L + Lt)
    spin = (0.5 * dt) * (L - Lt)
    stress = particle_stress[p]
    particle_stress[p] = stress + spin * stress - stress * spin


@wp.func
def drucker_prager_yield(stress: wp.mat33, alpha_phi: float, k_c: float) -> float:
    # f = sqrt(J2) + alpha * I1 - k, tension positive
    I1 = wp.trace(stress)
    s = stress - (I1 / 3.0) * identity33()
    return wp.sqrt(0.5 * wp.ddot(s, s)) + alpha_phi * I1 - k_c


@wp.func
def drucker_prager_return_mapping(
    stress: wp.mat33,
    dstrain: wp.mat33,
    shear_mod: float,
    bulk_mod: float,
    alpha_phi: float,
    alpha_psi: float,
    k_c: float,
    particle_plastic_strain: wp.array(dtype=float),
    p: int
) -> wp.mat33:
    I33 = identity33()
    lam = bulk_mod - 2.0 / 3.0 * shear_mod

    # elastic trial state
    trial = stress + (lam * wp.trace(dstrain)) * I33 + (2.0 * shear_mod) * dstrain
    trial = 0.5 * (trial + wp.transpose(trial))
    I1 = wp.trace(trial)
    s = trial - (I1 / 3.0) * I33
    sqrt_J2 = wp.sqrt(0.5 * wp.ddot(s, s))
    f = sqrt_J2 + alpha_phi * I1 - k_c
    if f <= 0.0:
        return trial

    dlambda = f / (shear_mod + 9.0 * bulk_mod * alpha_phi * alpha_psi)

    if alpha_phi > 1.0e-12:
        if sqrt_J2 - shear_mod * dlambda <= 0.0:
            # the cone return overshoots the apex (or the trial state is hydrostatic)
            I1_apex = k_c / alpha_phi
            dev_plastic = wp.ddot(s, s) / (4.0 * shear_mod * shear_mod)
            vol_plastic = (I1 - I1_apex) / (3.0 * bulk_mod)
            particle_plastic_strain[p] += wp.sqrt(dev_plastic + vol_plastic * vol_plastic / 3.0)
            return (I1_apex / 3.0) * I33

    particle_plastic_strain[p] += dlambda * wp.sqrt(0.5 + 3.0 * alpha_psi * alpha_psi)
    return trial - dlambda * ((shear_mod / sqrt_J2) * s + (3.0 * bulk_mod * alpha_psi) * I33)


@wp.kernel
def drucker_prager_stress_update(
    offset: int,
    worker: int,
    particle_stress: wp.array(dtype=wp.mat33),
    particle_dstrain: wp.array(dtype=wp.mat33),
    shear_mod: wp.array(dtype=float),
    bulk_mod: wp.array(dtype=float),
    alpha_phi: wp.array(dtype=float),
    alpha_psi: wp.array(dtype=float),
    k_c: wp.array(dtype=float),
    particle_plastic_strain: wp.array(dtype=float),
):
    p = wp.tid() + offset
    particle_stress[p] = drucker_prager_return_mapping(
        particle_stress[p],
        particle_dstrain[p],
        shear_mod[p],
        bulk_mod[p],
        alpha_phi[p],
        alpha_psi[p],
        k_c[p],
        particle_plastic_strain,
        p,
    )


@wp.kernel
def evaluate_yield_function(
    particle_stress: wp.array(dtype=wp.mat33),
    alpha_phi: wp.array(dtype=float),
    k_c: wp.array(dtype=float),
    yield_value: wp.array(dtype=float),
):
    p = wp.tid()
    yield_value[p] = drucker_prager_yield(particle_stress[p], alpha_phi[p], k_c[p])


@wp.kernel
def check_particle_health(
    offset: int,
    worker: int,
    shape: int,
    origin: wp.vec3,
    inv_dx: wp.vec3,
    nx: int,
    ny: int,
    nz: int,
    particle_x: wp.array(dtype=wp.vec3),
    particle_v: wp.array(dtype=wp.vec3),
    particle_stress: wp.array(dtype=wp.mat33),
    particle_F: wp.array(dtype=wp.mat33),
    flags: wp.array(dtype=wp.int32),
    particle_code: wp.array(dtype=wp.int32),
):
    # particle_code[p] holds this particle's code, flags[worker] the worst code of the chunk
    p = wp.tid() + offset
    x = particle_x[p]
    stress = particle_stress[p]
    code = int(0)

    finite = wp.isfinite(wp.length(x)) and wp.isfinite(wp.length(particle_v[p]))
    finite = finite and wp.isfinite(wp.ddot(stress, stress))
    if not finite:
        code = HEALTH_NON_FINITE
    elif wp.determinant(particle_F[p]) <= 0.0:
        code = HEALTH_INVERTED
    else:
        xg = grid_coordinates(x, origin, inv_dx)
        width = shape + 1
        bx = stencil_base(xg[0], shape)
        by = stencil_base(xg[1], shape)
        bz = stencil_base(xg[2], shape)
        if bx < 0 or by < 0 or bz < 0 or bx + width > nx or by + width > ny or bz + width > nz:
            code = HEALTH_OUT_OF_GRID

    particle_code[p] = code
    if code > HEALTH_OK:
        wp.atomic_max(flags, worker, code)
