"""
Fine alignment: point-to-point iterative closest point against the fused model.
"""

from dataclasses import dataclass

import numpy as np
import open3d as o3d

from .errors import AlignmentDegenerateError, ConfigurationError
from .filters import cloud_from_points
from .pose import rotation_angle, transform_points

MIN_CORRESPONDENCES = 3


@dataclass
class IcpResult:
    transformation: np.ndarray      # cumulative 4x4, source -> target
    iterations: int
    converged: bool                 # False when the iteration budget ran out
    initial_mean_distance: float
    mean_distance: float
    correspondences: int


def estimate_rigid_transform(A, B):
    """
    Least-squares rigid transform (Umeyama with unit scale) for fixed pairs
    A[k] <-> B[k]. Returns a 4x4 T with B ~ R A + t.
    """
    A = np.asarray(A, dtype=np.float64)
    B = np.asarray(B, dtype=np.float64)
    if A.shape != B.shape or A.ndim != 2 or A.shape[1] != 3:
        raise ValueError("A and B must both have shape (N,3)")
    if len(A) < MIN_CORRESPONDENCES:
        raise AlignmentDegenerateError(
            f"need at least {MIN_CORRESPONDENCES} correspondences, got {len(A)}"
        )

    muA = A.mean(0)
    muB = B.mean(0)
    X = A - muA
    Y = B - muB

    Sigma = (Y.T @ X) / len(A)
    U, _D, Vt = np.linalg.svd(Sigma)

    S = np.eye(3)
    if np.linalg.det(U @ Vt) < 0:
        S[-1, -1] = -1

    R = U @ S @ Vt
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = R
    T[:3, 3] = muB - R @ muA
    return T


def nearest_neighbours(kdt, P):
    """
    Closest target index and squared distance for every row of P.
    kdt is an Open3D KDTreeFlann built over the target.
    """
    n = len(P)
    idx = np.empty(n, dtype=np.int64)
    d2 = np.empty(n, dtype=np.float64)
    for i, p in enumerate(P):
        _c, nn, dist2 = kdt.search_knn_vector_3d(p, 1)
        idx[i] = nn[0]
        d2[i] = dist2[0]
    return idx, d2


def mean_nn_distance(source, target):
    """Mean distance from every source point to its nearest target point."""
    d = np.asarray(source.compute_point_cloud_distance(target))
    return float(d.mean()) if len(d) else float("nan")


def register_icp(source, target, max_iterations=10, tolerance=1e-6,
                 max_correspondence_distance=None, kdtree=None):
    """
    Refine the pose of source against target.

    Each iteration pairs every source point with its nearest target point,
    solves the closed-form rigid transform minimizing the squared pair
    distances and applies it. The loop stops early once the incremental
    rotation (radians) and translation both fall below tolerance; pass
    tolerance=None to always run the full budget.

    Returns (aligned copy of source, IcpResult).
    """
    if max_iterations < 0:
        raise ConfigurationError(f"max_iterations must be >= 0, got {max_iterations}")

    P = np.array(source.points, dtype=np.float64)
    Q = np.asarray(target.points, dtype=np.float64)
    if len(P) < MIN_CORRESPONDENCES or len(Q) < MIN_CORRESPONDENCES:
        raise AlignmentDegenerateError(
            f"ICP needs at least {MIN_CORRESPONDENCES} points per cloud "
            f"(source={len(P)}, target={len(Q)})"
        )

    kdt = kdtree if kdtree is not None else o3d.geometry.KDTreeFlann(target)
    max_d2 = None
    if max_correspondence_distance is not None:
        max_d2 = float(max_correspondence_distance) ** 2

    T_total = np.eye(4, dtype=np.float64)
    idx, d2 = nearest_neighbours(kdt, P)
    initial_mean = float(np.sqrt(d2).mean())
    converged = False
    iterations = 0
    used = len(P)

    for it in range(1, max_iterations + 1):
        mask = np.ones(len(P), dtype=bool) if max_d2 is None else d2 <= max_d2
        used = int(mask.sum())
        if used < MIN_CORRESPONDENCES:
            raise AlignmentDegenerateError(
                f"ICP iteration {it}: only {used} correspondences within "
                f"{max_correspondence_distance}"
            )

        T_step = estimate_rigid_transform(P[mask], Q[idx[mask]])
        P = transform_points(P, T_step)
        T_total = T_step @ T_total
        iterations = it

        idx, d2 = nearest_neighbours(kdt, P)

        if tolerance is not None:
            if rotation_angle(T_step) < tolerance and np.linalg.norm(T_step[:3, 3]) < tolerance:
                converged = True
                break

    result = IcpResult(
        transformation=T_total,
        iterations=iterations,
        converged=converged,
        initial_mean_distance=initial_mean,
        mean_distance=float(np.sqrt(d2).mean()),
        correspondences=used,
    )
    return cloud_from_points(P), result
