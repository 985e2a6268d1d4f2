"""
Synthetic fixtures: cube surfaces sampled at millimetre scale so the default
leaf size (100) and z band ([0, 10000]) apply unchanged.
"""

import numpy as np
import open3d as o3d

CUBE_SIZE = 2000.0
CUBE_CENTER = (0.0, 0.0, 2500.0)


def cube_surface_points(n=6000, size=CUBE_SIZE, center=CUBE_CENTER, seed=0, faces=range(6)):
    """Uniform samples on the faces of an axis-aligned cube."""
    rng = np.random.default_rng(seed)
    faces = list(faces)
    per_face = n // len(faces)
    h = size / 2.0
    chunks = []
    for f in faces:
        axis, sign = f // 2, (1.0 if f % 2 else -1.0)
        u, v = [a for a in range(3) if a != axis]
        p = np.empty((per_face, 3), dtype=np.float64)
        p[:, axis] = sign * h
        p[:, u] = rng.uniform(-h, h, per_face)
        p[:, v] = rng.uniform(-h, h, per_face)
        chunks.append(p)
    return np.vstack(chunks) + np.asarray(center, dtype=np.float64)


def make_cloud(pts):
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(np.asarray(pts, dtype=np.float64))
    return pcd


def cube_cloud(**kwargs):
    return make_cloud(cube_surface_points(**kwargs))


def rotation_z(deg):
    a = np.deg2rad(deg)
    c, s = np.cos(a), np.sin(a)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def rigid(R, t):
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = t
    return T


def points_of(pcd):
    return np.asarray(pcd.points).copy()
