"""
Preprocessing stages: statistical outlier removal, voxel downsampling and the
axis-aligned range clip. Every stage returns a new cloud and leaves its input
untouched.
"""

import math

import numpy as np
import open3d as o3d

from .errors import ConfigurationError

AXES = {"x": 0, "y": 1, "z": 2}
DTYPE = np.float64


# =================== CLOUD HELPERS ===================
def cloud_from_points(pts):
    """Build an Open3D point cloud from an (N,3) array."""
    pts = np.asarray(pts, dtype=DTYPE).reshape(-1, 3)
    pcd = o3d.geometry.PointCloud()
    pcd.points = o3d.utility.Vector3dVector(pts)
    return pcd


def bounding_extent(pcd):
    """(min_xyz, max_xyz) of a non-empty cloud."""
    pts = np.asarray(pcd.points)
    if len(pts) == 0:
        raise ValueError("bounding extent of an empty cloud is undefined")
    return pts.min(axis=0), pts.max(axis=0)


def _axis_index(axis):
    if isinstance(axis, str):
        key = axis.lower()
        if key not in AXES:
            raise ConfigurationError(f"unknown axis {axis!r}, expected one of x/y/z")
        return AXES[key]
    if axis in (0, 1, 2):
        return int(axis)
    raise ConfigurationError(f"unknown axis {axis!r}, expected one of x/y/z")


# =================== OUTLIER FILTER ===================
def remove_outliers(pcd, num_neighbours, std_mul):
    """
    Statistical outlier removal.

    For each point the mean distance to its num_neighbours nearest neighbours
    is computed through a KD-tree; points whose mean exceeds
    mu + std_mul * sigma (over all points) are discarded.

    Open3D counts the query point among its own neighbours, so the search
    asks for num_neighbours + 1 to average over num_neighbours other points.
    """
    n = len(pcd.points)
    k = int(num_neighbours)
    if k < 1 or k >= n:
        raise ConfigurationError(
            f"outlier filter needs 1 <= k < cloud size (k={k}, size={n})"
        )
    if not std_mul > 0:
        raise ConfigurationError(f"deviation multiplier must be positive, got {std_mul}")
    filtered, _ind = pcd.remove_statistical_outlier(nb_neighbors=k + 1, std_ratio=float(std_mul))
    return filtered


# =================== VOXEL GRID ===================
class VoxelHash:
    """
    Voxel-level accumulation: points are binned by floor(p / vs) and each
    occupied voxel exports the centroid of every point that landed in it.
    Can be fed incrementally (streamed merge) or in one shot (downsample).
    """
    def __init__(self, voxel_size):
        vs = float(voxel_size)
        if not math.isfinite(vs) or vs <= 0:
            raise ConfigurationError(f"voxel size must be a positive number, got {voxel_size}")
        self.vs = vs
        # key -> (sx, sy, sz, n)
        self.map = {}

    def __len__(self):
        return len(self.map)

    def add_points(self, pts):
        """
        Accumulate an (N,3) array. Non-finite rows are skipped.
        Returns the number of points accumulated.
        """
        P = np.asarray(pts, dtype=DTYPE).reshape(-1, 3)
        P = P[np.all(np.isfinite(P), axis=1)]
        if len(P) == 0:
            return 0

        keys = np.floor(P / self.vs).astype(np.int64)
        uniq, inv = np.unique(keys, axis=0, return_inverse=True)
        inv = inv.reshape(-1)
        sums = np.zeros((len(uniq), 3), dtype=DTYPE)
        np.add.at(sums, inv, P)
        counts = np.bincount(inv, minlength=len(uniq))

        mp = self.map
        for k, s, n in zip(map(tuple, uniq.tolist()), sums, counts):
            if k in mp:
                sx, sy, sz, m = mp[k]
                mp[k] = (sx + float(s[0]), sy + float(s[1]), sz + float(s[2]), m + int(n))
            else:
                mp[k] = (float(s[0]), float(s[1]), float(s[2]), int(n))
        return len(P)

    def add_cloud(self, pcd):
        return self.add_points(np.asarray(pcd.points))

    def to_points(self):
        """Centroids ordered by voxel key."""
        pts = np.empty((len(self.map), 3), dtype=DTYPE)
        for i, k in enumerate(sorted(self.map)):
            sx, sy, sz, n = self.map[k]
            inv = 1.0 / n
            pts[i] = (sx * inv, sy * inv, sz * inv)
        return pts

    def to_pointcloud(self):
        return cloud_from_points(self.to_points())


def downsample(pcd, leaf_size):
    """
    Voxel downsampler: replace the points of every occupied cubic cell of
    side leaf_size by their centroid.
    """
    vox = VoxelHash(leaf_size)
    vox.add_cloud(pcd)
    return vox.to_pointcloud()


# =================== RANGE CLIP ===================
def filter_range(pcd, axis, lo, hi):
    """Keep points with lo <= p[axis] <= hi, preserving input order."""
    a = _axis_index(axis)
    lo, hi = float(lo), float(hi)
    if lo > hi:
        raise ConfigurationError(f"range clip needs min <= max, got [{lo}, {hi}]")
    P = np.asarray(pcd.points)
    if len(P) == 0:
        return o3d.geometry.PointCloud()
    keep = np.flatnonzero((P[:, a] >= lo) & (P[:, a] <= hi))
    return pcd.select_by_index(keep.tolist())
