"""
6-DOF poses and the rigid transform applier.

A Pose carries a translation (dx, dy, dz) and three rotation angles in radians
(rotx, roty, rotz). Angles describe the sensor's orientation relative to the
reference frame, so points are rotated by the inverse to bring them into that
frame: each angle is multiplied by ROTATION_SIGN (-1) before it is applied.

The composed transform is

    T = [I | t] @ Rx(s*rotx) @ Ry(s*roty) @ Rz(s*rotz),   p' = R p + t
"""

import math
from dataclasses import dataclass, replace

import numpy as np
import open3d as o3d

# Angles are negated before application. Flipping this silently mirrors every
# later alignment, so it is passed explicitly wherever it matters.
ROTATION_SIGN = -1.0


@dataclass(frozen=True)
class Pose:
    dx: float = 0.0
    dy: float = 0.0
    dz: float = 0.0
    rotx: float = 0.0
    roty: float = 0.0
    rotz: float = 0.0
    confidence: float = 0.0

    @classmethod
    def identity(cls):
        return cls()

    def __sub__(self, other):
        """Relative pose self - other; keeps self's confidence."""
        if not isinstance(other, Pose):
            return NotImplemented
        return Pose(
            dx=self.dx - other.dx,
            dy=self.dy - other.dy,
            dz=self.dz - other.dz,
            rotx=self.rotx - other.rotx,
            roty=self.roty - other.roty,
            rotz=self.rotz - other.rotz,
            confidence=self.confidence,
        )

    @property
    def translation(self):
        return np.array([self.dx, self.dy, self.dz], dtype=np.float64)

    @property
    def angles(self):
        return np.array([self.rotx, self.roty, self.rotz], dtype=np.float64)

    def is_identity(self):
        return not np.any(self.translation) and not np.any(self.angles)

    def is_informative(self):
        """False only for the identity pose with zero confidence (nothing to apply)."""
        return not (self.is_identity() and self.confidence == 0.0)

    def with_confidence(self, confidence):
        return replace(self, confidence=float(confidence))


# =================== ROTATIONS ===================
def rot_x(a):
    c, s = math.cos(a), math.sin(a)
    return np.array([[1.0, 0.0, 0.0],
                     [0.0, c, -s],
                     [0.0, s, c]], dtype=np.float64)


def rot_y(a):
    c, s = math.cos(a), math.sin(a)
    return np.array([[c, 0.0, s],
                     [0.0, 1.0, 0.0],
                     [-s, 0.0, c]], dtype=np.float64)


def rot_z(a):
    c, s = math.cos(a), math.sin(a)
    return np.array([[c, -s, 0.0],
                     [s, c, 0.0],
                     [0.0, 0.0, 1.0]], dtype=np.float64)


def pose_matrix(pose, angle_sign=ROTATION_SIGN):
    """
    4x4 homogeneous transform for a pose: rotate about X, then Y, then Z using
    angle_sign * angle, then translate.
    """
    R = (rot_x(angle_sign * pose.rotx)
         @ rot_y(angle_sign * pose.roty)
         @ rot_z(angle_sign * pose.rotz))
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = R
    T[:3, 3] = pose.translation
    return T


def invert_transform(T):
    """Closed-form inverse of a rigid 4x4 transform."""
    T = np.asarray(T, dtype=np.float64)
    R = T[:3, :3]
    t = T[:3, 3]
    T_inv = np.eye(4, dtype=np.float64)
    T_inv[:3, :3] = R.T
    T_inv[:3, 3] = -R.T @ t
    return T_inv


def transform_points(P, T):
    """Apply a 4x4 rigid transform to an (N,3) array."""
    P = np.asarray(P, dtype=np.float64)
    return (T[:3, :3] @ P.T).T + T[:3, 3]


def rotation_angle(T):
    """Rotation magnitude (radians) of the rotation block of T."""
    cos_a = (np.trace(T[:3, :3]) - 1.0) / 2.0
    return float(math.acos(min(1.0, max(-1.0, cos_a))))


def transform_cloud(pcd, T):
    """Return a transformed copy of an Open3D cloud."""
    out = o3d.geometry.PointCloud(pcd)
    out.transform(np.asarray(T, dtype=np.float64))
    return out


def apply_pose(pcd, pose, angle_sign=ROTATION_SIGN):
    """
    Rigid transform applier: express a scan in the reference frame given the
    sensor pose it was captured from. Returns a new cloud.
    """
    return transform_cloud(pcd, pose_matrix(pose, angle_sign=angle_sign))
