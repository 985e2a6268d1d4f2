"""
Scan discovery and point-cloud file I/O.

This is the only place that looks at file names: the numeric index embedded
in a scan's name is turned into explicit Scan.index metadata here, and the
stitching core works from that.
"""

import argparse
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import open3d as o3d

from .errors import MalformedInputError
from .pose import Pose

# =================== DEFAULT CONFIG ===================
SCAN_SUFFIX = ".pcd"
OUTPUT_NAME = "filtered.pcd"

_TRAILING_INT = re.compile(r"(\d+)$")


@dataclass
class Scan:
    index: int
    cloud: o3d.geometry.PointCloud
    pose: Pose = field(default_factory=Pose.identity)
    path: Optional[Path] = None

    @property
    def name(self):
        return self.path.name if self.path is not None else f"scan_{self.index}"


# =================== DISCOVERY ===================
def scan_index(path) -> Optional[int]:
    """Trailing integer of the file stem ('PCD12.pcd' -> 12), or None."""
    m = _TRAILING_INT.search(Path(path).stem)
    return int(m.group(1)) if m else None


def sorted_scan_files(directory, output_name=OUTPUT_NAME, suffix=SCAN_SUFFIX) -> List[Tuple[Optional[int], Path]]:
    """
    List scan files in numeric order of their embedded index; files without
    an index follow in lexicographic order. The output file is never listed.
    """
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"scan directory not found: {root}")

    files = [p for p in root.iterdir()
             if p.is_file() and p.suffix.lower() == suffix and p.name != output_name]

    infos = [(scan_index(p), p) for p in files]
    infos_num = sorted([x for x in infos if x[0] is not None], key=lambda t: (t[0], t[1].name))
    infos_str = sorted([x for x in infos if x[0] is None], key=lambda t: t[1].name)
    return infos_num + infos_str


def parse_range(arg):
    """Parse a scan range string "START:END" into (start, end)."""
    try:
        start_str, end_str = arg.split(":")
        return int(start_str), int(end_str)
    except Exception:
        raise argparse.ArgumentTypeError("scan range must be START:END, e.g., 2:15")


def select_scans(all_infos, scan_range=None, max_scans=None):
    """Select scans by embedded index range and/or maximum count."""
    if scan_range is None:
        selected = list(all_infos)
    else:
        start, end = scan_range
        if start > end:
            start, end = end, start
        selected = [(k, p) for k, p in all_infos if k is not None and start <= k <= end]
    if max_scans is not None and max_scans > 0:
        selected = selected[:max_scans]
    return selected


# =================== I/O ===================
def load_point_cloud(path):
    """Read a cloud and drop non-finite points."""
    path = Path(path)
    if not path.is_file():
        raise MalformedInputError(f"point cloud file not found: {path}")
    try:
        pcd = o3d.io.read_point_cloud(str(path))
    except RuntimeError as e:
        raise MalformedInputError(f"cannot read point cloud {path}: {e}") from e
    if pcd.is_empty():
        raise MalformedInputError(f"point cloud {path} is empty or could not be loaded")

    pts = np.asarray(pcd.points)
    finite = np.all(np.isfinite(pts), axis=1)
    if not finite.all():
        pcd = pcd.select_by_index(np.flatnonzero(finite).tolist())
    return pcd


def save_point_cloud(path, pcd):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not o3d.io.write_point_cloud(str(path), pcd):
        raise OSError(f"failed to write point cloud {path}")
    return path


def iter_scans(infos, poses=None, failures=None):
    """
    Lazily turn (embedded index, path) pairs into Scans, one cloud in memory
    at a time. The position in the sorted list becomes Scan.index and
    poses[i] is attached to the i-th scan. Unreadable files are reported,
    appended to failures (if given) as (index, error) and skipped.
    """
    for i, (_k, path) in enumerate(infos):
        pose = poses[i] if poses is not None and i < len(poses) else Pose.identity()
        try:
            cloud = load_point_cloud(path)
        except MalformedInputError as e:
            print(f"[warn] skipping scan {i}: {e}")
            if failures is not None:
                failures.append((i, e))
            continue
        yield Scan(index=i, cloud=cloud, pose=pose, path=Path(path))
