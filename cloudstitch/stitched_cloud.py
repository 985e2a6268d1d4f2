"""
The stitched (fused) model and the per-scan registration pipeline.

    new scan -> outliers -> voxel -> prior pose -> z clip
             -> SAC-IA (vs model) -> ICP (vs model) -> merge -> voxel(model)

Every scan is aligned against the model left behind by the scans before it,
so a model must be fed one scan at a time in a fixed order.
"""

import threading
import time
from dataclasses import asdict, dataclass, fields
from typing import Optional

import numpy as np

from .coarse import FEATURE_K, SEED, CoarseResult, register_sac_ia
from .errors import AlignmentDegenerateError, SequenceError
from .filters import downsample, filter_range, remove_outliers
from .icp import IcpResult, register_icp
from .pose import apply_pose

# =================== DEFAULT CONFIG ===================
LEAF_SIZE = 100
Z_RANGE = (0, 10000)

INIT_OUTLIER_NEIGHBOURS = 100
INIT_OUTLIER_STD = 2
SCAN_OUTLIER_NEIGHBOURS = 100
SCAN_OUTLIER_STD = 1

COARSE_ITERATIONS = 10
FINE_ITERATIONS = 10
ICP_TOLERANCE = 1e-6

# scans smaller than the descriptor neighbourhood cannot be registered
MIN_SCAN_POINTS = FEATURE_K


@dataclass
class TimeBreakdown:
    """Seconds spent per stage, accumulated over every call on one model."""
    outlier_removal: float = 0.0
    downsampling: float = 0.0
    transformation: float = 0.0
    range_filter: float = 0.0
    normals: float = 0.0
    features: float = 0.0
    coarse_alignment: float = 0.0
    fine_alignment: float = 0.0
    merge: float = 0.0
    total: float = 0.0

    def add(self, stage, seconds):
        setattr(self, stage, getattr(self, stage) + float(seconds))

    def as_dict(self):
        return asdict(self)

    def report(self, echo=True):
        lines = ["Time breakdown (s)", "=" * 32]
        for f in fields(self):
            lines.append(f"{f.name:<18}: {getattr(self, f.name):10.3f}")
        text = "\n".join(lines)
        if echo:
            print(text)
        return text


@dataclass
class StitchReport:
    index: Optional[int]
    input_points: int
    after_outliers: int
    after_downsample: int
    after_range: int
    model_points_before: int
    model_points: int
    coarse: CoarseResult
    fine: IcpResult


class StitchedCloud:
    """
    Owns the fused model. Construct it from the first scan, then feed the
    remaining scans through add_cloud / add_scan in order.
    """

    def __init__(self, first_cloud, *, leaf_size=LEAF_SIZE, z_range=Z_RANGE,
                 init_outlier_neighbours=INIT_OUTLIER_NEIGHBOURS, init_outlier_std=INIT_OUTLIER_STD,
                 scan_outlier_neighbours=SCAN_OUTLIER_NEIGHBOURS, scan_outlier_std=SCAN_OUTLIER_STD,
                 coarse_iterations=COARSE_ITERATIONS, fine_iterations=FINE_ITERATIONS,
                 icp_tolerance=ICP_TOLERANCE, icp_max_distance=None,
                 seed=SEED, verbose=True, index=None):
        self.leaf_size = leaf_size
        self.z_range = (float(z_range[0]), float(z_range[1]))
        self.scan_outlier_neighbours = scan_outlier_neighbours
        self.scan_outlier_std = scan_outlier_std
        self.coarse_iterations = coarse_iterations
        self.fine_iterations = fine_iterations
        self.icp_tolerance = icp_tolerance
        self.icp_max_distance = icp_max_distance
        self.verbose = verbose

        self.time_breakdown = TimeBreakdown()
        self.last_index = index
        self.scans_fused = 0
        self._rng = np.random.default_rng(seed)
        self._lock = threading.Lock()

        t_start = time.perf_counter()
        n0 = len(first_cloud.points)
        if n0 < MIN_SCAN_POINTS:
            raise AlignmentDegenerateError(
                f"first scan has {n0} points, the model needs at least {MIN_SCAN_POINTS}"
            )
        cloud = self._timed("outlier_removal", remove_outliers,
                            first_cloud, init_outlier_neighbours, init_outlier_std)
        self._log(f"  [init] outliers: {n0} -> {len(cloud.points)} "
                  f"(k={init_outlier_neighbours}, dev={init_outlier_std})")
        cloud = self._timed("downsampling", downsample, cloud, leaf_size)
        self._log(f"  [init] voxel: {len(cloud.points)} (leaf={leaf_size})")
        cloud = self._timed("range_filter", filter_range, cloud, "z", *self.z_range)
        self._log(f"  [init] z clip: {len(cloud.points)} in [{self.z_range[0]}, {self.z_range[1]}]")
        self.time_breakdown.add("total", time.perf_counter() - t_start)

        if len(cloud.points) == 0:
            raise AlignmentDegenerateError("first scan is empty after cleaning")
        self.stitched_cloud = cloud
        self.scans_fused = 1

    @classmethod
    def from_scan(cls, scan, **kwargs):
        return cls(scan.cloud, index=scan.index, **kwargs)

    def __len__(self):
        return len(self.stitched_cloud.points)

    # ---------- helpers ----------
    def _log(self, msg):
        if self.verbose:
            print(msg)

    def _timed(self, stage, fn, *args, **kwargs):
        t0 = time.perf_counter()
        out = fn(*args, **kwargs)
        self.time_breakdown.add(stage, time.perf_counter() - t0)
        return out

    # ---------- public API ----------
    def add_scan(self, scan):
        """Fuse a Scan (cloud + index + prior pose)."""
        return self.add_cloud(scan.cloud, scan.pose, index=scan.index)

    def add_cloud(self, new_cloud, transformation=None, index=None):
        """
        Register new_cloud against the fused model and merge it in.

        transformation is the approximate pose prior (a Pose); it is skipped
        when missing or when it is the identity with zero confidence. index,
        when given, must be larger than every index fused so far.

        Any failure before the merge leaves the model untouched.
        """
        if not self._lock.acquire(blocking=False):
            raise SequenceError("add_cloud is already running on this model")
        try:
            if index is not None and self.last_index is not None and index <= self.last_index:
                raise SequenceError(
                    f"scan {index} arrives after scan {self.last_index}; "
                    "scans must be fused in increasing index order"
                )
            t_start = time.perf_counter()
            try:
                report = self._register_and_merge(new_cloud, transformation, index)
            finally:
                self.time_breakdown.add("total", time.perf_counter() - t_start)
            if index is not None:
                self.last_index = index
            self.scans_fused += 1
            return report
        finally:
            self._lock.release()

    def _register_and_merge(self, new_cloud, transformation, index):
        tag = f"[scan {index}]" if index is not None else "[scan]"
        n_in = len(new_cloud.points)
        if n_in < MIN_SCAN_POINTS:
            raise AlignmentDegenerateError(
                f"scan has {n_in} points, registration needs at least {MIN_SCAN_POINTS}"
            )

        # 1) pre-processing
        cloud = self._timed("outlier_removal", remove_outliers,
                            new_cloud, self.scan_outlier_neighbours, self.scan_outlier_std)
        n_sor = len(cloud.points)
        self._log(f"  {tag} [sor] {n_in} -> {n_sor}")

        cloud = self._timed("downsampling", downsample, cloud, self.leaf_size)
        n_vox = len(cloud.points)
        self._log(f"  {tag} [voxel] {n_sor} -> {n_vox} (leaf={self.leaf_size})")

        if transformation is not None and transformation.is_informative():
            cloud = self._timed("transformation", apply_pose, cloud, transformation)
            self._log(f"  {tag} [prior] applied t=({transformation.dx:.3f}, {transformation.dy:.3f}, "
                      f"{transformation.dz:.3f}) conf={transformation.confidence:.2f}")

        cloud = self._timed("range_filter", filter_range, cloud, "z", *self.z_range)
        n_rng = len(cloud.points)
        self._log(f"  {tag} [clip] {n_vox} -> {n_rng}")

        # 2) registration against the current model
        t0 = time.perf_counter()
        cloud, coarse = register_sac_ia(
            cloud, self.stitched_cloud,
            max_iterations=self.coarse_iterations,
            rng=self._rng,
        )
        self.time_breakdown.add("coarse_alignment", time.perf_counter() - t0)
        self.time_breakdown.add("normals", coarse.normals_time)
        self.time_breakdown.add("features", coarse.features_time)
        self._log(f"  {tag} [sac-ia] trials={coarse.trials} "
                  f"err {coarse.initial_error:.4f} -> {coarse.error:.4f}")

        cloud, fine = self._timed(
            "fine_alignment", register_icp,
            cloud, self.stitched_cloud,
            max_iterations=self.fine_iterations,
            tolerance=self.icp_tolerance,
            max_correspondence_distance=self.icp_max_distance,
        )
        state = "converged" if fine.converged else "budget exhausted"
        self._log(f"  {tag} [icp] iters={fine.iterations} ({state}) "
                  f"mean NN {fine.initial_mean_distance:.4f} -> {fine.mean_distance:.4f}")

        # 3) merge + re-compaction; the model is swapped in only once complete
        t0 = time.perf_counter()
        n_before = len(self.stitched_cloud.points)
        merged = self.stitched_cloud + cloud
        compacted = downsample(merged, self.leaf_size)
        self.stitched_cloud = compacted
        self.time_breakdown.add("merge", time.perf_counter() - t0)
        self._log(f"  {tag} [merge] model {n_before} + {len(cloud.points)} -> {len(compacted.points)}")

        return StitchReport(
            index=index,
            input_points=n_in,
            after_outliers=n_sor,
            after_downsample=n_vox,
            after_range=n_rng,
            model_points_before=n_before,
            model_points=len(compacted.points),
            coarse=coarse,
            fine=fine,
        )
