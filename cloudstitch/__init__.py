"""
Incremental point-cloud stitching.

Scans are cleaned, coarsely aligned to the fused model with FPFH features,
refined with ICP, merged and re-compacted, one scan at a time.
"""

from .errors import (AlignmentDegenerateError, ConfigurationError, MalformedInputError,
                     SequenceError, StitchError)
from .pose import ROTATION_SIGN, Pose, apply_pose, invert_transform, pose_matrix
from .filters import VoxelHash, downsample, filter_range, remove_outliers
from .coarse import CoarseResult, register_sac_ia
from .icp import IcpResult, register_icp
from .stitched_cloud import StitchReport, StitchedCloud, TimeBreakdown
from .scans import Scan
from .batch import fold_partial_models, stitch_partitioned, stitch_sequential

__version__ = "0.1.0"
__all__ = [
    "AlignmentDegenerateError", "ConfigurationError", "MalformedInputError",
    "SequenceError", "StitchError",
    "ROTATION_SIGN", "Pose", "apply_pose", "invert_transform", "pose_matrix",
    "VoxelHash", "downsample", "filter_range", "remove_outliers",
    "CoarseResult", "register_sac_ia", "IcpResult", "register_icp",
    "StitchReport", "StitchedCloud", "TimeBreakdown",
    "Scan", "fold_partial_models", "stitch_partitioned", "stitch_sequential",
]
