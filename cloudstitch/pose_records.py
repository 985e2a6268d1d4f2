"""
Pose-prior records.

A records file is a delimited table with a header row and a leading
bookkeeping column, followed by

    rotx ; roty ; rotz ; dx ; dy ; dz [; confidence]

The tracker writes several raw rows per scan; they are averaged in fixed
groups and then expressed relative to the first scan.
"""

from pathlib import Path

from .errors import MalformedInputError
from .pose import Pose

# =================== DEFAULT CONFIG ===================
POSE_DELIMITER = ";"
ROWS_TO_SKIP = 1
COLS_TO_SKIP = 1
ROWS_PER_SCAN = 10
MIN_FIELDS = 6


def parse_pose_row(fields, line_no=None):
    """Turn the numeric fields of one row into a Pose."""
    where = f" (line {line_no})" if line_no is not None else ""
    if len(fields) < MIN_FIELDS:
        raise MalformedInputError(
            f"pose record has {len(fields)} fields, expected at least {MIN_FIELDS}{where}"
        )
    try:
        vals = [float(v) for v in fields]
    except ValueError as e:
        raise MalformedInputError(f"non-numeric pose field{where}: {e}") from e

    rotx, roty, rotz, dx, dy, dz = vals[:6]
    confidence = vals[6] if len(vals) > 6 else 0.0
    return Pose(dx=dx, dy=dy, dz=dz, rotx=rotx, roty=roty, rotz=rotz, confidence=confidence)


def read_pose_records(path, delimiter=POSE_DELIMITER, rows_to_skip=ROWS_TO_SKIP,
                      cols_to_skip=COLS_TO_SKIP, strict=True):
    """
    Parse every data row of a records file into raw Poses.

    With strict=False a row that cannot be parsed is reported and kept as
    None so the scan it belongs to can be singled out later.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise MalformedInputError(f"cannot read pose records {path}: {e}") from e

    records = []
    missing_conf = 0
    for line_no, line in enumerate(text.splitlines(), start=1):
        if line_no <= rows_to_skip or not line.strip():
            continue
        fields = [f.strip() for f in line.split(delimiter)][cols_to_skip:]
        while fields and fields[-1] == "":
            fields.pop()
        try:
            pose = parse_pose_row(fields, line_no)
        except MalformedInputError as e:
            if strict:
                raise
            print(f"[warn] {e}")
            records.append(None)
            continue
        if len(fields) <= MIN_FIELDS:
            missing_conf += 1
        records.append(pose)

    if missing_conf:
        print(f"[warn] {missing_conf} pose record(s) in {path.name} have no confidence value; using 0")
    return records


def average_pose_records(records, rows_per_scan=ROWS_PER_SCAN):
    """
    Average consecutive groups of rows_per_scan records (confidence included).
    A group holding an unparsed (None) record averages to None.
    """
    if rows_per_scan < 1:
        raise MalformedInputError(f"rows_per_scan must be >= 1, got {rows_per_scan}")
    if len(records) % rows_per_scan != 0:
        raise MalformedInputError(
            f"{len(records)} pose records do not split evenly into groups of {rows_per_scan}"
        )

    averaged = []
    for s in range(0, len(records), rows_per_scan):
        group = records[s:s + rows_per_scan]
        if any(p is None for p in group):
            averaged.append(None)
            continue
        n = float(len(group))
        averaged.append(Pose(
            dx=sum(p.dx for p in group) / n,
            dy=sum(p.dy for p in group) / n,
            dz=sum(p.dz for p in group) / n,
            rotx=sum(p.rotx for p in group) / n,
            roty=sum(p.roty for p in group) / n,
            rotz=sum(p.rotz for p in group) / n,
            confidence=sum(p.confidence for p in group) / n,
        ))
    return averaged


def relative_poses(poses):
    """Express every pose relative to the first one; None entries stay None."""
    if not poses:
        return []
    ref = poses[0]
    if ref is None:
        raise MalformedInputError("reference scan has no usable pose record")
    return [p - ref if p is not None else None for p in poses]


def load_scan_poses(path, num_scans, rows_per_scan=ROWS_PER_SCAN, delimiter=POSE_DELIMITER,
                    rows_to_skip=ROWS_TO_SKIP, cols_to_skip=COLS_TO_SKIP, positions=None):
    """
    One prior pose per requested scan, relative to the first requested scan.

    num_scans is the length of the full scan listing the records describe;
    positions picks the scans to return by their place in that listing
    (all of them by default), so a sub-range keeps each scan's own record.

    A malformed file never aborts the run. A group with an unparseable row
    only costs its own scan its prior; everything falls back to the identity
    pose when the groups cannot be formed or the reference scan has no prior.
    Scans beyond the end of the records also get the identity.
    """
    positions = list(range(num_scans)) if positions is None else list(positions)
    identity = [Pose.identity() for _ in positions]
    if path is None:
        return identity

    try:
        raw = read_pose_records(path, delimiter=delimiter, rows_to_skip=rows_to_skip,
                                cols_to_skip=cols_to_skip, strict=False)
        groups = average_pose_records(raw, rows_per_scan)
        picked = [groups[i] if i < len(groups) else None for i in positions]
        rel = relative_poses(picked)
    except MalformedInputError as e:
        print(f"[warn] pose records ignored, using identity poses: {e}")
        return identity

    if len(groups) < num_scans:
        print(f"[warn] {len(groups)} pose(s) for {num_scans} scan(s); "
              "remaining scans use the identity pose")
    elif len(groups) > num_scans:
        print(f"[warn] {len(groups)} pose(s) for {num_scans} scan(s); extra poses ignored")
    bad = [positions[j] for j, p in enumerate(picked) if p is None and positions[j] < len(groups)]
    if bad:
        print(f"[warn] malformed pose records for scan(s) {bad}; using the identity pose")

    poses = [p if p is not None else Pose.identity() for p in rel]
    print(f"[poses] using {sum(p is not None for p in rel)} prior pose(s) from {Path(path).name}")
    return poses
