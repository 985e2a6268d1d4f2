"""
Command-line driver.

    python -m cloudstitch -d scans/ [-t poses.txt] [--out fused.pcd]
    python -m cloudstitch -f scans/PCD3.pcd
"""

import argparse
import sys
import time
from dataclasses import fields
from pathlib import Path

from .batch import stitch_partitioned, stitch_sequential
from .pose_records import POSE_DELIMITER, ROWS_PER_SCAN, load_scan_poses
from .scans import (OUTPUT_NAME, iter_scans, parse_range, save_point_cloud,
                    scan_index, select_scans, sorted_scan_files)
from .stitched_cloud import (COARSE_ITERATIONS, FINE_ITERATIONS, ICP_TOLERANCE,
                             LEAF_SIZE, SEED, TimeBreakdown)


def build_parser():
    ap = argparse.ArgumentParser(
        prog="cloudstitch",
        description="Incrementally register and stitch point-cloud scans into one fused model.",
    )
    src = ap.add_mutually_exclusive_group(required=True)
    src.add_argument("-f", "--file", type=Path, help="Process a single file.")
    src.add_argument("-d", "--directory", type=Path, help="Process all of the pcd files in a directory.")
    ap.add_argument("-t", "--poses", type=Path, default=None,
                    help="Supply translation and rotation information (optional).")
    ap.add_argument("--out", type=Path, default=None,
                    help=f"Output cloud (default: <input dir>/{OUTPUT_NAME}).")
    ap.add_argument("--rows-per-scan", type=int, default=ROWS_PER_SCAN,
                    help="Pose rows averaged into one prior per scan.")
    ap.add_argument("--delimiter", type=str, default=POSE_DELIMITER, help="Pose file delimiter.")
    ap.add_argument("--leaf-size", type=float, default=LEAF_SIZE, help="Voxel leaf size.")
    ap.add_argument("--coarse-iters", type=int, default=COARSE_ITERATIONS,
                    help="Consensus trials for coarse alignment.")
    ap.add_argument("--fine-iters", type=int, default=FINE_ITERATIONS, help="Max ICP iterations.")
    ap.add_argument("--icp-tolerance", type=float, default=ICP_TOLERANCE,
                    help="ICP convergence tolerance; 0 disables early stopping.")
    ap.add_argument("--seed", type=int, default=SEED, help="Seed for the consensus search.")
    ap.add_argument("--workers", type=int, default=1,
                    help="> 1 fuses contiguous chunks into partial models in parallel, then folds them.")
    ap.add_argument("--scan-range", type=parse_range, default=None,
                    help="Only scans whose embedded index is in START:END.")
    ap.add_argument("--max-scans", type=int, default=None)
    ap.add_argument("--quiet", action="store_true", help="Only print progress and warnings.")
    return ap


def main(argv=None):
    args = build_parser().parse_args(argv)
    t_start = time.perf_counter()

    # 1) Discover and select scans
    if args.file is not None:
        if not args.file.is_file():
            print(f"File not found: {args.file}")
            return 1
        all_infos = [(scan_index(args.file), args.file)]
        out_dir = args.file.parent
    else:
        try:
            all_infos = sorted_scan_files(args.directory, output_name=OUTPUT_NAME)
        except FileNotFoundError as e:
            print(e)
            return 1
        out_dir = args.directory

    selected = select_scans(all_infos, scan_range=args.scan_range, max_scans=args.max_scans)
    if len(selected) == 0:
        print("No PCD files found.")
        return 1

    print("\n[select] Scans to stitch (in order):")
    for i, (k, p) in enumerate(selected):
        print(f"  ({i:03d}) index={k if k is not None else '-'} path={p}")
    print(f"[select] Total: {len(selected)} scan(s)")

    # 2) Prior poses (identity when absent or malformed). Record groups follow
    #    the full listing; the selection picks its own and is made relative
    #    to the first selected scan.
    listing_pos = {p: i for i, (_k, p) in enumerate(all_infos)}
    poses = load_scan_poses(args.poses, len(all_infos),
                            rows_per_scan=args.rows_per_scan, delimiter=args.delimiter,
                            positions=[listing_pos[p] for _k, p in selected])

    # 3) Stitch
    stitch_kwargs = dict(
        leaf_size=args.leaf_size,
        coarse_iterations=args.coarse_iters,
        fine_iterations=args.fine_iters,
        icp_tolerance=args.icp_tolerance if args.icp_tolerance > 0 else None,
        seed=args.seed,
    )
    verbose = not args.quiet
    failures = []
    scans = iter_scans(selected, poses, failures)
    breakdown = TimeBreakdown()

    if args.workers > 1:
        fused, models, fails = stitch_partitioned(list(scans), workers=args.workers,
                                                  verbose=verbose, **stitch_kwargs)
    else:
        model, fails = stitch_sequential(scans, verbose=verbose, **stitch_kwargs)
        models = [model] if model is not None else []
        fused = model.stitched_cloud if model is not None else None
    failures.extend(fails)

    if fused is None:
        print("No scan could seed the fused model.")
        return 1

    # 4) Save
    out = args.out if args.out is not None else out_dir / OUTPUT_NAME
    save_point_cloud(out, fused)
    print(f"\nSaved: {out}  (#points={len(fused.points)})")
    if failures:
        dropped = ", ".join(str(i) for i, _ in sorted(failures, key=lambda f: f[0]))
        print(f"[warn] {len(failures)} scan(s) dropped: {dropped}")

    # 5) Timing
    for m in models:
        for f in fields(breakdown):
            breakdown.add(f.name, getattr(m.time_breakdown, f.name))
    breakdown.total = time.perf_counter() - t_start
    breakdown.report()
    return 0


if __name__ == "__main__":
    sys.exit(main())
