"""
Batch drivers around StitchedCloud.

stitch_sequential   one model, scans fused strictly in order
stitch_partitioned  contiguous chunks fused into independent partial models
                    on worker threads, then folded in a single step
"""

from concurrent.futures import ThreadPoolExecutor

from .errors import StitchError
from .filters import VoxelHash
from .stitched_cloud import LEAF_SIZE, StitchedCloud


def _say(verbose, msg):
    if verbose:
        print(msg)


def stitch_sequential(scans, verbose=True, **stitch_kwargs):
    """
    Fuse scans in the order given. The first scan that survives cleaning
    seeds the model; a scan that fails is logged, recorded and dropped.

    Returns (StitchedCloud or None, [(scan index, error), ...]).
    """
    model = None
    failures = []
    for scan in scans:
        if model is None:
            try:
                model = StitchedCloud.from_scan(scan, verbose=verbose, **stitch_kwargs)
            except StitchError as e:
                print(f"[warn] scan {scan.index} ({scan.name}) cannot seed the model: {e}")
                failures.append((scan.index, e))
                continue
            _say(verbose, f"[scan] {scan.index} ({scan.name}) seeded model: {len(model)} pts")
            continue

        try:
            report = model.add_scan(scan)
        except StitchError as e:
            print(f"[warn] scan {scan.index} ({scan.name}) dropped: {e}")
            failures.append((scan.index, e))
            continue
        _say(verbose, f"[scan] {scan.index} ({scan.name}) fused: model {report.model_points} pts")

    return model, failures


def split_contiguous(items, parts):
    """Split a list into at most `parts` contiguous, order-preserving chunks."""
    items = list(items)
    parts = max(1, min(int(parts), len(items)))
    base, extra = divmod(len(items), parts)
    chunks = []
    s = 0
    for i in range(parts):
        n = base + (1 if i < extra else 0)
        chunks.append(items[s:s + n])
        s += n
    return [c for c in chunks if c]


def fold_partial_models(partials, leaf_size=LEAF_SIZE):
    """
    Union partial models (StitchedCloud or plain clouds) and re-compact the
    result once. Runs on the calling thread only.
    """
    vox = VoxelHash(leaf_size)
    for m in partials:
        vox.add_cloud(getattr(m, "stitched_cloud", m))
    return vox.to_pointcloud()


def stitch_partitioned(scans, workers=4, verbose=True, **stitch_kwargs):
    """
    Parallel variant: every worker owns an independent partial model built
    from one contiguous chunk of scans; the partial models are folded into
    one cloud after all workers finish.

    Returns (fused cloud, partial models, failures).
    """
    chunks = split_contiguous(scans, workers)
    if not chunks:
        return None, [], []

    _say(verbose, f"[batch] {sum(len(c) for c in chunks)} scan(s) over {len(chunks)} worker(s)")
    with ThreadPoolExecutor(max_workers=len(chunks)) as ex:
        futures = [ex.submit(stitch_sequential, chunk, verbose, **stitch_kwargs) for chunk in chunks]
        results = [f.result() for f in futures]

    partials = [m for m, _ in results if m is not None]
    failures = [fail for _, fails in results for fail in fails]
    if not partials:
        return None, [], failures

    fused = fold_partial_models(partials, stitch_kwargs.get("leaf_size", LEAF_SIZE))
    _say(verbose, f"[batch] folded {len(partials)} partial model(s) -> {len(fused.points)} pts")
    return fused, partials, failures
