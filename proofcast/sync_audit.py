"""
Sync audit for two-actor collaboration runs.

Captions follow a convention: one actor's step says it 'adds task: "name"',
the other actor's later step says it 'sees "name"'. Pairing them by the
quoted name gives an observed propagation delay per item. A non-positive
delay means the observer saw the change before it was made, which points at
broken causality or misaligned clocks.
"""
import re
from typing import Iterable, Optional, Sequence

from proofcast.models import StepRecord, SyncReport, SyncSample

ADD_PATTERN = r"adds task:"
SEE_PATTERN = r"sees"
_QUOTED = re.compile(r'"([^"]+)"')


def _pair(steps: Sequence[StepRecord], adder: str, observer: str,
          add_re: re.Pattern, see_re: re.Pattern) -> list[SyncSample]:
    adds = [s for s in steps if s.role == adder and add_re.search(s.caption)]
    sees = [s for s in steps if s.role == observer and see_re.search(s.caption)]
    samples = []
    for add in adds:
        match = _QUOTED.search(add.caption)
        if not match:
            continue
        item = match.group(1)
        seen = next((s for s in sees if f'"{item}"' in s.caption), None)
        if seen is None:
            continue
        samples.append(SyncSample(
            item=item, adder=adder, observer=observer,
            added_ms=add.end_ms, seen_ms=seen.end_ms,
        ))
    return samples


def audit_sync(
    steps: Iterable[StepRecord],
    roles: Sequence[str],
    add_pattern: str = ADD_PATTERN,
    see_pattern: str = SEE_PATTERN,
    window: int = 5,
) -> SyncReport:
    """
    Match add/see caption pairs across two roles and aggregate the deltas.

    Args:
        steps: Step records of the run
        roles: The two actor ids; pairs are matched in both directions
        add_pattern: Regex identifying "add" captions
        see_pattern: Regex identifying "see" captions
        window: How many deltas the head/tail trend compares

    Returns:
        SyncReport with samples ordered by add time
    """
    steps = list(steps)
    if len(roles) != 2:
        raise ValueError("Sync audit needs exactly two roles")
    add_re = re.compile(add_pattern)
    see_re = re.compile(see_pattern)
    first, second = roles
    samples = _pair(steps, first, second, add_re, see_re) + _pair(steps, second, first, add_re, see_re)
    samples.sort(key=lambda s: s.added_ms)
    return SyncReport(samples=samples, window=window)


def format_sample(sample: SyncSample) -> str:
    verdict = "OK" if sample.ok else "FAIL"
    return (
        f'"{sample.item}": {sample.adder} added @ {sample.added_ms / 1000:.1f}s, '
        f"{sample.observer} saw @ {sample.seen_ms / 1000:.1f}s ({sample.delta_s:+.1f}s) {verdict}"
    )


def summarize(report: SyncReport) -> Optional[str]:
    """One-line summary, or None when nothing was matched."""
    if not report.samples:
        return None
    line = (
        f"Sync summary: n={len(report.samples)}, min={report.min_s:.2f}s, "
        f"avg={report.avg_s:.2f}s, max={report.max_s:.2f}s, "
        f"trend={report.trend_s:+.2f}s (first{report.window}={report.head_avg_s:.2f}s, "
        f"last{report.window}={report.tail_avg_s:.2f}s)"
    )
    if report.negatives:
        line += f", negatives={report.negatives} (FAIL)"
    return line
