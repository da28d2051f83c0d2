"""Cross-frame dialogue position normalization.

Models place the same speaker on different sides from frame to frame and
sometimes swap the coordinates of two simultaneous speakers. This pass uses
each recurring role's median horizontal position as its "home" side:

1. median x per role (roles seen at least twice);
2. re-clamp every ratio and recompute every anchor;
3. in two-speaker frames, swap the (x, y) pairs when the swapped placement is
   closer to both homes by more than ``swap_margin``;
4. snap single excursions further than ``outlier_threshold`` from home back
   to the median.

Pure and deterministic; the input storyboard is never mutated.
"""

from __future__ import annotations

from dataclasses import dataclass
from statistics import median

from comicgen.core.metrics import record_consistency_corrections
from comicgen.graphs.contracts import DialogueItem, StoryboardData, band_of, clamp_ratio

DEFAULT_SWAP_MARGIN = 0.08
DEFAULT_OUTLIER_THRESHOLD = 0.35
MIN_OBSERVATIONS = 2


@dataclass(frozen=True)
class NormalizationReport:
    swaps: int = 0
    outliers: int = 0


def _placed(item: DialogueItem, x: float, y: float) -> DialogueItem:
    x = clamp_ratio(x)
    y = clamp_ratio(y)
    return item.model_copy(update={"x_ratio": x, "y_ratio": y, "anchor": band_of(x)})


def role_medians(data: StoryboardData) -> dict[str, float]:
    observations: dict[str, list[float]] = {}
    for frame in data.frames:
        for item in frame.dialogues:
            observations.setdefault(item.role, []).append(clamp_ratio(item.x_ratio))
    return {role: median(xs) for role, xs in observations.items() if len(xs) >= MIN_OBSERVATIONS}


def normalize_storyboard_with_report(
    data: StoryboardData,
    *,
    swap_margin: float = DEFAULT_SWAP_MARGIN,
    outlier_threshold: float = DEFAULT_OUTLIER_THRESHOLD,
) -> tuple[StoryboardData, NormalizationReport]:
    medians = role_medians(data)
    swaps = 0
    outliers = 0
    frames = []

    for frame in data.frames:
        dialogues = [_placed(item, item.x_ratio, item.y_ratio) for item in frame.dialogues]

        if len(dialogues) == 2:
            a, b = dialogues
            if a.role != b.role and a.role in medians and b.role in medians:
                median_a, median_b = medians[a.role], medians[b.role]
                dist_direct = abs(a.x_ratio - median_a) + abs(b.x_ratio - median_b)
                dist_swapped = abs(a.x_ratio - median_b) + abs(b.x_ratio - median_a)
                if dist_swapped + swap_margin < dist_direct:
                    dialogues = [
                        _placed(a, b.x_ratio, b.y_ratio),
                        _placed(b, a.x_ratio, a.y_ratio),
                    ]
                    swaps += 1

        corrected = []
        for item in dialogues:
            home = medians.get(item.role)
            if home is not None and abs(item.x_ratio - home) > outlier_threshold:
                item = _placed(item, home, item.y_ratio)
                outliers += 1
            corrected.append(item)

        frames.append(frame.model_copy(update={"dialogues": corrected}))

    return StoryboardData(frames=frames), NormalizationReport(swaps=swaps, outliers=outliers)


def normalize_storyboard(
    data: StoryboardData,
    *,
    swap_margin: float = DEFAULT_SWAP_MARGIN,
    outlier_threshold: float = DEFAULT_OUTLIER_THRESHOLD,
) -> StoryboardData:
    normalized, report = normalize_storyboard_with_report(
        data,
        swap_margin=swap_margin,
        outlier_threshold=outlier_threshold,
    )
    record_consistency_corrections(report.swaps, report.outliers)
    return normalized
