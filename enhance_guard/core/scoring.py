"""
Frame quality scoring for capture bursts.

Scores each candidate frame on sharpness, exposure and composition and picks
the best one to enhance. Scoring is a pure function of the pixels, so the
frames of a burst are scored in parallel.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from io import BytesIO
from typing import List, Optional, Sequence, Union

from PIL import Image, ImageFilter, ImageStat

from enhance_guard.config.loader import ScoreWeights

from .errors import NoScorableFrames, ScoringError
from .types import FrameScore

logger = logging.getLogger(__name__)

Frame = Union[Image.Image, bytes]

# Frames are analysed at this size; scores do not depend on capture resolution
ANALYSIS_SIZE = 256
MIN_FRAME_SIZE = 3
# Mean edge response of a crisp, detailed photo at analysis size
SHARPNESS_REFERENCE = 40.0


@dataclass(frozen=True)
class FrameSelection:
    """Outcome of picking the best frame of a burst."""
    index: int
    frame: Frame
    score: FrameScore
    scores: List[Optional[FrameScore]] = field(default_factory=list)

    @property
    def excluded(self) -> List[int]:
        """Indices of frames that could not be scored."""
        return [i for i, score in enumerate(self.scores) if score is None]


def load_frame(frame: Frame) -> Image.Image:
    """Decode a frame into a Pillow image.

    Raises:
        ScoringError: If the frame is not a decodable image
    """
    if isinstance(frame, Image.Image):
        return frame
    if not isinstance(frame, (bytes, bytearray)):
        raise ScoringError(f"Unsupported frame type: {type(frame).__name__}")
    try:
        image = Image.open(BytesIO(frame))
        image.load()
    except (OSError, ValueError) as e:
        raise ScoringError(f"Corrupt frame buffer: {e}") from e
    return image


def exposure_score(mean_luma: float) -> float:
    """Score exposure from mean luminance in [0, 1].

    Mid-tones score best; clipped frames score worst.
    """
    if 0.4 <= mean_luma <= 0.6:
        return 1.0
    if 0.2 <= mean_luma <= 0.8:
        return 0.7
    if 0.1 <= mean_luma <= 0.9:
        return 0.4
    return 0.1


def select_best_from_scores(scores: Sequence[Optional[FrameScore]]) -> Optional[int]:
    """Index of the highest overall score; ties go to the earliest frame.

    Unscored (None) entries are skipped. Returns None if nothing was scored.
    """
    best_index = None
    best_value = None
    for index, score in enumerate(scores):
        if score is None:
            continue
        if best_value is None or score.overall_score > best_value:
            best_index = index
            best_value = score.overall_score
    return best_index


class FrameScorer:
    """Scores frames and selects the best one of a burst."""

    def __init__(self, weights: Optional[ScoreWeights] = None, max_workers: Optional[int] = None):
        self.weights = weights or ScoreWeights()
        self.max_workers = max_workers

    def score(self, frame: Frame) -> FrameScore:
        """Compute the quality score of one frame.

        Args:
            frame: Pillow image or encoded image bytes

        Returns:
            FrameScore with sub-scores and the weighted overall score

        Raises:
            ScoringError: If the frame cannot be decoded or is too small
        """
        image = load_frame(frame)
        if min(image.size) < MIN_FRAME_SIZE:
            raise ScoringError(f"Frame too small to score: {image.size[0]}x{image.size[1]}")

        try:
            gray = image.convert("L")
            gray.thumbnail((ANALYSIS_SIZE, ANALYSIS_SIZE))
            # Pillow copies the outermost pixels through 3x3 kernels unfiltered
            edges = gray.filter(ImageFilter.FIND_EDGES)
            edges = edges.crop((1, 1, edges.width - 1, edges.height - 1))
            mean_luma = ImageStat.Stat(gray).mean[0] / 255.0
            mean_edge = ImageStat.Stat(edges).mean[0]
            composition = self._composition(edges, mean_edge)
        except (OSError, ValueError) as e:
            raise ScoringError(f"Failed to analyse frame: {e}") from e

        sharpness = min(mean_edge / SHARPNESS_REFERENCE, 1.0)
        exposure = exposure_score(mean_luma)
        overall = self.weights.combine(sharpness, exposure, composition)
        return FrameScore(
            sharpness=sharpness,
            exposure=exposure,
            composition=composition,
            overall_score=overall,
        )

    def select_best(self, frames: Sequence[Frame]) -> FrameSelection:
        """Score every frame and pick the best.

        Frames that fail to score are excluded rather than failing the
        selection. Ties resolve to the earliest frame.

        Raises:
            NoScorableFrames: If the burst is empty or no frame could be scored
        """
        frames = list(frames)
        if not frames:
            raise NoScorableFrames("Burst contains no frames")

        if len(frames) == 1:
            try:
                score = self.score(frames[0])
            except ScoringError as e:
                raise NoScorableFrames(f"The only frame could not be scored: {e}") from e
            return FrameSelection(index=0, frame=frames[0], score=score, scores=[score])

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            scores = list(executor.map(self._try_score, range(len(frames)), frames))

        best = select_best_from_scores(scores)
        if best is None:
            raise NoScorableFrames(f"None of the {len(frames)} frames could be scored")

        logger.debug("Selected frame %d of %d (score %.3f)", best, len(frames), scores[best].overall_score)
        return FrameSelection(index=best, frame=frames[best], score=scores[best], scores=scores)

    def _try_score(self, index: int, frame: Frame) -> Optional[FrameScore]:
        try:
            score = self.score(frame)
        except ScoringError as e:
            logger.warning("Excluding frame %d from selection: %s", index, e)
            return None
        logger.debug(
            "Frame %d: sharpness=%.3f exposure=%.3f composition=%.3f overall=%.3f",
            index, score.sharpness, score.exposure, score.composition, score.overall_score,
        )
        return score

    @staticmethod
    def _composition(edges: Image.Image, mean_edge: float) -> float:
        """Rule-of-thirds score: detail near the thirds intersections.

        A frame with detail spread evenly scores 0.5, detail concentrated on
        the intersections approaches 1.0. Featureless frames score 0.5.
        """
        if mean_edge <= 1e-6:
            return 0.5

        width, height = edges.size
        half_w = max(1, width // 12)
        half_h = max(1, height // 12)
        window_means = []
        for fx in (1, 2):
            for fy in (1, 2):
                cx = width * fx // 3
                cy = height * fy // 3
                box = (
                    max(0, cx - half_w),
                    max(0, cy - half_h),
                    min(width, cx + half_w),
                    min(height, cy + half_h),
                )
                window_means.append(ImageStat.Stat(edges.crop(box)).mean[0])

        ratio = (sum(window_means) / len(window_means)) / mean_edge
        return min(ratio / 2.0, 1.0)
