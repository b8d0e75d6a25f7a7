"""Pixel-level image comparison.

Mismatch detection uses the YIQ perceptual colour distance with the same
threshold scale as pixelmatch: a pixel differs when its delta exceeds
35215 * threshold². Transparent areas are flattened onto white first.
"""

from __future__ import annotations

import logging
from pathlib import Path

from PIL import Image
from pydantic import BaseModel

from sitecloner.models.comparison import ComparisonSummary, SectionResult

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.1
MAX_YIQ_DELTA = 35215.0

DIFF_COLOR = (255, 0, 0)
GRAY_ALPHA = 0.1


class DiffResult(BaseModel):
    accuracy: float
    mismatched_pixels: int
    total_pixels: int
    width: int
    height: int


def color_delta(r1: int, g1: int, b1: int, r2: int, g2: int, b2: int) -> float:
    """Squared YIQ distance between two RGB colours."""
    dr, dg, db = r1 - r2, g1 - g2, b1 - b2
    y = dr * 0.29889531 + dg * 0.58662247 + db * 0.11448223
    i = dr * 0.59597799 - dg * 0.27417610 - db * 0.32180189
    q = dr * 0.21147017 - dg * 0.52261711 + db * 0.31114694
    return 0.5053 * y * y + 0.299 * i * i + 0.1957 * q * q


def compute_accuracy(mismatched: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round((total - mismatched) / total * 100, 2)


def load_flattened(path: str | Path, size: tuple[int, int] | None = None) -> Image.Image:
    """Open an image as RGB on a white background, optionally resized (Lanczos)."""
    with Image.open(path) as img:
        rgba = img.convert("RGBA")
    if size is not None and rgba.size != size:
        rgba = rgba.resize(size, Image.LANCZOS)
    background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
    return Image.alpha_composite(background, rgba).convert("RGB")


def _faded(reference: Image.Image) -> Image.Image:
    gray = reference.convert("L").point(lambda v: int(255 + (v - 255) * GRAY_ALPHA))
    return gray.convert("RGB")


def compare_images(
    reference_path: str | Path,
    generated_path: str | Path,
    diff_output_path: str | Path,
    threshold: float = DEFAULT_THRESHOLD,
) -> DiffResult:
    """Compare a generated render against its reference and write a diff image.

    The generated image is resized to the reference dimensions. The diff image
    paints mismatched pixels red over a faded grey copy of the reference.
    """
    reference = load_flattened(reference_path)
    width, height = reference.size
    generated = load_flattened(generated_path, size=(width, height))

    ref_bytes = reference.tobytes()
    gen_bytes = generated.tobytes()
    max_delta = MAX_YIQ_DELTA * threshold * threshold

    mask = bytearray(width * height)
    mismatched = 0
    if ref_bytes != gen_bytes:
        for p in range(width * height):
            o = p * 3
            r1, g1, b1 = ref_bytes[o], ref_bytes[o + 1], ref_bytes[o + 2]
            r2, g2, b2 = gen_bytes[o], gen_bytes[o + 1], gen_bytes[o + 2]
            if r1 == r2 and g1 == g2 and b1 == b2:
                continue
            if color_delta(r1, g1, b1, r2, g2, b2) > max_delta:
                mask[p] = 255
                mismatched += 1

    diff = _faded(reference)
    if mismatched:
        diff.paste(DIFF_COLOR, (0, 0, width, height),
                   Image.frombytes("L", (width, height), bytes(mask)))
    diff_output_path = Path(diff_output_path)
    diff_output_path.parent.mkdir(parents=True, exist_ok=True)
    diff.save(diff_output_path)

    total = width * height
    logger.debug("Diff %s: %d/%d pixels mismatched", Path(reference_path).name, mismatched, total)
    return DiffResult(
        accuracy=compute_accuracy(mismatched, total),
        mismatched_pixels=mismatched,
        total_pixels=total,
        width=width,
        height=height,
    )


def overall_accuracy(sections: list[SectionResult]) -> float:
    """Pixel-weighted accuracy over all sections."""
    total = sum(s.total_pixels for s in sections)
    mismatched = sum(s.mismatched_pixels for s in sections)
    return compute_accuracy(mismatched, total)


def summarize(sections: list[SectionResult]) -> ComparisonSummary:
    return ComparisonSummary(
        total_sections=len(sections),
        sections_above_90=sum(1 for s in sections if s.accuracy >= 90),
        sections_above_80=sum(1 for s in sections if 80 <= s.accuracy < 90),
        sections_below_80=sum(1 for s in sections if s.accuracy < 80),
    )
