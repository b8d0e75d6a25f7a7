"""Comparison report data structures."""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, Field


class SectionResult(BaseModel):
    section_name: str
    section_type: str = "unknown"
    accuracy: float = 0.0
    mismatched_pixels: int = 0
    total_pixels: int = 0
    diff_image_path: str = ""
    reference_image_path: str = ""
    generated_image_path: str = ""
    width: int = 0
    height: int = 0


class ComparisonSummary(BaseModel):
    total_sections: int = 0
    sections_above_90: int = 0
    sections_above_80: int = 0  # 80 <= accuracy < 90
    sections_below_80: int = 0


class ComparisonReport(BaseModel):
    website_id: str
    timestamp: str  # ISO-8601 with timezone
    overall_accuracy: float = 0.0
    sections: list[SectionResult] = Field(default_factory=list)
    summary: ComparisonSummary = Field(default_factory=ComparisonSummary)

    @property
    def mismatched_pixels(self) -> int:
        return sum(s.mismatched_pixels for s in self.sections)

    @property
    def total_pixels(self) -> int:
        return sum(s.total_pixels for s in self.sections)

    def age_seconds(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        created = datetime.fromisoformat(self.timestamp.replace("Z", "+00:00"))
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return (now - created).total_seconds()
