"""Shape of reference/metadata.json."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class BoundingBox(BaseModel):
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0


class SectionInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: str = "unknown"
    bounding_box: BoundingBox = Field(default_factory=BoundingBox, alias="boundingBox")

    def file_stem(self, index: int) -> str:
        """Name used for this section's images, e.g. "01-hero"."""
        return f"{index + 1:02d}-{self.type}"


class ReferenceMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    url: str = ""
    captured_at: str = ""
    viewport_width: int = Field(default=0, alias="viewportWidth")
    viewport_height: int = Field(default=0, alias="viewportHeight")
    sections: list[SectionInfo] = Field(default_factory=list)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True)
