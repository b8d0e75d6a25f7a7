"""Pytest configuration and shared fixtures."""

from pathlib import Path
from typing import Callable
from unittest.mock import AsyncMock, Mock

import pytest
from PIL import Image

from sitecloner.models.capture import BoundingBox, ReferenceMetadata, SectionInfo
from sitecloner.models.checkpoint import CaptureArtifacts, DiscoveredComponent
from sitecloner.models.config import ClonerConfig, ViewportConfig
from sitecloner.models.job import Job
from sitecloner.utils.files import atomic_write_json
from sitecloner.versioning.version_store import VersionStore


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def viewport_config() -> ViewportConfig:
    """Create a small viewport so synthesized images stay cheap."""
    return ViewportConfig(width=320, height=240, name="test")


@pytest.fixture
def config(tmp_path: Path, viewport_config: ViewportConfig) -> ClonerConfig:
    """Create a config rooted in a temp directory."""
    return ClonerConfig(
        websites_dir=str(tmp_path / "Websites"),
        data_dir=str(tmp_path / ".site-cloner"),
        viewport=viewport_config,
        checkpoint_grace_seconds=0.05,
        server_start_timeout_seconds=0.2,
        capture_timeout_seconds=1.0,
    )


# ============================================================================
# Image Fixtures
# ============================================================================


@pytest.fixture
def make_png() -> Callable[..., Path]:
    """Factory writing a solid-colour PNG, optionally with a coloured block."""

    def _make(path: Path, size=(40, 20), color=(255, 255, 255), block=None, block_color=(0, 0, 0),
              mode="RGB") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        fill = color if mode == "RGB" else (*color, 255)
        img = Image.new(mode, size, fill)
        if block:
            x0, y0, x1, y1 = block
            block_fill = block_color if mode == "RGB" else (*block_color, 255)
            for x in range(x0, x1):
                for y in range(y0, y1):
                    img.putpixel((x, y), block_fill)
        img.save(path)
        return path

    return _make


SECTION_TYPES = ["header", "hero", "features", "footer"]


@pytest.fixture
def reference_website(config: ClonerConfig, make_png) -> str:
    """A website directory with four reference sections and metadata.json."""
    website_id = "acme"
    reference = config.websites_path / website_id / "reference"
    sections = []
    for i, section_type in enumerate(SECTION_TYPES):
        section = SectionInfo(
            id=f"section-{i}", type=section_type,
            bounding_box=BoundingBox(x=0, y=i * 20, width=40, height=20),
        )
        make_png(reference / "sections" / f"{section.file_stem(i)}.png", color=(30 * i, 100, 200))
        sections.append(section)
    make_png(reference / "fullpage.png", size=(40, 80), color=(20, 40, 60))
    atomic_write_json(reference / "metadata.json",
                      ReferenceMetadata(url="https://acme.test", sections=sections).dump())
    return website_id


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def version_store(config: ClonerConfig) -> VersionStore:
    return VersionStore(config.websites_path, link_current=True)


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """A small generated-output tree to snapshot."""
    src = tmp_path / "source"
    (src / "components" / "Hero").mkdir(parents=True)
    (src / "components" / "Hero" / "Hero.tsx").write_text("export default function Hero() {}\n")
    (src / "app").mkdir()
    (src / "app" / "page.tsx").write_text("export default function Home() {}\n")
    (src / "logo.bin").write_bytes(bytes(range(256)))
    return src


# ============================================================================
# Pipeline Fixtures
# ============================================================================


@pytest.fixture
def job() -> Job:
    return Job(website_id="acme", url="https://acme.test")


@pytest.fixture
def components() -> list[DiscoveredComponent]:
    return [
        DiscoveredComponent(name=name, section_type=t, order=i)
        for i, (name, t) in enumerate([
            ("Header", "header"), ("Hero", "hero"), ("Features", "features"),
            ("Features2", "features"), ("Footer", "footer"),
        ])
    ]


@pytest.fixture
def mock_phases(components) -> Mock:
    """PhaseHandlers stand-in with every phase succeeding."""
    phases = Mock()
    phases.capture = AsyncMock(return_value=CaptureArtifacts(
        reference_dir="/tmp/ref", metadata_path="/tmp/ref/metadata.json", section_count=5,
    ))
    phases.extract = AsyncMock(return_value=(components, {"colors": ["#ffffff"]}))
    phases.generate = AsyncMock(return_value=["Hero.tsx"])
    phases.scaffold = AsyncMock(return_value=["package.json"])
    phases.version = AsyncMock(return_value="version-abc")
    return phases
