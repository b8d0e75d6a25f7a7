"""Comparison engine — renders the generated site and diffs it against the reference."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from pydantic import ValidationError as PydanticValidationError

from sitecloner.errors import CorruptStateError, NotFoundError
from sitecloner.models.capture import ReferenceMetadata, SectionInfo
from sitecloner.models.comparison import ComparisonReport, SectionResult
from sitecloner.models.config import ClonerConfig
from sitecloner.renderer import PlaywrightRenderer, Renderer
from sitecloner.utils.files import atomic_write_json

from .server_manager import ServerManager
from .visual_diff import compare_images, overall_accuracy, summarize

logger = logging.getLogger(__name__)


class WebsitePaths:
    """Well-known locations inside one website directory."""

    def __init__(self, websites_dir: Path, website_id: str):
        self.root = Path(websites_dir) / website_id
        self.reference_dir = self.root / "reference"
        self.reference_sections = self.reference_dir / "sections"
        self.metadata = self.reference_dir / "metadata.json"
        self.generated_dir = self.root / "generated"
        self.generated_screenshots = self.generated_dir / "screenshots"
        self.comparison_dir = self.root / "comparison"
        self.diffs_dir = self.comparison_dir / "diffs"
        self.report = self.comparison_dir / "report.json"


def load_reference_sections(paths: WebsitePaths) -> list[SectionInfo]:
    """Sections recorded for the reference capture, in page order.

    Falls back to the NN-type.png files on disk when metadata.json is absent.
    """
    if paths.metadata.exists():
        try:
            return ReferenceMetadata.model_validate_json(paths.metadata.read_text()).sections
        except (OSError, PydanticValidationError) as e:
            raise CorruptStateError(f"Reference metadata unreadable at {paths.metadata}: {e}") from e

    sections = []
    for png in sorted(paths.reference_sections.glob("*.png")):
        _, _, section_type = png.stem.partition("-")
        sections.append(SectionInfo(id=png.stem, type=section_type or "unknown"))
    return sections


class ComparisonEngine:
    """Runs visual comparisons and persists report.json per website."""

    def __init__(
        self,
        config: ClonerConfig,
        renderer: Optional[Renderer] = None,
        server_factory: Optional[Callable[[], ServerManager]] = None,
    ):
        self.config = config
        self.renderer = renderer or PlaywrightRenderer(
            viewport=config.viewport,
            headless=config.headless,
            page_load_timeout_ms=config.page_load_timeout_ms,
            timeout_seconds=config.capture_timeout_seconds,
        )
        self.server_factory = server_factory or (lambda: ServerManager(
            port=config.generated_site_port,
            start_timeout_seconds=config.server_start_timeout_seconds,
        ))
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _lock(self, website_id: str) -> AsyncIterator[None]:
        """Serialize runs per website; the lock is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(website_id, asyncio.Lock())
        self._lock_users[website_id] = self._lock_users.get(website_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[website_id] -= 1
            if not self._lock_users[website_id]:
                del self._lock_users[website_id]
                del self._locks[website_id]

    async def run_comparison(
        self,
        website_id: str,
        websites_dir: str | Path | None = None,
        generated_site_url: Optional[str] = None,
        auto_start_server: bool = True,
    ) -> ComparisonReport:
        """Capture the generated site, diff every section, and write report.json."""
        paths = WebsitePaths(Path(websites_dir or self.config.websites_path), website_id)
        if not paths.reference_sections.is_dir():
            raise NotFoundError(f"Reference directory not found: {paths.reference_sections}")

        async with self._lock(website_id):
            sections = load_reference_sections(paths)
            logger.info("Comparing %d sections for %s", len(sections), website_id)

            generated_paths = [
                paths.generated_screenshots / f"{s.file_stem(i)}.png" for i, s in enumerate(sections)
            ]
            for stale in generated_paths:
                stale.unlink(missing_ok=True)

            await self._capture_generated(paths, website_id, generated_paths,
                                          generated_site_url, auto_start_server)

            results = await asyncio.to_thread(self._diff_sections, paths, sections, generated_paths)
            report = ComparisonReport(
                website_id=website_id,
                timestamp=datetime.now(timezone.utc).isoformat(),
                overall_accuracy=overall_accuracy(results),
                sections=results,
                summary=summarize(results),
            )
            atomic_write_json(paths.report, report.model_dump())

        logger.info("Comparison for %s: %.2f%% over %d sections",
                    website_id, report.overall_accuracy, len(results))
        return report

    async def _capture_generated(
        self,
        paths: WebsitePaths,
        website_id: str,
        generated_paths: list[Path],
        generated_site_url: Optional[str],
        auto_start_server: bool,
    ) -> None:
        server: ServerManager | None = None
        url = generated_site_url
        if url is None:
            if auto_start_server:
                server = self.server_factory()
                url = await server.start(website_id, paths.root.parent)
            else:
                url = self.config.generated_site_url
        try:
            await self.renderer.capture_sections(url, generated_paths)
        finally:
            if server is not None:
                await server.stop()

    def _diff_sections(
        self,
        paths: WebsitePaths,
        sections: list[SectionInfo],
        generated_paths: list[Path],
    ) -> list[SectionResult]:
        results: list[SectionResult] = []
        for i, (section, generated) in enumerate(zip(sections, generated_paths)):
            stem = section.file_stem(i)
            reference = paths.reference_sections / f"{stem}.png"
            if not reference.exists():
                logger.warning("Reference image missing for %s, skipping", stem)
                continue
            diff_path = paths.diffs_dir / f"{stem}-diff.png"
            unscored = SectionResult(
                section_name=stem,
                section_type=section.type,
                reference_image_path=str(reference),
                generated_image_path=str(generated),
            )
            if not generated.exists():
                logger.warning("No generated capture for %s", stem)
                results.append(unscored)
                continue
            try:
                diff = compare_images(reference, generated, diff_path, threshold=self.config.pixel_threshold)
            except (OSError, ValueError) as e:
                logger.warning("Could not diff %s, scoring it 0: %s", stem, e)
                results.append(unscored)
                continue
            results.append(SectionResult(
                section_name=stem,
                section_type=section.type,
                accuracy=diff.accuracy,
                mismatched_pixels=diff.mismatched_pixels,
                total_pixels=diff.total_pixels,
                diff_image_path=str(diff_path),
                reference_image_path=str(reference),
                generated_image_path=str(generated),
                width=diff.width,
                height=diff.height,
            ))
        return results

    def get_existing_report(
        self, website_id: str, websites_dir: str | Path | None = None
    ) -> ComparisonReport | None:
        """Read the last report for a website; None when absent or unreadable."""
        paths = WebsitePaths(Path(websites_dir or self.config.websites_path), website_id)
        if not paths.report.exists():
            return None
        try:
            return ComparisonReport.model_validate_json(paths.report.read_text())
        except (OSError, PydanticValidationError) as e:
            logger.warning("Ignoring unreadable report %s: %s", paths.report, e)
            return None
