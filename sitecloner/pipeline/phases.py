"""Work behind each pipeline phase.

Each handler is idempotent: re-running it over output that already exists
leaves matching files untouched, so a crashed or repeated run can re-enter
safely.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from pathlib import Path
from typing import Any, Optional, Protocol

from PIL import Image

from sitecloner.comparison.engine import WebsitePaths, load_reference_sections
from sitecloner.models.checkpoint import CaptureArtifacts, DiscoveredComponent
from sitecloner.models.config import ClonerConfig
from sitecloner.models.job import Job
from sitecloner.renderer import PlaywrightRenderer, Renderer
from sitecloner.utils.files import atomic_write_json, write_if_changed
from sitecloner.versioning.version_store import VersionStore

logger = logging.getLogger(__name__)

# Generated-site entries that are build artefacts, not source
SNAPSHOT_EXCLUDE = ("node_modules", ".next", "screenshots")

_COMPONENT_NAMES = {
    "cta": "CallToAction",
    "faq": "FAQ",
    "howitworks": "HowItWorks",
    "how-it-works": "HowItWorks",
}

PALETTE_SIZE = 6


def component_name(section_type: str) -> str:
    """Map a section type to a PascalCase component name."""
    key = section_type.lower()
    if key in _COMPONENT_NAMES:
        return _COMPONENT_NAMES[key]
    return "".join(part.capitalize() for part in key.replace("_", "-").split("-") if part) or "Section"


def name_components(section_types: list[str]) -> list[str]:
    """Component names in page order; repeats get a numeric suffix (Features, Features2)."""
    seen: dict[str, int] = {}
    names = []
    for section_type in section_types:
        base = component_name(section_type)
        seen[base] = seen.get(base, 0) + 1
        names.append(base if seen[base] == 1 else f"{base}{seen[base]}")
    return names


def extract_palette(image_path: Path, size: int = PALETTE_SIZE) -> list[str]:
    """Most frequent colours of an image as hex strings."""
    with Image.open(image_path) as img:
        rgb = img.convert("RGB")
    rgb.thumbnail((400, 400))
    quantized = rgb.quantize(colors=size)
    palette = quantized.getpalette() or []
    counts = sorted(quantized.getcolors() or [], reverse=True)
    colors = []
    for _, index in counts[:size]:
        r, g, b = palette[index * 3:index * 3 + 3]
        colors.append(f"#{r:02x}{g:02x}{b:02x}")
    return colors


class ComponentGenerator(Protocol):
    def render(self, component: DiscoveredComponent, tokens: dict[str, Any]) -> str:
        """Return TSX source for one component."""
        ...


class PlaceholderGenerator:
    """Emits a minimal section component tinted with the dominant page colour."""

    def render(self, component: DiscoveredComponent, tokens: dict[str, Any]) -> str:
        colors = tokens.get("colors") or ["#ffffff"]
        background = colors[0]
        return (
            f"export default function {component.name}() {{\n"
            f"  return (\n"
            f"    <section data-section=\"{component.section_type}\" "
            f"style={{{{ background: \"{background}\" }}}}>\n"
            f"      <h2>{component.name}</h2>\n"
            f"    </section>\n"
            f"  );\n"
            f"}}\n"
        )


PACKAGE_JSON_TEMPLATE = {
    "private": True,
    "scripts": {
        "dev": "next dev",
        "build": "next build",
        "start": "next start",
    },
    "dependencies": {
        "next": "14.2.5",
        "react": "18.3.1",
        "react-dom": "18.3.1",
    },
    "devDependencies": {
        "typescript": "5.5.4",
        "@types/react": "18.3.3",
        "@types/node": "20.14.12",
    },
}

LAYOUT_TSX = """export default function RootLayout({ children }: { children: React.ReactNode }) {
  return (
    <html lang="en">
      <body style={{ margin: 0 }}>{children}</body>
    </html>
  );
}
"""


class PhaseHandlers:
    """Default implementation of every pipeline phase."""

    def __init__(
        self,
        config: ClonerConfig,
        version_store: VersionStore,
        renderer: Optional[Renderer] = None,
        generator: Optional[ComponentGenerator] = None,
    ):
        self.config = config
        self.version_store = version_store
        self.renderer = renderer or PlaywrightRenderer(
            viewport=config.viewport,
            headless=config.headless,
            page_load_timeout_ms=config.page_load_timeout_ms,
            timeout_seconds=config.capture_timeout_seconds,
        )
        self.generator = generator or PlaceholderGenerator()

    def _paths(self, job: Job) -> WebsitePaths:
        return WebsitePaths(self.config.websites_path, job.website_id)

    # --- capturing

    def _existing_capture(self, paths: WebsitePaths) -> CaptureArtifacts | None:
        if not paths.metadata.exists():
            return None
        sections = load_reference_sections(paths)
        if not sections:
            return None
        for i, section in enumerate(sections):
            if not (paths.reference_sections / f"{section.file_stem(i)}.png").exists():
                return None
        fullpage = paths.reference_dir / "fullpage.png"
        return CaptureArtifacts(
            reference_dir=str(paths.reference_dir),
            metadata_path=str(paths.metadata),
            fullpage_path=str(fullpage) if fullpage.exists() else None,
            section_count=len(sections),
            reused=True,
        )

    async def capture(self, job: Job) -> CaptureArtifacts:
        paths = self._paths(job)
        if not job.skip_cache:
            existing = self._existing_capture(paths)
            if existing is not None:
                logger.info("Reusing reference capture for %s (%d sections)",
                            job.website_id, existing.section_count)
                return existing

        # Drop the old capture first so a failed recapture cannot be reused later
        paths.metadata.unlink(missing_ok=True)
        shutil.rmtree(paths.reference_sections, ignore_errors=True)
        (paths.reference_dir / "fullpage.png").unlink(missing_ok=True)

        metadata = await self.renderer.capture_reference(job.url, paths.reference_dir)
        # metadata.json is written last; its presence marks a complete capture
        atomic_write_json(paths.metadata, metadata.dump())
        fullpage = paths.reference_dir / "fullpage.png"
        return CaptureArtifacts(
            reference_dir=str(paths.reference_dir),
            metadata_path=str(paths.metadata),
            fullpage_path=str(fullpage) if fullpage.exists() else None,
            section_count=len(metadata.sections),
        )

    # --- extracting

    async def extract(
        self, job: Job, capture: CaptureArtifacts
    ) -> tuple[list[DiscoveredComponent], dict[str, Any]]:
        paths = self._paths(job)
        sections = load_reference_sections(paths)
        names = name_components([s.type for s in sections])
        components = [
            DiscoveredComponent(
                name=name,
                section_type=section.type,
                order=i,
                section_id=section.id,
                reference_image=str(paths.reference_sections / f"{section.file_stem(i)}.png"),
            )
            for i, (section, name) in enumerate(zip(sections, names))
        ]

        tokens: dict[str, Any] = {
            "viewport": {"width": self.config.viewport.width, "height": self.config.viewport.height},
        }
        if capture.fullpage_path and Path(capture.fullpage_path).exists():
            tokens["colors"] = await asyncio.to_thread(extract_palette, Path(capture.fullpage_path))
        logger.info("Discovered %d components for %s", len(components), job.website_id)
        return components, tokens

    # --- generating

    async def generate(
        self, job: Job, components: list[DiscoveredComponent], tokens: dict[str, Any]
    ) -> list[str]:
        components_dir = self._paths(job).generated_dir / "src" / "components"
        written = []
        for component in components:
            path = components_dir / component.name / f"{component.name}.tsx"
            if write_if_changed(path, self.generator.render(component, tokens)):
                logger.debug("Wrote %s", path)
            written.append(str(path))
        return written

    # --- scaffolding

    async def scaffold(
        self, job: Job, components: list[DiscoveredComponent], tokens: dict[str, Any]
    ) -> list[str]:
        generated = self._paths(job).generated_dir
        package = dict(PACKAGE_JSON_TEMPLATE, name=job.website_id.lower())
        imports = "".join(
            f"import {c.name} from \"@/components/{c.name}/{c.name}\";\n" for c in components
        )
        body = "".join(f"      <{c.name} />\n" for c in components)
        page = f"{imports}\nexport default function Home() {{\n  return (\n    <main>\n{body}    </main>\n  );\n}}\n"
        tsconfig = {
            "compilerOptions": {
                "target": "es2017", "lib": ["dom", "esnext"], "jsx": "preserve",
                "module": "esnext", "moduleResolution": "bundler", "strict": True,
                "noEmit": True, "isolatedModules": True, "esModuleInterop": True,
                "paths": {"@/*": ["./src/*"]},
            },
            "include": ["**/*.ts", "**/*.tsx"],
        }

        files = {
            generated / "package.json": json.dumps(package, indent=2) + "\n",
            generated / "tsconfig.json": json.dumps(tsconfig, indent=2) + "\n",
            generated / "src" / "app" / "layout.tsx": LAYOUT_TSX,
            generated / "src" / "app" / "page.tsx": page,
            generated / "src" / "design-tokens.json": json.dumps(tokens, indent=2, sort_keys=True) + "\n",
        }
        changed = 0
        for path, content in files.items():
            changed += write_if_changed(path, content)
        logger.info("Scaffolded %s (%d/%d files changed)", generated, changed, len(files))
        return [str(p) for p in files]

    # --- versioning

    async def version(self, job: Job, tokens: dict[str, Any]) -> str:
        # A job that committed its version before crashing gets the same one back
        recorded = self.version_store.find_job_version(job.website_id, job.id)
        if recorded is not None:
            logger.info("Job %s already produced version %s", job.id, recorded.version_number)
            return recorded.id

        existing = self.version_store.list_versions(job.website_id)
        result = await asyncio.to_thread(
            self.version_store.create_new_version,
            website_id=job.website_id,
            source_dir=self._paths(job).generated_dir,
            tokens_json=json.dumps(tokens, sort_keys=True),
            changelog=f"Generated from {job.url}" if not existing else f"Regenerated from {job.url}",
            set_active=True,
            change_type="regeneration",
            exclude=SNAPSHOT_EXCLUDE,
            job_id=job.id,
        )
        return result.version.id
