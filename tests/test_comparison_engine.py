"""Tests for the comparison engine and report cache."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest
from PIL import Image

from sitecloner.comparison.cache import ReportCache
from sitecloner.comparison.engine import ComparisonEngine
from sitecloner.errors import ExternalUnavailableError, NotFoundError, ServerUnavailableError


class FakeRenderer:
    """Writes generated captures that copy the reference, optionally altered."""

    def __init__(self, reference_sections, mismatch_blocks=None, count=None, delay=0.0):
        self.reference_sections = reference_sections
        self.mismatch_blocks = mismatch_blocks or {}
        self.count = count
        self.delay = delay
        self.calls = []

    async def capture_reference(self, url, output_dir):
        raise AssertionError("not used")

    async def capture_sections(self, url, output_paths):
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        written = []
        for i, path in enumerate(output_paths[:self.count]):
            with Image.open(self.reference_sections / path.name) as ref:
                img = ref.convert("RGB")
            if i in self.mismatch_blocks:
                x0, y0, x1, y1 = self.mismatch_blocks[i]
                for x in range(x0, x1):
                    for y in range(y0, y1):
                        img.putpixel((x, y), (255, 0, 255))
            path.parent.mkdir(parents=True, exist_ok=True)
            img.save(path)
            written.append(path)
        return written


def _sections_dir(config, website_id):
    return config.websites_path / website_id / "reference" / "sections"


class TestRunComparison:
    """Tests for ComparisonEngine.run_comparison."""

    @pytest.mark.asyncio
    async def test_perfect_match(self, config, reference_website):
        renderer = FakeRenderer(_sections_dir(config, reference_website))
        engine = ComparisonEngine(config, renderer=renderer)

        report = await engine.run_comparison(reference_website, generated_site_url="http://gen.test")

        assert report.overall_accuracy == 100.0
        assert report.summary.total_sections == 4
        assert report.summary.sections_above_90 == 4
        assert [s.section_name for s in report.sections] == ["01-header", "02-hero", "03-features", "04-footer"]
        assert renderer.calls == ["http://gen.test"]
        for s in report.sections:
            assert s.diff_image_path.endswith(f"{s.section_name}-diff.png")

    @pytest.mark.asyncio
    async def test_report_written_to_disk(self, config, reference_website):
        engine = ComparisonEngine(config, renderer=FakeRenderer(_sections_dir(config, reference_website)))
        report = await engine.run_comparison(reference_website, generated_site_url="http://gen.test")

        path = config.websites_path / reference_website / "comparison" / "report.json"
        data = json.loads(path.read_text())
        assert data["website_id"] == reference_website
        assert engine.get_existing_report(reference_website) == report

    @pytest.mark.asyncio
    async def test_partial_mismatch(self, config, reference_website):
        renderer = FakeRenderer(_sections_dir(config, reference_website), mismatch_blocks={1: (0, 0, 20, 20)})
        engine = ComparisonEngine(config, renderer=renderer)

        report = await engine.run_comparison(reference_website, generated_site_url="http://gen.test")

        hero = report.sections[1]
        assert hero.mismatched_pixels == 400
        assert hero.accuracy == 50.0
        assert report.overall_accuracy == round((3200 - 400) / 3200 * 100, 2)
        assert report.summary.sections_below_80 == 1

    @pytest.mark.asyncio
    async def test_missing_generated_section_scores_zero(self, config, reference_website):
        engine = ComparisonEngine(config, renderer=FakeRenderer(_sections_dir(config, reference_website), count=3))

        report = await engine.run_comparison(reference_website, generated_site_url="http://gen.test")

        footer = report.sections[3]
        assert footer.accuracy == 0
        assert footer.total_pixels == 0
        assert report.overall_accuracy == 100.0
        assert report.summary.sections_below_80 == 1

    @pytest.mark.asyncio
    async def test_missing_reference(self, config):
        engine = ComparisonEngine(config, renderer=FakeRenderer(None))
        with pytest.raises(NotFoundError):
            await engine.run_comparison("ghost", generated_site_url="http://gen.test")

    @pytest.mark.asyncio
    async def test_starts_and_stops_server(self, config, reference_website):
        server = Mock()
        server.start = AsyncMock(return_value="http://localhost:3002")
        server.stop = AsyncMock()
        renderer = FakeRenderer(_sections_dir(config, reference_website))
        engine = ComparisonEngine(config, renderer=renderer, server_factory=lambda: server)

        await engine.run_comparison(reference_website)

        server.start.assert_awaited_once_with(reference_website, config.websites_path)
        server.stop.assert_awaited_once()
        assert renderer.calls == ["http://localhost:3002"]

    @pytest.mark.asyncio
    async def test_server_failure_keeps_previous_report(self, config, reference_website):
        engine = ComparisonEngine(config, renderer=FakeRenderer(_sections_dir(config, reference_website)))
        previous = await engine.run_comparison(reference_website, generated_site_url="http://gen.test")

        server = Mock()
        server.start = AsyncMock(side_effect=ServerUnavailableError("no npm"))
        server.stop = AsyncMock()
        engine.server_factory = lambda: server

        with pytest.raises(ServerUnavailableError):
            await engine.run_comparison(reference_website)
        assert engine.get_existing_report(reference_website) == previous

    @pytest.mark.asyncio
    async def test_renderer_failure_stops_server(self, config, reference_website):
        server = Mock()
        server.start = AsyncMock(return_value="http://localhost:3002")
        server.stop = AsyncMock()
        renderer = Mock()
        renderer.capture_sections = AsyncMock(side_effect=ExternalUnavailableError("timeout"))
        engine = ComparisonEngine(config, renderer=renderer, server_factory=lambda: server)

        with pytest.raises(ExternalUnavailableError):
            await engine.run_comparison(reference_website)
        server.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_no_server_uses_configured_port(self, config, reference_website):
        renderer = FakeRenderer(_sections_dir(config, reference_website))
        engine = ComparisonEngine(config, renderer=renderer)
        await engine.run_comparison(reference_website, auto_start_server=False)
        assert renderer.calls == [config.generated_site_url]

    @pytest.mark.asyncio
    async def test_undecodable_capture_scores_zero(self, config, reference_website):
        renderer = FakeRenderer(_sections_dir(config, reference_website))
        original = renderer.capture_sections

        async def corrupting(url, paths):
            written = await original(url, paths)
            paths[2].write_bytes(b"not a png")
            return written

        renderer.capture_sections = corrupting
        engine = ComparisonEngine(config, renderer=renderer)

        report = await engine.run_comparison(reference_website, generated_site_url="http://gen.test")

        features = report.sections[2]
        assert features.accuracy == 0
        assert features.total_pixels == 0
        assert [s.accuracy for s in report.sections if s is not features] == [100.0, 100.0, 100.0]
        assert engine.get_existing_report(reference_website) == report

    @pytest.mark.asyncio
    async def test_website_locks_are_released(self, config, reference_website):
        engine = ComparisonEngine(config, renderer=FakeRenderer(_sections_dir(config, reference_website)))
        await asyncio.gather(*(engine.run_comparison(reference_website, generated_site_url="http://g")
                               for _ in range(2)))
        assert engine._locks == {}

        server = Mock()
        server.start = AsyncMock(side_effect=ServerUnavailableError("no npm"))
        engine.server_factory = lambda: server
        with pytest.raises(ServerUnavailableError):
            await engine.run_comparison(reference_website)
        assert engine._locks == {}

    @pytest.mark.asyncio
    async def test_runs_for_same_website_are_serialized(self, config, reference_website):
        renderer = FakeRenderer(_sections_dir(config, reference_website), delay=0.05)
        active = 0
        peak = 0
        original = renderer.capture_sections

        async def tracking(url, paths):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                return await original(url, paths)
            finally:
                active -= 1

        renderer.capture_sections = tracking
        engine = ComparisonEngine(config, renderer=renderer)
        await asyncio.gather(*(engine.run_comparison(reference_website, generated_site_url="http://g")
                               for _ in range(3)))
        assert peak == 1


class TestExistingReport:
    def test_absent(self, config):
        assert ComparisonEngine(config, renderer=Mock()).get_existing_report("acme") is None

    def test_unreadable(self, config):
        path = config.websites_path / "acme" / "comparison" / "report.json"
        path.parent.mkdir(parents=True)
        path.write_text("garbage")
        assert ComparisonEngine(config, renderer=Mock()).get_existing_report("acme") is None


class TestReportCache:
    """Tests for the freshness policy."""

    def _write_report(self, config, age_seconds):
        stamp = (datetime.now(timezone.utc) - timedelta(seconds=age_seconds)).isoformat()
        path = config.websites_path / "acme" / "comparison" / "report.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"website_id": "acme", "timestamp": stamp, "overall_accuracy": 88.0}))

    def _engine(self, config):
        engine = ComparisonEngine(config, renderer=Mock())
        engine.run_comparison = AsyncMock(return_value="fresh-run")
        return engine

    @pytest.mark.asyncio
    async def test_fresh_report_is_served(self, config):
        self._write_report(config, age_seconds=60)
        engine = self._engine(config)

        cached = await ReportCache(engine).get_or_run("acme")

        assert cached.from_cache
        assert cached.report.overall_accuracy == 88.0
        engine.run_comparison.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_report_triggers_run(self, config):
        self._write_report(config, age_seconds=301)
        engine = self._engine(config)
        cache = ReportCache(engine)
        assert cache.fresh_report("acme") is None

    @pytest.mark.asyncio
    async def test_force_recapture_bypasses_cache(self, config, reference_website):
        engine = ComparisonEngine(config, renderer=FakeRenderer(_sections_dir(config, reference_website)))
        cache = ReportCache(engine)
        first = await cache.get_or_run(reference_website, generated_site_url="http://g")
        second = await cache.get_or_run(reference_website, generated_site_url="http://g")
        forced = await cache.get_or_run(reference_website, force_recapture=True, generated_site_url="http://g")

        assert not first.from_cache
        assert second.from_cache
        assert not forced.from_cache
        assert len(engine.renderer.calls) == 2

    def test_custom_freshness(self, config):
        self._write_report(config, age_seconds=30)
        cache = ReportCache(ComparisonEngine(config, renderer=Mock()), freshness_seconds=10)
        assert cache.fresh_report("acme") is None
