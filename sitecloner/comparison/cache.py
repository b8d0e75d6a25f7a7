"""Serve a recent comparison report instead of re-rendering."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from sitecloner.models.comparison import ComparisonReport

from .engine import ComparisonEngine

logger = logging.getLogger(__name__)


class CachedReport(BaseModel):
    report: ComparisonReport
    from_cache: bool


class ReportCache:
    """Freshness policy in front of ComparisonEngine.

    Forcing a recapture only discards the cached report; version snapshots
    are never touched.
    """

    def __init__(self, engine: ComparisonEngine, freshness_seconds: Optional[float] = None):
        self.engine = engine
        self.freshness_seconds = (
            freshness_seconds if freshness_seconds is not None
            else engine.config.report_freshness_seconds
        )

    def fresh_report(self, website_id: str, websites_dir: str | Path | None = None) -> ComparisonReport | None:
        report = self.engine.get_existing_report(website_id, websites_dir)
        if report is None:
            return None
        try:
            age = report.age_seconds()
        except ValueError:
            logger.warning("Report for %s has an unparseable timestamp", website_id)
            return None
        return report if 0 <= age < self.freshness_seconds else None

    async def get_or_run(
        self,
        website_id: str,
        force_recapture: bool = False,
        websites_dir: str | Path | None = None,
        generated_site_url: Optional[str] = None,
        auto_start_server: bool = True,
    ) -> CachedReport:
        if not force_recapture:
            cached = self.fresh_report(website_id, websites_dir)
            if cached is not None:
                logger.info("Using cached comparison for %s", website_id)
                return CachedReport(report=cached, from_cache=True)

        report = await self.engine.run_comparison(
            website_id,
            websites_dir=websites_dir,
            generated_site_url=generated_site_url,
            auto_start_server=auto_start_server,
        )
        return CachedReport(report=report, from_cache=False)
