"""Configuration models for site-cloner."""

from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_FILE = "site-cloner.json"


class ViewportConfig(BaseModel):
    width: int = 1440
    height: int = 900
    name: str = "desktop"


class ClonerConfig(BaseModel):
    # Storage
    websites_dir: str = Field(
        default_factory=lambda: os.environ.get("WEBSITES_DIR", "./Websites")
    )
    data_dir: str = ".site-cloner"

    # Rendering
    viewport: ViewportConfig = Field(default_factory=ViewportConfig)
    headless: bool = True
    page_load_timeout_ms: int = 30000
    capture_timeout_seconds: float = 120.0

    # Generated site
    generated_site_port: int = 3002
    server_start_timeout_seconds: float = 30.0

    # Comparison
    pixel_threshold: float = 0.1
    report_freshness_seconds: int = 300

    # Pipeline
    checkpoint_grace_seconds: float = 30.0
    max_parallel_jobs: int = 3

    # Versioning
    link_current: bool = True

    @field_validator("websites_dir", mode="before")
    @classmethod
    def resolve_env_dir(cls, v: str) -> str:
        if isinstance(v, str) and v.startswith("env:"):
            env_var = v[4:]
            resolved = os.environ.get(env_var)
            if resolved is None:
                raise ValueError(f"Environment variable '{env_var}' not set")
            return resolved
        return v

    @field_validator("pixel_threshold")
    @classmethod
    def check_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("pixel_threshold must be between 0 and 1")
        return v

    @property
    def websites_path(self) -> Path:
        return Path(self.websites_dir)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir)

    @property
    def generated_site_url(self) -> str:
        return f"http://localhost:{self.generated_site_port}"

    @classmethod
    def load(cls, path: str | Path) -> "ClonerConfig":
        """Load config from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            data = json.load(f)
        return cls(**data)

    @classmethod
    def load_or_default(cls, path: str | Path) -> "ClonerConfig":
        """Load config if the file exists, otherwise return defaults."""
        if Path(path).exists():
            return cls.load(path)
        return cls()

    def save(self, path: str | Path) -> None:
        """Save config to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.model_dump(), f, indent=2)
