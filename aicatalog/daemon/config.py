"""Configuration management for AI Catalog."""

import re
from pathlib import Path
from typing import List, Optional

import soupsieve
import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator


DEFAULT_STORE_PATH = Path.home() / ".local" / "share" / "aicatalog" / "store.json"


def check_selectors(selectors: List[str]) -> List[str]:
    for selector in selectors:
        try:
            soupsieve.compile(selector)
        except soupsieve.SelectorSyntaxError as e:
            raise ValueError(f"Invalid selector {selector!r}: {e}") from e
    return selectors


class CaptureConfig(BaseModel):
    # Tried in order; the first selector with any match wins.
    entry_selectors: List[str] = Field(default_factory=lambda: [
        '[data-testid="user-message"]',
        '[data-is-human-turn="true"]',
        '[class*="HumanTurn"]',
    ])
    min_text_length: int = 2
    max_title_length: int = 60

    @field_validator('entry_selectors')
    @classmethod
    def validate_selectors(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("entry_selectors must list at least one selector")
        return check_selectors(v)


class TagsConfig(BaseModel):
    entry_attr: str = "data-aic-id"
    session_attr: str = "data-aic-chat"


class WatcherConfig(BaseModel):
    debounce_ms: int = 300

    @field_validator('debounce_ms')
    @classmethod
    def validate_debounce(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("debounce_ms must be positive")
        return v


class SessionConfig(BaseModel):
    id_pattern: str = r"/chat/([a-f0-9-]{36})"
    poll_interval_s: float = 0.5
    initial_rescan_delays_s: List[float] = Field(default_factory=lambda: [1.5])
    switch_rescan_delays_s: List[float] = Field(default_factory=lambda: [1.0])

    @field_validator('id_pattern')
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        if re.compile(v).groups < 1:
            raise ValueError("id_pattern must capture the session id in group 1")
        return v


class LocatorConfig(BaseModel):
    settle_delay_s: float = 0.5
    highlight_duration_s: float = 2.0
    highlight_class: str = "aic-highlight"
    scroll_container_selectors: List[str] = Field(default_factory=lambda: [
        'main [class*="overflow"]',
        '[class*="overflow-y-auto"]',
        'main',
        '[role="main"]',
    ])

    @field_validator('scroll_container_selectors')
    @classmethod
    def validate_selectors(cls, v: List[str]) -> List[str]:
        return check_selectors(v)


class Config(BaseModel):
    """Main configuration for the AI Catalog engine."""

    store_path: Path = DEFAULT_STORE_PATH
    storage_key: str = "aicatalog_data"
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    tags: TagsConfig = Field(default_factory=TagsConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    locator: LocatorConfig = Field(default_factory=LocatorConfig)

    @field_validator('store_path')
    @classmethod
    def validate_store_path(cls, v: Path) -> Path:
        if isinstance(v, str):
            v = Path(v)
        v = v.expanduser().resolve()
        if not v.parent.exists():
            logger.warning(f"Store directory does not exist, will create: {v.parent}")
            v.parent.mkdir(parents=True, exist_ok=True)
        return v

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file."""
        if config_path is None:
            candidates = [
                Path("aicatalog.yaml"),
                Path.home() / ".config" / "aicatalog" / "config.yaml",
                Path("/etc/aicatalog/config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                raise FileNotFoundError(
                    f"No config file found. Searched: {[str(c) for c in candidates]}"
                )

        logger.info(f"Loading config from: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode="json"), f, default_flow_style=False)
