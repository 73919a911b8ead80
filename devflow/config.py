from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_QUESTION_TIMEOUT_HOURS,
    DEFAULT_STEP_RETRIES,
    DEFAULT_STEP_TIMEOUT_SECONDS,
)
from .contracts import Phase
from .status_table import DEFAULT_STATUS_ENTRIES, StatusEntry, StatusTable


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    namespace: str = "devflow"


class TransportConfig(BaseModel):
    """Transport configuration settings.

    ``poll_interval`` is how often the in-memory transport checks its queues.
    """

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    poll_interval: float = 0.05


class PhaseConfig(BaseModel):
    """Per-phase switches.

    ``features`` holds boolean flags consulted by conditional steps. Flags
    missing from the mapping fall back to the phase defaults.
    """

    enabled: bool = True
    ai_model: Optional[str] = None
    features: Dict[str, bool] = Field(default_factory=dict)


DEFAULT_FEATURES: Dict[Phase, Dict[str, bool]] = {
    Phase.REFINEMENT: {
        "auto_status_update": True,
        "rag_context": True,
        "documentation_analysis": True,
        "context_documents": True,
        "po_questions": True,
        "subtask_creation": True,
    },
    Phase.USER_STORY: {
        "auto_status_update": True,
        "task_splitting": True,
        "reuse_codebase_context": True,
        "reuse_documentation_context": True,
    },
    Phase.TECHNICAL_PLAN: {
        "auto_status_update": True,
        "best_practices_query": True,
        "reuse_codebase_context": True,
        "reuse_documentation_context": True,
    },
    Phase.CODE_GENERATION: {
        "auto_status_update": True,
        "reuse_codebase_context": True,
        "ambiguity_detection": True,
        "solution_choice": True,
        "pre_pr_approval": True,
    },
}


class QuestionConfig(BaseModel):
    timeout_hours: float = DEFAULT_QUESTION_TIMEOUT_HOURS


class StepDefaults(BaseModel):
    timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS
    retries: int = DEFAULT_STEP_RETRIES
    backoff_base: float = 1.5


class DevflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    status_table: List[StatusEntry] = Field(
        default_factory=lambda: list(DEFAULT_STATUS_ENTRIES)
    )
    phases: Dict[Phase, PhaseConfig] = Field(default_factory=dict)
    questions: QuestionConfig = QuestionConfig()
    steps: StepDefaults = StepDefaults()
    webhook_secret: Optional[str] = None
    ai_model: Optional[str] = None
    log_level: str = "INFO"

    def build_status_table(self) -> StatusTable:
        return StatusTable(self.status_table)

    def phase(self, phase: Phase) -> PhaseConfig:
        return self.phases.get(phase) or PhaseConfig()

    def features(self, phase: Phase) -> Dict[str, bool]:
        """Return every flag of ``phase`` with configured values over defaults."""
        merged = dict(DEFAULT_FEATURES.get(phase, {}))
        merged.update(self.phase(phase).features)
        return merged

    def feature_enabled(self, phase: Phase, flag: str) -> bool:
        configured = self.phase(phase).features
        if flag in configured:
            return configured[flag]
        return DEFAULT_FEATURES.get(phase, {}).get(flag, False)


def load_config(path: Optional[str] = None) -> DevflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DEVFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DEVFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DevflowConfig(**data)
    else:
        config = DevflowConfig()

    env_db_url = os.getenv("DEVFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_secret = os.getenv("DEVFLOW_WEBHOOK_SECRET")
    if env_secret:
        config.webhook_secret = env_secret
    return config
