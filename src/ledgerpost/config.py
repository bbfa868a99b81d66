"""
Configuration management (SSOT).

This module defines ALL configuration for the LedgerPost application.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Rule weights and thresholds live here, never inline in the engine
- auto_apply_threshold must stay above suggest_threshold
- Worker concurrency is a fixed pool size, not an autoscaling hint
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class ExtractionConfig:
    """Extraction service configuration.

    The extraction service is an external HTTP collaborator that turns a
    file reference into structured data (OCR/AI extraction).
    """

    base_url: str
    token: str = ""
    # Request timeout (seconds)
    timeout_seconds: int = 120
    # Max retries for transient HTTP failures (429/5xx)
    max_retries: int = 2


@dataclass
class RuleEngineConfig:
    """GL rule scoring weights and thresholds.

    Weights are on the nominal 0-100 scale. max_score is the floor for the
    per-rule denominator so that a rule with a single configured condition
    cannot reach full confidence as cheaply as a fully specified rule.
    """

    weight_vendor_patterns: float = 30
    weight_amount_range: float = 20
    weight_exact_descriptions: float = 35
    weight_keywords: float = 25
    weight_date_range: float = 10
    weight_category_bonus: float = 5
    # Floor for the max-possible-score denominator
    max_score: float = 100
    # Rule must allow auto_assign AND reach this confidence to auto-apply
    auto_apply_threshold: float = 0.85
    # Matches below this confidence are not surfaced as candidates
    suggest_threshold: float = 0.30


@dataclass
class WorkerConfig:
    """Document processing worker settings."""

    # Fixed pool size (concurrent jobs)
    concurrency: int = 5
    # Idle sleep between dequeue attempts (seconds)
    poll_interval_seconds: float = 2.0
    # Delivery attempts before a job is dead-lettered
    max_attempts: int = 3
    # overall_confidence needed for ready_for_export
    ready_for_export_threshold: float = 0.80


@dataclass
class MappingConfig:
    """Accounting field mapping settings."""

    # Any populated field below this confidence flags the document for review
    review_threshold: float = 0.60
    default_currency: str = "USD"
    default_company_code: str | None = None
    default_tax_code: str | None = None


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    extraction: ExtractionConfig
    rules: RuleEngineConfig = field(default_factory=RuleEngineConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    mapping: MappingConfig = field(default_factory=MappingConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/ledgerpost.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.extraction.base_url:
            errors.append("extraction.base_url is required")

        if self.worker.concurrency < 1:
            errors.append("worker.concurrency must be >= 1")
        if self.worker.max_attempts < 1:
            errors.append("worker.max_attempts must be >= 1")

        # Thresholds must be sensible
        for name in ("auto_apply_threshold", "suggest_threshold"):
            value = getattr(self.rules, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"rules.{name} must be between 0 and 1")
        if self.rules.auto_apply_threshold < self.rules.suggest_threshold:
            errors.append("rules.auto_apply_threshold must be >= rules.suggest_threshold")
        if self.rules.max_score <= 0:
            errors.append("rules.max_score must be positive")

        if not 0.0 <= self.worker.ready_for_export_threshold <= 1.0:
            errors.append("worker.ready_for_export_threshold must be between 0 and 1")

        return errors


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - LEDGERPOST_EXTRACTION_URL
    - LEDGERPOST_EXTRACTION_TOKEN
    - LEDGERPOST_WORKER_CONCURRENCY
    - LEDGERPOST_DB_PATH
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Extraction service
    extraction_data = data.get("extraction", {})
    extraction = ExtractionConfig(
        base_url=os.environ.get(
            "LEDGERPOST_EXTRACTION_URL",
            extraction_data.get("base_url", "http://localhost:9000"),
        ),
        token=os.environ.get("LEDGERPOST_EXTRACTION_TOKEN", extraction_data.get("token", "")),
        timeout_seconds=int(extraction_data.get("timeout_seconds", 120)),
        max_retries=int(extraction_data.get("max_retries", 2)),
    )

    # Rule engine
    rules_data = data.get("rules", {})
    defaults = RuleEngineConfig()
    rules = RuleEngineConfig(
        **{
            key: float(rules_data.get(key, getattr(defaults, key)))
            for key in defaults.__dataclass_fields__
        }
    )

    # Worker
    worker_data = data.get("worker", {})
    concurrency = worker_data.get("concurrency", 5)
    concurrency_env = os.environ.get("LEDGERPOST_WORKER_CONCURRENCY", "")
    if concurrency_env:
        try:
            concurrency = int(concurrency_env)
        except ValueError:
            pass  # Keep configured value

    worker = WorkerConfig(
        concurrency=int(concurrency),
        poll_interval_seconds=float(worker_data.get("poll_interval_seconds", 2.0)),
        max_attempts=int(worker_data.get("max_attempts", 3)),
        ready_for_export_threshold=float(worker_data.get("ready_for_export_threshold", 0.80)),
    )

    # Mapping
    mapping_data = data.get("mapping", {})
    mapping = MappingConfig(
        review_threshold=float(mapping_data.get("review_threshold", 0.60)),
        default_currency=mapping_data.get("default_currency", "USD"),
        default_company_code=mapping_data.get("default_company_code"),
        default_tax_code=mapping_data.get("default_tax_code"),
    )

    state_db = os.environ.get(
        "LEDGERPOST_DB_PATH", data.get("state_db_path", "data/ledgerpost.db")
    )

    return Config(
        extraction=extraction,
        rules=rules,
        worker=worker,
        mapping=mapping,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# LedgerPost Configuration
#
# Extraction is an external HTTP service; everything else runs locally
# against the SQLite state database.

extraction:
  base_url: "http://localhost:9000"       # Extraction service URL
  token: "YOUR_EXTRACTION_TOKEN"
  timeout_seconds: 120
  max_retries: 2                          # Transient HTTP retries (429/5xx)

# GL rule engine (weights on the 0-100 scale)
rules:
  weight_vendor_patterns: 30
  weight_amount_range: 20
  weight_exact_descriptions: 35
  weight_keywords: 25                     # Pro-rated by keywords found
  weight_date_range: 10
  weight_category_bonus: 5
  max_score: 100                          # Floor for the confidence denominator
  auto_apply_threshold: 0.85              # Auto-apply at or above (rule must allow it)
  suggest_threshold: 0.30                 # Surface as candidate at or above

# Document processing worker
worker:
  concurrency: 5                          # Jobs processed in parallel
  poll_interval_seconds: 2.0
  max_attempts: 3                         # Deliveries before dead-lettering
  ready_for_export_threshold: 0.80        # overall_confidence for ready_for_export

# Accounting field mapping
mapping:
  review_threshold: 0.60                  # Field confidence below this needs review
  default_currency: "USD"
  default_company_code: null
  default_tax_code: null

# State database path
state_db_path: "data/ledgerpost.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
