"""
Pipeline Settings
=================

Defaults for score blending, LLM batching, pagination and timeouts.

Values are read from ``pipeline.yaml`` next to this module and fall back
to hardcoded defaults when the file is missing or unreadable.

Usage:
    from kgflow.config import get_default_settings, PipelineSettings

    settings = get_default_settings()

    # Override explicitly
    settings = PipelineSettings(token_budget=8000, parallel=4)
"""

from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml

log = structlog.get_logger()

DEFAULT_CONFIG_PATH = Path(__file__).parent / "pipeline.yaml"

RERANK_STRATEGIES = ("weighted", "multiplicative", "llm_override")

_SETTINGS_CACHE: Optional["PipelineSettings"] = None


@dataclass(frozen=True)
class PipelineSettings:
    """
    Tunable defaults of the pipeline engine.

    Attributes:
        semantic_existing_weight: Weight of the score held before a chained semantic step
        semantic_new_weight: Weight of the new similarity score
        rerank_strategy: Default score merge strategy for LLM rerank
        rerank_prior_weight: Weight of the pre-rerank score ("weighted" strategy)
        rerank_llm_weight: Weight of the normalised LLM score ("weighted" strategy)
        token_budget: Estimated prompt tokens per structured LLM batch
        batch_size: Max items per structured LLM batch
        parallel: Concurrent batches for structured calls (1 = sequential)
        base_overhead_tokens: Fixed token estimate for prompt scaffolding
        response_tokens_per_field: Response token estimate per output field
        default_item_tokens: Token estimate for items with no exposed fields
        rerank_token_budget: Token budget for rerank batches
        rerank_batch_size: Max items per rerank batch
        rerank_parallel: Concurrent rerank batches
        embedding_batch_size: Texts per embedding call
        default_limit: Result limit applied when the builder sets none
        id_field: Entity property holding the stable identifier
        stale_field: Boolean property flagging a stale ranking signal
        stale_warning_sample: Max entity ids listed in the stale warning
        over_retrieve_factor: Vector over-retrieval multiplier when filtering
        min_candidates: Minimum vector candidates when filtering
        llm_timeout: Seconds allowed per LLM call
        vector_timeout: Seconds allowed per vector search
    """
    semantic_existing_weight: float = 0.3
    semantic_new_weight: float = 0.7
    rerank_strategy: str = "weighted"
    rerank_prior_weight: float = 0.3
    rerank_llm_weight: float = 0.7
    token_budget: int = 25000
    batch_size: int = 20
    parallel: int = 1
    base_overhead_tokens: int = 1000
    response_tokens_per_field: int = 100
    default_item_tokens: int = 100
    rerank_token_budget: int = 6250
    rerank_batch_size: int = 20
    rerank_parallel: int = 5
    embedding_batch_size: int = 32
    default_limit: Optional[int] = 10
    id_field: str = "uuid"
    stale_field: str = "embeddings_dirty"
    stale_warning_sample: int = 5
    over_retrieve_factor: int = 3
    min_candidates: int = 100
    llm_timeout: Optional[float] = 120.0
    vector_timeout: Optional[float] = 30.0

    def __post_init__(self):
        """Validate configuration values."""
        for name in (
            "semantic_existing_weight",
            "semantic_new_weight",
            "rerank_prior_weight",
            "rerank_llm_weight",
        ):
            value = getattr(self, name)
            if not 0 <= value <= 1:
                raise ValueError(f"{name} must be in [0, 1], got {value}")
        if abs(self.semantic_existing_weight + self.semantic_new_weight - 1.0) > 1e-9:
            raise ValueError(
                "semantic weights must sum to 1, got "
                f"{self.semantic_existing_weight} + {self.semantic_new_weight}"
            )
        if self.rerank_strategy not in RERANK_STRATEGIES:
            raise ValueError(
                f"rerank_strategy must be one of {RERANK_STRATEGIES}, got {self.rerank_strategy}"
            )
        for name in (
            "token_budget",
            "batch_size",
            "parallel",
            "rerank_token_budget",
            "rerank_batch_size",
            "rerank_parallel",
            "embedding_batch_size",
            "over_retrieve_factor",
        ):
            value = getattr(self, name)
            if value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}")
        if self.default_limit is not None and self.default_limit < 0:
            raise ValueError(f"default_limit must be >= 0, got {self.default_limit}")

    def with_overrides(self, **overrides: Any) -> "PipelineSettings":
        """Return a copy with the given fields replaced."""
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _flatten_sections(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten the YAML sections into PipelineSettings keyword arguments."""
    known = {f.name for f in fields(PipelineSettings)}
    flat: Dict[str, Any] = {}
    for section, values in raw.items():
        if isinstance(values, dict):
            for key, value in values.items():
                if key in known:
                    flat[key] = value
                else:
                    log.warning(f"Unknown pipeline setting ignored: {section}.{key}")
        elif section in known:
            flat[section] = values
    return flat


def load_pipeline_settings(path: Optional[Path] = None) -> PipelineSettings:
    """
    Load pipeline settings from a YAML file.

    Falls back to default settings if the file is not found or invalid.

    Args:
        path: YAML file (default: packaged pipeline.yaml)

    Returns:
        PipelineSettings
    """
    config_path = Path(path) if path else DEFAULT_CONFIG_PATH

    try:
        with open(config_path, "r") as f:
            raw = yaml.safe_load(f) or {}
        return PipelineSettings(**_flatten_sections(raw))
    except FileNotFoundError:
        log.warning(f"Config file not found: {config_path}, using default settings")
        return PipelineSettings()
    except (yaml.YAMLError, TypeError, ValueError) as e:
        log.error(f"Error loading config {config_path}: {e}, using default settings")
        return PipelineSettings()


def get_default_settings() -> PipelineSettings:
    """Return the packaged settings, loading them once per process."""
    global _SETTINGS_CACHE
    if _SETTINGS_CACHE is None:
        _SETTINGS_CACHE = load_pipeline_settings()
    return _SETTINGS_CACHE
