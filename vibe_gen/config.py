"""
Runtime settings loaded from the environment (and a .env file if present).
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from vibe_gen.models import GenerationStrategy, ProviderKind


DEFAULT_MODELS = {
    ProviderKind.ANTHROPIC: "claude-sonnet-4-20250514",
    ProviderKind.OPENAI: "gpt-4o",
    ProviderKind.GOOGLE: "gemini-1.5-pro",
}

# Preference order when no provider is configured explicitly
PROVIDER_PREFERENCE = [ProviderKind.ANTHROPIC, ProviderKind.OPENAI, ProviderKind.GOOGLE]


def _optional_float(name: str, default: Optional[float] = None) -> Optional[float]:
    """Read a float that may be switched off with an empty value or "none"."""
    value = os.getenv(name)
    if value is None:
        return default
    if value.strip().lower() in ("", "none", "off"):
        return None
    return float(value)


class Settings(BaseModel):
    """Pipeline configuration."""
    provider: Optional[ProviderKind] = None
    model: Optional[str] = None
    temperature: float = 0.3
    max_tokens: int = 8192
    strategy: GenerationStrategy = GenerationStrategy.EDIT_BASED

    extraction_concurrency: int = 3
    extraction_timeout_s: float = 120.0
    extraction_estimate_s: float = 60.0
    variant_timeout_s: float = 300.0
    variant_concurrency: Optional[int] = None  # defaults to the number of selected variants
    call_deadline_s: Optional[float] = 180.0
    pipeline_deadline_s: Optional[float] = None

    edit_debounce_s: float = 1.0
    partial_interval_s: float = 3.0
    partial_min_bytes: int = 5 * 1024

    summary_max_tokens: int = 2000
    output_dir: Path = Path("outputs")

    class Config:
        arbitrary_types_allowed = True

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from VIBE_* environment variables."""
        load_dotenv()

        provider = os.getenv("VIBE_PROVIDER")
        return cls(
            provider=ProviderKind(provider.lower()) if provider else None,
            model=os.getenv("VIBE_MODEL") or None,
            temperature=float(os.getenv("VIBE_TEMPERATURE", "0.3")),
            max_tokens=int(os.getenv("VIBE_MAX_TOKENS", "8192")),
            strategy=GenerationStrategy(os.getenv("VIBE_STRATEGY", GenerationStrategy.EDIT_BASED.value)),
            extraction_concurrency=int(os.getenv("VIBE_EXTRACTION_CONCURRENCY", "3")),
            extraction_timeout_s=float(os.getenv("VIBE_EXTRACTION_TIMEOUT_S", "120")),
            variant_timeout_s=float(os.getenv("VIBE_VARIANT_TIMEOUT_S", "300")),
            variant_concurrency=int(os.environ["VIBE_VARIANT_CONCURRENCY"]) if os.getenv("VIBE_VARIANT_CONCURRENCY") else None,
            call_deadline_s=_optional_float("VIBE_CALL_DEADLINE_S", 180.0),
            pipeline_deadline_s=_optional_float("VIBE_PIPELINE_DEADLINE_S"),
            edit_debounce_s=float(os.getenv("VIBE_EDIT_DEBOUNCE_S", "1.0")),
            partial_interval_s=float(os.getenv("VIBE_PARTIAL_INTERVAL_S", "3.0")),
            partial_min_bytes=int(os.getenv("VIBE_PARTIAL_MIN_BYTES", str(5 * 1024))),
            summary_max_tokens=int(os.getenv("VIBE_SUMMARY_MAX_TOKENS", "2000")),
            output_dir=Path(os.getenv("VIBE_OUTPUT_DIR", "outputs")),
        )
