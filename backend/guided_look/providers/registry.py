"""Selects the generation and try-on providers configured for the process."""

from __future__ import annotations

from functools import lru_cache

from ..settings import Settings, settings
from .base import GenerationProvider, TryOnProvider
from .dryrun import DryRunGenerationProvider, DryRunTryOnProvider
from .edge import EdgeFunctionClient, EdgeGenerationProvider, EdgeTryOnProvider, GoogleBearerAuth


def build_providers(config: Settings) -> tuple[GenerationProvider, TryOnProvider]:
    if config.provider == "dryrun":
        return DryRunGenerationProvider(), DryRunTryOnProvider()
    auth = GoogleBearerAuth() if config.provider_use_google_auth else None
    generation = EdgeFunctionClient(
        config.generation_endpoint, timeout=config.generation_timeout_seconds, auth=auth
    )
    tryon = EdgeFunctionClient(config.tryon_endpoint, timeout=config.tryon_timeout_seconds, auth=auth)
    return EdgeGenerationProvider(generation), EdgeTryOnProvider(tryon)


@lru_cache(maxsize=1)
def get_providers() -> tuple[GenerationProvider, TryOnProvider]:
    return build_providers(settings)
