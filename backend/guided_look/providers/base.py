"""Provider interfaces for garment generation and virtual try-on."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol


@dataclass
class GenerationResult:
    success: bool
    image_url: str | None = None
    error: str | None = None
    status_code: int | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class TryOnResult:
    result_image: str
    model: str | None = None
    slots_used: list[str] = field(default_factory=list)


@dataclass
class TryOnOptions:
    preset: str = "overlay"
    quality: str = "pro"
    view: str = "front"
    keep_pose: bool = False

    def as_payload(self) -> dict[str, Any]:
        return {
            "preset": self.preset,
            "quality": self.quality,
            "view": self.view,
            "keepPose": self.keep_pose,
        }


class GenerationProvider(Protocol):
    name: str

    async def generate(self, prompt: str, hints: Mapping[str, Any]) -> GenerationResult:
        ...


class TryOnProvider(Protocol):
    name: str

    async def try_on(
        self,
        selfie_image: str,
        garment_slots: Mapping[str, str],
        options: TryOnOptions,
    ) -> TryOnResult:
        ...
