"""Offline providers that return deterministic placeholder images."""

from __future__ import annotations

import base64
import hashlib
from typing import Any, Mapping

from .base import GenerationResult, TryOnOptions, TryOnResult


class DryRunGenerationProvider:
    name = "dryrun"

    def __init__(self) -> None:
        self.prompts: list[str] = []

    async def generate(self, prompt: str, hints: Mapping[str, Any]) -> GenerationResult:
        self.prompts.append(prompt)
        return GenerationResult(
            success=True,
            image_url=_placeholder_svg(prompt, _color_from_prompt(prompt)),
            metadata={"dryrun": True, **dict(hints)},
        )


class DryRunTryOnProvider:
    name = "dryrun"

    async def try_on(
        self,
        selfie_image: str,
        garment_slots: Mapping[str, str],
        options: TryOnOptions,
    ) -> TryOnResult:
        seed = "|".join(f"{slot}={url[:32]}" for slot, url in sorted(garment_slots.items()))
        return TryOnResult(
            result_image=_placeholder_svg(f"try-on {options.preset}", _color_from_prompt(seed)),
            model="dryrun",
            slots_used=sorted(garment_slots),
        )


def _color_from_prompt(prompt: str) -> str:
    digest = hashlib.sha256(prompt.encode("utf-8")).digest()
    return f"#{digest[0]:02x}{digest[1]:02x}{digest[2]:02x}"


def _placeholder_svg(label: str, color: str) -> str:
    text = label[:60].replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    svg = (
        '<svg xmlns="http://www.w3.org/2000/svg" width="512" height="512">'
        f'<rect width="512" height="512" fill="{color}"/>'
        f'<text x="20" y="40" fill="#ffffff" font-size="16">dryrun: {text}</text>'
        "</svg>"
    )
    return "data:image/svg+xml;base64," + base64.b64encode(svg.encode("utf-8")).decode("ascii")
