"""Run the enrichment client on a local image and print the result."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from media_manager.config import load_settings
from media_manager.enrichment import build_enrichment_client
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "describe"})


def main(
    image: Path = typer.Argument(..., exists=True, dir_okay=False, help="Image file to analyze."),
    backend: Optional[str] = typer.Option(
        None,
        "--backend",
        help="Override enrichment.backend ('blip' or 'openai').",
    ),
    device: Optional[str] = typer.Option(
        None,
        "--device",
        help="Override the model device for the blip backend (auto, cpu, cuda, mps).",
    ),
) -> None:
    """Print tags, title, description and alt text for IMAGE as JSON.

    Provider errors are absorbed and the generic client fallback is printed.
    """

    settings = load_settings()
    if backend:
        settings.enrichment.backend = backend
    if device:
        settings.models.embedding.device = device
        settings.models.caption.device = device

    client = build_enrichment_client(settings)
    result = client.analyze_or_fallback(image.read_bytes())
    LOGGER.info("describe_complete", extra={"image": str(image), "backend": client.name})
    typer.echo(json.dumps(result.to_payload(), ensure_ascii=False, indent=2))


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()


__all__ = ["cli", "main"]
