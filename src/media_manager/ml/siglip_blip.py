"""SigLIP + BLIP image analysis used by the local enrichment backend.

SigLIP scores the configured tag labels zero-shot; BLIP writes a short
caption that becomes the title, description and alt text.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import torch
from PIL import Image
from torch import Tensor

from media_manager.config import Settings, load_settings
from media_manager.ml.models import get_blip_caption_model, get_siglip_embedding_model
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "siglip_blip"})


@dataclass
class ImageAnalysis:
    """Raw model output for a single image."""

    label_scores: dict[str, float]
    detected_labels: list[str]
    caption: str
    confidence: float


class SiglipBlipAnalyzer:
    """Zero-shot tagging plus captioning for one image at a time.

    Models are shared process-wide through :mod:`media_manager.ml.models`, so
    constructing several analyzers is cheap after the first load.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or load_settings()

        self._siglip_processor, self._siglip_model, self._siglip_device = get_siglip_embedding_model(
            settings=self._settings
        )
        self._blip_processor, self._blip_model, self._blip_device = get_blip_caption_model(settings=self._settings)

        LOGGER.info(
            "siglip_blip_analyzer_init",
            extra={"siglip_device": str(self._siglip_device), "blip_device": str(self._blip_device)},
        )

    def analyze(self, image: Image.Image, candidate_labels: Sequence[str], score_threshold: float) -> ImageAnalysis:
        """Score ``candidate_labels`` and caption ``image``.

        Labels scoring at least ``score_threshold`` are returned in
        ``detected_labels``, best first.
        """

        rgb = image.convert("RGB")
        scores = self._classify_with_siglip(image=rgb, labels=list(candidate_labels))
        caption = self._generate_caption_with_blip(image=rgb)

        ranked = sorted(scores.items(), key=lambda item: item[1], reverse=True)
        detected = [label for label, score in ranked if score >= score_threshold]
        top_scores = [score for _, score in ranked[:3]]
        confidence = float(np.mean(top_scores)) if top_scores else 0.0

        return ImageAnalysis(label_scores=scores, detected_labels=detected, caption=caption, confidence=confidence)

    def _classify_with_siglip(self, image: Image.Image, labels: list[str]) -> dict[str, float]:
        if not labels:
            return {}

        image_inputs = self._siglip_processor(images=image, return_tensors="pt").to(self._siglip_device)
        text_inputs = self._siglip_processor(text=labels, padding="max_length", return_tensors="pt").to(
            self._siglip_device
        )

        with torch.no_grad():
            image_emb: Tensor = self._siglip_model.get_image_features(**image_inputs)
            text_emb: Tensor = self._siglip_model.get_text_features(**text_inputs)

        image_emb = image_emb / image_emb.norm(dim=-1, keepdim=True)
        text_emb = text_emb / text_emb.norm(dim=-1, keepdim=True)

        logits = image_emb @ text_emb.T  # (1, num_labels)
        probs = torch.softmax(logits[0], dim=-1)
        probs_cpu = probs.detach().cpu().numpy().tolist()

        return {label: float(prob) for label, prob in zip(labels, probs_cpu, strict=True)}

    def _generate_caption_with_blip(self, image: Image.Image) -> str:
        inputs = self._blip_processor(images=image, return_tensors="pt").to(self._blip_device)

        with torch.no_grad():
            generated_ids = self._blip_model.generate(
                **inputs, max_new_tokens=self._settings.models.caption.max_new_tokens
            )

        return str(self._blip_processor.decode(generated_ids[0], skip_special_tokens=True)).strip()


__all__ = ["ImageAnalysis", "SiglipBlipAnalyzer"]
