"""Shared model loaders for the local enrichment backend (SigLIP tagging, BLIP captions).

Workers process many jobs per process, so each model is loaded once and
reused as long as the configured checkpoint and device do not change.
"""

from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Any

import torch
from torch import device as TorchDevice
from transformers import AutoModel, AutoModelForImageTextToText, AutoProcessor, PreTrainedModel

from media_manager.config import Settings, load_settings
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "models"})


def _mps_available() -> bool:
    return getattr(torch.backends, "mps", None) is not None and torch.backends.mps.is_available()


def _select_device(config_device: str = "auto") -> TorchDevice:
    """Resolve ``auto`` to CUDA, then MPS, then CPU; unavailable explicit devices become CPU."""

    requested = (config_device or "auto").lower()
    if requested == "auto":
        if torch.cuda.is_available():
            return torch.device("cuda")
        return torch.device("mps" if _mps_available() else "cpu")

    available = {"cuda": torch.cuda.is_available(), "mps": _mps_available(), "cpu": True}
    if available.get(requested):
        return torch.device(requested)

    LOGGER.warning("model_device_unavailable", extra={"requested": requested, "device": "cpu"})
    return torch.device("cpu")


@dataclass
class _LoadedModel:
    model_name: str
    device: TorchDevice
    processor: Any
    model: PreTrainedModel


_LOADED: dict[str, _LoadedModel] = {}
_LOAD_LOCK = Lock()


def _load(role: str, model_loader: Any, model_name: str, device_setting: str) -> tuple[Any, PreTrainedModel, TorchDevice]:
    device = _select_device(device_setting)
    with _LOAD_LOCK:
        loaded = _LOADED.get(role)
        if loaded is None or loaded.model_name != model_name or loaded.device != device:
            processor = AutoProcessor.from_pretrained(model_name, use_fast=True)
            model = model_loader.from_pretrained(model_name).to(device)
            model.eval()
            loaded = _LoadedModel(model_name=model_name, device=device, processor=processor, model=model)
            _LOADED[role] = loaded
            LOGGER.info("model_loaded", extra={"role": role, "model_name": model_name, "device": str(device)})
    return loaded.processor, loaded.model, loaded.device


def release_models() -> None:
    """Drop every cached model so the next call reloads from settings."""

    with _LOAD_LOCK:
        _LOADED.clear()


def get_siglip_embedding_model(settings: Settings | None = None) -> tuple[Any, PreTrainedModel, TorchDevice]:
    """Return the shared SigLIP processor, model and device used for tagging."""

    config = (settings or load_settings()).models.embedding
    return _load("siglip", AutoModel, config.resolved_model_name(), config.device)


def get_blip_caption_model(settings: Settings | None = None) -> tuple[Any, PreTrainedModel, TorchDevice]:
    """Return the shared BLIP processor, model and device used for captions."""

    config = (settings or load_settings()).models.caption
    return _load("blip", AutoModelForImageTextToText, config.resolved_model_name(), config.device)


__all__ = ["get_blip_caption_model", "get_siglip_embedding_model", "release_models"]
