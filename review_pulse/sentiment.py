# review_pulse/sentiment.py
from __future__ import annotations

import asyncio
import os
from typing import Any, List, Optional, Sequence

import numpy as np
from loguru import logger

from . import config
from .normalize import normalize_for_sentiment

# ---------------------------------------------------------------------------
# HF model handling
# ---------------------------------------------------------------------------

_MODEL: Optional[Any] = None

POSITIVE_LABELS = {"positive", "pos", "label_1"}
NEUTRAL_LABELS = {"neutral", "neu"}


def _ensure_hf_env() -> None:
    """Set HF cache variables unless the user already has."""
    for key, val in config.HF_ENV_VARS.items():
        if key not in os.environ:
            os.environ[key] = val
    if os.getenv("HF_HUB_ENABLE_HF_TRANSFER") == "1":
        try:
            import hf_transfer  # type: ignore  # noqa: F401
        except ImportError:
            os.environ.pop("HF_HUB_ENABLE_HF_TRANSFER", None)
            logger.warning("Disabled hf_transfer acceleration (package not installed).")


def load_sentiment_model(candidates: Optional[Sequence[str]] = None):
    """
    Load and cache a text-classification pipeline. First candidate that loads wins.
    """
    global _MODEL

    if _MODEL is not None:
        return _MODEL

    _ensure_hf_env()
    from transformers import pipeline  # heavy import, only on first load

    errors: List[str] = []
    for model_id in candidates or config.SENTIMENT_MODEL_CANDIDATES:
        try:
            logger.info("Loading sentiment model: {}", model_id)
            _MODEL = pipeline("text-classification", model=model_id, top_k=None, device=-1)
            logger.info("Loaded sentiment model: {}", model_id)
            return _MODEL
        except Exception as e:
            logger.warning("Failed to load sentiment model '{}': {}", model_id, e)
            errors.append(f"{model_id}: {e}")

    raise RuntimeError("No sentiment model could be loaded: " + "; ".join(errors))


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------

def positive_probability(label_scores: Sequence[dict]) -> float:
    """
    Collapse one pipeline output (list of {label, score}) into P(positive).

    Neutral mass, for three-way models, counts half.
    """
    pos = 0.0
    neutral = 0.0
    for item in label_scores:
        label = str(item.get("label", "")).lower()
        if label in POSITIVE_LABELS:
            pos += float(item.get("score", 0.0))
        elif label in NEUTRAL_LABELS:
            neutral += float(item.get("score", 0.0))
    return float(np.clip(pos + 0.5 * neutral, 0.0, 1.0))


def score_texts(model, texts: Sequence[str]) -> np.ndarray:
    """
    Score a batch of texts in [0, 1]. Blank texts are neutral and never reach the model.
    """
    if not texts:
        return np.zeros((0,), dtype="float32")

    cleaned = [normalize_for_sentiment(t) for t in texts]
    out = np.full((len(cleaned),), config.NEUTRAL_SCORE, dtype="float32")
    idx = [i for i, t in enumerate(cleaned) if t]
    if not idx:
        return out

    outputs = model([cleaned[i] for i in idx], truncation=True)
    for i, label_scores in zip(idx, outputs):
        if isinstance(label_scores, dict):
            label_scores = [label_scores]
        out[i] = positive_probability(label_scores)
    return out


def score_text(model, text: str) -> float:
    return float(score_texts(model, [text])[0])


class ModelScorer:
    """
    Async scorer over a blocking model: inference runs in a worker thread.
    """

    def __init__(self, model=None):
        self._model = model

    @property
    def model(self):
        if self._model is None:
            self._model = load_sentiment_model()
        return self._model

    async def __call__(self, text: str) -> float:
        model = self.model
        return await asyncio.to_thread(score_text, model, text)
