import logging
import os

from crewai import LLM
from openai import OpenAI

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_FALLBACK_MODEL = "gpt-4.1-mini"


def _ping_openai(model: str) -> bool:
    """Ping OpenAI model with a one-token request."""
    try:
        client = OpenAI()
        resp = client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": "ping"}],
            max_tokens=1,
            temperature=0,
        )
        return bool(resp and resp.choices)
    except Exception as e:
        raise RuntimeError(f"OpenAI ping test failed: {e}")


def llmrouter(model_name: str = None, temperature: float = 0.0) -> LLM:
    """
    Simple LLM router for the document extraction crew:
        - model from the argument, else EXTRACTION_MODEL, else gpt-4o-mini
        - if the ping fails, fall back to EXTRACTION_FALLBACK_MODEL (gpt-4.1-mini)
    Vision-capable models are required: the extractor reads passport photos.
    """
    model_name = model_name or os.getenv("EXTRACTION_MODEL", DEFAULT_MODEL)
    fallback_model_name = os.getenv("EXTRACTION_FALLBACK_MODEL", DEFAULT_FALLBACK_MODEL)
    try:
        _ping_openai(model_name)
        return LLM(model=model_name, temperature=temperature)
    except RuntimeError as exc:
        LOGGER.warning("Model %s unavailable (%s); using %s", model_name, exc, fallback_model_name)
        return LLM(model=fallback_model_name, temperature=temperature)
