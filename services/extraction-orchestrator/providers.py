"""Build the configured extractor chain from settings."""

import logging
from collections.abc import Sequence

from config import settings
from extractors import Extractor
from inference_client import InferenceServiceExtractor
from ollama_extractor import OllamaExtractor
from openai_extractor import OpenAIFileExtractor
from schema_spec import SchemaRegistry

logger = logging.getLogger(__name__)

KNOWN_EXTRACTORS = ("openai", "ollama", "inference")


def build_extractors(schemas: SchemaRegistry, names: Sequence[str] | None = None) -> list[Extractor]:
    """Instantiate extractors in chain order, skipping unconfigured providers."""
    chain: list[Extractor] = []
    for name in names if names is not None else settings.EXTRACTORS:
        if name == "openai":
            if not settings.OPENAI_API_KEY:
                logger.warning("Extractor openai skipped: OPENAI_API_KEY is empty")
                continue
            chain.append(OpenAIFileExtractor(schemas))
        elif name == "ollama":
            if not settings.OLLAMA_URL:
                logger.warning("Extractor ollama skipped: OLLAMA_URL is empty")
                continue
            chain.append(OllamaExtractor(schemas))
        elif name == "inference":
            if not settings.INFERENCE_SERVICE_URL:
                logger.warning("Extractor inference skipped: INFERENCE_SERVICE_URL is empty")
                continue
            chain.append(InferenceServiceExtractor(schemas))
        else:
            raise ValueError(f"Unknown extractor {name!r}; expected one of {', '.join(KNOWN_EXTRACTORS)}")

    logger.info("Extractor chain: %s", " -> ".join(e.name for e in chain) or "(empty)")
    return chain
