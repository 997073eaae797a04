"""Model catalog: the list of served models and their aliases."""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)

DEFAULT_MODELS = [
    "gemini-2.0-flash",
    "gemini-2.0-flash-001",
    "gemini-2.0-flash-lite",
    "gemini-2.0-flash-lite-001",
    "gemini-2.5-flash",
    "gemini-2.5-flash-image",
    "gemini-2.5-flash-image-preview",
    "gemini-2.5-flash-lite-preview-09-2025",
    "gemini-2.5-flash-preview-09-2025",
    "gemini-2.5-pro",
    "gemini-3-flash-preview",
    "gemini-3-pro-image-preview",
    "gemini-3-pro-preview",
]

THINKING_BUDGETS = {"high": 8192, "low": 1024}


@dataclass(frozen=True)
class ModelAlias:
    target: str
    thinking_level: Optional[str] = None

    @property
    def thinking_budget(self) -> Optional[int]:
        if not self.thinking_level:
            return None
        return THINKING_BUDGETS.get(self.thinking_level, THINKING_BUDGETS["low"])


DEFAULT_ALIASES = {
    "gemini-3-pro-preview-high": ModelAlias("gemini-3-pro-preview", "high"),
    "gemini-3-pro-preview-low": ModelAlias("gemini-3-pro-preview", "low"),
}


def parse_models_json(data: Any) -> Optional[List[str]]:
    """
    Accept either a plain list of ids or an object with
    ``vertex_express_models`` (preferred) or ``vertex_models``.
    """
    if isinstance(data, dict):
        for key in ("vertex_express_models", "vertex_models"):
            models = data.get(key)
            if isinstance(models, list) and models:
                return [str(m) for m in models]
        return None
    if isinstance(data, list) and data:
        return [str(m) for m in data]
    return None


class ModelCatalog:
    def __init__(
        self,
        models: Optional[List[str]] = None,
        aliases: Optional[Dict[str, ModelAlias]] = None,
    ):
        self.models = list(models) if models else list(DEFAULT_MODELS)
        self.aliases = dict(DEFAULT_ALIASES if aliases is None else aliases)
        self.created = int(time.time())

    @classmethod
    def load(cls, models_file: str = "", config_url: str = "", timeout: float = 30.0):
        """Build a catalog from a local file, then a URL, then the defaults."""
        if models_file:
            path = Path(models_file)
            if path.exists():
                try:
                    models = parse_models_json(json.loads(path.read_text()))
                except (OSError, json.JSONDecodeError) as e:
                    logger.error(f"Error reading {path}: {str(e)}")
                    models = None
                if models:
                    logger.info(f"Loaded models from {path}")
                    return cls(models)

        if config_url:
            try:
                response = httpx.get(config_url, timeout=timeout)
                models = parse_models_json(response.json())
            except (httpx.HTTPError, json.JSONDecodeError) as e:
                logger.error(f"Error fetching models from {config_url}: {str(e)}")
                models = None
            if models:
                logger.info(f"Loaded models from {config_url}")
                return cls(models)

        logger.info("Using default models list")
        return cls()

    def resolve(self, model_id: str) -> Tuple[str, Optional[ModelAlias]]:
        """Map a logical model name to (physical model, alias or None)."""
        alias = self.aliases.get(model_id)
        if alias is not None:
            return alias.target, alias
        return model_id, None

    def ids(self) -> List[str]:
        return self.models + list(self.aliases)

    def openai_listing(self) -> Dict[str, Any]:
        data = [
            {
                "id": model_id,
                "object": "model",
                "created": self.created,
                "owned_by": "google",
                "root": model_id,
            }
            for model_id in self.models
        ]
        data.extend(
            {
                "id": alias_id,
                "object": "model",
                "created": self.created,
                "owned_by": "google",
                "root": alias.target,
            }
            for alias_id, alias in self.aliases.items()
        )
        return {"object": "list", "data": data}

    def gemini_listing(self) -> Dict[str, Any]:
        return {
            "models": [
                {"name": f"models/{model_id}", "displayName": model_id}
                for model_id in self.ids()
            ]
        }
