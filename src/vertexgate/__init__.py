"""An OpenAI-compatible gateway in front of Vertex AI Express."""

__version__ = "0.1.0"

from .config import load_config, load_settings, Settings
from .api import create_app
from .utils import ReasoningSplitter, split_reasoning

from .backends import RetryPolicy, UpstreamClient
from .credentials import CredentialPool, ProjectProbe
from .streaming import ChunkEmitter
from .errors import (
    ConfigurationError,
    CredentialResolutionError,
    GatewayError,
    TranslationError,
    UpstreamError,
)
