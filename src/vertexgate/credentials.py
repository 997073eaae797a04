"""Upstream credential pool for the vertexgate proxy."""

import json
import logging
import random
import re
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

import httpx

from .errors import ConfigurationError, CredentialResolutionError, UpstreamError
from .utils import mask_key, vertex_host

logger = logging.getLogger(__name__)

# Tried against error.message when the probe answer is a JSON error document.
DEFAULT_MESSAGE_PATTERNS = [
    r'projects/([^/\s"]+)',
    r'Project:\s*([^\s"]+)',
    r'project[_\s]+id[:\s]+([^\s"]+)',
]

# Tried against the raw probe body afterwards.
DEFAULT_BODY_PATTERNS = [
    r'projects/([^/\s"]+)',
    r'"project":\s*"([^"]+)"',
]

PROBE_MODEL = "gemini-1.0-pro"


@dataclass(frozen=True)
class Credential:
    key: str
    index: int

    @property
    def masked(self) -> str:
        return mask_key(self.key)


@dataclass(frozen=True)
class AuthInfo:
    """Everything needed to address one upstream call."""

    credential: Credential
    project_id: str
    location: str

    @property
    def api_key(self) -> str:
        return self.credential.key

    @property
    def index(self) -> int:
        return self.credential.index


class ProjectProbe:
    """
    Discovers the project behind an API key from the error text of a failing call.

    The probe addresses a placeholder project; the backend's error message names
    the project the key really belongs to. The message format is undocumented, so
    the extraction patterns are configurable and tried in order.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        location: str = "global",
        message_patterns: Optional[Sequence[str]] = None,
        body_patterns: Optional[Sequence[str]] = None,
    ):
        self.http_client = http_client
        self.location = location
        self.message_patterns = [
            re.compile(p) for p in (message_patterns or DEFAULT_MESSAGE_PATTERNS)
        ]
        self.body_patterns = [
            re.compile(p) for p in (body_patterns or DEFAULT_BODY_PATTERNS)
        ]

    def probe_url(self, api_key: str) -> str:
        return (
            f"https://{vertex_host(self.location)}/v1beta1/projects/unknown"
            f"/locations/{self.location}/publishers/google/models/{PROBE_MODEL}"
            f":generateContent?key={api_key}"
        )

    def extract(self, body: str) -> Optional[str]:
        """Return the first project id any pattern finds in a probe answer."""
        message = None
        try:
            parsed = json.loads(body)
            if isinstance(parsed, dict) and isinstance(parsed.get("error"), dict):
                message = parsed["error"].get("message")
        except json.JSONDecodeError:
            pass

        if isinstance(message, str):
            for pattern in self.message_patterns:
                match = pattern.search(message)
                if match:
                    return match.group(1)

        for pattern in self.body_patterns:
            match = pattern.search(body)
            if match:
                return match.group(1)
        return None

    async def discover(self, api_key: str) -> str:
        try:
            response = await self.http_client.post(
                self.probe_url(api_key),
                content=b'{"contents":[]}',
                headers={"Content-Type": "application/json"},
            )
        except httpx.RequestError as e:
            raise UpstreamError(
                502, message=f"Project probe failed for key {mask_key(api_key)}: {e}"
            ) from e

        body = response.text
        project_id = self.extract(body)
        if not project_id:
            raise CredentialResolutionError(
                f"failed to discover project ID from response: {body}", body=body
            )
        logger.info(f"Discovered project ID {project_id} for key {mask_key(api_key)}")
        return project_id


class CredentialPool:
    """
    The ordered set of upstream API keys shared by every request.

    Selection is either strict round-robin over a shared cursor or a uniform
    random index. Project ids are discovered lazily and cached per key; the
    cache holds at most one entry per configured key and is never evicted.
    """

    def __init__(
        self,
        keys: Sequence[str],
        probe: ProjectProbe,
        round_robin: bool = False,
        project_id: str = "",
        rng: Optional[random.Random] = None,
    ):
        if not keys:
            raise ConfigurationError("no Express API keys configured")
        self._credentials: Tuple[Credential, ...] = tuple(
            Credential(key=key, index=i) for i, key in enumerate(keys)
        )
        self.probe = probe
        self.round_robin = round_robin
        self._rng = rng or random.Random()

        self._cursor = 0
        self._cursor_lock = threading.Lock()

        # Lookups are lock-free dict reads; inserts are serialized.
        self._project_cache: Dict[str, str] = {}
        self._cache_lock = threading.Lock()

        if project_id:
            for credential in self._credentials:
                self._project_cache[credential.key] = project_id

    @property
    def location(self) -> str:
        return self.probe.location

    @property
    def credentials(self) -> Tuple[Credential, ...]:
        return self._credentials

    def count(self) -> int:
        return len(self._credentials)

    def __len__(self) -> int:
        return self.count()

    def pick(self) -> Credential:
        """Choose a credential according to the configured policy."""
        if self.round_robin:
            with self._cursor_lock:
                index = self._cursor
                self._cursor = (self._cursor + 1) % len(self._credentials)
        else:
            index = self._rng.randrange(len(self._credentials))
        return self._credentials[index]

    def pick_at(self, index: int) -> Credential:
        """Forced selection; an out-of-range index falls back to the first key."""
        if index < 0 or index >= len(self._credentials):
            index = 0
        return self._credentials[index]

    def next_index(self, index: int) -> int:
        """Deterministic successor used when failing over to another key."""
        if len(self._credentials) <= 1:
            return index
        return (index + 1) % len(self._credentials)

    def cached_project(self, credential: Credential) -> Optional[str]:
        return self._project_cache.get(credential.key)

    async def resolve(self, credential: Credential) -> str:
        """
        Return the project id for a credential, probing on the first use.

        A failed probe is not cached and not retried here.
        """
        cached = self._project_cache.get(credential.key)
        if cached is not None:
            return cached

        project_id = await self.probe.discover(credential.key)
        with self._cache_lock:
            # First successful discovery wins; an entry is never replaced.
            project_id = self._project_cache.setdefault(credential.key, project_id)
        return project_id

    async def authorize(self, credential: Credential) -> AuthInfo:
        project_id = await self.resolve(credential)
        return AuthInfo(credential=credential, project_id=project_id, location=self.location)
