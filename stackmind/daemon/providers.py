"""
External capabilities consumed by StackMind.

- TextGenerator: reformat / title / tags / summary generation. The
  default implementation talks to a local Ollama server.
- EmbeddingProvider: text -> fixed-length vector. The default
  implementation wraps a sentence-transformers model, loaded lazily on
  first use with one shared in-flight initialization.

Every failure leaves these classes as CapabilityUnavailable so callers
have a single thing to fall back on.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from typing import Any, List, Optional, Protocol, runtime_checkable

import httpx
from loguru import logger

from .config import EmbeddingConfig, LLMConfig
from .errors import CapabilityUnavailable, CircuitBreaker
from .models import normalize_tags

MAX_TAGS = 5
MAX_TAG_LENGTH = 40
MAX_TITLE_LENGTH = 120

FORMAT_PROMPT = (
    "Reformat the following text captured from a web page as clean Markdown. "
    "Keep code exactly as written and wrap it in fenced code blocks. "
    "Do not add commentary. Output only the reformatted text.\n\n{text}"
)
TITLE_PROMPT = (
    "Page title: {page_title}\n\n"
    "Write a short, specific title (at most 10 words) for this snippet. "
    "Output only the title.\n\n{text}"
)
TAGS_PROMPT = (
    "Title: {title}\n\n"
    "Suggest 3 to 5 short lowercase tags (technologies, languages, concepts) "
    "for this snippet. Output only the tags, comma-separated.\n\n{text}"
)
SUMMARY_PROMPT = (
    "Summarize the key point of this snippet in 2-3 sentences of Markdown. "
    "Output only the summary.\n\n{text}"
)

_LIST_PREFIX = re.compile(r"^\s*(?:[-*•#]+|\d+[.)])\s*")


@runtime_checkable
class TextGenerator(Protocol):
    """Generation capability used by enrichment steps."""

    async def format_text(self, text: str) -> str: ...

    async def generate_title(self, page_title: str, text: str) -> str: ...

    async def generate_tags(self, title: str, text: str) -> List[str]: ...

    async def summarize(self, text: str) -> str: ...


def parse_tags(output: str) -> List[str]:
    """Pull a tag list out of free-form model output."""
    candidates = []
    for chunk in re.split(r"[,\n]", output or ""):
        chunk = _LIST_PREFIX.sub("", chunk).strip().strip("\"'`").strip()
        if chunk.lower().startswith("tags:"):
            chunk = chunk[5:].strip()
        if chunk and len(chunk) <= MAX_TAG_LENGTH:
            candidates.append(chunk)
    return normalize_tags(candidates)[:MAX_TAGS]


def clean_title(output: str) -> str:
    lines = [line.strip() for line in (output or "").splitlines() if line.strip()]
    if not lines:
        return ""
    title = lines[0]
    if title.lower().startswith("title:"):
        title = title[6:].strip()
    title = title.strip("#*\"' ").strip()
    return title[:MAX_TITLE_LENGTH]


class OllamaGenerator:
    """TextGenerator backed by the Ollama /api/generate endpoint."""

    def __init__(self, config: LLMConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client
        self._owns_client = client is None
        self.breaker = CircuitBreaker(
            "llm",
            failure_threshold=config.failure_threshold,
            recovery_timeout=config.recovery_timeout_s,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.request_timeout_s,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, prompt: str) -> str:
        payload = {
            "model": self.config.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": self.config.temperature,
                "num_predict": self.config.max_tokens,
            },
        }
        try:
            response = await self._get_client().post("/api/generate", json=payload)
            response.raise_for_status()
            body: Any = response.json()
        except httpx.HTTPError as e:
            raise CapabilityUnavailable(f"LLM request failed: {e}") from e
        except ValueError as e:
            raise CapabilityUnavailable(f"LLM returned invalid JSON: {e}") from e

        text = body.get("response") if isinstance(body, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise CapabilityUnavailable("LLM returned empty output")
        return text.strip()

    async def _generate(self, prompt: str) -> str:
        return await self.breaker.call(self._request, prompt)

    async def format_text(self, text: str) -> str:
        return await self._generate(FORMAT_PROMPT.format(text=text))

    async def generate_title(self, page_title: str, text: str) -> str:
        output = await self._generate(
            TITLE_PROMPT.format(page_title=page_title or "(none)", text=text[:500])
        )
        title = clean_title(output)
        if not title:
            raise CapabilityUnavailable("LLM returned no usable title")
        return title

    async def generate_tags(self, title: str, text: str) -> List[str]:
        output = await self._generate(
            TAGS_PROMPT.format(title=title or "(none)", text=text[:500])
        )
        tags = parse_tags(output)
        if not tags:
            raise CapabilityUnavailable("LLM returned no usable tags")
        return tags

    async def summarize(self, text: str) -> str:
        return await self._generate(SUMMARY_PROMPT.format(text=text))


class EmbeddingProvider(ABC):
    """
    Lazily initialized embedding capability.

    The first embed() call pays the model start-up cost. Concurrent first
    callers all await the same in-flight initialization; if it fails the
    next call starts a fresh attempt.
    """

    def __init__(self, max_chars: int = 1000):
        self.max_chars = max_chars
        self._ready = False
        self._init_task: Optional[asyncio.Task] = None
        self._dimension: Optional[int] = None
        self.load_count = 0

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def is_initializing(self) -> bool:
        return self._init_task is not None and not self._init_task.done()

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    async def initialize(self) -> None:
        if self._ready:
            return
        if self._init_task is None:
            self.load_count += 1
            self._init_task = asyncio.ensure_future(self._load())
        task = self._init_task
        try:
            # Shielded so one cancelled caller doesn't abort the shared load
            await asyncio.shield(task)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._init_task is task:
                self._init_task = None
            raise CapabilityUnavailable(f"embedding model unavailable: {e}") from e
        self._ready = True

    async def embed(self, text: str) -> List[float]:
        await self.initialize()
        try:
            vector = await self._encode((text or "")[:self.max_chars])
        except CapabilityUnavailable:
            raise
        except Exception as e:
            raise CapabilityUnavailable(f"embedding failed: {e}") from e
        vector = [float(x) for x in vector]
        if self._dimension is None:
            self._dimension = len(vector)
        return vector

    @abstractmethod
    async def _load(self) -> None:
        """Bring the model up; called once per successful initialization."""

    @abstractmethod
    async def _encode(self, text: str) -> List[float]:
        """Vector for already-truncated text."""


class SentenceTransformerEmbedder(EmbeddingProvider):
    """Local sentence-transformers model, run off the event loop."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", max_chars: int = 1000):
        super().__init__(max_chars=max_chars)
        self.model_name = model_name
        self._model = None

    async def _load(self) -> None:
        logger.info(f"Loading embedding model {self.model_name}...")
        loop = asyncio.get_running_loop()
        from sentence_transformers import SentenceTransformer

        self._model = await loop.run_in_executor(None, SentenceTransformer, self.model_name)
        self._dimension = self._model.get_sentence_embedding_dimension()
        logger.info(f"Embedding model ready ({self._dimension} dims)")

    async def _encode(self, text: str) -> List[float]:
        loop = asyncio.get_running_loop()
        embedding = await loop.run_in_executor(
            None, lambda: self._model.encode(text, convert_to_numpy=True)
        )
        return embedding.tolist()


def build_generator(config: LLMConfig) -> TextGenerator:
    if config.provider != "ollama":
        raise ValueError(f"Unsupported LLM provider: {config.provider}")
    return OllamaGenerator(config)


def build_embedder(config: EmbeddingConfig) -> EmbeddingProvider:
    return SentenceTransformerEmbedder(config.model, max_chars=config.max_chars)
