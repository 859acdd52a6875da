import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import requests

from processing.prompts import SUMMARY_SYSTEM_PROMPT, build_user_prompt

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 100_000
STUB_MARKER = "[Stub]"

_JSON_BLOCK_RE = re.compile(r"```(?:json)?\s*\n(.*?)\n```", re.DOTALL)
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class SummarizationFailed(Exception):
    pass


@dataclass
class SummaryOptions:
    max_length: int = 500
    include_key_points: bool = True
    include_action_items: bool = True
    include_topics: bool = True


@dataclass
class SummaryResult:
    content: str
    key_points: list[str] = field(default_factory=list)
    action_items: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)


class SummarizationBackend(ABC):
    name = "base"

    @abstractmethod
    def complete(self, system_prompt: str, user_prompt: str) -> str:
        """Return the raw model answer for a prompt."""


class AnthropicBackend(SummarizationBackend):
    name = "anthropic"

    def __init__(self, api_key: str, model: str):
        import anthropic

        self.model = model
        self._client = anthropic.Anthropic(api_key=api_key)

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        message = self._client.messages.create(
            model=self.model,
            max_tokens=4096,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        return message.content[0].text


class OllamaBackend(SummarizationBackend):
    name = "ollama"

    def __init__(self, url: str = "http://localhost:11434", model: str = "llama3",
                 timeout: float = 300):
        self.url = url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def complete(self, system_prompt: str, user_prompt: str) -> str:
        response = requests.post(
            f"{self.url}/api/generate",
            json={
                "model": self.model,
                "system": system_prompt,
                "prompt": user_prompt,
                "stream": False,
                "format": "json",
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()["response"]


def _as_str_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def parse_summary_response(text: str) -> dict:
    """Pull the JSON object out of a model answer.

    Answers that are not JSON are kept as the plain summary text.
    """
    candidate = text
    match = _JSON_BLOCK_RE.search(text) or _JSON_OBJECT_RE.search(text)
    if match:
        candidate = match.group(1) if match.groups() else match.group(0)
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, TypeError):
        return {"summary": text.strip()}
    if not isinstance(parsed, dict):
        return {"summary": text.strip()}
    return parsed


class Summarizer:
    """text -> {content, key_points, action_items, topics}.

    Without a backend it returns a labeled stub result. Backend errors are
    raised as SummarizationFailed; picking a fallback is the caller's job.
    """

    def __init__(self, backend: SummarizationBackend | None = None,
                 default_options: SummaryOptions | None = None):
        self.backend = backend
        self.default_options = default_options or SummaryOptions()

    @property
    def is_configured(self) -> bool:
        return self.backend is not None

    def summarize(self, transcript: str, options: SummaryOptions | None = None) -> SummaryResult:
        options = options or self.default_options
        if self.backend is None:
            logger.warning("No summarization backend configured - using stub response")
            return self._stub_result(options)
        if not transcript.strip():
            raise SummarizationFailed("Transcript is empty")

        try:
            if len(transcript) > MAX_TRANSCRIPT_CHARS:
                result = self._summarize_long(transcript, options)
            else:
                result = self._call_llm(transcript, options)
        except SummarizationFailed:
            raise
        except Exception as e:
            raise SummarizationFailed(f"Summary generation failed ({self.backend.name}): {e}") from e

        logger.info("Summary generated with %s (%d chars)", self.backend.name, len(result.content))
        return result

    def _summarize_long(self, transcript: str, options: SummaryOptions) -> SummaryResult:
        # Split into chunks and summarize each, then consolidate
        parts = [
            transcript[i : i + MAX_TRANSCRIPT_CHARS]
            for i in range(0, len(transcript), MAX_TRANSCRIPT_CHARS)
        ]
        partials = []
        for idx, part in enumerate(parts):
            logger.info("Summarizing part %d/%d...", idx + 1, len(parts))
            partials.append(self._call_llm(part, options))

        combined = "\n\n---\n\n".join(p.content for p in partials)
        final = self._call_llm(
            "The following are partial summaries of the same conversation. "
            "Consolidate them into one summary, removing redundancy.\n\n" + combined,
            options,
        )

        def merged(attr: str) -> list[str]:
            seen = dict.fromkeys(getattr(final, attr))
            for p in partials:
                seen.update(dict.fromkeys(getattr(p, attr)))
            return list(seen)

        return SummaryResult(
            content=final.content,
            key_points=merged("key_points"),
            action_items=merged("action_items"),
            topics=merged("topics"),
        )

    def _call_llm(self, transcript: str, options: SummaryOptions) -> SummaryResult:
        user_prompt = build_user_prompt(
            transcript,
            max_length=options.max_length,
            include_key_points=options.include_key_points,
            include_action_items=options.include_action_items,
            include_topics=options.include_topics,
        )
        raw = self.backend.complete(SUMMARY_SYSTEM_PROMPT, user_prompt)
        parsed = parse_summary_response(raw)
        content = str(parsed.get("summary") or raw).strip()
        return self._apply_options(
            SummaryResult(
                content=content,
                key_points=_as_str_list(parsed.get("keyPoints")),
                action_items=_as_str_list(parsed.get("actionItems")),
                topics=_as_str_list(parsed.get("topics")),
            ),
            options,
        )

    def _stub_result(self, options: SummaryOptions) -> SummaryResult:
        return self._apply_options(
            SummaryResult(
                content=f"{STUB_MARKER} Summary placeholder - configure a summarization "
                        "backend to enable real summaries",
                key_points=["Stub key point 1", "Stub key point 2"],
                action_items=["Stub action item 1"],
                topics=["Stub topic"],
            ),
            options,
        )

    @staticmethod
    def _apply_options(result: SummaryResult, options: SummaryOptions) -> SummaryResult:
        if options.max_length and len(result.content) > options.max_length:
            result.content = result.content[: options.max_length].rstrip()
        if not options.include_key_points:
            result.key_points = []
        if not options.include_action_items:
            result.action_items = []
        if not options.include_topics:
            result.topics = []
        return result


def build_summarizer(provider: str, anthropic_api_key: str = "", anthropic_model: str = "",
                     ollama_url: str = "", ollama_model: str = "",
                     max_length: int = 500) -> Summarizer:
    """Select the summarization backend once, from configuration."""
    provider = (provider or "stub").lower()
    backend: SummarizationBackend | None = None
    if provider == "anthropic":
        if anthropic_api_key:
            backend = AnthropicBackend(api_key=anthropic_api_key, model=anthropic_model)
        else:
            logger.warning("LLM provider 'anthropic' selected without ANTHROPIC_API_KEY; using stub")
    elif provider == "ollama":
        backend = OllamaBackend(url=ollama_url or "http://localhost:11434",
                                model=ollama_model or "llama3")
    elif provider != "stub":
        raise ValueError(f"Unknown LLM provider: {provider}")

    logger.info("Summarization backend: %s", backend.name if backend else "stub")
    return Summarizer(backend, SummaryOptions(max_length=max_length))
