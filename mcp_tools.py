"""Built-in methods served by the MCP worker.

Plain functions taking the request params and returning a JSON-friendly
value; raising fails the call with an internal-error response. Text
generation and embeddings go through the OpenAI client pointed at an
OpenAI-compatible endpoint (Ollama's /v1 API by default).
"""

import math
import os
import sys
import time
from datetime import datetime, timezone

import openai

from mcp_worker import MethodRegistry

DEFAULT_BASE_URL = "http://localhost:11434/v1"
DEFAULT_LLM_MODEL = "phi3:mini"
DEFAULT_EMBED_MODEL = "nomic-embed-text:v1.5"
NO_CONTEXT = "No relevant context found."

DEFAULT_DOCUMENTS = [
    "The Model Context Protocol (MCP) is a JSON-RPC-based protocol that enables editors and IDEs "
    "to communicate with local servers for AI, data access, and tool integration.",
    "MCP uses STDIO as its default transport layer, where each JSON-RPC message is sent as a "
    "single newline-terminated line over stdin/stdout.",
    'In MCP, method calls require an "id" field and expect a response, while notifications '
    'omit "id" and do not require a reply.',
    "Ollama is a local LLM runner that supports models like Llama, Mistral, Gemma, and Qwen. "
    "It exposes an OpenAI-compatible API under /v1 for chat completions and embeddings.",
    "RAG (Retrieval-Augmented Generation) combines semantic search with LLM generation: first "
    "retrieve relevant context, then generate an answer using that context.",
    "Cosine similarity measures the angle between two embedding vectors. Values close to 1.0 "
    "indicate high semantic similarity.",
    'The "all-minilm" model is a lightweight, reliable embedding model in Ollama, ideal for '
    "local RAG applications.",
    "A robust MCP server should handle both synchronous and asynchronous methods, validate "
    "parameters, and manage errors gracefully without crashing.",
    "Embeddings should be precomputed and cached to avoid repeated calls to the embedding "
    "service during initialization or query time.",
]


def _log(message: str) -> None:
    print(f"[mcp-worker] {message}", file=sys.stderr, flush=True)


def _require_mapping(params) -> dict:
    if not isinstance(params, dict):
        raise ValueError("params must be an object")
    return params


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Simple methods
# ---------------------------------------------------------------------------

def ping(params) -> str:
    return "pong"


def math_add(params):
    params = _require_mapping(params)
    a, b = params.get("a"), params.get("b")
    if not _is_number(a) or not _is_number(b):
        raise ValueError('Both "a" and "b" must be numbers')
    return a + b


def string_reverse(params) -> str:
    params = _require_mapping(params)
    return str(params.get("text", ""))[::-1]


def echo_upper(params) -> str:
    params = _require_mapping(params)
    return str(params.get("text", "")).upper()


def time_now(params) -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Model-backed methods
# ---------------------------------------------------------------------------

def _client() -> openai.OpenAI:
    return openai.OpenAI(
        base_url=os.environ.get("MCP_LLM_BASE_URL", DEFAULT_BASE_URL),
        api_key=os.environ.get("MCP_LLM_API_KEY", "ollama"),
    )


def generate(prompt: str, model: str = "", temperature: float | None = None,
             max_tokens: int | None = None) -> dict:
    """Single-turn completion. Returns text, model and token counts."""
    model = model or os.environ.get("MCP_LLM_MODEL", DEFAULT_LLM_MODEL)
    kwargs = {
        "model": model,
        "messages": [{"role": "user", "content": prompt}],
    }
    if temperature is not None:
        kwargs["temperature"] = temperature
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens

    t0 = time.time()
    resp = _client().chat.completions.create(**kwargs)
    text = resp.choices[0].message.content or ""
    usage = resp.usage
    _log(f"completion from {resp.model} in {time.time() - t0:.1f}s")
    return {
        "text": text.strip(),
        "model": resp.model,
        "prompt_tokens": usage.prompt_tokens if usage else 0,
        "completion_tokens": usage.completion_tokens if usage else 0,
    }


def embed(text: str) -> list[float]:
    model = os.environ.get("MCP_EMBED_MODEL", DEFAULT_EMBED_MODEL)
    resp = _client().embeddings.create(model=model, input=text)
    if not resp.data or not resp.data[0].embedding:
        raise ValueError(f"Empty embedding returned for: {text[:60]!r}")
    return list(resp.data[0].embedding)


def llm_complete(params) -> dict:
    params = _require_mapping(params)
    prompt = params.get("prompt")
    if not prompt or not isinstance(prompt, str):
        raise ValueError('Missing or invalid "prompt"')
    result = generate(
        prompt,
        model=params.get("model", ""),
        temperature=params.get("temperature"),
        max_tokens=params.get("max_tokens"),
    )
    return {
        "response": result["text"],
        "model": result["model"],
        "prompt_tokens": result["prompt_tokens"],
        "completion_tokens": result["completion_tokens"],
    }


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

def cosine_similarity(a, b) -> float:
    """Cosine of the angle between *a* and *b*; -1.0 when undefined."""
    if not a or not b or len(a) != len(b):
        return -1.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return -1.0
    return dot / (norm_a * norm_b)


class KnowledgeBase:
    """In-memory list of (text, embedding) pairs searched by cosine similarity."""

    def __init__(self):
        self._entries: list[tuple[str, list[float]]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, text: str, embedding: list[float]) -> None:
        self._entries.append((text, embedding))

    def load(self, documents: list[str], embed_fn=embed) -> None:
        _log(f"embedding {len(documents)} documents...")
        for text in documents:
            self.add(text, embed_fn(text))
        _log(f"knowledge base ready with {len(self)} documents")

    def search(self, embedding: list[float]) -> tuple[str, float]:
        """Best-matching text and its score; ("", -1.0) when empty."""
        best_text, best_score = "", -1.0
        for text, candidate in self._entries:
            score = cosine_similarity(embedding, candidate)
            if score > best_score:
                best_text, best_score = text, score
        return best_text, best_score


def make_rag_query(kb: KnowledgeBase, embed_fn=embed, generate_fn=generate):
    """Build the rag.query handler bound to *kb*."""
    def rag_query(params) -> dict:
        params = _require_mapping(params)
        query = params.get("query")
        if not query or not isinstance(query, str):
            raise ValueError("query must be a non-empty string")

        best_text, score = kb.search(embed_fn(query))
        min_score = float(os.environ.get("MCP_RAG_MIN_SCORE", "0.2"))
        context = best_text if score > min_score else NO_CONTEXT
        prompt = f"Context: {context}\n\nQuestion: {query}\n\nAnswer:"
        result = generate_fn(prompt)
        return {
            "answer": result["text"],
            "context": best_text,
            "similarity": round(score, 3),
        }
    return rag_query


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def build_registry() -> MethodRegistry:
    """Build the worker's method registry.

    With MCP_RAG_ENABLED=1 the knowledge base is embedded first, and
    rag.query is only registered if that succeeds.
    """
    registry = MethodRegistry()
    registry.register("ping", ping)
    registry.register("math.add", math_add)
    registry.register("string.reverse", string_reverse)
    registry.register("echo.upper", echo_upper)
    registry.register("time.now", time_now)
    registry.register("llm.complete", llm_complete)
    # Older callers still use the Ollama-specific name.
    registry.register("ollama.complete", llm_complete)

    if os.environ.get("MCP_RAG_ENABLED", "0") == "1":
        kb = KnowledgeBase()
        try:
            kb.load(DEFAULT_DOCUMENTS)
        except (openai.OpenAIError, ValueError) as e:
            _log(f"knowledge base unavailable, rag.query disabled: {type(e).__name__}: {str(e)[:200]}")
        else:
            registry.register("rag.query", make_rag_query(kb))

    return registry
