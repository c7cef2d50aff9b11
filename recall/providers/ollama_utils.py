"""
Shared Ollama utilities: base URL resolution, health check, model listing
and auto-pull.
"""

import json
import logging
import os
import sys
import threading
import time

import requests

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://127.0.0.1:11434"

# Health results are trusted for this long
HEALTH_CACHE_SECONDS = 10.0


def ollama_base_url(base_url: str | None = None) -> str:
    """Resolve the Ollama base URL: explicit value, then OLLAMA_HOST, then default."""
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_BASE_URL
    if "://" not in url:
        url = f"http://{url}"
    return url.rstrip("/")


def ollama_is_up(base_url: str, timeout: float = 5.0) -> bool:
    """GET the base URL; Ollama answers 200 when it is running."""
    try:
        resp = requests.get(f"{base_url}/", timeout=timeout)
    except requests.RequestException as e:
        logger.debug("Ollama health check failed at %s: %s", base_url, e)
        return False
    return resp.ok


class HealthCache:
    """Caches the result of a health check for a short interval."""

    def __init__(self, base_url: str, ttl: float = HEALTH_CACHE_SECONDS):
        self.base_url = base_url
        self.ttl = ttl
        self._checked_at = 0.0
        self._online: bool | None = None
        self._lock = threading.Lock()

    def check(self) -> bool:
        with self._lock:
            now = time.monotonic()
            if self._online is not None and now - self._checked_at <= self.ttl:
                return self._online
            self._online = ollama_is_up(self.base_url)
            self._checked_at = now
            if not self._online:
                logger.info("Ollama unreachable at %s", self.base_url)
            return self._online


def ollama_list_models(base_url: str) -> list[str]:
    """Names of the locally installed models.

    Raises RuntimeError if Ollama is unreachable.
    """
    try:
        resp = requests.get(f"{base_url}/api/tags", timeout=5)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise RuntimeError(
            f"Cannot reach Ollama at {base_url}. "
            "Is Ollama running? Start it with: ollama serve"
        ) from e
    return [m["name"] for m in resp.json().get("models", []) if m.get("name")]


def ollama_ensure_model(base_url: str, model: str) -> None:
    """Check if an Ollama model is available locally; pull it if not.

    Streams pull progress to stderr so the user sees download status.
    Raises RuntimeError if the pull fails or Ollama is unreachable.
    """
    # Ollama strips :latest when listing
    bare = model.split(":")[0] if ":" in model else model

    installed = set(ollama_list_models(base_url))
    if model in installed or f"{model}:latest" in installed:
        return
    if bare in installed or f"{bare}:latest" in installed:
        return

    logger.info("Pulling Ollama model %s (first use)...", model)
    print(f"Pulling Ollama model '{model}'...", file=sys.stderr)

    try:
        resp = requests.post(
            f"{base_url}/api/pull",
            json={"name": model, "stream": True},
            stream=True,
            timeout=600,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        raise RuntimeError(f"Failed to pull Ollama model '{model}': {e}") from e

    last_status = ""
    for line in resp.iter_lines():
        if not line:
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue

        status = data.get("status", "")
        total = data.get("total", 0)
        completed = data.get("completed", 0)

        if total and completed:
            pct = int(completed / total * 100)
            msg = f"\r  {status}: {pct}%"
        elif status != last_status:
            msg = f"\n  {status}"
        else:
            continue

        print(msg, end="", file=sys.stderr, flush=True)
        last_status = status

        if data.get("error"):
            print("", file=sys.stderr)
            raise RuntimeError(
                f"Ollama pull failed for '{model}': {data['error']}"
            )

    print(f"\n  Model '{model}' ready.", file=sys.stderr)
