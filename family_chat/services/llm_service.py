"""
Completion Stream Adapter for Ollama.

Wraps the Ollama HTTP chat API and exposes a single lazy sequence of
``StreamChunk`` values, each either reasoning text ("thinking") or answer
text ("content"). The bot responder only depends on ``stream_chat``; tests
substitute any object with the same method.

Example:
    >>> client = OllamaClient('http://localhost:11434', default_model='llama3.2')
    >>> for chunk in client.stream_chat([{'role': 'user', 'content': 'hi'}]):
    ...     print(chunk.kind, chunk.text)
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

import requests

from ..utils.error_handling import LLMServiceError

logger = logging.getLogger(__name__)

THINKING = 'thinking'
CONTENT = 'content'


@dataclass(frozen=True)
class StreamChunk:
    kind: str
    text: str


class OllamaClient:
    """HTTP client for an Ollama server"""

    def __init__(self, host: str, default_model: str, connect_timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        self.host = host.rstrip('/')
        self.default_model = default_model
        self.connect_timeout = connect_timeout
        # Persistent session for connection reuse
        self._session = session or requests.Session()

    def _sanitize_error(self, message: str) -> str:
        """Keep provider error text short and free of the host URL"""
        message = (message or 'unknown error').replace(self.host, '<ollama>')
        return message[:200]

    def stream_chat(self, messages: List[Dict[str, str]], think: bool = False,
                    model: Optional[str] = None) -> Iterator[StreamChunk]:
        """
        Stream a chat completion.

        ``think: true`` is only sent when think mode is on; some models reject
        the parameter outright, so it is omitted instead of sent as false.
        Reasoning text is yielded only when ``think`` is set.

        Raises:
            LLMServiceError: transport failure, non-2xx status, or an ``error``
                line in the stream.
        """
        payload: Dict[str, Any] = {
            'model': model or self.default_model,
            'messages': messages,
            'stream': True,
        }
        if think:
            payload['think'] = True

        try:
            # Connect timeout only: generation may legitimately take minutes
            response = self._session.post(
                f"{self.host}/api/chat",
                json=payload,
                stream=True,
                timeout=(self.connect_timeout, None),
            )
        except requests.exceptions.RequestException as e:
            raise LLMServiceError(f"Ollama request failed: {self._sanitize_error(str(e))}") from e

        with response:
            if not response.ok:
                detail = self._sanitize_error(response.text)
                raise LLMServiceError(f"Ollama returned HTTP {response.status_code}: {detail}",
                                      details={'status': response.status_code})
            try:
                for line in response.iter_lines(decode_unicode=True):
                    if not line:
                        continue
                    yield from self._parse_line(line, think)
            except requests.exceptions.RequestException as e:
                raise LLMServiceError(
                    f"Ollama stream interrupted: {self._sanitize_error(str(e))}") from e

    def _parse_line(self, line: str, think: bool) -> Iterator[StreamChunk]:
        try:
            part = json.loads(line)
        except ValueError as e:
            raise LLMServiceError("Malformed line in Ollama stream") from e

        if part.get('error'):
            raise LLMServiceError(f"Ollama error: {self._sanitize_error(str(part['error']))}")

        message = part.get('message') or {}
        thinking = message.get('thinking')
        if thinking and think:
            yield StreamChunk(THINKING, thinking)
        content = message.get('content')
        if content:
            yield StreamChunk(CONTENT, content)

    def list_models(self) -> List[str]:
        """Model names installed on the server; empty when unreachable"""
        try:
            response = self._session.get(f"{self.host}/api/tags", timeout=self.connect_timeout)
            response.raise_for_status()
            return [model['name'] for model in response.json().get('models', []) if 'name' in model]
        except (requests.exceptions.RequestException, ValueError, KeyError) as e:
            logger.warning(f"Could not list Ollama models: {self._sanitize_error(str(e))}")
            return []

    def is_available(self) -> bool:
        try:
            response = self._session.get(f"{self.host}/api/tags", timeout=self.connect_timeout)
            return response.ok
        except requests.exceptions.RequestException:
            return False
