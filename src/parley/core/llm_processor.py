import json
import re
from typing import Any, Protocol

from loguru import logger
from pydantic import HttpUrl
import requests

from .errors import ResponseError


class AIResponseGenerator(Protocol):
    def respond(self, text: str) -> str: ...


class LanguageModelResponder:
    """
    Produces the assistant's reply to one filtered user transcript.

    Talks to an OpenAI- or Ollama-compatible chat completion endpoint, streaming
    the response and joining the chunks. The conversation history lives only in
    memory for the lifetime of this object.
    """

    def __init__(
        self,
        completion_url: HttpUrl | str,
        model_name: str,
        api_key: str | None = None,
        system_prompt: str | None = None,
        timeout: float = 30.0,
        max_history: int = 40,
    ) -> None:
        self.completion_url = completion_url
        self.model_name = model_name
        self.api_key = api_key
        self.timeout = timeout
        self.max_history = max_history

        self._preprompt: list[dict[str, str]] = []
        if system_prompt:
            self._preprompt.append({"role": "system", "content": system_prompt})
        self.conversation_history: list[dict[str, str]] = []

        self.prompt_headers = {"Content-Type": "application/json"}
        if api_key:
            self.prompt_headers["Authorization"] = f"Bearer {api_key}"

    def _clean_raw_bytes(self, line: bytes) -> dict[str, Any] | None:
        """
        Clean and parse a raw byte line from the LLM response.
        Handles both OpenAI and Ollama formats, returning a dictionary or None if parsing fails.

        Args:
            line (bytes): The raw byte line from the LLM response.
        Returns:
            dict[str, Any] | None: Parsed JSON dictionary or None if parsing fails.
        """
        try:
            # Handle OpenAI format
            if line.startswith(b"data: "):
                json_str = line.decode("utf-8")[6:]
                if json_str.strip() == "[DONE]":
                    return {"done_marker": True}
                parsed_json: dict[str, Any] = json.loads(json_str)
                return parsed_json
            # Handle Ollama format
            parsed_json = json.loads(line.decode("utf-8"))
            if isinstance(parsed_json, dict):
                return parsed_json
            return None
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.trace(
                f"LLM Processor: Failed to parse non-JSON server response line: "
                f"{line[:100].decode('utf-8', errors='replace')}"
            )
            return None

    def _process_chunk(self, line: dict[str, Any]) -> str | None:
        if not line or line.get("done_marker"):
            return None
        if "choices" in line:  # OpenAI format
            choices = line.get("choices") or [{}]
            content = choices[0].get("delta", {}).get("content")
            return str(content) if content else None
        # Ollama format
        content = line.get("message", {}).get("content")
        return str(content) if content else None

    @staticmethod
    def clean_for_speech(text: str) -> str:
        """Remove stage directions and layout that should not be read aloud."""
        text = re.sub(r"\*.*?\*|\(.*?\)", "", text)
        text = text.replace("\n\n", ". ").replace("\n", ". ").replace(":", " ")
        return re.sub(r"\s{2,}", " ", text).strip()

    def _messages(self) -> list[dict[str, str]]:
        return self._preprompt + self.conversation_history[-self.max_history :]

    def respond(self, text: str) -> str:
        """
        Send `text` as the user's turn and return the assistant's reply.

        Raises:
            ResponseError: If the LLM service cannot be reached or returns nothing usable
        """
        logger.info(f"LLM Processor: Received text for LLM: '{text}'")
        self.conversation_history.append({"role": "user", "content": text})
        data = {"model": self.model_name, "stream": True, "messages": self._messages()}

        chunks: list[str] = []
        try:
            with requests.post(
                str(self.completion_url),
                headers=self.prompt_headers,
                json=data,
                stream=True,
                timeout=self.timeout,
            ) as response:
                response.raise_for_status()
                for line in response.iter_lines():
                    if not line:
                        continue
                    cleaned_line_data = self._clean_raw_bytes(line)
                    if not cleaned_line_data:
                        continue
                    chunk = self._process_chunk(cleaned_line_data)
                    if chunk:
                        chunks.append(chunk)
                    elif cleaned_line_data.get("done_marker") or cleaned_line_data.get("done"):
                        break
        except requests.exceptions.ConnectionError as e:
            self.conversation_history.pop()
            raise ResponseError(
                f"Connection error to LLM service: {e}",
                "I'm unable to connect to my thinking module. Please check the LLM service connection.",
            ) from e
        except requests.exceptions.Timeout as e:
            self.conversation_history.pop()
            raise ResponseError(
                f"Request to LLM timed out: {e}",
                "My brain seems to be taking too long to respond. It might be overloaded.",
            ) from e
        except requests.exceptions.HTTPError as e:
            self.conversation_history.pop()
            status_code = e.response.status_code if e.response is not None else "unknown"
            raise ResponseError(
                f"HTTP error {status_code} from LLM service: {e}",
                f"I received an error from my thinking module. HTTP status {status_code}.",
            ) from e
        except requests.exceptions.RequestException as e:
            self.conversation_history.pop()
            raise ResponseError(
                f"Request to LLM failed: {e}", "Sorry, I encountered an error trying to reach my brain."
            ) from e

        reply = self.clean_for_speech("".join(chunks))
        if not reply:
            self.conversation_history.pop()
            raise ResponseError("LLM returned an empty response")

        self.conversation_history.append({"role": "assistant", "content": reply})
        logger.success(f"LLM text: {reply}")
        return reply
