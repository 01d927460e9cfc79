import json
import logging
import re
from typing import Any, Dict, List, Optional

from openai import OpenAI

from standup.config import config
from standup.errors import ConfigurationError

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"


def _attempt_json_repair(raw: str) -> Optional[dict]:
    """
    Attempts to repair malformed JSON from the LLM: markdown fences, control
    characters and trailing commas are the usual offenders.
    """
    if not raw:
        return None
    cleaned = re.sub(r'^```(?:json)?\s*', '', raw.strip())
    cleaned = re.sub(r'\s*```$', '', cleaned)

    cleaned = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f]', '', cleaned)

    cleaned = re.sub(r',\s*([}\]])', r'\1', cleaned)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        # Prose around the object: take the outermost braces
        start, end = cleaned.find('{'), cleaned.rfind('}')
        if start == -1 or end <= start:
            return None
        try:
            return json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError:
            return None


def parse_json_response(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = _attempt_json_repair(raw)
    return parsed if isinstance(parsed, dict) else None


def _truncate(text: Optional[str], limit: int = 300) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit] + "..."


class LLMClient:
    """
    Thin wrapper over the OpenAI SDK. Resolves the provider (OpenAI or Groq)
    from the key and exposes JSON and plain-text chat calls.
    """

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 client: Optional[Any] = None):
        if client is not None:
            self.client = client
            self.model = model or config['model'] or "gpt-4o-mini"
            return

        openai_key = config['openai_api_key']
        groq_key = config['groq_api_key']
        resolved_key = api_key or openai_key or groq_key
        if not resolved_key:
            raise ConfigurationError("No LLM API key provided. Set OPENAI_API_KEY or GROQ_API_KEY.")

        if resolved_key.startswith("sk-") or (resolved_key == openai_key and not api_key):
            base_url = OPENAI_BASE_URL
            self.model = model or config['model'] or "gpt-4o-mini"
        else:
            base_url = GROQ_BASE_URL
            self.model = model or config['model'] or "llama-3.3-70b-versatile"

        self.client = OpenAI(api_key=resolved_key, base_url=base_url, timeout=config['timeout'])

    def _complete(self, messages: List[Dict[str, str]], json_mode: bool,
                  temperature: Optional[float], max_tokens: Optional[int]) -> str:
        kwargs: Dict[str, Any] = dict(
            model=self.model,
            messages=messages,
            temperature=config['temperature'] if temperature is None else temperature,
            max_tokens=max_tokens or config['max_tokens'],
            timeout=config['timeout'],
        )
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = self.client.chat.completions.create(**kwargs)
        return response.choices[0].message.content or ""

    def chat_json(self, system: str, user: str, temperature: Optional[float] = None,
                  max_tokens: Optional[int] = None, tag: str = "LLM",
                  is_retry: bool = False, raise_errors: bool = False) -> Optional[dict]:
        """
        Returns the parsed JSON object, regenerating once on malformed output
        or a failed call. None when both attempts fail, unless raise_errors is
        set, in which case a second failed call re-raises.
        """
        messages = [{"role": "system", "content": system}, {"role": "user", "content": user}]
        try:
            raw = self._complete(messages, True, temperature, max_tokens)
        except Exception as e:
            if not is_retry:
                logger.warning("[%s] LLM call failed (%s). Attempting regeneration...", tag, e)
                return self.chat_json(system, user, temperature, max_tokens, tag,
                                      is_retry=True, raise_errors=raise_errors)
            logger.error("[%s] LLM call failed: %s", tag, e)
            if raise_errors:
                raise
            return None

        parsed = parse_json_response(raw)
        if parsed is None:
            if not is_retry:
                logger.warning("[%s] Malformed JSON (%s). Attempting regeneration...", tag, _truncate(raw))
                return self.chat_json(system, user, temperature, max_tokens, tag, is_retry=True, raise_errors=raise_errors)
            logger.error("[%s] Regeneration failed; raw response: %s", tag, _truncate(raw))
            return None
        return parsed

    def chat_text(self, system: str, user: str, temperature: Optional[float] = None,
                  max_tokens: Optional[int] = None) -> str:
        messages = [{"role": "system", "content": system}, {"role": "user", "content": user}]
        return self._complete(messages, False, temperature, max_tokens).strip()
