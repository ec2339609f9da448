#!/usr/bin/env python3
"""
MODEL PROVIDER ADAPTERS

Thin REST adapters for Anthropic, OpenAI and Gemini. Each exposes
generate(model_id, prompt) and raises GenerationError carrying the HTTP status
and the provider's own error text, which is what the invoker classifies.
"""

import logging
from typing import Dict, Any, List, Optional

import requests

from model_invoker import Generation, Usage
from review_errors import ConfigError, GenerationError

logger = logging.getLogger('ai_pr_review')

# Preference-ordered fallbacks, most capable first
ANTHROPIC_MODELS = [
    'claude-sonnet-4-5-20250929',
    'claude-sonnet-4-20250514',
    'claude-3-7-sonnet-20250219',
    'claude-3-5-sonnet-20241022',
    'claude-3-5-haiku-20241022',
]

OPENAI_MODELS = [
    'gpt-4o',
    'gpt-4-turbo',
    'gpt-4o-mini',
]

GEMINI_MODELS = [
    'gemini-2.0-flash-thinking-exp',
    'gemini-2.0-flash-exp',
    'gemini-1.5-pro',
    'gemini-1.5-flash',
    'gemini-1.5-flash-8b',
]


class ModelProvider:
    """Base adapter: one HTTP POST per generation request."""

    name = ""
    display_name = ""
    key_prefix = ""
    console_url = ""
    fallback_models: List[str] = []

    def __init__(self, api_key: str, max_tokens: int = 4096,
                 session: Optional[requests.Session] = None, timeout: float = 120):
        if any(ch.isspace() or not ch.isprintable() for ch in api_key):
            raise ConfigError(
                f"{self.display_name or 'Provider'} API key contains whitespace or control characters",
                "Remove stray spaces or line breaks from the key (common in copied CI secrets)"
            )
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.session = session or requests.Session()
        self.timeout = timeout

    def generate(self, model_id: str, prompt: str) -> Generation:
        data = self._post(model_id, prompt)
        try:
            return self._parse(data)
        except (KeyError, IndexError, TypeError) as e:
            raise GenerationError(
                f"{self.display_name} returned an unexpected response for {model_id}: {e}",
                model=model_id
            ) from e

    def _request(self, model_id: str, prompt: str) -> Dict[str, Any]:
        raise NotImplementedError

    def _parse(self, data: Dict[str, Any]) -> Generation:
        raise NotImplementedError

    def _post(self, model_id: str, prompt: str) -> Dict[str, Any]:
        try:
            response = self.session.post(timeout=self.timeout, **self._request(model_id, prompt))
            response.raise_for_status()

        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise GenerationError(
                f"{self.display_name} API error for {model_id}: {_error_text(e.response)}",
                status=status,
                model=model_id,
                fix_hint=self._fix_hint(status)
            ) from e
        except requests.exceptions.InvalidHeader:
            # The exception text echoes the header value, i.e. the API key
            raise GenerationError(
                f"{self.display_name} request rejected before sending: invalid header value",
                model=model_id,
                fix_hint="Check the API key for stray whitespace or line breaks"
            ) from None
        except requests.exceptions.RequestException as e:
            raise GenerationError(
                f"{self.display_name} API connection failed: {e}",
                model=model_id,
                fix_hint="Check internet connection"
            ) from e

        try:
            return response.json()
        except ValueError as e:
            raise GenerationError(f"{self.display_name} returned invalid JSON: {e}", model=model_id) from e

    def _fix_hint(self, status: Optional[int]) -> Optional[str]:
        if status in (401, 403):
            return f"Check your {self.display_name} API key at {self.console_url}"
        if status == 429:
            return f"Check usage and quota at {self.console_url} or wait for the limit to reset"
        return None


class AnthropicProvider(ModelProvider):
    name = "anthropic"
    display_name = "Claude"
    key_prefix = "sk-ant-"
    console_url = "https://console.anthropic.com/"
    fallback_models = ANTHROPIC_MODELS

    def _request(self, model_id: str, prompt: str) -> Dict[str, Any]:
        return {
            'url': "https://api.anthropic.com/v1/messages",
            'headers': {
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json"
            },
            'json': {
                "model": model_id,
                "max_tokens": self.max_tokens,
                "messages": [{"role": "user", "content": prompt}]
            }
        }

    def _parse(self, data: Dict[str, Any]) -> Generation:
        text = "".join(block.get('text', '') for block in data['content'] if block.get('type') == 'text')
        usage = data.get('usage')
        return Generation(
            text=text,
            usage=Usage(usage['input_tokens'], usage['output_tokens']) if usage else None
        )


class OpenAIProvider(ModelProvider):
    name = "openai"
    display_name = "OpenAI"
    key_prefix = "sk-"
    console_url = "https://platform.openai.com/"
    fallback_models = OPENAI_MODELS

    def _request(self, model_id: str, prompt: str) -> Dict[str, Any]:
        return {
            'url': "https://api.openai.com/v1/chat/completions",
            'headers': {"Authorization": f"Bearer {self.api_key}"},
            'json': {
                "model": model_id,
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": self.max_tokens
            }
        }

    def _parse(self, data: Dict[str, Any]) -> Generation:
        text = data['choices'][0]['message']['content'] or ""
        usage = data.get('usage')
        return Generation(
            text=text,
            usage=Usage(usage['prompt_tokens'], usage['completion_tokens']) if usage else None
        )


class GeminiProvider(ModelProvider):
    name = "gemini"
    display_name = "Gemini"
    key_prefix = "AIza"
    console_url = "https://aistudio.google.com/app/apikey"
    fallback_models = GEMINI_MODELS

    def _request(self, model_id: str, prompt: str) -> Dict[str, Any]:
        return {
            'url': f"https://generativelanguage.googleapis.com/v1beta/models/{model_id}:generateContent",
            'headers': {"x-goog-api-key": self.api_key},
            'json': {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {"maxOutputTokens": self.max_tokens}
            }
        }

    def _parse(self, data: Dict[str, Any]) -> Generation:
        candidates = data.get('candidates') or []
        if not candidates:
            reason = data.get('promptFeedback', {}).get('blockReason', 'no candidates returned')
            raise GenerationError(f"Gemini returned no answer: {reason}")
        parts = candidates[0]['content']['parts']
        usage = data.get('usageMetadata')
        return Generation(
            text="".join(part.get('text', '') for part in parts),
            usage=Usage(usage.get('promptTokenCount', 0), usage.get('candidatesTokenCount', 0)) if usage else None
        )


PROVIDERS = {
    provider.name: provider
    for provider in (AnthropicProvider, OpenAIProvider, GeminiProvider)
}


def create_provider(name: str, api_key: str, max_tokens: int = 4096,
                    session: Optional[requests.Session] = None) -> ModelProvider:
    """Instantiate the adapter registered under name."""
    try:
        provider_class = PROVIDERS[name]
    except KeyError:
        raise ConfigError(
            f"Unsupported AI provider: {name}",
            f"Use one of: {', '.join(sorted(PROVIDERS))}"
        ) from None
    return provider_class(api_key, max_tokens=max_tokens, session=session)

def check_key_format(name: str, api_key: str) -> bool:
    """Warn when an API key does not look like the provider's keys."""
    provider_class = PROVIDERS.get(name)
    if provider_class is None or not provider_class.key_prefix:
        return True
    if not api_key.startswith(provider_class.key_prefix):
        logger.warning(
            f"⚠️  {provider_class.display_name} API key format looks wrong; "
            f"expected it to start with '{provider_class.key_prefix}'"
        )
        return False
    return True

def _error_text(response: Optional[requests.Response]) -> str:
    """Pull the provider's error type and message out of an error response."""
    if response is None:
        return "no response"
    try:
        error = response.json().get('error')
    except (ValueError, AttributeError):
        error = None
    if isinstance(error, dict):
        kind = error.get('type') or error.get('status') or error.get('code')
        message = error.get('message', '')
        return f"{kind}: {message}" if kind else message
    if isinstance(error, str):
        return error
    return (response.text or f"HTTP {response.status_code}")[:300]
