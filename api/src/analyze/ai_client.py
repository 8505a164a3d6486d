import math
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import requests

from analyze.base import AnalyzerException, ErrorType
from config.default import Config
from utils.logger import setup_logger

logger = setup_logger('ai_client')

# USD per 1K tokens
MODEL_PRICING = {
    'gpt-4': {'input': 0.03, 'output': 0.06},
    'gpt-4-turbo': {'input': 0.01, 'output': 0.03},
    'gpt-3.5-turbo': {'input': 0.0015, 'output': 0.002},
    'claude-3-opus-20240229': {'input': 0.015, 'output': 0.075},
    'claude-3-sonnet-20240229': {'input': 0.003, 'output': 0.015},
    'claude-3-haiku-20240307': {'input': 0.00025, 'output': 0.00125},
}
DEFAULT_REQUEST_COST = 0.01

NON_RETRYABLE_PATTERNS = ('api_key', 'api key', 'invalid_request', 'permission', 'billing', 'quota',
                          'context_length_exceeded')

PROVIDERS = ('openai', 'claude')


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def estimate_request_cost(model: str, prompt_tokens: int, completion_tokens: int = 0) -> float:
    pricing = MODEL_PRICING.get(model)
    if pricing is None:
        return DEFAULT_REQUEST_COST
    return (prompt_tokens * pricing['input'] + completion_tokens * pricing['output']) / 1000


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class AICompletion:
    content: str
    model: str
    token_usage: Optional[TokenUsage]
    cost: float
    attempts: int


@dataclass
class AIClientSettings:
    provider: str = Config.AI_PROVIDER
    api_key: str = ''
    model: str = Config.AI_MODEL
    max_tokens: int = Config.AI_MAX_TOKENS
    temperature: float = Config.AI_TEMPERATURE
    timeout: float = Config.AI_TIMEOUT
    retry_attempts: int = Config.AI_RETRY_ATTEMPTS
    cost_threshold: float = Config.AI_COST_THRESHOLD
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0

    @classmethod
    def from_config(cls) -> 'AIClientSettings':
        api_key = Config.CLAUDE_API_KEY if Config.AI_PROVIDER == 'claude' else Config.OPENAI_API_KEY
        return cls(api_key=api_key)

    def validate(self) -> List[str]:
        errors = []
        if self.provider not in PROVIDERS:
            errors.append(f"provider must be one of: {', '.join(PROVIDERS)}")
        if not 100 <= self.max_tokens <= 4000:
            errors.append('max_tokens must be between 100 and 4000')
        if not 0 <= self.temperature <= 2:
            errors.append('temperature must be between 0 and 2')
        if not 5 <= self.timeout <= 120:
            errors.append('timeout must be between 5 and 120 seconds')
        if not 0 < self.cost_threshold <= 1:
            errors.append('cost_threshold must be greater than 0 and at most 1')
        return errors


class AIClient:
    """Chat completion client for OpenAI and Anthropic with cost accounting.

    ``complete`` is blocking; callers run it in an executor. Before any
    request the prompt cost is estimated and compared to the per-analysis
    ceiling, so an expensive prompt is refused without a network call.
    """

    def __init__(self, settings: AIClientSettings = None, session: requests.Session = None,
                 sleep=time.sleep):
        self.settings = settings or AIClientSettings.from_config()
        self.session = session or requests.Session()
        self._sleep = sleep
        self.usage = {
            'requests': 0,
            'successful': 0,
            'failed': 0,
            'refused_for_cost': 0,
            'prompt_tokens': 0,
            'completion_tokens': 0,
            'total_cost': 0.0,
        }

    def estimate_cost(self, prompt: str) -> float:
        return estimate_request_cost(self.settings.model, estimate_tokens(prompt))

    def complete(self, prompt: str) -> AICompletion:
        if not self.settings.api_key:
            raise AnalyzerException(ErrorType.API_KEY_MISSING, f'No API key configured for {self.settings.provider}',
                                    retryable=False)

        estimated = self.estimate_cost(prompt)
        if estimated > self.settings.cost_threshold:
            self.usage['refused_for_cost'] += 1
            raise AnalyzerException(
                ErrorType.COST_THRESHOLD_EXCEEDED,
                f'Estimated cost ${estimated:.4f} exceeds the ${self.settings.cost_threshold:.4f} ceiling',
                retryable=False,
                details={'estimated_cost': estimated},
            )

        attempts = self.settings.retry_attempts + 1
        last_error = None
        for attempt in range(1, attempts + 1):
            self.usage['requests'] += 1
            try:
                completion = self._request(prompt, attempt)
            except AnalyzerException as e:
                self.usage['failed'] += 1
                last_error = e
                if not e.retryable or attempt == attempts:
                    break
                delay = min(self.settings.retry_base_delay * (2 ** (attempt - 1)), self.settings.retry_max_delay)
                logger.info(f"Retrying AI request (attempt {attempt + 1}/{attempts}) in {delay}s: {str(e)}")
                self._sleep(delay)
                continue

            self.usage['successful'] += 1
            if completion.token_usage:
                self.usage['prompt_tokens'] += completion.token_usage.prompt_tokens
                self.usage['completion_tokens'] += completion.token_usage.completion_tokens
            self.usage['total_cost'] += completion.cost
            return completion

        raise last_error

    def _request(self, prompt: str, attempt: int) -> AICompletion:
        if self.settings.provider == 'claude':
            url, headers, body = self._claude_request(prompt)
        else:
            url, headers, body = self._openai_request(prompt)

        try:
            response = self.session.post(url, headers=headers, json=body, timeout=self.settings.timeout)
        except requests.Timeout as e:
            raise AnalyzerException(ErrorType.TIMEOUT, f'AI request timed out: {str(e)}')
        except requests.RequestException as e:
            raise AnalyzerException(ErrorType.NETWORK, f'AI request failed: {str(e)}')

        if response.status_code >= 400:
            raise self._http_error(response)

        try:
            payload = response.json()
        except ValueError as e:
            raise AnalyzerException(ErrorType.INVALID_RESPONSE, f'AI provider returned non-JSON body: {str(e)}',
                                    retryable=False)

        if self.settings.provider == 'claude':
            content, usage = self._parse_claude(payload)
        else:
            content, usage = self._parse_openai(payload)

        if usage:
            cost = estimate_request_cost(self.settings.model, usage.prompt_tokens, usage.completion_tokens)
        else:
            cost = self.estimate_cost(prompt)
        return AICompletion(content=content, model=self.settings.model, token_usage=usage,
                            cost=cost, attempts=attempt)

    def _openai_request(self, prompt: str):
        headers = {
            'Authorization': f'Bearer {self.settings.api_key}',
            'Content-Type': 'application/json',
        }
        body = {
            'model': self.settings.model,
            'messages': [{'role': 'user', 'content': prompt}],
            'max_tokens': self.settings.max_tokens,
            'temperature': self.settings.temperature,
            'response_format': {'type': 'json_object'},
        }
        return Config.OPENAI_API_URL, headers, body

    def _claude_request(self, prompt: str):
        headers = {
            'x-api-key': self.settings.api_key,
            'anthropic-version': '2023-06-01',
            'content-type': 'application/json',
        }
        body = {
            'model': self.settings.model,
            'max_tokens': self.settings.max_tokens,
            'temperature': self.settings.temperature,
            'messages': [{'role': 'user', 'content': prompt}],
        }
        return Config.CLAUDE_API_URL, headers, body

    @staticmethod
    def _parse_openai(payload: Dict):
        try:
            content = payload['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError):
            raise AnalyzerException(ErrorType.INVALID_RESPONSE, 'No content in AI response', retryable=False)
        usage = payload.get('usage')
        token_usage = None
        if usage:
            token_usage = TokenUsage(usage.get('prompt_tokens', 0), usage.get('completion_tokens', 0))
        return content, token_usage

    @staticmethod
    def _parse_claude(payload: Dict):
        blocks = [block.get('text', '') for block in payload.get('content', []) if block.get('type') == 'text']
        if not blocks:
            raise AnalyzerException(ErrorType.INVALID_RESPONSE, 'No content in AI response', retryable=False)
        usage = payload.get('usage')
        token_usage = None
        if usage:
            token_usage = TokenUsage(usage.get('input_tokens', 0), usage.get('output_tokens', 0))
        return ''.join(blocks), token_usage

    @staticmethod
    def _http_error(response) -> AnalyzerException:
        try:
            detail = response.json().get('error', {})
            message = detail.get('message', '') if isinstance(detail, dict) else str(detail)
        except ValueError:
            message = response.text[:200]
        lowered = message.lower()

        if response.status_code == 401:
            return AnalyzerException(ErrorType.API_KEY_INVALID, f'AI provider rejected the API key: {message}',
                                     retryable=False)
        if response.status_code == 429:
            # quota exhaustion is reported as 429 too, but will not recover on retry
            retryable = not any(pattern in lowered for pattern in NON_RETRYABLE_PATTERNS)
            return AnalyzerException(ErrorType.RATE_LIMIT, f'AI rate limit exceeded: {message}', retryable=retryable)
        if response.status_code >= 500:
            return AnalyzerException(ErrorType.API_ERROR, f'AI provider error {response.status_code}: {message}',
                                     retryable=True)
        return AnalyzerException(ErrorType.API_ERROR, f'AI request rejected ({response.status_code}): {message}',
                                 retryable=False)

    def get_usage_stats(self) -> Dict:
        stats = dict(self.usage)
        stats['average_cost'] = stats['total_cost'] / stats['successful'] if stats['successful'] else 0.0
        return stats

    def reset_usage_stats(self) -> None:
        for key in self.usage:
            self.usage[key] = 0.0 if key == 'total_cost' else 0
