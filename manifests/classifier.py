"""LLM-backed prompt-format classification, used when heuristics are unsure."""

import json
import logging
import re
from typing import Any, Dict, Optional

import aiohttp

from pipelines.errors import ClassificationError, FetchError
from pipelines.retry import RETRYABLE_STATUS_CODES, RetryPolicy, describe_error_response, retry_async
from .models import FallbackFormat, FormatDetectionResult, PromptFormat

logger = logging.getLogger(__name__)

OPENROUTER_CHAT_URL = 'https://openrouter.ai/api/v1/chat/completions'
DEFAULT_MODEL = 'anthropic/claude-3-haiku'
DEFAULT_TEMPERATURE = 0.1
MAX_RESPONSE_TOKENS = 500
MAX_SAMPLE_CHARS = 8000
MAX_FALLBACKS = 3

JSON_OBJECT = re.compile(r'\{[\s\S]*\}')

CLASSIFICATION_PROMPT = """You are an expert at analyzing developer tool documentation to determine the preferred prompt format for generating prompts.

Tool ID: {tool_id}

Documentation excerpt:
\"\"\"
{sample}
\"\"\"

Analyze this documentation and determine the most appropriate prompt format. Consider:
1. File types and extensions mentioned
2. Code examples and their languages
3. Structural patterns (headings, lists, etc.)
4. Command-line interfaces or tools
5. Schema definitions
6. Explicit format mentions

Respond with a JSON object in this exact format:
{{
  "preferred_format": "json|markdown|plaintext|cli|xml",
  "confidence_score": 0-100,
  "detection_methods_used": ["method1", "method2"],
  "fallback_formats": [
    {{"format": "format1", "confidence": 0-100}},
    {{"format": "format2", "confidence": 0-100}}
  ],
  "reasoning": "Brief explanation of your decision"
}}

Be precise and base your decision on clear evidence from the documentation."""


def _clip(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


def parse_classification(reply: str) -> FormatDetectionResult:
    """Extract and validate the classification JSON embedded in a model reply.

    Raises:
        ClassificationError: If no valid classification object is found
    """
    match = JSON_OBJECT.search(reply or '')
    if not match:
        raise ClassificationError('No JSON found in classifier response')

    try:
        payload = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ClassificationError(f"Classifier response is not valid JSON: {e}") from e

    preferred = payload.get('preferred_format')
    confidence = payload.get('confidence_score')
    methods = payload.get('detection_methods_used')

    if not preferred or confidence is None or not isinstance(methods, list):
        raise ClassificationError('Classifier response missing required fields')
    if preferred not in PromptFormat.values():
        raise ClassificationError(f"Invalid preferred_format: {preferred}")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0 <= confidence <= 100:
        raise ClassificationError(f"Invalid confidence_score: {confidence}")

    raw_fallbacks = payload.get('fallback_formats') or []
    if not isinstance(raw_fallbacks, list):
        raise ClassificationError('fallback_formats must be an array')

    fallbacks = []
    for item in raw_fallbacks:
        if not isinstance(item, dict) or not item.get('format') or not isinstance(item.get('confidence'), (int, float)):
            raise ClassificationError('Invalid fallback format item')
        if item['format'] not in PromptFormat.values():
            raise ClassificationError(f"Invalid fallback format: {item['format']}")
        if item['format'] == preferred:
            continue
        fallbacks.append(FallbackFormat(format=item['format'], confidence=_clip(item['confidence'])))

    return FormatDetectionResult(
        preferred_format=preferred,
        confidence_score=_clip(confidence),
        detection_methods_used=[str(method) for method in methods],
        fallback_formats=fallbacks[:MAX_FALLBACKS],
    )


class LLMClassifier:
    """Classifies documentation samples through the OpenRouter chat-completions API."""

    def __init__(self,
                 api_key: Optional[str],
                 model: str = DEFAULT_MODEL,
                 temperature: float = DEFAULT_TEMPERATURE,
                 retry_policy: Optional[RetryPolicy] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 app_url: Optional[str] = None,
                 app_name: Optional[str] = None,
                 endpoint: str = OPENROUTER_CHAT_URL,
                 timeout: float = 60.0):
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.retry_policy = retry_policy or RetryPolicy(base_delay=1.0, jitter_fraction=0.2)
        self.session = session
        self.app_url = app_url
        self.app_name = app_name
        self.endpoint = endpoint
        self.timeout = timeout

    def build_prompt(self, tool_id: str, sample: str) -> str:
        if len(sample) > MAX_SAMPLE_CHARS:
            sample = sample[:MAX_SAMPLE_CHARS] + '...'
        return CLASSIFICATION_PROMPT.format(tool_id=tool_id, sample=sample)

    async def classify(self, tool_id: str, sample: str) -> FormatDetectionResult:
        """Classify the prompt format for ``tool_id`` from a documentation sample.

        Raises:
            ClassificationError: If no API key is configured or the reply is unusable
        """
        if not self.api_key:
            raise ClassificationError('OpenRouter API key not configured')

        prompt = self.build_prompt(tool_id, sample or '')
        reply = await retry_async(
            lambda: self._call_model(prompt),
            policy=self.retry_policy,
            description=f"Format classification for {tool_id}",
        )
        return parse_classification(reply)

    def _headers(self) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'Authorization': f"Bearer {self.api_key}",
        }
        if self.app_url:
            headers['HTTP-Referer'] = self.app_url
        if self.app_name:
            headers['X-Title'] = self.app_name
        return headers

    async def _call_model(self, prompt: str) -> str:
        body = {
            'model': self.model,
            'messages': [{'role': 'user', 'content': prompt}],
            'temperature': self.temperature,
            'max_tokens': MAX_RESPONSE_TOKENS,
        }

        owns_session = self.session is None
        session = self.session or aiohttp.ClientSession()
        try:
            async with session.post(self.endpoint, json=body, headers=self._headers(),
                                    timeout=aiohttp.ClientTimeout(total=self.timeout)) as response:
                if response.status != 200:
                    detail = await describe_error_response(response)
                    raise FetchError(
                        f"Classification request failed with status {response.status}: {detail}",
                        status_code=response.status,
                        retryable=response.status in RETRYABLE_STATUS_CODES,
                    )
                payload = await response.json()
        finally:
            if owns_session:
                await session.close()

        content = self._message_content(payload)
        if not content:
            raise ClassificationError('Classifier response is malformed')
        return content

    @staticmethod
    def _message_content(payload: Any) -> Optional[str]:
        try:
            return payload['choices'][0]['message']['content']
        except (KeyError, IndexError, TypeError):
            return None
