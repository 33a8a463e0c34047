"""
Completion API client.

Wraps an OpenAI-compatible chat completions endpoint (OpenRouter by default).
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from ..config.loader import API_KEY_ENV_VAR, CompletionSettings
from ..core.errors import UpstreamFailure
from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)

ChatMessage = Dict[str, str]


@dataclass(frozen=True)
class CompletionResult:
    """Parsed completion response."""
    content: str
    usage: TokenUsage
    model: str

    @property
    def tokens_used(self) -> int:
        return self.usage.total_tokens


class CompletionClient:
    """Chat completions client with a generic failure surface.
    
    Any transport error or non-2xx response becomes UpstreamFailure; the
    error body is logged but never parsed further.
    """
    
    def __init__(self, settings: CompletionSettings, api_key: Optional[str]):
        """Initialize the completion client.
        
        Args:
            settings: Endpoint, model and sampling settings
            api_key: API key for the completion endpoint (required)
            
        Raises:
            ValueError: If api_key is missing/empty
        """
        if not api_key or not api_key.strip():
            raise ValueError(f"{API_KEY_ENV_VAR} is required")
        
        self.settings = settings
        self.model = settings.model
        headers = {}
        if settings.site_url:
            headers["HTTP-Referer"] = settings.site_url
        if settings.site_name:
            headers["X-Title"] = settings.site_name
        self.client = OpenAI(
            api_key=api_key,
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            max_retries=0,
            default_headers=headers or None,
        )
    
    def chat_completion(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs: Any
    ) -> CompletionResult:
        """Create a non-streaming chat completion.
        
        Args:
            messages: Ordered list of {role, content} dictionaries (required)
            model: Model override (defaults to configured model)
            temperature: Sampling temperature (defaults to configured value)
            max_tokens: Maximum tokens to generate (defaults to configured value)
            **kwargs: Additional completion parameters
            
        Returns:
            CompletionResult with content, token usage and serving model
            
        Raises:
            ValueError: If messages is empty
            UpstreamFailure: If the API call fails
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")
        
        requested_model = model or self.model
        try:
            response = self.client.chat.completions.create(
                model=requested_model,
                messages=messages,
                temperature=self.settings.temperature if temperature is None else temperature,
                max_tokens=max_tokens or self.settings.max_tokens,
                stream=False,
                **kwargs
            )
        except openai.APIStatusError as e:
            logger.error("Completion API error: %s - %s", e.status_code, e.message)
            raise UpstreamFailure() from e
        except openai.APIError as e:
            logger.error("Completion API request failed: %s", e)
            raise UpstreamFailure() from e
        
        content = None
        if response.choices:
            content = response.choices[0].message.content
        
        return CompletionResult(
            content=content or "",
            usage=TokenUsage.from_response_usage(response.usage),
            model=response.model or requested_model,
        )
