"""
Guarded OpenAI client wrapper.

Meters chat completions against the daily quota and records every exchange
in the per-itinerary LLM log.
"""

from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.exchange_log import ExchangeLog
from ..core.quota import QuotaTracker, UsageOptions

OPENAI_SERVICE = "openai"
CHAT_ENDPOINT = "chat-completions"
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7


def supports_temperature(model: str) -> bool:
    """Whether the model accepts a custom temperature."""
    return "gpt-5" not in model


def uses_max_completion_tokens(model: str) -> bool:
    """Whether the model takes max_completion_tokens instead of max_tokens."""
    return any(family in model for family in ("gpt-4o", "gpt-5", "o1"))


class GuardedOpenAI:
    """OpenAI client wrapper that meters and logs chat completions.

    The quota is checked before the call so a rejected request costs
    nothing. Logging never changes the outcome: API errors are recorded
    and then re-raised unchanged.
    """

    def __init__(
        self,
        model: str,
        itinerary_id: str,
        *,
        tracker: Optional[QuotaTracker] = None,
        exchange_log: Optional[ExchangeLog] = None,
        client: Optional[OpenAI] = None,
        user_id: Optional[str] = None
    ):
        """Initialize guarded OpenAI client.

        Args:
            model: OpenAI model name (required)
            itinerary_id: Trip the exchanges are logged under (required)
            tracker: Quota tracker; no metering when omitted
            exchange_log: Exchange log (defaults to one under the cache dir)
            client: OpenAI client (defaults to one configured from the environment)
            user_id: User the calls are attributed to

        Raises:
            ValueError: If model or itinerary_id is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        if not itinerary_id or not itinerary_id.strip():
            raise ValueError("itinerary_id is required and cannot be empty")

        self.model = model
        self.itinerary_id = itinerary_id
        self.tracker = tracker
        self.exchange_log = exchange_log or ExchangeLog()
        self.client = client or OpenAI()
        self.user_id = user_id

    def chat(
        self,
        messages: List[Dict[str, str]],
        max_tokens: int = DEFAULT_MAX_TOKENS,
        **kwargs: Any
    ) -> Dict[str, Any]:
        """Create a chat completion.

        Args:
            messages: List of message dictionaries (required)
            max_tokens: Maximum tokens to generate
            **kwargs: Additional OpenAI parameters

        Returns:
            Dictionary with "content" and, when reported, "usage"

        Raises:
            ValueError: If messages is empty or the response has no content
            ApiLimitError: If the openai quota is exhausted or disabled
            OpenAI API errors: Propagated without modification
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        if self.tracker is not None:
            self.tracker.track_api_call(
                UsageOptions(service=OPENAI_SERVICE, endpoint=CHAT_ENDPOINT, user_id=self.user_id)
            )

        params: Dict[str, Any] = {"model": self.model, "messages": messages}
        if supports_temperature(self.model):
            params["temperature"] = DEFAULT_TEMPERATURE
        if uses_max_completion_tokens(self.model):
            params["max_completion_tokens"] = max_tokens
        else:
            params["max_tokens"] = max_tokens
        params.update(kwargs)

        request_timestamp = self.exchange_log.save_chatgpt_request(
            self.itinerary_id,
            messages,
            self.model,
            max_tokens=max_tokens,
            temperature=params.get("temperature")
        )

        try:
            completion = self.client.chat.completions.create(**params)
            content = completion.choices[0].message.content if completion.choices else None
            if not content:
                raise ValueError("No response received from ChatGPT")
        except Exception as e:
            self.exchange_log.save_chatgpt_response(self.itinerary_id, request_timestamp, None, error=e)
            raise

        result: Dict[str, Any] = {"content": content}
        usage = completion.usage
        if usage:
            result["usage"] = {
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens,
            }
        self.exchange_log.save_chatgpt_response(self.itinerary_id, request_timestamp, result)
        return result
