"""Model-aware token counting utilities.

Used to estimate usage for streams that finish without a usage report.
"""

from typing import List, Dict, Any

import tiktoken

from ..llm.base_adapter import Usage


class TokenCounter:
    """Counts tokens for different model providers.

    Uses tiktoken for OpenAI models and a character-based approximation
    for everything else (most providers don't expose public tokenizers).
    """

    def __init__(self, model_id: str) -> None:
        """Initialize the token counter.

        Args:
            model_id: OpenRouter model ID ("provider/model")
        """
        self.model_id = model_id
        self._tiktoken_encoder = None

        provider, _, name = model_id.partition("/")
        if not name:
            provider, name = "", model_id
        self.provider = provider or "unknown"

        if self.provider == "openai":
            # Strip variant suffixes such as ":free"
            name = name.split(":", 1)[0]
            try:
                self._tiktoken_encoder = tiktoken.encoding_for_model(name)
            except KeyError:
                # Use o200k_base as fallback for newer models
                self._tiktoken_encoder = tiktoken.get_encoding("o200k_base")

    def count_text(self, text: str) -> int:
        """Count tokens in a text string.

        Args:
            text: The text to count tokens for

        Returns:
            Estimated token count
        """
        if not text:
            return 0

        if self._tiktoken_encoder is not None:
            return len(self._tiktoken_encoder.encode(text))

        # Most tokenizers average ~4 characters per token for English
        return max(1, len(text) // 4)

    def count_messages(self, messages: List[Dict[str, Any]]) -> int:
        """Count tokens in a list of messages.

        Args:
            messages: List of message dicts with 'role' and 'content' keys

        Returns:
            Total estimated token count
        """
        total = 0
        for message in messages:
            content = message.get("content", "")
            if isinstance(content, str):
                total += self.count_text(content)
            elif isinstance(content, list):
                for part in content:
                    if isinstance(part, dict) and "text" in part:
                        total += self.count_text(part["text"])

            # ~4 tokens of overhead per message
            total += 4

        return total

    def estimate_usage(self, messages: List[Dict[str, Any]], completion: str) -> Usage:
        """Estimate usage for a finished completion.

        Args:
            messages: Prompt messages sent to the model
            completion: Generated text

        Returns:
            Usage flagged as estimated, without a cost
        """
        prompt_tokens = self.count_messages(messages)
        completion_tokens = self.count_text(completion)
        return Usage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            estimated=True,
        )


def create_counter(model_id: str) -> TokenCounter:
    """Factory function to create a token counter for a model.

    Args:
        model_id: The model ID

    Returns:
        Configured TokenCounter instance
    """
    return TokenCounter(model_id)
