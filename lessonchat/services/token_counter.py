"""
Token counting with tiktoken
"""

import logging
from typing import Dict, List, Optional

import tiktoken

logger = logging.getLogger(__name__)

# Model identifiers to tiktoken encodings. DeepSeek has no public encoding; cl100k is close enough for budgeting.
MODEL_ENCODINGS = {
    "deepseek-chat": "cl100k_base",
    "gpt-4o": "o200k_base",
    "gpt-4o-mini": "o200k_base",
    "default": "cl100k_base",
}

# Context window sizes in tokens
MODEL_CONTEXT_WINDOWS = {
    "deepseek-chat": 64000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "default": 32000,
}

TOKENS_PER_MESSAGE = 3
TOKENS_PER_REPLY = 3


class TokenCounter:
    """Counts prompt and completion tokens; estimates 4 characters per token when no encoder loads"""

    def __init__(self):
        self._encoders: Dict[str, Optional[tiktoken.Encoding]] = {}

    def _get_encoder(self, model: str) -> Optional[tiktoken.Encoding]:
        encoding_name = MODEL_ENCODINGS.get(model, MODEL_ENCODINGS["default"])

        if encoding_name not in self._encoders:
            try:
                self._encoders[encoding_name] = tiktoken.get_encoding(encoding_name)
            except Exception as e:
                # tiktoken downloads encodings on first use; offline hosts end up here
                logger.warning(f"Failed to load encoding {encoding_name}: {e}, estimating by characters")
                self._encoders[encoding_name] = None

        return self._encoders[encoding_name]

    def count_tokens(self, text: str, model: str = "default") -> int:
        if not text:
            return 0

        encoder = self._get_encoder(model)
        if encoder is None:
            return max(1, len(text) // 4)
        return len(encoder.encode(text))

    def count_messages_tokens(self, messages: List[Dict[str, str]], model: str = "default") -> int:
        """
        Count tokens for a chat-completion payload, including the per-message
        framing overhead OpenAI-compatible APIs add.
        """
        total = TOKENS_PER_REPLY
        for message in messages:
            total += TOKENS_PER_MESSAGE + self.count_tokens(message.get("content", ""), model)
        return total

    @staticmethod
    def context_window(model: str) -> int:
        return MODEL_CONTEXT_WINDOWS.get(model, MODEL_CONTEXT_WINDOWS["default"])


# Global token counter instance
token_counter = TokenCounter()
