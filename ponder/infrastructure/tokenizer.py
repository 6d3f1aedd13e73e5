from typing import Callable, Dict, Optional
import tiktoken


TokenCounter = Callable[[str], int]

DEFAULT_ENCODING = "cl100k_base"

_ENCODERS: Dict[str, "tiktoken.Encoding"] = {}


def get_encoder(encoding: str = DEFAULT_ENCODING) -> "tiktoken.Encoding":
    """Lazily load and cache a tiktoken encoder"""

    if encoding not in _ENCODERS:
        _ENCODERS[encoding] = tiktoken.get_encoding(encoding)
    return _ENCODERS[encoding]


def count_tokens(text: str, encoding: str = DEFAULT_ENCODING) -> int:
    """Count BPE tokens in text"""

    if not text:
        return 0
    return len(get_encoder(encoding).encode(text))


def make_token_counter(encoding: Optional[str] = None) -> TokenCounter:
    """Token counter bound to an encoding"""

    name = encoding or DEFAULT_ENCODING

    def _count(text: str) -> int:
        return count_tokens(text, name)

    return _count
