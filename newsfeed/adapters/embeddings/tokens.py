from __future__ import annotations
import re

_TOKEN_RE = re.compile(r"\w+|[^\w\s]", re.UNICODE)


def estimate_tokens(text: str) -> int:
    """
    粗略估计 token 数（词 + 标点），只用来在调用模型前拦掉明显超长的输入。
    不是真实的 tokenizer：最终以模型返回的 400/413 为准（见 HttpEmbeddingClient.embed）。
    """
    return len(_TOKEN_RE.findall(text or ""))


def check_input(text: str, max_tokens: int) -> str | None:
    """Return a rejection reason, or None when the text may be sent to the model."""
    if not (text or "").strip():
        return "empty text"
    n = estimate_tokens(text)
    if n > max_tokens:
        return f"text has ~{n} tokens, model limit is {max_tokens}"
    return None
