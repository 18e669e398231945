from __future__ import annotations
import logging
from typing import Optional

import httpx

from newsfeed.adapters.embeddings.tokens import check_input
from newsfeed.ports.embedding import EmbedResult, Fatal, Ok, Retryable

log = logging.getLogger("newsfeed.adapters.embeddings.http_embedder")

_RETRYABLE_STATUS = {408, 409, 425, 429, 500, 502, 503, 504}


class HttpEmbeddingClient:
    """
    OpenAI 兼容的 /embeddings 接口。一次 embed() 只发一次请求，
    把结果分成 Ok / Retryable / Fatal，重试与退避交给调用方。
    """
    def __init__(self, base_url: str, api_key: str, model: str, dim: int,
                 model_version: Optional[str] = None, max_tokens: int = 8191,
                 timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.dim = dim
        self.model_version = model_version or f"{model}@{dim}"
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def embed(self, text: str) -> EmbedResult:
        reason = check_input(text, self.max_tokens)
        if reason:
            return Fatal(reason, invalid_input=True)

        url = f"{self.base_url}/embeddings"
        payload = {"model": self.model, "input": text}
        try:
            r = await self._client.post(url, headers=self._headers(), json=payload)
        except httpx.TimeoutException as e:
            return Retryable(f"timeout: {e.__class__.__name__}")
        except httpx.TransportError as e:
            return Retryable(f"transport: {e.__class__.__name__}: {e}")

        if r.status_code in _RETRYABLE_STATUS:
            return Retryable(f"HTTP {r.status_code}")
        # 真正的长度上限由模型判定；本地估计只是预检
        if r.status_code == 400 or r.status_code == 413:
            return Fatal(f"model rejected input (HTTP {r.status_code})", invalid_input=True)
        if r.status_code >= 400:
            return Fatal(f"HTTP {r.status_code}")

        try:
            vector = r.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            return Fatal(f"malformed response: {e.__class__.__name__}")
        if not isinstance(vector, list) or len(vector) != self.dim:
            got = len(vector) if isinstance(vector, list) else type(vector).__name__
            return Fatal(f"dimension mismatch: got {got}, expected {self.dim}")
        return Ok([float(x) for x in vector])

    async def aclose(self) -> None:
        await self._client.aclose()

    def ping_detail(self) -> tuple[bool, str | None]:
        if self._client.is_closed:
            return False, "client closed"
        return True, None
