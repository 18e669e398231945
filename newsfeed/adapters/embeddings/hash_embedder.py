from __future__ import annotations
import hashlib
import re
from typing import List

import numpy as np

from newsfeed.adapters.embeddings.tokens import check_input
from newsfeed.ports.embedding import EmbedResult, Fatal, Ok


class HashingEmbedder:
    """
    轻量可运行的占位嵌入器：
    - 将文本分词后用稳定哈希（blake2b）投影到固定维度
    - L2 归一化，便于余弦相似度
    本地开发/测试用；生产走 HttpEmbeddingClient。
    """
    def __init__(self, dim: int = 64, seed: int = 42, max_tokens: int = 8191):
        self.dim = dim
        self._seed = seed
        self.max_tokens = max_tokens
        self.model_version = f"hash-{dim}-{seed}"

    def _tokenize(self, text: str) -> List[str]:
        return re.findall(r"[A-Za-z0-9']+", (text or "").lower())

    def _bucket(self, tok: str) -> int:
        h = hashlib.blake2b(f"{self._seed}:{tok}".encode("utf-8"), digest_size=8).digest()
        return int.from_bytes(h, "big") % self.dim

    def embed_text(self, text: str) -> List[float]:
        vec = np.zeros(self.dim, dtype=np.float32)
        for tok in self._tokenize(text):
            vec[self._bucket(tok)] += 1.0
        norm = np.linalg.norm(vec) + 1e-12
        return (vec / norm).tolist()

    async def embed(self, text: str) -> EmbedResult:
        reason = check_input(text, self.max_tokens)
        if reason:
            return Fatal(reason, invalid_input=True)
        if not self._tokenize(text):
            return Fatal("no embeddable tokens", invalid_input=True)
        return Ok(self.embed_text(text))

    async def aclose(self) -> None:
        return None

    def ping_detail(self) -> tuple[bool, str | None]:
        return True, None
