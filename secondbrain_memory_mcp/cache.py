"""
Embedding cache for SecondBrain Memory System
Copyright 2025 Jurden Bruce
"""

import hashlib
from collections import OrderedDict
from typing import Dict, List, Optional


class EmbeddingCache(OrderedDict):
    """LRU cache of embedding vectors keyed by model and text digest"""
    def __init__(self, maxsize=1000):
        self.maxsize = maxsize
        self.hits = 0
        self.misses = 0
        super().__init__()

    @staticmethod
    def make_key(model: str, text: str) -> str:
        return f"{model}:{hashlib.md5(text.encode()).hexdigest()}"

    def __setitem__(self, key, value):
        if key in self:
            self.move_to_end(key)
        super().__setitem__(key, value)
        if len(self) > self.maxsize:
            oldest = next(iter(self))
            del self[oldest]

    def __getitem__(self, key):
        value = super().__getitem__(key)
        self.move_to_end(key)
        return value

    def lookup(self, model: str, text: str) -> Optional[List[float]]:
        key = self.make_key(model, text)
        if key in self:
            self.hits += 1
            # Hand out a copy so callers can't mutate the cached vector
            return list(self[key])
        self.misses += 1
        return None

    def remember(self, model: str, text: str, vector: List[float]):
        self[self.make_key(model, text)] = list(vector)

    def stats(self) -> Dict[str, int]:
        return {
            "size": len(self),
            "maxsize": self.maxsize,
            "hits": self.hits,
            "misses": self.misses,
        }
