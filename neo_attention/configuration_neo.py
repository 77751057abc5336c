"""
Configuration for GPT-Neo style attention layers.

Builds on HuggingFace's PretrainedConfig so the attention settings serialize,
diff and reload the same way any transformers config does. Validation happens
eagerly in __init__ so that an inconsistent configuration fails before any
layer is built.

The attention layout follows the GPT-Neo run-length convention: a list of
``[pattern, repeat]`` pairs, e.g. ``[[["global", "local"], 12]]`` for 24
layers alternating global and local attention.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from transformers import PretrainedConfig

from .constants import (
    ATTENTION_GLOBAL,
    ATTENTION_LOCAL,
    ATTENTION_TYPES,
    DEFAULT_DROPOUT,
    DEFAULT_HIDDEN_SIZE,
    DEFAULT_MAX_POSITION_EMBEDDINGS,
    DEFAULT_NUM_HEADS,
    DEFAULT_NUM_LAYERS,
    DEFAULT_WINDOW_SIZE,
    DROPOUT_MAX,
    DROPOUT_MIN,
)

logger = logging.getLogger(__name__)


class NeoAttentionConfig(PretrainedConfig):
    """
    GPT-Neo attention configuration with validation.

    Checks performed on construction:
    - hidden_size must be divisible by num_heads
    - the expanded attention_types must describe exactly num_layers layers
    - every layer type must be "global" or "local"
    - window_size must be positive and dropouts must lie in [0, 1)
    """
    model_type = "neo_attention"
    attribute_map = {"num_attention_heads": "num_heads", "num_hidden_layers": "num_layers"}

    def __init__(
        self,
        hidden_size: int = DEFAULT_HIDDEN_SIZE,
        num_heads: int = DEFAULT_NUM_HEADS,
        num_layers: int = DEFAULT_NUM_LAYERS,
        attention_types: Optional[List[Any]] = None,
        window_size: int = DEFAULT_WINDOW_SIZE,
        max_position_embeddings: int = DEFAULT_MAX_POSITION_EMBEDDINGS,
        attention_dropout: float = DEFAULT_DROPOUT,
        resid_dropout: float = DEFAULT_DROPOUT,
        **kwargs
    ):
        if attention_types is None:
            attention_types = [[[ATTENTION_GLOBAL, ATTENTION_LOCAL], num_layers // 2]]

        if num_heads < 1:
            raise ValueError(f"num_heads must be >= 1, got {num_heads}")
        if hidden_size % num_heads != 0:
            raise ValueError(f"hidden_size ({hidden_size}) must be divisible by num_heads ({num_heads})")
        if window_size < 1:
            raise ValueError(f"window_size must be >= 1, got {window_size}")
        if max_position_embeddings < 1:
            raise ValueError(f"max_position_embeddings must be >= 1, got {max_position_embeddings}")
        for name, value in (("attention_dropout", attention_dropout), ("resid_dropout", resid_dropout)):
            if not (DROPOUT_MIN <= value < DROPOUT_MAX):
                raise ValueError(f"{name} must be in [{DROPOUT_MIN}, {DROPOUT_MAX}), got {value}")

        attention_layers = self.expand_attention_types_params(attention_types)
        if len(attention_layers) != num_layers:
            raise ValueError(
                "attention_types does not describe one attention type per layer. "
                f"`len(attention_layers)` == {len(attention_layers)} but `num_layers` == {num_layers}."
            )
        unknown = sorted(set(attention_layers) - set(ATTENTION_TYPES))
        if unknown:
            raise ValueError(f"Unknown attention types {unknown}, expected one of {list(ATTENTION_TYPES)}")

        self.hidden_size = hidden_size
        self.num_heads = num_heads
        self.num_layers = num_layers
        self.attention_types = attention_types
        self.attention_layers = attention_layers
        self.window_size = window_size
        self.max_position_embeddings = max_position_embeddings
        self.attention_dropout = attention_dropout
        self.resid_dropout = resid_dropout

        # attention_layers is derived from attention_types; drop the serialized copy
        kwargs.pop("attention_layers", None)
        super().__init__(**kwargs)

    @staticmethod
    def expand_attention_types_params(attention_types: List[Any]) -> List[str]:
        """Expand ``[[pattern, repeat], ...]`` into one attention type per layer."""
        attentions = []
        for pattern, repeat in attention_types:
            for _ in range(repeat):
                attentions.extend(pattern)
        return attentions

    @classmethod
    def from_preset(cls, preset: str) -> 'NeoAttentionConfig':
        """
        Load configuration from predefined presets.

        The gpt-neo-* presets carry the attention settings of the published
        EleutherAI checkpoints; "tiny" is a small layout for tests and quick
        experiments.
        """
        presets: Dict[str, Dict[str, Any]] = {
            "tiny": {
                "hidden_size": 64, "num_heads": 4, "num_layers": 2,
                "attention_types": [[[ATTENTION_GLOBAL, ATTENTION_LOCAL], 1]],
                "window_size": 4, "max_position_embeddings": 64,
            },
            "gpt-neo-125M": {
                "hidden_size": 768, "num_heads": 12, "num_layers": 12,
                "attention_types": [[[ATTENTION_GLOBAL, ATTENTION_LOCAL], 6]],
                "window_size": 256, "max_position_embeddings": 2048,
            },
            "gpt-neo-1.3B": {
                "hidden_size": 2048, "num_heads": 16, "num_layers": 24,
                "attention_types": [[[ATTENTION_GLOBAL, ATTENTION_LOCAL], 12]],
                "window_size": 256, "max_position_embeddings": 2048,
            },
            "gpt-neo-2.7B": {
                "hidden_size": 2560, "num_heads": 20, "num_layers": 32,
                "attention_types": [[[ATTENTION_GLOBAL, ATTENTION_LOCAL], 16]],
                "window_size": 256, "max_position_embeddings": 2048,
            },
        }

        if preset not in presets:
            available = list(presets.keys())
            raise ValueError(f"Invalid preset '{preset}'. Available presets: {available}")

        logger.debug("Loading attention preset %s", preset)
        return cls(**presets[preset])
