"""
Neo Attention - GPT-Neo style global and local self-attention for PyTorch.

GPT-Neo interleaves full causal attention layers with local attention layers
that only look back over a fixed window. This package provides both layer
flavours together with the stateless tensor operations they are built from.

Modules:
- attention_utils.py: head split/merge, look-back windows, block splitting, attend, mask builders
- model.py: NeoSelfAttention (global), NeoLocalSelfAttention (local), NeoAttention (per-layer dispatch)
- configuration_neo.py: transformers-compatible configuration with GPT-Neo presets
- cache_utils.py: cache length introspection for both cache layouts
"""

__version__ = "1.0.0"

from .configuration_neo import NeoAttentionConfig
from .model import NeoAttention, NeoSelfAttention, NeoLocalSelfAttention
from .attention_utils import (
    attend,
    create_local_attention_mask,
    get_block_length_and_num_blocks,
    look_back,
    merge_heads,
    process_attention_mask,
    split_heads,
    split_sequence_length_dim_to,
)
from .cache_utils import get_past_key_values_length

__all__ = [
    "NeoAttentionConfig",
    "NeoAttention",
    "NeoSelfAttention",
    "NeoLocalSelfAttention",
    "attend",
    "create_local_attention_mask",
    "get_block_length_and_num_blocks",
    "look_back",
    "merge_heads",
    "process_attention_mask",
    "split_heads",
    "split_sequence_length_dim_to",
    "get_past_key_values_length",
]
