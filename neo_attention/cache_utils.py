"""
Cache utilities for per-layer attention caches.

Global attention layers cache head-split keys and values, ``(key, value)``
with shape [batch, heads, seq, head_dim]. Local attention layers cache the raw
hidden states, ``(hidden_states,)`` with shape [batch, seq, hidden]. In both
layouts the cached sequence sits on dimension -2.
"""

from typing import List, Optional, Sequence, Tuple, Union

import torch

LayerPast = Tuple[torch.Tensor, ...]


def get_past_key_values_length(
    layer_past: Optional[Union[LayerPast, List[LayerPast]]]
) -> int:
    """
    Get the number of cached positions, handling the different cache layouts.

    Accepted formats:
    1. None (no cache)
    2. A single layer cache: (key, value) or (hidden_states,)
    3. A list/tuple of layer caches: [(k1, v1), (hidden_states2,), ...]

    Args:
        layer_past: Layer cache, list of layer caches, or None

    Returns:
        int: Number of cached positions (0 if None or empty)

    Raises:
        TypeError: If layer_past is of an unexpected type
    """
    if layer_past is None:
        return 0

    if isinstance(layer_past, (list, tuple)):
        if len(layer_past) == 0:
            return 0

        first = layer_past[0]

        # Single layer cache: (k, v) or (hidden_states,)
        if isinstance(first, torch.Tensor):
            if first.dim() >= 2:
                return int(first.size(-2))
            return 0

        # Per-layer caches: [(k1, v1), (h2,), ...]
        if isinstance(first, Sequence) and len(first) >= 1 and isinstance(first[0], torch.Tensor):
            if first[0].dim() >= 2:
                return int(first[0].size(-2))
            return 0

    raise TypeError(
        f"Unsupported layer_past type: {type(layer_past)}. "
        f"Expected a tuple of tensors or a list of such tuples, got {layer_past!r}"
    )
