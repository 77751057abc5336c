"""
Includes:
- Head splitting/merging between [batch, seq, hidden] and per-head layouts
- Block utilities for local attention (block length search, sequence splitting, look-back windows)
- attend: masked dot-product attention returning output and weights
- Mask builders for local (block-wise) and global (additive padding) attention

Every function here is stateless; projections, buffers and dropout modules are
owned by the attention layers in model.py and passed in.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple, Union

import torch
import torch.nn as nn
import torch.nn.functional as F

from .constants import PADDING_MASK_VALUE

logger = logging.getLogger(__name__)


def get_block_length_and_num_blocks(sequence_length: int, window_size: int) -> Tuple[int, int]:
    """
    Pick the block length used to bucket a sequence for local attention.

    The block length is the largest value not exceeding ``window_size`` that
    divides ``sequence_length`` evenly, so the sequence splits into whole blocks.

    Returns:
        (block_length, num_blocks)
    """
    if window_size < 1:
        raise ValueError(f"window_size must be >= 1, got {window_size}")
    if sequence_length < 0:
        raise ValueError(f"sequence_length must be >= 0, got {sequence_length}")

    block_length = window_size
    while sequence_length % block_length != 0:
        block_length -= 1
    num_blocks = sequence_length // block_length

    if block_length != window_size:
        logger.debug(
            "window_size %d does not divide sequence_length %d, using block_length %d",
            window_size, sequence_length, block_length,
        )
    return block_length, num_blocks


def look_back(
    tensor: torch.Tensor,
    block_length: int,
    window_size: int,
    pad_value: Union[int, float] = 0,
    is_key_value: bool = True,
) -> torch.Tensor:
    """
    Build overlapping look-back windows along the sequence dimension.

    The sequence (dim 1) is left-padded with ``window_size`` entries of
    ``pad_value`` and unfolded into windows of ``window_size + block_length``
    positions, one window per block. Window ``i`` covers the block itself plus
    the ``window_size`` positions before it.

    Args:
        tensor: [batch, seq] or [batch, seq, hidden]
        block_length: Block length from get_block_length_and_num_blocks
        window_size: Number of look-back positions
        pad_value: Fill value for the left padding
        is_key_value: Put the window axis before the hidden axis (rank-3 keys/values)

    Returns:
        [batch, num_blocks, window_size + block_length] for rank-2 input,
        [batch, num_blocks, window_size + block_length, hidden] for rank-3 input with is_key_value,
        [batch, num_blocks, hidden, window_size + block_length] for rank-3 input without it
    """
    if tensor.dim() == 3:
        padding = (0, 0, window_size, 0)
    elif tensor.dim() == 2:
        padding = (window_size, 0)
    else:
        raise ValueError(f"Invalid tensor rank, expected 2 or 3, got {tensor.dim()}")

    padded = F.pad(tensor, padding, value=pad_value)
    padded = padded.unfold(dimension=1, size=window_size + block_length, step=block_length)
    if is_key_value:
        padded = padded.transpose(-2, -1)
    return padded


def split_sequence_length_dim_to(
    tensor: torch.Tensor,
    dim_factor_1: int,
    dim_factor_2: int,
    hidden_size: Optional[int] = None,
) -> torch.Tensor:
    """Reshape [batch, seq(, hidden)] into [batch, dim_factor_1, dim_factor_2(, hidden)]."""
    batch_size = tensor.size(0)
    split_dim_shape = (batch_size, dim_factor_1, dim_factor_2)

    if tensor.dim() == 3:
        if hidden_size is None:
            hidden_size = tensor.size(-1)
        return tensor.reshape(split_dim_shape + (hidden_size,))
    elif tensor.dim() == 2:
        return tensor.reshape(split_dim_shape)
    raise ValueError(f"Invalid tensor rank, expected 2 or 3, got {tensor.dim()}")


def split_heads(tensor: torch.Tensor, num_heads: int, attention_head_size: int) -> torch.Tensor:
    """
    Split the hidden dimension into attention heads.

    [batch, seq, hidden] -> [batch, heads, seq, head_size]
    [batch, blocks, block_length, hidden] -> [batch, blocks, heads, block_length, head_size]
    """
    if tensor.dim() not in (3, 4):
        raise ValueError(f"Invalid tensor rank, expected 3 or 4, got {tensor.dim()}")
    if tensor.size(-1) != num_heads * attention_head_size:
        raise ValueError(
            f"Last dimension {tensor.size(-1)} does not match "
            f"num_heads ({num_heads}) * attention_head_size ({attention_head_size})"
        )

    new_shape = tensor.size()[:-1] + (num_heads, attention_head_size)
    tensor = tensor.view(new_shape)
    if tensor.dim() == 5:
        return tensor.permute(0, 1, 3, 2, 4)
    return tensor.permute(0, 2, 1, 3)


def merge_heads(tensor: torch.Tensor, num_heads: int, attention_head_size: int) -> torch.Tensor:
    """Inverse of split_heads."""
    if tensor.dim() == 5:
        tensor = tensor.permute(0, 1, 3, 2, 4).contiguous()
    elif tensor.dim() == 4:
        tensor = tensor.permute(0, 2, 1, 3).contiguous()
    else:
        raise ValueError(f"Invalid tensor rank, expected 4 or 5, got {tensor.dim()}")

    new_shape = tensor.size()[:-2] + (num_heads * attention_head_size,)
    return tensor.view(new_shape)


def attend(
    query: torch.Tensor,
    key: torch.Tensor,
    value: torch.Tensor,
    causal_mask: torch.Tensor,
    masked_bias: Union[torch.Tensor, float],
    attention_dropout: nn.Module,
    attention_mask: Optional[torch.Tensor] = None,
    head_mask: Optional[torch.Tensor] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Masked dot-product attention.

    Scores are computed in float32 without 1/sqrt(head_dim) scaling. Positions
    where ``causal_mask`` is False take ``masked_bias``; ``attention_mask`` is
    added afterwards. Dropout follows the train/eval mode of ``attention_dropout``.

    Args:
        query: [..., q_len, head_dim]
        key: [..., k_len, head_dim]
        value: [..., k_len, head_dim]
        causal_mask: Boolean mask broadcastable to [..., q_len, k_len], True = attend
        masked_bias: Score used for masked positions
        attention_dropout: Dropout module applied to the weights
        attention_mask: Optional additive mask broadcastable to the scores
        head_mask: Optional multiplicative mask broadcastable to the weights

    Returns:
        (output [..., q_len, head_dim], weights [..., q_len, k_len])
    """
    query = query.to(torch.float32)
    key = key.to(torch.float32)

    attention_weights = torch.matmul(query, key.transpose(-1, -2))
    masked_bias = torch.as_tensor(
        masked_bias, dtype=attention_weights.dtype, device=attention_weights.device
    )
    # A bias stored in half precision overflows to -inf; fully masked rows must stay finite
    masked_bias = masked_bias.clamp(min=torch.finfo(attention_weights.dtype).min)
    attention_weights = torch.where(causal_mask.bool(), attention_weights, masked_bias)

    if attention_mask is not None:
        attention_weights = attention_weights + attention_mask

    attention_weights = F.softmax(attention_weights, dim=-1)
    attention_weights = attention_weights.to(value.dtype)
    attention_weights = attention_dropout(attention_weights)

    if head_mask is not None:
        attention_weights = attention_weights * head_mask

    attention_output = torch.matmul(attention_weights, value)
    return attention_output, attention_weights


def create_local_attention_mask(
    batch_size: int,
    seq_length: int,
    window_size: int,
    device: Union[torch.device, str],
    attention_mask: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    Build the block-wise boolean mask consumed by local attention.

    A query may attend a key when the key is not in the future, is not
    look-back padding, is not padded out by ``attention_mask`` and lies fewer
    than ``window_size`` positions behind the query.

    Args:
        batch_size: Number of sequences in batch
        seq_length: Full sequence length (including cached positions)
        window_size: Local attention window
        device: Target device
        attention_mask: Optional [batch, seq_length] padding mask, 1/True = keep

    Returns:
        Boolean mask [batch, num_blocks, 1, block_length, window_size + block_length]
    """
    block_length, num_blocks = get_block_length_and_num_blocks(seq_length, window_size)
    indices = torch.arange(seq_length, dtype=torch.long, device=device).repeat(batch_size, 1)

    query_indices = split_sequence_length_dim_to(indices, num_blocks, block_length)
    key_indices = look_back(indices, block_length, window_size, is_key_value=False)

    # [batch, num_blocks, block_length, window_size + block_length]
    causal_mask = torch.ge(query_indices.unsqueeze(-1), key_indices.unsqueeze(-2))

    if attention_mask is None:
        attention_mask = torch.ones(batch_size, seq_length, dtype=torch.long, device=device)
    elif attention_mask.shape != (batch_size, seq_length):
        raise ValueError(
            f"attention_mask must have shape {(batch_size, seq_length)}, got {tuple(attention_mask.shape)}"
        )

    # Look-back padding comes out as 0 and masks the padded key positions.
    attention_mask = look_back(attention_mask.long(), block_length, window_size, is_key_value=False)
    causal_mask = causal_mask * attention_mask.unsqueeze(-2)

    relative_position = key_indices.unsqueeze(-2) - query_indices.unsqueeze(-1)
    visible = torch.gt(relative_position, -window_size)

    causal_mask = causal_mask * visible
    return causal_mask.unsqueeze(-3).bool()


def process_attention_mask(
    attention_mask: Optional[torch.Tensor],
    dtype: torch.dtype = torch.float32,
) -> Optional[torch.Tensor]:
    """
    Convert a padding mask to the additive form used by global attention.

    - None stays None (no padding)
    - [batch, seq] bool or 0/1 masks become [batch, 1, 1, seq] with 0.0 for
      kept tokens and PADDING_MASK_VALUE for padded ones
    - rank-4 masks are assumed to be additive already and are only cast

    Args:
        attention_mask: Input mask tensor or None
        dtype: Floating dtype of the returned mask

    Returns:
        Additive attention mask broadcastable to [batch, heads, q_len, k_len], or None
    """
    if attention_mask is None:
        return None

    if attention_mask.dim() == 4:
        return attention_mask.to(dtype)
    if attention_mask.dim() != 2:
        raise ValueError(f"Unsupported attention mask shape: {tuple(attention_mask.shape)}")

    keep = attention_mask if attention_mask.dtype == torch.bool else attention_mask > 0
    keep = keep[:, None, None, :]
    return (1.0 - keep.to(dtype)) * PADDING_MASK_VALUE
