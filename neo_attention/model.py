# Neo Attention - GPT-Neo style global and local self-attention
# ============================================================
#
# GPT-Neo alternates two attention flavours across its layers:
# - Global attention: full causal self-attention over every previous position
# - Local attention: causal self-attention restricted to the last `window_size`
#   positions, computed block-wise so memory grows with the window, not the sequence
#
# Both layers share the same projection layout (bias-free q/k/v, biased output
# projection) and the same scoring routine (`attend`), so a checkpoint's weights
# load into either flavour unchanged.
#
# Caching for incremental decoding:
# - Global layers cache head-split keys and values, (key, value)
# - Local layers cache the raw hidden states, (hidden_states,), and recompute the
#   last look-back window from them at each step

import logging
from typing import Optional, Tuple

import torch
import torch.nn as nn

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
from .configuration_neo import NeoAttentionConfig
from .constants import ATTENTION_GLOBAL, ATTENTION_LOCAL, MASKED_BIAS

logger = logging.getLogger(__name__)


class _NeoAttentionBase(nn.Module):
    """Projections, dropouts and the masked bias shared by both attention flavours."""

    def __init__(self, config: NeoAttentionConfig):
        super().__init__()
        self.config = config

        # Attention configuration
        self.embed_dim = config.hidden_size
        self.num_heads = config.num_heads
        self.head_dim = self.embed_dim // self.num_heads
        if self.head_dim * self.num_heads != self.embed_dim:
            raise ValueError(
                f"embed_dim must be divisible by num_heads (got `embed_dim`: {self.embed_dim} "
                f"and `num_heads`: {self.num_heads})."
            )

        self.register_buffer("masked_bias", torch.tensor(MASKED_BIAS), persistent=False)

        self.attn_dropout = nn.Dropout(config.attention_dropout)
        self.resid_dropout = nn.Dropout(config.resid_dropout)

        # Linear layers for attention
        self.k_proj = nn.Linear(self.embed_dim, self.embed_dim, bias=False)
        self.v_proj = nn.Linear(self.embed_dim, self.embed_dim, bias=False)
        self.q_proj = nn.Linear(self.embed_dim, self.embed_dim, bias=False)
        self.out_proj = nn.Linear(self.embed_dim, self.embed_dim, bias=True)


class NeoSelfAttention(_NeoAttentionBase):
    """
    Global causal self-attention.

    Every position attends to itself and all previous positions. The causal
    pattern is read from a lower-triangular buffer of max_position_embeddings,
    sliced to account for cached positions during incremental decoding.
    """

    def __init__(self, config: NeoAttentionConfig):
        super().__init__(config)
        max_positions = config.max_position_embeddings
        self.max_positions = max_positions
        self.register_buffer(
            "bias",
            torch.tril(torch.ones((max_positions, max_positions), dtype=torch.uint8)).view(
                1, 1, max_positions, max_positions
            ),
            persistent=False,
        )

    def forward(
        self,
        hidden_states: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
        layer_past: Optional[Tuple[torch.Tensor, torch.Tensor]] = None,
        head_mask: Optional[torch.Tensor] = None,
        use_cache: bool = False,
        output_attentions: bool = False,
    ) -> Tuple:
        """
        Args:
            hidden_states: [batch, seq_len, hidden]
            attention_mask: [batch, past_len + seq_len] padding mask, or an additive
                mask broadcastable to [batch, heads, seq_len, past_len + seq_len]
            layer_past: Cached (key, value) from previous steps
            head_mask: Optional multiplicative mask over attention weights
            use_cache: Return the updated (key, value) cache
            output_attentions: Also return the attention weights

        Returns:
            (output, present) or (output, present, attention_weights)
        """
        query = self.q_proj(hidden_states)
        key = self.k_proj(hidden_states)
        value = self.v_proj(hidden_states)

        query = split_heads(query, self.num_heads, self.head_dim)
        key = split_heads(key, self.num_heads, self.head_dim)
        value = split_heads(value, self.num_heads, self.head_dim)

        # Handle KV caching
        if layer_past is not None:
            past_key, past_value = layer_past
            key = torch.cat((past_key, key), dim=-2)
            value = torch.cat((past_value, value), dim=-2)

        present = (key, value) if use_cache else None

        query_length, key_length = query.size(-2), key.size(-2)
        if key_length > self.max_positions:
            raise ValueError(
                f"Sequence length {key_length} exceeds max_position_embeddings ({self.max_positions})"
            )
        causal_mask = self.bias[:, :, key_length - query_length : key_length, :key_length].bool()

        attention_mask = process_attention_mask(attention_mask)

        attn_output, attn_weights = attend(
            query,
            key,
            value,
            causal_mask,
            self.masked_bias,
            self.attn_dropout,
            attention_mask=attention_mask,
            head_mask=head_mask,
        )

        attn_output = merge_heads(attn_output, self.num_heads, self.head_dim)
        attn_output = self.out_proj(attn_output)
        attn_output = self.resid_dropout(attn_output)

        outputs = (attn_output, present)
        if output_attentions:
            outputs += (attn_weights,)
        return outputs


class NeoLocalSelfAttention(_NeoAttentionBase):
    """
    Local (sliding window) causal self-attention.

    The sequence is cut into blocks of block_length queries; each block
    attends to itself plus the window_size positions before it, and the
    block-wise mask limits every query to its last window_size positions.
    """

    def __init__(self, config: NeoAttentionConfig):
        super().__init__(config)
        self.window_size = config.window_size

    def forward(
        self,
        hidden_states: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
        layer_past: Optional[Tuple[torch.Tensor]] = None,
        head_mask: Optional[torch.Tensor] = None,
        use_cache: bool = False,
        output_attentions: bool = False,
    ) -> Tuple:
        """
        Args:
            hidden_states: [batch, seq_len, hidden]
            attention_mask: Precomputed local mask from create_local_attention_mask,
                a [batch, past_len + seq_len] padding mask, or None
            layer_past: Cached (hidden_states,) from previous steps; only a single
                new token is accepted when it is given
            head_mask: Optional multiplicative mask over attention weights
            use_cache: Unused here, the hidden-state cache is built by NeoAttention
            output_attentions: Also return the attention weights

        Returns:
            (output,) or (output, attention_weights)
        """
        batch_size, seq_length = hidden_states.shape[:2]
        query = self.q_proj(hidden_states)

        if layer_past is not None:
            if seq_length != 1:
                raise ValueError(
                    f"Local attention with layer_past expects a single new token, got {seq_length}"
                )
            past = layer_past[0]
            key_value_hidden_states = torch.cat([past, hidden_states], dim=1)
            past_length = get_past_key_values_length(layer_past)
        else:
            key_value_hidden_states = hidden_states
            past_length = 0

        key = self.k_proj(key_value_hidden_states)
        value = self.v_proj(key_value_hidden_states)

        full_seq_length = seq_length + past_length
        block_length, num_blocks = get_block_length_and_num_blocks(full_seq_length, self.window_size)

        if attention_mask is None or attention_mask.dim() == 2:
            attention_mask = create_local_attention_mask(
                batch_size,
                full_seq_length,
                self.window_size,
                hidden_states.device,
                attention_mask=attention_mask,
            )
        elif attention_mask.dim() != 5:
            raise ValueError(
                f"Local attention mask must be a [batch, seq] padding mask or a 5-D block mask, "
                f"got shape {tuple(attention_mask.shape)}"
            )

        # Create buckets; a cached step only needs a single block of length 1
        if layer_past is not None:
            query = split_sequence_length_dim_to(query, 1, 1, self.embed_dim)
        else:
            query = split_sequence_length_dim_to(query, num_blocks, block_length, self.embed_dim)

        key = look_back(key, block_length, self.window_size)
        value = look_back(value, block_length, self.window_size)

        # Select key/value vectors only for the last block
        if layer_past is not None:
            key = key[:, -1:, ...]
            value = value[:, -1:, ...]
            attention_mask = attention_mask[:, -1:, :, -1:, :]

        query = split_heads(query, self.num_heads, self.head_dim)
        key = split_heads(key, self.num_heads, self.head_dim)
        value = split_heads(value, self.num_heads, self.head_dim)

        attn_output, attn_weights = attend(
            query,
            key,
            value,
            causal_mask=attention_mask,
            masked_bias=self.masked_bias,
            attention_dropout=self.attn_dropout,
            head_mask=head_mask,
        )

        attn_output = merge_heads(attn_output, self.num_heads, self.head_dim)
        attn_output = attn_output.reshape(batch_size, seq_length, self.embed_dim)

        attn_output = self.out_proj(attn_output)
        attn_output = self.resid_dropout(attn_output)

        outputs = (attn_output,)
        if output_attentions:
            outputs += (attn_weights,)
        return outputs


class NeoAttention(nn.Module):
    """
    Per-layer attention dispatcher.

    Reads the attention type for ``layer_idx`` from ``config.attention_layers``
    and wraps the matching layer. Both flavours return
    ``(output, present[, attention_weights])``; for local layers ``present`` is
    the hidden-state cache ``(past_hidden_states,)``, built only when
    ``use_cache`` is set.
    """

    def __init__(self, config: NeoAttentionConfig, layer_idx: int = 0):
        super().__init__()
        self.layer_idx = layer_idx
        self.attention_layers = config.attention_layers
        self.attention_type = self.attention_layers[layer_idx]

        if self.attention_type == ATTENTION_GLOBAL:
            self.attention = NeoSelfAttention(config)
        elif self.attention_type == ATTENTION_LOCAL:
            self.attention = NeoLocalSelfAttention(config)
        else:
            raise NotImplementedError(
                "Only attn layer types 'global' and 'local' exist, but got `config.attention_layers`: "
                f"{config.attention_layers}. Select attn layer types from ['global', 'local'] only."
            )
        logger.debug("Layer %d uses %s attention", layer_idx, self.attention_type)

    def forward(
        self,
        hidden_states: torch.Tensor,
        layer_past: Optional[Tuple[torch.Tensor, ...]] = None,
        attention_mask: Optional[torch.Tensor] = None,
        head_mask: Optional[torch.Tensor] = None,
        use_cache: bool = False,
        output_attentions: bool = False,
    ) -> Tuple:
        outputs = self.attention(
            hidden_states,
            attention_mask=attention_mask,
            layer_past=layer_past,
            head_mask=head_mask,
            use_cache=use_cache,
            output_attentions=output_attentions,
        )

        # Local layers cache hidden states instead of keys/values
        if self.attention_type == ATTENTION_LOCAL:
            present = None
            if use_cache:
                if layer_past is None:
                    present = (hidden_states,)
                else:
                    present = (torch.cat([layer_past[0], hidden_states], dim=1),)
            outputs = (outputs[0], present) + outputs[1:]
        return outputs
