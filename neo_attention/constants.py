# Neo Attention Constants
# ================================

# Default model configuration values (GPT-Neo 125M)
DEFAULT_HIDDEN_SIZE = 768          # Hidden / embedding dimension
DEFAULT_NUM_HEADS = 12             # Number of attention heads
DEFAULT_NUM_LAYERS = 12            # Number of attention layers
DEFAULT_WINDOW_SIZE = 256          # Look-back window of local attention layers
DEFAULT_MAX_POSITION_EMBEDDINGS = 2048  # Size of the global causal mask buffer
DEFAULT_DROPOUT = 0.0              # Default attention / residual dropout

# Attention layer types
ATTENTION_GLOBAL = "global"
ATTENTION_LOCAL = "local"
ATTENTION_TYPES = (ATTENTION_GLOBAL, ATTENTION_LOCAL)

# Score replacing masked-out positions before the softmax
MASKED_BIAS = -1e9

# Additive value for padded tokens in global attention masks
PADDING_MASK_VALUE = -10000.0

# Dropout constraints for validation
DROPOUT_MIN = 0.0
DROPOUT_MAX = 1.0                  # Exclusive upper bound
