# Shared utilities: validators, retry
from levelscope.utils.retry import with_retry
from levelscope.utils.validators import validate_price, validate_symbol, validate_timeframes

__all__ = [
    "validate_price",
    "validate_symbol",
    "validate_timeframes",
    "with_retry",
]
