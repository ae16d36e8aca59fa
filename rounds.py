from errors import InvalidInput

DEFAULT_BLOCK_DIV = 128


def check_block_div(block_div: int) -> int:
    if block_div <= 0:
        raise InvalidInput(f"Epoch length must be positive, got {block_div}")
    return block_div


def round_of(block_number: int, block_div: int = DEFAULT_BLOCK_DIV) -> int:
    """Round id containing ``block_number``."""
    check_block_div(block_div)
    if block_number < 0:
        raise InvalidInput(f"Block number must be non-negative, got {block_number}")
    return block_number // block_div


def offset_of(block_number: int, block_div: int = DEFAULT_BLOCK_DIV) -> int:
    """Blocks elapsed inside the round containing ``block_number``."""
    check_block_div(block_div)
    if block_number < 0:
        raise InvalidInput(f"Block number must be non-negative, got {block_number}")
    return block_number % block_div
