"""
Settlement payload codec.

The payload handed to the lender (and echoed back in the callback) is a
tagged union::

    envelope   = abi.encode(uint8 shape, bytes body)

    TWO_HOP    = abi.encode(address tokenIntermediate, uint24 feeA, uint24 feeB,
                            uint256 amountOutMinimum)
    TRIANGULAR = abi.encode(address tokenA, address tokenB, address tokenC,
                            uint24 fee1, uint24 fee2, uint24 fee3,
                            uint256 amountOutMinimumFinal)
    GENERAL    = abi.encode((address venue, address tokenIn, address tokenOut,
                             uint24 fee, uint256 minOut, uint8 dexType)[] steps,
                            address borrowedToken)

Venue flash swaps wrap the envelope with the pool key so the callback can
re-derive the pool address::

    abi.encode(address token0, address token1, uint24 fee, bytes envelope)

Decoding checks the discriminant first, then requires the body to re-encode
to exactly the bytes received. Any mismatch is a PayloadDecodeError.
"""

from typing import List, Optional, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from web3 import Web3

from .calculator import POOL_INIT_CODE_HASH, V3_FACTORY, compute_pool_address
from .errors import PayloadDecodeError, ValidationError
from .models import PathShape, PoolKey, SwapPath, SwapStep, VenueType, same_address

ENVELOPE_TYPES = ['uint8', 'bytes']
TWO_HOP_TYPES = ['address', 'uint24', 'uint24', 'uint256']
TRIANGULAR_TYPES = ['address', 'address', 'address', 'uint24', 'uint24', 'uint24', 'uint256']
GENERAL_TYPES = ['(address,address,address,uint24,uint256,uint8)[]', 'address']
FLASH_SWAP_DATA_TYPES = ['address', 'address', 'uint24', 'bytes']

BODY_TYPES = {
    PathShape.TWO_HOP: TWO_HOP_TYPES,
    PathShape.TRIANGULAR: TRIANGULAR_TYPES,
    PathShape.GENERAL: GENERAL_TYPES,
}


def _checksum(address: str) -> str:
    return Web3.to_checksum_address(address)


def _strict_decode(types: List[str], data: bytes, what: str) -> tuple:
    try:
        values = decode(types, data)
    except (DecodingError, ValueError, OverflowError) as e:
        raise PayloadDecodeError(f"Malformed {what}", {"error": str(e), "length": len(data)}) from e
    try:
        canonical = encode(types, list(values))
    except (EncodingError, ValueError) as e:
        raise PayloadDecodeError(f"Malformed {what}", {"error": str(e)}) from e
    if canonical != bytes(data):
        raise PayloadDecodeError(
            f"{what} does not match its declared layout",
            {"expected_length": len(canonical), "length": len(data)},
        )
    return values


# ============================================
# Shape selection
# ============================================

def fixed_shape_for(
    path: SwapPath,
    factory: str = V3_FACTORY,
    init_code_hash: str = POOL_INIT_CODE_HASH
) -> Optional[PathShape]:
    """
    Return TWO_HOP or TRIANGULAR if ``path`` fits one of the fixed shapes.

    Fixed shapes route by fee tier, so every hop must be a concentrated venue
    at its canonical address, and every intermediate hop must accept a zero
    minimum.
    """
    if not path.all_concentrated:
        return None
    if any(step.min_out != 0 for step in path.steps[:-1]):
        return None
    for step in path.steps:
        expected = compute_pool_address(step.token_in, step.token_out, step.fee, factory, init_code_hash)
        if not same_address(step.venue, expected):
            return None
    distinct = {token.lower() for token in path.tokens}
    if len(path) == 2 and len(distinct) == 2:
        return PathShape.TWO_HOP
    if len(path) == 3 and len(distinct) == 3:
        return PathShape.TRIANGULAR
    return None


# ============================================
# Encoding
# ============================================

def encode_payload(
    path: SwapPath,
    shape: PathShape,
    factory: str = V3_FACTORY,
    init_code_hash: str = POOL_INIT_CODE_HASH
) -> bytes:
    """Encode ``path`` into the envelope for ``shape``."""
    shape = PathShape(shape)

    if shape in (PathShape.TWO_HOP, PathShape.TRIANGULAR):
        if fixed_shape_for(path, factory, init_code_hash) != shape:
            raise ValidationError(
                "Path does not fit the requested fixed shape",
                {"shape": shape.name, "hops": len(path)},
            )

    steps = path.steps
    if shape == PathShape.TWO_HOP:
        body = encode(TWO_HOP_TYPES, [
            _checksum(steps[0].token_out),
            steps[0].fee,
            steps[1].fee,
            steps[1].min_out,
        ])
    elif shape == PathShape.TRIANGULAR:
        body = encode(TRIANGULAR_TYPES, [
            _checksum(steps[0].token_in),
            _checksum(steps[1].token_in),
            _checksum(steps[2].token_in),
            steps[0].fee,
            steps[1].fee,
            steps[2].fee,
            steps[2].min_out,
        ])
    else:
        body = encode(GENERAL_TYPES, [
            [
                (
                    _checksum(step.venue),
                    _checksum(step.token_in),
                    _checksum(step.token_out),
                    step.fee,
                    step.min_out,
                    int(step.venue_type),
                )
                for step in steps
            ],
            _checksum(path.borrowed_token),
        ])

    return encode(ENVELOPE_TYPES, [int(shape), body])


def encode_flash_swap_data(pool_key: PoolKey, payload: bytes) -> bytes:
    return encode(FLASH_SWAP_DATA_TYPES, [
        _checksum(pool_key.token0),
        _checksum(pool_key.token1),
        pool_key.fee,
        payload,
    ])


# ============================================
# Decoding
# ============================================

def decode_flash_swap_data(data: bytes) -> Tuple[PoolKey, bytes]:
    token0, token1, fee, payload = _strict_decode(FLASH_SWAP_DATA_TYPES, data, "flash swap data")
    return PoolKey(_checksum(token0), _checksum(token1), fee), bytes(payload)


def decode_payload(
    data: bytes,
    borrowed_token: str,
    factory: str = V3_FACTORY,
    init_code_hash: str = POOL_INIT_CODE_HASH
) -> Tuple[PathShape, SwapPath]:
    """
    Decode an envelope into (shape, path).

    Raises PayloadDecodeError for unknown discriminants or bodies that do not
    match their shape, and ValidationError when the decoded path is not a
    closed loop on ``borrowed_token``.
    """
    raw_shape, body = _strict_decode(ENVELOPE_TYPES, data, "payload envelope")
    try:
        shape = PathShape(raw_shape)
    except ValueError:
        raise PayloadDecodeError("Unknown payload discriminant", {"shape": raw_shape}) from None

    values = _strict_decode(BODY_TYPES[shape], bytes(body), f"{shape.name} body")
    borrowed = _checksum(borrowed_token)

    def cl_step(token_in: str, token_out: str, fee: int, min_out: int) -> SwapStep:
        return SwapStep(
            venue=compute_pool_address(token_in, token_out, fee, factory, init_code_hash),
            token_in=_checksum(token_in),
            token_out=_checksum(token_out),
            fee=fee,
            min_out=min_out,
            venue_type=VenueType.CONCENTRATED,
        )

    if shape == PathShape.TWO_HOP:
        intermediate, fee_a, fee_b, amount_out_minimum = values
        steps = (
            cl_step(borrowed, intermediate, fee_a, 0),
            cl_step(intermediate, borrowed, fee_b, amount_out_minimum),
        )
    elif shape == PathShape.TRIANGULAR:
        token_a, token_b, token_c, fee1, fee2, fee3, amount_out_minimum = values
        if not same_address(token_a, borrowed):
            raise ValidationError(
                "Triangular path must start on the borrowed token",
                {"token_a": token_a, "borrowed": borrowed},
            )
        steps = (
            cl_step(token_a, token_b, fee1, 0),
            cl_step(token_b, token_c, fee2, 0),
            cl_step(token_c, token_a, fee3, amount_out_minimum),
        )
    else:
        raw_steps, path_borrowed = values
        if not same_address(path_borrowed, borrowed):
            raise ValidationError(
                "Payload borrowed token does not match the loan",
                {"payload": path_borrowed, "loan": borrowed},
            )
        decoded = []
        for venue, token_in, token_out, fee, min_out, dex_type in raw_steps:
            try:
                venue_type = VenueType(dex_type)
            except ValueError:
                raise PayloadDecodeError("Unknown venue type", {"dex_type": dex_type}) from None
            decoded.append(SwapStep(
                venue=_checksum(venue),
                token_in=_checksum(token_in),
                token_out=_checksum(token_out),
                fee=fee,
                min_out=min_out,
                venue_type=venue_type,
            ))
        steps = tuple(decoded)

    return shape, SwapPath(steps, borrowed)
