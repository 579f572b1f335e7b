"""
Integer math shared by the settlement engine, the local venues and the simulator.

⚡ Integer-only arithmetic in every path that touches repayment or profit:
the flash fee must match the lender's own accounting bit-for-bit.

核心公式（Uniswap V3）：
- price = (sqrtPriceX96 / 2^96)^2 * 10^(dec0 - dec1)
- flash fee = floor(amount * fee / 1_000_000)
"""

from typing import Tuple

from eth_abi import encode
from web3 import Web3

# ============================================
# Pre-computed Constants
# ============================================

Q96 = 2 ** 96
Q96_SQUARED = 2 ** 192

# Fees are parts-per-million; slippage and divergence are basis points.
FEE_DENOMINATOR = 1_000_000
BPS_DENOMINATOR = 10_000

# Base Mainnet V3 deployment
V3_FACTORY = "0x33128a8fC17869897dcE68Ed026d694621f6FDfD"
POOL_INIT_CODE_HASH = "0xe34f199b19b2b4f47f68442619d555527d244f78a3297ea89325f843f87b8b54"


# ============================================
# Fees / repayment / profit
# ============================================

def flash_fee(amount: int, fee_ppm: int) -> int:
    """Lender fee for borrowing ``amount``: floor(amount * fee_ppm / 1e6)."""
    if amount < 0 or fee_ppm < 0:
        raise ValueError("amount and fee must be non-negative")
    return (amount * fee_ppm) // FEE_DENOMINATOR


def total_repayment(amount: int, fee_ppm: int) -> int:
    return amount + flash_fee(amount, fee_ppm)


def split_net_profit(net_profit: int, tithe_percent: int) -> Tuple[int, int]:
    """Return (tithe, operator); the operator absorbs the rounding."""
    tithe = (net_profit * tithe_percent) // 100
    return tithe, net_profit - tithe


def min_amount_out(quoted_amount: int, slippage_bps: int) -> int:
    """
    Minimum acceptable output with slippage tolerance.

    min_out = quoted * (10000 - slippage) / 10000
    """
    if not 0 <= slippage_bps < BPS_DENOMINATOR:
        raise ValueError(f"slippage_bps out of range: {slippage_bps}")
    return (quoted_amount * (BPS_DENOMINATOR - slippage_bps)) // BPS_DENOMINATOR


def apply_gas_buffer(gas: int, buffer_percent: int = 20) -> int:
    return (gas * (100 + buffer_percent)) // 100


# ============================================
# Prices
# ============================================

def sqrt_price_x96_to_price(
    sqrtPriceX96: int,
    decimals0: int = 18,
    decimals1: int = 18
) -> float:
    """Convert sqrtPriceX96 to a token1-per-token0 price."""
    if sqrtPriceX96 == 0:
        return 0.0

    price_squared = sqrtPriceX96 * sqrtPriceX96
    if decimals0 >= decimals1:
        return (price_squared * 10 ** (decimals0 - decimals1)) / Q96_SQUARED
    return price_squared / (Q96_SQUARED * 10 ** (decimals1 - decimals0))


def reserves_to_price(
    reserve0: int,
    reserve1: int,
    decimals0: int = 18,
    decimals1: int = 18
) -> float:
    """Constant-product spot price, token1 per token0."""
    if reserve0 == 0:
        return 0.0
    if decimals0 >= decimals1:
        return (reserve1 * 10 ** (decimals0 - decimals1)) / reserve0
    return reserve1 / (reserve0 * 10 ** (decimals1 - decimals0))


def divergence_bps(price_high: float, price_low: float) -> float:
    if price_low <= 0:
        return 0.0
    return (price_high - price_low) / price_low * BPS_DENOMINATOR


# ============================================
# Swap output math
# ============================================

def get_v3_amount_out(
    amount_in: int,
    sqrtPriceX96: int,
    liquidity: int,
    fee: int,
    zero_for_one: bool
) -> Tuple[int, int, int]:
    """
    V3 swap output within the current liquidity range.

    Returns (amount_out, fee_amount, sqrt_price_after). Tick crossings are
    not modelled: the whole input is assumed to stay inside one range.

    - token0 -> token1: dy = L * (sqrt_P_old - sqrt_P_new)
    - token1 -> token0: dx = L * (1/sqrt_P_new - 1/sqrt_P_old)
    """
    if amount_in <= 0 or liquidity <= 0 or sqrtPriceX96 <= 0:
        return 0, 0, sqrtPriceX96

    fee_amount = (amount_in * fee) // FEE_DENOMINATOR
    amount_after_fee = amount_in - fee_amount

    if zero_for_one:
        # sqrt_P_new = L * sqrt_P / (L + dx * sqrt_P), all in Q96
        numerator = liquidity * Q96 * sqrtPriceX96
        denominator = liquidity * Q96 + amount_after_fee * sqrtPriceX96
        sqrt_price_new = -(-numerator // denominator)  # round up, like the pool
        amount_out = liquidity * (sqrtPriceX96 - sqrt_price_new) // Q96
    else:
        # sqrt_P_new = sqrt_P + dy / L
        sqrt_price_new = sqrtPriceX96 + (amount_after_fee * Q96) // liquidity
        amount_out = (
            liquidity * Q96 * (sqrt_price_new - sqrtPriceX96)
            // (sqrt_price_new * sqrtPriceX96)
        )

    return max(0, amount_out), fee_amount, sqrt_price_new


def get_amount_out(
    amount_in: int,
    reserve_in: int,
    reserve_out: int,
    fee: int = 3000
) -> int:
    """Constant-product swap output (V2 formula, fee in ppm)."""
    if amount_in <= 0 or reserve_in <= 0 or reserve_out <= 0:
        return 0

    amount_in_with_fee = amount_in * (FEE_DENOMINATOR - fee)
    numerator = amount_in_with_fee * reserve_out
    denominator = reserve_in * FEE_DENOMINATOR + amount_in_with_fee

    return numerator // denominator


# ============================================
# Pool address derivation (CREATE2)
# ============================================

def sort_tokens(token_a: str, token_b: str) -> Tuple[str, str]:
    if token_a.lower() < token_b.lower():
        return token_a, token_b
    return token_b, token_a


def compute_pool_address(
    token0: str,
    token1: str,
    fee: int,
    factory: str = V3_FACTORY,
    init_code_hash: str = POOL_INIT_CODE_HASH
) -> str:
    """
    Canonical concentrated-liquidity pool address (CREATE2).

    address = keccak256(0xff ++ factory ++ keccak256(abi.encode(t0, t1, fee)) ++ init_code_hash)[12:]
    """
    token0, token1 = sort_tokens(token0, token1)

    salt = Web3.keccak(encode(
        ['address', 'address', 'uint24'],
        [Web3.to_checksum_address(token0), Web3.to_checksum_address(token1), fee]
    ))

    create2_input = (
        b'\xff'
        + bytes.fromhex(factory[2:])
        + bytes(salt)
        + bytes.fromhex(init_code_hash[2:])
    )
    pool_address = bytes(Web3.keccak(create2_input))[-20:]

    return Web3.to_checksum_address("0x" + pool_address.hex())


def encode_v3_path(tokens, fees) -> bytes:
    """Packed multi-hop path: token(20) fee(3) token(20) ..."""
    if len(tokens) != len(fees) + 1:
        raise ValueError("path needs exactly one more token than fees")
    packed = b""
    for token, fee in zip(tokens, fees):
        packed += bytes.fromhex(token[2:]) + fee.to_bytes(3, "big")
    return packed + bytes.fromhex(tokens[-1][2:])
