"""Transaction crafting per chain family."""

from coldcraft.crafting.base import TransactionCrafter, parse_tier
from coldcraft.crafting.evm import EvmCrafter
from coldcraft.crafting.solana import SolanaCrafter

__all__ = [
    "TransactionCrafter",
    "EvmCrafter",
    "SolanaCrafter",
    "parse_tier",
]
