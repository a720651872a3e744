"""Canonical symbols for well-known Arbitrum One token contracts."""

from typing import Optional

from ..utils.addresses import normalize_address

KNOWN_TOKENS: dict[str, str] = {
    "0xff970a61a04b1ca14834a43f5de4533ebddb5cc8": "USDC.e",
    "0xaf88d065e77c8cc2239327c5edb3a432268e5831": "USDC",
    "0xfd086bc7cd5c481dcc9c85ebe478a1c0b69fcbb9": "USDT",
    "0xda10009cbd5d07dd0cecc66161fc93d7c9000da1": "DAI",
    "0x2f2a2543b76a4166549f7aab2e75bef0aefc5b63": "WBTC",
    "0x82af49447d8a07e3bd95bd0d56f35241523fbab1": "WETH",
}


class TokenRegistry:
    """Known token symbols, optionally extended from configuration."""

    def __init__(self, extra: Optional[dict[str, str]] = None) -> None:
        self._symbols = dict(KNOWN_TOKENS)
        for address, symbol in (extra or {}).items():
            self._symbols[normalize_address(address)] = symbol

    def is_known(self, address: str) -> bool:
        return normalize_address(address) in self._symbols

    def symbol_for(self, address: str, fallback: str = "") -> str:
        """
        Canonical symbol for a contract.

        Unknown contracts use the explorer-reported symbol, or the contract
        address when the explorer reported none.
        """
        address = normalize_address(address)
        symbol = self._symbols.get(address)
        if symbol:
            return symbol
        return fallback.strip() or address
