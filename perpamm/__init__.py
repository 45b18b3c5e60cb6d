"""
perpamm: a perpetual-futures engine backed by a virtual AMM liquidity pool.
"""

__version__ = "0.1.0"
