"""
oif-solver: Hyperlane7683 (ERC-7683) intent protocol model and solver.
"""

__version__ = "0.1.0"
