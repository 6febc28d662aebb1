"""
Tax rule aggregation and calculation engine.

Reconciles evidence rules extracted from government documents into
aggregated rules, compiles their formulas and executes them against user input.
"""

__version__ = "0.1.0"
