"""
Growth Engine

Raw capture -> staging normalization, and the week-over-week
alert / signal / opportunity detection chain.
"""
__version__ = "0.1.0"
